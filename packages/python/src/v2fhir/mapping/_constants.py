"""
Shared constants for the mapping engine.

Sentinel codes, profile identifiers and event tokens consulted by the
ambiguous-target resolver live here so parsers and tests agree on them.
"""

from __future__ import annotations

from enum import Enum

from v2fhir.tables import v2_table


RAW = "raw"
"""Datatype token for handlers that take the (resolved) V2 value itself.

Used where the concrete type is only known inside the handler, e.g. an
OBX-5 value typed by OBX-2.
"""

# ── Immunization group resolution ──────────────────────────────────


class Kind(str, Enum):
    """Which record an ORC/RXA group populates."""

    IMMUNIZATION = "Immunization"
    RECOMMENDATION = "ImmunizationRecommendation"
    UNKNOWN = "unknown"


ADMINISTRATION_SEGMENT = "RXA"
"""Segment whose content decides Immunization vs ImmunizationRecommendation."""

GROUP_START_SEGMENTS: frozenset[str] = frozenset({"ORC"})
"""Segments that open a new order group; classification is recomputed there."""

ADMINISTERED_CODE_FIELD = 5
"""RXA-5 Administered Code."""

NO_VACCINE_ADMINISTERED = "998"
"""CVX 998: no vaccine administered.  Marks a forecast, not an administration."""

IMMUNIZATION_PROFILES: tuple[str, ...] = ("CDCPHINVS#Z22", "CDCPHINVS#Z32")
"""VXU_V04 (Z22) and RSP_K11 complete history (Z32) always carry Immunizations."""

RECOMMENDATION_PROFILES: tuple[str, ...] = ("CDCPHINVS#Z42",)
"""RSP_K11 evaluated history and forecast (Z42)."""

MESSAGE_TYPE_SYSTEM = v2_table("0076")

IMMUNIZATION_EVENT_TOKENS: frozenset[str] = frozenset({"VXU"})
"""MessageHeader ``meta.tag`` codes (table 0076) implying an Immunization."""

GROUP_PROPERTY = "immunization-group"
"""Key of the per-session immunization group in ``SessionState.properties``."""
