"""
Ambiguous-target resolution for immunization order groups.

An ORC/RXA pair in a VXU or RSP_K11 may report an administered dose
(``Immunization``) or a forecast (``ImmunizationRecommendation``).  The
evidence, first decisive signal wins:

  1. The RXA itself, or the RXA following the ORC: RXA-5 = CVX ``998``
     ("no vaccine administered") means a recommendation, anything else
     an immunization.
  2. The message profiles (MSH-21): Z22 and Z32 mean immunization, Z42
     recommendation.
  3. A ``VXU`` tag (table 0076) on the first MessageHeader means
     immunization.
  4. Otherwise the session's ``fallback_kind`` (``UNKNOWN`` unless
     configured): the group contributes neither record.

Each ORC opens a new group and is always reclassified; other structures
reuse the session's cached classification.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Optional

from v2fhir.mapping._constants import (
    ADMINISTERED_CODE_FIELD,
    ADMINISTRATION_SEGMENT,
    GROUP_PROPERTY,
    GROUP_START_SEGMENTS,
    IMMUNIZATION_EVENT_TOKENS,
    IMMUNIZATION_PROFILES,
    MESSAGE_TYPE_SYSTEM,
    NO_VACCINE_ADMINISTERED,
    RECOMMENDATION_PROFILES,
    Kind,
)
from v2fhir.mapping._session import SessionState, reference
from v2fhir.structure import Segment, Structure, component_text

logger = logging.getLogger(__name__)


# ── Evidence ──────────────────────────────────────────────────────


def administration_structure(structure: Optional[Structure]) -> Optional[Segment]:
    """The RXA that decides *structure*'s group, if it is available yet."""
    if not isinstance(structure, Segment):
        return None
    if structure.name == ADMINISTRATION_SEGMENT:
        return structure
    if structure.name in GROUP_START_SEGMENTS:
        return structure.following(ADMINISTRATION_SEGMENT)
    return None


def _kind_from_administration(rxa: Segment) -> Kind:
    repetitions = rxa.get_field(ADMINISTERED_CODE_FIELD)
    code = component_text(repetitions[0], 1).strip() if repetitions else ""
    if code == NO_VACCINE_ADMINISTERED:
        return Kind.RECOMMENDATION
    return Kind.IMMUNIZATION


def _kind_from_profiles(profiles: list[str]) -> Optional[Kind]:
    for profile in profiles:
        if profile in IMMUNIZATION_PROFILES:
            return Kind.IMMUNIZATION
        if profile in RECOMMENDATION_PROFILES:
            return Kind.RECOMMENDATION
    return None


def _kind_from_header(session: SessionState) -> Optional[Kind]:
    header = session.registry.first("MessageHeader")
    if header is None:
        return None
    for tag in header.get("meta", {}).get("tag", []):
        if (
            tag.get("system") == MESSAGE_TYPE_SYSTEM
            and tag.get("code") in IMMUNIZATION_EVENT_TOKENS
        ):
            return Kind.IMMUNIZATION
    return None


def infer_kind(session: SessionState, structure: Optional[Structure]) -> Kind:
    """Classify *structure* from the evidence alone, ignoring the cache."""
    rxa = administration_structure(structure)
    if rxa is not None:
        return _kind_from_administration(rxa)
    kind = _kind_from_profiles(session.profiles)
    if kind is not None:
        return kind
    kind = _kind_from_header(session)
    if kind is not None:
        return kind
    return session.fallback_kind


def classify(session: SessionState, structure: Optional[Structure]) -> Kind:
    """Classification of the immunization group *structure* belongs to.

    A group-start structure (ORC) always recomputes; anything else reuses
    the value cached on *session* when there is one.
    """
    name = getattr(structure, "name", "")
    if name not in GROUP_START_SEGMENTS and session.classification is not None:
        return session.classification
    kind = infer_kind(session, structure)
    session.classification = kind
    if kind is Kind.UNKNOWN:
        logger.debug("No evidence to classify %s group", name or "immunization")
    return kind


# ── Per-group records ─────────────────────────────────────────────


@dataclass
class ImmunizationGroup:
    """Records of the current ORC/RXA group.

    Attributes:
        kind:           Group classification.
        immunization:   The Immunization, for an ``IMMUNIZATION`` group.
        recommendation: The ImmunizationRecommendation, for a
                        ``RECOMMENDATION`` group.
        component:      The recommendation entry being filled by the
                        latest RXA.
    """

    kind: Kind
    immunization: Optional[dict[str, Any]] = None
    recommendation: Optional[dict[str, Any]] = None
    component: Optional[dict[str, Any]] = None

    @property
    def record(self) -> Optional[dict[str, Any]]:
        if self.kind is Kind.IMMUNIZATION:
            return self.immunization
        if self.kind is Kind.RECOMMENDATION:
            return self.recommendation
        return None

    def add_component(self) -> Optional[dict[str, Any]]:
        """Start a new recommendation entry; ``None`` for other kinds."""
        if self.recommendation is None:
            return None
        self.component = {}
        self.recommendation.setdefault("recommendation", []).append(self.component)
        return self.component


def _create_group_record(session: SessionState, resource_type: str) -> dict[str, Any]:
    registry = session.registry
    record = registry.create(resource_type)
    patient = registry.last("Patient")
    if patient is not None:
        record["patient"] = reference(patient)
    header = registry.first("MessageHeader")
    if header is not None:
        header.setdefault("focus", []).append(reference(record))
    return record


def _open_group(session: SessionState, kind: Kind) -> ImmunizationGroup:
    group = ImmunizationGroup(kind)
    if kind is Kind.IMMUNIZATION:
        group.immunization = _create_group_record(session, "Immunization")
    elif kind is Kind.RECOMMENDATION:
        group.recommendation = _create_group_record(
            session, "ImmunizationRecommendation"
        )
    session.properties[GROUP_PROPERTY] = group
    return group


def begin_group(session: SessionState, structure: Optional[Structure]) -> ImmunizationGroup:
    """Reclassify and open a new group at *structure* (an ORC)."""
    session.classification = None
    return _open_group(session, classify(session, structure))


def existing_group(session: SessionState) -> Optional[ImmunizationGroup]:
    """The open group, or ``None``; never creates one."""
    return session.properties.get(GROUP_PROPERTY)


def current_group(session: SessionState, structure: Optional[Structure]) -> ImmunizationGroup:
    """The open group, or a new one when no ORC has opened one yet."""
    group = session.properties.get(GROUP_PROPERTY)
    if group is not None:
        return group
    return _open_group(session, classify(session, structure))
