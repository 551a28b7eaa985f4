"""
Scalar dispatch: raw value → typed FHIR value for one rule.

The rule's declared datatype picks the converter in :mod:`v2fhir.datatypes`;
its table is passed only when declared; a concept map, when named, is
applied to the converted Coding or CodeableConcept.
"""

from __future__ import annotations

import logging
from typing import Any, Optional

from v2fhir import datatypes
from v2fhir.mapping._constants import RAW
from v2fhir.mapping._declarations import Rule
from v2fhir.structure import RawField
from v2fhir.tables import CodeTables, default_tables

logger = logging.getLogger(__name__)


def apply_concept_map(value: Any, map_name: str, tables: CodeTables) -> Any:
    """Remap a Coding or CodeableConcept through concept map *map_name*.

    - Coding that maps: replaced by the target Coding.
    - CodeableConcept with a coding that maps: the target Coding is put
      first, the original codings follow.
    - Anything unmapped is returned unchanged.
    """
    concept_map = tables.concept_map(map_name)
    if concept_map is None:
        logger.debug("Concept map '%s' not present in the active tables", map_name)
        return value
    if not isinstance(value, dict):
        return value

    if "coding" in value:
        codings = value.get("coding") or []
        for coding in codings:
            target = concept_map.translate(coding)
            if target is None:
                continue
            if target in codings:
                return value
            return {**value, "coding": [target, *codings]}
        return value

    if "code" in value:
        target = concept_map.translate(value)
        return target if target is not None else value
    return value


def convert_value(
    rule: Rule,
    raw: RawField,
    tables: Optional[CodeTables] = None,
) -> Any:
    """Typed value for *raw*, or ``None`` when there is nothing to write."""
    decl = rule.declaration
    if decl.datatype == RAW:
        return raw
    if tables is None:
        tables = default_tables()
    value = datatypes.convert(decl.datatype, raw, decl.table or "", tables)
    if value is None or not decl.map:
        return value
    return apply_concept_map(value, decl.map, tables)
