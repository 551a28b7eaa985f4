"""
Value extraction: one rule + one structure → raw field values.
"""

from __future__ import annotations

import logging
from typing import Optional

from v2fhir.mapping._declarations import Rule
from v2fhir.structure import (
    Composite,
    Primitive,
    RawField,
    Structure,
    Varies,
    resolve_varies,
)

logger = logging.getLogger(__name__)


def narrow(value: RawField, component: int) -> Optional[RawField]:
    """1-based *component* of *value*, or ``None`` when it is absent.

    Component 1 of an atomic value is the value itself; any higher
    component of an atomic value is absent.
    """
    if isinstance(value, Composite):
        return value.component(component)
    if component == 1:
        return value
    return None


def extract(rule: Rule, structure: Optional[Structure]) -> list[RawField]:
    """Raw values for *rule* from *structure*, empties removed, order kept.

    A fixed rule yields its literal without reading *structure*.  A missing
    field, a missing structure and an empty structure all yield ``[]``.
    """
    decl = rule.declaration
    if decl.fixed:
        return [Primitive(decl.fixed)]
    if structure is None or structure.is_empty():
        return []

    values: list[RawField] = []
    for repetition in structure.get_field(decl.field):
        if repetition is None:
            continue
        value: Optional[RawField] = resolve_varies(repetition, structure)
        if decl.component:
            value = narrow(value, decl.component)
            if value is None:
                logger.debug(
                    "%s: component %d absent in repetition", rule.source(), decl.component,
                )
                continue
            if isinstance(value, Varies):
                value = resolve_varies(value, structure)
        if value.is_empty():
            continue
        values.append(value)
    return values
