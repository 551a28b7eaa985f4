"""Shared fixtures: build parsed V2 structures from ER7 text.

Tests describe segments either as ``{field_number: "er7 text"}`` dicts or
as whole ER7 messages.  hl7apy does the wire-level parsing; the fixtures
map its segments, fields, components and subcomponents onto the
``v2fhir.structure`` model.  Field types for the fields the bundled
parsers read are filled in from ``FIELD_TYPES``.
"""

import pytest
from hl7apy.consts import VALIDATION_LEVEL
from hl7apy.parser import parse_message, parse_segment

from v2fhir.mapping import clear_rule_cache
from v2fhir.structure import COMPOSITE_TYPES, Composite, Group, Primitive, Segment, Varies


VERSION = "2.5.1"
ENCODING = "^~\\&"

FIELD_TYPES = {
    "MSH": {3: "HD", 4: "HD", 5: "HD", 6: "HD", 9: "MSG", 21: "EI"},
    "PID": {2: "CX", 3: "CX", 4: "CX", 5: "XPN", 9: "XPN", 11: "XAD",
            13: "XTN", 14: "XTN"},
    "ORC": {2: "EI", 3: "EI", 4: "EIP", 8: "EIP", 12: "XCN", 33: "EI"},
    "RXA": {5: "CWE", 7: "CWE", 9: "CWE", 10: "XCN", 11: "LA2", 17: "CWE",
            18: "CWE", 19: "CWE", 27: "PL", 28: "XAD"},
    "RXR": {1: "CWE", 2: "CWE"},
    "OBX": {3: "CWE", 16: "XCN", 17: "CWE", 20: "CWE", 21: "EI", 23: "XON"},
}

# Fields whose type is named by another field of the segment.
VARIES_FIELDS = {"OBX": {5: 2}}

# Segments that belong to the order group opened by the preceding ORC.
ORDER_SEGMENTS = {"RXA", "RXR", "OBX", "NTE"}


def _position(element, default):
    """1-based position from an hl7apy name such as ``PID_3`` or ``CWE_2``."""
    head, _, tail = (element.name or "").rpartition("_")
    if head and tail.isdigit():
        return int(tail)
    return default


def _positioned(elements):
    """``[(position, element)]``; hl7apy leaves out empty components."""
    return [(_position(e, index), e) for index, e in enumerate(elements, start=1)]


def _padded(positioned, convert):
    size = max((p for p, _ in positioned), default=0)
    values = [Primitive("")] * size
    for position, element in positioned:
        values[position - 1] = convert(element)
    return tuple(values)


def _component(component):
    subcomponents = _positioned(component.children)
    if len(subcomponents) > 1:
        return Composite(_padded(subcomponents, lambda s: Primitive(s.to_er7())))
    return Primitive(component.to_er7())


def _field(hl7_field, type_name):
    """One repetition of a field."""
    components = _positioned(hl7_field.children)
    compound = (
        type_name in COMPOSITE_TYPES
        or len(components) > 1
        or any(p > 1 or len(c.children) > 1 for p, c in components)
    )
    if compound:
        return Composite(_padded(components, _component), type_name=type_name)
    return Primitive(hl7_field.to_er7(), type_name or "ST")


def from_hl7apy(hl7_segment):
    """``v2fhir`` segment from an hl7apy segment; MSH-1 is left out."""
    name = hl7_segment.name
    types = FIELD_TYPES.get(name, {})
    fields = {}
    for index, hl7_field in enumerate(hl7_segment.children, start=1):
        number = _position(hl7_field, index)
        if name == "MSH" and number == 1:
            continue
        if name == "MSH" and number == 2:
            fields[2] = [Primitive(hl7_field.to_er7())]
            continue
        type_field = VARIES_FIELDS.get(name, {}).get(number)
        if type_field is not None:
            value = Varies(hl7_field.to_er7(), type_field=type_field)
        else:
            value = _field(hl7_field, types.get(number, ""))
        if not value.is_empty():
            fields.setdefault(number, []).append(value)
    return Segment(name, fields)


def make_segment(name, fields=None):
    """Segment *name* from ``{number: text}``; empty texts are left out."""
    fields = {n: t for n, t in (fields or {}).items() if t}
    values = [fields.get(n, "") for n in range(1, max(fields, default=0) + 1)]
    if name == "MSH":
        text = "|".join(["MSH", ENCODING] + values[2:])
    else:
        text = "|".join([name] + values)
    parsed = parse_segment(
        text, version=VERSION, validation_level=VALIDATION_LEVEL.TOLERANT,
    )
    return from_hl7apy(parsed)


def make_message(*segments):
    """Message group; an ORC and the RXA/RXR/OBX after it form an ORDER group."""
    message = Group("MESSAGE")
    order = None
    for segment in segments:
        if segment.name == "ORC":
            order = message.add(Group("ORDER"))
            order.add(segment)
        elif segment.name in ORDER_SEGMENTS and order is not None:
            order.add(segment)
        else:
            order = None
            message.add(segment)
    return message


def parse_er7(text):
    """ER7 text (segments split on CR or LF) → message group."""
    normalized = text.replace("\r\n", "\r").replace("\n", "\r").strip("\r")
    parsed = parse_message(
        normalized, find_groups=False, validation_level=VALIDATION_LEVEL.TOLERANT,
    )
    return make_message(*(from_hl7apy(s) for s in parsed.children))


@pytest.fixture
def segment():
    return make_segment


@pytest.fixture
def message():
    return make_message


@pytest.fixture
def er7():
    return parse_er7


@pytest.fixture
def fresh_rules():
    """Rule cache emptied before and after the test."""
    clear_rule_cache()
    yield
    clear_rule_cache()
