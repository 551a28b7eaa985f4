"""
In-memory model of a parsed HL7 V2 message.

The converter does not parse ER7 itself.  A wire-level parser (or a test)
builds these objects, and the mapping engine only ever asks a structure
for "field N", a field for "component M", and whether something is empty.

Field values form a small tagged union:

  - ``Primitive``  — an atomic value (ST, ID, NM, DTM, ...)
  - ``Composite``  — a compound value (CWE, XCN, CX, ...) of 1-based components
  - ``Varies``     — a value whose concrete type is decided by another field
                     of the same segment (OBX-5 typed by OBX-2).  It is either
                     *unresolved* (``value is None``) or *resolved*.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Optional, Union


# V2 datatypes that are compound.  Used when a Varies value is resolved
# from its raw text.
COMPOSITE_TYPES: frozenset[str] = frozenset({
    "AD", "CE", "CF", "CNE", "CP", "CQ", "CWE", "CX", "DLN", "ED", "EI",
    "HD", "MO", "NR", "PL", "PN", "RP", "SN", "XAD", "XCN", "XON", "XPN",
    "XTN",
})


@dataclass(frozen=True)
class Primitive:
    """An atomic field or component value."""

    value: str = ""
    type_name: str = "ST"

    def is_empty(self) -> bool:
        return not self.value

    def text(self) -> str:
        return self.value


@dataclass(frozen=True)
class Composite:
    """A compound value.  ``components[0]`` is component 1."""

    components: tuple[RawField, ...] = ()
    type_name: str = ""

    def is_empty(self) -> bool:
        return all(c is None or c.is_empty() for c in self.components)

    def component(self, number: int) -> Optional[RawField]:
        """Return 1-based component *number*, or ``None`` when out of range."""
        if number < 1 or number > len(self.components):
            return None
        return self.components[number - 1]

    def text(self) -> str:
        """Text of the first component (how V2 reads a compound as a string)."""
        first = self.component(1)
        return first.text() if first is not None else ""


@dataclass(frozen=True)
class Varies:
    """A value whose concrete datatype is named by another field.

    Attributes:
        raw:         Unparsed text (components separated by ``^``).
        type_field:  Field of the owning segment holding the V2 type name.
        value:       The concrete value once resolved, else ``None``.
    """

    raw: str = ""
    type_field: int = 2
    value: Optional[Union[Primitive, Composite]] = None

    @property
    def resolved(self) -> bool:
        return self.value is not None

    def is_empty(self) -> bool:
        if self.value is not None:
            return self.value.is_empty()
        return not self.raw

    def text(self) -> str:
        if self.value is not None:
            return self.value.text()
        return self.raw.split("^", 1)[0]


RawField = Union[Primitive, Composite, Varies]


@dataclass(eq=False)
class Segment:
    """One parsed segment.

    ``fields`` maps a 1-based field number to its repetitions.  Segments
    compare by identity: two ORC segments with the same content are still
    different structures.
    """

    name: str
    fields: dict[int, list[RawField]] = field(default_factory=dict)
    parent: Optional[Group] = field(default=None, repr=False)

    def is_empty(self) -> bool:
        return all(
            f.is_empty() for reps in self.fields.values() for f in reps
        )

    def get_field(self, number: int) -> list[RawField]:
        """All repetitions of field *number*; ``[]`` when absent."""
        return list(self.fields.get(number, ()))

    def following(self, name: str) -> Optional[Segment]:
        """The next sibling segment called *name* after this one.

        The search stops at the next sibling named like this segment, so an
        ORC never picks up the RXA of the following order.
        """
        if self.parent is None:
            return None
        seen = False
        for structure in self.parent.children:
            if structure is self:
                seen = True
            elif not seen or not isinstance(structure, Segment):
                continue
            elif structure.name == name:
                return structure
            elif structure.name == self.name:
                return None
        return None


@dataclass(eq=False)
class Group:
    """A named group of segments and sub-groups (e.g. ``ORDER``)."""

    name: str
    children: list[Union[Segment, Group]] = field(default_factory=list)
    parent: Optional[Group] = field(default=None, repr=False)

    def add(self, child: Union[Segment, Group]) -> Union[Segment, Group]:
        child.parent = self
        self.children.append(child)
        return child

    def is_empty(self) -> bool:
        return all(c.is_empty() for c in self.children)

    def get_field(self, number: int) -> list[RawField]:
        return []

    def segments(self) -> list[Segment]:
        """Segments of this group and its sub-groups, in message order."""
        out: list[Segment] = []
        for child in self.children:
            if isinstance(child, Group):
                out.extend(child.segments())
            else:
                out.append(child)
        return out


Structure = Union[Segment, Group]


# ── Varies resolution ─────────────────────────────────────────────


def resolve_varies(raw: RawField, structure: Optional[Structure]) -> RawField:
    """Resolve a ``Varies`` value to its concrete type.

    Non-varies values and already-resolved values are returned as-is.  The
    V2 type is read from ``raw.type_field`` of *structure*; when it cannot
    be determined the value is treated as ``ST``.
    """
    if not isinstance(raw, Varies):
        return raw
    if raw.value is not None:
        return raw.value

    type_name = "ST"
    if structure is not None:
        reps = structure.get_field(raw.type_field)
        if reps and not reps[0].is_empty():
            type_name = reps[0].text().strip().upper() or "ST"

    if type_name in COMPOSITE_TYPES:
        parts = tuple(Primitive(p) for p in raw.raw.split("^"))
        return Composite(parts, type_name=type_name)
    return Primitive(raw.raw, type_name=type_name)


def primitive_text(raw: Optional[RawField]) -> str:
    """Text of a value, or ``""`` for ``None``."""
    if raw is None:
        return ""
    return raw.text()


def component_text(raw: Optional[RawField], number: int) -> str:
    """Text of 1-based component *number*; component 1 of a primitive is itself."""
    if raw is None:
        return ""
    if isinstance(raw, Varies):
        raw = resolve_varies(raw, None)
    if isinstance(raw, Composite):
        return primitive_text(raw.component(number))
    return raw.text() if number == 1 else ""
