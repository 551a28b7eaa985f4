"""
Mapping declarations and the rules derived from them.

A parser class states *what it produces* with :class:`Produces` and *where
each value comes from* with a static tuple of :class:`ComesFrom`
declarations, each naming a plain handler function ``(parser, value)``::

    class RXAParser(StructureParser):
        produces = Produces("RXA", "Immunization", extra=("Practitioner",))

        def set_lot_number(self, lot):
            ...

        declarations = (
            ComesFrom("Immunization.lotNumber", field=15,
                      datatype="string", handler=set_lot_number),
        )

The rule registry turns those declarations into ordered :class:`Rule`
objects once per parser class.
"""

from __future__ import annotations

import re
import sys
from dataclasses import dataclass
from typing import Any, Callable, Optional


Handler = Callable[[Any, Any], None]

# Sort position of a fixed rule: after every field of the same priority.
_NO_FIELD = sys.maxsize


class MappingConfigurationError(ValueError):
    """A parser class carries an invalid mapping declaration.

    Raised while rules are built, i.e. when a parser class is registered,
    never while a message is being converted.
    """


@dataclass(frozen=True)
class Produces:
    """The records a parser class may create.

    Attributes:
        segment:  Name of the structure the parser handles (``"RXA"``).
        resource: Primary resource type returned by ``setup()``.
        extra:    Helper resource types the handlers may also create.
    """

    segment: str
    resource: str
    extra: tuple[str, ...] = ()

    def resource_types(self) -> tuple[str, ...]:
        return (self.resource, *self.extra)


@dataclass(frozen=True)
class ComesFrom:
    """Where one target attribute comes from.

    Attributes:
        path:      Target path, ``Resource.attribute[...]``.
        field:     1-based source field, 0 when the value is fixed.
        component: 1-based component of the field, 0 for the whole field.
        datatype:  FHIR type the raw value is converted to before the
                   handler sees it (``"CodeableConcept"``, ``"dateTime"``,
                   or ``RAW`` for the unconverted value).
        handler:   Function ``(parser, value)`` performing the write.
        table:     HL7 table governing coded values.
        map:       Concept map applied after conversion.
        fixed:     Literal value; when set the structure is not read.
        priority:  Higher runs first among rules for the same attribute.
        comment:   Free text, usually the V2 field name.
        also:      Secondary paths written by the same handler.
    """

    path: str
    field: int = 0
    component: int = 0
    datatype: str = "string"
    handler: Optional[Handler] = None
    table: str = ""
    map: str = ""
    fixed: str = ""
    priority: int = 0
    comment: str = ""
    also: tuple[str, ...] = ()

    @property
    def handler_name(self) -> str:
        return getattr(self.handler, "__name__", repr(self.handler))

    @property
    def resource_type(self) -> str:
        """Resource named by ``path``, without any ``[index]``."""
        head = self.path.split(".", 1)[0]
        return re.sub(r"\[.*?\]$", "", head)

    def describe(self) -> str:
        """Stable one-line form, used to order otherwise equal rules."""
        parts = [f'path="{self.path}"']
        if self.field > 0:
            parts.append(f"field={self.field}")
        if self.component > 0:
            parts.append(f"component={self.component}")
        for name in ("fixed", "table", "map", "comment"):
            value = getattr(self, name)
            if value:
                parts.append(f'{name}="{value}"')
        if self.also:
            parts.append("also={" + ", ".join(f'"{a}"' for a in self.also) + "}")
        if self.priority:
            parts.append(f"priority={self.priority}")
        parts.append(f"datatype={self.datatype}")
        return f"@ComesFrom({', '.join(parts)}) {self.handler_name}"


@dataclass(frozen=True)
class Rule:
    """One executable binding, derived from a :class:`ComesFrom`.

    Attributes:
        owner:       Name of the parser class the rule belongs to.
        declaration: The source declaration.
    """

    owner: str
    declaration: ComesFrom

    @property
    def datatype(self) -> str:
        return self.declaration.datatype

    @property
    def handler(self) -> Handler:
        return self.declaration.handler

    @property
    def is_fixed(self) -> bool:
        return bool(self.declaration.fixed)

    def sort_key(self) -> tuple[int, int, int, str]:
        d = self.declaration
        field = _NO_FIELD if d.fixed else d.field
        return (-d.priority, field, d.component, self.describe())

    def describe(self) -> str:
        return f"{self.owner}: {self.declaration.describe()}"

    def source(self) -> str:
        """``SEG-field[.component]`` or ``fixed``, for log messages."""
        d = self.declaration
        if d.fixed:
            return f'fixed "{d.fixed}"'
        where = f"{self.owner}-{d.field}"
        if d.component:
            where += f".{d.component}"
        return where
