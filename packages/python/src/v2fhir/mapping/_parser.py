"""
Base class for structure parsers.

A parser class pairs a :class:`Produces` with a static table of
:class:`ComesFrom` declarations and implements :meth:`setup`.  One
instance converts one structure within one session.
"""

from __future__ import annotations

import logging
from typing import Any, Optional

from v2fhir.mapping._declarations import ComesFrom, Produces, Rule
from v2fhir.mapping._evaluator import Binding, evaluate
from v2fhir.mapping._registry import build_rules
from v2fhir.mapping._session import SessionState
from v2fhir.structure import Structure

logger = logging.getLogger(__name__)


class StructureParser:
    """Converts one kind of structure into records of a session.

    Subclasses set ``produces`` and ``declarations`` and implement
    :meth:`setup`.
    """

    produces: Produces
    declarations: tuple[ComesFrom, ...] = ()

    def __init__(self, session: SessionState) -> None:
        self.session = session
        self.structure: Optional[Structure] = None

    @property
    def rules(self) -> tuple[Rule, ...]:
        return build_rules(type(self))

    def setup(self) -> Optional[dict[str, Any]]:
        """Return the primary record for ``self.structure``.

        Returning ``None`` skips the structure: no rule is evaluated.
        """
        raise NotImplementedError

    def parse(self, structure: Structure) -> list[Binding]:
        """Run :meth:`setup`, then every rule against *structure*."""
        self.structure = structure
        record = self.setup()
        if record is None:
            logger.debug(
                "%s: no target record for %s, skipped",
                type(self).__name__, getattr(structure, "name", structure),
            )
            return []
        return evaluate(self.rules, structure, self)

    # ── Record registry shortcuts ──

    def create_record(self, resource_type: str, id: Optional[str] = None) -> dict[str, Any]:
        return self.session.registry.create(resource_type, id)

    def find_record(self, resource_type: str, id: str) -> dict[str, Any]:
        return self.session.registry.find_or_create(resource_type, id)

    def first_record(self, resource_type: str) -> Optional[dict[str, Any]]:
        return self.session.registry.first(resource_type)

    def last_record(self, resource_type: str) -> Optional[dict[str, Any]]:
        return self.session.registry.last(resource_type)

    def add_record(self, record: dict[str, Any]) -> dict[str, Any]:
        return self.session.registry.add(record)
