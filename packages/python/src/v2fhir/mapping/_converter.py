"""
Message-level orchestration: parsed structures → FHIR message Bundle.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Iterable, Optional, Union

from v2fhir.mapping._constants import Kind
from v2fhir.mapping._evaluator import Outcome
from v2fhir.mapping._registry import get_parser_type
from v2fhir.mapping._session import IdGenerator, SessionState
from v2fhir.structure import Group, Segment
from v2fhir.tables import CodeTables, default_tables

logger = logging.getLogger(__name__)


@dataclass
class ConversionReport:
    """Report from converting one message.

    Attributes:
        success:             ``False`` when any structure failed outright.
        structures_seen:     Segments walked.
        structures_parsed:   Segments a parser produced a record for.
        structures_skipped:  Segments with no parser, or whose parser had
                             nothing to contribute.
        structures_failed:   Segments whose parser raised.
        rules_applied:       Rules that wrote at least one value.
        rules_failed:        Rules that raised and were contained.
        warnings:            Messages for contained rule failures.
        errors:              Messages for failed structures.
    """

    success: bool = True
    structures_seen: int = 0
    structures_parsed: int = 0
    structures_skipped: int = 0
    structures_failed: int = 0
    rules_applied: int = 0
    rules_failed: int = 0
    warnings: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)


def _segments(structures: Iterable[Union[Segment, Group]]) -> Iterable[Segment]:
    for structure in structures:
        if isinstance(structure, Group):
            yield from structure.segments()
        else:
            yield structure


class MessageConverter:
    """Converts parsed V2 messages into FHIR message Bundles.

    One converter may be reused for any number of messages, from any
    number of threads; each :meth:`convert` call works in its own
    :class:`SessionState`.

    Args:
        tables:        Code tables and concept maps; the bundled ones
                       by default.
        id_generator:  Factory for a per-message id generator, e.g.
                       ``lambda: sequential_ids("r-")``.  Random UUIDs by
                       default.
        fallback_kind: Classification of an immunization group when no
                       evidence decides it.
    """

    def __init__(
        self,
        *,
        tables: Optional[CodeTables] = None,
        id_generator: Optional[Any] = None,
        fallback_kind: Kind = Kind.UNKNOWN,
    ) -> None:
        if not isinstance(fallback_kind, Kind):
            raise TypeError(
                f"fallback_kind must be a Kind, got: {type(fallback_kind).__name__}"
            )
        if id_generator is not None and not callable(id_generator):
            raise TypeError("id_generator must be a callable returning an id generator")
        self.tables = tables if tables is not None else default_tables()
        self.id_generator = id_generator
        self.fallback_kind = fallback_kind

    def new_session(self) -> SessionState:
        """A fresh session; nothing carries over from earlier messages."""
        if self.id_generator is None:
            return SessionState(tables=self.tables, fallback_kind=self.fallback_kind)
        ids: IdGenerator = self.id_generator()
        return SessionState(
            tables=self.tables, id_generator=ids, fallback_kind=self.fallback_kind,
        )

    def convert(
        self,
        structures: Iterable[Union[Segment, Group]],
    ) -> tuple[dict[str, Any], ConversionReport]:
        """Convert one message.

        Args:
            structures: The message's segments and groups in message
                order; a single top-level ``Group`` works too.

        Returns:
            Tuple of (Bundle of type ``message``, report).  Per-structure
            data problems are reported, never raised.
        """
        if isinstance(structures, (Segment, Group)):
            structures = [structures]
        session = self.new_session()
        report = ConversionReport()

        for segment in _segments(structures):
            report.structures_seen += 1
            parser_type = get_parser_type(segment.name)
            if parser_type is None:
                logger.debug("No parser for %s segment", segment.name)
                report.structures_skipped += 1
                continue
            try:
                bindings = parser_type(session).parse(segment)
            except Exception as exc:  # noqa: BLE001
                logger.warning(
                    "%s failed on %s segment: %s", parser_type.__name__, segment.name, exc,
                )
                report.structures_failed += 1
                report.errors.append(f"{segment.name}: {type(exc).__name__}: {exc}")
                continue
            if not bindings:
                report.structures_skipped += 1
                continue
            report.structures_parsed += 1
            for binding in bindings:
                if binding.outcome is Outcome.APPLIED:
                    report.rules_applied += 1
                elif binding.outcome is Outcome.FAILED:
                    report.rules_failed += 1
                    report.warnings.append(f"{binding.rule.source()}: {binding.error}")

        report.success = report.structures_failed == 0
        return self.build_bundle(session), report

    @staticmethod
    def build_bundle(session: SessionState) -> dict[str, Any]:
        """Message Bundle holding every record of *session*, in creation order."""
        bundle: dict[str, Any] = {
            "resourceType": "Bundle",
            "id": session.id_generator("Bundle"),
            "type": "message",
        }
        if session.profiles:
            bundle["meta"] = {"profile": list(session.profiles)}
        bundle.update(session.bundle)
        bundle["entry"] = [
            {
                "fullUrl": f"{record['resourceType']}/{record['id']}",
                "resource": record,
            }
            for record in session.registry.records()
        ]
        return bundle
