"""
Per-message session state and the session record registry.

Records are plain FHIR JSON dicts.  The registry keeps them in creation
order and hands out ids from an injected generator, so tests can ask for
reproducible ids with :func:`sequential_ids`.
"""

from __future__ import annotations

import itertools
import uuid
from dataclasses import dataclass, field
from typing import Any, Callable, Iterator, Optional

from v2fhir.mapping._constants import Kind
from v2fhir.tables import CodeTables, default_tables


IdGenerator = Callable[[str], str]
"""``fn(resource_type) -> id``."""


def uuid_ids() -> IdGenerator:
    """Random ids (the default)."""

    def generate(resource_type: str) -> str:
        return str(uuid.uuid4())

    return generate


def sequential_ids(prefix: str = "") -> IdGenerator:
    """Reproducible ids ``<prefix>1``, ``<prefix>2``, ... shared by all types."""
    counter = itertools.count(1)

    def generate(resource_type: str) -> str:
        return f"{prefix}{next(counter)}"

    return generate


def reference(record: dict[str, Any], display: Optional[str] = None) -> dict[str, Any]:
    """FHIR Reference to *record*, e.g. ``{"reference": "Patient/1"}``."""
    ref: dict[str, Any] = {"reference": f"{record['resourceType']}/{record['id']}"}
    if display:
        ref["display"] = display
    return ref


class RecordRegistry:
    """Insertion-ordered collection of the records created for one message."""

    def __init__(self, id_generator: Optional[IdGenerator] = None) -> None:
        self._records: list[dict[str, Any]] = []
        self._next_id = id_generator if id_generator is not None else uuid_ids()

    def __len__(self) -> int:
        return len(self._records)

    def __iter__(self) -> Iterator[dict[str, Any]]:
        return iter(list(self._records))

    def __contains__(self, record: object) -> bool:
        return any(r is record for r in self._records)

    def create(self, resource_type: str, id: Optional[str] = None) -> dict[str, Any]:
        """Create, register and return a new record of *resource_type*."""
        if not isinstance(resource_type, str) or not resource_type:
            raise ValueError(
                f"resource_type must be a non-empty string, got: {resource_type!r}"
            )
        record = {
            "resourceType": resource_type,
            "id": id if id else self._next_id(resource_type),
        }
        self._records.append(record)
        return record

    def find_or_create(self, resource_type: str, id: str) -> dict[str, Any]:
        """The record of *resource_type* with *id*, created if missing."""
        existing = self.by_id(resource_type, id)
        if existing is not None:
            return existing
        return self.create(resource_type, id)

    def add(self, record: dict[str, Any]) -> dict[str, Any]:
        """Register a record built elsewhere.

        An existing ``id`` is kept; one is assigned only when missing.
        Adding a record that is already registered is a no-op.

        Raises:
            TypeError: If *record* is not a dict.
            ValueError: If *record* has no ``resourceType``.
        """
        if not isinstance(record, dict):
            raise TypeError(f"Expected a dict, got: {type(record).__name__}")
        resource_type = record.get("resourceType")
        if not resource_type:
            raise ValueError("Record has no resourceType")
        if record in self:
            return record
        if not record.get("id"):
            record["id"] = self._next_id(resource_type)
        self._records.append(record)
        return record

    def first(self, resource_type: str) -> Optional[dict[str, Any]]:
        for record in self._records:
            if record["resourceType"] == resource_type:
                return record
        return None

    def last(self, resource_type: str) -> Optional[dict[str, Any]]:
        for record in reversed(self._records):
            if record["resourceType"] == resource_type:
                return record
        return None

    def all(self, resource_type: str) -> list[dict[str, Any]]:
        return [r for r in self._records if r["resourceType"] == resource_type]

    def by_id(self, resource_type: str, id: str) -> Optional[dict[str, Any]]:
        for record in self._records:
            if record["resourceType"] == resource_type and record.get("id") == id:
                return record
        return None

    def records(self) -> list[dict[str, Any]]:
        """All records in creation order."""
        return list(self._records)


@dataclass
class SessionState:
    """Everything that belongs to the conversion of one message.

    Attributes:
        tables:         Code tables and concept maps in effect.
        id_generator:   Id strategy handed to the record registry.
        fallback_kind:  Classification used when no evidence decides an
                        immunization group.
        registry:       Records created so far.
        profiles:       Message profile identifiers (MSH-21), in order.
        event_code:     Message type (MSH-9.1), once seen.
        bundle:         Extra top-level fields for the output Bundle.
        properties:     Helper state shared between parsers.
        classification: Cached result of the last classification.
    """

    tables: CodeTables = field(default_factory=default_tables)
    id_generator: IdGenerator = field(default_factory=uuid_ids)
    fallback_kind: Kind = Kind.UNKNOWN
    registry: RecordRegistry = field(init=False)
    profiles: list[str] = field(default_factory=list)
    event_code: str = ""
    bundle: dict[str, Any] = field(default_factory=dict)
    properties: dict[str, Any] = field(default_factory=dict)
    classification: Optional[Kind] = None

    def __post_init__(self) -> None:
        self.registry = RecordRegistry(self.id_generator)

    def add_profile(self, profile: str) -> None:
        if profile and profile not in self.profiles:
            self.profiles.append(profile)
