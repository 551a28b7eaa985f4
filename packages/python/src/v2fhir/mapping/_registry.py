"""
Rule registry: parser class → ordered, immutable rules.

Rules are derived once per parser class from its ``produces`` and
``declarations`` attributes and cached for the life of the process.  All
configuration checks happen here, so a bad declaration fails when the
parser class is registered instead of half-way through a message.
"""

from __future__ import annotations

import logging
import threading
from typing import Any, Optional

from v2fhir.datatypes import is_datatype
from v2fhir.mapping._constants import RAW
from v2fhir.mapping._declarations import (
    ComesFrom,
    MappingConfigurationError,
    Produces,
    Rule,
)
from v2fhir.tables import default_tables

logger = logging.getLogger(__name__)


_rule_cache: dict[type, tuple[Rule, ...]] = {}
_cache_lock = threading.Lock()

_parsers: dict[str, type] = {}


# ── Validation ────────────────────────────────────────────────────


def _collect(parser_type: type) -> list[ComesFrom]:
    """Declarations of *parser_type* and its bases, base classes first."""
    collected: list[ComesFrom] = []
    for klass in reversed(parser_type.__mro__):
        declared = klass.__dict__.get("declarations", ())
        if not isinstance(declared, (tuple, list)):
            raise MappingConfigurationError(
                f"{klass.__name__}.declarations must be a tuple of ComesFrom, "
                f"got: {type(declared).__name__}"
            )
        for decl in declared:
            if not isinstance(decl, ComesFrom):
                raise MappingConfigurationError(
                    f"{klass.__name__}.declarations contains {decl!r}, "
                    f"expected ComesFrom"
                )
            collected.append(decl)
    return collected


def _validate(owner: str, produces: Produces, decl: ComesFrom) -> None:
    where = f"{owner}.{decl.handler_name}"

    if decl.fixed and decl.field > 0:
        raise MappingConfigurationError(
            f"{where}: declaration for '{decl.path}' sets both fixed "
            f"and field={decl.field}"
        )
    if not decl.fixed and decl.field <= 0:
        raise MappingConfigurationError(
            f"{where}: declaration for '{decl.path}' needs either a fixed "
            f"value or a field > 0"
        )
    if decl.component < 0:
        raise MappingConfigurationError(
            f"{where}: component must be >= 0, got {decl.component}"
        )
    if decl.fixed and decl.component:
        raise MappingConfigurationError(
            f"{where}: a fixed declaration cannot name a component"
        )
    if not callable(decl.handler):
        raise MappingConfigurationError(
            f"{owner}: declaration for '{decl.path}' has no callable handler"
        )
    if decl.datatype != RAW and not is_datatype(decl.datatype):
        raise MappingConfigurationError(
            f"{where}: unrecognised datatype '{decl.datatype}' for '{decl.path}'"
        )
    if decl.resource_type not in produces.resource_types():
        raise MappingConfigurationError(
            f"{where}: path '{decl.path}' does not start with one of "
            f"{list(produces.resource_types())}"
        )
    if decl.map and default_tables().concept_map(decl.map) is None:
        raise MappingConfigurationError(
            f"{where}: unknown concept map '{decl.map}'"
        )


def _derive(parser_type: type) -> tuple[Rule, ...]:
    owner = parser_type.__name__
    produces = getattr(parser_type, "produces", None)
    if not isinstance(produces, Produces):
        raise MappingConfigurationError(
            f"{owner} must declare 'produces = Produces(...)'"
        )
    rules = []
    for decl in _collect(parser_type):
        _validate(owner, produces, decl)
        rules.append(Rule(owner=owner, declaration=decl))
    rules.sort(key=Rule.sort_key)
    return tuple(rules)


# ═══════════════════════════════════════════════════════════════════
# Public API
# ═══════════════════════════════════════════════════════════════════


def build_rules(parser_type: type) -> tuple[Rule, ...]:
    """Return the ordered rules of *parser_type*.

    Order: priority descending, then field, then component, then the
    declaration's :meth:`~Rule.describe` string.  The result is cached;
    calling this twice returns equal (and identical) tuples.

    Raises:
        TypeError: If *parser_type* is not a class.
        MappingConfigurationError: If a declaration is invalid.
    """
    if not isinstance(parser_type, type):
        raise TypeError(f"Expected a parser class, got: {type(parser_type).__name__}")
    cached = _rule_cache.get(parser_type)
    if cached is not None:
        return cached
    with _cache_lock:
        cached = _rule_cache.get(parser_type)
        if cached is None:
            cached = _derive(parser_type)
            _rule_cache[parser_type] = cached
            logger.debug("Built %d rules for %s", len(cached), parser_type.__name__)
    return cached


def register_parser(parser_type: Any = None, *, force: bool = False) -> Any:
    """Class decorator: build the rules of a parser and register it.

    Usable bare (``@register_parser``) or with options
    (``@register_parser(force=True)``).  Rules are built immediately so a
    configuration error surfaces on import.

    Raises:
        ValueError: If another parser is registered for the same segment
            and *force* is not set.
        MappingConfigurationError: If a declaration is invalid.
    """

    def decorate(cls: type) -> type:
        build_rules(cls)
        segment = cls.produces.segment
        existing = _parsers.get(segment)
        if existing is not None and existing is not cls and not force:
            raise ValueError(
                f"Segment '{segment}' already handled by {existing.__name__}. "
                f"Pass force=True to override."
            )
        _parsers[segment] = cls
        return cls

    if parser_type is None:
        return decorate
    return decorate(parser_type)


def unregister_parser(segment: str) -> None:
    _parsers.pop(segment, None)


def get_parser_type(segment: str) -> Optional[type]:
    """Parser class registered for *segment*, or ``None``."""
    return _parsers.get(segment)


def registered_parsers() -> dict[str, type]:
    return dict(_parsers)


def clear_rule_cache() -> None:
    """Forget all built rules (registered parsers are kept)."""
    with _cache_lock:
        _rule_cache.clear()
