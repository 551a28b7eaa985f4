"""
Rule evaluation: run ordered rules against one structure.

Each rule goes extract → convert → handler, once per non-empty
repetition.  A failure inside one rule is logged and recorded on its
:class:`Binding`; the remaining rules still run.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Iterable, Optional

from v2fhir.mapping._declarations import Rule
from v2fhir.mapping._dispatch import convert_value
from v2fhir.mapping._extractor import extract
from v2fhir.structure import RawField, Structure

logger = logging.getLogger(__name__)


class Outcome(str, Enum):
    APPLIED = "applied"
    SKIPPED_EMPTY = "skipped-empty"
    SKIPPED_NO_TARGET = "skipped-no-target"
    FAILED = "failed"


@dataclass
class Binding:
    """What one rule did with one structure.

    Attributes:
        rule:       The rule evaluated.
        raw_values: Non-empty raw values extracted.
        values:     Converted values handed to the handler, in order.
        outcome:    Applied, skipped (nothing extracted / nothing
                    converted) or failed.
        error:      Failure message when ``outcome`` is ``FAILED``.
    """

    rule: Rule
    raw_values: list[RawField] = field(default_factory=list)
    values: list[Any] = field(default_factory=list)
    outcome: Outcome = Outcome.SKIPPED_EMPTY
    error: Optional[str] = None


def _apply(
    rule: Rule,
    structure: Optional[Structure],
    parser: Any,
    binding: Binding,
    current: list[RawField],
) -> None:
    binding.raw_values = extract(rule, structure)
    if not binding.raw_values:
        binding.outcome = Outcome.SKIPPED_EMPTY
        return
    tables = getattr(getattr(parser, "session", None), "tables", None)
    for raw in binding.raw_values:
        current[:] = [raw]
        value = convert_value(rule, raw, tables)
        if value is None:
            continue
        binding.values.append(value)
        rule.handler(parser, value)
    binding.outcome = Outcome.APPLIED if binding.values else Outcome.SKIPPED_NO_TARGET


def evaluate(
    rules: Iterable[Rule],
    structure: Optional[Structure],
    parser: Any,
) -> list[Binding]:
    """Evaluate *rules* in order against *structure*.

    Args:
        rules:     Ordered rules, normally from :func:`build_rules`.
        structure: The structure being converted.
        parser:    Parser instance passed as the handlers' first argument;
                   its ``session.tables`` is used for conversion.

    Returns:
        One :class:`Binding` per rule, in evaluation order.
    """
    bindings: list[Binding] = []
    for rule in rules:
        binding = Binding(rule)
        current: list[RawField] = []
        try:
            _apply(rule, structure, parser, binding, current)
        except Exception as exc:  # noqa: BLE001
            binding.outcome = Outcome.FAILED
            binding.error = f"{type(exc).__name__}: {exc}"
            logger.warning(
                "%s: rule for %s from %s failed on %r: %s",
                rule.declaration.handler_name,
                rule.declaration.path,
                rule.source(),
                current[0] if current else None,
                binding.error,
            )
        else:
            if binding.outcome is not Outcome.APPLIED:
                logger.debug(
                    "%s: nothing for %s (%s)",
                    rule.source(), rule.declaration.path, binding.outcome.value,
                )
        bindings.append(binding)
    return bindings
