"""Helpers shared by the immunization segment parsers."""

from __future__ import annotations

from typing import Any

from v2fhir.tables import CodeTables, v2_table


def table_coding(tables: CodeTables, table: str, code: str) -> dict[str, Any]:
    """Coding for *code* in *table*, with the table's display when known."""
    lookup = tables.lookup_table(table)
    coding = lookup.translate(code) if lookup is not None else None
    return coding or {"system": v2_table(table), "code": code}


def performer_function(tables: CodeTables, code: str) -> dict[str, Any]:
    """Immunization.performer.function from table 0443 (AP, OP)."""
    return {"coding": [table_coding(tables, "0443", code)]}


def typed_identifier(
    tables: CodeTables, identifier: dict[str, Any], type_code: str,
) -> dict[str, Any]:
    """Copy of *identifier* typed with *type_code* from table 0203."""
    return {**identifier, "type": {"coding": [table_coding(tables, "0203", type_code)]}}


def merge_codings(target: dict[str, Any], concept: dict[str, Any]) -> None:
    """Append the codings of *concept* that *target* does not have yet."""
    codings = target.setdefault("coding", [])
    for coding in concept.get("coding", []):
        if coding not in codings:
            codings.append(coding)
    if concept.get("text"):
        target.setdefault("text", concept["text"])
