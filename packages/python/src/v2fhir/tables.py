"""
HL7 V2 code tables and concept maps.

Tables translate a V2 code (``F`` in table 0085) into a FHIR Coding with
the right system URI and display.  Concept maps remap a Coding from one
code system into another (V2 table 0322 ``CP`` → event-status
``completed``).  Both are plain YAML bundled under ``v2fhir/data`` and may
be replaced with :func:`load_tables`.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from functools import lru_cache
from pathlib import Path
from typing import Any, Optional

import yaml  # type: ignore[import-untyped]


V2_TABLE_PREFIX = "http://terminology.hl7.org/CodeSystem/v2-"

_DATA_DIR = Path(__file__).with_name("data")
_DEFAULT_TABLES = _DATA_DIR / "tables.yaml"
_DEFAULT_CONCEPT_MAPS = _DATA_DIR / "concept_maps.yaml"


def v2_table(name: str) -> str:
    """Return the FHIR system URI for V2 table *name*.

    Accepts ``"85"``, ``"0085"``, ``"HL70085"`` and ``"HL7-0085"``.
    """
    if name.upper().startswith("HL7"):
        name = name[3:]
    if name[:1] in ("-", "_"):
        name = name[1:]
    return V2_TABLE_PREFIX + name.rjust(4, "0")[-4:]


def _system_key(system: str) -> str:
    # Bare table numbers and V2 system URIs compare equal.
    if system.isdigit() or system.upper().startswith("HL7"):
        return v2_table(system)
    return system


@dataclass(frozen=True)
class CodeTable:
    """One named code table."""

    name: str
    system: str
    codes: dict[str, str] = field(default_factory=dict)

    def translate(self, code: str) -> Optional[dict[str, Any]]:
        """Return a FHIR Coding for *code*, or ``None`` if it is not in the table."""
        if code not in self.codes:
            return None
        coding: dict[str, Any] = {"system": self.system, "code": code}
        display = self.codes[code]
        if display:
            coding["display"] = display
        return coding

    def display(self, code: str) -> Optional[str]:
        return self.codes.get(code) or None


@dataclass(frozen=True)
class ConceptMap:
    """Maps ``(system, code)`` pairs onto target Codings."""

    name: str
    target_system: str
    mappings: dict[tuple[str, str], dict[str, Any]] = field(default_factory=dict)

    def translate(self, coding: dict[str, Any]) -> Optional[dict[str, Any]]:
        """Return the target Coding for *coding*, or ``None`` when unmapped."""
        code = coding.get("code")
        if not code:
            return None
        system = _system_key(coding.get("system") or "")
        target = self.mappings.get((system, code))
        return dict(target) if target is not None else None


@dataclass(frozen=True)
class CodeTables:
    """The set of code tables and concept maps in effect for a conversion."""

    tables: dict[str, CodeTable] = field(default_factory=dict)
    concept_maps: dict[str, ConceptMap] = field(default_factory=dict)

    def lookup_table(self, name: str) -> Optional[CodeTable]:
        if not name:
            return None
        table = self.tables.get(name)
        if table is None and name.isdigit():
            table = self.tables.get(name.rjust(4, "0"))
        return table

    def system_for(self, name: str) -> str:
        """System URI for table *name*, known or not."""
        table = self.lookup_table(name)
        if table is not None:
            return table.system
        return v2_table(name) if name.isdigit() else name

    def concept_map(self, name: str) -> Optional[ConceptMap]:
        return self.concept_maps.get(name)


# ── YAML loading ──────────────────────────────────────────────────


def _read_yaml(path: Path) -> dict[str, Any]:
    try:
        raw = yaml.safe_load(path.read_text(encoding="utf-8"))
    except FileNotFoundError as exc:
        raise ValueError(f"Code table file not found: {path}") from exc
    except yaml.YAMLError as exc:
        raise ValueError(f"Invalid YAML in code table file: {path}") from exc
    if raw is None:
        return {}
    if not isinstance(raw, dict):
        raise ValueError(f"Code table file must contain a mapping: {path}")
    return raw


def _parse_tables(raw: dict[str, Any], path: Path) -> dict[str, CodeTable]:
    tables: dict[str, CodeTable] = {}
    for name, body in raw.items():
        name = str(name)
        if not isinstance(body, dict):
            raise ValueError(f"Table {name} in {path} must be a mapping")
        codes = body.get("codes") or {}
        if not isinstance(codes, dict):
            raise ValueError(f"Table {name} in {path}: 'codes' must be a mapping")
        system = body.get("system") or v2_table(name)
        tables[name] = CodeTable(
            name=name,
            system=str(system),
            codes={str(k): "" if v is None else str(v) for k, v in codes.items()},
        )
    return tables


def _parse_concept_maps(raw: dict[str, Any], path: Path) -> dict[str, ConceptMap]:
    maps: dict[str, ConceptMap] = {}
    for name, body in raw.items():
        name = str(name)
        if not isinstance(body, dict) or "target_system" not in body:
            raise ValueError(
                f"Concept map {name} in {path} needs a 'target_system'"
            )
        target_system = str(body["target_system"])
        mappings: dict[tuple[str, str], dict[str, Any]] = {}
        for key, target in (body.get("map") or {}).items():
            source_system, sep, code = str(key).rpartition("|")
            if not sep or not source_system:
                raise ValueError(
                    f"Concept map {name} in {path}: key '{key}' must be 'system|code'"
                )
            if isinstance(target, dict):
                coding = {"system": target_system, **target}
            else:
                coding = {"system": target_system, "code": str(target)}
            mappings[(_system_key(source_system), code)] = coding
        maps[name] = ConceptMap(name, target_system, mappings)
    return maps


def load_tables(
    path: Optional[Path] = None,
    concept_maps_path: Optional[Path] = None,
) -> CodeTables:
    """Load code tables and concept maps from YAML files.

    Args:
        path: Table file; defaults to the bundled ``data/tables.yaml``.
        concept_maps_path: Concept map file; defaults to the bundled
            ``data/concept_maps.yaml``.

    Raises:
        ValueError: If a file is missing, is not valid YAML, or does not
            have the expected shape.
    """
    table_path = Path(path) if path is not None else _DEFAULT_TABLES
    map_path = (
        Path(concept_maps_path) if concept_maps_path is not None
        else _DEFAULT_CONCEPT_MAPS
    )
    tables = _parse_tables(_read_yaml(table_path), table_path)
    concept_maps = _parse_concept_maps(_read_yaml(map_path), map_path)
    return CodeTables(tables=tables, concept_maps=concept_maps)


@lru_cache(maxsize=1)
def default_tables() -> CodeTables:
    """The bundled tables, loaded once per process."""
    return load_tables()
