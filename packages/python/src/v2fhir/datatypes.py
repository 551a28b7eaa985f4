"""
Default V2 → FHIR scalar conversion.

One function per FHIR target type, each taking a single V2 field value
(already narrowed to a component when a rule asks for one) and returning a
FHIR JSON value, or ``None`` when nothing usable is present.  The mapping
engine reaches these only through :func:`convert`, keyed by the FHIR type
name a rule declares.

Additional target types can be added with :func:`register_datatype`.
"""

from __future__ import annotations

import re
from datetime import date, time
from typing import Any, Callable, Optional

from v2fhir.structure import (
    Composite,
    RawField,
    Varies,
    component_text,
    resolve_varies,
)
from v2fhir.tables import CodeTables, default_tables, v2_table


DatatypeConverter = Callable[[RawField, str, CodeTables], Any]


# Coding system names commonly found in CWE-3 / CWE-6.
SYSTEM_ALIASES: dict[str, str] = {
    "CVX": "http://hl7.org/fhir/sid/cvx",
    "MVX": "http://terminology.hl7.org/CodeSystem/MVX",
    "LN": "http://loinc.org",
    "SCT": "http://snomed.info/sct",
    "NDC": "http://hl7.org/fhir/sid/ndc",
    "UCUM": "http://unitsofmeasure.org",
    "I10": "http://hl7.org/fhir/sid/icd-10-cm",
    "CPT": "http://www.ama-assn.org/go/cpt",
    "NCIT": "http://ncimeta.nci.nih.gov",
}

_NAME_USE = {
    "A": "anonymous", "B": "official", "C": "official", "D": "usual",
    "L": "official", "M": "maiden", "N": "nickname", "S": "anonymous",
    "T": "temp",
}
_ADDRESS_USE = {"B": "work", "C": "temp", "H": "home", "O": "work"}
_TELECOM_USE = {"PRN": "home", "WPN": "work", "ORN": "home", "VHN": "home",
                "EMR": "temp", "PRS": "mobile"}
_TELECOM_SYSTEM = {"PH": "phone", "FX": "fax", "CP": "phone",
                   "Internet": "email", "X.400": "email", "BP": "pager"}

_DTM = re.compile(
    r"^(\d{4})(\d{2})?(\d{2})?(\d{2})?(\d{2})?(\d{2})?(\.\d{1,4})?([+-]\d{4})?$"
)


# ── Small helpers ─────────────────────────────────────────────────


def _text(raw: Optional[RawField]) -> str:
    if raw is None:
        return ""
    return raw.text().strip()


def _comp(raw: RawField, number: int) -> str:
    return component_text(raw, number).strip()


def _resolve_system(name: str, tables: CodeTables) -> Optional[str]:
    """Map a V2 coding system name to a FHIR system URI."""
    if not name:
        return None
    if name in SYSTEM_ALIASES:
        return SYSTEM_ALIASES[name]
    upper = name.upper()
    if upper.startswith("HL7") and name[3:].lstrip("-_").isdigit():
        return tables.system_for(name[3:].lstrip("-_").rjust(4, "0"))
    if name.isdigit():
        return v2_table(name)
    return name


def _number(text: str) -> Optional[float | int]:
    text = text.strip()
    if not text:
        return None
    try:
        if re.fullmatch(r"[+-]?\d+", text):
            return int(text)
        return float(text)
    except ValueError:
        return None


def _strip_empty(value: dict[str, Any]) -> Optional[dict[str, Any]]:
    cleaned = {k: v for k, v in value.items() if v not in (None, "", [], {})}
    return cleaned or None


# ── Primitive types ───────────────────────────────────────────────


def to_string(raw: RawField, table: str, tables: CodeTables) -> Optional[str]:
    return _text(raw) or None


def to_code(raw: RawField, table: str, tables: CodeTables) -> Optional[str]:
    code = _comp(raw, 1)
    return code or None


def to_decimal(raw: RawField, table: str, tables: CodeTables) -> Optional[float | int]:
    return _number(_text(raw))


def to_integer(raw: RawField, table: str, tables: CodeTables) -> Optional[int]:
    value = _number(_text(raw))
    if isinstance(value, float):
        return int(value) if value.is_integer() else None
    return value


def to_positive_int(raw: RawField, table: str, tables: CodeTables) -> Optional[int]:
    value = to_integer(raw, table, tables)
    return value if value is not None and value > 0 else None


def to_boolean(raw: RawField, table: str, tables: CodeTables) -> Optional[bool]:
    text = _text(raw).upper()
    if text in ("Y", "YES", "T", "TRUE", "1"):
        return True
    if text in ("N", "NO", "F", "FALSE", "0"):
        return False
    return None


def _real_moment(year, month, day, hour, minute, second, zone) -> bool:
    """Whether the parts name a calendar date and clock time that exist."""
    try:
        date(int(year), int(month or 1), int(day or 1))
        time(int(hour or 0), int(minute or 0), int(second or 0))
    except ValueError:
        return False
    return not zone or (int(zone[1:3]) <= 14 and int(zone[3:]) <= 59)


def to_date_time(raw: RawField, table: str, tables: CodeTables) -> Optional[str]:
    """Convert a V2 DTM/TS to a FHIR dateTime, keeping its precision."""
    match = _DTM.match(_text(raw))
    if match is None:
        return None
    year, month, day, hour, minute, second, frac, zone = match.groups()
    if not _real_moment(year, month, day, hour, minute, second, zone):
        return None
    if month is None:
        return year
    if day is None:
        return f"{year}-{month}"
    out = f"{year}-{month}-{day}"
    if hour is None:
        return out
    out += f"T{hour}:{minute or '00'}:{second or '00'}"
    if frac and second:
        out += frac
    if zone:
        out += f"{zone[:3]}:{zone[3:]}"
    return out


def to_date(raw: RawField, table: str, tables: CodeTables) -> Optional[str]:
    value = to_date_time(raw, table, tables)
    if value is None:
        return None
    return value.split("T", 1)[0]


def to_instant(raw: RawField, table: str, tables: CodeTables) -> Optional[str]:
    value = to_date_time(raw, table, tables)
    # An instant needs at least seconds precision.
    if value is None or "T" not in value:
        return None
    return value


# ── Coded types ───────────────────────────────────────────────────


def _coding_at(
    raw: RawField, first: int, table: str, tables: CodeTables,
) -> Optional[dict[str, Any]]:
    """Coding built from components (first, first+1, first+2) of a CWE."""
    code = _comp(raw, first)
    if not code:
        return None
    display = _comp(raw, first + 1)
    system = _resolve_system(_comp(raw, first + 2), tables)
    if system is None and table and first == 1:
        system = tables.system_for(table)
    coding: dict[str, Any] = {"system": system, "code": code}
    lookup = tables.lookup_table(table) if table and first == 1 else None
    if lookup is not None and system == lookup.system:
        display = display or (lookup.display(code) or "")
    if display:
        coding["display"] = display
    return _strip_empty(coding)


def to_coding(raw: RawField, table: str, tables: CodeTables) -> Optional[dict[str, Any]]:
    if isinstance(raw, Composite):
        return _coding_at(raw, 1, table, tables)
    code = _text(raw)
    if not code:
        return None
    lookup = tables.lookup_table(table)
    if lookup is not None:
        translated = lookup.translate(code)
        if translated is not None:
            return translated
    coding: dict[str, Any] = {"code": code}
    if table:
        coding["system"] = tables.system_for(table)
    return coding


def to_codeable_concept(
    raw: RawField, table: str, tables: CodeTables,
) -> Optional[dict[str, Any]]:
    codings: list[dict[str, Any]] = []
    text = ""
    if isinstance(raw, Composite):
        for first in (1, 4):
            coding = _coding_at(raw, first, table, tables)
            if coding is not None:
                codings.append(coding)
        text = _comp(raw, 9)
        if not codings and not text:
            text = _comp(raw, 2)
    else:
        coding = to_coding(raw, table, tables)
        if coding is not None:
            codings.append(coding)
    return _strip_empty({"coding": codings, "text": text})


def to_identifier(raw: RawField, table: str, tables: CodeTables) -> Optional[dict[str, Any]]:
    value = _comp(raw, 1)
    if not value:
        return None
    ident: dict[str, Any] = {"value": value}
    if isinstance(raw, Composite):
        if raw.type_name in ("EI", "EIP", "HD"):
            system = _comp(raw, 2)
        else:
            system = _comp(raw, 4)
            type_code = _comp(raw, 5)
            if type_code:
                type_coding = tables.lookup_table("0203")
                coding = (
                    type_coding.translate(type_code) if type_coding is not None else None
                ) or {"system": v2_table("0203"), "code": type_code}
                ident["type"] = {"coding": [coding]}
        if system:
            ident["system"] = _resolve_system(system, tables)
    return ident


# ── Demographic types ─────────────────────────────────────────────


def _human_name(raw: RawField, offset: int) -> Optional[dict[str, Any]]:
    family = _comp(raw, offset)
    if isinstance(raw, Composite):
        family_part = raw.component(offset)
        if isinstance(family_part, Composite):
            family = _comp(family_part, 1)
    given = [g for g in (_comp(raw, offset + 1), _comp(raw, offset + 2)) if g]
    suffix = _comp(raw, offset + 3)
    prefix = _comp(raw, offset + 4)
    use = _NAME_USE.get(_comp(raw, offset + 6))
    return _strip_empty({
        "use": use,
        "family": family,
        "given": given,
        "prefix": [prefix] if prefix else [],
        "suffix": [suffix] if suffix else [],
    })


def to_human_name(raw: RawField, table: str, tables: CodeTables) -> Optional[dict[str, Any]]:
    return _human_name(raw, 1)


def to_address(raw: RawField, table: str, tables: CodeTables) -> Optional[dict[str, Any]]:
    street = _comp(raw, 1)
    if isinstance(raw, Composite) and isinstance(raw.component(1), Composite):
        street = _comp(raw.component(1), 1)
    lines = [line for line in (street, _comp(raw, 2)) if line]
    return _strip_empty({
        "use": _ADDRESS_USE.get(_comp(raw, 7)),
        "line": lines,
        "city": _comp(raw, 3),
        "state": _comp(raw, 4),
        "postalCode": _comp(raw, 5),
        "country": _comp(raw, 6),
    })


def to_contact_point(raw: RawField, table: str, tables: CodeTables) -> Optional[dict[str, Any]]:
    equipment = _comp(raw, 3)
    system = _TELECOM_SYSTEM.get(equipment)
    value = _comp(raw, 4) if system == "email" else ""
    if not value:
        area, local = _comp(raw, 6), _comp(raw, 7)
        if local:
            value = f"({area}){local}" if area else local
    if not value:
        value = _comp(raw, 1)
    if not value:
        return None
    use = _TELECOM_USE.get(_comp(raw, 2))
    if equipment == "CP":
        use = "mobile"
    return _strip_empty({"system": system, "value": value, "use": use})


def to_quantity(raw: RawField, table: str, tables: CodeTables) -> Optional[dict[str, Any]]:
    value = _number(_comp(raw, 1))
    if value is None:
        return None
    quantity: dict[str, Any] = {"value": value}
    unit = _comp(raw, 2)
    if unit:
        quantity["unit"] = unit
        quantity["code"] = unit
        quantity["system"] = SYSTEM_ALIASES["UCUM"]
    return quantity


# ── Standalone resources ──────────────────────────────────────────


def to_practitioner(raw: RawField, table: str, tables: CodeTables) -> Optional[dict[str, Any]]:
    """XCN → standalone Practitioner (no id; the caller registers it)."""
    ident = None
    id_value = _comp(raw, 1)
    if id_value:
        ident = {"value": id_value}
        authority = _comp(raw, 9)
        if authority:
            ident["system"] = _resolve_system(authority, tables)
    name = _human_name(raw, 2) if isinstance(raw, Composite) else None
    if ident is None and name is None:
        return None
    practitioner: dict[str, Any] = {"resourceType": "Practitioner"}
    if ident is not None:
        practitioner["identifier"] = [ident]
    if name is not None:
        practitioner["name"] = [name]
    return practitioner


def to_organization(raw: RawField, table: str, tables: CodeTables) -> Optional[dict[str, Any]]:
    """XON (name + identifier), HD, or a coded value (CWE) → Organization."""
    if isinstance(raw, Composite) and raw.type_name == "HD":
        namespace, universal_id = _comp(raw, 1), _comp(raw, 2)
        if not namespace and not universal_id:
            return None
        org: dict[str, Any] = {"resourceType": "Organization"}
        if namespace:
            org["name"] = namespace
        if universal_id:
            system = "urn:ietf:rfc:3986" if _comp(raw, 3) == "ISO" else None
            org["identifier"] = [_strip_empty({
                "system": system,
                "value": f"urn:oid:{universal_id}" if system else universal_id,
            })]
        return org
    if isinstance(raw, Composite) and raw.type_name in ("CWE", "CE"):
        coding = to_coding(raw, table, tables)
        if coding is None:
            return None
        org = {"resourceType": "Organization"}
        if coding.get("display"):
            org["name"] = coding["display"]
        org["identifier"] = [_strip_empty({
            "system": coding.get("system"), "value": coding.get("code"),
        })]
        return org
    name = _comp(raw, 1)
    id_value = _comp(raw, 10) or _comp(raw, 3)
    if not name and not id_value:
        return None
    org = {"resourceType": "Organization"}
    if name:
        org["name"] = name
    if id_value:
        ident: dict[str, Any] = {"value": id_value}
        authority = _comp(raw, 6)
        if authority:
            ident["system"] = _resolve_system(authority, tables)
        org["identifier"] = [ident]
    return org


def to_location(raw: RawField, table: str, tables: CodeTables) -> Optional[dict[str, Any]]:
    """PL / LA2 → Location named after its most specific part."""
    description = _comp(raw, 9)
    parts = [p for p in (_comp(raw, 4), _comp(raw, 1), _comp(raw, 2), _comp(raw, 3)) if p]
    name = description or " ".join(parts)
    if not name:
        return None
    return {"resourceType": "Location", "name": name}


# ═══════════════════════════════════════════════════════════════════
# Registry and dispatch
# ═══════════════════════════════════════════════════════════════════

_BUILTIN_CONVERTERS: dict[str, DatatypeConverter] = {
    "string": to_string,
    "code": to_code,
    "id": to_string,
    "decimal": to_decimal,
    "integer": to_integer,
    "positiveInt": to_positive_int,
    "boolean": to_boolean,
    "date": to_date,
    "dateTime": to_date_time,
    "instant": to_instant,
    "Coding": to_coding,
    "CodeableConcept": to_codeable_concept,
    "Identifier": to_identifier,
    "HumanName": to_human_name,
    "Address": to_address,
    "ContactPoint": to_contact_point,
    "Quantity": to_quantity,
    "Practitioner": to_practitioner,
    "Organization": to_organization,
    "Location": to_location,
}

_registry: dict[str, DatatypeConverter] = dict(_BUILTIN_CONVERTERS)


def register_datatype(
    name: str,
    fn: DatatypeConverter,
    *,
    force: bool = False,
) -> None:
    """Register a converter for FHIR target type *name*.

    Raises:
        ValueError: If *name* is empty, or already registered and *force*
            is not set.
        TypeError: If *fn* is not callable.
    """
    if not isinstance(name, str) or not name.strip():
        raise ValueError(f"Datatype name must be a non-empty string, got: {name!r}")
    if not callable(fn):
        raise TypeError(f"Converter must be callable, got: {type(fn).__name__}")
    if not force and name in _registry:
        raise ValueError(
            f"Datatype '{name}' is already registered. Pass force=True to override."
        )
    _registry[name] = fn


def unregister_datatype(name: str) -> None:
    """Remove a custom converter.  Built-in converters cannot be removed."""
    if name in _BUILTIN_CONVERTERS:
        raise ValueError(f"Cannot unregister built-in datatype '{name}'")
    _registry.pop(name, None)


def is_datatype(name: str) -> bool:
    return name in _registry


def list_datatypes() -> list[str]:
    return sorted(_registry)


def convert(
    datatype: str,
    raw: Optional[RawField],
    table: str = "",
    tables: Optional[CodeTables] = None,
) -> Any:
    """Convert one V2 value to FHIR type *datatype*.

    Returns ``None`` when *raw* is empty or carries nothing convertible.

    Raises:
        KeyError: If *datatype* is not registered.
    """
    try:
        fn = _registry[datatype]
    except KeyError:
        raise KeyError(
            f"No converter registered for datatype '{datatype}'. "
            f"Available: {sorted(_registry)}"
        ) from None
    if raw is None:
        return None
    if isinstance(raw, Varies):
        raw = resolve_varies(raw, None)
    if raw.is_empty():
        return None
    return fn(raw, table, tables if tables is not None else default_tables())


__all__ = [
    "DatatypeConverter",
    "convert",
    "is_datatype",
    "list_datatypes",
    "register_datatype",
    "unregister_datatype",
]
