"""
v2fhir: declarative HL7 V2 to FHIR R4 conversion.

Parsed V2 segments go in, a FHIR message Bundle comes out.  Each segment
type is handled by a parser class whose field mappings are written as a
static declaration table; see :mod:`v2fhir.mapping`.
"""

import logging

__version__ = "0.3.0"

from v2fhir.structure import (
    Composite,
    Group,
    Primitive,
    Segment,
    Varies,
    resolve_varies,
)
from v2fhir.tables import CodeTables, default_tables, load_tables, v2_table
from v2fhir.datatypes import (
    convert,
    is_datatype,
    list_datatypes,
    register_datatype,
    unregister_datatype,
)
from v2fhir.mapping import (
    Binding,
    ComesFrom,
    ConversionReport,
    Kind,
    MappingConfigurationError,
    MessageConverter,
    Outcome,
    Produces,
    RecordRegistry,
    Rule,
    SessionState,
    StructureParser,
    build_rules,
    classify,
    evaluate,
    extract,
    register_parser,
    sequential_ids,
)

# Built-in segment parsers register themselves on import.
from v2fhir import segments  # noqa: E402,F401

logging.getLogger(__name__).addHandler(logging.NullHandler())

__all__ = [
    "__version__",
    # Structure model
    "Composite",
    "Group",
    "Primitive",
    "Segment",
    "Varies",
    "resolve_varies",
    # Tables
    "CodeTables",
    "default_tables",
    "load_tables",
    "v2_table",
    # Datatypes
    "convert",
    "is_datatype",
    "list_datatypes",
    "register_datatype",
    "unregister_datatype",
    # Mapping engine
    "Binding",
    "ComesFrom",
    "ConversionReport",
    "Kind",
    "MappingConfigurationError",
    "MessageConverter",
    "Outcome",
    "Produces",
    "RecordRegistry",
    "Rule",
    "SessionState",
    "StructureParser",
    "build_rules",
    "classify",
    "evaluate",
    "extract",
    "register_parser",
    "sequential_ids",
]
