"""
Declarative HL7 V2 → FHIR mapping engine.

A parser class names the structure it handles and the records it may
create (:class:`Produces`), then lists where each target attribute comes
from (:class:`ComesFrom`).  At run time:

  1. :func:`build_rules` turns the declarations into ordered, cached
     :class:`Rule` objects (priority descending, then field, then
     component);
  2. the parser's ``setup()`` returns the primary record, or ``None`` to
     skip the structure;
  3. :func:`evaluate` runs each rule: :func:`extract` the raw values,
     :func:`convert_value` them to FHIR types, and call the handler once
     per non-empty repetition.

Immunization order groups, which may stand for either an ``Immunization``
or an ``ImmunizationRecommendation``, are classified by :func:`classify`.

Architecture notes:
  - Declarations are a static table on each parser class; nothing is
    discovered by inspecting method signatures.
  - Handlers are plain functions ``(parser, value)``.
  - All per-message state lives in a :class:`SessionState`; the rule
    cache is the only process-wide state.
"""

from v2fhir.mapping._constants import (
    IMMUNIZATION_PROFILES,
    NO_VACCINE_ADMINISTERED,
    RAW,
    RECOMMENDATION_PROFILES,
    Kind,
)
from v2fhir.mapping._declarations import (
    ComesFrom,
    MappingConfigurationError,
    Produces,
    Rule,
)
from v2fhir.mapping._registry import (
    build_rules,
    clear_rule_cache,
    get_parser_type,
    register_parser,
    registered_parsers,
    unregister_parser,
)
from v2fhir.mapping._extractor import extract, narrow
from v2fhir.mapping._dispatch import apply_concept_map, convert_value
from v2fhir.mapping._evaluator import Binding, Outcome, evaluate
from v2fhir.mapping._session import (
    IdGenerator,
    RecordRegistry,
    SessionState,
    reference,
    sequential_ids,
    uuid_ids,
)
from v2fhir.mapping._resolver import (
    ImmunizationGroup,
    administration_structure,
    begin_group,
    classify,
    current_group,
    existing_group,
    infer_kind,
)
from v2fhir.mapping._parser import StructureParser
from v2fhir.mapping._converter import ConversionReport, MessageConverter

__all__ = [
    # Constants
    "IMMUNIZATION_PROFILES",
    "NO_VACCINE_ADMINISTERED",
    "RAW",
    "RECOMMENDATION_PROFILES",
    "Kind",
    # Declarations
    "ComesFrom",
    "MappingConfigurationError",
    "Produces",
    "Rule",
    # Registry
    "build_rules",
    "clear_rule_cache",
    "get_parser_type",
    "register_parser",
    "registered_parsers",
    "unregister_parser",
    # Evaluation pipeline
    "extract",
    "narrow",
    "apply_concept_map",
    "convert_value",
    "Binding",
    "Outcome",
    "evaluate",
    # Session
    "IdGenerator",
    "RecordRegistry",
    "SessionState",
    "reference",
    "sequential_ids",
    "uuid_ids",
    # Resolver
    "ImmunizationGroup",
    "administration_structure",
    "begin_group",
    "classify",
    "current_group",
    "existing_group",
    "infer_kind",
    # Orchestration
    "StructureParser",
    "ConversionReport",
    "MessageConverter",
]
