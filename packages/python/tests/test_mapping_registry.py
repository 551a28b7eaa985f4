"""Tests for the rule registry: declarations → ordered, cached rules.

Rules for a parser class are built once, validated up front and sorted
by priority (descending), then field, then component, then the
declaration's describe() string.
"""

import threading

import pytest
from hypothesis import given, settings
from hypothesis import strategies as st

import v2fhir.segments  # noqa: F401
from v2fhir.mapping import (
    ComesFrom,
    MappingConfigurationError,
    Produces,
    Rule,
    StructureParser,
    build_rules,
    clear_rule_cache,
    get_parser_type,
    register_parser,
    registered_parsers,
    unregister_parser,
)


def _noop(parser, value):
    pass


def _other(parser, value):
    pass


def _parser_type(declarations, *, produces=None, name="ObservationParser", base=StructureParser):
    """A parser class built on the fly, not registered."""
    return type(name, (base,), {
        "produces": produces or Produces("OBX", "Observation"),
        "declarations": tuple(declarations),
        "setup": lambda self: None,
    })


def _decl(path="Observation.status", **kw):
    kw.setdefault("handler", _noop)
    if "fixed" not in kw:
        kw.setdefault("field", 1)
    return ComesFrom(path, **kw)


# ═══════════════════════════════════════════════════════════════════
# Ordering
# ═══════════════════════════════════════════════════════════════════


class TestRuleOrdering:
    """Priority descending, then field, component, describe()."""

    def test_higher_priority_first(self):
        low = _decl(field=2, priority=0)
        high = _decl(field=9, priority=10)
        rules = build_rules(_parser_type([low, high]))
        assert [r.declaration for r in rules] == [high, low]

    def test_equal_priority_smaller_field_first(self):
        later = _decl(field=7)
        earlier = _decl(field=3)
        rules = build_rules(_parser_type([later, earlier]))
        assert [r.declaration.field for r in rules] == [3, 7]

    def test_component_breaks_field_tie(self):
        rules = build_rules(_parser_type([
            _decl(field=8, component=2), _decl(field=8, component=1),
        ]))
        assert [r.declaration.component for r in rules] == [1, 2]

    def test_describe_breaks_full_tie(self):
        b = _decl(path="Observation.valueString", handler=_other, fixed="b")
        a = _decl(path="Observation.category", fixed="a")
        rules = build_rules(_parser_type([b, a]))
        descriptions = [r.describe() for r in rules]
        assert descriptions == sorted(descriptions)

    def test_negative_priority_runs_last(self):
        fallback = _decl(fixed="final", priority=-1)
        rules = build_rules(_parser_type([fallback, _decl(field=11)]))
        assert rules[-1].declaration is fallback

    def test_fixed_rules_sort_after_field_rules_at_equal_priority(self):
        fixed = _decl(path="Observation.category", fixed="laboratory")
        rules = build_rules(_parser_type([fixed, _decl(field=30), _decl(field=2)]))
        assert [r.declaration.field for r in rules[:2]] == [2, 30]
        assert rules[-1].declaration is fixed

    def test_priority_still_beats_fixed_position(self):
        fixed = _decl(path="Observation.category", fixed="laboratory", priority=1)
        rules = build_rules(_parser_type([_decl(field=2), fixed]))
        assert rules[0].declaration is fixed

    def test_one_handler_may_have_several_declarations(self):
        rules = build_rules(_parser_type([
            _decl(path="Observation.status", field=11),
            _decl(path="Observation.status", field=27),
        ]))
        assert len(rules) == 2
        assert {r.handler for r in rules} == {_noop}

    def test_base_class_declarations_are_included(self):
        base = _parser_type([_decl(field=4)], name="BaseObservationParser")
        child = _parser_type([_decl(field=2)], name="ChildObservationParser", base=base)
        rules = build_rules(child)
        assert [r.declaration.field for r in rules] == [2, 4]
        assert all(r.owner == "ChildObservationParser" for r in rules)


# ═══════════════════════════════════════════════════════════════════
# Determinism and caching
# ═══════════════════════════════════════════════════════════════════


@pytest.mark.usefixtures("fresh_rules")
class TestDeterminism:
    def test_build_twice_equal(self):
        parser_type = _parser_type([_decl(field=5, priority=1), _decl(field=3)])
        assert build_rules(parser_type) == build_rules(parser_type)

    def test_cached_result_is_reused(self):
        parser_type = _parser_type([_decl(field=5)])
        assert build_rules(parser_type) is build_rules(parser_type)

    def test_rebuild_after_clear_is_equal(self):
        parser_type = _parser_type([_decl(field=5), _decl(fixed="x", priority=3)])
        first = build_rules(parser_type)
        clear_rule_cache()
        second = build_rules(parser_type)
        assert first == second
        assert first is not second

    def test_result_is_immutable_tuple(self):
        rules = build_rules(_parser_type([_decl()]))
        assert isinstance(rules, tuple)
        assert all(isinstance(r, Rule) for r in rules)

    def test_concurrent_first_builds_agree(self):
        parser_type = _parser_type([_decl(field=n) for n in range(1, 30)])
        results = []

        def build():
            results.append(build_rules(parser_type))

        threads = [threading.Thread(target=build) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert len(results) == 8
        assert all(r is results[0] for r in results)


# ── Property-based ordering ─────────────────────────────────────────

_keys = st.tuples(
    st.integers(min_value=-5, max_value=5),
    st.integers(min_value=1, max_value=30),
    st.integers(min_value=0, max_value=5),
)


@given(st.lists(_keys, min_size=1, max_size=12))
@settings(max_examples=100, deadline=None)
def test_rules_sorted_by_priority_field_component(keys):
    declarations = [
        _decl(field=f, component=c, priority=p) for p, f, c in keys
    ]
    rules = build_rules(_parser_type(declarations))
    sort_keys = [
        (-r.declaration.priority, r.declaration.field, r.declaration.component)
        for r in rules
    ]
    assert sort_keys == sorted(sort_keys)
    assert len(rules) == len(declarations)


@given(st.lists(_keys, min_size=1, max_size=12), st.randoms())
@settings(max_examples=100, deadline=None)
def test_declaration_order_does_not_change_rules(keys, rnd):
    declarations = [
        _decl(field=f, component=c, priority=p) for p, f, c in keys
    ]
    shuffled = list(declarations)
    rnd.shuffle(shuffled)
    assert build_rules(_parser_type(declarations)) == build_rules(_parser_type(shuffled))


# ═══════════════════════════════════════════════════════════════════
# Configuration errors
# ═══════════════════════════════════════════════════════════════════


class TestConfigurationErrors:
    """Every malformed declaration fails at build time."""

    def test_fixed_and_field_rejected(self):
        parser_type = _parser_type([_decl(fixed="final", field=5)])
        with pytest.raises(MappingConfigurationError, match="both fixed"):
            build_rules(parser_type)

    def test_neither_fixed_nor_field_rejected(self):
        parser_type = _parser_type([ComesFrom("Observation.status", handler=_noop)])
        with pytest.raises(MappingConfigurationError) as excinfo:
            build_rules(parser_type)
        message = str(excinfo.value)
        assert "ObservationParser" in message
        assert "_noop" in message

    def test_is_a_value_error(self):
        assert issubclass(MappingConfigurationError, ValueError)

    def test_negative_component_rejected(self):
        with pytest.raises(MappingConfigurationError, match="component"):
            build_rules(_parser_type([_decl(field=2, component=-1)]))

    def test_fixed_with_component_rejected(self):
        with pytest.raises(MappingConfigurationError, match="component"):
            build_rules(_parser_type([_decl(fixed="x", component=2)]))

    def test_missing_handler_rejected(self):
        decl = ComesFrom("Observation.status", field=11)
        with pytest.raises(MappingConfigurationError, match="handler"):
            build_rules(_parser_type([decl]))

    def test_unknown_datatype_rejected(self):
        with pytest.raises(MappingConfigurationError, match="FancyType"):
            build_rules(_parser_type([_decl(datatype="FancyType")]))

    def test_raw_datatype_accepted(self):
        rules = build_rules(_parser_type([_decl(datatype="raw")]))
        assert rules[0].datatype == "raw"

    def test_path_outside_produced_resources_rejected(self):
        with pytest.raises(MappingConfigurationError, match="Patient.gender"):
            build_rules(_parser_type([_decl(path="Patient.gender")]))

    def test_path_in_extra_resources_accepted(self):
        produces = Produces("OBX", "Observation", extra=("Specimen",))
        rules = build_rules(_parser_type([_decl(path="Specimen.type")], produces=produces))
        assert rules[0].declaration.resource_type == "Specimen"

    def test_indexed_path_prefix_accepted(self):
        rules = build_rules(_parser_type([_decl(path="Observation[1].note")]))
        assert rules[0].declaration.resource_type == "Observation"

    def test_unknown_concept_map_rejected(self):
        with pytest.raises(MappingConfigurationError, match="NoSuchMap"):
            build_rules(_parser_type([_decl(datatype="Coding", map="NoSuchMap")]))

    def test_missing_produces_rejected(self):
        parser_type = type("Headless", (StructureParser,), {
            "declarations": (_decl(),),
        })
        with pytest.raises(MappingConfigurationError, match="produces"):
            build_rules(parser_type)

    def test_non_declaration_entry_rejected(self):
        parser_type = _parser_type([])
        parser_type.declarations = ("Observation.status",)
        with pytest.raises(MappingConfigurationError, match="expected ComesFrom"):
            build_rules(parser_type)

    def test_non_class_rejected(self):
        with pytest.raises(TypeError):
            build_rules("OBXParser")

    def test_bad_declaration_is_not_cached(self):
        parser_type = _parser_type([_decl(fixed="x", field=1)])
        for _ in range(2):
            with pytest.raises(MappingConfigurationError):
                build_rules(parser_type)


# ═══════════════════════════════════════════════════════════════════
# Parser registration
# ═══════════════════════════════════════════════════════════════════


class TestRegisterParser:
    @pytest.fixture(autouse=True)
    def _cleanup(self):
        yield
        unregister_parser("ZZ1")

    def test_registers_by_segment(self):
        parser_type = _parser_type([_decl()], produces=Produces("ZZ1", "Observation"))
        assert register_parser(parser_type) is parser_type
        assert get_parser_type("ZZ1") is parser_type
        assert registered_parsers()["ZZ1"] is parser_type

    def test_duplicate_segment_rejected(self):
        produces = Produces("ZZ1", "Observation")
        register_parser(_parser_type([_decl()], produces=produces))
        with pytest.raises(ValueError, match="already handled"):
            register_parser(_parser_type([_decl()], produces=produces, name="Other"))

    def test_force_replaces(self):
        produces = Produces("ZZ1", "Observation")
        register_parser(_parser_type([_decl()], produces=produces))
        replacement = _parser_type([_decl()], produces=produces, name="Other")
        register_parser(force=True)(replacement)
        assert get_parser_type("ZZ1") is replacement

    def test_bad_parser_fails_at_class_definition(self):
        with pytest.raises(MappingConfigurationError):
            @register_parser
            class BrokenParser(StructureParser):
                produces = Produces("ZZ1", "Observation")

                def set_status(self, status):
                    pass

                declarations = (
                    ComesFrom("Observation.status", field=11, fixed="final",
                              handler=set_status),
                )
        assert get_parser_type("ZZ1") is None

    def test_unknown_segment(self):
        assert get_parser_type("ZZ9") is None

    def test_builtin_parsers_registered(self):
        assert {"MSH", "PID", "ORC", "RXA", "RXR", "OBX"} <= set(registered_parsers())


# ═══════════════════════════════════════════════════════════════════
# Rule descriptions
# ═══════════════════════════════════════════════════════════════════


class TestDescribe:
    def test_names_owner_path_and_handler(self):
        rule = build_rules(_parser_type([_decl(field=5, table="0085")]))[0]
        text = rule.describe()
        assert text.startswith("ObservationParser: ")
        assert 'path="Observation.status"' in text
        assert "field=5" in text
        assert 'table="0085"' in text
        assert text.endswith("_noop")

    def test_source_for_field_and_fixed(self):
        rules = build_rules(_parser_type([
            _decl(field=8, component=2), _decl(path="Observation.category", fixed="lab"),
        ]))
        sources = {r.source() for r in rules}
        assert sources == {"ObservationParser-8.2", 'fixed "lab"'}
