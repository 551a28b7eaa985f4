"""
Example 02: Writing a Segment Parser
====================================

Adds an NTE parser that copies order notes onto the Immunization of the
group they follow.

Shows the three parts of a parser: ``produces``, ``setup()`` and the
static ``declarations`` table, including a fixed value and a setup that
declines to parse when there is no Immunization to write to.
"""

from v2fhir import (
    ComesFrom,
    Composite,
    Kind,
    MessageConverter,
    Primitive,
    Produces,
    Segment,
    StructureParser,
    build_rules,
    register_parser,
    sequential_ids,
)
from v2fhir.mapping import existing_group


@register_parser
class NTEParser(StructureParser):
    produces = Produces("NTE", "Immunization")

    def setup(self):
        group = existing_group(self.session)
        if group is None or group.immunization is None:
            # Notes outside an administered dose are dropped.
            return None
        self.immunization = group.immunization
        self.note = {}
        self.immunization.setdefault("note", []).append(self.note)
        return self.immunization

    def add_text(self, text):
        self.note["text"] = " ".join(filter(None, [self.note.get("text"), text]))

    def set_source(self, source):
        self.note.setdefault("authorString", source)

    declarations = (
        ComesFrom("Immunization.note.text", field=3, datatype="string",
                  handler=add_text, comment="Comment"),
        ComesFrom("Immunization.note.authorString", fixed="order note", datatype="string",
                  handler=set_source),
    )


# ── 1. The rule table ─────────────────────────────────────────────

print("=== 1. Rules ===\n")

for rule in build_rules(NTEParser):
    print(rule.describe())

# ── 2. Converting an order with a note ────────────────────────────

print("\n=== 2. Converting ===\n")

orc = Segment("ORC", {1: [Primitive("RE")]})
rxa = Segment("RXA", {
    3: [Primitive("20240115")],
    5: [Composite((Primitive("08"), Primitive("Hep B, adolescent or pediatric"),
                   Primitive("CVX")), type_name="CWE")],
})
nte = Segment("NTE", {3: [Primitive("Patient tolerated well"), Primitive("no reaction")]})

converter = MessageConverter(
    id_generator=lambda: sequential_ids(), fallback_kind=Kind.IMMUNIZATION,
)
bundle, report = converter.convert([orc, rxa, nte])
[immunization] = [e["resource"] for e in bundle["entry"]
                  if e["resource"]["resourceType"] == "Immunization"]

print(f"Rules applied: {report.rules_applied}")
print(f"Note:          {immunization['note'][0]['text']}")
print(f"Author:        {immunization['note'][0]['authorString']}")
