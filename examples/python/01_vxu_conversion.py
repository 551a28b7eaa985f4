"""
Example 01: VXU Conversion
==========================

Converts an already-parsed VXU^V04 message (one administered dose of
Hep B vaccine) into a FHIR message Bundle and prints the report.

Use case: An EHR sends an unsolicited vaccination update to a state
immunization registry that stores FHIR.
"""

import json

from v2fhir import Composite, Group, MessageConverter, Primitive, Segment, sequential_ids


def field(text, type_name=""):
    """One field from ER7-style text: ``^`` separates components."""
    if "^" in text or type_name:
        return [Composite(tuple(Primitive(c) for c in text.split("^")), type_name=type_name)]
    return [Primitive(text)]


# ── 1. Building the message ───────────────────────────────────────

msh = Segment("MSH", {
    3: field("MYEHR", "HD"),
    4: field("DCS^2.16.840.1.114222.4.1.144.2.1^ISO", "HD"),
    7: field("20240115103000-0500"),
    9: field("VXU^V04^VXU_V04", "MSG"),
    10: field("MSG0001"),
    21: field("Z22^CDCPHINVS", "EI"),
})
pid = Segment("PID", {
    3: field("PID0001^^^MYEHR^MR", "CX"),
    5: field("DOE^JANE^Q^^^^L", "XPN"),
    7: field("20200101"),
    8: field("F"),
})
orc = Segment("ORC", {
    1: field("RE"),
    3: field("FIL001^MYEHR", "EI"),
    12: field("1234567^SMITH^JOHN", "XCN"),
})
rxa = Segment("RXA", {
    3: field("20240115"),
    5: field("08^Hep B, adolescent or pediatric^CVX", "CWE"),
    6: field("0.5"),
    7: field("mL^milliliters^UCUM", "CWE"),
    15: field("LOT123"),
    17: field("MSD^Merck and Co., Inc.^MVX", "CWE"),
    20: field("CP"),
})

message = Group("VXU_V04")
message.add(msh)
message.add(pid)
order = message.add(Group("ORDER"))
order.add(orc)
order.add(rxa)

# ── 2. Converting ─────────────────────────────────────────────────

print("=== 2. Converting ===\n")

converter = MessageConverter(id_generator=lambda: sequential_ids("r"))
bundle, report = converter.convert(message)

print(f"Success:           {report.success}")
print(f"Structures parsed: {report.structures_parsed}/{report.structures_seen}")
print(f"Rules applied:     {report.rules_applied}")

# ── 3. Reading the result ─────────────────────────────────────────

print("\n=== 3. Bundle ===\n")

for entry in bundle["entry"]:
    print(entry["fullUrl"])

immunization = next(
    e["resource"] for e in bundle["entry"]
    if e["resource"]["resourceType"] == "Immunization"
)
print("\nImmunization:")
print(json.dumps(immunization, indent=2))
