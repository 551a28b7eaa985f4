"""End-to-end conversion of immunization messages.

VXU^V04 (Z22) carries administered doses; RSP^K11 (Z42) carries an
evaluated history plus a forecast, where RXA-5 = CVX 998 marks a
recommendation rather than a dose.
"""

import logging

import pytest

from v2fhir import MessageConverter
from v2fhir.mapping import (
    ComesFrom,
    Kind,
    Produces,
    StructureParser,
    register_parser,
    sequential_ids,
    unregister_parser,
)
from v2fhir.structure import Group
from v2fhir.tables import v2_table

CVX = "http://hl7.org/fhir/sid/cvx"
UCUM = "http://unitsofmeasure.org"

VXU = "\r".join([
    "MSH|^~\\&|MYEHR|DCS^2.16.840.1.114222.4.1.144.2.1^ISO|IIS|MYIIS|20240115103000-0500||"
    "VXU^V04^VXU_V04|MSG0001|P|2.5.1|||ER|AL|||||Z22^CDCPHINVS",
    "PID|1||PID0001^^^MYEHR^MR||DOE^JANE^Q^^^^L||20200101|F|||"
    "123 MAIN ST^^ANYTOWN^WA^98000^USA^H",
    "ORC|RE|PLC001^MYEHR|FIL001^MYEHR|||||||||1234567^SMITH^JOHN",
    "RXA|0|1|20240115||08^Hep B, adolescent or pediatric^CVX|0.5|mL^milliliters^UCUM||"
    "00^New^NIP001|7890^JONES^MARY|^^^MYCLINIC||||LOT123|20250101|"
    "MSD^Merck and Co., Inc.^MVX|||CP|A",
    "RXR|C28161^Intramuscular^NCIT|LD^Left Deltoid^HL70163",
])

RSP_HEADER = (
    "MSH|^~\\&|MYIIS|MYIIS|MYEHR|MYEHR|20240301120000||RSP^K11^RSP_K11|RSP0001|P|2.5.1"
    "|||NE|NE|||||Z42^CDCPHINVS"
)
RSP_PATIENT = "PID|1||PID0001^^^MYEHR^MR||DOE^JANE"
HISTORY = [
    "ORC|RE||9001^MYIIS",
    "RXA|0|1|20230601||20^DTaP^CVX|999|||01^Historical^NIP001",
]
FORECAST = [
    "ORC|RE||9999^MYIIS",
    "RXA|0|1|20240301||998^No vaccine administered^CVX|999",
]


def _convert(er7, *lines, **kw):
    converter = MessageConverter(id_generator=lambda: sequential_ids(), **kw)
    return converter.convert(er7("\r".join(lines)))


def _resources(bundle, resource_type):
    return [e["resource"] for e in bundle["entry"]
            if e["resource"]["resourceType"] == resource_type]


def _one(bundle, resource_type):
    [resource] = _resources(bundle, resource_type)
    return resource


# ═══════════════════════════════════════════════════════════════════
# VXU
# ═══════════════════════════════════════════════════════════════════


class TestVXU:
    """A single administered Hep B dose."""

    @pytest.fixture
    def converted(self, er7):
        return _convert(er7, VXU)

    def test_report(self, converted):
        _, report = converted
        assert report.success
        assert report.structures_seen == 5
        assert report.structures_parsed == 5
        assert report.structures_skipped == 0
        assert report.rules_failed == 0
        assert report.warnings == []

    def test_bundle(self, converted):
        bundle, _ = converted
        assert bundle["resourceType"] == "Bundle"
        assert bundle["type"] == "message"
        assert bundle["meta"] == {"profile": ["CDCPHINVS#Z22"]}
        assert bundle["identifier"] == {"value": "MSG0001"}
        assert bundle["timestamp"] == "2024-01-15T10:30:00-05:00"
        assert bundle["entry"][0]["resource"]["resourceType"] == "MessageHeader"
        for entry in bundle["entry"]:
            resource = entry["resource"]
            assert entry["fullUrl"] == f"{resource['resourceType']}/{resource['id']}"

    def test_record_set(self, converted):
        bundle, _ = converted
        types = [e["resource"]["resourceType"] for e in bundle["entry"]]
        assert sorted(types) == sorted([
            "MessageHeader", "Organization", "Patient", "Immunization",
            "ServiceRequest", "Practitioner", "Practitioner", "Location", "Organization",
        ])
        assert "ImmunizationRecommendation" not in types

    def test_message_header(self, converted):
        bundle, _ = converted
        header = _one(bundle, "MessageHeader")
        immunization = _one(bundle, "Immunization")
        assert header["source"] == {"name": "MYEHR", "software": "v2fhir"}
        assert header["destination"] == [{"name": "IIS"}]
        assert header["eventCoding"]["code"] == "V04"
        assert header["eventCoding"]["system"] == v2_table("0003")
        assert header["meta"]["tag"][0]["code"] == "VXU"
        assert header["focus"] == [{"reference": f"Immunization/{immunization['id']}"}]
        assert header["sender"]["display"] == "DCS"

    def test_sending_facility(self, converted):
        bundle, _ = converted
        header = _one(bundle, "MessageHeader")
        sender_id = header["sender"]["reference"].split("/")[1]
        [facility] = [o for o in _resources(bundle, "Organization") if o["id"] == sender_id]
        assert facility["identifier"] == [{
            "system": "urn:ietf:rfc:3986",
            "value": "urn:oid:2.16.840.1.114222.4.1.144.2.1",
        }]

    def test_patient(self, converted):
        bundle, _ = converted
        patient = _one(bundle, "Patient")
        assert patient["gender"] == "female"
        assert patient["birthDate"] == "2020-01-01"
        assert patient["name"] == [{"use": "official", "family": "DOE", "given": ["JANE", "Q"]}]
        assert patient["identifier"][0]["value"] == "PID0001"
        assert patient["identifier"][0]["type"]["coding"][0]["code"] == "MR"
        assert patient["address"][0]["city"] == "ANYTOWN"

    def test_immunization(self, converted):
        bundle, _ = converted
        immunization = _one(bundle, "Immunization")
        patient = _one(bundle, "Patient")
        assert immunization["status"] == "completed"
        assert immunization["patient"] == {"reference": f"Patient/{patient['id']}"}
        assert immunization["vaccineCode"] == {"coding": [{
            "system": CVX, "code": "08", "display": "Hep B, adolescent or pediatric",
        }]}
        assert immunization["occurrenceDateTime"] == "2024-01-15"
        assert immunization["doseQuantity"] == {
            "value": 0.5, "code": "mL", "unit": "milliliters", "system": UCUM,
        }
        assert immunization["primarySource"] is True
        assert immunization["lotNumber"] == "LOT123"
        assert immunization["expirationDate"] == "2025-01-01"
        assert immunization["location"]["display"] == "MYCLINIC"
        assert immunization["manufacturer"]["display"] == "Merck and Co., Inc."

    def test_order_identifiers_copied(self, converted):
        bundle, _ = converted
        immunization = _one(bundle, "Immunization")
        typed = [
            (i["value"], i["system"], i["type"]["coding"][0]["code"])
            for i in immunization["identifier"]
        ]
        assert typed == [("PLC001", "MYEHR", "PLAC"), ("FIL001", "MYEHR", "FILL")]

    def test_performers(self, converted):
        bundle, _ = converted
        immunization = _one(bundle, "Immunization")
        functions = [p["function"]["coding"][0]["code"] for p in immunization["performer"]]
        assert functions == ["OP", "AP"]
        practitioners = {p["id"]: p for p in _resources(bundle, "Practitioner")}
        names = [
            practitioners[p["actor"]["reference"].split("/")[1]]["name"][0]["family"]
            for p in immunization["performer"]
        ]
        assert names == ["SMITH", "JONES"]

    def test_route_and_site(self, converted):
        bundle, _ = converted
        immunization = _one(bundle, "Immunization")
        assert immunization["route"]["coding"][0]["code"] == "C28161"
        assert immunization["route"]["coding"][0]["system"] == "http://ncimeta.nci.nih.gov"
        assert immunization["site"]["coding"][0] == {
            "system": v2_table("0163"), "code": "LD", "display": "Left Deltoid",
        }

    def test_service_request(self, converted):
        bundle, _ = converted
        order = _one(bundle, "ServiceRequest")
        assert order["status"] == "completed"
        assert order["intent"] == "order"
        assert order["subject"]["reference"].startswith("Patient/")
        assert order["requester"]["reference"].startswith("Practitioner/")

    def test_same_ids_each_run(self, er7):
        first, _ = _convert(er7, VXU)
        second, _ = _convert(er7, VXU)
        assert first == second


# ═══════════════════════════════════════════════════════════════════
# RSP Z42 forecast
# ═══════════════════════════════════════════════════════════════════


class TestForecast:
    def test_recommendation_only(self, er7):
        bundle, report = _convert(er7, RSP_HEADER, RSP_PATIENT, *FORECAST)
        assert report.success
        assert _resources(bundle, "Immunization") == []
        recommendation = _one(bundle, "ImmunizationRecommendation")
        patient = _one(bundle, "Patient")
        assert recommendation["patient"] == {"reference": f"Patient/{patient['id']}"}
        [entry] = recommendation["recommendation"]
        assert entry["vaccineCode"][0]["coding"][0]["code"] == "998"
        assert entry["dateCriterion"] == [{
            "code": {"coding": [{
                "system": "http://loinc.org", "code": "30980-7",
                "display": "Date vaccine due",
            }]},
            "value": "2024-03-01",
        }]

    def test_forecast_fields_not_written(self, er7):
        bundle, _ = _convert(er7, RSP_HEADER, RSP_PATIENT, *FORECAST)
        recommendation = _one(bundle, "ImmunizationRecommendation")
        assert "status" not in recommendation
        assert "doseQuantity" not in recommendation["recommendation"][0]

    def test_profile_on_bundle(self, er7):
        bundle, _ = _convert(er7, RSP_HEADER, RSP_PATIENT, *FORECAST)
        assert bundle["meta"]["profile"] == ["CDCPHINVS#Z42"]
        assert "timestamp" in bundle

    def test_history_and_forecast(self, er7):
        bundle, _ = _convert(er7, RSP_HEADER, RSP_PATIENT, *HISTORY, *FORECAST)
        immunization = _one(bundle, "Immunization")
        recommendation = _one(bundle, "ImmunizationRecommendation")
        assert immunization["vaccineCode"]["coding"][0]["code"] == "20"
        assert immunization["primarySource"] is False
        assert immunization["reportOrigin"]["coding"][0]["code"] == "01"
        assert "doseQuantity" not in immunization
        assert recommendation["recommendation"][0]["vaccineCode"][0]["coding"][0]["code"] == "998"
        header = _one(bundle, "MessageHeader")
        assert [f["reference"].split("/")[0] for f in header["focus"]] == [
            "Immunization", "ImmunizationRecommendation",
        ]

    def test_flat_message_orders_classified_independently(self, er7):
        """An ORC with no RXA of its own never borrows the next order's."""
        parsed = er7("\r".join([
            VXU.split("\r")[0], RSP_PATIENT, "ORC|RE||9001^MYIIS", *FORECAST,
        ]))
        flat = Group("VXU_V04")
        for segment in parsed.segments():
            flat.add(segment)
        bundle, report = MessageConverter(id_generator=lambda: sequential_ids()).convert(flat)
        assert report.success
        assert len(_resources(bundle, "Immunization")) == 1
        assert len(_resources(bundle, "ImmunizationRecommendation")) == 1

    def test_order_identifier_not_copied_to_recommendation(self, er7):
        bundle, _ = _convert(er7, RSP_HEADER, RSP_PATIENT, *FORECAST)
        assert "identifier" not in _one(bundle, "ImmunizationRecommendation")
        assert _one(bundle, "ServiceRequest")["identifier"][0]["value"] == "9999"


# ═══════════════════════════════════════════════════════════════════
# Status handling
# ═══════════════════════════════════════════════════════════════════


class TestStatus:
    def _immunization(self, er7, rxa):
        bundle, _ = _convert(er7, VXU.split("\r")[0], "ORC|RE", rxa)
        return _one(bundle, "Immunization")

    def test_default_completed(self, er7):
        immunization = self._immunization(er7, "RXA|0|1|20240115||08^HepB^CVX")
        assert immunization["status"] == "completed"

    def test_refusal(self, er7):
        immunization = self._immunization(
            er7, "RXA|0|1|20240115||08^HepB^CVX|999||||||||||||00^Parental decision^NIP002||RE",
        )
        assert immunization["status"] == "not-done"
        assert immunization["statusReason"]["coding"][0]["code"] == "00"

    def test_delete_wins(self, er7):
        immunization = self._immunization(
            er7, "RXA|0|1|20240115||08^HepB^CVX|||||||||||||||CP|D",
        )
        assert immunization["status"] == "entered-in-error"

    def test_order_status_overrides_control(self, er7):
        bundle, _ = _convert(er7, VXU.split("\r")[0], "ORC|NW||||CM")
        assert _one(bundle, "ServiceRequest")["status"] == "completed"

    @pytest.mark.parametrize("control, expected", [
        ("OE", "completed"), ("OF", "completed"), ("OR", "completed"),
        ("AF", "active"), ("CH", "active"), ("FU", "active"), ("PA", "active"),
        ("RL", "active"), ("RP", "active"), ("RQ", "active"), ("RR", "active"),
        ("RU", "active"),
        ("CR", "revoked"), ("DF", "revoked"), ("DR", "revoked"), ("OC", "revoked"),
        ("OD", "revoked"), ("UA", "revoked"),
        ("HR", "on-hold"), ("OH", "on-hold"),
    ])
    def test_order_control_codes(self, er7, control, expected):
        bundle, _ = _convert(er7, VXU.split("\r")[0], f"ORC|{control}")
        assert _one(bundle, "ServiceRequest")["status"] == expected

    def test_unmapped_order_control(self, er7):
        bundle, _ = _convert(er7, VXU.split("\r")[0], "ORC|XO")
        assert _one(bundle, "ServiceRequest")["status"] == "unknown"


# ═══════════════════════════════════════════════════════════════════
# Classification fallback
# ═══════════════════════════════════════════════════════════════════


class TestFallback:
    """An ORC with no RXA, no profile and no VXU tag."""

    HEADER = "MSH|^~\\&|MYEHR||IIS||20240115103000||ACK^A01|M1|P|2.5.1"

    def test_unknown_by_default(self, er7):
        bundle, _ = _convert(er7, self.HEADER, "ORC|RE")
        assert _resources(bundle, "Immunization") == []
        assert _resources(bundle, "ImmunizationRecommendation") == []
        assert len(_resources(bundle, "ServiceRequest")) == 1

    def test_configured_fallback(self, er7):
        bundle, _ = _convert(er7, self.HEADER, "ORC|RE", fallback_kind=Kind.RECOMMENDATION)
        assert len(_resources(bundle, "ImmunizationRecommendation")) == 1

    def test_rxr_without_immunization_skipped(self, er7):
        _, report = _convert(er7, RSP_HEADER, *FORECAST, "RXR|IM^Intramuscular^HL70162")
        assert report.structures_skipped == 1
        assert report.success


# ═══════════════════════════════════════════════════════════════════
# Converter behaviour
# ═══════════════════════════════════════════════════════════════════


class ZFLParser(StructureParser):
    produces = Produces("ZFL", "Basic")

    def setup(self):
        raise RuntimeError("setup exploded")


class ZRFParser(StructureParser):
    produces = Produces("ZRF", "Basic")

    def setup(self):
        self.basic = self.create_record("Basic")
        return self.basic

    def set_code(self, code):
        raise RuntimeError("boom")

    def set_subject(self, subject):
        self.basic["subject"] = {"display": subject}

    declarations = (
        ComesFrom("Basic.code", field=1, handler=set_code),
        ComesFrom("Basic.subject", field=2, handler=set_subject),
    )


class TestConverter:
    @pytest.fixture
    def custom_parsers(self):
        register_parser(ZFLParser)
        register_parser(ZRFParser)
        yield
        unregister_parser("ZFL")
        unregister_parser("ZRF")

    def test_unknown_segments_skipped(self, er7):
        _, report = _convert(er7, VXU, "NTE|1||given in clinic", "ZXY|1|local")
        assert report.structures_seen == 7
        assert report.structures_skipped == 2
        assert report.success

    def test_failed_structure_contained(self, er7, custom_parsers, caplog):
        with caplog.at_level(logging.WARNING, logger="v2fhir"):
            bundle, report = _convert(er7, VXU, "ZFL|1")
        assert not report.success
        assert report.structures_failed == 1
        assert report.errors == ["ZFL: RuntimeError: setup exploded"]
        assert _one(bundle, "Immunization")["lotNumber"] == "LOT123"
        assert "setup exploded" in caplog.text

    def test_failed_rule_reported(self, er7, custom_parsers):
        bundle, report = _convert(er7, VXU, "ZRF|X|someone")
        assert report.success
        assert report.rules_failed == 1
        assert report.warnings == ["ZRFParser-1: RuntimeError: boom"]
        assert _one(bundle, "Basic")["subject"] == {"display": "someone"}

    def test_messages_isolated(self, er7):
        converter = MessageConverter(id_generator=lambda: sequential_ids())
        forecast, _ = converter.convert(er7("\r".join([RSP_HEADER, *FORECAST])))
        vxu, _ = converter.convert(er7(VXU))
        assert _resources(forecast, "Immunization") == []
        assert _resources(vxu, "ImmunizationRecommendation") == []
        assert len(_resources(vxu, "Immunization")) == 1

    def test_accepts_segment_list(self, er7):
        message = er7(VXU)
        bundle, report = MessageConverter().convert(message.children)
        assert report.structures_seen == 5
        assert len(_resources(bundle, "Immunization")) == 1

    def test_random_ids_by_default(self, er7):
        bundle, _ = MessageConverter().convert(er7(VXU))
        ids = [e["resource"]["id"] for e in bundle["entry"]]
        assert len(set(ids)) == len(ids)
        assert bundle["id"] not in ids

    def test_bad_fallback_rejected(self):
        with pytest.raises(TypeError):
            MessageConverter(fallback_kind="Immunization")

    def test_bad_id_generator_rejected(self):
        with pytest.raises(TypeError):
            MessageConverter(id_generator="sequential")
