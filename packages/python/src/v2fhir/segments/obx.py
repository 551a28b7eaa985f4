"""
OBX → Observation.

Immunization messages use OBX for funding eligibility and VIS documents
after an administered dose, and for the details of each forecast in a
Z42 response.  Every OBX becomes an Observation.  When OBX-3 carries one
of the LOINC codes below, OBX-5 is also copied onto the group's
Immunization or the current recommendation entry.

OBX-5 is typed by OBX-2; it is delivered resolved and converted here.
"""

from __future__ import annotations

import logging
from typing import Any, Optional

from v2fhir import datatypes
from v2fhir.mapping import (
    RAW,
    ComesFrom,
    Kind,
    Produces,
    StructureParser,
    existing_group,
    reference,
    register_parser,
)
from v2fhir.segments._common import typed_identifier
from v2fhir.structure import RawField

logger = logging.getLogger(__name__)

LOINC = "http://loinc.org"
OBSERVATION_STATUS = "http://hl7.org/fhir/observation-status"
SC_CODING_URL = "http://hl7.org/fhir/StructureDefinition/iso21090-SC-coding"

# Observed with an administered dose.
VACCINE_ELIGIBILITY = "64994-7"
VIS_DOCUMENT_TYPE = "69764-9"
VIS_VERSION_DATE = "29768-9"
VIS_DELIVERY_DATE = "29769-7"
VIS_VACCINE_TYPE = "30956-7"

# Observed with a forecast.
FORECAST_VACCINE_CODE = "30956-7"
FORECAST_SERIES_NAME = "59780-7"
FORECAST_DOSE_NUMBER = "30973-2"
FORECAST_NUMBER_DOSES = "59782-3"
SERIES_STATUS = "59783-1"
DATE_CRITERIA = {
    "30981-5": "Earliest date to give",
    "30980-7": "Date vaccine due",
    "59777-3": "Latest date to give immunization",
    "59778-1": "Date when overdue for immunization",
}

# Education element each VIS code fills.
_EDUCATION_KEYS = {
    VIS_DOCUMENT_TYPE: "documentType",
    VIS_VERSION_DATE: "publicationDate",
    VIS_DELIVERY_DATE: "presentationDate",
    VIS_VACCINE_TYPE: "_documentType",
}

# OBX-2 value type → (Observation.value[x] element, FHIR datatype).
VALUE_TYPES = {
    "CE": ("valueCodeableConcept", "CodeableConcept"),
    "CF": ("valueCodeableConcept", "CodeableConcept"),
    "CNE": ("valueCodeableConcept", "CodeableConcept"),
    "CWE": ("valueCodeableConcept", "CodeableConcept"),
    "ID": ("valueCodeableConcept", "CodeableConcept"),
    "IS": ("valueCodeableConcept", "CodeableConcept"),
    "DT": ("valueDateTime", "dateTime"),
    "DTM": ("valueDateTime", "dateTime"),
    "TS": ("valueDateTime", "dateTime"),
    "NM": ("valueQuantity", "Quantity"),
    "FT": ("valueString", "string"),
    "ST": ("valueString", "string"),
    "TX": ("valueString", "string"),
    "TM": ("valueTime", "string"),
}


def _loinc_code(concept: dict[str, Any]) -> Optional[str]:
    for coding in concept.get("coding", []):
        if coding.get("system") == LOINC and coding.get("code"):
            return coding["code"]
    return None


@register_parser
class OBXParser(StructureParser):
    produces = Produces(
        "OBX", "Observation",
        extra=("Immunization", "ImmunizationRecommendation", "Practitioner", "Organization"),
    )

    def setup(self) -> Optional[dict[str, Any]]:
        self.group = existing_group(self.session)
        self.value_type = ""
        self.loinc: Optional[str] = None
        self.observation = self.create_record("Observation")
        patient = self.last_record("Patient")
        if patient is not None:
            self.observation["subject"] = reference(patient)
        return self.observation

    def set_value_type(self, value_type: str) -> None:
        self.value_type = value_type.upper()

    def set_code(self, code: dict[str, Any]) -> None:
        self.observation["code"] = code
        self.loinc = _loinc_code(code)

    def set_value(self, raw: RawField) -> None:
        """OBX-5, converted according to OBX-2."""
        value_type = self.value_type or getattr(raw, "type_name", "")
        target = VALUE_TYPES.get(value_type)
        if target is None:
            logger.debug("OBX-5 of type '%s' is not converted", value_type or "?")
            return
        element, datatype = target
        value = datatypes.convert(datatype, raw, "", self.session.tables)
        if value is None:
            return
        self.observation[element] = value
        if self.loinc is None or self.group is None:
            return
        if self.group.kind is Kind.IMMUNIZATION and self.group.immunization is not None:
            self._to_immunization(self.group.immunization, value)
        elif self.group.kind is Kind.RECOMMENDATION and self.group.component is not None:
            self._to_recommendation(self.group.component, value)

    def _to_immunization(self, immunization: dict[str, Any], value: Any) -> None:
        if self.loinc == VACCINE_ELIGIBILITY:
            if isinstance(value, dict):
                immunization.setdefault("programEligibility", []).append(value)
            return
        key = _EDUCATION_KEYS.get(self.loinc)
        if key is None:
            return
        education = immunization.setdefault("education", [])
        # A second value for the same element starts a new VIS.
        if not education or key in education[-1]:
            education.append({})
        current = education[-1]
        if key == "_documentType":
            codings = value.get("coding", []) if isinstance(value, dict) else []
            if codings:
                current[key] = {"extension": [{"url": SC_CODING_URL, "valueCoding": codings[0]}]}
        elif key == "documentType" and isinstance(value, dict):
            codings = value.get("coding") or [{}]
            text = codings[0].get("code") or value.get("text")
            if text:
                current[key] = text
        elif isinstance(value, str):
            current[key] = value

    def _to_recommendation(self, entry: dict[str, Any], value: Any) -> None:
        if self.loinc in DATE_CRITERIA:
            if isinstance(value, str):
                entry.setdefault("dateCriterion", []).append({
                    "code": {"coding": [{
                        "system": LOINC, "code": self.loinc,
                        "display": DATE_CRITERIA[self.loinc],
                    }]},
                    "value": value,
                })
        elif self.loinc in (FORECAST_DOSE_NUMBER, FORECAST_NUMBER_DOSES):
            number = value.get("value") if isinstance(value, dict) else None
            if isinstance(number, (int, float)) and number >= 1:
                element = (
                    "doseNumberPositiveInt" if self.loinc == FORECAST_DOSE_NUMBER
                    else "seriesDosesPositiveInt"
                )
                entry[element] = int(number)
        elif self.loinc == FORECAST_SERIES_NAME:
            if isinstance(value, str):
                entry["series"] = value
        elif self.loinc == FORECAST_VACCINE_CODE:
            if isinstance(value, dict):
                entry.setdefault("vaccineCode", []).append(value)
        elif self.loinc == SERIES_STATUS:
            if isinstance(value, dict):
                entry["forecastStatus"] = value

    def set_reference_range(self, text: str) -> None:
        self.observation.setdefault("referenceRange", []).append({"text": text})

    def add_interpretation(self, interpretation: dict[str, Any]) -> None:
        self.observation.setdefault("interpretation", []).append(interpretation)

    def set_status(self, status: dict[str, Any]) -> None:
        """OBX-11, mapped through ObservationStatus."""
        if status.get("system") == OBSERVATION_STATUS:
            self.observation["status"] = status["code"]

    def default_status(self, status: str) -> None:
        self.observation.setdefault("status", status)

    def set_effective(self, effective: str) -> None:
        self.observation["effectiveDateTime"] = effective

    def add_responsible_observer(self, practitioner: dict[str, Any]) -> None:
        self.add_record(practitioner)
        self.observation.setdefault("performer", []).append(reference(practitioner))

    def set_method(self, method: dict[str, Any]) -> None:
        self.observation.setdefault("method", method)

    def set_body_site(self, site: dict[str, Any]) -> None:
        self.observation.setdefault("bodySite", site)

    def add_identifier(self, identifier: dict[str, Any]) -> None:
        if "type" not in identifier:
            identifier = typed_identifier(self.session.tables, identifier, "FILL")
        self.observation.setdefault("identifier", []).append(identifier)

    def add_performing_organization(self, organization: dict[str, Any]) -> None:
        self.add_record(organization)
        self.observation.setdefault("performer", []).append(
            reference(organization, organization.get("name")),
        )

    declarations = (
        ComesFrom("Observation.value[x]", field=2, datatype="code",
                  handler=set_value_type, comment="Value Type"),
        ComesFrom("Observation.code", field=3, datatype="CodeableConcept",
                  handler=set_code, comment="Observation Identifier"),
        ComesFrom("Observation.value[x]", field=5, datatype=RAW, handler=set_value,
                  comment="Observation Value",
                  also=("Immunization.programEligibility", "Immunization.education",
                        "ImmunizationRecommendation.recommendation")),
        ComesFrom("Observation.referenceRange.text", field=7, datatype="string",
                  handler=set_reference_range, comment="Reference Range"),
        ComesFrom("Observation.interpretation", field=8, table="0078",
                  datatype="CodeableConcept", handler=add_interpretation,
                  comment="Interpretation Codes"),
        ComesFrom("Observation.status", field=11, table="0085", map="ObservationStatus",
                  datatype="Coding", handler=set_status,
                  comment="Observation Result Status"),
        ComesFrom("Observation.effectiveDateTime", field=14, datatype="dateTime",
                  handler=set_effective, comment="Date/Time of the Observation"),
        ComesFrom("Observation.performer", field=16, datatype="Practitioner",
                  handler=add_responsible_observer, comment="Responsible Observer"),
        ComesFrom("Observation.method", field=17, datatype="CodeableConcept",
                  handler=set_method, comment="Observation Method"),
        ComesFrom("Observation.bodySite", field=20, datatype="CodeableConcept",
                  handler=set_body_site, comment="Observation Site"),
        ComesFrom("Observation.identifier", field=21, datatype="Identifier",
                  handler=add_identifier, comment="Observation Instance Identifier"),
        ComesFrom("Observation.performer", field=23, datatype="Organization",
                  handler=add_performing_organization,
                  comment="Performing Organization Name"),
        ComesFrom("Observation.status", fixed="unknown", datatype="code",
                  priority=-1, handler=default_status),
    )
