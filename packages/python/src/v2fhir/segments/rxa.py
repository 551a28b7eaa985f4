"""
RXA → Immunization, or an ImmunizationRecommendation entry.

The resolver classifies the RXA's group.  For an immunization the
handlers fill the group's Immunization; for a forecast (RXA-5 = CVX 998,
or a Z42 response) each RXA adds one ``recommendation`` entry to the
group's ImmunizationRecommendation and only the fields that make sense for
a forecast are kept.
"""

from __future__ import annotations

from typing import Any, Optional

from v2fhir.mapping import (
    ComesFrom,
    Kind,
    Produces,
    StructureParser,
    current_group,
    reference,
    register_parser,
)
from v2fhir.segments._common import merge_codings, performer_function

EVENT_STATUS = "http://hl7.org/fhir/event-status"

# NIP001 code for a newly administered dose.
NEW_IMMUNIZATION_RECORD = "00"

DATE_DUE = {
    "coding": [{
        "system": "http://loinc.org",
        "code": "30980-7",
        "display": "Date vaccine due",
    }],
}

_MANUFACTURER_SYSTEMS = (
    "http://terminology.hl7.org/CodeSystem/MVX",
    "http://terminology.hl7.org/CodeSystem/v2-0227",
)


@register_parser
class RXAParser(StructureParser):
    produces = Produces(
        "RXA", "Immunization",
        extra=("ImmunizationRecommendation", "Practitioner", "Organization", "Location"),
    )

    def setup(self) -> Optional[dict[str, Any]]:
        self.group = current_group(self.session, self.structure)
        self.immunization: Optional[dict[str, Any]] = None
        self.component: Optional[dict[str, Any]] = None
        if self.group.kind is Kind.IMMUNIZATION:
            self.immunization = self.group.immunization
            return self.immunization
        if self.group.kind is Kind.RECOMMENDATION:
            self.component = self.group.add_component()
            return self.group.recommendation
        return None

    # ── Administration and forecast ──

    def set_occurrence(self, occurrence: str) -> None:
        if self.immunization is not None:
            self.immunization["occurrenceDateTime"] = occurrence
        elif self.component is not None:
            self.component.setdefault("dateCriterion", []).append(
                {"code": DATE_DUE, "value": occurrence}
            )

    def set_vaccine_code(self, vaccine_code: dict[str, Any]) -> None:
        """RXA-5.  A repeat adds its codes to the first concept."""
        if self.immunization is not None:
            if "vaccineCode" in self.immunization:
                merge_codings(self.immunization["vaccineCode"], vaccine_code)
            else:
                self.immunization["vaccineCode"] = vaccine_code
        elif self.component is not None:
            concepts = self.component.setdefault("vaccineCode", [])
            if concepts:
                merge_codings(concepts[0], vaccine_code)
            else:
                concepts.append(vaccine_code)

    def set_indication(self, indication: dict[str, Any]) -> None:
        if self.immunization is not None:
            self.immunization.setdefault("reasonCode", []).append(indication)
        elif self.component is not None:
            self.component.setdefault("forecastReason", []).append(indication)

    def set_recorded(self, recorded: str) -> None:
        if self.immunization is not None:
            self.immunization["recorded"] = recorded
        elif self.group.recommendation is not None:
            self.group.recommendation["date"] = recorded

    # ── Immunization only ──

    def set_dose_amount(self, amount: float) -> None:
        # 999 is the CDC placeholder for an unknown amount.
        if self.immunization is not None and amount != 999:
            self.immunization.setdefault("doseQuantity", {})["value"] = amount

    def set_dose_units(self, units: dict[str, Any]) -> None:
        if self.immunization is None:
            return
        codings = units.get("coding") or [{}]
        unit = codings[0]
        quantity = self.immunization.setdefault("doseQuantity", {})
        if unit.get("code"):
            quantity["code"] = unit["code"]
            quantity["unit"] = unit.get("display", unit["code"])
        if unit.get("system"):
            quantity["system"] = unit["system"]

    def set_information_source(self, source: dict[str, Any]) -> None:
        """RXA-9 (NIP001): ``00`` is a new record, anything else historical."""
        if self.immunization is None:
            return
        codes = [c.get("code") for c in source.get("coding", [])]
        if NEW_IMMUNIZATION_RECORD in codes:
            self.immunization["primarySource"] = True
        else:
            self.immunization["primarySource"] = False
            self.immunization["reportOrigin"] = source

    def add_administering_provider(self, practitioner: dict[str, Any]) -> None:
        if self.immunization is None:
            return
        self.add_record(practitioner)
        self.immunization.setdefault("performer", []).append({
            "function": performer_function(self.session.tables, "AP"),
            "actor": reference(practitioner),
        })

    def set_location(self, location: dict[str, Any]) -> None:
        """RXA-11 (older versions) or RXA-27; whichever comes last wins."""
        if self.immunization is None:
            return
        self.add_record(location)
        self.immunization["location"] = reference(location, location.get("name"))

    def set_location_address(self, address: dict[str, Any]) -> None:
        if self.immunization is None:
            return
        location = None
        ref = self.immunization.get("location")
        if ref is not None:
            _, _, location_id = ref["reference"].partition("/")
            location = self.session.registry.by_id("Location", location_id)
        if location is None:
            location = self.create_record("Location")
            self.immunization["location"] = reference(location)
        location["address"] = address

    def set_lot_number(self, lot_number: str) -> None:
        if self.immunization is not None:
            self.immunization.setdefault("lotNumber", lot_number)

    def set_expiration_date(self, expiration: str) -> None:
        if self.immunization is not None:
            self.immunization.setdefault("expirationDate", expiration)

    def set_manufacturer(self, manufacturer: dict[str, Any]) -> None:
        """RXA-17 MVX code → manufacturing Organization."""
        if self.immunization is None:
            return
        organization: dict[str, Any] = {"resourceType": "Organization"}
        for coding in manufacturer.get("coding", []):
            if coding.get("system") not in _MANUFACTURER_SYSTEMS:
                continue
            if coding.get("display"):
                organization.setdefault("name", coding["display"])
            organization.setdefault("identifier", []).append(
                {"system": coding["system"], "value": coding.get("code")}
            )
        if len(organization) == 1:
            return
        self.add_record(organization)
        self.immunization["manufacturer"] = reference(
            organization, organization.get("name"),
        )

    def set_refusal_reason(self, reason: dict[str, Any]) -> None:
        if self.immunization is not None:
            self.immunization["status"] = "not-done"
            self.immunization["statusReason"] = reason

    def set_completion_status(self, status: dict[str, Any]) -> None:
        """RXA-20, mapped through ImmunizationStatus."""
        if self.immunization is not None and status.get("system") == EVENT_STATUS:
            self.immunization["status"] = status["code"]

    def set_action_status(self, status: dict[str, Any]) -> None:
        """RXA-21: a delete always wins, anything else only fills a gap."""
        if self.immunization is None or status.get("system") != EVENT_STATUS:
            return
        if status["code"] == "entered-in-error" or "status" not in self.immunization:
            self.immunization["status"] = status["code"]

    def default_status(self, status: str) -> None:
        if self.immunization is not None:
            self.immunization.setdefault("status", status)

    declarations = (
        ComesFrom("Immunization.occurrenceDateTime", field=3, datatype="dateTime",
                  handler=set_occurrence, comment="Date/Time Start of Administration",
                  also=("ImmunizationRecommendation.recommendation.dateCriterion.value",)),
        ComesFrom("Immunization.vaccineCode", field=5, table="0292",
                  datatype="CodeableConcept", handler=set_vaccine_code,
                  comment="Administered Code",
                  also=("ImmunizationRecommendation.recommendation.vaccineCode",)),
        ComesFrom("Immunization.doseQuantity.value", field=6, datatype="decimal",
                  handler=set_dose_amount, comment="Administered Amount"),
        ComesFrom("Immunization.doseQuantity.code", field=7,
                  datatype="CodeableConcept", handler=set_dose_units,
                  comment="Administered Units", also=("Immunization.doseQuantity.unit",)),
        ComesFrom("Immunization.primarySource", field=9, datatype="CodeableConcept",
                  handler=set_information_source, comment="Administration Notes",
                  also=("Immunization.reportOrigin",)),
        ComesFrom("Immunization.performer.actor", field=10, datatype="Practitioner",
                  handler=add_administering_provider, comment="Administering Provider",
                  also=("Immunization.performer.function",)),
        ComesFrom("Immunization.location", field=11, datatype="Location",
                  handler=set_location, comment="Administered-at Location"),
        ComesFrom("Immunization.lotNumber", field=15, datatype="string",
                  handler=set_lot_number, comment="Substance Lot Number"),
        ComesFrom("Immunization.expirationDate", field=16, datatype="date",
                  handler=set_expiration_date, comment="Substance Expiration Date"),
        ComesFrom("Immunization.manufacturer", field=17, table="0227",
                  datatype="CodeableConcept", handler=set_manufacturer,
                  comment="Substance Manufacturer Name"),
        ComesFrom("Immunization.statusReason", field=18, datatype="CodeableConcept",
                  handler=set_refusal_reason, comment="Substance/Treatment Refusal Reason",
                  also=("Immunization.status",)),
        ComesFrom("Immunization.reasonCode", field=19, datatype="CodeableConcept",
                  handler=set_indication, comment="Indication",
                  also=("ImmunizationRecommendation.recommendation.forecastReason",)),
        ComesFrom("Immunization.status", field=20, table="0322", map="ImmunizationStatus",
                  datatype="Coding", handler=set_completion_status,
                  comment="Completion Status"),
        ComesFrom("Immunization.status", field=21, table="0323", map="ImmunizationStatus",
                  datatype="Coding", handler=set_action_status, comment="Action Code"),
        ComesFrom("Immunization.recorded", field=22, datatype="dateTime",
                  handler=set_recorded, comment="System Entry Date/Time",
                  also=("ImmunizationRecommendation.date",)),
        ComesFrom("Immunization.location", field=27, datatype="Location",
                  handler=set_location, comment="Administer-at"),
        ComesFrom("Immunization.location.address", field=28, datatype="Address",
                  handler=set_location_address, comment="Administered-at Address"),
        ComesFrom("Immunization.status", fixed="completed", datatype="code",
                  priority=-1, handler=default_status),
    )
