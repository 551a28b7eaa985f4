"""
PID → Patient.
"""

from __future__ import annotations

from typing import Any, Optional

from v2fhir.mapping import ComesFrom, Produces, StructureParser, register_parser

ADMINISTRATIVE_GENDER = "http://hl7.org/fhir/administrative-gender"


@register_parser
class PIDParser(StructureParser):
    produces = Produces("PID", "Patient")

    def setup(self) -> Optional[dict[str, Any]]:
        self.patient = self.create_record("Patient")
        return self.patient

    def add_identifier(self, identifier: dict[str, Any]) -> None:
        self.patient.setdefault("identifier", []).append(identifier)

    def add_name(self, name: dict[str, Any]) -> None:
        self.patient.setdefault("name", []).append(name)

    def add_alias(self, alias: dict[str, Any]) -> None:
        self.add_name({**alias, "use": alias.get("use", "nickname")})

    def set_birth_date(self, birth_date: str) -> None:
        self.patient.setdefault("birthDate", birth_date)

    def set_gender(self, gender: dict[str, Any]) -> None:
        """PID-8, after concept mapping to administrative-gender.

        A table 0001 code with no FHIR counterpart leaves gender unset.
        """
        if gender.get("system") == ADMINISTRATIVE_GENDER:
            self.patient.setdefault("gender", gender["code"])

    def add_address(self, address: dict[str, Any]) -> None:
        self.patient.setdefault("address", []).append(address)

    def set_county(self, county: str) -> None:
        addresses = self.patient.get("address")
        if addresses:
            addresses[0].setdefault("district", county)

    def add_home_phone(self, phone: dict[str, Any]) -> None:
        self.patient.setdefault("telecom", []).append({"use": "home", **phone})

    def add_work_phone(self, phone: dict[str, Any]) -> None:
        self.patient.setdefault("telecom", []).append({**phone, "use": "work"})

    def set_multiple_birth(self, indicator: bool) -> None:
        self.patient.setdefault("multipleBirthBoolean", indicator)

    def set_birth_order(self, order: int) -> None:
        # An order number says more than the indicator.
        self.patient.pop("multipleBirthBoolean", None)
        self.patient["multipleBirthInteger"] = order

    def set_deceased_date(self, deceased: str) -> None:
        self.patient["deceasedDateTime"] = deceased

    def set_deceased(self, deceased: bool) -> None:
        if "deceasedDateTime" not in self.patient:
            self.patient["deceasedBoolean"] = deceased

    declarations = (
        ComesFrom("Patient.identifier", field=2, datatype="Identifier",
                  handler=add_identifier, comment="Patient ID"),
        ComesFrom("Patient.identifier", field=3, datatype="Identifier",
                  handler=add_identifier, comment="Patient Identifier List"),
        ComesFrom("Patient.identifier", field=4, datatype="Identifier",
                  handler=add_identifier, comment="Alternate Patient ID"),
        ComesFrom("Patient.name", field=5, datatype="HumanName",
                  handler=add_name, comment="Patient Name"),
        ComesFrom("Patient.birthDate", field=7, datatype="date",
                  handler=set_birth_date, comment="Date/Time of Birth"),
        ComesFrom("Patient.gender", field=8, table="0001", map="AdministrativeGender",
                  datatype="Coding", handler=set_gender, comment="Administrative Sex"),
        ComesFrom("Patient.name", field=9, datatype="HumanName",
                  handler=add_alias, comment="Patient Alias"),
        ComesFrom("Patient.address", field=11, datatype="Address",
                  handler=add_address, comment="Patient Address"),
        ComesFrom("Patient.address.district", field=12, datatype="string",
                  handler=set_county, comment="County Code"),
        ComesFrom("Patient.telecom", field=13, datatype="ContactPoint",
                  handler=add_home_phone, comment="Phone Number - Home"),
        ComesFrom("Patient.telecom", field=14, datatype="ContactPoint",
                  handler=add_work_phone, comment="Phone Number - Business"),
        ComesFrom("Patient.multipleBirthBoolean", field=24, datatype="boolean",
                  handler=set_multiple_birth, comment="Multiple Birth Indicator"),
        ComesFrom("Patient.multipleBirthInteger", field=25, datatype="positiveInt",
                  handler=set_birth_order, comment="Birth Order"),
        ComesFrom("Patient.deceasedDateTime", field=29, datatype="dateTime",
                  handler=set_deceased_date, comment="Patient Death Date and Time"),
        ComesFrom("Patient.deceasedBoolean", field=30, datatype="boolean",
                  handler=set_deceased, comment="Patient Death Indicator"),
    )
