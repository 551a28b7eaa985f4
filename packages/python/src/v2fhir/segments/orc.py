"""
ORC → ServiceRequest.

Each ORC also opens an immunization group: the resolver decides whether
the ORC/RXA pair that follows reports an Immunization or an
ImmunizationRecommendation, and the group's record is created here so
order identifiers and the ordering provider can be copied onto it.
"""

from __future__ import annotations

from typing import Any, Optional

from v2fhir.mapping import (
    ComesFrom,
    Produces,
    StructureParser,
    begin_group,
    reference,
    register_parser,
)
from v2fhir.segments._common import performer_function, typed_identifier

REQUEST_STATUS = "http://hl7.org/fhir/request-status"

# Table 0038 → request-status.  ER and RP say nothing about the order itself.
_ORDER_STATUS = {
    "A": "active",
    "IP": "active",
    "SC": "active",
    "CA": "revoked",
    "DC": "revoked",
    "CM": "completed",
    "HD": "on-hold",
}


@register_parser
class ORCParser(StructureParser):
    produces = Produces(
        "ORC", "ServiceRequest", extra=("Immunization", "Practitioner"),
    )

    def setup(self) -> Optional[dict[str, Any]]:
        self.group = begin_group(self.session, self.structure)
        self.order = self.create_record("ServiceRequest")
        self.order["intent"] = "order"
        patient = self.last_record("Patient")
        if patient is not None:
            self.order["subject"] = reference(patient)
        return self.order

    def set_order_control(self, control: dict[str, Any]) -> None:
        """ORC-1 Order Control, mapped through OrderControlStatus.

        Leaves a status already set alone.
        """
        if "status" in self.order:
            return
        if control.get("system") == REQUEST_STATUS:
            self.order["status"] = control["code"]
        else:
            self.order["status"] = "unknown"

    def set_order_status(self, status: dict[str, Any]) -> None:
        """ORC-5 Order Status; more specific than ORC-1 when it maps."""
        mapped = _ORDER_STATUS.get(status.get("code", ""))
        if mapped is not None:
            self.order["status"] = mapped

    def _add_identifier(self, identifier: dict[str, Any], type_code: str) -> None:
        typed = typed_identifier(self.session.tables, identifier, type_code)
        self.order.setdefault("identifier", []).append(typed)
        if self.group.immunization is not None:
            self.group.immunization.setdefault("identifier", []).append(dict(typed))

    def add_placer_identifier(self, identifier: dict[str, Any]) -> None:
        self._add_identifier(identifier, "PLAC")

    def add_filler_identifier(self, identifier: dict[str, Any]) -> None:
        self._add_identifier(identifier, "FILL")

    def add_placer_group_identifier(self, identifier: dict[str, Any]) -> None:
        self._add_identifier(identifier, "PGN")

    def add_filler_group_identifier(self, identifier: dict[str, Any]) -> None:
        self._add_identifier(identifier, "FGN")

    def set_authored_on(self, authored_on: str) -> None:
        self.order["authoredOn"] = authored_on
        if self.group.immunization is not None:
            self.group.immunization.setdefault("recorded", authored_on)

    def set_ordering_provider(self, practitioner: dict[str, Any]) -> None:
        self.add_record(practitioner)
        self.order["requester"] = reference(practitioner)
        if self.group.immunization is not None:
            self.group.immunization.setdefault("performer", []).append({
                "function": performer_function(self.session.tables, "OP"),
                "actor": reference(practitioner),
            })

    def set_occurrence(self, occurrence: str) -> None:
        self.order["occurrenceDateTime"] = occurrence

    declarations = (
        ComesFrom("ServiceRequest.status", field=1, table="0119",
                  map="OrderControlStatus", datatype="Coding", priority=10,
                  handler=set_order_control, comment="Order Control",
                  also=("ServiceRequest.intent", "ServiceRequest.subject")),
        ComesFrom("ServiceRequest.identifier", field=2, datatype="Identifier",
                  handler=add_placer_identifier, comment="Placer Order Number",
                  also=("Immunization.identifier",)),
        ComesFrom("ServiceRequest.identifier", field=3, datatype="Identifier",
                  handler=add_filler_identifier, comment="Filler Order Number",
                  also=("Immunization.identifier",)),
        ComesFrom("ServiceRequest.identifier", field=4, datatype="Identifier",
                  handler=add_placer_group_identifier, comment="Placer Group Number"),
        ComesFrom("ServiceRequest.status", field=5, table="0038", datatype="Coding",
                  priority=5, handler=set_order_status, comment="Order Status"),
        ComesFrom("ServiceRequest.identifier", field=8, component=1,
                  datatype="Identifier", handler=add_placer_group_identifier,
                  comment="Parent Order, placer"),
        ComesFrom("ServiceRequest.identifier", field=8, component=2,
                  datatype="Identifier", handler=add_filler_group_identifier,
                  comment="Parent Order, filler"),
        ComesFrom("ServiceRequest.authoredOn", field=9, datatype="dateTime",
                  handler=set_authored_on, comment="Date/Time of Transaction",
                  also=("Immunization.recorded",)),
        ComesFrom("ServiceRequest.requester", field=12, datatype="Practitioner",
                  handler=set_ordering_provider, comment="Ordering Provider",
                  also=("Immunization.performer.actor",)),
        ComesFrom("ServiceRequest.occurrenceDateTime", field=15, datatype="dateTime",
                  handler=set_occurrence, comment="Order Effective Date/Time"),
        ComesFrom("ServiceRequest.identifier", field=33, datatype="Identifier",
                  handler=add_placer_identifier, comment="Alternate Placer Order Number"),
    )
