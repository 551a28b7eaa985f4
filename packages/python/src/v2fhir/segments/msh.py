"""
MSH → MessageHeader, plus the Bundle's timestamp, identifier and profiles.
"""

from __future__ import annotations

from typing import Any, Optional

from v2fhir.mapping import (
    ComesFrom,
    Produces,
    StructureParser,
    reference,
    register_parser,
)


@register_parser
class MSHParser(StructureParser):
    produces = Produces(
        "MSH", "MessageHeader", extra=("Organization", "Bundle"),
    )

    def setup(self) -> Optional[dict[str, Any]]:
        self.header = self.create_record("MessageHeader")
        return self.header

    def _source(self) -> dict[str, Any]:
        return self.header.setdefault("source", {})

    def set_source_name(self, name: str) -> None:
        self._source()["name"] = name

    def set_software(self, software: str) -> None:
        self._source().setdefault("software", software)

    def set_sender(self, organization: dict[str, Any]) -> None:
        """MSH-4 Sending Facility → MessageHeader.sender."""
        self.add_record(organization)
        self.header["sender"] = reference(organization, organization.get("name"))

    def set_destination_name(self, name: str) -> None:
        destinations = self.header.setdefault("destination", [{}])
        destinations[0]["name"] = name

    def set_bundle_timestamp(self, timestamp: str) -> None:
        self.session.bundle["timestamp"] = timestamp

    def set_message_code(self, message_code: dict[str, Any]) -> None:
        """MSH-9.1 → meta.tag; the resolver reads it back for VXU."""
        self.header.setdefault("meta", {}).setdefault("tag", []).append(message_code)
        if not self.session.event_code:
            self.session.event_code = message_code.get("code", "")

    def set_event(self, trigger_event: dict[str, Any]) -> None:
        self.header["eventCoding"] = trigger_event

    def set_bundle_identifier(self, identifier: dict[str, Any]) -> None:
        self.session.bundle["identifier"] = identifier

    def add_profile(self, identifier: dict[str, Any]) -> None:
        """MSH-21 Message Profile Identifier, recorded as ``system#value``."""
        profile = identifier.get("system") or ""
        if identifier.get("value"):
            profile = f"{profile}#{identifier['value']}"
        self.session.add_profile(profile)

    declarations = (
        ComesFrom("MessageHeader.source.name", field=3, datatype="string",
                  handler=set_source_name, comment="Sending Application"),
        ComesFrom("MessageHeader.source.software", fixed="v2fhir",
                  datatype="string", handler=set_software),
        ComesFrom("MessageHeader.sender", field=4, datatype="Organization",
                  handler=set_sender, comment="Sending Facility",
                  also=("Organization.name", "Organization.identifier")),
        ComesFrom("MessageHeader.destination.name", field=5, datatype="string",
                  handler=set_destination_name, comment="Receiving Application"),
        ComesFrom("Bundle.timestamp", field=7, datatype="instant",
                  handler=set_bundle_timestamp, comment="Date/Time of Message"),
        ComesFrom("MessageHeader.meta.tag", field=9, component=1, table="0076",
                  datatype="Coding", handler=set_message_code, comment="Message Code"),
        ComesFrom("MessageHeader.eventCoding", field=9, component=2, table="0003",
                  datatype="Coding", handler=set_event, comment="Trigger Event"),
        ComesFrom("Bundle.identifier", field=10, datatype="Identifier",
                  handler=set_bundle_identifier, comment="Message Control ID"),
        ComesFrom("Bundle.meta.profile", field=21, datatype="Identifier",
                  handler=add_profile, comment="Message Profile Identifier"),
    )
