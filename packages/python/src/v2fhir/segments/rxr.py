"""
RXR → Immunization route and site.
"""

from __future__ import annotations

from typing import Any, Optional

from v2fhir.mapping import (
    ComesFrom,
    Produces,
    StructureParser,
    existing_group,
    register_parser,
)


@register_parser
class RXRParser(StructureParser):
    produces = Produces("RXR", "Immunization")

    def setup(self) -> Optional[dict[str, Any]]:
        # Only meaningful after an RXA that produced an Immunization.
        group = existing_group(self.session)
        self.immunization = group.immunization if group is not None else None
        return self.immunization

    def set_route(self, route: dict[str, Any]) -> None:
        self.immunization.setdefault("route", route)

    def set_site(self, site: dict[str, Any]) -> None:
        self.immunization.setdefault("site", site)

    declarations = (
        ComesFrom("Immunization.route", field=1, table="0162",
                  datatype="CodeableConcept", handler=set_route, comment="Route"),
        ComesFrom("Immunization.site", field=2, table="0163",
                  datatype="CodeableConcept", handler=set_site,
                  comment="Administration Site"),
    )
