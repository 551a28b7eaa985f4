"""
Built-in segment parsers.

Importing this package registers one parser per supported segment:

  - MSH  — MessageHeader (+ Bundle timestamp, identifier, profiles)
  - PID  — Patient
  - ORC  — ServiceRequest; opens an immunization group
  - RXA  — Immunization or ImmunizationRecommendation
  - RXR  — Immunization route and site
  - OBX  — Observation; eligibility, VIS and forecast details onto the
          group's Immunization or recommendation
"""

from v2fhir.segments.msh import MSHParser
from v2fhir.segments.pid import PIDParser
from v2fhir.segments.orc import ORCParser
from v2fhir.segments.rxa import RXAParser
from v2fhir.segments.rxr import RXRParser
from v2fhir.segments.obx import OBXParser

__all__ = [
    "MSHParser",
    "PIDParser",
    "ORCParser",
    "RXAParser",
    "RXRParser",
    "OBXParser",
]
