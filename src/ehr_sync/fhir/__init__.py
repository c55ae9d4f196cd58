"""
FHIR R4 access to the external EHR.
"""

from ehr_sync.fhir.client import (
    EHRFHIRClient,
    FHIRBundle,
    format_instant,
    is_capability_denial,
    parse_instant,
    reference_id,
)

__all__ = [
    "EHRFHIRClient",
    "FHIRBundle",
    "format_instant",
    "is_capability_denial",
    "parse_instant",
    "reference_id",
]
