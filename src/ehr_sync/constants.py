"""
EHR Sync Constants

Identifier systems, default resource types and OAuth scopes.
"""

# Base namespace for identifiers owned by this integration. Configurable per
# EHR (e.g. https://open.epic.com/fhir, https://practicefusion.com/fhir).
DEFAULT_IDENTIFIER_SYSTEM = "https://external-ehr.com/fhir"

SYNC_STATE_TAG = "sync-state"
SYNC_STATE_NAME = "ehr-sync-state"

FHIR_JSON = "application/fhir+json"
FHIR_NDJSON = "application/fhir+ndjson"

JWT_BEARER_ASSERTION = "urn:ietf:params:oauth:client-assertion-type:jwt-bearer"


def resource_identifier_system(base_system: str, resource_type: str) -> str:
    """Private sync identifier system for a resource type."""
    return f"{base_system.rstrip('/')}/{resource_type.lower()}-id"


# US Core resource types commonly supported by EHR bulk export
DEFAULT_EXPORT_RESOURCE_TYPES = [
    "Patient",
    "Practitioner",
    "Encounter",
    "Condition",
    "Observation",
    "MedicationRequest",
    "Medication",
    "MedicationStatement",
    "AllergyIntolerance",
    "Procedure",
    "Immunization",
    "DiagnosticReport",
    "DocumentReference",
    "CarePlan",
    "CareTeam",
    "Goal",
    "ServiceRequest",
    "Binary",
]

DEFAULT_SCOPES = " ".join(
    f"system/{resource_type}.read" for resource_type in sorted(DEFAULT_EXPORT_RESOURCE_TYPES)
)

# Types commonly referenced by others; processed first to build the reference map
DEFAULT_ANCHOR_TYPES = ("Patient", "Practitioner", "Medication")

# On-demand single patient sync is focused on pre-chart data
SINGLE_PATIENT_RESOURCE_TYPES = [
    "Observation",
    "Condition",
    "MedicationRequest",
    "AllergyIntolerance",
    "Immunization",
    "Procedure",
    "Encounter",
]
