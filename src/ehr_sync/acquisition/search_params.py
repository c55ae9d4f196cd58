"""
Patient-scoped search parameters per resource type.

The parameter linking a resource to its patient differs by type: most
clinical resources search on 'subject', a few only accept 'patient'.
"""

SUBJECT_PARAM_TYPES = frozenset({
    "CarePlan",
    "CareTeam",
    "Composition",
    "Condition",
    "DiagnosticReport",
    "DocumentReference",
    "Encounter",
    "Goal",
    "MedicationRequest",
    "Observation",
    "Procedure",
    "ServiceRequest",
})

PATIENT_PARAM_TYPES = frozenset({
    "AllergyIntolerance",
    "Immunization",
    "MedicationStatement",
})

# Filters some EHRs (Epic) reject patient searches without
REQUIRED_SEARCH_PARAMS: dict[str, dict[str, str]] = {
    "Observation": {"category": "vital-signs"},
    "Condition": {"category": "problem-list-item"},
    "MedicationRequest": {"status": "active"},
    "AllergyIntolerance": {"clinical-status": "active"},
    "Immunization": {"status": "completed"},
    "Encounter": {"status": "finished,in-progress,planned"},
    "Procedure": {"status": "completed"},
}


def patient_search_param(resource_type: str) -> str:
    """Search parameter referencing the patient; 'patient' for unknown types."""
    if resource_type in PATIENT_PARAM_TYPES:
        return "patient"
    if resource_type in SUBJECT_PARAM_TYPES:
        return "subject"
    return "patient"


def required_search_params(resource_type: str) -> dict[str, str]:
    """Extra filters a single-patient search of this type must carry."""
    return dict(REQUIRED_SEARCH_PARAMS.get(resource_type, {}))
