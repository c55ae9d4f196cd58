"""
Reference Map

Maps EHR references (Patient/abc) to local references (Patient/123) so
records pointing at already-reconciled anchors are rewritten to the local
copies. The map is append-only for the duration of one reconciliation.

Where references live is declared in REFERENCE_PATHS rather than coded per
field. Path syntax:

    subject                 a Reference at record["subject"]
    performer[]             a list of References
    participant[].actor     the "actor" Reference of each list item
    context.encounter[]     nested object, then a list
"""

from typing import Iterator
import copy

import structlog

logger = structlog.get_logger(__name__)


# Reference fields shared by most clinical record types
COMMON_REFERENCE_PATHS: tuple[str, ...] = (
    "subject",
    "patient",
    "encounter",
    "performer[]",
    "performer[].actor",
    "author[]",
    "asserter",
    "recorder",
    "requester",
    "prescriber",
    "medicationReference",
    "participant[]",
    "participant[].actor",
    "participant[].member",
    "careTeam[]",
)

# Type-specific reference fields, applied in addition to the common ones
REFERENCE_PATHS: dict[str, tuple[str, ...]] = {
    "Patient": (
        "generalPractitioner[]",
        "managingOrganization",
        "link[].other",
    ),
    "Encounter": (
        "participant[].individual",
        "serviceProvider",
        "location[].location",
        "episodeOfCare[]",
        "reasonReference[]",
    ),
    "Observation": (
        "basedOn[]",
        "hasMember[]",
        "derivedFrom[]",
        "specimen",
    ),
    "Condition": (
        "evidence[].detail[]",
    ),
    "DiagnosticReport": (
        "basedOn[]",
        "result[]",
        "resultsInterpreter[]",
        "specimen[]",
    ),
    "MedicationRequest": (
        "basedOn[]",
        "reasonReference[]",
        "informationSource",
    ),
    "Procedure": (
        "basedOn[]",
        "reasonReference[]",
        "location",
    ),
    "Immunization": (
        "location",
        "manufacturer",
    ),
    "DocumentReference": (
        "custodian",
        "authenticator",
        "context.encounter[]",
        "context.related[]",
    ),
    "CarePlan": (
        "addresses[]",
        "goal[]",
        "activity[].reference",
        "contributor[]",
    ),
    "CareTeam": (
        "managingOrganization[]",
    ),
    "Goal": (
        "addresses[]",
        "expressedBy",
    ),
    "ServiceRequest": (
        "basedOn[]",
        "reasonReference[]",
        "locationReference[]",
    ),
    "Coverage": (
        "beneficiary",
        "subscriber",
        "policyHolder",
        "payor[]",
    ),
}


def reference_paths(resource_type: str) -> tuple[str, ...]:
    """All reference paths for a record type."""
    return COMMON_REFERENCE_PATHS + REFERENCE_PATHS.get(resource_type, ())


def _walk(node, segments: list[str]) -> Iterator[dict]:
    """Yield every object found at the end of a path."""
    if isinstance(node, list):
        for item in node:
            yield from _walk(item, segments)
        return
    if not isinstance(node, dict):
        return
    if not segments:
        yield node
        return
    head = segments[0].removesuffix("[]")
    if head in node:
        yield from _walk(node[head], segments[1:])


def iter_references(record: dict) -> Iterator[dict]:
    """Yield each Reference object of a record that has a 'reference' string."""
    seen: set[int] = set()
    for path in reference_paths(record.get("resourceType", "")):
        for target in _walk(record, path.split(".")):
            if id(target) in seen:
                continue
            seen.add(id(target))
            if isinstance(target.get("reference"), str):
                yield target


class ReferenceMap:
    """
    EHR reference -> local reference, keyed by "Type/id".

    Lookups also accept absolute references (https://ehr/fhir/Patient/abc)
    by their trailing Type/id.
    """

    def __init__(self):
        self._entries: dict[str, str] = {}

    def add(self, resource_type: str, external_id: str, local_id: str) -> None:
        """Record a pair. An existing key keeps its first value."""
        key = f"{resource_type}/{external_id}"
        value = f"{resource_type}/{local_id}"
        existing = self._entries.get(key)
        if existing is not None:
            if existing != value:
                logger.warning("Ignoring conflicting reference mapping", reference=key, existing=existing, new=value)
            return
        self._entries[key] = value

    def get(self, reference: str) -> str | None:
        if reference in self._entries:
            return self._entries[reference]
        if "://" in reference:
            parts = reference.rstrip("/").split("/")
            if len(parts) >= 2:
                return self._entries.get(f"{parts[-2]}/{parts[-1]}")
        return None

    def __contains__(self, reference: str) -> bool:
        return self.get(reference) is not None

    def __len__(self) -> int:
        return len(self._entries)

    def items(self):
        return self._entries.items()


def translate_references(record: dict, reference_map: ReferenceMap) -> dict:
    """Copy of the record with every known reference rewritten to its local form."""
    translated = copy.deepcopy(record)
    if not len(reference_map):
        return translated

    for target in iter_references(translated):
        local = reference_map.get(target["reference"])
        if local:
            target["reference"] = local
    return translated
