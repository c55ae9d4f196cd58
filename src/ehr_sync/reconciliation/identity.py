"""
Identity Resolution

Decides whether an incoming EHR record already exists in the local store.
Tiers, first match wins:

1. The private sync identifier written by earlier runs
2. Any identifier the EHR declared on the record
3. Semantic rules (subject + code + date and similar) for EHRs that mint
   fresh ids on every export

Semantic matching can merge two genuinely distinct records that share the
same key fields (two identical lab values on the same date). That is
accepted: duplicates are the worse failure for downstream consumers.
"""

from dataclasses import dataclass
from typing import Any, Callable, Optional
import copy
import hashlib
import json

import structlog

from ehr_sync.constants import resource_identifier_system
from ehr_sync.errors import StoreError
from ehr_sync.reconciliation.reference_map import ReferenceMap
from ehr_sync.store.base import RecordStore

logger = structlog.get_logger(__name__)


# =============================================================================
# Identifiers
# =============================================================================

def source_identifier(record: dict) -> str:
    """
    Stable id of a record in the EHR.

    The first identifier value, else the record id, else a hash of the
    record content. The hash is deterministic so a record without any id
    resolves to the same local record on every run.
    """
    for identifier in record.get("identifier") or []:
        if isinstance(identifier, dict) and identifier.get("value"):
            return identifier["value"]

    if record.get("id"):
        return record["id"]

    canonical = json.dumps(record, sort_keys=True, separators=(",", ":"), default=str)
    return f"ehr-{hashlib.sha256(canonical.encode()).hexdigest()[:16]}"


def ensure_sync_identifier(record: dict, source_id: str, system: str) -> dict:
    """Copy of the record without its id and with exactly one identifier in system."""
    tagged = copy.deepcopy(record)
    tagged.pop("id", None)

    identifiers = []
    placed = False
    for identifier in tagged.get("identifier") or []:
        if identifier.get("system") == system:
            if placed:
                continue
            identifier = {**identifier, "value": source_id}
            placed = True
        identifiers.append(identifier)

    if not placed:
        identifiers.append({"system": system, "value": source_id})

    tagged["identifier"] = identifiers
    return tagged


def _token(coding: dict | None) -> str | None:
    if not coding or not coding.get("code"):
        return None
    system = coding.get("system")
    return f"{system}|{coding['code']}" if system else coding["code"]


def _first_coding(concept: dict | None) -> dict | None:
    codings = (concept or {}).get("coding") or []
    return codings[0] if codings else None


# =============================================================================
# Semantic Rules
# =============================================================================

@dataclass(frozen=True)
class SemanticRule:
    """
    Match key for a record type without stable identifiers.

    criteria returns the search parameters other than the reference, or
    None when the record lacks a required field.
    """
    resource_type: str
    reference_field: str
    criteria: Callable[[dict], Optional[dict[str, str]]]


def _observation_criteria(record: dict) -> dict[str, str] | None:
    code = _token(_first_coding(record.get("code")))
    effective = record.get("effectiveDateTime") or (record.get("effectivePeriod") or {}).get("start")
    if not code or not effective:
        return None
    return {"code": code, "date": effective}


def _condition_criteria(record: dict) -> dict[str, str] | None:
    code = _token(_first_coding(record.get("code")))
    if not code:
        return None
    criteria = {"code": code}
    if record.get("onsetDateTime"):
        criteria["onset-date"] = record["onsetDateTime"]
    return criteria


def _allergy_criteria(record: dict) -> dict[str, str] | None:
    code = _token(_first_coding(record.get("code")))
    return {"code": code} if code else None


def _care_plan_criteria(record: dict) -> dict[str, str] | None:
    categories = record.get("category") or []
    category = _token(_first_coding(categories[0])) if categories else None
    return {"category": category} if category else None


SEMANTIC_RULES: dict[str, SemanticRule] = {
    rule.resource_type: rule
    for rule in (
        SemanticRule("Observation", "subject", _observation_criteria),
        SemanticRule("Condition", "subject", _condition_criteria),
        SemanticRule("AllergyIntolerance", "patient", _allergy_criteria),
        SemanticRule("CarePlan", "subject", _care_plan_criteria),
    )
}


# =============================================================================
# Resolver
# =============================================================================

@dataclass
class Resolution:
    """Outcome of identity resolution. match is None when the record is new."""
    match: dict | None = None
    tier: str | None = None

    @property
    def found(self) -> bool:
        return self.match is not None


class IdentityResolver:
    """Find the local record an incoming EHR record corresponds to."""

    def __init__(self, store: RecordStore, identifier_base: str):
        self.store = store
        self.identifier_base = identifier_base

    async def resolve(
        self,
        resource_type: str,
        record: dict,
        source_id: str,
        reference_map: ReferenceMap | None = None,
    ) -> Resolution:
        """
        Args:
            resource_type: Type of the batch the record belongs to
            record: The record as received, before reference translation
            source_id: Result of source_identifier(record)
            reference_map: Used to also try translated references
        """
        sync_system = resource_identifier_system(self.identifier_base, resource_type)

        match = await self._first(resource_type, {"identifier": f"{sync_system}|{source_id}"})
        if match:
            return Resolution(match, "sync_identifier")

        for identifier in record.get("identifier") or []:
            system = identifier.get("system")
            value = identifier.get("value")
            if not system or not value or system == sync_system:
                continue
            match = await self._first(resource_type, {"identifier": f"{system}|{value}"})
            if match:
                return Resolution(match, "declared_identifier")

        match = await self._semantic_match(resource_type, record, reference_map)
        if match:
            return Resolution(match, "semantic")

        return Resolution()

    async def _semantic_match(
        self,
        resource_type: str,
        record: dict,
        reference_map: ReferenceMap | None,
    ) -> dict | None:
        rule = SEMANTIC_RULES.get(resource_type)
        if rule is None:
            return None

        reference = (record.get(rule.reference_field) or {}).get("reference")
        criteria = rule.criteria(record)
        if not reference or criteria is None:
            return None

        # Records stored before their anchor was mapped still carry the EHR reference
        candidates = [reference]
        translated = reference_map.get(reference) if reference_map else None
        if translated and translated != reference:
            candidates.append(translated)

        for candidate in candidates:
            match = await self._first(resource_type, {rule.reference_field: candidate, **criteria})
            if match:
                return match
        return None

    async def _first(self, resource_type: str, params: dict[str, Any]) -> dict | None:
        try:
            results = await self.store.search(resource_type, params, count=1)
        except StoreError as e:
            logger.warning("Identity search failed", resource_type=resource_type, params=params, error=str(e))
            return None
        return results[0] if results else None
