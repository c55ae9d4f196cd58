"""
In-memory record store.

Used when no local FHIR server is configured, and by the tests.
"""

from datetime import datetime, timezone
from typing import Any, Callable
import copy
import uuid

import structlog

from ehr_sync.errors import StoreError
from ehr_sync.store.base import RecordStore, UpsertOutcome

logger = structlog.get_logger(__name__)


def _split_token(value: str) -> tuple[str | None, str]:
    if "|" in value:
        system, code = value.split("|", 1)
        return system or None, code
    return None, value


def _coding_matches(codings: list[dict], value: str) -> bool:
    system, code = _split_token(value)
    for coding in codings:
        if coding.get("code") != code:
            continue
        if system is None or coding.get("system") == system:
            return True
    return False


def _match_identifier(record: dict, value: str) -> bool:
    system, code = _split_token(value)
    for identifier in record.get("identifier") or []:
        if identifier.get("value") != code:
            continue
        if system is None or identifier.get("system") == system:
            return True
    return False


def _reference_matcher(field: str) -> Callable[[dict, str], bool]:
    def match(record: dict, value: str) -> bool:
        reference = (record.get(field) or {}).get("reference")
        if not reference:
            return False
        return reference == value or reference.endswith(f"/{value}")
    return match


def _match_code(record: dict, value: str) -> bool:
    return _coding_matches((record.get("code") or {}).get("coding") or [], value)


def _match_category(record: dict, value: str) -> bool:
    return any(
        _coding_matches(category.get("coding") or [], value)
        for category in record.get("category") or []
    )


def _strip_prefix(value: str) -> str:
    return value[2:] if value[:2] == "eq" else value


def _match_date(record: dict, value: str) -> bool:
    effective = record.get("effectiveDateTime") or (record.get("effectivePeriod") or {}).get("start")
    return effective == _strip_prefix(value)


def _match_onset_date(record: dict, value: str) -> bool:
    return record.get("onsetDateTime") == _strip_prefix(value)


def _match_tag(record: dict, value: str) -> bool:
    return _coding_matches((record.get("meta") or {}).get("tag") or [], value)


def _match_id(record: dict, value: str) -> bool:
    return record.get("id") == value


SEARCH_PARAMETERS: dict[str, Callable[[dict, str], bool]] = {
    "identifier": _match_identifier,
    "subject": _reference_matcher("subject"),
    "patient": _reference_matcher("patient"),
    "code": _match_code,
    "category": _match_category,
    "date": _match_date,
    "onset-date": _match_onset_date,
    "_tag": _match_tag,
    "_id": _match_id,
}


class InMemoryRecordStore(RecordStore):
    """Dictionary-backed store with FHIR-like ids and versions."""

    def __init__(self):
        self._records: dict[str, dict[str, dict]] = {}

    def all(self, resource_type: str) -> list[dict]:
        """Every stored record of a type, in insertion order."""
        return [copy.deepcopy(r) for r in self._records.get(resource_type, {}).values()]

    def count(self, resource_type: str | None = None) -> int:
        if resource_type:
            return len(self._records.get(resource_type, {}))
        return sum(len(records) for records in self._records.values())

    async def search(
        self,
        resource_type: str,
        params: dict[str, Any],
        count: int | None = None,
    ) -> list[dict]:
        matchers = []
        for name, value in params.items():
            if name in ("_count", "_sort"):
                continue
            matcher = SEARCH_PARAMETERS.get(name)
            if matcher is None:
                raise StoreError(f"Unsupported search parameter for {resource_type}: {name}")
            matchers.append((matcher, str(value)))

        results = []
        for record in self._records.get(resource_type, {}).values():
            if all(matcher(record, value) for matcher, value in matchers):
                results.append(copy.deepcopy(record))
                if count is not None and len(results) >= count:
                    break
        return results

    async def read(self, resource_type: str, resource_id: str) -> dict | None:
        record = self._records.get(resource_type, {}).get(resource_id)
        return copy.deepcopy(record) if record else None

    async def create(self, resource: dict) -> dict:
        resource_type = self._resource_type(resource)
        stored = copy.deepcopy(resource)
        stored["id"] = str(uuid.uuid4())
        self._stamp(stored, version=1)
        self._records.setdefault(resource_type, {})[stored["id"]] = stored
        return copy.deepcopy(stored)

    async def update(self, resource: dict) -> dict:
        resource_type = self._resource_type(resource)
        resource_id = resource.get("id")
        existing = self._records.get(resource_type, {}).get(resource_id) if resource_id else None
        if existing is None:
            raise StoreError(f"{resource_type}/{resource_id} does not exist")

        stored = copy.deepcopy(resource)
        version = int((existing.get("meta") or {}).get("versionId", "0")) + 1
        self._stamp(stored, version=version)
        self._records[resource_type][resource_id] = stored
        return copy.deepcopy(stored)

    async def conditional_update(self, resource: dict, params: dict[str, Any]) -> UpsertOutcome:
        resource_type = self._resource_type(resource)
        matches = await self.search(resource_type, params)
        if len(matches) > 1:
            raise StoreError(f"Conditional update matched {len(matches)} {resource_type} records")
        if matches:
            updated = await self.update({**resource, "id": matches[0]["id"]})
            return UpsertOutcome(resource=updated, created=False)
        created = await self.create(resource)
        return UpsertOutcome(resource=created, created=True)

    @staticmethod
    def _resource_type(resource: dict) -> str:
        resource_type = resource.get("resourceType")
        if not resource_type:
            raise StoreError("Record has no resourceType")
        return resource_type

    @staticmethod
    def _stamp(resource: dict, version: int) -> None:
        meta = dict(resource.get("meta") or {})
        meta["versionId"] = str(version)
        meta["lastUpdated"] = datetime.now(timezone.utc).isoformat()
        resource["meta"] = meta
