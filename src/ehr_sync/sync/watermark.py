"""
Sync Watermark

The instant of the last successful sync, persisted in the local store as a
tagged Parameters record so it survives restarts. One watermark exists per
(source base URL, scope id) pair.
"""

from dataclasses import dataclass
from datetime import datetime

import structlog

from ehr_sync.constants import SYNC_STATE_NAME, SYNC_STATE_TAG
from ehr_sync.errors import EHRSyncError, PersistenceWarning
from ehr_sync.fhir.client import parse_instant
from ehr_sync.store.base import RecordStore

logger = structlog.get_logger(__name__)


@dataclass
class SyncWatermark:
    last_sync_time: datetime
    source_base_url: str
    scope_id: str | None = None


def _parameter(parameters: dict, name: str) -> dict:
    for parameter in parameters.get("parameter") or []:
        if parameter.get("name") == name:
            return parameter
    return {}


class WatermarkStore:
    """Load and save sync watermarks in a record store."""

    def __init__(self, store: RecordStore, identifier_system: str):
        self.store = store
        self.identifier_system = identifier_system

    @property
    def tag(self) -> str:
        return f"{self.identifier_system}|{SYNC_STATE_TAG}"

    async def _find(self, source_base_url: str, scope_id: str | None) -> dict | None:
        records = await self.store.search("Parameters", {"_tag": self.tag})
        for record in records:
            base = _parameter(record, "fhirBaseUrl").get("valueString", "")
            scope = _parameter(record, "groupId").get("valueString") or None
            if base == source_base_url and scope == (scope_id or None):
                return record
        return None

    async def load(self, source_base_url: str, scope_id: str | None = None) -> SyncWatermark | None:
        """
        The stored watermark, or None before the first sync.

        Raises:
            PersistenceWarning: the store could not be read
        """
        try:
            record = await self._find(source_base_url, scope_id)
        except EHRSyncError as e:
            raise PersistenceWarning(f"Could not read sync state: {e}") from e

        if record is None:
            return None

        last_sync = parse_instant(_parameter(record, "lastSyncTime").get("valueDateTime"))
        if last_sync is None:
            logger.warning("Sync state has no usable lastSyncTime", record_id=record.get("id"))
            return None

        return SyncWatermark(
            last_sync_time=last_sync,
            source_base_url=source_base_url,
            scope_id=scope_id,
        )

    async def save(self, watermark: SyncWatermark) -> None:
        """
        Create or replace the watermark for its (source, scope).

        Raises:
            PersistenceWarning: the store rejected the write
        """
        system, code = self.tag.split("|", 1)
        record = {
            "resourceType": "Parameters",
            "meta": {"tag": [{"system": system, "code": code}]},
            "parameter": [
                {"name": "name", "valueString": SYNC_STATE_NAME},
                {"name": "lastSyncTime", "valueDateTime": watermark.last_sync_time.isoformat()},
                {"name": "fhirBaseUrl", "valueString": watermark.source_base_url},
                {"name": "groupId", "valueString": watermark.scope_id or ""},
            ],
        }

        try:
            existing = await self._find(watermark.source_base_url, watermark.scope_id)
            if existing and existing.get("id"):
                await self.store.update({**record, "id": existing["id"]})
                logger.info("Updated sync state", last_sync_time=record["parameter"][1]["valueDateTime"])
            else:
                await self.store.create(record)
                logger.info("Created sync state", last_sync_time=record["parameter"][1]["valueDateTime"])
        except EHRSyncError as e:
            raise PersistenceWarning(f"Could not write sync state: {e}") from e
