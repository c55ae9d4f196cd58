"""
Reconciliation Engine

Upserts acquired EHR records into the local store:

- Anchor types (Patient, Practitioner, Medication) go first so the
  reference map is populated before anything points at them
- Records are processed strictly one at a time; the local store may not
  tolerate concurrent transactional writes
- A failing record is counted and never aborts its batch
"""

from dataclasses import dataclass, field
from typing import Iterable, Sequence

import structlog

from ehr_sync.constants import DEFAULT_ANCHOR_TYPES, resource_identifier_system
from ehr_sync.errors import RecordError, StoreError
from ehr_sync.reconciliation.identity import (
    IdentityResolver,
    ensure_sync_identifier,
    source_identifier,
)
from ehr_sync.reconciliation.reference_map import ReferenceMap, iter_references, translate_references
from ehr_sync.store.base import RecordStore

logger = structlog.get_logger(__name__)


@dataclass
class TypeStats:
    created: int = 0
    updated: int = 0
    failed: int = 0

    @property
    def total(self) -> int:
        return self.created + self.updated + self.failed

    def as_dict(self) -> dict[str, int]:
        return {"created": self.created, "updated": self.updated, "failed": self.failed}


@dataclass
class ReconciliationStats:
    """Created/updated/failed counts, overall and per record type."""
    by_type: dict[str, TypeStats] = field(default_factory=dict)

    def for_type(self, resource_type: str) -> TypeStats:
        return self.by_type.setdefault(resource_type, TypeStats())

    def record_created(self, resource_type: str) -> None:
        self.for_type(resource_type).created += 1

    def record_updated(self, resource_type: str) -> None:
        self.for_type(resource_type).updated += 1

    def record_failed(self, resource_type: str) -> None:
        self.for_type(resource_type).failed += 1

    @property
    def created(self) -> int:
        return sum(s.created for s in self.by_type.values())

    @property
    def updated(self) -> int:
        return sum(s.updated for s in self.by_type.values())

    @property
    def failed(self) -> int:
        return sum(s.failed for s in self.by_type.values())

    def as_dict(self) -> dict:
        return {
            "created": self.created,
            "updated": self.updated,
            "failed": self.failed,
            "by_type": {t: s.as_dict() for t, s in self.by_type.items()},
        }


class ReconciliationEngine:
    """
    Identity-resolving upsert of typed record batches.

    Usage:
        engine = ReconciliationEngine(store, identifier_base)
        stats = await engine.reconcile(result.records)
    """

    def __init__(
        self,
        store: RecordStore,
        identifier_base: str,
        anchor_types: Sequence[str] = DEFAULT_ANCHOR_TYPES,
    ):
        self.store = store
        self.identifier_base = identifier_base
        self.anchor_types = list(anchor_types)
        self.resolver = IdentityResolver(store, identifier_base)

    def processing_order(self, resource_types: Iterable[str]) -> list[str]:
        """Anchors in configured order, then the rest in input order."""
        present = list(resource_types)
        anchors = [t for t in self.anchor_types if t in present]
        return anchors + [t for t in present if t not in self.anchor_types]

    async def reconcile(
        self,
        records_by_type: dict[str, list[dict]],
        reference_map: ReferenceMap | None = None,
        skip_types: Iterable[str] = (),
    ) -> ReconciliationStats:
        """
        Upsert every record and return the counts.

        Args:
            records_by_type: Acquired records grouped by type
            reference_map: Pre-seeded map (single patient sync seeds the
                patient); a fresh one is used when omitted
            skip_types: Types present in the input but not reconciled
        """
        if reference_map is None:
            reference_map = ReferenceMap()
        skipped = set(skip_types)
        stats = ReconciliationStats()
        unresolved: set[str] = set()

        for resource_type in self.processing_order(records_by_type):
            if resource_type in skipped:
                continue
            records = records_by_type.get(resource_type) or []
            type_stats = stats.for_type(resource_type)
            logger.info("Processing records", resource_type=resource_type, count=len(records))

            for record in records:
                try:
                    await self._reconcile_record(resource_type, record, reference_map, stats, unresolved)
                except Exception as e:
                    stats.record_failed(resource_type)
                    logger.warning(
                        "Failed to upsert record",
                        resource_type=resource_type,
                        ehr_id=record.get("id") if isinstance(record, dict) else None,
                        error=str(e),
                    )

            logger.info(
                "Reconciled records",
                resource_type=resource_type,
                created=type_stats.created,
                updated=type_stats.updated,
                failed=type_stats.failed,
            )

        logger.info("Reference map built", entries=len(reference_map))
        return stats

    async def _reconcile_record(
        self,
        resource_type: str,
        record: dict,
        reference_map: ReferenceMap,
        stats: ReconciliationStats,
        unresolved: set[str],
    ) -> None:
        if not isinstance(record, dict):
            raise RecordError("Record is not an object", resource_type=resource_type)

        declared_type = record.get("resourceType")
        if declared_type is None:
            record = {**record, "resourceType": resource_type}
        elif declared_type != resource_type:
            raise RecordError(
                f"Record of type {declared_type} in {resource_type} batch",
                resource_type=resource_type,
                source_id=record.get("id"),
            )

        ehr_id = record.get("id")
        source_id = source_identifier(record)
        sync_system = resource_identifier_system(self.identifier_base, resource_type)

        await self._map_stored_anchors(record, reference_map, unresolved)

        prepared = ensure_sync_identifier(record, source_id, sync_system)
        prepared = translate_references(prepared, reference_map)

        resolution = await self.resolver.resolve(resource_type, record, source_id, reference_map)

        if resolution.found:
            stored = await self.store.update({**prepared, "id": resolution.match["id"]})
            stats.record_updated(resource_type)
            logger.debug("Updated record", resource_type=resource_type, source_id=source_id, tier=resolution.tier)
        else:
            outcome = await self.store.conditional_update(
                prepared,
                {"identifier": f"{sync_system}|{source_id}"},
            )
            stored = outcome.resource
            if outcome.created:
                stats.record_created(resource_type)
            else:
                stats.record_updated(resource_type)

        local_id = stored.get("id")
        if ehr_id and local_id and resource_type in self.anchor_types:
            reference_map.add(resource_type, ehr_id, local_id)

    async def _map_stored_anchors(
        self,
        record: dict,
        reference_map: ReferenceMap,
        unresolved: set[str],
    ) -> None:
        """
        Map references to anchors stored by earlier runs.

        Incremental runs usually do not re-export the anchors a record points
        at, so the per-run map starts empty for them. The local anchor is found
        by its private sync identifier, then by the base identifier system.
        """
        for target in iter_references(record):
            reference = target["reference"]
            if reference in reference_map or reference in unresolved:
                continue
            parts = reference.rstrip("/").split("/")
            if len(parts) < 2 or parts[-2] not in self.anchor_types or not parts[-1]:
                continue
            resource_type, ehr_id = parts[-2], parts[-1]

            local = None
            for system in (resource_identifier_system(self.identifier_base, resource_type), self.identifier_base):
                try:
                    matches = await self.store.search(resource_type, {"identifier": f"{system}|{ehr_id}"}, count=1)
                except StoreError as e:
                    logger.warning("Anchor lookup failed", reference=reference, error=str(e))
                    break
                if matches:
                    local = matches[0]
                    break

            if local and local.get("id"):
                reference_map.add(resource_type, ehr_id, local["id"])
                logger.debug("Mapped stored anchor", reference=reference, local_id=local["id"])
            else:
                unresolved.add(reference)
