"""
Acquisition Orchestrator

One sync run:

1. Read the watermark for (source, scope)
2. Acquire with bulk export; when the EHR denies export and a Group scope is
   configured, fall back to group search
3. Reconcile the acquired records into the local store
4. Advance the watermark to the acquisition's transaction time

The watermark only moves after reconciliation returns, so a failed run is
retried from the same point on the next schedule.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable
import time

import structlog

from ehr_sync.acquisition.base import AcquisitionResult, AcquisitionStrategy
from ehr_sync.errors import CapabilityDeniedError, PersistenceWarning
from ehr_sync.reconciliation.engine import ReconciliationEngine, ReconciliationStats
from ehr_sync.sync.watermark import SyncWatermark, WatermarkStore

logger = structlog.get_logger(__name__)


@dataclass
class SyncRunResult:
    """Outcome of a completed sync run."""
    success: bool
    strategy: str
    stats: ReconciliationStats
    started_at: datetime
    duration_ms: int
    transaction_time: datetime | None = None
    since: datetime | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "strategy": self.strategy,
            "stats": self.stats.as_dict(),
            "started_at": self.started_at.isoformat(),
            "duration_ms": self.duration_ms,
            "transaction_time": self.transaction_time.isoformat() if self.transaction_time else None,
            "since": self.since.isoformat() if self.since else None,
            "metadata": self.metadata,
        }


class AcquisitionOrchestrator:
    """
    Sequences acquisition strategies, reconciliation and the watermark.

    group_search_factory is only called when bulk export is denied, so
    the fallback strategy costs nothing on EHRs that allow export.
    """

    def __init__(
        self,
        bulk: AcquisitionStrategy,
        group_search_factory: Callable[[], AcquisitionStrategy] | None,
        watermarks: WatermarkStore,
        engine: ReconciliationEngine,
        source_base_url: str,
        scope_id: str | None = None,
    ):
        self.bulk = bulk
        self.group_search_factory = group_search_factory
        self.watermarks = watermarks
        self.engine = engine
        self.source_base_url = source_base_url
        self.scope_id = scope_id

    async def acquire(self, since: datetime | None = None) -> AcquisitionResult:
        """
        Bulk export, falling back to group search on a capability denial.

        Raises:
            CapabilityDeniedError: export denied and no scope id configured
        """
        try:
            logger.info("Attempting bulk data export", since=since.isoformat() if since else None)
            return await self.bulk.acquire(since)
        except CapabilityDeniedError as e:
            if not self.scope_id or self.group_search_factory is None:
                logger.error(
                    "Bulk export not available and no group configured for search fallback",
                    status=e.status_code,
                )
                raise

            logger.info(
                "Bulk export not available, falling back to group search",
                status=e.status_code,
                group_id=self.scope_id,
            )
            fallback = self.group_search_factory()
            return await fallback.acquire(since)

    async def _load_since(self) -> datetime | None:
        try:
            watermark = await self.watermarks.load(self.source_base_url, self.scope_id)
        except PersistenceWarning as e:
            logger.warning("Could not read sync watermark, running a full sync", error=str(e))
            return None
        return watermark.last_sync_time if watermark else None

    async def run(self) -> SyncRunResult:
        """Execute one sync run. Acquisition errors propagate to the caller."""
        started_at = datetime.now(timezone.utc)
        start = time.monotonic()

        since = await self._load_since()
        logger.info(
            "Starting EHR sync",
            fhir_base_url=self.source_base_url,
            group_id=self.scope_id,
            last_sync_time=since.isoformat() if since else "never (initial sync)",
        )

        acquired = await self.acquire(since)
        logger.info("Acquired records", strategy=acquired.strategy, total=acquired.total)

        stats = await self.engine.reconcile(acquired.records)

        new_sync_time = acquired.transaction_time or datetime.now(timezone.utc)
        try:
            await self.watermarks.save(
                SyncWatermark(
                    last_sync_time=new_sync_time,
                    source_base_url=self.source_base_url,
                    scope_id=self.scope_id,
                )
            )
        except PersistenceWarning as e:
            # The records are in; the next run just re-pulls from the old watermark
            logger.error("Could not write sync watermark", error=str(e))

        duration_ms = int((time.monotonic() - start) * 1000)
        logger.info("Sync complete", stats=stats.as_dict(), duration_ms=duration_ms)

        return SyncRunResult(
            success=True,
            strategy=acquired.strategy,
            stats=stats,
            started_at=started_at,
            duration_ms=duration_ms,
            transaction_time=acquired.transaction_time,
            since=since,
            metadata=acquired.metadata,
        )
