"""
EHR Sync Scheduler

Runs the full sync on a fixed interval (24 hours by default), optionally
once at startup. Overlapping runs are skipped, never queued.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable
import asyncio

import structlog

from ehr_sync.config import Settings

logger = structlog.get_logger(__name__)


@dataclass
class SchedulerHealth:
    """Scheduler state for the health endpoint."""
    enabled: bool
    healthy: bool
    last_run: datetime | None
    last_run_success: bool
    is_running: bool
    interval_ms: int
    last_error: str | None = None
    last_stats: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "enabled": self.enabled,
            "healthy": self.healthy,
            "last_run": self.last_run.isoformat() if self.last_run else None,
            "last_run_success": self.last_run_success,
            "is_running": self.is_running,
            "interval_ms": self.interval_ms,
            "last_error": self.last_error,
            "last_stats": self.last_stats,
        }


class SyncScheduler:
    """
    Interval scheduler for EHR sync runs.

    Features:
    - Enable/disable via settings
    - Optional run on startup
    - "Already running" and shutdown guards
    - Manual trigger for admin use
    """

    def __init__(
        self,
        runner: Callable[[], Awaitable[Any]],
        settings: Settings,
    ):
        """
        Args:
            runner: Async callable performing one sync run
            settings: Scheduler and EHR settings
        """
        self.runner = runner
        self.settings = settings

        self._task: asyncio.Task | None = None
        self._shutting_down = False
        self._is_running = False
        self.last_run: datetime | None = None
        self.last_run_success = True
        self.last_error: str | None = None
        self.last_stats: dict[str, Any] = {}

    @property
    def enabled(self) -> bool:
        return self.settings.scheduler.enabled

    @property
    def interval_seconds(self) -> float:
        return self.settings.scheduler.interval_ms / 1000

    @property
    def is_running(self) -> bool:
        return self._is_running

    async def start(self) -> None:
        """Start the interval loop, unless disabled or unconfigured."""
        if not self.enabled:
            logger.info("Scheduler disabled via EHR_SYNC_ENABLED=false")
            return

        ehr = self.settings.ehr
        if not ehr.is_configured:
            logger.error(
                "Scheduler not started: EHR_FHIR_BASE_URL, EHR_CLIENT_ID and EHR_CLIENT_SECRET or EHR_PRIVATE_KEY are required",
                has_base_url=bool(ehr.fhir_base_url),
                has_client_id=bool(ehr.client_id),
            )
            return

        if self._task is not None:
            logger.warning("Scheduler already running")
            return

        logger.info(
            "Starting EHR sync scheduler",
            interval_hours=self.settings.scheduler.interval_ms / 1000 / 60 / 60,
            fhir_base_url=ehr.fhir_base_url,
            auth_method=ehr.auth_method,
            group_id=ehr.group_id,
        )
        self._shutting_down = False
        self._task = asyncio.create_task(self._loop())

    async def stop(self) -> None:
        """Stop the loop. A run in progress is cancelled with it."""
        logger.info("Shutting down EHR sync scheduler")
        self._shutting_down = True

        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

        logger.info("EHR sync scheduler stopped")

    async def _loop(self) -> None:
        if self.settings.scheduler.run_on_startup:
            logger.info("Running initial sync on startup")
            await self.run_once()
        else:
            logger.info("Skipping startup sync, waiting for scheduled interval")

        while not self._shutting_down:
            await asyncio.sleep(self.interval_seconds)
            await self.run_once()

    async def run_once(self) -> bool:
        """
        Run one sync if none is in progress.

        Returns:
            True when a run happened, False when it was skipped
        """
        if self._shutting_down:
            logger.info("Skipping sync, shutdown in progress")
            return False

        if self._is_running:
            logger.info("Skipping sync, previous sync still in progress")
            return False

        self._is_running = True
        logger.info("Starting scheduled sync")

        try:
            result = await self.runner()
            self.last_run = datetime.now(timezone.utc)
            self.last_run_success = True
            self.last_error = None
            stats = getattr(result, "stats", None)
            self.last_stats = stats.as_dict() if stats is not None else {}
            logger.info("Sync completed successfully")
        except Exception as e:
            # The next interval retries
            self.last_run = datetime.now(timezone.utc)
            self.last_run_success = False
            self.last_error = str(e)
            logger.error("Error during sync", error=str(e), error_type=type(e).__name__)
        finally:
            self._is_running = False

        return True

    async def trigger_manual_sync(self) -> dict[str, Any]:
        """Run a sync now, reporting why it did not run or failed."""
        if not self.enabled:
            return {"success": False, "error": "EHR sync is not enabled"}

        if self._is_running:
            return {"success": False, "error": "Sync already in progress"}

        ran = await self.run_once()
        if not ran:
            return {"success": False, "error": "Sync skipped"}
        if not self.last_run_success:
            return {"success": False, "error": self.last_error}
        return {"success": True}

    def health(self) -> SchedulerHealth:
        return SchedulerHealth(
            enabled=self.enabled,
            healthy=self.last_run_success,
            last_run=self.last_run,
            last_run_success=self.last_run_success,
            is_running=self._is_running,
            interval_ms=self.settings.scheduler.interval_ms,
            last_error=self.last_error,
            last_stats=self.last_stats,
        )
