"""
Single Patient Fetch

Fast, on-demand retrieval of one patient's records using standard FHIR
read/search (typically a few seconds, versus minutes for bulk export).

Order of attempts:
1. Direct Patient read, to learn whether the token allows individual access
2. Patient/$everything
3. Per-type searches, abandoned after consecutive failures
"""

from datetime import datetime, timezone

import structlog

from ehr_sync.acquisition.base import AcquisitionResult, AcquisitionStrategy, group_by_type
from ehr_sync.acquisition.search_params import required_search_params
from ehr_sync.constants import SINGLE_PATIENT_RESOURCE_TYPES
from ehr_sync.errors import CapabilityDeniedError, EHRSyncError
from ehr_sync.fhir.client import EHRFHIRClient, format_instant

logger = structlog.get_logger(__name__)

# If this many types fail in a row, assume the EHR does not support
# individual searches for this credential (e.g. bulk-only backend tokens)
MAX_CONSECUTIVE_FAILURES = 2

# $everything pages followed before giving up on the rest
MAX_EVERYTHING_PAGES = 10


class SinglePatientStrategy(AcquisitionStrategy):
    """Acquire one patient's records by $everything or per-type search."""

    def __init__(
        self,
        fhir: EHRFHIRClient,
        patient_id: str,
        resource_types: list[str] | None = None,
        max_consecutive_failures: int = MAX_CONSECUTIVE_FAILURES,
    ):
        self.fhir = fhir
        self.patient_id = patient_id
        self.resource_types = resource_types or list(SINGLE_PATIENT_RESOURCE_TYPES)
        self.max_consecutive_failures = max_consecutive_failures

    @property
    def name(self) -> str:
        return "single_patient"

    async def acquire(self, since: datetime | None = None) -> AcquisitionResult:
        result = AcquisitionResult(
            strategy=self.name,
            transaction_time=datetime.now(timezone.utc),
            metadata={"patient_id": self.patient_id},
        )

        if not await self._can_read_patient():
            result.metadata["skipped"] = "individual access denied"
            return result

        everything = await self._fetch_everything()
        if everything:
            result.metadata["method"] = "$everything"
            for resource_type, resources in group_by_type(everything).items():
                result.add(resource_type, resources)
            logger.info("Fetched patient via $everything", patient_id=self.patient_id, total=result.total)
            return result

        result.metadata["method"] = "search"
        await self._search_each_type(result, since)
        logger.info("Fetched patient via search", patient_id=self.patient_id, total=result.total)
        return result

    async def _can_read_patient(self) -> bool:
        """False only when the token is refused for individual patient access."""
        try:
            await self.fhir.read("Patient", self.patient_id)
        except CapabilityDeniedError as e:
            logger.warning(
                "Token lacks individual patient access; bulk-only credential assumed",
                patient_id=self.patient_id,
                status=e.status_code,
            )
            return False
        except EHRSyncError as e:
            logger.warning("Direct Patient read failed", patient_id=self.patient_id, error=str(e))
        return True

    async def _fetch_everything(self) -> list[dict]:
        path = f"Patient/{self.patient_id}/$everything"
        try:
            bundle = await self.fhir.fetch_bundle(path)
        except EHRSyncError as e:
            logger.info("$everything not available", patient_id=self.patient_id, error=str(e))
            return []

        resources = list(bundle.resources)
        pages = 1
        while bundle.next_link and pages < MAX_EVERYTHING_PAGES:
            try:
                bundle = await self.fhir.fetch_bundle(bundle.next_link)
            except EHRSyncError as e:
                logger.warning("Stopped paging $everything", error=str(e))
                break
            resources.extend(bundle.resources)
            pages += 1
        return resources

    async def _search_each_type(self, result: AcquisitionResult, since: datetime | None) -> None:
        consecutive_failures = 0

        for resource_type in self.resource_types:
            if consecutive_failures >= self.max_consecutive_failures:
                logger.warning(
                    "Skipping remaining searches; EHR does not appear to support them",
                    skipped_from=resource_type,
                )
                result.metadata["searches_abandoned"] = True
                break

            params = {
                "patient": self.patient_id,
                **required_search_params(resource_type),
                "_count": 100,
            }
            if since:
                params["_lastUpdated"] = f"ge{format_instant(since)}"

            try:
                bundle = await self.fhir.fetch_bundle(resource_type, params=params)
            except EHRSyncError as e:
                consecutive_failures += 1
                logger.warning("Search failed", resource_type=resource_type, error=str(e))
                continue

            consecutive_failures = 0
            result.add(resource_type, bundle.resources)
