"""
Group Search Sync

Alternative to bulk export built on standard FHIR read/search. Used when
the EHR does not support $export or the credential may not use it.

Process:
1. Read the Group to get member patient references (falling back to an
   unfiltered, capped Patient search when the Group has no explicit members)
2. For each patient, read the Patient and search each configured type
3. Aggregate everything by type

Slower than bulk export, but works with standard read/search scopes.
"""

from datetime import datetime, timezone
import math

import structlog

from ehr_sync.acquisition.base import AcquisitionResult, AcquisitionStrategy
from ehr_sync.acquisition.search_params import patient_search_param
from ehr_sync.errors import EHRSyncError
from ehr_sync.fhir.client import EHRFHIRClient, format_instant, reference_id

logger = structlog.get_logger(__name__)

PAGE_SIZE = 100


class GroupSearchStrategy(AcquisitionStrategy):
    """Acquire a Group's patients and their records with paged searches."""

    def __init__(
        self,
        fhir: EHRFHIRClient,
        group_id: str,
        resource_types: list[str],
        max_group_members: int = 1000,
        max_search_pages: int = 10,
        max_patients: int | None = None,
    ):
        self.fhir = fhir
        self.group_id = group_id
        self.resource_types = resource_types
        self.max_group_members = max_group_members
        self.max_search_pages = max_search_pages
        self.max_patients = max_patients

    @property
    def name(self) -> str:
        return "group_search"

    async def acquire(self, since: datetime | None = None) -> AcquisitionResult:
        started_at = datetime.now(timezone.utc)
        logger.info(
            "Starting group search sync",
            group_id=self.group_id,
            resource_types=self.resource_types,
        )

        result = AcquisitionResult(strategy=self.name, transaction_time=started_at)

        patient_ids = await self.get_group_member_ids()
        logger.info("Found patients in group", count=len(patient_ids))

        if self.max_patients and len(patient_ids) > self.max_patients:
            logger.info(
                "Limiting patients processed",
                limit=self.max_patients,
                total=len(patient_ids),
            )
            patient_ids = patient_ids[: self.max_patients]

        failed_patients = 0
        for index, patient_id in enumerate(patient_ids, start=1):
            logger.debug("Processing patient", index=index, total=len(patient_ids), patient_id=patient_id)
            try:
                resources_by_type = await self.fetch_patient_resources(patient_id, since)
            except EHRSyncError as e:
                failed_patients += 1
                logger.error("Error fetching resources for patient", patient_id=patient_id, error=str(e))
                continue
            for resource_type, resources in resources_by_type.items():
                result.add(resource_type, resources)

        result.metadata.update({
            "patient_count": len(patient_ids),
            "failed_patients": failed_patients,
        })
        for resource_type, count in result.counts().items():
            logger.info("Group search resources", resource_type=resource_type, count=count)
        logger.info("Group search sync complete", total=result.total, patients=len(patient_ids))
        return result

    async def get_group_member_ids(self) -> list[str]:
        """Patient ids from Group.member, or from a capped Patient search."""
        try:
            group = await self.fhir.read("Group", self.group_id)
        except EHRSyncError as e:
            logger.info("Group resource not accessible, falling back to patient search", error=str(e))
            return await self.search_all_patients()

        if group is None:
            logger.info("Group not found, falling back to patient search", group_id=self.group_id)
            return await self.search_all_patients()

        patient_ids: list[str] = []
        for member in group.get("member") or []:
            reference = (member.get("entity") or {}).get("reference")
            patient_id = reference_id(reference, "Patient") if reference else None
            if patient_id and patient_id not in patient_ids:
                patient_ids.append(patient_id)

        # Some EHRs use Group as a query definition rather than explicit membership
        if not patient_ids:
            logger.info("No explicit members in Group, trying Patient search")
            return await self.search_all_patients()

        return patient_ids

    async def search_all_patients(self) -> list[str]:
        """Unfiltered Patient search, capped at max_group_members."""
        patient_ids: list[str] = []
        max_pages = math.ceil(self.max_group_members / PAGE_SIZE) + 1
        path: str | None = "Patient"
        params: dict | None = {"_count": PAGE_SIZE}
        pages = 0

        while path and pages < max_pages:
            pages += 1
            try:
                bundle = await self.fhir.fetch_bundle(path, params=params)
            except EHRSyncError as e:
                logger.warning("Patient search failed", error=str(e))
                break

            for resource in bundle.resources:
                patient_id = resource.get("id")
                if resource.get("resourceType") == "Patient" and patient_id and patient_id not in patient_ids:
                    patient_ids.append(patient_id)

            if len(patient_ids) >= self.max_group_members:
                logger.info("Reached patient limit", limit=self.max_group_members)
                return patient_ids[: self.max_group_members]

            path, params = bundle.next_link, None

        return patient_ids

    async def fetch_patient_resources(
        self,
        patient_id: str,
        since: datetime | None = None,
    ) -> dict[str, list[dict]]:
        """Read one patient and search each configured type for them."""
        resources_by_type: dict[str, list[dict]] = {}

        try:
            patient = await self.fhir.read("Patient", patient_id)
            if patient:
                resources_by_type["Patient"] = [patient]
        except EHRSyncError as e:
            logger.warning("Could not fetch patient", patient_id=patient_id, error=str(e))

        for resource_type in self.resource_types:
            if resource_type == "Patient":
                continue

            params = {
                patient_search_param(resource_type): f"Patient/{patient_id}",
                "_count": PAGE_SIZE,
            }
            if since:
                params["_lastUpdated"] = f"ge{format_instant(since)}"

            try:
                resources = await self.fhir.search(resource_type, params, max_pages=self.max_search_pages)
            except EHRSyncError as e:
                # Some types do not support the patient search parameter
                logger.warning(
                    "Search failed",
                    resource_type=resource_type,
                    patient_id=patient_id,
                    error=str(e),
                )
                continue

            if resources:
                resources_by_type[resource_type] = resources

        return resources_by_type
