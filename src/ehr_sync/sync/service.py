"""
EHR Sync Service

Builds the per-source components (credential provider, FHIR client,
strategies, engine, watermark store) and runs full or single-patient syncs.

One SmartBackendClient is kept per service, so tokens are reused across
runs against the same source.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any
import time

import httpx
import structlog

from ehr_sync.acquisition.bulk_export import BulkExportClient, BulkExportStrategy
from ehr_sync.acquisition.group_search import GroupSearchStrategy
from ehr_sync.acquisition.orchestrator import AcquisitionOrchestrator, SyncRunResult
from ehr_sync.acquisition.single_patient import SinglePatientStrategy
from ehr_sync.auth.smart import SmartBackendClient, SmartClientConfig, discover_smart_endpoints
from ehr_sync.config import Settings
from ehr_sync.constants import DEFAULT_SCOPES, resource_identifier_system
from ehr_sync.errors import AuthenticationError, EHRSyncError
from ehr_sync.fhir.client import EHRFHIRClient
from ehr_sync.reconciliation.engine import ReconciliationEngine
from ehr_sync.reconciliation.reference_map import ReferenceMap
from ehr_sync.store.base import RecordStore
from ehr_sync.sync.watermark import WatermarkStore

logger = structlog.get_logger(__name__)


@dataclass
class SinglePatientSyncResult:
    success: bool
    patient_id: str
    ehr_patient_id: str | None = None
    resources_updated: int = 0
    resources_by_type: dict[str, int] = field(default_factory=dict)
    failed: int = 0
    duration_ms: int = 0
    error: str | None = None
    note: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "patient_id": self.patient_id,
            "ehr_patient_id": self.ehr_patient_id,
            "resources_updated": self.resources_updated,
            "resources_by_type": self.resources_by_type,
            "failed": self.failed,
            "duration_ms": self.duration_ms,
            "error": self.error,
            "note": self.note,
        }


class EHRSyncService:
    """
    Entry point for syncs against one configured EHR.

    Usage:
        service = EHRSyncService(settings, store)
        result = await service.run_full_sync()
        patient = await service.sync_single_patient("local-patient-id")
        await service.close()
    """

    def __init__(
        self,
        settings: Settings,
        store: RecordStore,
        http: httpx.AsyncClient | None = None,
    ):
        self.settings = settings
        self.ehr = settings.ehr
        self.store = store
        self._owns_http = http is None
        self._http = http or httpx.AsyncClient(timeout=self.ehr.request_timeout_seconds)
        self._credentials: SmartBackendClient | None = None

    @property
    def is_configured(self) -> bool:
        return self.ehr.is_configured

    async def close(self) -> None:
        if self._owns_http:
            await self._http.aclose()

    # -------------------------------------------------------------------------
    # Component wiring
    # -------------------------------------------------------------------------

    async def credentials(self) -> SmartBackendClient:
        """The source's credential provider, discovering the token endpoint once."""
        if self._credentials is not None:
            return self._credentials

        if not self.is_configured:
            raise AuthenticationError(
                "EHR sync is not configured: base URL, client id and a client secret or private key are required"
            )

        token_endpoint = self.ehr.token_endpoint
        if not token_endpoint:
            logger.info("Discovering SMART endpoints", fhir_base_url=self.ehr.fhir_base_url)
            endpoints = await discover_smart_endpoints(self.ehr.fhir_base_url, self._http)
            token_endpoint = endpoints.token_endpoint

        config = SmartClientConfig(
            token_endpoint=token_endpoint,
            client_id=self.ehr.client_id,
            client_secret=self.ehr.client_secret.get_secret_value() if self.ehr.client_secret else None,
            private_key_pem=self.ehr.private_key.get_secret_value() if self.ehr.private_key else None,
            key_id=self.ehr.key_id,
            algorithm=self.ehr.algorithm,
            jwks_url=self.ehr.jwks_url,
            scopes=self.ehr.scopes or DEFAULT_SCOPES,
        )
        self._credentials = SmartBackendClient(config, self._http)
        return self._credentials

    async def fhir_client(self) -> EHRFHIRClient:
        credentials = await self.credentials()
        return EHRFHIRClient(self.ehr.fhir_base_url, credentials, self._http)

    def engine(self) -> ReconciliationEngine:
        return ReconciliationEngine(
            self.store,
            self.ehr.identifier_system,
            anchor_types=self.ehr.anchor_type_list,
        )

    async def orchestrator(self) -> AcquisitionOrchestrator:
        fhir = await self.fhir_client()
        resource_types = self.ehr.resource_type_list

        bulk = BulkExportStrategy(
            BulkExportClient(
                fhir,
                poll_interval_seconds=self.ehr.poll_interval_seconds,
                max_poll_attempts=self.ehr.max_poll_attempts,
            ),
            resource_types,
            group_id=self.ehr.group_id,
        )

        def group_search() -> GroupSearchStrategy:
            return GroupSearchStrategy(
                fhir,
                self.ehr.group_id,
                resource_types,
                max_group_members=self.ehr.max_group_members,
                max_search_pages=self.ehr.max_search_pages,
                max_patients=self.ehr.max_patients,
            )

        return AcquisitionOrchestrator(
            bulk=bulk,
            group_search_factory=group_search if self.ehr.group_id else None,
            watermarks=WatermarkStore(self.store, self.ehr.identifier_system),
            engine=self.engine(),
            source_base_url=self.ehr.fhir_base_url,
            scope_id=self.ehr.group_id,
        )

    # -------------------------------------------------------------------------
    # Runs
    # -------------------------------------------------------------------------

    async def run_full_sync(self) -> SyncRunResult:
        """Run one full/incremental sync. Run-level errors propagate."""
        logger.info(
            "Starting EHR data sync",
            fhir_base_url=self.ehr.fhir_base_url,
            resource_types=self.ehr.resource_type_list,
            group_id=self.ehr.group_id,
        )
        orchestrator = await self.orchestrator()
        return await orchestrator.run()

    async def find_ehr_patient_id(self, local_patient_id: str) -> str | None:
        """
        The EHR id of a local patient, from its identifiers.

        Checked in order per identifier: the Patient sync system, the base
        identifier system, then any MRN system.
        """
        patient = await self.store.read("Patient", local_patient_id)
        if not patient:
            logger.info("Local patient not found", patient_id=local_patient_id)
            return None

        patient_system = resource_identifier_system(self.ehr.identifier_system, "Patient")
        for identifier in patient.get("identifier") or []:
            system = identifier.get("system") or ""
            value = identifier.get("value")
            if not value:
                continue
            if system in (patient_system, self.ehr.identifier_system) or "mrn" in system.lower():
                logger.info("Found EHR patient id", patient_id=local_patient_id, system=system)
                return value

        logger.info(
            "No EHR identifier on patient",
            patient_id=local_patient_id,
            expected=[patient_system, self.ehr.identifier_system, "*mrn*"],
        )
        return None

    async def sync_single_patient(
        self,
        local_patient_id: str,
        since: datetime | None = None,
    ) -> SinglePatientSyncResult:
        """
        Pull and reconcile one patient's records on demand.

        Never raises: failures are reported in the result.
        """
        start = time.monotonic()
        result = SinglePatientSyncResult(success=True, patient_id=local_patient_id)

        if not self.is_configured:
            result.note = "EHR sync not configured"
            return result

        try:
            ehr_patient_id = await self.find_ehr_patient_id(local_patient_id)
            if not ehr_patient_id:
                result.note = "Patient has no EHR identifier"
                return result
            result.ehr_patient_id = ehr_patient_id

            fhir = await self.fhir_client()
            acquired = await SinglePatientStrategy(fhir, ehr_patient_id).acquire(since)

            # Dependent records must point at the existing local patient
            reference_map = ReferenceMap()
            reference_map.add("Patient", ehr_patient_id, local_patient_id)

            stats = await self.engine().reconcile(
                acquired.records,
                reference_map=reference_map,
                skip_types=("Patient",),
            )
            result.resources_by_type = {
                resource_type: type_stats.created + type_stats.updated
                for resource_type, type_stats in stats.by_type.items()
            }
            result.resources_updated = stats.created + stats.updated
            result.failed = stats.failed
        except EHRSyncError as e:
            logger.error("Single patient sync failed", patient_id=local_patient_id, error=str(e))
            result.success = False
            result.error = str(e)
        finally:
            result.duration_ms = int((time.monotonic() - start) * 1000)

        logger.info(
            "Single patient sync complete",
            patient_id=local_patient_id,
            success=result.success,
            resources=result.resources_updated,
            duration_ms=result.duration_ms,
        )
        return result
