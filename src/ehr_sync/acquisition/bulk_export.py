"""
FHIR Bulk Data Export

Drives an asynchronous $export job from kickoff to completion:

    REQUESTED -> POLLING -> COMPLETE | FAILED | TIMED_OUT

Supports system-level (GET /$export) and group-level
(GET /Group/{id}/$export) exports. Output files are NDJSON.

https://hl7.org/fhir/uv/bulkdata/
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Awaitable, Callable, Optional
from urllib.parse import quote
import asyncio
import json
import re

import structlog
from pydantic import BaseModel, Field

from ehr_sync.acquisition.base import AcquisitionResult, AcquisitionStrategy
from ehr_sync.constants import FHIR_JSON, FHIR_NDJSON
from ehr_sync.errors import (
    CapabilityDeniedError,
    EHRSyncError,
    ExportFailedError,
    ExportTimeoutError,
    ProtocolError,
)
from ehr_sync.fhir.client import EHRFHIRClient, format_instant, is_capability_denial, parse_instant

logger = structlog.get_logger(__name__)


# =============================================================================
# Job Model
# =============================================================================

class ExportState(str, Enum):
    """Bulk export job states."""
    REQUESTED = "requested"
    POLLING = "polling"
    COMPLETE = "complete"
    FAILED = "failed"
    TIMED_OUT = "timed_out"


TERMINAL_STATES = {ExportState.COMPLETE, ExportState.FAILED, ExportState.TIMED_OUT}

_ALLOWED_TRANSITIONS = {
    ExportState.REQUESTED: {ExportState.POLLING, ExportState.FAILED},
    ExportState.POLLING: {
        ExportState.POLLING,
        ExportState.COMPLETE,
        ExportState.FAILED,
        ExportState.TIMED_OUT,
    },
}


class OutputFile(BaseModel):
    """One NDJSON output file listed by a completed export."""
    type: str
    url: str
    count: Optional[int] = None


class ExportJob(BaseModel):
    """State of one export job. Lives for a single run and is never resumed."""
    status_url: Optional[str] = None
    state: ExportState = ExportState.REQUESTED
    attempts: int = 0
    progress: Optional[int] = None
    outputs: list[OutputFile] = Field(default_factory=list)
    transaction_time: Optional[datetime] = None
    error: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    def transition(self, new_state: ExportState) -> None:
        """Move to a new state; terminal states have no way out."""
        if new_state not in _ALLOWED_TRANSITIONS.get(self.state, set()):
            raise ProtocolError(f"Illegal export transition {self.state.value} -> {new_state.value}")
        self.state = new_state


# =============================================================================
# NDJSON
# =============================================================================

@dataclass
class NDJSONBatch:
    """Records parsed from one NDJSON payload."""
    resources: list[dict] = field(default_factory=list)
    total_lines: int = 0
    malformed_lines: int = 0


def parse_ndjson(text: str) -> NDJSONBatch:
    """
    Parse newline-delimited JSON.

    Blank lines are ignored. Lines that are not a JSON object are skipped
    and counted as malformed.
    """
    batch = NDJSONBatch()
    for line_number, line in enumerate(text.splitlines(), start=1):
        stripped = line.strip()
        if not stripped:
            continue
        batch.total_lines += 1
        try:
            resource = json.loads(stripped)
        except json.JSONDecodeError as e:
            batch.malformed_lines += 1
            logger.warning("Skipping malformed NDJSON line", line=line_number, error=str(e))
            continue
        if not isinstance(resource, dict):
            batch.malformed_lines += 1
            logger.warning("Skipping non-object NDJSON line", line=line_number)
            continue
        batch.resources.append(resource)
    return batch


def _parse_progress(header: str | None) -> int | None:
    if not header:
        return None
    match = re.search(r"\d+", header)
    return int(match.group()) if match else None


# =============================================================================
# Bulk Export Client
# =============================================================================

class BulkExportClient:
    """
    Client for FHIR Bulk Data export operations.

    Polling is bounded: poll_interval_seconds * max_poll_attempts is the
    hard wall-clock limit for a job.
    """

    def __init__(
        self,
        fhir: EHRFHIRClient,
        poll_interval_seconds: float = 10.0,
        max_poll_attempts: int = 360,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.fhir = fhir
        self.poll_interval_seconds = poll_interval_seconds
        self.max_poll_attempts = max_poll_attempts
        self._sleep = sleep

    async def kick_off(
        self,
        resource_types: list[str] | None = None,
        since: datetime | None = None,
        group_id: str | None = None,
    ) -> ExportJob:
        """
        Start an export and return a job in the POLLING state.

        Raises:
            CapabilityDeniedError: the credential may not export
            ExportFailedError: any other rejection, or no status URL
        """
        job = ExportJob()

        params = {}
        if resource_types:
            params["_type"] = ",".join(resource_types)
        if since:
            params["_since"] = format_instant(since)
        params["_outputFormat"] = FHIR_NDJSON

        if group_id:
            path = f"Group/{quote(group_id, safe='')}/$export"
        else:
            path = "$export"

        logger.info(
            "Initiating bulk export",
            path=path,
            resource_types=len(resource_types or []),
            since=params.get("_since"),
        )

        response = await self.fhir.get(
            path,
            params=params,
            accept=FHIR_JSON,
            headers={"Prefer": "respond-async"},
        )

        if response.status_code != 202:
            body = response.text
            job.transition(ExportState.FAILED)
            job.error = body
            logger.error(
                "Bulk export kick-off failed",
                status=response.status_code,
                body=body[:500],
            )
            message = f"Bulk export kick-off failed: {response.status_code} {body}"
            if is_capability_denial(response.status_code, body):
                raise CapabilityDeniedError(message, status_code=response.status_code, body=body)
            raise ExportFailedError(message, status_code=response.status_code, body=body)

        status_url = response.headers.get("Content-Location")
        if not status_url:
            job.transition(ExportState.FAILED)
            job.error = "missing Content-Location"
            raise ExportFailedError(
                "Bulk export response missing Content-Location header",
                status_code=response.status_code,
            )

        job.status_url = status_url
        job.transition(ExportState.POLLING)
        logger.info("Bulk export initiated", status_url=status_url)
        return job

    async def check_status(self, job: ExportJob) -> ExportJob:
        """Poll the status URL once and advance the job."""
        if job.state != ExportState.POLLING or not job.status_url:
            raise ProtocolError(f"Cannot poll an export job in state {job.state.value}")

        job.attempts += 1
        response = await self.fhir.get(job.status_url, accept="application/json")

        if response.status_code == 202:
            job.progress = _parse_progress(response.headers.get("X-Progress"))
            job.transition(ExportState.POLLING)
            return job

        if response.status_code == 200:
            try:
                body = response.json()
                if not isinstance(body, dict):
                    raise TypeError(f"expected a JSON object, got {type(body).__name__}")
                outputs = [OutputFile.model_validate(item) for item in body.get("output") or []]
            except (ValueError, TypeError, AttributeError) as e:
                job.transition(ExportState.FAILED)
                job.error = f"Malformed export manifest: {e}"
                return job

            job.outputs = outputs
            job.transaction_time = parse_instant(body.get("transactionTime"))
            job.transition(ExportState.COMPLETE)

            errors = body.get("error") or []
            if isinstance(errors, list) and errors:
                logger.warning("Bulk export reported error files", error_files=len(errors))
            logger.info("Bulk export complete", output_files=len(outputs))
            return job

        job.error = f"Export failed: {response.status_code} {response.text}"
        job.transition(ExportState.FAILED)
        logger.error("Export status check failed", status=response.status_code, body=response.text[:500])
        return job

    async def poll_until_complete(self, job: ExportJob) -> ExportJob:
        """
        Poll until the job leaves POLLING.

        Raises:
            ExportFailedError: job failed
            ExportTimeoutError: polling attempts exhausted
        """
        while job.attempts < self.max_poll_attempts:
            await self.check_status(job)

            if job.state == ExportState.COMPLETE:
                return job
            if job.state == ExportState.FAILED:
                raise ExportFailedError(job.error or "Bulk export failed")

            logger.info(
                "Export in progress",
                attempt=job.attempts,
                max_attempts=self.max_poll_attempts,
                progress=job.progress,
            )
            if job.attempts < self.max_poll_attempts:
                await self._sleep(self.poll_interval_seconds)

        job.transition(ExportState.TIMED_OUT)
        raise ExportTimeoutError(job.attempts)

    async def download_output(self, output: OutputFile) -> NDJSONBatch:
        """Download and parse one NDJSON output file."""
        logger.info("Downloading NDJSON file", resource_type=output.type, url=output.url)

        response = await self.fhir.get(output.url, accept=FHIR_NDJSON)
        if response.status_code != 200:
            raise ProtocolError(
                f"Failed to download NDJSON file: {response.status_code} {response.text[:200]}"
            )

        batch = parse_ndjson(response.text)
        logger.info(
            "Parsed NDJSON file",
            resource_type=output.type,
            resources=len(batch.resources),
            malformed=batch.malformed_lines,
        )
        return batch

    async def cancel(self, job: ExportJob) -> None:
        """Best-effort DELETE of the job; never raises."""
        if not job.status_url:
            return
        logger.info("Cancelling export", status_url=job.status_url)
        try:
            response = await self.fhir.delete(job.status_url)
        except EHRSyncError as e:
            logger.warning("Failed to cancel export", error=str(e))
            return
        if not response.is_success and response.status_code != 404:
            logger.warning("Failed to cancel export", status=response.status_code)


# =============================================================================
# Strategy
# =============================================================================

class BulkExportStrategy(AcquisitionStrategy):
    """Acquire records through a bulk $export job."""

    def __init__(
        self,
        client: BulkExportClient,
        resource_types: list[str],
        group_id: str | None = None,
    ):
        self.client = client
        self.resource_types = resource_types
        self.group_id = group_id

    @property
    def name(self) -> str:
        return "bulk_export"

    async def acquire(self, since: datetime | None = None) -> AcquisitionResult:
        job = await self.client.kick_off(self.resource_types, since=since, group_id=self.group_id)

        try:
            await self.client.poll_until_complete(job)

            result = AcquisitionResult(
                strategy=self.name,
                transaction_time=job.transaction_time,
            )
            malformed = 0
            for output in job.outputs:
                batch = await self.client.download_output(output)
                result.add(output.type, batch.resources)
                malformed += batch.malformed_lines
        except EHRSyncError:
            await self.client.cancel(job)
            raise

        result.metadata.update({
            "output_files": len(job.outputs),
            "poll_attempts": job.attempts,
            "malformed_lines": malformed,
        })
        for resource_type, count in result.counts().items():
            logger.info("Downloaded resources", resource_type=resource_type, count=count)
        logger.info("Bulk export downloaded", total=result.total)
        return result
