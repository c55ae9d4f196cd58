"""
EHR Sync API Routes

Endpoints for:
- Scheduler health
- Manual full sync
- On-demand single patient sync
"""

from datetime import datetime
from typing import Optional

from fastapi import APIRouter, HTTPException, Query, Request

from ehr_sync.sync.scheduler import SyncScheduler
from ehr_sync.sync.service import EHRSyncService

router = APIRouter(prefix="/integrations/ehr-sync", tags=["ehr-sync"])


def get_service(request: Request) -> EHRSyncService:
    return request.app.state.service


def get_scheduler(request: Request) -> SyncScheduler:
    return request.app.state.scheduler


@router.get("/health")
async def sync_health(request: Request):
    """Scheduler state and last run outcome."""
    scheduler = get_scheduler(request)
    service = get_service(request)
    return {
        **scheduler.health().to_dict(),
        "configured": service.is_configured,
    }


@router.post("/sync")
async def trigger_sync(request: Request):
    """Run a full sync now."""
    scheduler = get_scheduler(request)

    if not scheduler.enabled:
        raise HTTPException(status_code=400, detail="EHR sync is not enabled")
    if scheduler.is_running:
        raise HTTPException(status_code=409, detail="Sync already in progress")

    outcome = await scheduler.trigger_manual_sync()
    if not outcome["success"]:
        raise HTTPException(status_code=502, detail=outcome.get("error"))

    return {**outcome, "stats": scheduler.last_stats}


@router.post("/patients/{patient_id}/sync")
async def sync_patient(
    patient_id: str,
    request: Request,
    since: Optional[datetime] = Query(None, description="Only records modified after this instant"),
):
    """Pull one local patient's latest records from the EHR."""
    service = get_service(request)
    result = await service.sync_single_patient(patient_id, since=since)
    return result.to_dict()
