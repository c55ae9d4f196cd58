"""
EHR Sync Application

FastAPI application exposing the sync router; the scheduler runs inside
the application's lifespan.

Run with:
    python -m ehr_sync.main
"""

from contextlib import asynccontextmanager
from typing import AsyncGenerator

import httpx
import structlog
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from ehr_sync import __version__
from ehr_sync.api import router as ehr_sync_router
from ehr_sync.config import Settings, get_settings
from ehr_sync.observability.logging import configure_logging
from ehr_sync.store.base import RecordStore
from ehr_sync.store.fhir_server import FHIRServerRecordStore
from ehr_sync.store.memory import InMemoryRecordStore
from ehr_sync.sync.scheduler import SyncScheduler
from ehr_sync.sync.service import EHRSyncService

logger = structlog.get_logger(__name__)


def build_store(settings: Settings) -> tuple[RecordStore, httpx.AsyncClient | None]:
    """The configured local store and the HTTP client it owns, if any."""
    if not settings.store.base_url:
        logger.warning("LOCAL_FHIR_BASE_URL not set, using in-memory store")
        return InMemoryRecordStore(), None

    http = httpx.AsyncClient(timeout=settings.store.timeout_seconds)
    token = settings.store.access_token.get_secret_value() if settings.store.access_token else None
    return FHIRServerRecordStore(settings.store.base_url, http, access_token=token), http


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Start the scheduler on startup and stop it on shutdown."""
    settings: Settings = app.state.settings
    logger.info(
        "Starting EHR sync API",
        configured=settings.ehr.is_configured,
        scheduler_enabled=settings.scheduler.enabled,
    )

    await app.state.scheduler.start()
    try:
        yield
    finally:
        await app.state.scheduler.stop()
        await app.state.service.close()
        if app.state.store_http is not None:
            await app.state.store_http.aclose()
        logger.info("EHR sync API stopped")


def create_app(
    settings: Settings | None = None,
    store: RecordStore | None = None,
    http: httpx.AsyncClient | None = None,
) -> FastAPI:
    """
    Build the application.

    Args:
        settings: Defaults to the environment settings
        store: Overrides the configured local store
        http: Client for EHR calls; the service creates one when omitted
    """
    settings = settings or get_settings()
    configure_logging(settings.logging.level, settings.logging.json_output)

    store_http = None
    if store is None:
        store, store_http = build_store(settings)

    service = EHRSyncService(settings, store, http=http)
    scheduler = SyncScheduler(service.run_full_sync, settings)

    app = FastAPI(
        title="EHR Sync",
        description="Acquires clinical records from an external EHR and reconciles them into the local store",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.service = service
    app.state.scheduler = scheduler
    app.state.store_http = store_http

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception):
        """Global exception handler for unhandled errors."""
        logger.error(
            "Unhandled exception",
            path=request.url.path,
            method=request.method,
            error=str(exc),
            exc_info=True,
        )
        return JSONResponse(
            status_code=500,
            content={
                "error": "internal_server_error",
                "message": "An unexpected error occurred",
            },
        )

    app.include_router(ehr_sync_router)
    return app


def main() -> None:
    import uvicorn

    settings = get_settings()
    uvicorn.run(
        "ehr_sync.main:create_app",
        factory=True,
        host=settings.server.host,
        port=settings.server.port,
    )


if __name__ == "__main__":
    main()
