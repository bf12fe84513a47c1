"""
FastAPI Application — job trigger surface.

Provides:
- POST /jobs/outbound-queue   run one Queue Processor batch
- POST /jobs/assignment       run one round-robin assignment pass
- GET  /health                liveness + configured store backend

Meant to be called by a scheduler (cron, cloud scheduler). Each call
performs exactly one run and returns its summary.
"""
from __future__ import annotations

import structlog
from datetime import datetime, timezone
from typing import Optional
from contextlib import asynccontextmanager

# Load .env before any config is read
from dotenv import load_dotenv
load_dotenv()

from fastapi import FastAPI, Query, Request
from fastapi.responses import JSONResponse

from assignment.scheduler import RoundRobinScheduler
from channels.base import DeliveryClient
from channels.whatsapp_adapter import WhatsAppCloudClient
from config.settings import Settings, get_settings
from database.session import close_db
from database.store_base import DataStore
from database.store_factory import create_store, reset_store
from job_queue.classifier import OutcomeClassifier
from job_queue.processor import OutboundQueueProcessor
from models.errors import DataStoreUnavailableError
from models.schemas import AssignmentRunSummary, ProcessorRunSummary
from utils.logging import configure_logging

logger = structlog.get_logger()


def create_app(
    settings: Settings = None,
    store: DataStore = None,
    client: DeliveryClient = None,
) -> FastAPI:
    """Build the app; store and client are created from settings unless given."""
    settings = settings or get_settings()
    owns_store = store is None

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        configure_logging(settings.logging.level, settings.logging.json)
        app.state.store = store or create_store({
            "store_backend": settings.database.store_backend,
            "lease_ttl_seconds": settings.assignment.lease_ttl_seconds,
        })
        app.state.client = client or WhatsAppCloudClient(settings.whatsapp)
        app.state.processor = OutboundQueueProcessor(
            app.state.store, app.state.client, settings.queue,
            classifier=OutcomeClassifier.from_config(settings.whatsapp),
        )
        app.state.scheduler = RoundRobinScheduler(app.state.store, settings.assignment)
        logger.info("dispatch_api_started",
                    app_name=settings.app_name,
                    store_backend=type(app.state.store).__name__)
        yield

        await app.state.client.close()
        await app.state.store.close()
        if owns_store:
            reset_store()
            if settings.database.store_backend == "sql":
                await close_db()
        logger.info("dispatch_api_stopped")

    app = FastAPI(
        title=f"{settings.app_name} API",
        description="WhatsApp outbound queue and round-robin assignment jobs",
        version="1.0.0",
        lifespan=lifespan,
    )

    @app.exception_handler(DataStoreUnavailableError)
    async def store_unavailable(request: Request, exc: DataStoreUnavailableError):
        logger.error("job_aborted_store_unavailable", path=request.url.path, error=str(exc))
        return JSONResponse(status_code=503, content={"detail": "data store unavailable"})

    # ══════════════════════════════════════════════════════════
    #  HEALTH
    # ══════════════════════════════════════════════════════════

    @app.get("/health")
    async def health():
        return {
            "status": "healthy",
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "store_backend": settings.database.store_backend,
        }

    # ══════════════════════════════════════════════════════════
    #  JOBS
    # ══════════════════════════════════════════════════════════

    @app.post("/jobs/outbound-queue", response_model=ProcessorRunSummary)
    async def run_outbound_queue(request: Request):
        return await request.app.state.processor.run_once()

    @app.post("/jobs/assignment", response_model=AssignmentRunSummary)
    async def run_assignment(request: Request, segment: Optional[str] = Query(default=None)):
        return await request.app.state.scheduler.run_once(segment=segment)

    return app


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(create_app(), host="0.0.0.0", port=8000)
