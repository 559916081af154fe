# news_ingest/routers/admin.py
"""
Operator endpoints.

POST /v1/ingest/run - Trigger an incremental, force or batch ingestion run
GET  /v1/status     - Upstream health, database connectivity, last import
"""

import logging
from datetime import datetime

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from news_ingest.auth import require_admin_key
from news_ingest.database import get_db
from news_ingest.errors import JobAlreadyRunningError
from news_ingest.schemas.admin import (
    IngestErrorDetail,
    IngestRunRequest,
    IngestRunResponse,
    StatusResponse,
)
from news_ingest.schemas.upstream import FetchFilters
from news_ingest.services.ingestion import ImportResult, IngestionService
from news_ingest.services.job_manager import IngestJobManager, get_job_manager

admin_logger = logging.getLogger(__name__)

router = APIRouter(prefix="/v1", tags=["admin"])


def get_ingestion_service():
    """FastAPI dependency: one service (and upstream client) per request."""
    service = IngestionService()
    try:
        yield service
    finally:
        service.close()


def _run_status(result: ImportResult) -> str:
    if result.success and result.errors == 0:
        return "completed"
    if result.imported > 0 or result.success:
        return "partial"
    return "failed"


# -----------------------------------------------------------------------------
# Status endpoint
# -----------------------------------------------------------------------------


@router.get("/status", response_model=StatusResponse)
def get_status(
    db: Session = Depends(get_db),
    service: IngestionService = Depends(get_ingestion_service),
    job_manager: IngestJobManager = Depends(get_job_manager),
    _: None = Depends(require_admin_key),
) -> StatusResponse:
    """Upstream health check plus last import time and article count."""
    status = service.get_system_status(db)
    return StatusResponse(
        api_healthy=status.api_healthy,
        database_connected=status.database_connected,
        last_import=status.last_import,
        total_news=status.total_news,
        job_running=job_manager.is_running(),
    )


# -----------------------------------------------------------------------------
# Ingest endpoint
# -----------------------------------------------------------------------------


@router.post("/ingest/run", response_model=IngestRunResponse)
def run_ingest(
    request: IngestRunRequest = IngestRunRequest(),
    service: IngestionService = Depends(get_ingestion_service),
    job_manager: IngestJobManager = Depends(get_job_manager),
    _: None = Depends(require_admin_key),
) -> IngestRunResponse:
    """
    Trigger ingestion from the upstream API.

    Runs a batch when batch_size is below limit, otherwise a single page.
    Answers 503 when the upstream health check fails and 409 when another
    run is still in flight.
    """
    if not service.client.check_health():
        admin_logger.warning("Ingest trigger refused: upstream API is not healthy")
        raise HTTPException(status_code=503, detail="Upstream news API is not healthy")

    filters = FetchFilters(status=request.status) if request.status else None
    batch_mode = request.batch_size is not None and request.batch_size < request.limit
    started_at = datetime.utcnow()

    try:
        if batch_mode:
            mode = "batch"
            results = job_manager.run_exclusive(
                "ingest_batch",
                service.run_batch,
                total_limit=request.limit,
                batch_size=request.batch_size,
                force=request.force,
                filters=filters,
                cancel=service.ctx.cancel,
            )
            result = service.aggregate(results)
            pages = len(results)
        else:
            mode = "force" if request.force else "incremental"
            result = job_manager.run_exclusive(
                f"ingest_{mode}",
                service.run_incremental,
                limit=request.limit,
                offset=request.offset,
                force=request.force,
                filters=filters,
                cancel=service.ctx.cancel,
            )
            pages = 1
    except JobAlreadyRunningError as e:
        raise HTTPException(status_code=409, detail=str(e))

    finished_at = datetime.utcnow()
    admin_logger.info(
        f"Ingest run ({mode}) finished: {result.imported} imported, {result.skipped} skipped, {result.errors} errors"
    )

    return IngestRunResponse(
        status=_run_status(result),
        mode=mode,
        started_at=started_at,
        finished_at=finished_at,
        duration_ms=int((finished_at - started_at).total_seconds() * 1000),
        pages=pages,
        total_processed=result.total_processed,
        imported=result.imported,
        skipped=result.skipped,
        errors=result.errors,
        error_details=[IngestErrorDetail(**detail) for detail in result.error_details],
    )
