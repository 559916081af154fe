# news_ingest/schemas/admin.py
"""
Schemas for the ingestion trigger and status endpoints.
"""

from datetime import datetime

from pydantic import BaseModel, Field

# -----------------------------------------------------------------------------
# Ingest
# -----------------------------------------------------------------------------


class IngestRunRequest(BaseModel):
    """Request to trigger ingestion."""

    limit: int = Field(50, ge=1, le=1000, description="Items to fetch (total for batch runs)")
    offset: int = Field(0, ge=0, description="Upstream offset for the first page")
    batch_size: int | None = Field(
        None, ge=1, le=200, description="Page size; a value below limit switches to a batch run"
    )
    force: bool = Field(False, description="Skip the duplicate check")
    status: str | None = Field(None, description="Upstream status filter")


class IngestErrorDetail(BaseModel):
    """A single failed item."""

    item: str
    error: str
    code: str


class IngestRunResponse(BaseModel):
    """Response from an ingestion run."""

    status: str = Field(..., description="completed|partial|failed")
    mode: str = Field(..., description="incremental|force|batch")
    started_at: datetime
    finished_at: datetime
    duration_ms: int

    # Results
    pages: int
    total_processed: int
    imported: int
    skipped: int
    errors: int
    error_details: list[IngestErrorDetail] = Field(default_factory=list)


# -----------------------------------------------------------------------------
# Status
# -----------------------------------------------------------------------------


class StatusResponse(BaseModel):
    """Upstream health and database facts."""

    api_healthy: bool
    database_connected: bool
    last_import: datetime | None = None
    total_news: int
    job_running: bool = False
