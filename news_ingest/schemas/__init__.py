# news_ingest/schemas/__init__.py
"""
Pydantic schemas for the upstream API and the HTTP trigger.
"""

from news_ingest.schemas.admin import (
    IngestErrorDetail,
    IngestRunRequest,
    IngestRunResponse,
    StatusResponse,
)
from news_ingest.schemas.upstream import (
    FetchFilters,
    FetchPage,
    IncomingArticle,
    RejectedItem,
)

__all__ = [
    "IncomingArticle",
    "FetchFilters",
    "FetchPage",
    "RejectedItem",
    "IngestRunRequest",
    "IngestRunResponse",
    "IngestErrorDetail",
    "StatusResponse",
]
