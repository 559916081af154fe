# news_ingest/errors.py
"""
Error taxonomy for the ingestion pipeline.

Every error carries a stable ``code`` that ends up in ImportResult
error details, so operators can group failures without parsing messages.
"""


class NewsIngestError(Exception):
    """Base class for all pipeline errors."""

    code = "NEWS_INGEST_ERROR"

    def __init__(self, message: str, code: str | None = None, cause: Exception | None = None):
        super().__init__(message)
        self.message = message
        if code:
            self.code = code
        self.cause = cause

    def to_dict(self) -> dict:
        return {"error": self.message, "code": self.code}


# -----------------------------------------------------------------------------
# Fetch client
# -----------------------------------------------------------------------------


class NetworkError(NewsIngestError):
    """Connection-level failure talking to the upstream API."""

    code = "NETWORK_ERROR"


class FetchTimeoutError(NewsIngestError):
    """Upstream request exceeded its timeout."""

    code = "TIMEOUT_ERROR"


class InvalidResponseError(NewsIngestError):
    """Upstream answered, but the body is not the expected shape."""

    code = "INVALID_RESPONSE"


class ApiError(NewsIngestError):
    """Upstream answered with a non-success HTTP status."""

    code = "API_ERROR"

    def __init__(self, message: str, status: int, cause: Exception | None = None):
        super().__init__(message, cause=cause)
        self.status = status

    @property
    def is_retryable(self) -> bool:
        return self.status >= 500 or self.status == 429

    def to_dict(self) -> dict:
        data = super().to_dict()
        data["status"] = self.status
        return data


# -----------------------------------------------------------------------------
# Item validation / duplicates
# -----------------------------------------------------------------------------


class ValidationError(NewsIngestError):
    """Incoming item is malformed."""

    code = "VALIDATION_ERROR"

    def __init__(self, message: str, field: str | None = None, cause: Exception | None = None):
        super().__init__(message, cause=cause)
        self.field = field


class DuplicateError(NewsIngestError):
    """Item already exists (raised only when the caller asks for a hard stop)."""

    code = "DUPLICATE_ERROR"

    def __init__(self, message: str, field: str | None = None):
        super().__init__(message)
        self.field = field


# -----------------------------------------------------------------------------
# Image pipeline
# -----------------------------------------------------------------------------


class ImageFetchError(NewsIngestError):
    """Source image could not be downloaded."""

    code = "IMAGE_FETCH_ERROR"


class InvalidImageTypeError(NewsIngestError):
    """URL or response does not describe an image."""

    code = "INVALID_IMAGE_TYPE"


class ImageProcessError(NewsIngestError):
    """Image bytes could not be decoded or re-encoded."""

    code = "IMAGE_PROCESS_ERROR"


# -----------------------------------------------------------------------------
# Storage / run control
# -----------------------------------------------------------------------------


class PersistenceError(NewsIngestError):
    """A relational-store operation failed."""

    code = "PERSISTENCE_ERROR"

    def __init__(self, operation: str, cause: Exception | None = None):
        super().__init__(f"{operation} failed: {cause}", cause=cause)
        self.operation = operation


class RunCancelledError(NewsIngestError):
    """The run was cancelled or its deadline passed."""

    code = "CANCELLED"


class JobAlreadyRunningError(RuntimeError):
    """Another ingestion run is still in flight."""

    pass


def error_code(exc: BaseException) -> str:
    """Stable code for any exception (UNKNOWN_ERROR outside the taxonomy)."""
    if isinstance(exc, NewsIngestError):
        return exc.code
    return "UNKNOWN_ERROR"
