# news_ingest/config.py
"""
Centralized configuration with validation.

Uses pydantic-settings to load and validate all environment variables at startup.
Fail fast with clear error messages if required config is missing.
"""

from functools import lru_cache

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Database
    DATABASE_URL: str = Field(
        ...,
        description="PostgreSQL connection URL",
    )

    # Authentication
    ADMIN_API_KEY: str | None = Field(
        default=None,
        description="API key for the ingestion trigger and status endpoints",
    )

    # Upstream content API
    NEWS_API_URL: str = Field(
        default="https://goen.onrender.com/api/v1/news",
        description="Base URL of the upstream news items endpoint",
    )
    NEWS_API_KEY: str | None = Field(
        default=None,
        description="Bearer token for the upstream API (also sent as api_key/key query params)",
    )
    NEWS_API_TIMEOUT_SECONDS: float = Field(
        default=30.0,
        description="Hard timeout for each upstream request",
    )
    NEWS_API_HEALTH_TIMEOUT_SECONDS: float = Field(
        default=5.0,
        description="Timeout for the upstream HEAD health check",
    )

    # Retry policy
    NEWS_API_MAX_ATTEMPTS: int = Field(
        default=3,
        ge=1,
        le=10,
        description="Maximum attempts per upstream call (including the first)",
    )
    RETRY_BASE_DELAY_SECONDS: float = Field(
        default=1.0,
        description="First backoff wait; doubles on every further attempt",
    )
    RETRY_MAX_DELAY_SECONDS: float = Field(
        default=30.0,
        description="Cap for a single backoff wait",
    )
    RETRY_JITTER: float = Field(
        default=0.25,
        ge=0.0,
        le=1.0,
        description="Relative jitter applied to each backoff wait (0.25 = +/-25%)",
    )

    # Ingestion
    INGEST_DEFAULT_LIMIT: int = Field(
        default=50,
        ge=1,
        description="Page size for incremental runs",
    )
    INGEST_BATCH_SIZE: int = Field(
        default=50,
        ge=1,
        description="Page size for batch runs",
    )
    INGEST_TOTAL_LIMIT: int = Field(
        default=500,
        ge=1,
        description="Total items for batch runs",
    )
    INGEST_MAX_WORKERS: int = Field(
        default=4,
        ge=1,
        le=8,
        description="Parallel article workers per page",
    )
    INTER_BATCH_PAUSE_SECONDS: float = Field(
        default=2.0,
        ge=0.0,
        description="Pause between batch pages to avoid hammering the upstream API",
    )
    DUPLICATE_CHECK_FAIL_OPEN: bool = Field(
        default=True,
        description="Treat duplicate lookup errors as 'not a duplicate' (False rejects the item instead)",
    )

    # Images
    IMAGE_PROCESSING_ENABLED: bool = Field(
        default=True,
        description="Download, transform and upload cover images during ingestion",
    )
    IMAGE_WIDTH: int = Field(default=800, description="Max width of processed cover images")
    IMAGE_HEIGHT: int = Field(default=600, description="Max height of processed cover images")
    IMAGE_QUALITY: int = Field(default=85, ge=1, le=100, description="Encoder quality")
    IMAGE_FORMAT: str = Field(default="jpeg", description="Output format: jpeg, png, webp")
    IMAGE_FETCH_TIMEOUT_SECONDS: float = Field(
        default=15.0,
        description="Timeout for downloading a source image",
    )
    CDN_TRANSFORM_PATH: str = Field(
        default="/.netlify/images",
        description="Path of the CDN image transform endpoint used when uploads fail",
    )
    DEFAULT_IMAGE_PATTERNS: list[str] = Field(
        default_factory=lambda: [
            "son-dakika-kirmizi",
            "son-dakika-kirmizi-co9r-cover-blpy_cover",
        ],
        description="Substrings identifying upstream filler images (JSON list in env)",
    )
    DEFAULT_IMAGE_REPLACEMENT: str = Field(
        default="/images/breaking-news.jpg",
        description="Placeholder used instead of a filler image",
    )

    # Storage
    STORAGE_PROVIDER: str = Field(
        default="s3",
        description="Storage provider: s3, local",
    )
    LOCAL_STORAGE_PATH: str = Field(
        default="./storage",
        description="Path for local storage provider",
    )
    AWS_ACCESS_KEY_ID: str | None = None
    AWS_SECRET_ACCESS_KEY: str | None = None
    S3_BUCKET: str | None = None

    # Application
    ENVIRONMENT: str = Field(
        default="development",
        description="Environment: development, staging, production",
    )
    LOG_JSON: bool = Field(
        default=True,
        description="Emit single-line JSON logs",
    )
    LOG_LEVEL: str = Field(
        default="INFO",
        description="Root log level",
    )

    @field_validator("DATABASE_URL")
    @classmethod
    def fix_database_url(cls, v: str) -> str:
        """Hosted Postgres hands out postgresql:// but SQLAlchemy needs postgresql+psycopg2://"""
        if v.startswith("postgresql://"):
            return v.replace("postgresql://", "postgresql+psycopg2://", 1)
        return v

    @field_validator("IMAGE_FORMAT")
    @classmethod
    def check_image_format(cls, v: str) -> str:
        v = v.lower().strip()
        if v == "jpg":
            v = "jpeg"
        if v not in ("jpeg", "png", "webp"):
            raise ValueError(f"Unsupported image format '{v}'. Use jpeg, png or webp.")
        return v

    @field_validator("NEWS_API_URL")
    @classmethod
    def strip_trailing_slash(cls, v: str) -> str:
        return v.rstrip("/")

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        case_sensitive = True


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Get cached application settings. Call at startup to validate config."""
    return Settings()
