# news_ingest/storage/__init__.py
"""
Storage provider abstraction for processed cover images.

Image bytes are stored in object storage (S3), not Postgres.
This module provides a clean interface for upload/download operations.
"""

from news_ingest.storage.base import (
    ContentType,
    StorageMetadata,
    StorageObject,
    StorageProvider,
)
from news_ingest.storage.factory import (
    get_storage_provider,
    reset_storage_provider,
    set_storage_provider,
)
from news_ingest.storage.local_provider import LocalStorageProvider
from news_ingest.storage.s3_provider import S3StorageProvider

__all__ = [
    "StorageProvider",
    "StorageObject",
    "StorageMetadata",
    "ContentType",
    "S3StorageProvider",
    "LocalStorageProvider",
    "get_storage_provider",
    "set_storage_provider",
    "reset_storage_provider",
]
