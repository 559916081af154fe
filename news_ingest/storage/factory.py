# news_ingest/storage/factory.py
"""
Factory function for creating storage providers.
"""

import logging
from typing import Optional

from news_ingest.storage.base import StorageProvider

logger = logging.getLogger(__name__)

# Process-wide provider instance (one bucket client per process)
_storage_provider: Optional[StorageProvider] = None


def get_storage_provider(
    provider_name: Optional[str] = None,
    **kwargs,
) -> StorageProvider:
    """
    Get or create the storage provider instance.

    Args:
        provider_name: 's3' or 'local' (default from STORAGE_PROVIDER setting)
        **kwargs: Additional arguments for the provider

    Returns:
        StorageProvider instance (singleton)
    """
    global _storage_provider

    if _storage_provider is not None:
        return _storage_provider

    if provider_name is None:
        from news_ingest.config import get_settings

        settings = get_settings()
        provider_name = settings.STORAGE_PROVIDER
        if provider_name.lower().strip() == "local":
            kwargs.setdefault("base_path", settings.LOCAL_STORAGE_PATH)
        elif settings.S3_BUCKET:
            kwargs.setdefault("bucket", settings.S3_BUCKET)

    name = provider_name.lower().strip()

    if name == "s3":
        from news_ingest.storage.s3_provider import S3StorageProvider
        _storage_provider = S3StorageProvider(**kwargs)
    elif name == "local":
        from news_ingest.storage.local_provider import LocalStorageProvider
        _storage_provider = LocalStorageProvider(**kwargs)
    else:
        raise ValueError(f"Unknown storage provider: {name}. Available: s3, local")

    logger.info(f"Storage provider initialized: {_storage_provider.name}")
    return _storage_provider


def set_storage_provider(provider: StorageProvider) -> None:
    """
    Set a custom storage provider (useful for testing).
    """
    global _storage_provider
    _storage_provider = provider


def reset_storage_provider() -> None:
    """
    Reset the storage provider singleton (for testing).
    """
    global _storage_provider
    _storage_provider = None
