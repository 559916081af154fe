# news_ingest/storage/local_provider.py
"""
Filesystem image store for development and tests.

Each image is written under LOCAL_STORAGE_PATH at its key, with a
`<key>.meta.json` sidecar holding the StorageMetadata record. URLs are
`<LOCAL_STORAGE_URL_PREFIX>/<key>`, so a static file server mounted on the
base directory serves them directly.
"""

import json
import logging
import os
from datetime import UTC, datetime
from pathlib import Path

from news_ingest.storage.base import (
    ContentType,
    StorageMetadata,
    StorageObject,
    StorageProvider,
    compute_content_hash,
)

logger = logging.getLogger(__name__)

SIDECAR_SUFFIX = ".meta.json"


class LocalStorageProvider(StorageProvider):
    """Stores processed images on the local disk."""

    def __init__(self, base_path: str | None = None, url_prefix: str | None = None):
        self._root = Path(base_path or os.getenv("LOCAL_STORAGE_PATH", "./storage")).resolve()
        self._root.mkdir(parents=True, exist_ok=True)
        self._url_prefix = (url_prefix or os.getenv("LOCAL_STORAGE_URL_PREFIX", "/storage")).rstrip("/")
        logger.info(f"Local image storage at {self._root}")

    @property
    def name(self) -> str:
        return "local"

    def url_for(self, key: str) -> str:
        return f"{self._url_prefix}/{key}"

    # Paths --------------------------------------------------------------------

    def _get_path(self, key: str) -> Path:
        """Absolute path for key; keys may not escape the storage root."""
        path = (self._root / key).resolve()
        if not path.is_relative_to(self._root):
            raise ValueError("Path traversal detected")
        return path

    def _sidecar(self, key: str) -> Path:
        return self._get_path(f"{key}{SIDECAR_SUFFIX}")

    @staticmethod
    def _write_atomic(path: Path, data: bytes) -> None:
        # Readers never see a half-written image
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp = path.with_name(f".{path.name}.tmp")
        tmp.write_bytes(data)
        tmp.replace(path)

    # Operations ---------------------------------------------------------------

    def upload(
        self,
        key: str,
        content: bytes,
        content_type: ContentType = ContentType.IMAGE_JPEG,
        metadata: dict[str, str] | None = None,
    ) -> StorageMetadata:
        stored = StorageMetadata(
            uri=key,
            content_hash=compute_content_hash(content),
            content_type=content_type,
            size_bytes=len(content),
            uploaded_at=datetime.now(UTC),
            url=self.url_for(key),
            custom_metadata={k: str(v) for k, v in (metadata or {}).items()},
        )
        self._write_atomic(self._get_path(key), content)
        self._write_atomic(self._sidecar(key), json.dumps(stored.to_record(), indent=2).encode("utf-8"))

        logger.debug(f"Stored image {key} ({stored.size_bytes} bytes)")
        return stored

    def download(self, key: str) -> StorageObject | None:
        path = self._get_path(key)
        if not path.is_file():
            return None

        content = path.read_bytes()
        metadata = self._read_sidecar(key) or self._infer_metadata(key, path, content)
        return StorageObject(content=content, metadata=metadata)

    def exists(self, key: str) -> bool:
        return self._get_path(key).is_file()

    def delete(self, key: str) -> bool:
        removed = False
        for path in (self._get_path(key), self._sidecar(key)):
            if path.is_file():
                path.unlink()
                removed = True
        return removed

    def get_metadata(self, key: str) -> StorageMetadata | None:
        if not self.exists(key):
            return None
        return self._read_sidecar(key)

    def list_all(self, prefix: str = "images/") -> list:
        """Image keys under prefix, sorted. Sidecars and temp files are skipped."""
        base = self._root / prefix
        if not base.is_dir():
            return []
        return sorted(
            path.relative_to(self._root).as_posix()
            for path in base.rglob("*")
            if path.is_file() and not path.name.endswith(SIDECAR_SUFFIX) and not path.name.startswith(".")
        )

    # Metadata -----------------------------------------------------------------

    def _read_sidecar(self, key: str) -> StorageMetadata | None:
        sidecar = self._sidecar(key)
        if not sidecar.is_file():
            return None
        try:
            return StorageMetadata.from_record(json.loads(sidecar.read_text()), url=self.url_for(key))
        except (json.JSONDecodeError, KeyError, ValueError) as e:
            logger.warning(f"Unreadable metadata for {key}: {e}")
            return None

    def _infer_metadata(self, key: str, path: Path, content: bytes) -> StorageMetadata:
        """Metadata for an image whose sidecar is missing, from the key's extension."""
        return StorageMetadata(
            uri=key,
            content_hash=compute_content_hash(content),
            content_type=ContentType.for_format(path.suffix.lstrip(".")),
            size_bytes=len(content),
            uploaded_at=datetime.fromtimestamp(path.stat().st_mtime, UTC),
            url=self.url_for(key),
        )
