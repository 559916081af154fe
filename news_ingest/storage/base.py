# news_ingest/storage/base.py
"""
Storage provider interface for processed cover images.

Design principles:
- Image bytes live in object storage (S3), not Postgres
- Keys are content-addressed: {slug}-{sha256[:8]}.{ext}, so re-uploading the
  same transformed bytes for the same title lands on the same key
- Postgres stores only the key, hash, dimensions and public URL
- Images are already compressed; they are stored as-is
"""

import hashlib
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Optional, Dict


class ContentType(str, Enum):
    """Supported content types for image storage."""
    IMAGE_JPEG = "image/jpeg"
    IMAGE_PNG = "image/png"
    IMAGE_WEBP = "image/webp"
    OCTET_STREAM = "application/octet-stream"

    @classmethod
    def for_format(cls, fmt: str) -> "ContentType":
        return {
            "jpeg": cls.IMAGE_JPEG,
            "jpg": cls.IMAGE_JPEG,
            "png": cls.IMAGE_PNG,
            "webp": cls.IMAGE_WEBP,
        }.get(fmt.lower(), cls.OCTET_STREAM)

    @classmethod
    def parse(cls, value: Optional[str]) -> "ContentType":
        """Tolerant lookup for content types read back from storage."""
        try:
            return cls((value or "").split(";")[0].strip())
        except ValueError:
            return cls.OCTET_STREAM


@dataclass
class StorageMetadata:
    """Metadata about stored content."""
    uri: str  # Object key/path
    content_hash: str  # SHA256 of stored content
    content_type: ContentType
    size_bytes: int
    uploaded_at: datetime
    url: Optional[str] = None  # Public URL, when the provider can build one
    custom_metadata: Dict[str, str] = field(default_factory=dict)

    def to_record(self) -> dict:
        """JSON-safe form (the public URL is rebuilt by the provider)."""
        return {
            "uri": self.uri,
            "content_hash": self.content_hash,
            "content_type": self.content_type.value,
            "size_bytes": self.size_bytes,
            "uploaded_at": self.uploaded_at.isoformat(),
            "custom_metadata": self.custom_metadata,
        }

    @classmethod
    def from_record(cls, record: dict, url: Optional[str] = None) -> "StorageMetadata":
        return cls(
            uri=record["uri"],
            content_hash=record["content_hash"],
            content_type=ContentType.parse(record["content_type"]),
            size_bytes=int(record["size_bytes"]),
            uploaded_at=datetime.fromisoformat(record["uploaded_at"]),
            url=url,
            custom_metadata=dict(record.get("custom_metadata") or {}),
        )


@dataclass
class StorageObject:
    """A stored object with content and metadata."""
    content: bytes
    metadata: StorageMetadata
    exists: bool = True


def compute_content_hash(content: bytes) -> str:
    """Compute SHA256 hash of content."""
    return hashlib.sha256(content).hexdigest()


class StorageProvider(ABC):
    """
    Abstract interface for object storage.

    Implementations must handle:
    - Upload with attached string metadata
    - Download / existence / delete by key
    - Listing keys under a prefix
    - Building a public URL for a key
    """

    @property
    @abstractmethod
    def name(self) -> str:
        """Provider name (e.g., 's3', 'local')."""
        pass

    @abstractmethod
    def upload(
        self,
        key: str,
        content: bytes,
        content_type: ContentType = ContentType.IMAGE_JPEG,
        metadata: Optional[Dict[str, str]] = None,
    ) -> StorageMetadata:
        """
        Upload content to storage.

        Args:
            key: Object key (e.g., "images/son-dakika-1a2b3c4d.jpg")
            content: Bytes to store
            content_type: MIME type
            metadata: Custom metadata to attach (string values)

        Returns:
            StorageMetadata with upload details
        """
        pass

    @abstractmethod
    def download(self, key: str) -> Optional[StorageObject]:
        """
        Download content from storage.

        Returns:
            StorageObject, or None if not found
        """
        pass

    @abstractmethod
    def exists(self, key: str) -> bool:
        """Check if object exists."""
        pass

    @abstractmethod
    def delete(self, key: str) -> bool:
        """
        Delete object from storage.

        Returns:
            True if deleted, False if not found
        """
        pass

    @abstractmethod
    def get_metadata(self, key: str) -> Optional[StorageMetadata]:
        """
        Get metadata without downloading content.

        Returns:
            StorageMetadata or None if not found
        """
        pass

    @abstractmethod
    def list_all(self, prefix: str = "images/") -> list:
        """List all keys with the given prefix."""
        pass

    @abstractmethod
    def url_for(self, key: str) -> str:
        """Public URL (or path) clients use to fetch the object."""
        pass
