# news_ingest/storage/s3_provider.py
"""
S3 image store (AWS S3 or any S3-compatible endpoint such as MinIO).

Objects are written with a one-year immutable Cache-Control: keys are
content-addressed, so a changed image always lands on a new key.
"""

import logging
import os
from datetime import UTC, datetime
from typing import Dict, Optional
from urllib.parse import quote, unquote

import boto3
from botocore.config import Config
from botocore.exceptions import ClientError

from news_ingest.storage.base import (
    ContentType,
    StorageMetadata,
    StorageObject,
    StorageProvider,
    compute_content_hash,
)

logger = logging.getLogger(__name__)

CACHE_CONTROL = "public, max-age=31536000, immutable"
HASH_METADATA_KEY = "content-hash"
NOT_FOUND_CODES = frozenset({"404", "NoSuchKey", "NotFound"})


def _is_not_found(error: ClientError) -> bool:
    return error.response.get("Error", {}).get("Code", "") in NOT_FOUND_CODES


def _encode_metadata(metadata: Optional[Dict[str, str]]) -> Dict[str, str]:
    # S3 user metadata travels as HTTP headers: lowercase ASCII keys and values
    return {key.lower(): quote(str(value), safe=" /:=,.-_") for key, value in (metadata or {}).items()}


def _decode_metadata(metadata: Optional[Dict[str, str]]) -> Dict[str, str]:
    return {key: unquote(value) for key, value in (metadata or {}).items()}


class S3StorageProvider(StorageProvider):
    """
    Stores processed images in an S3 bucket.

    Configuration via environment:
    - S3_BUCKET: Bucket name (required)
    - S3_ENDPOINT_URL: Custom endpoint for S3-compatible services
    - S3_REGION: AWS region (default: us-east-1)
    - S3_PUBLIC_BASE_URL: CDN / public base URL in front of the bucket
    - AWS_ACCESS_KEY_ID / AWS_SECRET_ACCESS_KEY: credentials (boto3 chain)
    """

    def __init__(
        self,
        bucket: Optional[str] = None,
        endpoint_url: Optional[str] = None,
        region: Optional[str] = None,
        public_base_url: Optional[str] = None,
        client=None,
    ):
        self._bucket = bucket or os.getenv("S3_BUCKET")
        if not self._bucket:
            raise ValueError("S3 bucket required. Set S3_BUCKET env var or pass bucket.")

        self._endpoint_url = endpoint_url or os.getenv("S3_ENDPOINT_URL")
        self._region = region or os.getenv("S3_REGION", "us-east-1")
        self._public_base_url = (public_base_url or os.getenv("S3_PUBLIC_BASE_URL") or "").rstrip("/")
        self._client = client or boto3.client(
            "s3",
            endpoint_url=self._endpoint_url,
            region_name=self._region,
            # Few retries: a failed upload degrades to the CDN transform URL
            config=Config(retries={"max_attempts": 2, "mode": "standard"}, connect_timeout=5, read_timeout=30),
        )

        logger.info(f"S3 image storage: bucket={self._bucket}")

    @property
    def name(self) -> str:
        return "s3"

    @property
    def bucket(self) -> str:
        return self._bucket

    def url_for(self, key: str) -> str:
        if self._public_base_url:
            return f"{self._public_base_url}/{key}"
        if self._endpoint_url:
            return f"{self._endpoint_url.rstrip('/')}/{self._bucket}/{key}"
        return f"https://{self._bucket}.s3.{self._region}.amazonaws.com/{key}"

    def _to_metadata(self, key: str, head: dict, content: Optional[bytes] = None) -> StorageMetadata:
        """StorageMetadata from a get_object / head_object response."""
        custom = _decode_metadata(head.get("Metadata"))
        content_hash = custom.get(HASH_METADATA_KEY) or (compute_content_hash(content) if content is not None else "")
        return StorageMetadata(
            uri=key,
            content_hash=content_hash,
            content_type=ContentType.parse(head.get("ContentType")),
            size_bytes=len(content) if content is not None else int(head.get("ContentLength", 0)),
            uploaded_at=head.get("LastModified") or datetime.now(UTC),
            url=self.url_for(key),
            custom_metadata=custom,
        )

    # Operations ---------------------------------------------------------------

    def upload(
        self,
        key: str,
        content: bytes,
        content_type: ContentType = ContentType.IMAGE_JPEG,
        metadata: Optional[Dict[str, str]] = None,
    ) -> StorageMetadata:
        content_hash = compute_content_hash(content)
        headers = _encode_metadata(metadata)
        headers[HASH_METADATA_KEY] = content_hash

        try:
            self._client.put_object(
                Bucket=self._bucket,
                Key=key,
                Body=content,
                ContentType=content_type.value,
                CacheControl=CACHE_CONTROL,
                Metadata=headers,
            )
        except ClientError as e:
            logger.error(f"S3 upload failed for {key}: {e}")
            raise

        logger.debug(f"Uploaded image to S3: {key} ({len(content)} bytes)")
        return StorageMetadata(
            uri=key,
            content_hash=content_hash,
            content_type=content_type,
            size_bytes=len(content),
            uploaded_at=datetime.now(UTC),
            url=self.url_for(key),
            custom_metadata=_decode_metadata(headers),
        )

    def download(self, key: str) -> Optional[StorageObject]:
        try:
            response = self._client.get_object(Bucket=self._bucket, Key=key)
        except ClientError as e:
            if _is_not_found(e):
                return None
            logger.error(f"S3 download failed for {key}: {e}")
            raise

        content = response["Body"].read()
        return StorageObject(content=content, metadata=self._to_metadata(key, response, content))

    def get_metadata(self, key: str) -> Optional[StorageMetadata]:
        try:
            head = self._client.head_object(Bucket=self._bucket, Key=key)
        except ClientError as e:
            if _is_not_found(e):
                return None
            raise
        return self._to_metadata(key, head)

    def exists(self, key: str) -> bool:
        return self.get_metadata(key) is not None

    def delete(self, key: str) -> bool:
        """False when the key was not there (S3 deletes are otherwise silent)."""
        if not self.exists(key):
            return False
        self._client.delete_object(Bucket=self._bucket, Key=key)
        logger.debug(f"Deleted image from S3: {key}")
        return True

    def list_all(self, prefix: str = "images/") -> list:
        paginator = self._client.get_paginator("list_objects_v2")
        return sorted(
            obj["Key"]
            for page in paginator.paginate(Bucket=self._bucket, Prefix=prefix)
            for obj in page.get("Contents", [])
        )
