# news_ingest/services/image_pipeline.py
"""
Cover image pipeline: download -> validate -> transform -> hash -> upload.

Each step fails on its own terms:
- URL validation, download and decode failures are hard failures
  (ImageResult.success is False and the caller continues without an image)
- Upload failures degrade to a CDN transform URL built from the original
  remote URL, so a reachable and valid image always yields a usable URL

Keys are content-addressed: images/{slugify(title)}-{sha256[:8]}.{ext}
"""

import hashlib
import io
import logging
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional
from urllib.parse import quote, urlparse

import httpx
from PIL import Image, UnidentifiedImageError

from news_ingest.context import PipelineContext
from news_ingest.errors import (
    ImageFetchError,
    ImageProcessError,
    InvalidImageTypeError,
    NewsIngestError,
)
from news_ingest.services.slugs import slugify
from news_ingest.storage.base import ContentType, StorageProvider

logger = logging.getLogger(__name__)

USER_AGENT = "GoNext-ImageFetcher/1.0"
DEFAULT_QUALITY = 85
KEY_PREFIX = "images/"
DEFAULT_CDN_TRANSFORM_PATH = "/.netlify/images"

# Known upstream filler images ("breaking news" banners)
DEFAULT_IMAGE_PATTERNS = (
    "son-dakika-kirmizi",
    "son-dakika-kirmizi-co9r-cover-blpy_cover",
)
DEFAULT_IMAGE_REPLACEMENT = "/images/breaking-news.jpg"

_EXTENSION_PATTERN = re.compile(r"\.(jpg|jpeg|png|gif|webp)(\?.*)?$", re.IGNORECASE)
_IMAGE_SEGMENT_PATTERN = re.compile(r"/image/", re.IGNORECASE)
KNOWN_IMAGE_HOSTS = ("picsum.photos",)

_PIL_FORMATS = {"jpeg": "JPEG", "png": "PNG", "webp": "WEBP"}
_EXTENSIONS = {"jpeg": "jpg", "png": "png", "webp": "webp"}


# -----------------------------------------------------------------------------
# Options / results
# -----------------------------------------------------------------------------


@dataclass(frozen=True)
class ImageOptions:
    """Transform parameters. Images are fit inside width x height, never upscaled."""
    width: int = 800
    height: Optional[int] = 600
    quality: int = DEFAULT_QUALITY
    format: str = "jpeg"

    @classmethod
    def from_settings(cls, settings) -> "ImageOptions":
        return cls(
            width=settings.IMAGE_WIDTH,
            height=settings.IMAGE_HEIGHT,
            quality=settings.IMAGE_QUALITY,
            format=settings.IMAGE_FORMAT,
        )

    @property
    def normalized_format(self) -> str:
        fmt = (self.format or "jpeg").lower()
        return "jpeg" if fmt == "jpg" else fmt

    @property
    def extension(self) -> str:
        return _EXTENSIONS.get(self.normalized_format, "jpg")

    @property
    def content_type(self) -> ContentType:
        return ContentType.for_format(self.normalized_format)


@dataclass
class ImageMetadata:
    width: int
    height: int
    format: str
    size: int
    hash: Optional[str] = None

    def as_storage_metadata(self) -> dict[str, str]:
        return {
            "width": str(self.width),
            "height": str(self.height),
            "size": str(self.size),
        }


@dataclass
class ImageResult:
    """
    Outcome of ImagePipeline.process.

    fallback is True when the upload failed and url points at the CDN
    transform endpoint instead of the blob store.
    """
    success: bool
    url: Optional[str] = None
    path: Optional[str] = None
    metadata: Optional[ImageMetadata] = None
    error: Optional[str] = None
    error_code: Optional[str] = None
    fallback: bool = False
    substituted: bool = False

    @classmethod
    def failure(cls, error: Exception | str, metadata: Optional[ImageMetadata] = None) -> "ImageResult":
        code = error.code if isinstance(error, NewsIngestError) else None
        message = error.message if isinstance(error, NewsIngestError) else str(error)
        return cls(success=False, error=message, error_code=code, metadata=metadata)


# -----------------------------------------------------------------------------
# Default-image substitution
# -----------------------------------------------------------------------------


@dataclass(frozen=True)
class ImageSubstitutionRule:
    """Replace any image whose URL path contains `pattern`."""
    pattern: str
    replacement: str

    def matches(self, url: str) -> bool:
        if not url or not self.pattern:
            return False
        path = urlparse(url).path or url
        return self.pattern.lower() in path.lower()


@dataclass
class ImageSubstitutions:
    """Ordered substitution rules; the first matching rule wins."""
    rules: list[ImageSubstitutionRule] = field(
        default_factory=lambda: [
            ImageSubstitutionRule(pattern, DEFAULT_IMAGE_REPLACEMENT) for pattern in DEFAULT_IMAGE_PATTERNS
        ]
    )

    @classmethod
    def from_patterns(cls, patterns, replacement: str = DEFAULT_IMAGE_REPLACEMENT) -> "ImageSubstitutions":
        return cls(rules=[ImageSubstitutionRule(p, replacement) for p in patterns if p])

    @classmethod
    def from_settings(cls, settings) -> "ImageSubstitutions":
        return cls.from_patterns(settings.DEFAULT_IMAGE_PATTERNS, settings.DEFAULT_IMAGE_REPLACEMENT)

    def match(self, url: Optional[str]) -> Optional[ImageSubstitutionRule]:
        if not url:
            return None
        for rule in self.rules:
            if rule.matches(url):
                return rule
        return None

    def resolve(self, url: Optional[str]) -> str:
        """The URL to store for an incoming image URL (placeholder when a rule matches)."""
        rule = self.match(url)
        if rule:
            return rule.replacement
        return url or ""

    def is_placeholder(self, url: Optional[str]) -> bool:
        return self.match(url) is not None


# -----------------------------------------------------------------------------
# Pure helpers
# -----------------------------------------------------------------------------


def validate_image_url(url: Optional[str]) -> bool:
    """
    Accept http(s) URLs that end in a known image extension, or that look
    like an image endpoint (an /image/ path segment or a known image host).
    """
    if not url:
        return False
    try:
        parsed = urlparse(url)
    except ValueError:
        return False
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        return False

    if _EXTENSION_PATTERN.search(url):
        return True
    if _IMAGE_SEGMENT_PATTERN.search(parsed.path):
        return True
    host = parsed.hostname or ""
    return any(host == known or host.endswith(f".{known}") for known in KNOWN_IMAGE_HOSTS)


def build_cdn_url(
    image_url: str,
    options: ImageOptions = ImageOptions(),
    transform_path: str = DEFAULT_CDN_TRANSFORM_PATH,
) -> str:
    """CDN transform URL for a remote image (quality omitted when it is the default)."""
    url = f"{transform_path}?url={quote(image_url, safe='')}"
    if options.width:
        url += f"&w={options.width}"
    if options.height:
        url += f"&h={options.height}"
    if options.format:
        url += f"&fm={options.normalized_format}"
    if options.quality and options.quality != DEFAULT_QUALITY:
        url += f"&q={options.quality}"
    return url + "&fit=contain"


def compute_image_hash(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def get_image_metadata(data: bytes) -> ImageMetadata:
    """Dimensions and format of encoded image bytes."""
    try:
        with Image.open(io.BytesIO(data)) as img:
            return ImageMetadata(
                width=img.width,
                height=img.height,
                format=(img.format or "unknown").lower(),
                size=len(data),
            )
    except (UnidentifiedImageError, OSError) as e:
        raise ImageProcessError("Failed to get image metadata", cause=e)


def transform_image(data: bytes, options: ImageOptions) -> bytes:
    """Fit inside width x height keeping aspect ratio, then re-encode."""
    fmt = options.normalized_format
    if fmt not in _PIL_FORMATS:
        raise ImageProcessError(f"Unsupported output format: {options.format}")

    try:
        with Image.open(io.BytesIO(data)) as img:
            img.load()
            target_w = options.width or img.width
            target_h = options.height or img.height
            # thumbnail() keeps aspect ratio and never enlarges
            img.thumbnail((target_w, target_h), Image.Resampling.LANCZOS)

            if fmt == "jpeg" and img.mode not in ("RGB", "L"):
                img = img.convert("RGB")
            elif fmt != "jpeg" and img.mode == "P":
                img = img.convert("RGBA")

            out = io.BytesIO()
            save_kwargs = {"quality": options.quality}
            if fmt == "jpeg":
                save_kwargs["optimize"] = True
            img.save(out, format=_PIL_FORMATS[fmt], **save_kwargs)
            return out.getvalue()
    except (UnidentifiedImageError, OSError, ValueError) as e:
        raise ImageProcessError("Failed to process image", cause=e)


# -----------------------------------------------------------------------------
# Pipeline
# -----------------------------------------------------------------------------


class ImagePipeline:
    """
    Materializes remote cover images into the blob store.

    Usage:
        pipeline = ImagePipeline(storage=get_storage_provider(), ctx=ctx)
        result = pipeline.process(item.image_url, item.seo_title)
    """

    def __init__(
        self,
        storage: Optional[StorageProvider] = None,
        ctx: Optional[PipelineContext] = None,
        options: Optional[ImageOptions] = None,
        timeout: float = 15.0,
        cdn_transform_path: str = DEFAULT_CDN_TRANSFORM_PATH,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        self._storage = storage
        self.ctx = ctx or PipelineContext()
        self.options = options or ImageOptions()
        self.cdn_transform_path = cdn_transform_path
        self._client = httpx.Client(
            timeout=timeout,
            follow_redirects=True,
            transport=transport,
            headers={"User-Agent": USER_AGENT, "Accept": "image/*"},
        )

    @classmethod
    def from_settings(cls, settings, ctx: Optional[PipelineContext] = None, **kwargs) -> "ImagePipeline":
        kwargs.setdefault("options", ImageOptions.from_settings(settings))
        kwargs.setdefault("timeout", settings.IMAGE_FETCH_TIMEOUT_SECONDS)
        kwargs.setdefault("cdn_transform_path", settings.CDN_TRANSFORM_PATH)
        return cls(ctx=ctx, **kwargs)

    @property
    def storage(self) -> StorageProvider:
        """Lazy-load storage provider."""
        if self._storage is None:
            from news_ingest.storage.factory import get_storage_provider
            self._storage = get_storage_provider()
        return self._storage

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> "ImagePipeline":
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    # -------------------------------------------------------------------------
    # Steps
    # -------------------------------------------------------------------------

    def fetch(self, image_url: str) -> bytes:
        """Download source bytes; raises ImageFetchError / InvalidImageTypeError."""
        try:
            response = self._client.get(image_url)
        except httpx.HTTPError as e:
            raise ImageFetchError(f"Failed to fetch image: {e}", cause=e)

        if not response.is_success:
            raise ImageFetchError(f"Failed to fetch image: {response.status_code} {response.reason_phrase}")

        content_type = response.headers.get("content-type", "")
        if not content_type.startswith("image/"):
            raise InvalidImageTypeError(f"Invalid content type: {content_type or 'missing'}")

        return response.content

    def build_key(self, title: str, content_hash: str, options: ImageOptions) -> str:
        base = slugify(title or "") or "image"
        return f"{KEY_PREFIX}{base}-{content_hash[:8]}.{options.extension}"

    # -------------------------------------------------------------------------
    # Entry point
    # -------------------------------------------------------------------------

    def process(self, image_url: str, title: str, options: Optional[ImageOptions] = None) -> ImageResult:
        """
        Run the full pipeline for one image. Never raises for image problems;
        RunCancelledError propagates.
        """
        options = options or self.options
        log = self.ctx.logger
        self.ctx.cancel.raise_if_cancelled()

        if not validate_image_url(image_url):
            self.ctx.metrics.increment("image_invalid_url")
            log.warning("image_invalid_url", f"Invalid image URL format: {image_url}", url=image_url)
            return ImageResult.failure(InvalidImageTypeError("Invalid image URL format"))

        try:
            with self.ctx.metrics.timer("image_fetch"):
                raw = self.fetch(image_url)
            with self.ctx.metrics.timer("image_transform"):
                processed = transform_image(raw, options)
                metadata = get_image_metadata(processed)
        except (ImageFetchError, InvalidImageTypeError, ImageProcessError) as e:
            log.warning(
                "image_failed",
                f"Image processing failed for {image_url}: {e.message}",
                url=image_url,
                code=e.code,
            )
            return ImageResult.failure(e)

        metadata.hash = compute_image_hash(processed)
        key = self.build_key(title, metadata.hash, options)
        upload_metadata = {
            "originalUrl": image_url,
            "processedAt": datetime.now(timezone.utc).isoformat(),
            "format": options.extension,
            "contentType": options.content_type.value,
            **metadata.as_storage_metadata(),
        }

        try:
            with self.ctx.metrics.timer("image_upload"):
                stored = self.storage.upload(key, processed, options.content_type, upload_metadata)
        except Exception as e:
            # Blob store outage: serve the original through the CDN transform instead
            fallback_url = build_cdn_url(image_url, options, self.cdn_transform_path)
            self.ctx.metrics.increment("image_upload_fallback")
            log.warning(
                "image_upload_fallback",
                f"Upload failed for {key}, using CDN fallback: {e}",
                key=key,
                url=image_url,
            )
            return ImageResult(
                success=True,
                url=fallback_url,
                path=None,
                metadata=metadata,
                error=str(e),
                fallback=True,
            )

        log.info(
            "image_uploaded",
            f"Image uploaded: {key} ({metadata.width}x{metadata.height})",
            key=key,
            size_bytes=metadata.size,
        )
        return ImageResult(
            success=True,
            url=stored.url or self.storage.url_for(key),
            path=key,
            metadata=metadata,
        )
