# news_ingest/models.py
"""
News ingestion database models

Tables:
- Source: Publishers, keyed by the origin of an article's canonical URL
- MediaAsset: Processed (or externally referenced) cover images
- Category / Tag: Shared reference data, created lazily
- StoredArticle: Articles imported from the upstream API
- ArticleCategory / ArticleTag / ArticleMedia: Junction rows owned by an article
- ImportLog: Append-only audit record, one per ingestion run
"""

from datetime import datetime
from enum import Enum

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import relationship

from news_ingest.database import Base

# JSONB on Postgres, plain JSON elsewhere (SQLite in tests)
JSONType = JSON().with_variant(JSONB(), "postgresql")


# -----------------------------------------------------------------------------
# Enums
# -----------------------------------------------------------------------------

class ArticleStatus(str, Enum):
    """Publication status of a stored article."""
    DRAFT = "draft"
    PUBLISHED = "published"
    ARCHIVED = "archived"


class IngestMode(str, Enum):
    """How a run was triggered."""
    INCREMENTAL = "incremental"
    FORCE = "force"
    BATCH = "batch"


# -----------------------------------------------------------------------------
# Source
# -----------------------------------------------------------------------------

class Source(Base):
    """Publisher an article came from (one row per URL origin)."""
    __tablename__ = "sources"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(255), nullable=False)  # hostname, e.g. "www.dunya.com"
    base_url = Column(String(512), unique=True, nullable=False)  # origin, e.g. "https://www.dunya.com"
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    articles = relationship("StoredArticle", back_populates="source")


# -----------------------------------------------------------------------------
# MediaAsset
# -----------------------------------------------------------------------------

class MediaAsset(Base):
    """
    A cover image.

    Either uploaded to the blob store (storage_path set) or referenced
    externally (external_url only, e.g. CDN fallback or placeholder).
    Has no knowledge of the article that uses it.
    """
    __tablename__ = "media"

    id = Column(Integer, primary_key=True, autoincrement=True)
    original_name = Column(String(512), nullable=True)
    external_url = Column(Text, nullable=True)
    storage_path = Column(String(1024), nullable=True)
    mime_type = Column(String(64), nullable=True)
    width = Column(Integer, nullable=True)
    height = Column(Integer, nullable=True)
    filesize = Column(BigInteger, nullable=True)
    content_hash = Column(String(64), nullable=True, index=True)  # SHA256 of stored bytes
    alt_text = Column(String(1024), nullable=True)
    caption = Column(Text, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


# -----------------------------------------------------------------------------
# Category / Tag
# -----------------------------------------------------------------------------

class Category(Base):
    """Canonical category (turkiye, business, world, ...)."""
    __tablename__ = "categories"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(128), nullable=False)
    slug = Column(String(128), unique=True, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)


class Tag(Base):
    """Free-form tag, deduplicated by slug."""
    __tablename__ = "tags"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(128), nullable=False)
    slug = Column(String(128), unique=True, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)


# -----------------------------------------------------------------------------
# StoredArticle
# -----------------------------------------------------------------------------

class StoredArticle(Base):
    """
    An article imported from the upstream API.

    Identity:
    - source_guid: globally unique upstream identifier (unique constraint is
      the last line of defence against double inserts)
    - source_id: secondary upstream identifier (the upstream item id)

    Created once; later only the cover image may change (reconciliation).
    """
    __tablename__ = "news"

    id = Column(Integer, primary_key=True, autoincrement=True)
    source_guid = Column(String(512), unique=True, nullable=False)
    source_id = Column(String(255), nullable=True, index=True)
    source_fk = Column(Integer, ForeignKey("sources.id"), nullable=True)

    slug = Column(String(512), unique=True, nullable=False)
    title = Column(Text, nullable=False)
    seo_title = Column(Text, nullable=True)
    seo_description = Column(Text, nullable=True)
    excerpt = Column(String(200), nullable=True)
    content_md = Column(Text, nullable=False, default="")
    canonical_url = Column(Text, nullable=True)

    main_media_id = Column(Integer, ForeignKey("media.id"), nullable=True)
    status = Column(String(16), default=ArticleStatus.PUBLISHED.value, nullable=False)

    word_count = Column(Integer, default=0, nullable=False)
    reading_time_min = Column(Integer, default=1, nullable=False)

    meta = Column(JSONType, nullable=True)  # tldr, file_path, image_url, image_alt, image_caption

    published_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    # Relationships
    source = relationship("Source", back_populates="articles")
    main_media = relationship("MediaAsset")
    categories = relationship("ArticleCategory", cascade="all, delete-orphan")
    tags = relationship("ArticleTag", cascade="all, delete-orphan")

    __table_args__ = (
        Index("ix_news_published_at", "published_at"),
    )


class ArticleCategory(Base):
    """Article <-> Category junction."""
    __tablename__ = "news_categories"

    news_id = Column(Integer, ForeignKey("news.id", ondelete="CASCADE"), primary_key=True)
    category_id = Column(Integer, ForeignKey("categories.id"), primary_key=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)


class ArticleTag(Base):
    """Article <-> Tag junction."""
    __tablename__ = "news_tags"

    news_id = Column(Integer, ForeignKey("news.id", ondelete="CASCADE"), primary_key=True)
    tag_id = Column(Integer, ForeignKey("tags.id"), primary_key=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)


class ArticleMedia(Base):
    """Article <-> MediaAsset junction (main image has is_main=True)."""
    __tablename__ = "news_media"

    news_id = Column(Integer, ForeignKey("news.id", ondelete="CASCADE"), primary_key=True)
    media_id = Column(Integer, ForeignKey("media.id"), primary_key=True)
    is_main = Column(Boolean, default=False, nullable=False)
    position = Column(Integer, default=1, nullable=False)


# -----------------------------------------------------------------------------
# ImportLog
# -----------------------------------------------------------------------------

class ImportLog(Base):
    """Append-only audit row written once per run that imported something."""
    __tablename__ = "import_logs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    # Set when every imported article came from one Source; null for mixed runs
    source_id = Column(Integer, ForeignKey("sources.id"), nullable=True)
    imported_count = Column(Integer, nullable=False, default=0)
    imported_at = Column(DateTime, default=datetime.utcnow, nullable=False, index=True)
    meta = Column(JSONType, nullable=True)  # mode, batch_size, total_processed, skipped, errors, trace_id
