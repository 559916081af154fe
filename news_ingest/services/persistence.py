# news_ingest/services/persistence.py
"""
Per-article persistence.

ArticlePersister.ingest turns one validated upstream item into a stored
article:

  (a) duplicate check (skippable for force runs)
  (b) find-or-create the Source for the canonical URL origin
  (c) category (mapped upstream category, else derived from the URL)
  (d) tags
  (e) unique slug via the run's SlugRegistry
  (f) cover image -> MediaAsset (failures continue without an image)
  (g) word count / reading time
  (h) insert the article row (on failure the media row from (f) is removed)
  (i) junction rows (failures are logged, the article stays)

Failures in (a)-(e) and (h) raise typed errors; the orchestrator records
them per item and moves on.
"""

import logging
import math
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional
from urllib.parse import urlparse

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from news_ingest import models
from news_ingest.context import PipelineContext
from news_ingest.errors import DuplicateError, PersistenceError
from news_ingest.schemas.upstream import IncomingArticle
from news_ingest.services.deduper import DuplicateDetector
from news_ingest.services.fallbacks import FallbackChain, Strategy
from news_ingest.services.image_pipeline import (
    ImageOptions,
    ImagePipeline,
    ImageResult,
    ImageSubstitutions,
)
from news_ingest.services.slugs import SlugRegistry
from news_ingest.services.taxonomy import TaxonomyCache, TaxonomyResolver, category_for_item

logger = logging.getLogger(__name__)

WORDS_PER_MINUTE = 200
EXCERPT_LENGTH = 200
DESCRIPTION_FALLBACK_LENGTH = 160


@dataclass
class IngestOptions:
    process_image: bool = True
    skip_duplicates: bool = True


# -----------------------------------------------------------------------------
# Fallback chains
# -----------------------------------------------------------------------------


def _title_from_url(item: IncomingArticle) -> Optional[str]:
    tail = urlparse(item.canonical_url).path.rstrip("/").split("/")[-1]
    return tail.replace("-", " ").strip() or None


TITLE_CHAIN: FallbackChain[IncomingArticle, str] = FallbackChain(
    "title",
    [
        Strategy("title", lambda item: item.title),
        Strategy("seo_title", lambda item: item.seo_title),
        Strategy("url_tail", _title_from_url),
    ],
    default="Untitled",
)

DESCRIPTION_CHAIN: FallbackChain[IncomingArticle, str] = FallbackChain(
    "seo_description",
    [
        Strategy("seo_description", lambda item: item.seo_description),
        Strategy("title_prefix", lambda item: TITLE_CHAIN(item)[:DESCRIPTION_FALLBACK_LENGTH]),
    ],
    default="",
)


def count_words(text: Optional[str]) -> int:
    return len((text or "").split())


def reading_time_minutes(word_count: int) -> int:
    return max(1, math.ceil(word_count / WORDS_PER_MINUTE))


def _naive_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def source_origin(url: str) -> tuple[str, str]:
    """(origin, hostname) of an absolute URL."""
    parsed = urlparse(url)
    return f"{parsed.scheme}://{parsed.netloc}", parsed.hostname or parsed.netloc


# -----------------------------------------------------------------------------
# Media helpers (shared with the image reconciler)
# -----------------------------------------------------------------------------


def media_from_result(result: ImageResult, item: IncomingArticle, source_url: str) -> models.MediaAsset:
    """MediaAsset for a successful pipeline result (uploaded or CDN fallback)."""
    metadata = result.metadata
    return models.MediaAsset(
        original_name=(urlparse(source_url).path.split("/")[-1] or "image")[:512],
        external_url=result.url,
        storage_path=result.path,
        mime_type=f"image/{metadata.format}" if metadata and metadata.format else None,
        width=metadata.width if metadata else None,
        height=metadata.height if metadata else None,
        filesize=metadata.size if metadata else None,
        content_hash=metadata.hash if metadata else None,
        alt_text=(item.image_title or "")[:1024] or None,
        caption=item.image_description,
    )


def placeholder_media(url: str, item: IncomingArticle) -> models.MediaAsset:
    """External-URL MediaAsset for a default-image substitution."""
    return models.MediaAsset(
        original_name=url.rsplit("/", 1)[-1][:512],
        external_url=url,
        mime_type="image/jpeg",
        alt_text=(item.image_title or "")[:1024] or None,
        caption=item.image_description,
    )


# -----------------------------------------------------------------------------
# Persister
# -----------------------------------------------------------------------------


class ArticlePersister:
    """Writes one upstream item (and its relations) to the database."""

    def __init__(
        self,
        ctx: Optional[PipelineContext] = None,
        deduper: Optional[DuplicateDetector] = None,
        taxonomy: Optional[TaxonomyResolver] = None,
        image_pipeline: Optional[ImagePipeline] = None,
        substitutions: Optional[ImageSubstitutions] = None,
        image_options: Optional[ImageOptions] = None,
    ):
        self.ctx = ctx or PipelineContext()
        self.substitutions = substitutions or ImageSubstitutions()
        self.deduper = deduper or DuplicateDetector(ctx=self.ctx, substitutions=self.substitutions)
        self.taxonomy = taxonomy or TaxonomyResolver(ctx=self.ctx)
        self._image_pipeline = image_pipeline
        self.image_options = image_options or ImageOptions()

    @property
    def image_pipeline(self) -> ImagePipeline:
        """Lazy-load the image pipeline."""
        if self._image_pipeline is None:
            self._image_pipeline = ImagePipeline(ctx=self.ctx, options=self.image_options)
        return self._image_pipeline

    # -------------------------------------------------------------------------
    # Entry point
    # -------------------------------------------------------------------------

    def ingest(
        self,
        db: Session,
        item: IncomingArticle,
        options: Optional[IngestOptions] = None,
        slugs: Optional[SlugRegistry] = None,
        taxonomy_cache: Optional[TaxonomyCache] = None,
    ) -> int:
        """
        Persist one item and return the new article id.

        Raises:
            DuplicateError: item already stored (check or unique constraint)
            PersistenceError: source/taxonomy/article writes failed
            RunCancelledError: the run was cancelled
        """
        options = options or IngestOptions()
        self.ctx.cancel.raise_if_cancelled()

        with self.ctx.metrics.timer("ingest_article"):
            # (a)
            if options.skip_duplicates:
                self.deduper.ensure_not_duplicate(db, item)

            # (b)
            source_fk = self.find_or_create_source(db, item.canonical_url)

            # (c) + (d)
            category_id = taxonomy_cache.category_id_for(item) if taxonomy_cache else None
            if category_id is None:
                category_id = self.taxonomy.resolve_category(db, category_for_item(item).value)
            tag_ids = taxonomy_cache.tag_ids_for(item) if taxonomy_cache else None
            if tag_ids is None:
                tag_ids = self.taxonomy.resolve_tags(db, item.tags)

            # (e)
            if slugs is None:
                try:
                    slugs = SlugRegistry.from_db(db)
                except SQLAlchemyError as e:
                    db.rollback()
                    raise PersistenceError("load_slugs", cause=e)
            slug = slugs.allocate(item.seo_title)

            # (f)
            media_id = self._attach_image(db, item, options)

            # (g) + (h)
            article = self._build_article(item, slug, source_fk, media_id)
            try:
                article_id = self._insert_article(db, article, item)
            except (DuplicateError, PersistenceError):
                if media_id:
                    self._discard_media(db, media_id)
                raise

            # (i)
            self._link_relations(db, article_id, category_id, tag_ids, media_id)

        self.ctx.metrics.increment("articles_imported")
        self.ctx.logger.info(
            "article_ingested",
            f"Imported article {article_id}: {slug}",
            article_id=article_id,
            source_guid=item.source_guid,
        )
        return article_id

    # -------------------------------------------------------------------------
    # Steps
    # -------------------------------------------------------------------------

    def find_or_create_source(self, db: Session, canonical_url: str) -> int:
        origin, hostname = source_origin(canonical_url)
        try:
            existing = db.query(models.Source).filter(models.Source.base_url == origin).first()
            if existing:
                return existing.id

            source = models.Source(name=hostname, base_url=origin)
            db.add(source)
            try:
                db.commit()
            except IntegrityError:
                db.rollback()
                existing = db.query(models.Source).filter(models.Source.base_url == origin).first()
                if existing is None:
                    raise
                return existing.id
            return source.id
        except SQLAlchemyError as e:
            db.rollback()
            raise PersistenceError("find_or_create_source", cause=e)

    def _attach_image(self, db: Session, item: IncomingArticle, options: IngestOptions) -> Optional[int]:
        """MediaAsset id for the item's cover image, or None. Never raises for image problems."""
        if not item.image_url:
            return None

        if self.substitutions.is_placeholder(item.image_url):
            media = placeholder_media(self.substitutions.resolve(item.image_url), item)
            self.ctx.metrics.increment("image_substituted")
        elif options.process_image:
            result = self.image_pipeline.process(item.image_url, item.seo_title, self.image_options)
            if not result.success:
                self.ctx.logger.warning(
                    "article_image_skipped",
                    f"Continuing without image for {item.source_guid}: {result.error}",
                    source_guid=item.source_guid,
                    code=result.error_code,
                )
                return None
            media = media_from_result(result, item, item.image_url)
        else:
            return None

        try:
            db.add(media)
            db.commit()
            return media.id
        except SQLAlchemyError as e:
            db.rollback()
            self.ctx.logger.warning(
                "media_insert_failed",
                f"Could not store media for {item.source_guid}: {e}",
                source_guid=item.source_guid,
            )
            return None

    def _discard_media(self, db: Session, media_id: int) -> None:
        """
        Undo step (f) after the article insert failed.

        The blob is content-addressed, so it is only deleted when no other
        media row still points at the same key.
        """
        try:
            media = db.get(models.MediaAsset, media_id)
            if media is None:
                return
            path = media.storage_path
            db.delete(media)
            db.commit()
            shared = path is not None and (
                db.query(models.MediaAsset.id).filter(models.MediaAsset.storage_path == path).first() is not None
            )
        except SQLAlchemyError as e:
            db.rollback()
            self.ctx.logger.warning(
                "media_cleanup_failed",
                f"Could not remove orphaned media {media_id}: {e}",
                media_id=media_id,
            )
            return

        self.ctx.metrics.increment("orphan_media_removed")
        if not path or shared:
            return
        try:
            self.image_pipeline.storage.delete(path)
        except Exception as e:
            # Storage backends raise their own error types (OSError, botocore ClientError)
            self.ctx.logger.warning(
                "blob_cleanup_failed",
                f"Could not delete orphaned image {path}: {e}",
                key=path,
            )

    def _build_article(
        self,
        item: IncomingArticle,
        slug: str,
        source_fk: Optional[int],
        media_id: Optional[int],
    ) -> models.StoredArticle:
        title = TITLE_CHAIN(item)
        seo_description = DESCRIPTION_CHAIN(item)
        word_count = count_words(item.body_markdown)
        now = datetime.utcnow()

        return models.StoredArticle(
            source_guid=item.source_guid,
            source_id=item.secondary_id,
            source_fk=source_fk,
            slug=slug,
            title=title,
            seo_title=item.seo_title or title,
            seo_description=seo_description,
            excerpt=seo_description[:EXCERPT_LENGTH],
            content_md=item.body_markdown,
            canonical_url=item.canonical_url,
            main_media_id=media_id,
            status=models.ArticleStatus.PUBLISHED.value,
            word_count=word_count,
            reading_time_min=reading_time_minutes(word_count),
            meta={
                "tldr": list(item.tldr),
                "file_path": item.file_path or "",
                "image_url": self.substitutions.resolve(item.image_url),
                "image_alt": item.image_title or "",
                "image_caption": item.image_description or "",
            },
            published_at=_naive_utc(item.published_at) or now,
            created_at=now,
            updated_at=now,
        )

    def _insert_article(self, db: Session, article: models.StoredArticle, item: IncomingArticle) -> int:
        db.add(article)
        try:
            db.commit()
        except IntegrityError as e:
            db.rollback()
            exists = (
                db.query(models.StoredArticle.id)
                .filter(models.StoredArticle.source_guid == item.source_guid)
                .first()
            )
            if exists:
                raise DuplicateError(f"News already exists with source_guid: {item.source_guid}", field="source_guid")
            raise PersistenceError("insert_article", cause=e)
        except SQLAlchemyError as e:
            db.rollback()
            raise PersistenceError("insert_article", cause=e)
        return article.id

    def _link_relations(
        self,
        db: Session,
        article_id: int,
        category_id: Optional[int],
        tag_ids: list[int],
        media_id: Optional[int],
    ) -> None:
        """Each relation group commits on its own; a failed group is logged and skipped."""
        groups = {
            "category": [models.ArticleCategory(news_id=article_id, category_id=category_id)] if category_id else [],
            "tags": [models.ArticleTag(news_id=article_id, tag_id=tag_id) for tag_id in dict.fromkeys(tag_ids)],
            "media": (
                [models.ArticleMedia(news_id=article_id, media_id=media_id, is_main=True, position=1)]
                if media_id
                else []
            ),
        }

        for relation, rows in groups.items():
            if not rows:
                continue
            try:
                db.add_all(rows)
                db.commit()
            except SQLAlchemyError as e:
                db.rollback()
                self.ctx.metrics.increment("relation_insert_failures")
                self.ctx.logger.warning(
                    "relation_insert_failed",
                    f"Article {article_id} stored without its {relation} links: {e}",
                    article_id=article_id,
                    relation=relation,
                )
