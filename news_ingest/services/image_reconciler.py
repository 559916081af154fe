# news_ingest/services/image_reconciler.py
"""
Out-of-band cover image refresh for already-stored articles.

Triggered when a duplicate arrives with a different image URL. Only the
image is touched: the media row (updated in place, or created and linked
when the article had none), StoredArticle.main_media_id,
meta["image_url"] and updated_at. Every other column stays as first
imported.
"""

import logging
from datetime import datetime
from typing import Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from news_ingest import models
from news_ingest.context import PipelineContext
from news_ingest.errors import PersistenceError
from news_ingest.schemas.upstream import IncomingArticle
from news_ingest.services.image_pipeline import ImageOptions, ImagePipeline, ImageSubstitutions
from news_ingest.services.persistence import media_from_result, placeholder_media

logger = logging.getLogger(__name__)

# Refreshed covers are served larger and as webp
RECONCILE_OPTIONS = ImageOptions(width=1200, height=None, quality=85, format="webp")


class ImageReconciler:
    """Re-runs the image pipeline for an existing article and swaps its cover."""

    def __init__(
        self,
        image_pipeline: ImagePipeline,
        ctx: Optional[PipelineContext] = None,
        substitutions: Optional[ImageSubstitutions] = None,
        options: ImageOptions = RECONCILE_OPTIONS,
    ):
        self.image_pipeline = image_pipeline
        self.ctx = ctx or PipelineContext()
        self.substitutions = substitutions or ImageSubstitutions()
        self.options = options

    def reconcile(self, db: Session, article_id: int, item: IncomingArticle) -> bool:
        """
        Refresh the cover image of article_id from item.image_url.

        Returns True when the article was updated. Image failures keep the
        old image and return False; database failures raise PersistenceError.
        """
        article = db.get(models.StoredArticle, article_id)
        if article is None or not item.image_url:
            return False

        new_url = self.substitutions.resolve(item.image_url)
        if new_url == ((article.meta or {}).get("image_url") or ""):
            return False

        if self.substitutions.is_placeholder(item.image_url):
            fresh = placeholder_media(new_url, item)
        else:
            result = self.image_pipeline.process(
                item.image_url,
                item.title or article.seo_title or "News Image",
                self.options,
            )
            if not result.success:
                self.ctx.logger.warning(
                    "image_reconcile_skipped",
                    f"Keeping old image for article {article_id}: {result.error}",
                    article_id=article_id,
                    code=result.error_code,
                )
                return False
            fresh = media_from_result(result, item, item.image_url)

        now = datetime.utcnow()
        try:
            media = article.main_media
            if media is not None:
                for column in (
                    "original_name",
                    "external_url",
                    "storage_path",
                    "mime_type",
                    "width",
                    "height",
                    "filesize",
                    "content_hash",
                ):
                    setattr(media, column, getattr(fresh, column))
                media.updated_at = now
            else:
                db.add(fresh)
                db.flush()
                article.main_media_id = fresh.id
                db.add(models.ArticleMedia(news_id=article.id, media_id=fresh.id, is_main=True, position=1))

            # Reassign so the JSON column is flagged dirty
            article.meta = {**(article.meta or {}), "image_url": new_url}
            article.updated_at = now
            db.commit()
        except SQLAlchemyError as e:
            db.rollback()
            raise PersistenceError("reconcile_image", cause=e)

        self.ctx.metrics.increment("images_reconciled")
        self.ctx.logger.info(
            "image_reconciled",
            f"Cover image refreshed for article {article_id}",
            article_id=article_id,
            url=new_url,
        )
        return True
