"""
Unit tests for ArticlePersister and ImageReconciler.

Runs against SQLite with a stub image pipeline so the persistence steps
(source, taxonomy, slug, media, article row, relations) can be checked
without network access.
"""

from unittest.mock import MagicMock

import pytest

from news_ingest import models
from news_ingest.errors import DuplicateError
from news_ingest.schemas.upstream import IncomingArticle
from news_ingest.services.image_pipeline import ImageMetadata, ImageResult
from news_ingest.services.image_reconciler import RECONCILE_OPTIONS, ImageReconciler
from news_ingest.services.persistence import (
    ArticlePersister,
    IngestOptions,
    count_words,
    reading_time_minutes,
    source_origin,
)
from news_ingest.services.slugs import SlugRegistry
from news_ingest.services.taxonomy import TaxonomyResolver


def _uploaded(path="images/borsa-1a2b3c4d.jpg") -> ImageResult:
    return ImageResult(
        success=True,
        url=f"/storage/{path}",
        path=path,
        metadata=ImageMetadata(width=800, height=450, format="jpeg", size=1234, hash="1a2b3c4d" + "0" * 56),
    )


@pytest.fixture
def image_pipeline():
    pipeline = MagicMock()
    pipeline.process.return_value = _uploaded()
    return pipeline


@pytest.fixture
def persister(ctx, image_pipeline):
    return ArticlePersister(ctx=ctx, image_pipeline=image_pipeline)


class TestHelpers:
    """Tests for the small persistence helpers."""

    def test_reading_time(self):
        assert reading_time_minutes(0) == 1
        assert reading_time_minutes(200) == 1
        assert reading_time_minutes(201) == 2

    def test_count_words(self):
        assert count_words("bir  iki\nüç") == 3
        assert count_words(None) == 0

    def test_source_origin(self):
        assert source_origin("https://www.dunya.com/sirketler/x") == ("https://www.dunya.com", "www.dunya.com")


class TestArticlePersister:
    """Tests for ArticlePersister.ingest."""

    def test_ingest_creates_article_with_relations(self, db, persister, raw_item, image_pipeline):
        item = IncomingArticle.model_validate(
            raw_item(1, image_url="https://cdn.test/borsa.jpg", image_title="Borsa ekranı")
        )

        article_id = persister.ingest(db, item)

        article = db.get(models.StoredArticle, article_id)
        assert article.source_guid == "guid-1"
        assert article.source_id == "1"
        assert article.slug == "piyasalarda-gun-1"
        assert article.word_count == 50
        assert article.reading_time_min == 1
        assert article.status == "published"
        assert article.meta["image_url"] == "https://cdn.test/borsa.jpg"
        assert article.meta["image_alt"] == "Borsa ekranı"
        assert article.meta["tldr"] == ["Endeks yükseldi"]
        assert article.source.base_url == "https://www.dunya.com"

        media = article.main_media
        assert media.storage_path == "images/borsa-1a2b3c4d.jpg"
        assert media.external_url == "/storage/images/borsa-1a2b3c4d.jpg"
        assert media.width == 800
        assert media.alt_text == "Borsa ekranı"

        category_ids = [row.category_id for row in db.query(models.ArticleCategory).filter_by(news_id=article_id)]
        assert [db.get(models.Category, cid).slug for cid in category_ids] == ["business"]
        tag_slugs = {
            db.get(models.Tag, row.tag_id).slug
            for row in db.query(models.ArticleTag).filter_by(news_id=article_id)
        }
        assert tag_slugs == {"borsa", "ekonomi"}
        link = db.query(models.ArticleMedia).filter_by(news_id=article_id).one()
        assert (link.media_id, link.is_main, link.position) == (media.id, True, 1)

        image_pipeline.process.assert_called_once()

    def test_duplicate_rejected(self, db, persister, raw_item):
        item = IncomingArticle.model_validate(raw_item(1))
        persister.ingest(db, item)

        with pytest.raises(DuplicateError):
            persister.ingest(db, item)
        assert db.query(models.StoredArticle).count() == 1

    def test_unique_constraint_backstops_skipped_check(self, db, persister, raw_item):
        """With the duplicate check off (force), the guid constraint still stops a second row."""
        item = IncomingArticle.model_validate(raw_item(1))
        persister.ingest(db, item)

        with pytest.raises(DuplicateError):
            persister.ingest(db, item, IngestOptions(skip_duplicates=False))
        assert db.query(models.StoredArticle).count() == 1

    def test_failed_insert_removes_new_media(self, db, persister, raw_item, image_pipeline):
        """A force re-import of a stored item leaves no orphaned media row or blob."""
        item = IncomingArticle.model_validate(raw_item(1, image_url="https://cdn.test/borsa.jpg"))
        persister.ingest(db, item)
        image_pipeline.process.return_value = _uploaded("images/borsa-99999999.jpg")

        with pytest.raises(DuplicateError):
            persister.ingest(db, item, IngestOptions(skip_duplicates=False))

        assert db.query(models.MediaAsset).count() == 1
        image_pipeline.storage.delete.assert_called_once_with("images/borsa-99999999.jpg")

    def test_failed_insert_keeps_blob_shared_with_stored_media(self, db, persister, raw_item, image_pipeline):
        item = IncomingArticle.model_validate(raw_item(1, image_url="https://cdn.test/borsa.jpg"))
        persister.ingest(db, item)

        with pytest.raises(DuplicateError):
            persister.ingest(db, item, IngestOptions(skip_duplicates=False))

        assert db.query(models.MediaAsset).count() == 1
        image_pipeline.storage.delete.assert_not_called()

    def test_failed_tag_links_keep_category_and_media(self, db, session_factory, ctx, persister, raw_item):
        """One failing relation group does not take the other links with it."""
        tag_id = TaxonomyResolver(ctx=ctx).resolve_tags(db, ["Borsa"])[0]
        other = session_factory()
        try:
            # Occupies the (news_id, tag_id) key the first article will need
            other.add(models.ArticleTag(news_id=1, tag_id=tag_id))
            other.commit()
        finally:
            other.close()
        item = IncomingArticle.model_validate(raw_item(1, image_url="https://cdn.test/borsa.jpg"))

        article_id = persister.ingest(db, item)

        assert article_id == 1
        assert db.get(models.StoredArticle, article_id) is not None
        assert db.query(models.ArticleCategory).filter_by(news_id=article_id).count() == 1
        assert db.query(models.ArticleMedia).filter_by(news_id=article_id).count() == 1
        assert ctx.metrics.counters["relation_insert_failures"] == 1

    def test_image_failure_continues_without_image(self, db, persister, raw_item, image_pipeline):
        image_pipeline.process.return_value = ImageResult(success=False, error="boom", error_code="IMAGE_FETCH_ERROR")
        item = IncomingArticle.model_validate(raw_item(1, image_url="https://cdn.test/broken.jpg"))

        article = db.get(models.StoredArticle, persister.ingest(db, item))

        assert article.main_media_id is None
        assert db.query(models.MediaAsset).count() == 0

    def test_cdn_fallback_stored_as_external_media(self, db, persister, raw_item, image_pipeline):
        image_pipeline.process.return_value = ImageResult(
            success=True,
            url="/.netlify/images?url=x&fit=contain",
            fallback=True,
            metadata=ImageMetadata(width=800, height=600, format="jpeg", size=10, hash="f" * 64),
        )
        item = IncomingArticle.model_validate(raw_item(1, image_url="https://cdn.test/ok.jpg"))

        article = db.get(models.StoredArticle, persister.ingest(db, item))

        assert article.main_media.storage_path is None
        assert article.main_media.external_url.startswith("/.netlify/images")

    def test_placeholder_image_not_processed(self, db, persister, raw_item, image_pipeline):
        item = IncomingArticle.model_validate(
            raw_item(1, image_url="https://cdn.test/uploads/son-dakika-kirmizi.jpg")
        )

        article = db.get(models.StoredArticle, persister.ingest(db, item))

        image_pipeline.process.assert_not_called()
        assert article.meta["image_url"] == "/images/breaking-news.jpg"
        assert article.main_media.external_url == "/images/breaking-news.jpg"

    def test_process_image_disabled(self, db, persister, raw_item, image_pipeline):
        item = IncomingArticle.model_validate(raw_item(1, image_url="https://cdn.test/ok.jpg"))
        article = db.get(models.StoredArticle, persister.ingest(db, item, IngestOptions(process_image=False)))
        image_pipeline.process.assert_not_called()
        assert article.main_media_id is None

    def test_slug_collision_suffixed(self, db, persister, raw_item):
        slugs = SlugRegistry()
        first = persister.ingest(db, IncomingArticle.model_validate(raw_item(1, seo_title="Aynı başlık")), slugs=slugs)
        second = persister.ingest(db, IncomingArticle.model_validate(raw_item(2, seo_title="Aynı başlık")), slugs=slugs)
        assert db.get(models.StoredArticle, first).slug == "ayni-baslik"
        assert db.get(models.StoredArticle, second).slug == "ayni-baslik-1"

    def test_sources_shared_by_origin(self, db, persister, raw_item):
        persister.ingest(db, IncomingArticle.model_validate(raw_item(1)))
        persister.ingest(db, IncomingArticle.model_validate(raw_item(2)))
        assert db.query(models.Source).count() == 1

    def test_missing_seo_description_uses_title(self, db, persister, raw_item):
        item = IncomingArticle.model_validate(raw_item(1, seo_description=""))
        article = db.get(models.StoredArticle, persister.ingest(db, item))
        assert article.seo_description == "Piyasalarda gün 1"
        assert article.excerpt == "Piyasalarda gün 1"


class TestImageReconciler:
    """Tests for ImageReconciler.reconcile."""

    def _store(self, db, persister, raw_item, image_pipeline, image_url=None):
        image_pipeline.process.return_value = _uploaded("images/old-aaaaaaaa.jpg")
        item = IncomingArticle.model_validate(raw_item(1, image_url=image_url))
        return persister.ingest(db, item)

    def test_updates_existing_media_in_place(self, db, ctx, persister, raw_item, image_pipeline):
        article_id = self._store(db, persister, raw_item, image_pipeline, "https://cdn.test/old.jpg")
        media_id = db.get(models.StoredArticle, article_id).main_media_id
        image_pipeline.process.return_value = _uploaded("images/new-bbbbbbbb.webp")
        reconciler = ImageReconciler(image_pipeline=image_pipeline, ctx=ctx)

        updated = reconciler.reconcile(db, article_id, IncomingArticle.model_validate(
            raw_item(1, image_url="https://cdn.test/new.jpg")
        ))

        assert updated is True
        db.expire_all()
        article = db.get(models.StoredArticle, article_id)
        assert article.main_media_id == media_id
        assert article.main_media.storage_path == "images/new-bbbbbbbb.webp"
        assert article.meta["image_url"] == "https://cdn.test/new.jpg"
        assert article.title == "Piyasalarda gün 1"
        assert image_pipeline.process.call_args.args[2] == RECONCILE_OPTIONS

    def test_creates_media_when_article_had_none(self, db, ctx, persister, raw_item, image_pipeline):
        article_id = self._store(db, persister, raw_item, image_pipeline, image_url=None)
        reconciler = ImageReconciler(image_pipeline=image_pipeline, ctx=ctx)

        assert reconciler.reconcile(db, article_id, IncomingArticle.model_validate(
            raw_item(1, image_url="https://cdn.test/new.jpg")
        )) is True

        db.expire_all()
        article = db.get(models.StoredArticle, article_id)
        assert article.main_media is not None
        assert db.query(models.ArticleMedia).filter_by(news_id=article_id, is_main=True).count() == 1

    def test_failed_image_keeps_old(self, db, ctx, persister, raw_item, image_pipeline):
        article_id = self._store(db, persister, raw_item, image_pipeline, "https://cdn.test/old.jpg")
        image_pipeline.process.return_value = ImageResult(success=False, error="404")
        reconciler = ImageReconciler(image_pipeline=image_pipeline, ctx=ctx)

        assert reconciler.reconcile(db, article_id, IncomingArticle.model_validate(
            raw_item(1, image_url="https://cdn.test/new.jpg")
        )) is False

        db.expire_all()
        assert db.get(models.StoredArticle, article_id).meta["image_url"] == "https://cdn.test/old.jpg"

    def test_same_image_is_noop(self, db, ctx, persister, raw_item, image_pipeline):
        article_id = self._store(db, persister, raw_item, image_pipeline, "https://cdn.test/old.jpg")
        image_pipeline.process.reset_mock()
        reconciler = ImageReconciler(image_pipeline=image_pipeline, ctx=ctx)

        assert reconciler.reconcile(db, article_id, IncomingArticle.model_validate(
            raw_item(1, image_url="https://cdn.test/old.jpg")
        )) is False
        image_pipeline.process.assert_not_called()
