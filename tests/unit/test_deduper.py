"""
Unit tests for DuplicateDetector.

Tests either-field matching, the one-query bulk check, fail-open versus
fail-closed behavior on lookup errors, and image change notifications.
"""

from unittest.mock import MagicMock

import pytest
from sqlalchemy.exc import OperationalError

from news_ingest import models
from news_ingest.errors import DuplicateError, PersistenceError
from news_ingest.schemas.upstream import IncomingArticle
from news_ingest.services.deduper import DuplicateDetector


def _store(db, guid, source_id=None, image_url=None, slug=None) -> models.StoredArticle:
    article = models.StoredArticle(
        source_guid=guid,
        source_id=source_id,
        slug=slug or f"slug-{guid}",
        title=f"Stored {guid}",
        content_md="body",
        meta={"image_url": image_url} if image_url else {},
    )
    db.add(article)
    db.commit()
    return article


def _broken_session() -> MagicMock:
    db = MagicMock()
    db.query.side_effect = OperationalError("SELECT", {}, Exception("database is locked"))
    return db


class TestIsDuplicate:
    """Tests for single-item checks."""

    @pytest.fixture
    def detector(self, ctx):
        return DuplicateDetector(ctx=ctx)

    def test_new_item(self, db, detector, raw_item):
        item = IncomingArticle.model_validate(raw_item(1))
        assert detector.is_duplicate(db, item) is False

    def test_match_on_source_guid(self, db, detector, raw_item):
        _store(db, "guid-1", source_id="other")
        item = IncomingArticle.model_validate(raw_item(1))
        assert detector.is_duplicate(db, item) is True

    def test_match_on_upstream_id_only(self, db, detector, raw_item):
        """A different guid with an already stored upstream id is still a duplicate."""
        _store(db, "some-other-guid", source_id="1")
        item = IncomingArticle.model_validate(raw_item(1))
        assert detector.is_duplicate(db, item) is True

    def test_find_existing(self, db, detector, raw_item):
        stored = _store(db, "guid-1")
        item = IncomingArticle.model_validate(raw_item(1))
        assert detector.find_existing(db, item).id == stored.id
        assert detector.find_existing(db, IncomingArticle.model_validate(raw_item(2))) is None

    def test_ensure_not_duplicate_names_field(self, db, detector, raw_item):
        _store(db, "x", source_id="1")
        item = IncomingArticle.model_validate(raw_item(1))
        with pytest.raises(DuplicateError) as exc_info:
            detector.ensure_not_duplicate(db, item)
        assert exc_info.value.field == "source_id"


class TestBulkCheck:
    """Tests for bulk_check and stats."""

    def test_bulk_check_returns_existing_identifiers(self, db, ctx, raw_item):
        _store(db, "guid-1")
        _store(db, "legacy", source_id="3")
        items = [IncomingArticle.model_validate(raw_item(n)) for n in range(1, 5)]

        duplicates = DuplicateDetector(ctx=ctx).bulk_check(db, items)

        assert duplicates == {"1", "3"}

    def test_bulk_check_is_single_query(self, db, ctx, raw_item):
        items = [IncomingArticle.model_validate(raw_item(n)) for n in range(50)]
        DuplicateDetector(ctx=ctx).bulk_check(db, items)
        assert ctx.metrics.get("duplicate_lookup").count == 1

    def test_empty_input(self, db, ctx):
        assert DuplicateDetector(ctx=ctx).bulk_check(db, []) == set()

    def test_duplicate_stats(self, db, ctx, raw_item):
        _store(db, "guid-2")
        items = [IncomingArticle.model_validate(raw_item(n)) for n in (1, 2, 3)]
        stats = DuplicateDetector(ctx=ctx).get_duplicate_stats(db, items)
        assert (stats.total, stats.duplicates, stats.new) == (3, 1, 2)
        assert stats.duplicate_ids == ["2"]


class TestLookupFailures:
    """Fail-open (default) versus fail-closed."""

    def test_fail_open_treats_items_as_new(self, ctx, raw_item):
        detector = DuplicateDetector(ctx=ctx, fail_open=True)
        item = IncomingArticle.model_validate(raw_item(1))

        assert detector.is_duplicate(_broken_session(), item) is False
        assert detector.bulk_check(_broken_session(), [item]) == set()
        assert ctx.metrics.counters["duplicate_check_fail_open"] == 2

    def test_fail_closed_raises(self, ctx, raw_item):
        detector = DuplicateDetector(ctx=ctx, fail_open=False)
        item = IncomingArticle.model_validate(raw_item(1))

        with pytest.raises(PersistenceError) as exc_info:
            detector.bulk_check(_broken_session(), [item])
        assert exc_info.value.operation == "duplicate_check"


class TestImageChange:
    """Duplicates whose cover changed trigger the reconcile callback."""

    def test_changed_image_triggers_callback(self, db, ctx, raw_item):
        stored = _store(db, "guid-1", image_url="https://cdn.test/old.jpg")
        callback = MagicMock()
        detector = DuplicateDetector(ctx=ctx, on_image_changed=callback)
        item = IncomingArticle.model_validate(raw_item(1, image_url="https://cdn.test/new.jpg"))

        assert detector.is_duplicate(db, item) is True
        callback.assert_called_once_with(stored.id, item)

    def test_same_image_does_not_trigger(self, db, ctx, raw_item):
        _store(db, "guid-1", image_url="https://cdn.test/same.jpg")
        callback = MagicMock()
        detector = DuplicateDetector(ctx=ctx, on_image_changed=callback)
        item = IncomingArticle.model_validate(raw_item(1, image_url="https://cdn.test/same.jpg"))

        detector.bulk_check(db, [item])
        callback.assert_not_called()

    def test_placeholder_compared_after_substitution(self, db, ctx, raw_item):
        """A filler image that maps to the stored placeholder is not a change."""
        _store(db, "guid-1", image_url="/images/breaking-news.jpg")
        callback = MagicMock()
        detector = DuplicateDetector(ctx=ctx, on_image_changed=callback)
        item = IncomingArticle.model_validate(
            raw_item(1, image_url="https://cdn.test/uploads/son-dakika-kirmizi.jpg")
        )

        detector.bulk_check(db, [item])
        callback.assert_not_called()

    def test_callback_failure_does_not_raise(self, db, ctx, raw_item):
        _store(db, "guid-1", image_url="https://cdn.test/old.jpg")
        detector = DuplicateDetector(ctx=ctx, on_image_changed=MagicMock(side_effect=RuntimeError("queue full")))
        item = IncomingArticle.model_validate(raw_item(1, image_url="https://cdn.test/new.jpg"))

        assert detector.is_duplicate(db, item) is True
