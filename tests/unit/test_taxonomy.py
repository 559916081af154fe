"""
Unit tests for category and tag resolution.

Tests the synonym table, URL-derived categories, tag normalization, and
race-safe find-or-create against a real SQLite database.
"""

import threading

import pytest
from sqlalchemy.exc import OperationalError

from news_ingest import models
from news_ingest.errors import PersistenceError
from news_ingest.schemas.upstream import IncomingArticle
from news_ingest.services.taxonomy import (
    DEFAULT_CATEGORY,
    TaxonomyResolver,
    category_for_item,
    category_from_url,
    map_category,
    normalize_category,
    process_tags,
)


class TestCategoryMapping:
    """Tests for map_category and normalize_category."""

    @pytest.mark.parametrize(
        "name,expected",
        [
            ("sirketler", "business"),
            ("Şirketler", "business"),
            ("Gündem", "turkiye"),
            ("Kültür Sanat", "culture"),
            ("spor", "sports"),
            ("teknoloji", "technology"),
            ("dunya", "world"),
        ],
    )
    def test_synonyms(self, name, expected):
        assert map_category(name) == expected

    def test_unmapped_passes_through(self):
        assert map_category("  Magazin ") == "Magazin"

    def test_empty(self):
        assert map_category(None) is None
        assert map_category("   ") is None

    def test_normalize(self):
        assert normalize_category("Kültür Sanat") == "kultur-sanat"
        assert normalize_category(None) == ""


class TestCategoryFromUrl:
    """Tests for URL-derived categories."""

    def test_path_segment(self):
        assert category_from_url("https://www.dunya.com/sirketler/intel-haberi") == "business"

    def test_hostname_keyword(self):
        assert category_from_url("https://spor.example.com/mac-sonucu") == "sports"

    def test_default(self):
        assert category_from_url("https://example.com/x") == DEFAULT_CATEGORY
        assert category_from_url(None) == DEFAULT_CATEGORY

    def test_item_prefers_upstream_category(self, raw_item):
        item = IncomingArticle.model_validate(raw_item(1, category="spor"))
        resolution = category_for_item(item)
        assert (resolution.value, resolution.strategy) == ("sports", "upstream")

    def test_item_falls_back_to_url(self, raw_item):
        item = IncomingArticle.model_validate(raw_item(1, category=None))
        resolution = category_for_item(item)
        assert (resolution.value, resolution.strategy) == ("business", "path_segment")


class TestProcessTags:
    """Tests for process_tags."""

    def test_dedupes_case_insensitively_and_title_cases(self):
        wanted = process_tags(["yapay zeka", "Yapay Zeka", "BORSA"])
        assert [(s.name, s.slug) for s in wanted] == [("Yapay Zeka", "yapay-zeka"), ("Borsa", "borsa")]

    def test_empty_gives_default_tag(self):
        assert [(s.name, s.slug) for s in process_tags([])] == [("News", "news")]
        assert [(s.name, s.slug) for s in process_tags(["", "   "])] == [("News", "news")]

    def test_long_names_truncated(self):
        wanted = process_tags(["x" * 300])
        assert len(wanted[0].name) == 128


class TestTaxonomyResolver:
    """Tests for TaxonomyResolver against SQLite."""

    @pytest.fixture
    def resolver(self, ctx):
        return TaxonomyResolver(ctx=ctx)

    def test_resolve_category_creates_once(self, db, resolver):
        first = resolver.resolve_category(db, "sirketler")
        second = resolver.resolve_category(db, "ekonomi")
        assert first == second
        category = db.get(models.Category, first)
        assert (category.name, category.slug) == ("business", "business")
        assert db.query(models.Category).count() == 1

    def test_resolve_category_empty_uses_default(self, db, resolver):
        category_id = resolver.resolve_category(db, None)
        assert db.get(models.Category, category_id).slug == DEFAULT_CATEGORY

    def test_concurrent_resolve_category_creates_one_row(self, session_factory, ctx):
        """Two workers racing on the same new name end up with the same single row."""
        barrier = threading.Barrier(4)
        ids: list[int] = []
        errors: list[Exception] = []
        lock = threading.Lock()

        def worker():
            resolver = TaxonomyResolver(ctx=ctx)
            session = session_factory()
            try:
                barrier.wait()
                category_id = resolver.resolve_category(session, "Magazin")
                with lock:
                    ids.append(category_id)
            except Exception as e:
                with lock:
                    errors.append(e)
            finally:
                session.close()

        threads = [threading.Thread(target=worker) for _ in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert errors == []
        assert len(set(ids)) == 1
        check = session_factory()
        try:
            assert check.query(models.Category).filter(models.Category.slug == "magazin").count() == 1
        finally:
            check.close()

    def test_resolve_tags_reuses_existing(self, db, resolver):
        db.add(models.Tag(name="Borsa", slug="borsa"))
        db.commit()

        ids = resolver.resolve_tags(db, ["borsa", "Faiz"])

        assert len(ids) == 2
        assert db.query(models.Tag).count() == 2
        assert db.get(models.Tag, ids[1]).name == "Faiz"

    def test_resolve_tags_default(self, db, resolver):
        ids = resolver.resolve_tags(db, None)
        assert db.get(models.Tag, ids[0]).slug == "news"

    def test_prefetch_covers_page(self, db, resolver, raw_item):
        items = [
            IncomingArticle.model_validate(raw_item(1, category="spor", tags=["Futbol"])),
            IncomingArticle.model_validate(raw_item(2, category="sirketler", tags=["Borsa", "futbol"])),
        ]

        cache = resolver.prefetch(db, items)

        assert set(cache.categories) == {"sports", "business"}
        assert set(cache.tags) == {"futbol", "borsa"}
        assert cache.category_id_for(items[0]) == cache.categories["sports"]
        assert cache.tag_ids_for(items[1]) == [cache.tags["borsa"], cache.tags["futbol"]]

    def test_cache_miss_returns_none(self, db, resolver, raw_item):
        cache = resolver.prefetch(db, [IncomingArticle.model_validate(raw_item(1, tags=["A"]))])
        other = IncomingArticle.model_validate(raw_item(2, tags=["B"]))
        assert cache.tag_ids_for(other) is None

    def test_database_failure_raises_persistence_error(self, resolver):
        class BrokenSession:
            def query(self, *args):
                raise OperationalError("SELECT", {}, Exception("gone"))

            def rollback(self):
                pass

        with pytest.raises(PersistenceError) as exc_info:
            resolver.resolve_category(BrokenSession(), "spor")
        assert exc_info.value.operation == "resolve_category"
