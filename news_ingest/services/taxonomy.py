# news_ingest/services/taxonomy.py
"""
Category and tag resolution.

Upstream categories arrive as free text in Turkish spellings
("sirketler", "Gündem", "kultur-sanat", ...). They are collapsed onto six
canonical categories through a static synonym table; unmapped names pass
through and become new categories.

Find-or-create is race-safe: the slug unique constraint decides the winner
and the loser rolls back and re-fetches.
"""

import logging
from dataclasses import dataclass, field
from typing import Iterable, Optional
from urllib.parse import urlparse

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from news_ingest import models
from news_ingest.context import PipelineContext
from news_ingest.errors import PersistenceError
from news_ingest.schemas.upstream import IncomingArticle
from news_ingest.services.fallbacks import FallbackChain, Resolution, Strategy
from news_ingest.services.slugs import create_tag_slug, slugify

logger = logging.getLogger(__name__)

# -----------------------------------------------------------------------------
# Static tables
# -----------------------------------------------------------------------------

VALID_CATEGORIES = ("turkiye", "business", "world", "culture", "technology", "sports")
DEFAULT_CATEGORY = "turkiye"
CATEGORY_SLUG_MAX_LENGTH = 50

CATEGORY_MAPPINGS: dict[str, str] = {
    # Business & Finance
    "sirketler": "business",
    "sektorler": "business",
    "finans": "business",
    "ekonomi": "business",
    "sirket-haberleri": "business",
    "spor-ekonomisi": "business",
    "borsa": "business",
    "piyasalar": "business",
    "otomotiv": "business",
    "altin": "business",
    "faiz": "business",
    "is-dunyasi": "business",
    "sigorta": "business",
    "emtia": "business",
    "girisim": "business",
    "veriler": "business",
    "enerji": "business",
    "gayrimenkul": "business",
    "emlak": "business",
    # Turkiye
    "politika": "turkiye",
    "siyaset": "turkiye",
    "haberler": "turkiye",
    "gundem": "turkiye",
    "sondakika": "turkiye",
    "son-dakika": "turkiye",
    "turkiye": "turkiye",
    "haber": "turkiye",
    # Technology
    "teknoloji": "technology",
    "bilim": "technology",
    # Sports
    "spor": "sports",
    "sporskor": "sports",
    # Culture & Arts
    "kultur": "culture",
    "sanat": "culture",
    "kultur-sanat": "culture",
    "n-life": "culture",
    # World
    "dunya": "world",
}

# Hostname keyword -> category, checked in order
DOMAIN_CATEGORY_MAPPINGS: dict[str, str] = {
    "teknoloji": "technology",
    "bilim": "technology",
    "spor": "sports",
    "gundem": "turkiye",
    "haber": "turkiye",
    "ekonomi": "business",
    "finans": "business",
}

DEFAULT_TAG_NAME = "News"
DEFAULT_TAG_SLUG = "news"


# -----------------------------------------------------------------------------
# Pure mapping helpers
# -----------------------------------------------------------------------------


def normalize_category(name: Optional[str]) -> str:
    """'Kültür Sanat' -> 'kultur-sanat'."""
    if not name:
        return ""
    return slugify(name, CATEGORY_SLUG_MAX_LENGTH) if name.strip() else ""


def map_category(name: Optional[str]) -> Optional[str]:
    """Canonical category for an upstream name; unmapped names pass through stripped."""
    if not name or not name.strip():
        return None
    key = normalize_category(name)
    return CATEGORY_MAPPINGS.get(key, name.strip())


def _category_from_path(url: Optional[str]) -> Optional[str]:
    if not url:
        return None
    for segment in urlparse(url).path.split("/"):
        mapped = CATEGORY_MAPPINGS.get(segment.lower().strip())
        if mapped in VALID_CATEGORIES:
            return mapped
    return None


def _category_from_hostname(url: Optional[str]) -> Optional[str]:
    if not url:
        return None
    hostname = (urlparse(url).hostname or "").lower()
    for keyword, category in DOMAIN_CATEGORY_MAPPINGS.items():
        if keyword in hostname:
            return category
    return None


_URL_CATEGORY_CHAIN: FallbackChain[str, str] = FallbackChain(
    "category_from_url",
    [
        Strategy("path_segment", _category_from_path),
        Strategy("hostname", _category_from_hostname),
    ],
    default=DEFAULT_CATEGORY,
)

_ITEM_CATEGORY_CHAIN: FallbackChain[IncomingArticle, str] = FallbackChain(
    "item_category",
    [
        Strategy("upstream", lambda item: map_category(item.category)),
        Strategy("path_segment", lambda item: _category_from_path(item.canonical_url)),
        Strategy("hostname", lambda item: _category_from_hostname(item.canonical_url)),
    ],
    default=DEFAULT_CATEGORY,
)


def category_from_url(url: Optional[str]) -> str:
    """
    Derive a category from an article URL.

    https://www.dunya.com/sirketler/intel-haberi -> business (path segment)
    https://spor.example.com/x -> sports (hostname keyword)
    anything else -> turkiye
    """
    return _URL_CATEGORY_CHAIN(url)


def category_for_item(item: IncomingArticle) -> Resolution[str]:
    """Mapped upstream category, else one derived from the canonical URL."""
    return _ITEM_CATEGORY_CHAIN.resolve(item)


def _title_case(name: str) -> str:
    return " ".join(word[:1].upper() + word[1:].lower() for word in name.split() if word)


@dataclass(frozen=True)
class TagName:
    name: str
    slug: str


def process_tags(names: Optional[Iterable[str]]) -> list[TagName]:
    """
    Dedupe tag names case-insensitively by slug and title-case them.

    An empty or entirely invalid list yields the single default tag so every
    article is filterable by at least one tag.
    """
    unique: dict[str, str] = {}
    for raw in names or []:
        if not isinstance(raw, str) or not raw.strip():
            continue
        trimmed = raw.strip()
        slug = create_tag_slug(trimmed)
        if slug in unique:
            continue
        display = _title_case(trimmed)
        if display:
            unique[slug] = display[:128]

    if not unique:
        return [TagName(DEFAULT_TAG_NAME, DEFAULT_TAG_SLUG)]
    return [TagName(name=name, slug=slug) for slug, name in unique.items()]


# -----------------------------------------------------------------------------
# Prefetched lookups
# -----------------------------------------------------------------------------


@dataclass
class TaxonomyCache:
    """Category and tag ids resolved once per page, keyed by name / slug."""
    categories: dict[str, int] = field(default_factory=dict)
    tags: dict[str, int] = field(default_factory=dict)

    def category_id_for(self, item: IncomingArticle) -> Optional[int]:
        return self.categories.get(category_for_item(item).value)

    def tag_ids_for(self, item: IncomingArticle) -> Optional[list[int]]:
        """None when any of the item's tags was not prefetched."""
        ids = []
        for tag in process_tags(item.tags):
            tag_id = self.tags.get(tag.slug)
            if tag_id is None:
                return None
            ids.append(tag_id)
        return ids


# -----------------------------------------------------------------------------
# Resolver
# -----------------------------------------------------------------------------


class TaxonomyResolver:
    """Find-or-create for categories and tags."""

    def __init__(self, ctx: Optional[PipelineContext] = None):
        self.ctx = ctx or PipelineContext()

    # Categories ----------------------------------------------------------------

    def resolve_category(self, db: Session, name: Optional[str]) -> int:
        """Category id for an upstream name; empty names resolve to the default category."""
        canonical = map_category(name) or DEFAULT_CATEGORY
        slug = slugify(canonical, CATEGORY_SLUG_MAX_LENGTH)
        try:
            category = self._get_or_create(db, models.Category, slug, canonical)
        except SQLAlchemyError as e:
            db.rollback()
            raise PersistenceError("resolve_category", cause=e)
        return category.id

    # Tags ----------------------------------------------------------------------

    def resolve_tags(self, db: Session, names: Optional[Iterable[str]]) -> list[int]:
        """Tag ids (in first-seen order) for upstream tag names."""
        wanted = process_tags(names)
        try:
            by_slug = self._ensure_tags(db, wanted)
        except SQLAlchemyError as e:
            db.rollback()
            raise PersistenceError("resolve_tags", cause=e)
        return [by_slug[tag.slug] for tag in wanted]

    def _ensure_tags(self, db: Session, wanted: list[TagName]) -> dict[str, int]:
        slugs = [tag.slug for tag in wanted]
        found = {
            row.slug: row.id
            for row in db.query(models.Tag.id, models.Tag.slug).filter(models.Tag.slug.in_(slugs)).all()
        }
        missing = [tag for tag in wanted if tag.slug not in found]
        if not missing:
            return found

        try:
            new_tags = [models.Tag(name=tag.name, slug=tag.slug) for tag in missing]
            db.add_all(new_tags)
            db.commit()
            for tag in new_tags:
                found[tag.slug] = tag.id
            self.ctx.metrics.increment("tags_created", len(new_tags))
        except IntegrityError:
            # Another worker created some of them; fall back to one-by-one
            db.rollback()
            for tag in missing:
                found[tag.slug] = self._get_or_create(db, models.Tag, tag.slug, tag.name).id
        return found

    # Shared --------------------------------------------------------------------

    def _get_or_create(self, db: Session, model, slug: str, name: str):
        existing = db.query(model).filter(model.slug == slug).first()
        if existing:
            return existing

        row = model(name=name, slug=slug)
        db.add(row)
        try:
            db.commit()
        except IntegrityError:
            db.rollback()
            existing = db.query(model).filter(model.slug == slug).first()
            if existing is None:
                raise
            logger.debug(f"{model.__tablename__} '{slug}' created concurrently, re-fetched")
            return existing

        db.refresh(row)
        self.ctx.logger.info(
            f"{model.__tablename__}_created",
            f"Created {model.__tablename__[:-1]} '{name}' ({slug})",
            key=slug,
        )
        return row

    # Batch prefetch -----------------------------------------------------------

    def prefetch(self, db: Session, items: list[IncomingArticle]) -> TaxonomyCache:
        """Resolve every category and tag of a page up front (no per-item queries)."""
        cache = TaxonomyCache()
        with self.ctx.metrics.timer("taxonomy_prefetch"):
            for name in {category_for_item(item).value for item in items}:
                cache.categories[name] = self.resolve_category(db, name)

            wanted: dict[str, TagName] = {}
            for item in items:
                for tag in process_tags(item.tags):
                    wanted.setdefault(tag.slug, tag)
            if wanted:
                try:
                    cache.tags.update(self._ensure_tags(db, list(wanted.values())))
                except SQLAlchemyError as e:
                    db.rollback()
                    raise PersistenceError("resolve_tags", cause=e)
        return cache
