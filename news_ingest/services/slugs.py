# news_ingest/services/slugs.py
"""
Slug generation.

slugify() is pure and deterministic: the same title always yields the same
slug. Uniqueness is a separate step (uniquify / SlugRegistry) because it
depends on what is already stored.
"""

import re
import threading
import unicodedata
from collections.abc import Iterable

from sqlalchemy.orm import Session

DEFAULT_MAX_LENGTH = 100
FALLBACK_SLUG = "untitled"
FALLBACK_TAG_SLUG = "news"
MAX_SLUG_LENGTH = 512

# Turkish letters that NFKD does not reduce to plain ASCII (ı, İ) or that
# should map deterministically regardless of normalization form.
TURKISH_CHAR_MAP = {
    "ç": "c", "Ç": "c",
    "ğ": "g", "Ğ": "g",
    "ı": "i", "I": "i", "İ": "i",
    "ö": "o", "Ö": "o",
    "ş": "s", "Ş": "s",
    "ü": "u", "Ü": "u",
}

_TURKISH_TABLE = str.maketrans(TURKISH_CHAR_MAP)
_NON_SLUG_CHARS = re.compile(r"[^a-zA-Z0-9\s-]")
_NON_WORD_CHARS = re.compile(r"[^\w\s-]")
_WHITESPACE = re.compile(r"\s+")
_SEPARATORS = re.compile(r"-+")
_VALID_SLUG = re.compile(r"^[a-zA-Z0-9_-]+$")


def transliterate(text: str) -> str:
    """Map Turkish letters to ASCII, then strip remaining combining accents."""
    text = text.translate(_TURKISH_TABLE)
    decomposed = unicodedata.normalize("NFKD", text)
    return "".join(ch for ch in decomposed if not unicodedata.combining(ch))


def _truncate(slug: str, max_length: int) -> str:
    """Cut to max_length, preferring the last separator so words stay whole."""
    if len(slug) <= max_length:
        return slug
    cut = slug[:max_length]
    if slug[max_length] == "-":
        # The cut already falls on a word boundary
        return cut.strip("-")
    boundary = cut.rfind("-")
    if boundary > 0:
        cut = cut[:boundary]
    return cut.strip("-")


def slugify(title: str | None, max_length: int = DEFAULT_MAX_LENGTH) -> str:
    """
    Turn a title into a URL-safe slug.

    Args:
        title: Free text (any language)
        max_length: Upper bound on the result length

    Returns:
        Lowercase ASCII slug, never empty (falls back to "untitled")
    """
    if not title or not isinstance(title, str):
        return FALLBACK_SLUG

    slug = transliterate(title)
    slug = _NON_SLUG_CHARS.sub("", slug)
    slug = _WHITESPACE.sub("-", slug.strip())
    slug = slug.lower()
    slug = _SEPARATORS.sub("-", slug).strip("-")
    slug = _truncate(slug, max_length)

    return slug or FALLBACK_SLUG


def uniquify(base: str, existing: Iterable[str] | set[str], max_length: int = DEFAULT_MAX_LENGTH) -> str:
    """
    Return base, or base-1, base-2, ... whichever is not in existing.

    The base is re-truncated so that base + suffix never exceeds max_length.
    """
    taken = existing if isinstance(existing, (set, frozenset)) else set(existing)
    base = _truncate(base, max_length) or FALLBACK_SLUG
    if base not in taken:
        return base

    counter = 1
    while True:
        suffix = f"-{counter}"
        stem = base[: max_length - len(suffix)].rstrip("-")
        candidate = f"{stem}{suffix}"
        if candidate not in taken:
            return candidate
        counter += 1


def slug_to_title(slug: str) -> str:
    """'son-dakika-haber' -> 'Son Dakika Haber'."""
    if not slug:
        return ""
    return " ".join(word.capitalize() for word in slug.replace("_", "-").split("-") if word)


def is_valid_slug(slug: str | None) -> bool:
    return bool(slug) and len(slug) <= MAX_SLUG_LENGTH and bool(_VALID_SLUG.match(slug))


def create_tag_slug(name: str | None, max_length: int = 100) -> str:
    """Slug for a tag name; keeps word characters, falls back to 'news'."""
    if not name or not isinstance(name, str):
        return FALLBACK_TAG_SLUG

    slug = transliterate(name.strip())
    slug = _NON_WORD_CHARS.sub("", slug)
    slug = _WHITESPACE.sub("-", slug.strip()).lower()
    slug = _SEPARATORS.sub("-", slug).strip("-")
    slug = slug[:max_length].strip("-")
    return slug or FALLBACK_TAG_SLUG


# -----------------------------------------------------------------------------
# Run-scoped registry
# -----------------------------------------------------------------------------


class SlugRegistry:
    """
    Owns the set of taken slugs for the duration of a run.

    Parallel article workers must allocate through this registry; the lock
    makes check-and-reserve atomic so two workers never get the same slug.
    """

    def __init__(self, existing: Iterable[str] = (), max_length: int = DEFAULT_MAX_LENGTH):
        self._slugs: set[str] = set(existing)
        self._lock = threading.Lock()
        self.max_length = max_length

    @classmethod
    def from_db(cls, db: Session, max_length: int = DEFAULT_MAX_LENGTH) -> "SlugRegistry":
        from news_ingest.models import StoredArticle

        rows = db.query(StoredArticle.slug).all()
        return cls((row[0] for row in rows), max_length=max_length)

    def allocate(self, title: str | None) -> str:
        """Slugify the title and reserve a unique variant of it."""
        base = slugify(title, self.max_length)
        with self._lock:
            slug = uniquify(base, self._slugs, self.max_length)
            self._slugs.add(slug)
            return slug

    def __contains__(self, slug: str) -> bool:
        with self._lock:
            return slug in self._slugs

    def __len__(self) -> int:
        with self._lock:
            return len(self._slugs)
