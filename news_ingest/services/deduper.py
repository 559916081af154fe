# news_ingest/services/deduper.py
"""
Duplicate detection for incoming upstream items.

Dedupe rules (either one is enough):
1. source_guid equals an existing StoredArticle.source_guid
2. upstream id equals an existing StoredArticle.source_id

Bulk checks use one query with IN clauses over both identifier sets,
regardless of batch size.

Lookup failures fail open by default: the item is treated as new, because
losing an article to a storage hiccup is worse than a rare duplicate (the
source_guid unique constraint still stops exact repeats). Set
fail_open=False to reject instead.
"""

from collections.abc import Callable
from dataclasses import dataclass, field

from sqlalchemy import or_
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from news_ingest import models
from news_ingest.context import PipelineContext
from news_ingest.errors import DuplicateError, PersistenceError
from news_ingest.schemas.upstream import IncomingArticle
from news_ingest.services.image_pipeline import ImageSubstitutions

ImageChangedCallback = Callable[[int, IncomingArticle], None]


@dataclass
class ExistingRecord:
    """Identity columns of a stored article, enough to match and reconcile."""
    id: int
    source_guid: str
    source_id: str | None
    image_url: str | None

    def matches(self, item: IncomingArticle) -> str | None:
        """Name of the identifier that matched, or None."""
        if self.source_guid == item.source_guid:
            return "source_guid"
        if item.secondary_id and self.source_id == item.secondary_id:
            return "source_id"
        return None


@dataclass
class DuplicateStats:
    total: int
    duplicates: int
    new: int
    duplicate_ids: list[str] = field(default_factory=list)


class DuplicateDetector:
    """Duplicate detection service."""

    def __init__(
        self,
        ctx: PipelineContext | None = None,
        fail_open: bool = True,
        on_image_changed: ImageChangedCallback | None = None,
        substitutions: ImageSubstitutions | None = None,
    ):
        self.ctx = ctx or PipelineContext()
        self.fail_open = fail_open
        self.on_image_changed = on_image_changed
        self.substitutions = substitutions or ImageSubstitutions()

    # -------------------------------------------------------------------------
    # Lookups
    # -------------------------------------------------------------------------

    def _lookup(self, db: Session, items: list[IncomingArticle]) -> list[ExistingRecord]:
        """One round-trip over both identifier sets."""
        guids = {item.source_guid for item in items}
        ids = {item.secondary_id for item in items if item.secondary_id}

        conditions = [models.StoredArticle.source_guid.in_(guids)]
        if ids:
            conditions.append(models.StoredArticle.source_id.in_(ids))

        rows = (
            db.query(
                models.StoredArticle.id,
                models.StoredArticle.source_guid,
                models.StoredArticle.source_id,
                models.StoredArticle.meta,
            )
            .filter(or_(*conditions))
            .all()
        )
        return [
            ExistingRecord(
                id=row[0],
                source_guid=row[1],
                source_id=row[2],
                image_url=(row[3] or {}).get("image_url") or None,
            )
            for row in rows
        ]

    def _safe_lookup(self, db: Session, items: list[IncomingArticle]) -> list[ExistingRecord] | None:
        """Run _lookup; None means the lookup failed and fail-open applies."""
        if not items:
            return []
        try:
            with self.ctx.metrics.timer("duplicate_lookup"):
                return self._lookup(db, items)
        except SQLAlchemyError as e:
            db.rollback()
            if not self.fail_open:
                self.ctx.logger.error(
                    "duplicate_check_failed",
                    f"Duplicate lookup failed, rejecting {len(items)} item(s): {e}",
                )
                raise PersistenceError("duplicate_check", cause=e)
            self.ctx.metrics.increment("duplicate_check_fail_open")
            self.ctx.logger.warning(
                "duplicate_check_fail_open",
                f"Duplicate lookup failed, treating {len(items)} item(s) as new: {e}",
            )
            return None

    @staticmethod
    def _match(item: IncomingArticle, existing: list[ExistingRecord]) -> tuple[ExistingRecord, str] | None:
        for record in existing:
            matched = record.matches(item)
            if matched:
                return record, matched
        return None

    # -------------------------------------------------------------------------
    # Public API
    # -------------------------------------------------------------------------

    def is_duplicate(self, db: Session, item: IncomingArticle, reconcile: bool = True) -> bool:
        """True if either identifier of the item is already stored."""
        existing = self._safe_lookup(db, [item])
        if not existing:
            return False
        hit = self._match(item, existing)
        if not hit:
            return False
        if reconcile:
            self._maybe_reconcile(hit[0], item)
        return True

    def find_existing(self, db: Session, item: IncomingArticle) -> models.StoredArticle | None:
        """Full row for the stored article matching the item, if any."""
        existing = self._safe_lookup(db, [item])
        hit = self._match(item, existing or [])
        if not hit:
            return None
        return db.get(models.StoredArticle, hit[0].id)

    def bulk_check(self, db: Session, items: list[IncomingArticle], reconcile: bool = True) -> set[str]:
        """
        Identifiers (upstream id, else source_guid) of items already stored.

        Returns an empty set when the lookup fails and fail-open is on.
        """
        existing = self._safe_lookup(db, items)
        if not existing:
            return set()

        duplicates: set[str] = set()
        for item in items:
            hit = self._match(item, existing)
            if hit:
                duplicates.add(item.identifier)
                if reconcile:
                    self._maybe_reconcile(hit[0], item)

        self.ctx.logger.debug(
            "bulk_duplicate_check",
            f"{len(duplicates)}/{len(items)} items already stored",
            items_processed=len(items),
            skipped=len(duplicates),
        )
        return duplicates

    def get_duplicate_stats(self, db: Session, items: list[IncomingArticle]) -> DuplicateStats:
        duplicate_ids = self.bulk_check(db, items, reconcile=False)
        return DuplicateStats(
            total=len(items),
            duplicates=len(duplicate_ids),
            new=len(items) - len(duplicate_ids),
            duplicate_ids=sorted(duplicate_ids),
        )

    def ensure_not_duplicate(self, db: Session, item: IncomingArticle) -> None:
        """Raise DuplicateError naming the identifier that matched."""
        existing = self._safe_lookup(db, [item])
        hit = self._match(item, existing or [])
        if hit:
            record, matched = hit
            self._maybe_reconcile(record, item)
            value = item.source_guid if matched == "source_guid" else item.secondary_id
            raise DuplicateError(f"News already exists with {matched}: {value}", field=matched)

    # -------------------------------------------------------------------------
    # Image reconciliation
    # -------------------------------------------------------------------------

    def _maybe_reconcile(self, record: ExistingRecord, item: IncomingArticle) -> None:
        """Fire on_image_changed when the incoming cover image differs from the stored one."""
        if not self.on_image_changed or not item.image_url:
            return
        incoming = self.substitutions.resolve(item.image_url)
        if incoming == (record.image_url or ""):
            return
        self.ctx.metrics.increment("image_reconciliations_triggered")
        self.ctx.logger.info(
            "image_reconcile_triggered",
            f"Cover image changed for article {record.id}",
            article_id=record.id,
            source_guid=item.source_guid,
        )
        try:
            self.on_image_changed(record.id, item)
        except Exception as e:
            # Reconciliation is out-of-band; it must never turn a duplicate into an error.
            self.ctx.logger.error(
                "image_reconcile_dispatch_failed",
                f"Could not dispatch image reconciliation for article {record.id}: {e}",
                article_id=record.id,
            )
