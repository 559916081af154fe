# news_ingest/services/ingestion.py
"""
Ingestion orchestration.

Pipeline per page:
1. Fetch one page from the upstream API (validated, bad items rejected)
2. Drop repeats inside the page
3. Bulk duplicate check (one query for the whole page)
4. Prefetch categories and tags for the remaining items
5. Ingest items in parallel (bounded worker pool, one DB session per item)
6. Run queued image reconciliations for duplicates whose cover changed

Incremental runs process one page; batch runs walk ceil(total/batch_size)
pages with a cancellable pause between them. Either way exactly one
ImportLog row is written per run that imported something.
"""

import logging
import math
import threading
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any, Callable, Optional

from sqlalchemy import func
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from news_ingest import models
from news_ingest.config import Settings, get_settings
from news_ingest.context import PipelineContext
from news_ingest.database import check_connection
from news_ingest.errors import (
    DuplicateError,
    NewsIngestError,
    PersistenceError,
    RunCancelledError,
    error_code,
)
from news_ingest.logging_config import log_stage
from news_ingest.schemas.upstream import FetchFilters, IncomingArticle
from news_ingest.services.deduper import DuplicateDetector
from news_ingest.services.fetch_client import NewsApiClient
from news_ingest.services.image_pipeline import ImageOptions, ImagePipeline, ImageSubstitutions
from news_ingest.services.image_reconciler import ImageReconciler
from news_ingest.services.persistence import ArticlePersister, IngestOptions
from news_ingest.services.slugs import SlugRegistry
from news_ingest.services.taxonomy import TaxonomyCache, TaxonomyResolver

logger = logging.getLogger(__name__)

MIN_WORKERS = 1
MAX_WORKERS = 8


# -----------------------------------------------------------------------------
# Results
# -----------------------------------------------------------------------------


@dataclass
class ImportResult:
    """Outcome of one page or one whole run."""
    success: bool = True
    total_processed: int = 0
    imported: int = 0
    skipped: int = 0
    errors: int = 0
    error_details: list[dict] = field(default_factory=list)
    duration_ms: int = 0
    imported_ids: list[int] = field(default_factory=list)

    def add_error(self, item: str, exc: BaseException | str, code: Optional[str] = None) -> None:
        message = exc.message if isinstance(exc, NewsIngestError) else str(exc)
        self.errors += 1
        self.error_details.append({
            "item": item,
            "error": message,
            "code": code or (error_code(exc) if isinstance(exc, BaseException) else "UNKNOWN_ERROR"),
        })

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class SystemStatus:
    api_healthy: bool
    database_connected: bool
    last_import: Optional[datetime]
    total_news: int

    def to_dict(self) -> dict:
        return asdict(self)


# -----------------------------------------------------------------------------
# Service
# -----------------------------------------------------------------------------


class IngestionService:
    """Fetch -> dedupe -> persist driver for incremental, force and batch runs."""

    def __init__(
        self,
        session_factory: Optional[Callable[[], Session]] = None,
        client: Optional[NewsApiClient] = None,
        ctx: Optional[PipelineContext] = None,
        settings: Optional[Settings] = None,
        image_pipeline: Optional[ImagePipeline] = None,
        max_workers: Optional[int] = None,
        inter_batch_pause: Optional[float] = None,
        fail_open: Optional[bool] = None,
        process_images: Optional[bool] = None,
    ):
        self.settings = settings or get_settings()
        self.ctx = ctx or PipelineContext.create("news_ingest.ingestion")

        if session_factory is None:
            from news_ingest.database import SessionLocal
            session_factory = SessionLocal
        self.session_factory = session_factory

        self._client = client
        self.max_workers = max(MIN_WORKERS, min(MAX_WORKERS, max_workers or self.settings.INGEST_MAX_WORKERS))
        self.inter_batch_pause = (
            self.settings.INTER_BATCH_PAUSE_SECONDS if inter_batch_pause is None else inter_batch_pause
        )
        self.process_images = (
            self.settings.IMAGE_PROCESSING_ENABLED if process_images is None else process_images
        )

        self.substitutions = ImageSubstitutions.from_settings(self.settings)
        self.image_options = ImageOptions.from_settings(self.settings)
        self._image_pipeline = image_pipeline

        self._pending_reconciles: list[tuple[int, IncomingArticle]] = []
        self._pending_lock = threading.Lock()

        self.deduper = DuplicateDetector(
            ctx=self.ctx.child("deduper"),
            fail_open=self.settings.DUPLICATE_CHECK_FAIL_OPEN if fail_open is None else fail_open,
            on_image_changed=self._queue_reconcile,
            substitutions=self.substitutions,
        )
        self.taxonomy = TaxonomyResolver(ctx=self.ctx.child("taxonomy"))
        self.persister = ArticlePersister(
            ctx=self.ctx.child("persistence"),
            deduper=self.deduper,
            taxonomy=self.taxonomy,
            image_pipeline=image_pipeline,
            substitutions=self.substitutions,
            image_options=self.image_options,
        )

    # -------------------------------------------------------------------------
    # Lazy collaborators
    # -------------------------------------------------------------------------

    @property
    def client(self) -> NewsApiClient:
        """Lazy-load the upstream client."""
        if self._client is None:
            self._client = NewsApiClient.from_settings(self.settings, ctx=self.ctx.child("fetch"))
        return self._client

    @property
    def image_pipeline(self) -> ImagePipeline:
        """Lazy-load the image pipeline (shared by the persister and the reconciler)."""
        if self._image_pipeline is None:
            self._image_pipeline = ImagePipeline.from_settings(self.settings, ctx=self.ctx.child("images"))
            self.persister._image_pipeline = self._image_pipeline
        return self._image_pipeline

    def close(self) -> None:
        if self._client is not None:
            self._client.close()
        if self._image_pipeline is not None:
            self._image_pipeline.close()

    def __enter__(self) -> "IngestionService":
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    # -------------------------------------------------------------------------
    # Public runs
    # -------------------------------------------------------------------------

    def run_incremental(
        self,
        limit: Optional[int] = None,
        offset: int = 0,
        force: bool = False,
        filters: Optional[FetchFilters] = None,
    ) -> ImportResult:
        """Fetch and ingest one page. force re-imports items already stored."""
        limit = limit or self.settings.INGEST_DEFAULT_LIMIT
        mode = models.IngestMode.FORCE if force else models.IngestMode.INCREMENTAL
        started = time.time()

        with log_stage(f"ingest_{mode.value}", self.ctx.logger, trace_id=self.ctx.trace_id):
            try:
                result = self._run_page(limit, offset, force=force, filters=filters)
            except RunCancelledError as e:
                result = ImportResult(success=False)
                result.add_error("run", e)
                self.ctx.logger.warning("run_cancelled", f"Run cancelled: {e.message}")

        result.duration_ms = int((time.time() - started) * 1000)
        self._write_import_log(result, mode, limit=limit, offset=offset, batch_size=limit, pages=1)
        self._log_result(result, mode)
        return result

    def run_force(self, limit: Optional[int] = None, offset: int = 0) -> ImportResult:
        """Incremental run that skips the duplicate check."""
        return self.run_incremental(limit=limit, offset=offset, force=True)

    def run_batch(
        self,
        total_limit: Optional[int] = None,
        batch_size: Optional[int] = None,
        force: bool = False,
        filters: Optional[FetchFilters] = None,
    ) -> list[ImportResult]:
        """
        Walk ceil(total_limit / batch_size) pages sequentially.

        A failed page is recorded and the run moves on; cancellation stops
        the run between or inside pages.
        """
        total_limit = total_limit or self.settings.INGEST_TOTAL_LIMIT
        batch_size = batch_size or self.settings.INGEST_BATCH_SIZE
        pages = math.ceil(total_limit / batch_size)
        started = time.time()
        results: list[ImportResult] = []
        slugs: Optional[SlugRegistry] = None

        with log_stage("ingest_batch", self.ctx.logger, trace_id=self.ctx.trace_id):
            try:
                for index in range(pages):
                    offset = index * batch_size
                    limit = min(batch_size, total_limit - offset)
                    if slugs is None:
                        try:
                            slugs = self._load_slugs()
                        except PersistenceError as e:
                            self.ctx.logger.warning("slug_preload_failed", f"Slug preload failed, pages load their own: {e.message}")

                    self.ctx.logger.info(
                        "batch_page_start",
                        f"Batch {index + 1}/{pages} (offset {offset}, limit {limit})",
                        batch=index + 1,
                        limit=limit,
                        offset=offset,
                    )
                    result = self._run_page(limit, offset, force=force, filters=filters, slugs=slugs)
                    results.append(result)
                    if not result.success:
                        self.ctx.logger.warning(
                            "batch_page_failed",
                            f"Batch {index + 1}/{pages} failed, continuing",
                            batch=index + 1,
                            errors=result.errors,
                        )

                    if index < pages - 1 and self.inter_batch_pause > 0:
                        self.ctx.cancel.sleep(self.inter_batch_pause)
            except RunCancelledError as e:
                cancelled = ImportResult(success=False)
                cancelled.add_error("run", e)
                results.append(cancelled)
                self.ctx.logger.warning("batch_cancelled", f"Batch run cancelled: {e.message}")

        summary = self.aggregate(results)
        summary.duration_ms = int((time.time() - started) * 1000)
        self._write_import_log(
            summary,
            models.IngestMode.BATCH,
            limit=total_limit,
            offset=0,
            batch_size=batch_size,
            pages=len(results),
        )
        self._log_result(summary, models.IngestMode.BATCH)
        return results

    @staticmethod
    def aggregate(results: list[ImportResult]) -> ImportResult:
        """Sum page results; the run succeeded only if every page did."""
        total = ImportResult(success=all(r.success for r in results))
        for r in results:
            total.total_processed += r.total_processed
            total.imported += r.imported
            total.skipped += r.skipped
            total.errors += r.errors
            total.error_details.extend(r.error_details)
            total.duration_ms += r.duration_ms
            total.imported_ids.extend(r.imported_ids)
        return total

    def get_system_status(self, db: Session) -> SystemStatus:
        """Upstream health plus a few database facts."""
        api_healthy = self.client.check_health()
        try:
            check_connection(db)
            last_import = db.query(func.max(models.ImportLog.imported_at)).scalar()
            total_news = db.query(func.count(models.StoredArticle.id)).scalar() or 0
            database_connected = True
        except SQLAlchemyError as e:
            db.rollback()
            logger.error(f"Database status check failed: {e}")
            database_connected, last_import, total_news = False, None, 0

        return SystemStatus(
            api_healthy=api_healthy,
            database_connected=database_connected,
            last_import=last_import,
            total_news=total_news,
        )

    # -------------------------------------------------------------------------
    # Page processing
    # -------------------------------------------------------------------------

    def _run_page(
        self,
        limit: int,
        offset: int,
        force: bool = False,
        filters: Optional[FetchFilters] = None,
        slugs: Optional[SlugRegistry] = None,
    ) -> ImportResult:
        started = time.time()
        result = ImportResult()

        try:
            page = self.client.fetch_page(limit=limit, offset=offset, filters=filters)
        except RunCancelledError:
            raise
        except NewsIngestError as e:
            # Nothing was processed: the page as a whole failed
            self.ctx.logger.error(
                "fetch_failed",
                f"Fetching page at offset {offset} failed: {e.message}",
                offset=offset,
                code=e.code,
            )
            result.success = False
            result.add_error("fetch", e)
            result.duration_ms = int((time.time() - started) * 1000)
            return result

        for rejected in page.rejected:
            result.total_processed += 1
            label = str(rejected.raw.get("source_guid") or rejected.raw.get("id") or "unknown")
            result.add_error(label, rejected.error, code="VALIDATION_ERROR")

        items = self._drop_repeats(page.items, result)
        result.total_processed += len(page.items)

        if items:
            try:
                self._ingest_items(items, result, force=force, slugs=slugs)
            except PersistenceError as e:
                # Fail-closed duplicate check or slug loading failed: the page is rejected
                self.ctx.logger.error("page_rejected", f"Page at offset {offset} rejected: {e.message}", offset=offset)
                for item in items:
                    result.add_error(item.identifier, e)

        result.duration_ms = int((time.time() - started) * 1000)
        return result

    def _drop_repeats(self, items: list[IncomingArticle], result: ImportResult) -> list[IncomingArticle]:
        """Keep the first occurrence of each guid / upstream id within a page."""
        seen_guids: set[str] = set()
        seen_ids: set[str] = set()
        unique = []
        for item in items:
            if item.source_guid in seen_guids or (item.secondary_id and item.secondary_id in seen_ids):
                result.skipped += 1
                continue
            seen_guids.add(item.source_guid)
            if item.secondary_id:
                seen_ids.add(item.secondary_id)
            unique.append(item)
        return unique

    def _ingest_items(
        self,
        items: list[IncomingArticle],
        result: ImportResult,
        force: bool,
        slugs: Optional[SlugRegistry],
    ) -> None:
        db = self.session_factory()
        stored: set[str] = set()
        try:
            if force:
                # Force re-imports stored items, but their images are not reprocessed
                try:
                    stored = self.deduper.bulk_check(db, items, reconcile=False)
                except PersistenceError as e:
                    self.ctx.logger.warning("force_duplicate_check_failed", f"Stored-item lookup failed: {e.message}")
                duplicates: set[str] = set()
            else:
                duplicates = self.deduper.bulk_check(db, items)

            result.skipped += len(duplicates)
            pending = [item for item in items if item.identifier not in duplicates]
            if not pending and not self._pending_reconciles:
                return

            if slugs is None:
                slugs = self._load_slugs(db)
            cache = self._prefetch_taxonomy(db, pending)
        finally:
            db.close()

        options = IngestOptions(process_image=self.process_images, skip_duplicates=not force)
        stored_options = IngestOptions(process_image=False, skip_duplicates=not force)
        if pending and self.process_images:
            # Make sure the shared pipeline exists before workers start
            _ = self.image_pipeline

        with ThreadPoolExecutor(max_workers=self.max_workers) as executor:
            futures = {
                executor.submit(
                    self._ingest_one,
                    item,
                    stored_options if item.identifier in stored else options,
                    slugs,
                    cache,
                ): item
                for item in pending
            }
            for future in as_completed(futures):
                item = futures[future]
                try:
                    article_id = future.result()
                    result.imported += 1
                    result.imported_ids.append(article_id)
                except DuplicateError:
                    result.skipped += 1
                except NewsIngestError as e:
                    result.add_error(item.identifier, e)
                except Exception as e:
                    logger.error(f"Unexpected failure ingesting {item.identifier}: {e}", exc_info=True)
                    result.add_error(item.identifier, e)

            self._run_reconciles(executor)

    def _ingest_one(
        self,
        item: IncomingArticle,
        options: IngestOptions,
        slugs: SlugRegistry,
        cache: Optional[TaxonomyCache],
    ) -> int:
        db = self.session_factory()
        try:
            return self.persister.ingest(db, item, options=options, slugs=slugs, taxonomy_cache=cache)
        finally:
            db.close()

    def _load_slugs(self, db: Optional[Session] = None) -> SlugRegistry:
        own = db is None
        db = db or self.session_factory()
        try:
            return SlugRegistry.from_db(db)
        except SQLAlchemyError as e:
            db.rollback()
            raise PersistenceError("load_slugs", cause=e)
        finally:
            if own:
                db.close()

    def _prefetch_taxonomy(self, db: Session, items: list[IncomingArticle]) -> Optional[TaxonomyCache]:
        if not items:
            return None
        try:
            return self.taxonomy.prefetch(db, items)
        except PersistenceError as e:
            # Items fall back to resolving their own taxonomy
            self.ctx.logger.warning("taxonomy_prefetch_failed", f"Taxonomy prefetch failed: {e.message}")
            return None

    # -------------------------------------------------------------------------
    # Image reconciliation
    # -------------------------------------------------------------------------

    def _queue_reconcile(self, article_id: int, item: IncomingArticle) -> None:
        with self._pending_lock:
            self._pending_reconciles.append((article_id, item))

    def _run_reconciles(self, executor: ThreadPoolExecutor) -> None:
        with self._pending_lock:
            queued, self._pending_reconciles = self._pending_reconciles, []
        if not queued:
            return

        reconciler = ImageReconciler(
            image_pipeline=self.image_pipeline,
            ctx=self.ctx.child("reconciler"),
            substitutions=self.substitutions,
        )
        futures = {
            executor.submit(self._reconcile_one, reconciler, article_id, item): article_id
            for article_id, item in queued
        }
        for future in as_completed(futures):
            try:
                future.result()
            except NewsIngestError as e:
                self.ctx.logger.error(
                    "image_reconcile_failed",
                    f"Image reconciliation failed for article {futures[future]}: {e.message}",
                    article_id=futures[future],
                    code=e.code,
                )

    def _reconcile_one(self, reconciler: ImageReconciler, article_id: int, item: IncomingArticle) -> bool:
        db = self.session_factory()
        try:
            return reconciler.reconcile(db, article_id, item)
        finally:
            db.close()

    # -------------------------------------------------------------------------
    # Bookkeeping
    # -------------------------------------------------------------------------

    def _write_import_log(self, result: ImportResult, mode: models.IngestMode, **meta: Any) -> None:
        """One append-only ImportLog row per run that imported something."""
        if result.imported < 1:
            return
        db = self.session_factory()
        try:
            db.add(models.ImportLog(
                source_id=self._single_source(db, result.imported_ids),
                imported_count=result.imported,
                imported_at=datetime.utcnow(),
                meta={
                    "mode": mode.value,
                    "total_processed": result.total_processed,
                    "imported": result.imported,
                    "skipped": result.skipped,
                    "errors": result.errors,
                    "duration_ms": result.duration_ms,
                    "trace_id": self.ctx.trace_id,
                    **meta,
                },
            ))
            db.commit()
        except SQLAlchemyError as e:
            db.rollback()
            self.ctx.logger.error("import_log_failed", f"Could not write import log: {e}")
        finally:
            db.close()

    @staticmethod
    def _single_source(db: Session, article_ids: list[int]) -> Optional[int]:
        """The Source id when every imported article came from one source, else None."""
        if not article_ids:
            return None
        source_ids = {
            row[0]
            for row in db.query(models.StoredArticle.source_fk)
            .filter(models.StoredArticle.id.in_(article_ids))
            .distinct()
        }
        return source_ids.pop() if len(source_ids) == 1 else None

    def _log_result(self, result: ImportResult, mode: models.IngestMode) -> None:
        self.ctx.logger.info(
            "ingest_complete",
            f"{mode.value} run: {result.imported} imported, {result.skipped} skipped, {result.errors} errors",
            imported=result.imported,
            skipped=result.skipped,
            errors=result.errors,
            items_processed=result.total_processed,
            duration_ms=result.duration_ms,
        )
