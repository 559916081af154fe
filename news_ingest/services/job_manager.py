# news_ingest/services/job_manager.py
"""
Single-flight guard for ingestion runs.

A scheduler (cron, the HTTP trigger, the CLI inside one process) must never
start a run while the previous one is still in flight. The guard is a
non-blocking lock: a second caller fails fast with JobAlreadyRunningError
instead of queueing behind the first.
"""

import logging
import threading
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any, Optional, TypeVar

from news_ingest.errors import JobAlreadyRunningError
from news_ingest.services.resilience import CancelToken

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class RunningJob:
    name: str
    started_at: datetime
    cancel: Optional[CancelToken] = None


class IngestJobManager:
    """Tracks the one ingestion run allowed at a time."""

    def __init__(self):
        self._lock = threading.Lock()
        self._current: Optional[RunningJob] = None

    @property
    def current(self) -> Optional[RunningJob]:
        return self._current

    def is_running(self) -> bool:
        return self._lock.locked()

    def run_exclusive(
        self,
        name: str,
        func: Callable[..., T],
        *args: Any,
        cancel: Optional[CancelToken] = None,
        **kwargs: Any,
    ) -> T:
        """
        Run func(*args, **kwargs) unless another run is in flight.

        Raises:
            JobAlreadyRunningError: a run is already in progress
        """
        # Concurrency guard: prevent overlapping ingestion runs
        if not self._lock.acquire(blocking=False):
            running = self._current
            since = running.started_at.isoformat() if running else "unknown"
            raise JobAlreadyRunningError(
                f"Ingestion job already running ({running.name if running else 'unknown'} since {since}). "
                "Wait for it to complete or cancel it first."
            )

        self._current = RunningJob(name=name, started_at=datetime.now(UTC), cancel=cancel)
        logger.info(f"Ingestion job {name} started", extra={"event": "job_started"})
        try:
            return func(*args, **kwargs)
        finally:
            logger.info(f"Ingestion job {name} finished", extra={"event": "job_finished"})
            self._current = None
            self._lock.release()

    def cancel_running(self, reason: str = "cancelled by operator") -> bool:
        """Signal the in-flight run to stop. False when nothing is running or it is not cancellable."""
        running = self._current
        if running is None or running.cancel is None:
            return False
        running.cancel.cancel(reason)
        logger.info(f"Cancellation requested for ingestion job {running.name}: {reason}")
        return True


# Process-wide guard shared by the HTTP trigger and the CLI
_job_manager = IngestJobManager()


def get_job_manager() -> IngestJobManager:
    return _job_manager
