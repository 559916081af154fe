"""
Unit tests for IngestJobManager.

Tests the single-flight guard: overlapping runs are refused, the lock is
released after success and failure, and running jobs can be cancelled.
"""

import threading

import pytest

from news_ingest.errors import JobAlreadyRunningError
from news_ingest.services.job_manager import IngestJobManager, get_job_manager
from news_ingest.services.resilience import CancelToken


class TestIngestJobManager:
    """Tests for IngestJobManager."""

    def test_runs_function_and_returns_result(self):
        manager = IngestJobManager()
        assert manager.run_exclusive("job", lambda a, b=0: a + b, 1, b=2) == 3
        assert manager.is_running() is False
        assert manager.current is None

    def test_overlapping_run_refused(self):
        manager = IngestJobManager()
        started = threading.Event()
        release = threading.Event()

        def slow():
            started.set()
            release.wait(5)
            return "done"

        results = []
        thread = threading.Thread(target=lambda: results.append(manager.run_exclusive("first", slow)))
        thread.start()
        started.wait(5)

        try:
            assert manager.is_running() is True
            assert manager.current.name == "first"
            with pytest.raises(JobAlreadyRunningError, match="first"):
                manager.run_exclusive("second", lambda: "never")
        finally:
            release.set()
            thread.join(5)

        assert results == ["done"]
        assert manager.is_running() is False

    def test_lock_released_after_failure(self):
        manager = IngestJobManager()

        def boom():
            raise ValueError("failed run")

        with pytest.raises(ValueError):
            manager.run_exclusive("job", boom)
        assert manager.run_exclusive("job", lambda: "again") == "again"

    def test_cancel_running(self):
        manager = IngestJobManager()
        token = CancelToken()
        started = threading.Event()

        def waits_for_cancel():
            started.set()
            for _ in range(500):
                if token.cancelled:
                    return token.reason
                threading.Event().wait(0.01)
            return None

        results = []
        thread = threading.Thread(
            target=lambda: results.append(manager.run_exclusive("job", waits_for_cancel, cancel=token))
        )
        thread.start()
        started.wait(5)

        assert manager.cancel_running("stop now") is True
        thread.join(5)
        assert results == ["stop now"]

    def test_cancel_when_idle(self):
        assert IngestJobManager().cancel_running() is False

    def test_shared_instance(self):
        assert get_job_manager() is get_job_manager()
