"""
Unit tests for resilience patterns.

Tests backoff computation, the tenacity-backed retry helper, and the
cancellation token that interrupts backoff sleeps.
"""

import random
import threading
import time

import pytest

from news_ingest.errors import NetworkError, RunCancelledError, ValidationError
from news_ingest.services.resilience import CancelToken, RetryPolicy, retry_call


def _retry_network(exc: BaseException) -> bool:
    return isinstance(exc, NetworkError)


class TestRetryPolicy:
    """Tests for RetryPolicy.compute_delay."""

    def test_exponential_without_jitter(self):
        policy = RetryPolicy(base_delay=1.0, factor=2.0, jitter=0.0)
        assert policy.compute_delay(1) == 1.0
        assert policy.compute_delay(2) == 2.0
        assert policy.compute_delay(3) == 4.0

    def test_capped_at_max_delay(self):
        policy = RetryPolicy(base_delay=1.0, factor=2.0, max_delay=30.0, jitter=0.0)
        assert policy.compute_delay(10) == 30.0

    def test_jitter_stays_within_bounds(self):
        policy = RetryPolicy(base_delay=1.0, jitter=0.25, rng=random.Random(42))
        for _ in range(100):
            delay = policy.compute_delay(1)
            assert 0.75 <= delay <= 1.25

    def test_from_settings(self):
        class FakeSettings:
            NEWS_API_MAX_ATTEMPTS = 5
            RETRY_BASE_DELAY_SECONDS = 0.5
            RETRY_MAX_DELAY_SECONDS = 10.0
            RETRY_JITTER = 0.1

        policy = RetryPolicy.from_settings(FakeSettings)
        assert policy.max_attempts == 5
        assert policy.base_delay == 0.5
        assert policy.max_delay == 10.0
        assert policy.jitter == 0.1


class TestRetryCall:
    """Tests for retry_call()."""

    def test_fail_fail_succeed(self):
        """3 attempts against fail, fail, succeed: 3 calls and the elapsed time covers both waits."""
        policy = RetryPolicy(max_attempts=3, base_delay=0.05, factor=2.0, jitter=0.0)
        calls = []

        def flaky():
            calls.append(time.monotonic())
            if len(calls) < 3:
                raise NetworkError("connection reset")
            return "ok"

        start = time.monotonic()
        result = retry_call(flaky, policy=policy, should_retry=_retry_network)
        elapsed = time.monotonic() - start

        assert result == "ok"
        assert len(calls) == 3
        assert elapsed >= (0.05 + 0.10) * 0.95

    def test_gives_up_after_max_attempts(self):
        policy = RetryPolicy(max_attempts=3, base_delay=0.0, jitter=0.0)
        calls = []

        def always_fails():
            calls.append(1)
            raise NetworkError("down")

        with pytest.raises(NetworkError):
            retry_call(always_fails, policy=policy, should_retry=_retry_network)
        assert len(calls) == 3

    def test_non_retryable_fails_immediately(self):
        policy = RetryPolicy(max_attempts=3, base_delay=0.0, jitter=0.0)
        calls = []

        def invalid():
            calls.append(1)
            raise ValidationError("bad item", field="id")

        with pytest.raises(ValidationError):
            retry_call(invalid, policy=policy, should_retry=_retry_network)
        assert len(calls) == 1

    def test_on_retry_hook_receives_attempt_and_wait(self):
        policy = RetryPolicy(max_attempts=2, base_delay=0.01, jitter=0.0)
        seen = []

        def fails_once():
            if not seen:
                raise NetworkError("blip")
            return 1

        retry_call(
            fails_once,
            policy=policy,
            should_retry=_retry_network,
            on_retry=lambda attempt, exc, wait: seen.append((attempt, type(exc), wait)),
        )
        assert seen == [(1, NetworkError, 0.01)]

    def test_cancel_during_backoff(self):
        """Cancelling while waiting aborts the retry loop right away."""
        policy = RetryPolicy(max_attempts=3, base_delay=5.0, jitter=0.0)
        token = CancelToken()

        def fails():
            raise NetworkError("down")

        threading.Timer(0.05, token.cancel).start()
        start = time.monotonic()
        with pytest.raises(RunCancelledError):
            retry_call(fails, policy=policy, should_retry=_retry_network, cancel=token)
        assert time.monotonic() - start < 2.0


class TestCancelToken:
    """Tests for CancelToken."""

    def test_not_cancelled_initially(self):
        token = CancelToken()
        assert not token.cancelled
        token.raise_if_cancelled()

    def test_cancel_sets_reason(self):
        token = CancelToken()
        token.cancel("operator stop")
        assert token.cancelled
        with pytest.raises(RunCancelledError, match="operator stop"):
            token.raise_if_cancelled()

    def test_sleep_returns_after_timeout(self):
        token = CancelToken()
        start = time.monotonic()
        token.sleep(0.02)
        assert time.monotonic() - start >= 0.02

    def test_deadline_expires(self):
        token = CancelToken(deadline_seconds=0.01)
        with pytest.raises(RunCancelledError, match="deadline"):
            token.sleep(1.0)
        assert token.cancelled
