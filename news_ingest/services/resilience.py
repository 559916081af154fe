"""
Resilience patterns for ingestion runs.

Provides a jittered exponential backoff policy, a tenacity-backed retry
helper whose sleeps can be interrupted, and the run-scoped cancellation
token that makes those sleeps interruptible.
"""

import logging
import random
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any, TypeVar

from tenacity import RetryCallState, Retrying, retry_if_exception, stop_after_attempt

from news_ingest.errors import RunCancelledError

logger = logging.getLogger(__name__)

T = TypeVar("T")


# -----------------------------------------------------------------------------
# Cancellation
# -----------------------------------------------------------------------------


class CancelToken:
    """
    Run-scoped cancellation signal with an optional deadline.

    All intentional waits in a run (retry backoff, inter-batch pauses) go
    through ``sleep`` so that ``cancel()`` or an expired deadline ends them
    immediately instead of after the full wait.
    """

    def __init__(self, deadline_seconds: float | None = None):
        self._event = threading.Event()
        self._deadline = time.monotonic() + deadline_seconds if deadline_seconds is not None else None
        self.reason: str | None = None

    def cancel(self, reason: str = "cancelled by operator") -> None:
        self.reason = reason
        self._event.set()

    @property
    def remaining(self) -> float | None:
        if self._deadline is None:
            return None
        return max(0.0, self._deadline - time.monotonic())

    @property
    def cancelled(self) -> bool:
        if self._event.is_set():
            return True
        return self._deadline is not None and time.monotonic() >= self._deadline

    def raise_if_cancelled(self) -> None:
        if self.cancelled:
            raise RunCancelledError(f"Run cancelled: {self.reason or 'deadline exceeded'}")

    def sleep(self, seconds: float) -> None:
        """Wait up to ``seconds``; raise RunCancelledError if cancelled meanwhile."""
        self.raise_if_cancelled()
        if seconds <= 0:
            return

        timeout = seconds
        remaining = self.remaining
        if remaining is not None and remaining < seconds:
            # The deadline falls inside this wait: wake at the deadline and stop.
            self._event.wait(remaining)
            raise RunCancelledError("Run cancelled: deadline exceeded during backoff")

        if self._event.wait(timeout):
            raise RunCancelledError(f"Run cancelled: {self.reason or 'cancelled'}")


# -----------------------------------------------------------------------------
# Retry policy
# -----------------------------------------------------------------------------


@dataclass
class RetryPolicy:
    """
    Exponential backoff with jitter.

    wait(n) = min(base_delay * factor ** (n - 1) * (1 +/- jitter), max_delay)
    for the wait that follows failed attempt n.
    """

    max_attempts: int = 3
    base_delay: float = 1.0
    factor: float = 2.0
    max_delay: float = 30.0
    jitter: float = 0.25
    rng: random.Random = field(default_factory=random.Random, repr=False)

    @classmethod
    def from_settings(cls, settings) -> "RetryPolicy":
        return cls(
            max_attempts=settings.NEWS_API_MAX_ATTEMPTS,
            base_delay=settings.RETRY_BASE_DELAY_SECONDS,
            max_delay=settings.RETRY_MAX_DELAY_SECONDS,
            jitter=settings.RETRY_JITTER,
        )

    def compute_delay(self, attempt: int) -> float:
        """Backoff to wait after the given (1-based) failed attempt."""
        delay = self.base_delay * (self.factor ** (attempt - 1))
        if self.jitter:
            delay *= 1 + self.rng.uniform(-self.jitter, self.jitter)
        return max(0.0, min(delay, self.max_delay))


def retry_call(
    func: Callable[..., T],
    *args: Any,
    policy: RetryPolicy,
    should_retry: Callable[[BaseException], bool],
    cancel: CancelToken | None = None,
    on_retry: Callable[[int, BaseException, float], None] | None = None,
    **kwargs: Any,
) -> T:
    """
    Call ``func`` with bounded, jittered retries.

    Args:
        func: Callable to invoke
        policy: Attempt count and backoff shape
        should_retry: Predicate selecting retryable exceptions
        cancel: Token whose sleep() is used for every backoff wait
        on_retry: Hook called with (attempt, exception, wait_seconds) before each wait

    Returns:
        The first successful result.

    Raises:
        The last exception once attempts are exhausted or it is not retryable,
        RunCancelledError if the token fires during a wait.
    """
    token = cancel or CancelToken()

    def wait(retry_state: RetryCallState) -> float:
        return policy.compute_delay(retry_state.attempt_number)

    def before_sleep(retry_state: RetryCallState) -> None:
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        wait_seconds = retry_state.next_action.sleep if retry_state.next_action else 0.0
        name = getattr(func, "__name__", repr(func))
        logger.warning(
            f"{name} attempt {retry_state.attempt_number} failed: {exc}. Retrying in {wait_seconds:.2f}s...",
            extra={"event": "retry_scheduled", "attempt": retry_state.attempt_number, "wait_seconds": wait_seconds},
        )
        if on_retry and exc is not None:
            on_retry(retry_state.attempt_number, exc, wait_seconds)

    def before(retry_state: RetryCallState) -> None:
        token.raise_if_cancelled()

    retrying = Retrying(
        stop=stop_after_attempt(policy.max_attempts),
        wait=wait,
        retry=retry_if_exception(should_retry),
        sleep=token.sleep,
        before=before,
        before_sleep=before_sleep,
        reraise=True,
    )
    return retrying(func, *args, **kwargs)
