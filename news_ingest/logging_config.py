"""
Structured JSON logging and metrics for ingestion observability.

Provides structured logging with trace IDs for correlating logs across
pipeline stages, a stage timing context manager, and a thread-safe metrics
sink. Nothing here is a module-level singleton: loggers and sinks are created
per run and carried in the PipelineContext.
"""

import json
import logging
import sys
import threading
import time
from contextlib import contextmanager
from contextvars import ContextVar
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

# Context variables for trace correlation
trace_id_var: ContextVar[str | None] = ContextVar("trace_id", default=None)
stage_var: ContextVar[str | None] = ContextVar("stage", default=None)

# Attributes every LogRecord has; anything else came in through `extra`
_RECORD_ATTRS = frozenset(vars(logging.LogRecord("", 0, "", 0, "", None, None))) | {"message", "asctime", "taskName"}


# -----------------------------------------------------------------------------
# JSON Formatter
# -----------------------------------------------------------------------------


class JSONFormatter(logging.Formatter):
    """
    Format log records as single-line JSON.

    Output format:
    {"timestamp": "...", "level": "INFO", "message": "...", "trace_id": "...", ...}
    """

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.fromtimestamp(record.created, UTC).isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        # Add trace context if available
        trace_id = trace_id_var.get()
        if trace_id:
            log_data["trace_id"] = trace_id

        stage = stage_var.get()
        if stage:
            log_data["stage"] = stage

        # Add exception info if present
        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        # Structured fields passed through `extra`
        for key, value in vars(record).items():
            if key not in _RECORD_ATTRS and not key.startswith("_"):
                log_data.setdefault(key, value)

        return json.dumps(log_data, default=str)


def configure_logging(json_format: bool = True, level: str = "INFO") -> None:
    """
    Configure root logging for deployments or local development.

    Args:
        json_format: If True, use JSON format. If False, use human-readable format.
        level: Log level (DEBUG, INFO, WARNING, ERROR)
    """
    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, level.upper()))

    # Remove existing handlers
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(getattr(logging, level.upper()))

    if json_format:
        handler.setFormatter(JSONFormatter())
    else:
        handler.setFormatter(logging.Formatter("%(asctime)s [%(levelname)s] %(name)s: %(message)s"))

    root_logger.addHandler(handler)

    # Reduce noise from third-party libraries
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("botocore").setLevel(logging.WARNING)
    logging.getLogger("PIL").setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy").setLevel(logging.WARNING)


# -----------------------------------------------------------------------------
# Pipeline Logger
# -----------------------------------------------------------------------------


class PipelineLogger:
    """
    Structured logger for pipeline operations.

    Every call takes an event name plus free-form fields that end up as
    top-level keys in the JSON output.
    """

    def __init__(self, name: str = "news_ingest.pipeline", trace_id: str | None = None):
        self._logger = logging.getLogger(name)
        # Worker threads do not inherit trace_id_var, so the logger carries it
        self.trace_id = trace_id

    @property
    def name(self) -> str:
        return self._logger.name

    @property
    def component(self) -> str:
        return self._logger.name.rsplit(".", 1)[-1]

    def info(self, event: str, message: str, **kwargs: Any) -> None:
        """Log info message with event type."""
        self._log(logging.INFO, event, message, **kwargs)

    def warning(self, event: str, message: str, **kwargs: Any) -> None:
        """Log warning message with event type."""
        self._log(logging.WARNING, event, message, **kwargs)

    def error(self, event: str, message: str, **kwargs: Any) -> None:
        """Log error message with event type."""
        self._log(logging.ERROR, event, message, **kwargs)

    def debug(self, event: str, message: str, **kwargs: Any) -> None:
        """Log debug message with event type."""
        self._log(logging.DEBUG, event, message, **kwargs)

    def _log(self, level: int, event: str, message: str, **kwargs: Any) -> None:
        exc_info = kwargs.pop("exc_info", None)
        extra = {"event": event, "component": self.component}
        if self.trace_id:
            extra["trace_id"] = self.trace_id
        extra.update(kwargs)
        self._logger.log(level, message, extra=extra, exc_info=exc_info)


# -----------------------------------------------------------------------------
# Context Managers
# -----------------------------------------------------------------------------


@contextmanager
def log_stage(stage: str, logger: PipelineLogger, trace_id: str | None = None):
    """
    Context manager for stage-level logging.

    Logs stage start and end with duration, automatically tracks timing.

    Usage:
        with log_stage("fetch", ctx.logger, trace_id=ctx.trace_id):
            # ... stage logic ...
    """
    trace_token = trace_id_var.set(trace_id) if trace_id else None
    token = stage_var.set(stage)

    start_time = time.time()
    logger.info("stage_start", f"Stage {stage} started")

    try:
        yield
        duration_ms = int((time.time() - start_time) * 1000)
        logger.info("stage_complete", f"Stage {stage} completed", duration_ms=duration_ms)
    except Exception as e:
        duration_ms = int((time.time() - start_time) * 1000)
        logger.error("stage_failed", f"Stage {stage} failed: {e}", duration_ms=duration_ms, exc_info=True)
        raise
    finally:
        stage_var.reset(token)
        if trace_token is not None:
            trace_id_var.reset(trace_token)


# -----------------------------------------------------------------------------
# Metrics Sink
# -----------------------------------------------------------------------------


@dataclass
class OperationStats:
    """Running totals for one named operation."""

    count: int = 0
    failures: int = 0
    total_ms: float = 0.0

    @property
    def avg_ms(self) -> float:
        return self.total_ms / self.count if self.count else 0.0

    @property
    def error_rate(self) -> float:
        return self.failures / self.count if self.count else 0.0


@dataclass
class MetricsSink:
    """
    Collect metrics for an ingestion run.

    Thread-safe: article workers record into the same sink concurrently.
    """

    operations: dict[str, OperationStats] = field(default_factory=dict)
    counters: dict[str, int] = field(default_factory=dict)
    _lock: threading.Lock = field(default_factory=threading.Lock, init=False, repr=False)

    def record(self, operation: str, duration_ms: float, success: bool = True) -> None:
        """Record one timed operation."""
        with self._lock:
            stats = self.operations.setdefault(operation, OperationStats())
            stats.count += 1
            stats.total_ms += duration_ms
            if not success:
                stats.failures += 1

    def increment(self, counter: str, amount: int = 1) -> None:
        with self._lock:
            self.counters[counter] = self.counters.get(counter, 0) + amount

    @contextmanager
    def timer(self, operation: str):
        """Time a block; an exception counts as a failure and propagates."""
        start = time.perf_counter()
        success = True
        try:
            yield
        except BaseException:
            success = False
            raise
        finally:
            self.record(operation, (time.perf_counter() - start) * 1000, success=success)

    def get(self, operation: str) -> OperationStats:
        with self._lock:
            return self.operations.get(operation, OperationStats())

    def get_summary(self) -> dict:
        """Get metrics summary."""
        with self._lock:
            return {
                "operations": {
                    name: {
                        "count": s.count,
                        "failures": s.failures,
                        "avg_ms": round(s.avg_ms, 2),
                        "error_rate": round(s.error_rate, 4),
                    }
                    for name, s in self.operations.items()
                },
                "counters": dict(self.counters),
            }
