# news_ingest/context.py
"""
Run context passed explicitly to every pipeline component.

Holds the structured logger, the metrics sink, the cancellation token and
the trace id of one run, so tests (and concurrent runs) never share state
through module globals.
"""

import uuid
from dataclasses import dataclass, field

from news_ingest.logging_config import MetricsSink, PipelineLogger
from news_ingest.services.resilience import CancelToken


@dataclass
class PipelineContext:
    """Everything a component needs to report on and abort a run."""

    logger: PipelineLogger = field(default_factory=PipelineLogger)
    metrics: MetricsSink = field(default_factory=MetricsSink)
    cancel: CancelToken = field(default_factory=CancelToken)
    trace_id: str = field(default_factory=lambda: str(uuid.uuid4()))

    @classmethod
    def create(cls, name: str = "news_ingest.pipeline", deadline_seconds: float | None = None) -> "PipelineContext":
        trace_id = str(uuid.uuid4())
        return cls(
            logger=PipelineLogger(name, trace_id=trace_id),
            metrics=MetricsSink(),
            cancel=CancelToken(deadline_seconds=deadline_seconds),
            trace_id=trace_id,
        )

    def child(self, component: str) -> "PipelineContext":
        """Same run, logger namespaced for a component."""
        return PipelineContext(
            logger=PipelineLogger(f"{self.logger.name}.{component}", trace_id=self.trace_id),
            metrics=self.metrics,
            cancel=self.cancel,
            trace_id=self.trace_id,
        )
