# news_ingest/services/fallbacks.py
"""
Ordered fallback chains.

Instead of nesting `a or b or c` inside business code, each chain lists its
strategies by name and evaluates them in order, stopping at the first one
that yields a usable value. The winning strategy name is returned so callers
(and tests) can see which rule applied.
"""

import logging
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, Generic, TypeVar

logger = logging.getLogger(__name__)

S = TypeVar("S")
R = TypeVar("R")


@dataclass(frozen=True)
class Strategy(Generic[S, R]):
    """One named lookup step."""

    name: str
    resolve: Callable[[S], R | None]


@dataclass(frozen=True)
class Resolution(Generic[R]):
    value: R
    strategy: str


def _is_usable(value: Any) -> bool:
    if value is None:
        return False
    if isinstance(value, str):
        return bool(value.strip())
    if isinstance(value, (list, tuple, set, dict)):
        return bool(value)
    return True


class FallbackChain(Generic[S, R]):
    """
    Evaluate strategies in sequence with early exit.

    Usage:
        chain = FallbackChain("title", [
            Strategy("title", lambda item: item.title),
            Strategy("seo_title", lambda item: item.seo_title),
        ], default="Untitled")
        chain.resolve(item).value
    """

    def __init__(self, name: str, strategies: list[Strategy[S, R]], default: R):
        self.name = name
        self.strategies = list(strategies)
        self.default = default

    @property
    def order(self) -> list[str]:
        return [s.name for s in self.strategies]

    def resolve(self, subject: S) -> Resolution[R]:
        for strategy in self.strategies:
            try:
                value = strategy.resolve(subject)
            except (ValueError, TypeError, AttributeError, IndexError) as e:
                logger.debug(f"{self.name}: strategy {strategy.name} raised {e}, trying next")
                continue
            if _is_usable(value):
                return Resolution(value=value, strategy=strategy.name)
        return Resolution(value=self.default, strategy="default")

    def __call__(self, subject: S) -> R:
        return self.resolve(subject).value
