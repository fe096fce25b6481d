"""Lightweight duration metrics for webhook processing.

PerformanceMonitor is constructed and owned by whoever needs it (the app,
a test) and passed in explicitly. timed() wraps a unit of work instead of
decorating a method, so nothing inspects the caller.
"""

from __future__ import annotations

import functools
import logging
import math
import time
from collections import deque
from dataclasses import asdict, dataclass
from typing import Any, Awaitable, Callable, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class MetricSummary:
    """Summary statistics for one label, in milliseconds."""

    count: int
    avg: float
    min: float
    max: float
    p95: float

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


class PerformanceMonitor:
    """Keeps the most recent durations per label.

    Capped at ``window`` values per label for memory safety.
    """

    def __init__(self, window: int = 100) -> None:
        if window < 1:
            raise ValueError(f"window must be >= 1, got {window}")
        self.window = window
        self._metrics: dict[str, deque[float]] = {}

    def start_timer(self, label: str) -> Callable[[], float]:
        """Start timing ``label``. Call the returned function to stop and record."""
        start = time.perf_counter()

        def stop() -> float:
            duration_ms = (time.perf_counter() - start) * 1000
            self.record_metric(label, duration_ms)
            return duration_ms

        return stop

    def record_metric(self, label: str, value: float) -> None:
        """Record one measurement."""
        values = self._metrics.get(label)
        if values is None:
            values = self._metrics[label] = deque(maxlen=self.window)
        values.append(value)

    def get_metrics(self, label: str) -> MetricSummary | None:
        """Summary for ``label``, or None if nothing was recorded."""
        values = self._metrics.get(label)
        if not values:
            return None

        ordered = sorted(values)
        count = len(ordered)
        return MetricSummary(
            count=count,
            avg=sum(ordered) / count,
            min=ordered[0],
            max=ordered[-1],
            p95=ordered[min(math.floor(count * 0.95), count - 1)],
        )

    def get_all_metrics(self) -> dict[str, dict[str, Any]]:
        """Summaries for every recorded label."""
        result: dict[str, dict[str, Any]] = {}
        for label in self._metrics:
            summary = self.get_metrics(label)
            if summary is not None:
                result[label] = summary.to_dict()
        return result

    def clear(self) -> None:
        self._metrics.clear()


def timed(
    work: Callable[[], Awaitable[T]],
    label: str,
    monitor: PerformanceMonitor,
) -> Callable[[], Awaitable[T]]:
    """Return ``work`` wrapped so every call's duration is recorded under ``label``.

    Failed calls are recorded too; their exception propagates unchanged.
    """

    @functools.wraps(work)
    async def wrapper() -> T:
        stop = monitor.start_timer(label)
        try:
            return await work()
        finally:
            duration_ms = stop()
            logger.debug("%s took %.1fms", label, duration_ms)

    return wrapper
