"""
Metrics collection for Viewkeeper.

Provides a unified interface for metrics collection, supporting:
- Null/Log-based implementation (default)
- In-memory counting implementation (tests, CLI summaries)
- Custom implementations via set_metrics_provider()

Metrics tracked:
- viewkeeper.events.applied (counter): Events written to the view
- viewkeeper.events.duplicates (counter): Redelivered events (dedup)
- viewkeeper.events.out_of_order (counter): Stale events skipped
- viewkeeper.events.gaps (counter): Events stashed behind a gap
- viewkeeper.events.dead_lettered (counter): Events sent to the dead-letter sink
- viewkeeper.store.conflicts (counter): Conditional write conflicts
- viewkeeper.store.unavailable (counter): Storage outages observed
- viewkeeper.partition.lag (gauge): end offset minus committed offset
- viewkeeper.event.duration_seconds (histogram): Per-record processing time
"""

from __future__ import annotations

import logging
import os
import threading
import time
from abc import ABC, abstractmethod
from collections import defaultdict
from typing import Any

logger = logging.getLogger(__name__)

EVENTS_APPLIED = "viewkeeper.events.applied"
EVENTS_DUPLICATES = "viewkeeper.events.duplicates"
EVENTS_OUT_OF_ORDER = "viewkeeper.events.out_of_order"
EVENTS_GAPS = "viewkeeper.events.gaps"
EVENTS_DEAD_LETTERED = "viewkeeper.events.dead_lettered"
STORE_CONFLICTS = "viewkeeper.store.conflicts"
STORE_UNAVAILABLE = "viewkeeper.store.unavailable"
PARTITION_LAG = "viewkeeper.partition.lag"
EVENT_DURATION = "viewkeeper.event.duration_seconds"


class MetricsProvider(ABC):
    """Abstract base class for metrics providers."""

    @abstractmethod
    def increment(self, name: str, value: float = 1.0, tags: dict[str, str] | None = None) -> None:
        """Increment a counter."""
        pass

    @abstractmethod
    def gauge(self, name: str, value: float, tags: dict[str, str] | None = None) -> None:
        """Set a gauge value."""
        pass

    @abstractmethod
    def histogram(self, name: str, value: float, tags: dict[str, str] | None = None) -> None:
        """Record a value in a histogram."""
        pass


class LogMetricsProvider(MetricsProvider):
    """Simple provider that logs metrics (useful for development/debugging)."""

    def increment(self, name: str, value: float = 1.0, tags: dict[str, str] | None = None) -> None:
        logger.debug("METRIC INC %s: %s tags=%s", name, value, tags)

    def gauge(self, name: str, value: float, tags: dict[str, str] | None = None) -> None:
        logger.debug("METRIC GAUGE %s: %s tags=%s", name, value, tags)

    def histogram(self, name: str, value: float, tags: dict[str, str] | None = None) -> None:
        logger.debug("METRIC HIST %s: %s tags=%s", name, value, tags)


class NoOpMetricsProvider(MetricsProvider):
    """Provider that does nothing."""

    def increment(self, name: str, value: float = 1.0, tags: dict[str, str] | None = None) -> None:
        pass

    def gauge(self, name: str, value: float, tags: dict[str, str] | None = None) -> None:
        pass

    def histogram(self, name: str, value: float, tags: dict[str, str] | None = None) -> None:
        pass


class CountingMetricsProvider(MetricsProvider):
    """Thread-safe provider that keeps counters and last gauge values in memory.

    Counters are aggregated across tags; use ``counter(name, **tags)`` to
    read a single tagged series.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._counters: dict[tuple[str, tuple[tuple[str, str], ...]], float] = defaultdict(float)
        self._gauges: dict[tuple[str, tuple[tuple[str, str], ...]], float] = {}
        self._histograms: dict[str, list[float]] = defaultdict(list)

    @staticmethod
    def _key(name: str, tags: dict[str, str] | None) -> tuple[str, tuple[tuple[str, str], ...]]:
        return name, tuple(sorted((tags or {}).items()))

    def increment(self, name: str, value: float = 1.0, tags: dict[str, str] | None = None) -> None:
        with self._lock:
            self._counters[self._key(name, tags)] += value

    def gauge(self, name: str, value: float, tags: dict[str, str] | None = None) -> None:
        with self._lock:
            self._gauges[self._key(name, tags)] = value

    def histogram(self, name: str, value: float, tags: dict[str, str] | None = None) -> None:
        with self._lock:
            self._histograms[name].append(value)

    def counter(self, name: str, **tags: Any) -> float:
        """Sum of a counter over every series whose tags include ``tags``."""
        wanted = {k: str(v) for k, v in tags.items()}
        with self._lock:
            return sum(
                value
                for (metric, series), value in self._counters.items()
                if metric == name and wanted.items() <= dict(series).items()
            )

    def gauge_value(self, name: str, **tags: Any) -> float | None:
        key = self._key(name, {k: str(v) for k, v in tags.items()})
        with self._lock:
            return self._gauges.get(key)

    def observations(self, name: str) -> list[float]:
        with self._lock:
            return list(self._histograms[name])


# Global provider instance
_provider: MetricsProvider = NoOpMetricsProvider()


def get_metrics() -> MetricsProvider:
    """Get the current metrics provider."""
    return _provider


def set_metrics_provider(provider: MetricsProvider) -> None:
    """Set the metrics provider."""
    global _provider
    _provider = provider


def configure_metrics() -> None:
    """Auto-configure metrics.

    Uses LogMetricsProvider if VIEWKEEPER_LOG_METRICS is set,
    otherwise leaves the NoOpMetricsProvider in place.
    """
    if os.environ.get("VIEWKEEPER_LOG_METRICS"):
        set_metrics_provider(LogMetricsProvider())
        logger.info("Using LogMetricsProvider")


class Timer:
    """Context manager recording the duration of a block into a histogram."""

    def __init__(self, provider: MetricsProvider, name: str, **tags: Any) -> None:
        self.provider = provider
        self.name = name
        self.tags = tags
        self.start_time: float = 0

    def __enter__(self) -> Timer:
        self.start_time = time.perf_counter()
        return self

    def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        duration = time.perf_counter() - self.start_time
        self.tags["status"] = "failed" if exc_type else "success"
        self.provider.histogram(self.name, duration, {k: str(v) for k, v in self.tags.items()})
