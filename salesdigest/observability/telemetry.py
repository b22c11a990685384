"""
In-process telemetry for digest runs.

Events are structured log lines; counters and latency samples stay in a
process-local registry that worker threads share.  Nothing is exported to a
metrics backend, so a run summary (and the tests) read values back directly.
"""

from __future__ import annotations

import contextlib
import logging
import threading
import time
from collections import defaultdict
from collections.abc import Iterator
from typing import Any

logger = logging.getLogger("salesdigest.telemetry")

_EMPTY_STATS = {"count": 0, "min": 0.0, "max": 0.0, "avg": 0.0, "p50": 0.0, "p95": 0.0}


def _metric_key(name: str) -> str:
    """`.latency` metrics are stored with an `_ms` suffix; other names are kept."""
    return f"{name}_ms" if name.endswith(".latency") else name


def _percentile(ordered: list[float], fraction: float) -> float:
    return ordered[min(int(len(ordered) * fraction), len(ordered) - 1)]


class _Registry:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._counters: defaultdict[str, int] = defaultdict(int)
        self._samples: defaultdict[str, list[float]] = defaultdict(list)

    def bump(self, name: str, increment: int) -> int:
        with self._lock:
            self._counters[name] += increment
            return self._counters[name]

    def read(self, name: str) -> int:
        with self._lock:
            return self._counters.get(name, 0)

    def observe(self, name: str, seconds: float) -> None:
        with self._lock:
            self._samples[name].append(seconds)

    def ordered_samples(self, name: str) -> list[float]:
        with self._lock:
            return sorted(self._samples.get(name, ()))

    def clear(self) -> None:
        with self._lock:
            self._counters.clear()
            self._samples.clear()


_registry = _Registry()


def log_event(event_name: str, **fields: Any) -> None:
    """Structured info-level event. Callers pass identifiers and counts, never article text."""
    logger.info("event=%s %s", event_name, fields)


def counter(name: str, increment: int = 1) -> int:
    """Add ``increment`` to a counter and return the new value (``increment=0`` reads it)."""
    value = _registry.bump(name, increment)
    logger.debug("counter=%s value=%s", name, value)
    return value


def get_counter(name: str) -> int:
    return _registry.read(name)


@contextlib.contextmanager
def time_block(metric_name: str) -> Iterator[None]:
    """
    Time the enclosed block, including blocks that raise.

    Side Effects:
        - Records one latency sample under the metric
        - Writes to logger (debug level)
    """
    key = _metric_key(metric_name)
    start = time.perf_counter()
    try:
        yield
    finally:
        elapsed = time.perf_counter() - start
        _registry.observe(key, elapsed)
        logger.debug("timing=%s seconds=%.6f", key, elapsed)


def get_p95(metric_name: str) -> float:
    """P95 latency in seconds; 0.0 when nothing was recorded."""
    samples = _registry.ordered_samples(_metric_key(metric_name))
    return _percentile(samples, 0.95) if samples else 0.0


def get_latency_stats(metric_name: str) -> dict[str, float]:
    samples = _registry.ordered_samples(_metric_key(metric_name))
    if not samples:
        return dict(_EMPTY_STATS)
    return {
        "count": len(samples),
        "min": samples[0],
        "max": samples[-1],
        "avg": sum(samples) / len(samples),
        "p50": _percentile(samples, 0.50),
        "p95": _percentile(samples, 0.95),
    }


def reset() -> None:
    """Drop every counter and latency sample (used between tests)."""
    _registry.clear()
