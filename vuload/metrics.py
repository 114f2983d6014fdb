"""
Load Test Metrics Collection

Collects samples emitted by virtual users during a run:
- Thread-safe, append-only stream keyed by metric name
- Optional ring-buffer retention per metric
- Immutable snapshots with percentile, rate and summary statistics
"""

from __future__ import annotations

import math
import statistics
import threading
import time
from collections import deque
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any

# Built-in metric names
ITERATION_DURATION = "iteration_duration"
CHECKS = "checks"
HTTP_REQ_DURATION = "http_req_duration"
HTTP_REQ_FAILED = "http_req_failed"


@dataclass(frozen=True)
class Sample:
    """One recorded measurement."""

    metric: str
    value: float
    timestamp: float = field(default_factory=time.time)
    failed: bool = False
    tags: Mapping[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        """Export sample as dictionary."""
        return {
            "metric": self.metric,
            "value": self.value,
            "timestamp": self.timestamp,
            "failed": self.failed,
            "tags": dict(self.tags),
        }


def percentile(sorted_values: list[float] | tuple[float, ...], p: float) -> float:
    """
    Compute a percentile (0-100) with linear interpolation between closest ranks.

    The rank is ``k = (n - 1) * p / 100``; the result interpolates between
    the values at ``floor(k)`` and ``ceil(k)``.

    Args:
        sorted_values: Values in ascending order
        p: Percentile (e.g., 50 for median, 95 for p95)

    Returns:
        Value at percentile, 0.0 for an empty input
    """
    if not sorted_values:
        return 0.0

    k = (len(sorted_values) - 1) * (p / 100)
    f = math.floor(k)
    c = min(f + 1, len(sorted_values) - 1)

    if f == c:
        return float(sorted_values[f])

    return sorted_values[f] * (c - k) + sorted_values[c] * (k - f)


class MetricSnapshot:
    """
    Read-only view of one metric's retained samples.

    Usage:
        snap = stream.snapshot("http_req_duration")
        print(snap.count, snap.percentile(95), snap.rate)
    """

    def __init__(self, metric: str, samples: tuple[Sample, ...]) -> None:
        self.metric = metric
        self.samples = samples
        self._sorted: tuple[float, ...] | None = None

    def _sorted_values(self) -> tuple[float, ...]:
        if self._sorted is None:
            self._sorted = tuple(sorted(s.value for s in self.samples))
        return self._sorted

    @property
    def values(self) -> tuple[float, ...]:
        """Sample values in recording order."""
        return tuple(s.value for s in self.samples)

    @property
    def count(self) -> int:
        """Number of retained samples."""
        return len(self.samples)

    @property
    def failures(self) -> int:
        """Number of samples with a failed outcome."""
        return sum(1 for s in self.samples if s.failed)

    @property
    def rate(self) -> float:
        """Failed fraction (0-1); 0.0 when there are no samples."""
        return self.failures / self.count if self.samples else 0.0

    @property
    def mean(self) -> float:
        return statistics.fmean(self.values) if self.samples else 0.0

    @property
    def min(self) -> float:
        return self._sorted_values()[0] if self.samples else 0.0

    @property
    def max(self) -> float:
        return self._sorted_values()[-1] if self.samples else 0.0

    @property
    def median(self) -> float:
        return self.percentile(50)

    def percentile(self, p: float) -> float:
        """Percentile over retained samples (see :func:`percentile`)."""
        return percentile(self._sorted_values(), p)

    def to_dict(self) -> dict[str, Any]:
        """Export aggregate statistics as dictionary."""
        return {
            "count": self.count,
            "failures": self.failures,
            "rate": round(self.rate, 6),
            "avg": round(self.mean, 2),
            "min": round(self.min, 2),
            "med": round(self.median, 2),
            "max": round(self.max, 2),
            "p90": round(self.percentile(90), 2),
            "p95": round(self.percentile(95), 2),
            "p99": round(self.percentile(99), 2),
        }

    def __len__(self) -> int:
        return len(self.samples)

    def __repr__(self) -> str:
        return f"MetricSnapshot(metric={self.metric!r}, count={self.count})"


class _Series:
    """Per-metric storage. Only touched while the stream lock is held."""

    __slots__ = ("samples", "dropped")

    def __init__(self, retention: int | None) -> None:
        self.samples: deque[Sample] = deque(maxlen=retention)
        self.dropped = 0


class MetricStream:
    """
    Thread-safe accumulator of samples for the duration of a run.

    Workers commit one iteration's samples with a single ``record_many``
    call, so the lock is taken once per iteration and evaluators never
    observe a partially recorded iteration.

    Args:
        retention: Max samples kept per metric; None keeps everything.
            When bounded, the oldest samples are evicted first.
    """

    def __init__(self, retention: int | None = None) -> None:
        if retention is not None and retention <= 0:
            raise ValueError("retention must be a positive integer or None")
        self.retention = retention
        self._series: dict[str, _Series] = {}
        self._lock = threading.Lock()
        self._total = 0

    def record(self, sample: Sample) -> None:
        """Append one sample."""
        self.record_many((sample,))

    def record_many(self, samples: Iterable[Sample]) -> None:
        """Append a group of samples atomically."""
        batch = tuple(samples)
        if not batch:
            return

        with self._lock:
            for sample in batch:
                series = self._series.get(sample.metric)
                if series is None:
                    series = self._series[sample.metric] = _Series(self.retention)
                if self.retention is not None and len(series.samples) == self.retention:
                    series.dropped += 1
                series.samples.append(sample)
            self._total += len(batch)

    def snapshot(self, metric: str) -> MetricSnapshot:
        """Immutable view of the retained samples for ``metric``."""
        with self._lock:
            series = self._series.get(metric)
            samples = tuple(series.samples) if series else ()
        return MetricSnapshot(metric, samples)

    def metrics(self) -> list[str]:
        """Names of all metrics that have received samples."""
        with self._lock:
            return sorted(self._series)

    def dropped(self, metric: str) -> int:
        """Samples evicted from ``metric`` by the retention window."""
        with self._lock:
            series = self._series.get(metric)
            return series.dropped if series else 0

    @property
    def total_recorded(self) -> int:
        """All samples ever recorded, including evicted ones."""
        with self._lock:
            return self._total

    def summary(self) -> Mapping[str, dict[str, Any]]:
        """Per-metric aggregate statistics."""
        return MappingProxyType({name: self.snapshot(name).to_dict() for name in self.metrics()})

    def clear(self) -> None:
        """Drop all samples (run teardown)."""
        with self._lock:
            self._series.clear()
            self._total = 0
