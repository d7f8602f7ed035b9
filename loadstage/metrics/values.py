"""
Thread-safe metric aggregators.

- CounterValue: Running total (requests, bytes)
- RateValue: Fraction of non-zero observations (failures, checks)
- GaugeValue: Last value with min/max (active virtual users)
- TrendValue: Distribution with avg/min/max/percentiles

Every aggregator owns its lock, so concurrent writers to different metrics
never contend with each other.
"""
from __future__ import annotations

import math
import threading
from bisect import bisect_left
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence, Tuple

DEFAULT_PERCENTILES: Tuple[float, ...] = (90.0, 95.0, 99.0)

# Trend keeps exact samples up to this many observations.
DEFAULT_MAX_SAMPLES = 100_000


def _log_buckets(start: float, stop: float, growth: float) -> Tuple[float, ...]:
    bounds = []
    bound = start
    while bound < stop:
        bounds.append(round(bound, 6))
        bound *= growth
    bounds.append(stop)
    return tuple(bounds)


# 1us .. 1h in milliseconds, ~5% relative error per bucket.
DEFAULT_TREND_BUCKETS = _log_buckets(0.001, 3_600_000.0, 1.05)


def percentile_key(p: float) -> str:
    """Selector key for a percentile: 95 -> "p(95)", 99.9 -> "p(99.9)"."""
    return f"p({p:g})"


@dataclass
class CounterValue:
    """Thread-safe counter."""
    value: float = 0.0
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    def add(self, amount: float = 1.0) -> None:
        with self._lock:
            self.value += amount

    def get(self) -> float:
        with self._lock:
            return self.value

    def summary(self, elapsed_seconds: float) -> Dict[str, float]:
        count = self.get()
        rate = count / elapsed_seconds if elapsed_seconds > 0 else 0.0
        return {"count": count, "rate": rate}


@dataclass
class RateValue:
    """Thread-safe rate: any non-zero observation counts as a pass."""
    passes: int = 0
    total: int = 0
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    def add(self, value: float) -> None:
        with self._lock:
            self.total += 1
            if value:
                self.passes += 1

    def summary(self) -> Dict[str, float]:
        with self._lock:
            passes, total = self.passes, self.total
        return {
            "rate": passes / total if total else 0.0,
            "passes": float(passes),
            "fails": float(total - passes),
            "total": float(total),
        }


@dataclass
class GaugeValue:
    """Thread-safe gauge that remembers its extremes."""
    value: float = 0.0
    min: Optional[float] = None
    max: Optional[float] = None
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    def set(self, value: float) -> None:
        with self._lock:
            self.value = value
            self.min = value if self.min is None else min(self.min, value)
            self.max = value if self.max is None else max(self.max, value)

    def get(self) -> float:
        with self._lock:
            return self.value

    def summary(self) -> Dict[str, float]:
        with self._lock:
            return {
                "value": self.value,
                "min": self.min if self.min is not None else 0.0,
                "max": self.max if self.max is not None else 0.0,
            }


class TrendValue:
    """
    Thread-safe distribution of numeric samples.

    Percentiles are exact (linear interpolation between closest ranks over
    the sorted samples) while at most max_samples observations were made.
    Past that point the sample buffer is released and percentiles are
    estimated from a fixed log-spaced histogram, clamped to [min, max].
    """

    def __init__(
        self,
        max_samples: int = DEFAULT_MAX_SAMPLES,
        buckets: Tuple[float, ...] = DEFAULT_TREND_BUCKETS,
    ) -> None:
        self._max_samples = max_samples
        self._buckets = tuple(sorted(buckets)) + (float("inf"),)
        self._counts = [0] * len(self._buckets)
        self._samples: Optional[List[float]] = []
        self._sum = 0.0
        self._count = 0
        self._min = math.inf
        self._max = -math.inf
        self._lock = threading.Lock()

    def add(self, value: float) -> None:
        with self._lock:
            self._sum += value
            self._count += 1
            if value < self._min:
                self._min = value
            if value > self._max:
                self._max = value
            self._counts[bisect_left(self._buckets, value)] += 1
            if self._samples is not None:
                if len(self._samples) < self._max_samples:
                    self._samples.append(value)
                else:
                    self._samples = None

    @property
    def count(self) -> int:
        with self._lock:
            return self._count

    @property
    def approximate(self) -> bool:
        with self._lock:
            return self._samples is None

    def percentile(self, p: float) -> float:
        """Value at percentile p (0-100). 0.0 when empty."""
        with self._lock:
            if self._count == 0:
                return 0.0
            if self._samples is not None:
                return _interpolate(sorted(self._samples), p)
            return self._histogram_percentile(p)

    def _histogram_percentile(self, p: float) -> float:
        if p <= 0:
            return self._min
        if p >= 100:
            return self._max

        target = self._count * (p / 100.0)
        cumulative = 0
        for i, bound in enumerate(self._buckets):
            in_bucket = self._counts[i]
            cumulative += in_bucket
            if in_bucket and cumulative >= target:
                lower = self._buckets[i - 1] if i > 0 else self._min
                upper = bound if bound != float("inf") else self._max
                ratio = (target - (cumulative - in_bucket)) / in_bucket
                estimate = lower + ratio * (upper - lower)
                return min(max(estimate, self._min), self._max)
        return self._max

    def summary(self, percentiles: Sequence[float] = DEFAULT_PERCENTILES) -> Dict[str, float]:
        with self._lock:
            count = self._count
            if count == 0:
                values = {"count": 0.0, "avg": 0.0, "min": 0.0, "max": 0.0, "med": 0.0}
                for p in percentiles:
                    values[percentile_key(p)] = 0.0
                return values

            ordered = sorted(self._samples) if self._samples is not None else None

            def at(p: float) -> float:
                if ordered is not None:
                    return _interpolate(ordered, p)
                return self._histogram_percentile(p)

            values = {
                "count": float(count),
                "avg": self._sum / count,
                "min": self._min,
                "max": self._max,
                "med": at(50.0),
            }
            for p in percentiles:
                values[percentile_key(p)] = at(p)
            return values


def _interpolate(ordered: Sequence[float], p: float) -> float:
    if len(ordered) == 1:
        return ordered[0]
    rank = (min(max(p, 0.0), 100.0) / 100.0) * (len(ordered) - 1)
    lo = math.floor(rank)
    hi = math.ceil(rank)
    if lo == hi:
        return ordered[lo]
    return ordered[lo] + (ordered[hi] - ordered[lo]) * (rank - lo)
