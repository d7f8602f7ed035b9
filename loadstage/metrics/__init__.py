"""
Streaming metrics for load runs.

Provides:
- CounterValue / RateValue / GaugeValue / TrendValue: thread-safe aggregators
- MetricRegistry: per-run set of named metrics with kind checking
- Prometheus text export

Usage:
    from loadstage.metrics import MetricRegistry
    from loadstage.models import MetricKind

    registry = MetricRegistry()
    registry.record("http_req_duration", MetricKind.TREND, 51.2)
    stats = registry.snapshot(elapsed_seconds=40.0)
    print(stats["http_req_duration"].values["p(95)"])
"""

from loadstage.metrics.registry import (
    BUILTIN_METRICS,
    MetricRegistry,
    Observation,
)
from loadstage.metrics.values import (
    CounterValue,
    GaugeValue,
    RateValue,
    TrendValue,
    percentile_key,
)

__all__ = [
    "BUILTIN_METRICS",
    "CounterValue",
    "GaugeValue",
    "MetricRegistry",
    "Observation",
    "RateValue",
    "TrendValue",
    "percentile_key",
]
