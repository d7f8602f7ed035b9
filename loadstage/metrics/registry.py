"""
MetricRegistry: owns every metric of a run.

Thread-safe, in-memory. Metrics are created lazily on first observation;
the kind is fixed at creation and a conflicting kind is a configuration
error. The registry lock only guards the name -> metric map; aggregation
happens under each metric's own lock.
"""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass, field
from typing import Dict, Iterable, Optional, Sequence, Tuple, Union

from loadstage.exceptions import ConfigurationError
from loadstage.metrics.values import (
    DEFAULT_MAX_SAMPLES,
    DEFAULT_PERCENTILES,
    CounterValue,
    GaugeValue,
    RateValue,
    TrendValue,
)
from loadstage.models import MetricKind, MetricSnapshot

Aggregator = Union[CounterValue, RateValue, GaugeValue, TrendValue]

# Built-in metric names and their kinds.
HTTP_REQS = "http_reqs"
HTTP_REQ_DURATION = "http_req_duration"
HTTP_REQ_FAILED = "http_req_failed"
HTTP_REQ_BLOCKED = "http_req_blocked"
HTTP_REQ_CONNECTING = "http_req_connecting"
HTTP_REQ_TLS_HANDSHAKING = "http_req_tls_handshaking"
HTTP_REQ_SENDING = "http_req_sending"
HTTP_REQ_WAITING = "http_req_waiting"
HTTP_REQ_RECEIVING = "http_req_receiving"
DATA_RECEIVED = "data_received"
DATA_SENT = "data_sent"
ITERATIONS = "iterations"
ITERATION_DURATION = "iteration_duration"
ITERATION_FAILURES = "iteration_failures"
CHECKS = "checks"
VUS = "vus"
VUS_MAX = "vus_max"

BUILTIN_METRICS: Dict[str, MetricKind] = {
    HTTP_REQS: MetricKind.COUNTER,
    HTTP_REQ_DURATION: MetricKind.TREND,
    HTTP_REQ_FAILED: MetricKind.RATE,
    HTTP_REQ_BLOCKED: MetricKind.TREND,
    HTTP_REQ_CONNECTING: MetricKind.TREND,
    HTTP_REQ_TLS_HANDSHAKING: MetricKind.TREND,
    HTTP_REQ_SENDING: MetricKind.TREND,
    HTTP_REQ_WAITING: MetricKind.TREND,
    HTTP_REQ_RECEIVING: MetricKind.TREND,
    DATA_RECEIVED: MetricKind.COUNTER,
    DATA_SENT: MetricKind.COUNTER,
    ITERATIONS: MetricKind.COUNTER,
    ITERATION_DURATION: MetricKind.TREND,
    ITERATION_FAILURES: MetricKind.COUNTER,
    CHECKS: MetricKind.RATE,
    VUS: MetricKind.GAUGE,
    VUS_MAX: MetricKind.GAUGE,
}


@dataclass(frozen=True)
class Observation:
    """One measurement on its way into the registry."""

    metric_name: str
    kind: MetricKind
    value: float
    timestamp: float = field(default_factory=time.time)


@dataclass
class _Metric:
    name: str
    kind: MetricKind
    aggregator: Aggregator


class MetricRegistry:
    """
    Collects every metric of a run.

    Example:
        registry = MetricRegistry()
        registry.record("http_reqs", MetricKind.COUNTER, 1)
        registry.record("http_req_duration", MetricKind.TREND, 42.0)
        metrics = registry.snapshot(elapsed_seconds=10.0)
        print(metrics["http_req_duration"].values["p(95)"])
    """

    def __init__(
        self,
        *,
        max_samples: int = DEFAULT_MAX_SAMPLES,
        percentiles: Iterable[float] = DEFAULT_PERCENTILES,
        register_builtins: bool = True,
    ) -> None:
        self._max_samples = max_samples
        self._percentiles: Tuple[float, ...] = tuple(sorted(set(percentiles)))
        self._metrics: Dict[str, _Metric] = {}
        self._lock = threading.Lock()
        if register_builtins:
            for name, kind in BUILTIN_METRICS.items():
                self.register(name, kind)

    def _new_aggregator(self, kind: MetricKind) -> Aggregator:
        if kind is MetricKind.COUNTER:
            return CounterValue()
        if kind is MetricKind.RATE:
            return RateValue()
        if kind is MetricKind.GAUGE:
            return GaugeValue()
        return TrendValue(max_samples=self._max_samples)

    def register(self, name: str, kind: MetricKind) -> Aggregator:
        """Get or create the metric; raises ConfigurationError on a kind conflict."""
        kind = MetricKind(kind)
        with self._lock:
            metric = self._metrics.get(name)
            if metric is None:
                metric = _Metric(name=name, kind=kind, aggregator=self._new_aggregator(kind))
                self._metrics[name] = metric
        if metric.kind is not kind:
            raise ConfigurationError(
                f"Metric '{name}' is a {metric.kind.value}, cannot record it as a {kind.value}",
                code="metric_kind_conflict",
                details={"metric": name, "kind": metric.kind.value, "requested": kind.value},
            )
        return metric.aggregator

    def record(self, name: str, kind: MetricKind, value: float) -> None:
        """Fold one value into the named metric."""
        aggregator = self.register(name, kind)
        if isinstance(aggregator, GaugeValue):
            aggregator.set(value)
        else:
            aggregator.add(value)

    def observe(self, observation: Observation) -> None:
        self.record(observation.metric_name, observation.kind, observation.value)

    def add_percentiles(self, percentiles: Iterable[float]) -> None:
        """Extra percentiles to report for every Trend (e.g. from thresholds)."""
        with self._lock:
            self._percentiles = tuple(sorted(set(self._percentiles) | set(percentiles)))

    @property
    def percentiles(self) -> Tuple[float, ...]:
        return self._percentiles

    def kind_of(self, name: str) -> Optional[MetricKind]:
        with self._lock:
            metric = self._metrics.get(name)
        return metric.kind if metric else None

    def names(self) -> Sequence[str]:
        with self._lock:
            return sorted(self._metrics)

    def snapshot(self, elapsed_seconds: float = 0.0) -> Dict[str, MetricSnapshot]:
        """
        Point-in-time view of every metric.

        Consistent per metric. A fully consistent view across metrics is only
        guaranteed once no virtual user is running.
        """
        with self._lock:
            metrics = list(self._metrics.values())
            percentiles = self._percentiles

        result: Dict[str, MetricSnapshot] = {}
        for metric in sorted(metrics, key=lambda m: m.name):
            aggregator = metric.aggregator
            approximate = False
            if isinstance(aggregator, CounterValue):
                values = aggregator.summary(elapsed_seconds)
            elif isinstance(aggregator, TrendValue):
                values = aggregator.summary(percentiles)
                approximate = aggregator.approximate
            else:
                values = aggregator.summary()
            result[metric.name] = MetricSnapshot(
                name=metric.name,
                kind=metric.kind,
                values=values,
                approximate=approximate,
            )
        return result

    def prometheus_format(self, elapsed_seconds: float = 0.0, prefix: str = "loadstage") -> str:
        """
        Export the current snapshot in Prometheus text exposition format.

        Trends are exported as summaries (quantiles, sum, count).
        """
        lines = []
        for name, snap in self.snapshot(elapsed_seconds).items():
            metric = f"{prefix}_{name}"
            values = snap.values
            if snap.kind is MetricKind.COUNTER:
                lines.append(f"# TYPE {metric}_total counter")
                lines.append(f"{metric}_total {values['count']}")
            elif snap.kind is MetricKind.RATE:
                lines.append(f"# TYPE {metric} gauge")
                lines.append(f"{metric} {values['rate']}")
                lines.append(f"# TYPE {metric}_total counter")
                lines.append(f"{metric}_total {values['total']}")
            elif snap.kind is MetricKind.GAUGE:
                lines.append(f"# TYPE {metric} gauge")
                lines.append(f"{metric} {values['value']}")
            else:
                lines.append(f"# TYPE {metric} summary")
                lines.append(f'{metric}{{quantile="0.5"}} {values["med"]}')
                for key, value in values.items():
                    if key.startswith("p("):
                        quantile = float(key[2:-1]) / 100.0
                        lines.append(f'{metric}{{quantile="{quantile:g}"}} {value}')
                lines.append(f"{metric}_sum {values['avg'] * values['count']}")
                lines.append(f"{metric}_count {values['count']}")
            lines.append("")
        return "\n".join(lines)
