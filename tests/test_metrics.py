"""Tests for metric aggregation: counters, rates, trends and the registry."""

import random
import threading

import pytest

from loadstage.exceptions import ConfigurationError
from loadstage.metrics import MetricRegistry, Observation, RateValue, TrendValue, percentile_key
from loadstage.metrics.values import CounterValue, GaugeValue
from loadstage.models import MetricKind


class TestCounterValue:
    def test_sum_and_rate(self):
        counter = CounterValue()
        counter.add()
        counter.add(4)
        assert counter.summary(elapsed_seconds=2.0) == {"count": 5.0, "rate": 2.5}

    def test_rate_without_elapsed_time(self):
        counter = CounterValue()
        counter.add(3)
        assert counter.summary(elapsed_seconds=0.0)["rate"] == 0.0


class TestRateValue:
    def test_empty_rate_is_zero(self):
        values = RateValue().summary()
        assert values["rate"] == 0.0
        assert values["total"] == 0.0

    def test_fraction_of_non_zero(self):
        rate = RateValue()
        for value in [1, 0, 1, 1]:
            rate.add(value)
        values = rate.summary()
        assert values["rate"] == 0.75
        assert values["passes"] == 3.0
        assert values["fails"] == 1.0


class TestGaugeValue:
    def test_tracks_extremes(self):
        gauge = GaugeValue()
        for value in [3, 7, 2]:
            gauge.set(value)
        assert gauge.summary() == {"value": 2, "min": 2, "max": 7}


class TestTrendValue:
    def test_empty_trend_reports_zeros(self):
        values = TrendValue().summary()
        assert values["count"] == 0.0
        assert values["avg"] == 0.0
        assert values["p(95)"] == 0.0

    def test_exact_linear_interpolation(self):
        trend = TrendValue()
        for value in [50, 10, 40, 20, 30]:
            trend.add(value)
        values = trend.summary((90, 95, 99))
        assert values["min"] == 10
        assert values["max"] == 50
        assert values["avg"] == 30
        assert values["med"] == 30
        assert values["p(90)"] == pytest.approx(46.0)
        assert values["p(95)"] == pytest.approx(48.0)
        assert values["p(99)"] == pytest.approx(49.6)
        assert trend.approximate is False

    def test_single_sample(self):
        trend = TrendValue()
        trend.add(42.0)
        assert trend.percentile(95) == 42.0
        assert trend.percentile(0) == 42.0

    @pytest.mark.parametrize("seed", [1, 7, 42, 1234])
    def test_percentiles_are_ordered(self, seed):
        rng = random.Random(seed)
        trend = TrendValue()
        for _ in range(500):
            trend.add(rng.expovariate(1 / 80.0))
        values = trend.summary((50, 95, 99))
        assert values["min"] <= values["p(50)"] <= values["p(95)"] <= values["p(99)"] <= values["max"]

    def test_histogram_fallback_after_max_samples(self):
        trend = TrendValue(max_samples=10)
        for value in range(1, 101):
            trend.add(float(value))
        assert trend.approximate is True
        values = trend.summary((50, 95, 99))
        assert values["count"] == 100
        assert values["min"] == 1.0
        assert values["max"] == 100.0
        assert values["avg"] == pytest.approx(50.5)
        assert abs(values["p(50)"] - 50) <= 5
        assert abs(values["p(95)"] - 95) <= 6
        assert values["min"] <= values["p(50)"] <= values["p(95)"] <= values["p(99)"] <= values["max"]

    def test_percentile_key_format(self):
        assert percentile_key(95) == "p(95)"
        assert percentile_key(99.9) == "p(99.9)"


class TestMetricRegistry:
    def test_builtins_are_pre_registered(self):
        registry = MetricRegistry()
        snapshot = registry.snapshot(elapsed_seconds=1.0)
        assert snapshot["http_reqs"].kind is MetricKind.COUNTER
        assert snapshot["http_req_failed"].values["rate"] == 0.0
        assert snapshot["http_req_duration"].values["p(95)"] == 0.0

    def test_lazy_creation(self):
        registry = MetricRegistry(register_builtins=False)
        assert registry.kind_of("custom") is None
        registry.record("custom", MetricKind.TREND, 5.0)
        assert registry.kind_of("custom") is MetricKind.TREND
        assert registry.names() == ["custom"]

    def test_kind_conflict_is_configuration_error(self):
        registry = MetricRegistry()
        with pytest.raises(ConfigurationError) as exc_info:
            registry.record("http_reqs", MetricKind.TREND, 1.0)
        assert exc_info.value.code == "metric_kind_conflict"
        assert exc_info.value.details["kind"] == "counter"

    def test_observe(self):
        registry = MetricRegistry(register_builtins=False)
        registry.observe(Observation("hits", MetricKind.COUNTER, 2))
        registry.observe(Observation("hits", MetricKind.COUNTER, 3))
        assert registry.snapshot(1.0)["hits"].values["count"] == 5

    def test_concurrent_counter_is_order_independent(self):
        registry = MetricRegistry()
        threads_count, per_thread = 8, 1000

        def worker():
            for _ in range(per_thread):
                registry.record("http_reqs", MetricKind.COUNTER, 1)
                registry.record("http_req_duration", MetricKind.TREND, 1.0)

        threads = [threading.Thread(target=worker) for _ in range(threads_count)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        snapshot = registry.snapshot(elapsed_seconds=1.0)
        assert snapshot["http_reqs"].values["count"] == threads_count * per_thread
        assert snapshot["http_req_duration"].values["count"] == threads_count * per_thread

    def test_extra_percentiles(self):
        registry = MetricRegistry(percentiles=(95,))
        registry.add_percentiles([99.9])
        registry.record("http_req_duration", MetricKind.TREND, 10.0)
        values = registry.snapshot()["http_req_duration"].values
        assert "p(95)" in values
        assert "p(99.9)" in values

    def test_snapshot_is_sorted_and_immutable(self):
        registry = MetricRegistry(register_builtins=False)
        registry.record("b", MetricKind.RATE, 1)
        registry.record("a", MetricKind.RATE, 0)
        snapshot = registry.snapshot()
        assert list(snapshot) == ["a", "b"]
        with pytest.raises(Exception):
            snapshot["a"].name = "c"

    def test_prometheus_format(self):
        registry = MetricRegistry()
        for _ in range(3):
            registry.record("http_reqs", MetricKind.COUNTER, 1)
        registry.record("http_req_duration", MetricKind.TREND, 12.0)
        text = registry.prometheus_format(elapsed_seconds=1.0)
        assert "# TYPE loadstage_http_reqs_total counter" in text
        assert "loadstage_http_reqs_total 3" in text
        assert 'loadstage_http_req_duration{quantile="0.95"} 12.0' in text
        assert "loadstage_http_req_duration_count 1" in text
