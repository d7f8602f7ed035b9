"""Tests for the stage scheduler and its virtual user pool.

Schedules are scaled down to fractions of a second so the suite stays fast.
"""

import threading
import time

import pytest

from loadstage.exceptions import ConfigurationError, IterationError
from loadstage.metrics import MetricRegistry
from loadstage.scheduler import StageScheduler
from loadstage.stages import StageSchedule


class _Sampler:
    """Samples VU counts from a separate thread.

    samples holds running counts; timed holds (seconds since start(),
    active, running) tuples.
    """

    def __init__(self, scheduler: StageScheduler, interval: float = 0.003) -> None:
        self.samples = []
        self.timed = []
        self._started = 0.0
        self._scheduler = scheduler
        self._interval = interval
        self._thread = threading.Thread(target=self._loop, daemon=True)

    def _loop(self) -> None:
        while not self._scheduler.finished:
            active = self._scheduler.active_vus
            running = self._scheduler.running_vus
            self.samples.append(running)
            self.timed.append((time.monotonic() - self._started, active, running))
            time.sleep(self._interval)

    def start(self) -> None:
        self._started = time.monotonic()
        self._thread.start()

    def between(self, start: float, end: float):
        return [(active, running) for t, active, running in self.timed if start <= t < end]

    def join(self) -> None:
        self._thread.join()


def _sleeping_iteration(seconds: float):
    def iteration(vu_id: int, index: int) -> None:
        time.sleep(seconds)

    return iteration


class TestStageScheduler:
    def test_running_vus_never_exceed_max_target(self):
        schedule = StageSchedule(
            [
                {"duration": 0.15, "target": 6},
                {"duration": 0.1, "target": 1},
                {"duration": 0.15, "target": 6},
                {"duration": 0.1, "target": 0},
            ]
        )
        scheduler = StageScheduler(
            schedule, _sleeping_iteration(0.03), pacing=0.005, tick_interval=0.01
        )
        sampler = _Sampler(scheduler)
        scheduler.start()
        sampler.start()
        assert scheduler.wait(timeout=5.0)
        sampler.join()

        assert sampler.samples
        assert max(sampler.samples) <= schedule.max_target
        assert scheduler.peak_vus <= schedule.max_target
        assert scheduler.running_vus == 0

    def test_converges_to_plateau_target(self):
        schedule = StageSchedule(
            [{"duration": 0.1, "target": 4}, {"duration": 0.6, "target": 4}]
        )
        scheduler = StageScheduler(
            schedule, _sleeping_iteration(0.005), pacing=0.005, tick_interval=0.01
        )
        scheduler.start()
        time.sleep(0.4)
        try:
            assert scheduler.active_vus == 4
            assert scheduler.state.stage_index == 1
        finally:
            assert scheduler.wait(timeout=5.0)
        result = scheduler.result()
        assert result.peak_vus == 4
        assert result.vus_started == 4
        assert result.aborted is False

    def test_drain_lets_in_flight_iterations_finish(self):
        started = []
        finished = []
        lock = threading.Lock()

        def iteration(vu_id: int, index: int) -> None:
            with lock:
                started.append(vu_id)
            time.sleep(0.15)
            with lock:
                finished.append(vu_id)

        schedule = StageSchedule([{"duration": 0, "target": 3}, {"duration": 0.05, "target": 3}])
        scheduler = StageScheduler(schedule, iteration, pacing=10.0, tick_interval=0.01)
        result = scheduler.run()

        assert len(started) == 3
        assert sorted(started) == sorted(finished)
        assert scheduler.running_vus == 0
        # The long pacing wait was interrupted by the stop signal.
        assert result.duration_seconds < 2.0

    def test_iteration_errors_are_counted_and_loop_continues(self):
        registry = MetricRegistry()
        calls = []

        def iteration(vu_id: int, index: int) -> None:
            calls.append(index)
            raise ValueError("boom")

        schedule = StageSchedule([{"duration": 0, "target": 1}, {"duration": 0.2, "target": 1}])
        scheduler = StageScheduler(
            schedule, iteration, pacing=0.01, tick_interval=0.01, registry=registry
        )
        result = scheduler.run()

        failures = registry.snapshot(result.duration_seconds)["iteration_failures"]
        assert len(calls) >= 2
        assert failures.values["count"] == len(calls)
        assert result.aborted is False

    def test_iteration_error_aborts_run(self):
        def iteration(vu_id: int, index: int) -> None:
            raise IterationError("fatal", vu_id=vu_id, iteration=index)

        schedule = StageSchedule([{"duration": 0, "target": 2}, {"duration": 5.0, "target": 2}])
        scheduler = StageScheduler(schedule, iteration, pacing=0.01, tick_interval=0.01)
        result = scheduler.run()

        assert result.aborted is True
        assert "iteration error" in result.abort_reason
        assert result.duration_seconds < 5.0
        assert isinstance(result.error, IterationError)

    def test_configuration_error_aborts_run(self):
        calls = []

        def iteration(vu_id: int, index: int) -> None:
            calls.append(vu_id)
            raise ConfigurationError("kind conflict", code="metric_kind_conflict")

        schedule = StageSchedule([{"duration": 0, "target": 2}, {"duration": 5.0, "target": 2}])
        registry = MetricRegistry()
        scheduler = StageScheduler(
            schedule, iteration, pacing=0.01, tick_interval=0.01, registry=registry
        )
        result = scheduler.run()

        assert result.aborted is True
        assert result.abort_reason.startswith("configuration error in VU")
        assert isinstance(result.error, ConfigurationError)
        assert result.duration_seconds < 5.0
        assert registry.snapshot()["iteration_failures"].values["count"] == 0

    def test_should_abort_stops_early(self):
        schedule = StageSchedule([{"duration": 0, "target": 2}, {"duration": 5.0, "target": 2}])
        scheduler = StageScheduler(
            schedule,
            _sleeping_iteration(0.005),
            pacing=0.005,
            tick_interval=0.01,
            should_abort=lambda: "threshold crossed",
            abort_check_interval=0.05,
        )
        result = scheduler.run()

        assert result.aborted is True
        assert result.abort_reason == "threshold crossed"
        assert result.duration_seconds < 5.0

    def test_empty_schedule_completes_immediately(self):
        registry = MetricRegistry()
        calls = []
        scheduler = StageScheduler(
            StageSchedule([]), lambda vu_id, index: calls.append(vu_id), registry=registry
        )
        result = scheduler.run()

        assert calls == []
        assert result.peak_vus == 0
        assert result.vus_started == 0
        assert registry.snapshot()["vus"].values["value"] == 0

    def test_zero_stage_does_not_crash(self):
        scheduler = StageScheduler(
            StageSchedule([{"duration": 0, "target": 0}]), _sleeping_iteration(0.0)
        )
        result = scheduler.run()
        assert result.peak_vus == 0
        assert result.aborted is False

    def test_records_vu_gauges(self):
        registry = MetricRegistry()
        schedule = StageSchedule([{"duration": 0, "target": 3}, {"duration": 0.1, "target": 3}])
        scheduler = StageScheduler(
            schedule, _sleeping_iteration(0.005), pacing=0.005, tick_interval=0.01, registry=registry
        )
        scheduler.run()

        snapshot = registry.snapshot()
        assert snapshot["vus_max"].values["value"] == 3
        assert snapshot["vus"].values["max"] == 3
        assert snapshot["vus"].values["value"] == 0

    def test_result_before_finish_raises(self):
        scheduler = StageScheduler(StageSchedule([]), _sleeping_iteration(0.0))
        with pytest.raises(RuntimeError):
            scheduler.result()

    def test_invalid_tick_interval(self):
        with pytest.raises(ValueError):
            StageScheduler(StageSchedule([]), _sleeping_iteration(0.0), tick_interval=0)


TICK = 0.02
# Two ticks plus scheduling jitter.
SETTLE = 2 * TICK + 0.03


class TestConvergence:
    """The pool settles on the stage target within a couple of ticks."""

    def _run(self, stages, iteration_seconds: float):
        schedule = StageSchedule(stages)
        scheduler = StageScheduler(
            schedule, _sleeping_iteration(iteration_seconds), pacing=0.005, tick_interval=TICK
        )
        sampler = _Sampler(scheduler, interval=0.002)
        sampler.start()
        scheduler.start()
        assert scheduler.wait(timeout=5.0)
        sampler.join()
        return schedule, sampler

    def test_ramp_up_settles_after_ramp_end(self):
        _, sampler = self._run(
            [{"duration": 0.2, "target": 4}, {"duration": 0.4, "target": 4}], 0.005
        )

        window = sampler.between(0.2 + SETTLE, 0.6 - TICK)
        assert window
        assert all(active == 4 and running == 4 for active, running in window)

    def test_down_then_up_profile(self):
        schedule, sampler = self._run(
            [
                {"duration": 0, "target": 6},
                {"duration": 0.25, "target": 6},
                {"duration": 0, "target": 1},
                {"duration": 0.25, "target": 1},
                {"duration": 0, "target": 6},
                {"duration": 0.3, "target": 6},
            ],
            0.03,
        )

        assert max(running for _, running in sampler.between(0.0, 10.0)) <= schedule.max_target

        # Excess VUs are asked to stop on the next tick...
        stopped = sampler.between(0.25 + SETTLE, 0.5 - TICK)
        assert stopped
        assert all(active == 1 for active, _ in stopped)
        # ...and exit once their in-flight iteration (<= 0.03s) is done.
        drained = sampler.between(0.25 + 0.03 + SETTLE, 0.5 - TICK)
        assert drained
        assert all(running == 1 for _, running in drained)

        ramped = sampler.between(0.5 + SETTLE, 0.8 - TICK)
        assert ramped
        assert all(active == 6 and running == 6 for active, running in ramped)

    def test_ramp_up_waits_for_draining_vus(self):
        schedule, sampler = self._run(
            [
                {"duration": 0, "target": 4},
                {"duration": 0.15, "target": 4},
                {"duration": 0, "target": 1},
                {"duration": 0.03, "target": 1},
                {"duration": 0, "target": 4},
                {"duration": 0.4, "target": 4},
            ],
            0.1,
        )

        # Draining VUs still count, so the pool never exceeds the largest target.
        assert max(running for _, running in sampler.between(0.0, 10.0)) <= schedule.max_target

        # Stopped by ~0.18s, drained ~0.1s later, then replaced on the following ticks.
        settled = sampler.between(0.18 + 0.1 + SETTLE, 0.58 - TICK)
        assert settled
        assert all(active == 4 and running == 4 for active, running in settled)
