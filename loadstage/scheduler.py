"""
Stage scheduler: keeps a pool of virtual users in line with the schedule.

One control thread ticks every tick_interval seconds. On each tick it
reaps virtual users whose loop has exited, reads the schedule's target and:
- spawns new virtual users while fewer loops are alive than the target
- asks the newest excess virtual users to stop after their current iteration

Virtual users that are draining still count as alive, so the number of
running loops never exceeds the largest stage target.

Usage:
    scheduler = StageScheduler(
        StageSchedule(stages),
        lambda vu_id, iteration: executor.run_iteration(workload, vu_id, iteration),
        pacing=1.0,
        registry=registry,
    )
    result = scheduler.run()
"""
from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from typing import Callable, List, Optional

from loadstage.exceptions import ConfigurationError, IterationError, LoadStageError
from loadstage.metrics.registry import ITERATION_FAILURES, VUS, VUS_MAX, MetricRegistry
from loadstage.models import MetricKind
from loadstage.stages import ScheduleState, StageSchedule

logger = logging.getLogger(__name__)

IterationFn = Callable[[int, int], None]
AbortCheck = Callable[[], Optional[str]]


@dataclass
class SchedulerResult:
    """Outcome of a scheduler run, available once every virtual user stopped."""
    duration_seconds: float
    peak_vus: int
    vus_started: int
    aborted: bool = False
    abort_reason: Optional[str] = None
    # First fatal error raised by a virtual user, if any.
    error: Optional[LoadStageError] = None


class VirtualUser:
    """
    One sequential loop of iterations on its own thread.

    The loop checks its stop event between iterations and waits on it for
    the pacing interval, so a stop request takes effect as soon as the
    current iteration finishes.
    """

    def __init__(
        self,
        vu_id: int,
        iteration: IterationFn,
        *,
        pacing: float,
        on_failure: Callable[[int, BaseException], None],
        on_fatal: Callable[[int, LoadStageError], None],
    ) -> None:
        self.vu_id = vu_id
        self.iterations = 0
        self._iteration = iteration
        self._pacing = pacing
        self._on_failure = on_failure
        self._on_fatal = on_fatal
        self._stop = threading.Event()
        self._thread = threading.Thread(target=self._loop, name=f"vu-{vu_id}", daemon=True)

    def start(self) -> None:
        self._thread.start()

    def stop(self) -> None:
        self._stop.set()

    @property
    def stopping(self) -> bool:
        return self._stop.is_set()

    def is_alive(self) -> bool:
        return self._thread.is_alive()

    def join(self, timeout: Optional[float] = None) -> None:
        self._thread.join(timeout)

    def _loop(self) -> None:
        while not self._stop.is_set():
            try:
                self._iteration(self.vu_id, self.iterations)
            except (ConfigurationError, IterationError) as exc:
                self._on_fatal(self.vu_id, exc)
                return
            except Exception as exc:
                self._on_failure(self.vu_id, exc)
            self.iterations += 1
            if self._pacing > 0:
                self._stop.wait(self._pacing)


class StageScheduler:
    """
    Drives a virtual user pool from a StageSchedule.

    The control thread is the only writer of the pool. run() blocks until
    the schedule finished (or was aborted) and every virtual user stopped.
    """

    def __init__(
        self,
        schedule: StageSchedule,
        iteration: IterationFn,
        *,
        pacing: float = 1.0,
        tick_interval: float = 0.1,
        registry: Optional[MetricRegistry] = None,
        should_abort: Optional[AbortCheck] = None,
        abort_check_interval: float = 1.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if tick_interval <= 0:
            raise ValueError("tick_interval must be > 0")
        if pacing < 0:
            raise ValueError("pacing must be >= 0")
        self._schedule = schedule
        self._iteration = iteration
        self._pacing = pacing
        self._tick_interval = tick_interval
        self._registry = registry
        self._should_abort = should_abort
        self._abort_check_interval = abort_check_interval
        self._clock = clock

        self._pool: List[VirtualUser] = []
        self._pool_lock = threading.Lock()
        self._next_vu_id = 1
        self._peak_vus = 0
        self._state: Optional[ScheduleState] = None

        self._stop_requested = threading.Event()
        self._done = threading.Event()
        self._control: Optional[threading.Thread] = None
        self._abort_reason: Optional[str] = None
        self._fatal_error: Optional[LoadStageError] = None
        self._duration = 0.0

    # -- lifecycle -------------------------------------------------------

    def start(self) -> None:
        if self._control is not None:
            raise RuntimeError("scheduler already started")
        self._control = threading.Thread(
            target=self._control_loop, name="stage-scheduler", daemon=True
        )
        self._control.start()

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Block until every virtual user stopped. False on timeout."""
        return self._done.wait(timeout)

    def run(self) -> SchedulerResult:
        self.start()
        self.wait()
        return self.result()

    def stop(self, reason: Optional[str] = None) -> None:
        """End the run early; virtual users drain as at the end of the schedule."""
        if reason and self._abort_reason is None:
            self._abort_reason = reason
        self._stop_requested.set()

    def result(self) -> SchedulerResult:
        if not self._done.is_set():
            raise RuntimeError("scheduler has not finished")
        return SchedulerResult(
            duration_seconds=self._duration,
            peak_vus=self._peak_vus,
            vus_started=self._next_vu_id - 1,
            aborted=self._abort_reason is not None,
            abort_reason=self._abort_reason,
            error=self._fatal_error,
        )

    # -- introspection ---------------------------------------------------

    @property
    def finished(self) -> bool:
        return self._done.is_set()

    @property
    def state(self) -> Optional[ScheduleState]:
        return self._state

    @property
    def running_vus(self) -> int:
        """Virtual user loops still alive, draining ones included."""
        with self._pool_lock:
            return sum(1 for vu in self._pool if vu.is_alive())

    @property
    def active_vus(self) -> int:
        """Virtual users that have not been asked to stop."""
        with self._pool_lock:
            return sum(1 for vu in self._pool if vu.is_alive() and not vu.stopping)

    @property
    def peak_vus(self) -> int:
        return self._peak_vus

    # -- control loop ----------------------------------------------------

    def _control_loop(self) -> None:
        started = self._clock()
        next_abort_check = started + self._abort_check_interval
        stage_index = -1
        logger.info(
            "Starting schedule: %s (%.1fs, max %d VUs)",
            self._schedule.describe(),
            self._schedule.total_duration,
            self._schedule.max_target,
        )
        try:
            while not self._stop_requested.is_set():
                now = self._clock()
                state = self._schedule.advance(now - started)
                self._state = state
                if state.finished:
                    break
                if state.stage_index != stage_index:
                    stage_index = state.stage_index
                    stage = self._schedule.stages[stage_index]
                    logger.info(
                        "Stage %d/%d: ramping to %d VUs over %.1fs",
                        stage_index + 1,
                        len(self._schedule.stages),
                        stage.target,
                        stage.duration,
                    )
                self._converge(state.current_target)
                if self._should_abort is not None and now >= next_abort_check:
                    next_abort_check = now + self._abort_check_interval
                    reason = self._should_abort()
                    if reason:
                        logger.warning("Aborting run: %s", reason)
                        self.stop(reason)
                        break
                self._stop_requested.wait(self._tick_interval)
        except Exception:
            logger.exception("Scheduler control loop failed")
            if self._abort_reason is None:
                self._abort_reason = "scheduler error"
        finally:
            self._drain()
            self._duration = self._clock() - started
            logger.info(
                "Schedule finished in %.2fs (peak %d VUs)", self._duration, self._peak_vus
            )
            self._done.set()

    def _converge(self, target: int) -> None:
        with self._pool_lock:
            self._pool = [vu for vu in self._pool if vu.is_alive()]
            active = [vu for vu in self._pool if not vu.stopping]
            if len(active) > target:
                # Newest first, so long-lived users keep running.
                for vu in active[target:]:
                    vu.stop()
                logger.debug("Draining %d VUs (target %d)", len(active) - target, target)
            elif len(self._pool) < target:
                for _ in range(target - len(self._pool)):
                    self._pool.append(self._spawn())
            running = len(self._pool)
        self._peak_vus = max(self._peak_vus, running)
        self._record_gauges(running)

    def _spawn(self) -> VirtualUser:
        vu = VirtualUser(
            self._next_vu_id,
            self._iteration,
            pacing=self._pacing,
            on_failure=self._on_iteration_failure,
            on_fatal=self._on_fatal_error,
        )
        self._next_vu_id += 1
        vu.start()
        return vu

    def _drain(self) -> None:
        with self._pool_lock:
            pool = list(self._pool)
        for vu in pool:
            vu.stop()
        for vu in pool:
            vu.join()
        with self._pool_lock:
            self._pool = []
        self._record_gauges(0)

    def _record_gauges(self, running: int) -> None:
        if self._registry is None:
            return
        self._registry.record(VUS, MetricKind.GAUGE, running)
        self._registry.record(VUS_MAX, MetricKind.GAUGE, self._peak_vus)

    def _on_iteration_failure(self, vu_id: int, exc: BaseException) -> None:
        logger.warning("VU %d iteration failed: %s", vu_id, exc)
        if self._registry is not None:
            self._registry.record(ITERATION_FAILURES, MetricKind.COUNTER, 1)

    def _on_fatal_error(self, vu_id: int, exc: LoadStageError) -> None:
        logger.error("VU %d aborted the run: %s", vu_id, exc)
        kind = "configuration" if isinstance(exc, ConfigurationError) else "iteration"
        with self._pool_lock:
            if self._fatal_error is None:
                self._fatal_error = exc
        self.stop(f"{kind} error in VU {vu_id}: {exc.message}")
