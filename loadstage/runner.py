"""
LoadTest: wires schedule, executor, registry, thresholds and reporting.

Configuration is validated when the LoadTest is built, so a bad stage or
threshold never generates load. run() blocks until every virtual user has
stopped, then builds the RunSummary, evaluates thresholds and writes the
artifacts. A reporting failure is returned next to the verdict, never in
place of it.

Usage:
    from loadstage import LoadTest, default_options

    outcome = LoadTest(default_options()).run()
    sys.exit(outcome.exit_code)
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Dict, Optional, Union

from loadstage import telemetry
from loadstage.config import LoadTestOptions, Settings, get_settings
from loadstage.exceptions import ConfigurationError, ReportingError
from loadstage.executor import Workload, WorkloadExecutor
from loadstage.http import HttpxTransport, Transport
from loadstage.metrics.registry import MetricRegistry
from loadstage.models import Response, RunSummary, utc_now
from loadstage.report import ArtifactSink, DirectorySink, write_reports
from loadstage.scheduler import SchedulerResult, StageScheduler
from loadstage.stages import StageSchedule
from loadstage.thresholds import ThresholdEvaluator
from loadstage.workloads import hello_world

logger = logging.getLogger(__name__)

EXIT_PASSED = 0
EXIT_THRESHOLDS_FAILED = 1
EXIT_CONFIGURATION_ERROR = 2
EXIT_REPORTING_ERROR = 3


@dataclass
class RunOutcome:
    """
    What a run produced.

    Attributes:
        summary: Finalized RunSummary (always present).
        artifacts: Artifact name -> location, for the artifacts written.
        report_error: Set when rendering/writing the artifacts failed.
        configuration_error: Set when a virtual user hit a configuration
            error mid-run (e.g. a metric kind conflict). The run is aborted.
    """

    summary: RunSummary
    artifacts: Dict[str, str] = field(default_factory=dict)
    report_error: Optional[ReportingError] = None
    configuration_error: Optional[ConfigurationError] = None

    @property
    def passed(self) -> bool:
        return self.summary.passed

    @property
    def exit_code(self) -> int:
        if self.configuration_error is not None:
            return EXIT_CONFIGURATION_ERROR
        # A failed verdict wins; a reporting error is only reported on passing runs.
        if not self.summary.passed:
            return EXIT_THRESHOLDS_FAILED
        if self.report_error is not None:
            return EXIT_REPORTING_ERROR
        return EXIT_PASSED


class LoadTest:
    """
    One configured load run.

    Args:
        options: Validated run options.
        workload: Iteration function; defaults to the hello-world GET workload
            over options.targets (or LOADSTAGE_TARGET_URL when set).
        transport: Request capability; defaults to an HttpxTransport using
            options.request_timeout.
        sink: Artifact sink; defaults to a DirectorySink on the output dir.
        settings: Environment settings; defaults to get_settings().

    Raises:
        ConfigurationError: Invalid stages, thresholds or built-in check names.
    """

    def __init__(
        self,
        options: LoadTestOptions,
        workload: Optional[Workload] = None,
        *,
        transport: Optional[Union[Transport, Callable[..., Response]]] = None,
        sink: Optional[ArtifactSink] = None,
        settings: Optional[Settings] = None,
    ) -> None:
        self.options = options
        self._settings = settings or get_settings()
        self.schedule = StageSchedule(options.stages)
        self.evaluator = ThresholdEvaluator(options.threshold_list())
        if workload is None:
            targets = options.targets
            if self._settings.target_url and "targets" not in options.model_fields_set:
                targets = [self._settings.target_url]
            workload = hello_world(targets)
        self._workload = workload
        self._transport = transport
        self._sink = sink or DirectorySink(options.resolved_output_dir(self._settings))

    def run(self) -> RunOutcome:
        options = self.options
        registry = MetricRegistry(max_samples=options.max_samples)
        registry.add_percentiles(self.evaluator.percentiles)

        owned_transport: Optional[HttpxTransport] = None
        transport = self._transport
        if transport is None:
            owned_transport = HttpxTransport(timeout=options.request_timeout)
            transport = owned_transport

        executor = WorkloadExecutor(registry, transport, abort_on_error=options.abort_on_error)
        workload = self._workload
        run_started = time.monotonic()

        def iteration(vu_id: int, index: int) -> None:
            executor.run_iteration(workload, vu_id, index)

        should_abort = None
        if self.evaluator.has_abort_thresholds:
            def should_abort() -> Optional[str]:
                return self.evaluator.should_abort(registry.snapshot(time.monotonic() - run_started))

        scheduler = StageScheduler(
            self.schedule,
            iteration,
            pacing=options.pacing,
            tick_interval=options.tick_interval,
            registry=registry,
            should_abort=should_abort,
            abort_check_interval=options.threshold_interval,
        )

        started_at = utc_now()
        try:
            with telemetry.span(
                "loadstage.run",
                stages=self.schedule.describe(),
                max_vus=self.schedule.max_target,
            ):
                result = scheduler.run()
        finally:
            if owned_transport is not None:
                owned_transport.close()
        finished_at = utc_now()

        summary = self.build_summary(registry, result, started_at=started_at, finished_at=finished_at)
        logger.info(
            "Run %s: %d/%d thresholds passed",
            "passed" if summary.passed else "failed",
            sum(1 for r in summary.threshold_results if r.passed),
            len(summary.threshold_results),
        )
        outcome = self.report(summary)
        if isinstance(result.error, ConfigurationError):
            outcome.configuration_error = result.error
        return outcome

    def build_summary(
        self,
        registry: MetricRegistry,
        result: SchedulerResult,
        *,
        started_at: Optional[datetime] = None,
        finished_at: Optional[datetime] = None,
    ) -> RunSummary:
        """Finalize metrics and thresholds. Only call once the scheduler finished."""
        metrics = registry.snapshot(result.duration_seconds)
        threshold_results = self.evaluator.evaluate(metrics)
        return RunSummary(
            metrics=metrics,
            threshold_results=threshold_results,
            passed=ThresholdEvaluator.passed(threshold_results) and not result.aborted,
            run_duration_seconds=result.duration_seconds,
            configured_stages=list(self.schedule.stages),
            peak_vus=result.peak_vus,
            aborted=result.aborted,
            abort_reason=result.abort_reason,
            ext=dict(self.options.ext),
            started_at=started_at,
            finished_at=finished_at,
        )

    def report(self, summary: RunSummary) -> RunOutcome:
        try:
            artifacts = write_reports(summary, self._sink)
        except ReportingError as exc:
            logger.error(
                "Reporting failed (run %s): %s",
                "passed" if summary.passed else "failed",
                exc.message,
            )
            return RunOutcome(summary=summary, artifacts=exc.details.get("written", {}), report_error=exc)
        return RunOutcome(summary=summary, artifacts=artifacts)
