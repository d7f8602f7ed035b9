"""
loadstage - staged load tests with thresholds and reproducible summaries.

    from loadstage import LoadTest, LoadTestOptions

    options = LoadTestOptions(
        stages=[{"duration": "10s", "target": 5}, {"duration": "10s", "target": 0}],
        thresholds={"http_req_failed": ["rate<0.1"]},
        targets=["http://localhost:9999/hello"],
    )
    outcome = LoadTest(options).run()
    print(outcome.passed, outcome.artifacts)

Custom workloads receive an explicit IterationContext:

    def workload(ctx):
        response = ctx.get("http://localhost:9999/hello")
        ctx.check(response, {"status is 200": lambda r: r.status == 200})

    LoadTest(options, workload).run()
"""

__version__ = "0.1.0"

from loadstage.config import LoadTestOptions, Settings, default_options, get_settings  # noqa: F401
from loadstage.exceptions import (  # noqa: F401
    ConfigurationError,
    IterationError,
    LoadStageError,
    ReportingError,
)
from loadstage.executor import IterationContext, PredicateCheck, WorkloadExecutor  # noqa: F401
from loadstage.http import HttpxTransport, Transport  # noqa: F401
from loadstage.metrics import MetricRegistry  # noqa: F401
from loadstage.models import (  # noqa: F401
    MetricKind,
    MetricSnapshot,
    RequestTimings,
    Response,
    RunSummary,
    Stage,
    Threshold,
    ThresholdResult,
)
from loadstage.report import DirectorySink, MemorySink, render_json, render_text, write_reports  # noqa: F401
from loadstage.runner import LoadTest, RunOutcome  # noqa: F401
from loadstage.scheduler import StageScheduler  # noqa: F401
from loadstage.stages import StageSchedule  # noqa: F401
from loadstage.thresholds import ThresholdEvaluator, parse_expression  # noqa: F401

__all__ = [
    "ConfigurationError",
    "DirectorySink",
    "HttpxTransport",
    "IterationContext",
    "IterationError",
    "LoadStageError",
    "LoadTest",
    "LoadTestOptions",
    "MemorySink",
    "MetricKind",
    "MetricRegistry",
    "MetricSnapshot",
    "PredicateCheck",
    "ReportingError",
    "RequestTimings",
    "Response",
    "RunOutcome",
    "RunSummary",
    "Settings",
    "Stage",
    "StageSchedule",
    "StageScheduler",
    "Threshold",
    "ThresholdEvaluator",
    "ThresholdResult",
    "Transport",
    "WorkloadExecutor",
    "default_options",
    "get_settings",
    "parse_expression",
    "render_json",
    "render_text",
    "write_reports",
]
