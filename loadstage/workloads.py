"""Built-in workloads."""
from __future__ import annotations

from typing import Iterable, List, Optional, Sequence, Union

from loadstage.config import DEFAULT_TARGET_URL
from loadstage.exceptions import ConfigurationError
from loadstage.executor import Check, IterationContext, PredicateCheck, Workload
from loadstage.metrics.registry import BUILTIN_METRICS
from loadstage.models import MetricKind


def hello_checks(max_duration_ms: float = 200.0) -> List[Check]:
    return [
        PredicateCheck("status is 200", lambda r: r.status == 200),
        PredicateCheck("response has message", lambda r: r.json("message") == "world"),
        PredicateCheck(
            f"response time < {max_duration_ms:g}ms",
            lambda r: r.timings.duration < max_duration_ms,
        ),
    ]


def validate_check_names(checks: Iterable[Check]) -> None:
    """
    Reject checks whose name belongs to a built-in metric of another kind.

    Checks are recorded as Rates, so "http_reqs" (a Counter) would conflict
    on the first iteration. Catching it here keeps it a configuration error.
    """
    for check in checks:
        kind = BUILTIN_METRICS.get(check.name)
        if kind is not None and kind is not MetricKind.RATE:
            raise ConfigurationError(
                f"Check '{check.name}' collides with the built-in {kind.value} metric",
                code="metric_kind_conflict",
                details={"metric": check.name, "kind": kind.value, "requested": MetricKind.RATE.value},
            )


def hello_world(
    targets: Union[str, Sequence[str]] = DEFAULT_TARGET_URL,
    *,
    max_duration_ms: float = 200.0,
    checks: Optional[Iterable[Check]] = None,
) -> Workload:
    """
    GET each target once per iteration and check for {"message": "world"}.

    Default checks (recorded as Rate metrics under these names):
        - status is 200
        - response has message
        - response time < 200ms

    Raises:
        ConfigurationError: A check name collides with a built-in metric.
    """
    urls = [targets] if isinstance(targets, str) else list(targets)
    if not urls:
        raise ValueError("hello_world needs at least one target")
    checks = list(checks) if checks is not None else hello_checks(max_duration_ms)
    validate_check_names(checks)

    def workload(ctx: IterationContext) -> None:
        for url in urls:
            response = ctx.get(url)
            ctx.check(response, checks)

    return workload
