"""
Workload executor: runs one iteration of caller-supplied logic.

The workload never reaches for globals. It receives an IterationContext
that carries the virtual user id, the iteration index and the request
capability; every request issued through the context is measured.

Usage:
    def workload(ctx: IterationContext) -> None:
        response = ctx.get("http://localhost:9999/hello")
        ctx.check(response, {"status is 200": lambda r: r.status == 200})

    executor = WorkloadExecutor(registry, HttpxTransport())
    executor.run_iteration(workload, vu_id=1, iteration=0)
"""
from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Iterable, List, Mapping, Protocol, Union, runtime_checkable

from loadstage.exceptions import ConfigurationError, IterationError
from loadstage.http import CallableTransport, Transport
from loadstage.metrics.registry import (
    CHECKS,
    DATA_RECEIVED,
    DATA_SENT,
    HTTP_REQ_BLOCKED,
    HTTP_REQ_CONNECTING,
    HTTP_REQ_DURATION,
    HTTP_REQ_FAILED,
    HTTP_REQ_RECEIVING,
    HTTP_REQ_SENDING,
    HTTP_REQ_TLS_HANDSHAKING,
    HTTP_REQ_WAITING,
    HTTP_REQS,
    ITERATION_DURATION,
    ITERATION_FAILURES,
    ITERATIONS,
    MetricRegistry,
)
from loadstage.models import MetricKind, RequestTimings, Response

logger = logging.getLogger(__name__)


@runtime_checkable
class Check(Protocol):
    """A named boolean predicate over a response."""

    name: str

    def evaluate(self, response: Response) -> bool:
        ...


@dataclass(frozen=True)
class PredicateCheck:
    """Check backed by a plain callable."""

    name: str
    predicate: Callable[[Response], Any]

    def evaluate(self, response: Response) -> bool:
        return bool(self.predicate(response))


ChecksLike = Union[Mapping[str, Callable[[Response], Any]], Iterable[Check]]


def as_checks(checks: ChecksLike) -> List[Check]:
    """Normalize {name: predicate} mappings and Check objects to a list of checks."""
    if isinstance(checks, Mapping):
        return [PredicateCheck(name, predicate) for name, predicate in checks.items()]
    return list(checks)


class IterationContext:
    """Explicit per-iteration state handed to the workload."""

    def __init__(self, executor: "WorkloadExecutor", vu_id: int, iteration: int) -> None:
        self._executor = executor
        self.vu_id = vu_id
        self.iteration = iteration

    def request(self, method: str, url: str, **kwargs: Any) -> Response:
        return self._executor.perform(method, url, **kwargs)

    def get(self, url: str, **kwargs: Any) -> Response:
        return self.request("GET", url, **kwargs)

    def post(self, url: str, **kwargs: Any) -> Response:
        return self.request("POST", url, **kwargs)

    def check(self, response: Response, checks: ChecksLike) -> bool:
        """Evaluate checks against a response. True when all of them passed."""
        return self._executor.run_checks(response, as_checks(checks))

    def add(self, name: str, kind: MetricKind, value: float) -> None:
        """Record into a custom metric."""
        self._executor.registry.record(name, kind, value)


Workload = Callable[[IterationContext], Any]


class WorkloadExecutor:
    """
    Runs workload iterations and records built-in metrics.

    Per request: http_reqs, http_req_duration (+ timing breakdown),
    http_req_failed, data_sent, data_received.
    Per check: a Rate under the check name, plus the aggregate "checks".
    Per iteration: iterations and iteration_duration, or iteration_failures
    when the workload raised.
    """

    def __init__(
        self,
        registry: MetricRegistry,
        transport: Union[Transport, Callable[..., Response]],
        *,
        abort_on_error: bool = False,
    ) -> None:
        self.registry = registry
        if not isinstance(transport, Transport):
            transport = CallableTransport(transport)
        self._transport = transport
        self._abort_on_error = abort_on_error

    def perform(self, method: str, url: str, **kwargs: Any) -> Response:
        started = time.perf_counter()
        try:
            response = self._transport.perform(method, url, **kwargs)
        except Exception as exc:
            # A transport that raises is measured like one that reports status 0.
            logger.debug("Transport error for %s %s: %s", method, url, exc)
            response = Response(
                method=method,
                url=url,
                status=0,
                timings=RequestTimings(duration=(time.perf_counter() - started) * 1000.0),
                error=f"{type(exc).__name__}: {exc}",
            )
        self.record_response(response)
        return response

    def record_response(self, response: Response) -> None:
        registry = self.registry
        timings = response.timings
        registry.record(HTTP_REQS, MetricKind.COUNTER, 1)
        registry.record(HTTP_REQ_DURATION, MetricKind.TREND, timings.duration)
        registry.record(HTTP_REQ_BLOCKED, MetricKind.TREND, timings.blocked)
        registry.record(HTTP_REQ_CONNECTING, MetricKind.TREND, timings.connecting)
        registry.record(HTTP_REQ_TLS_HANDSHAKING, MetricKind.TREND, timings.tls_handshaking)
        registry.record(HTTP_REQ_SENDING, MetricKind.TREND, timings.sending)
        registry.record(HTTP_REQ_WAITING, MetricKind.TREND, timings.waiting)
        registry.record(HTTP_REQ_RECEIVING, MetricKind.TREND, timings.receiving)
        registry.record(HTTP_REQ_FAILED, MetricKind.RATE, 1 if response.failed else 0)
        registry.record(DATA_SENT, MetricKind.COUNTER, response.bytes_sent)
        registry.record(DATA_RECEIVED, MetricKind.COUNTER, response.bytes_received)

    def run_checks(self, response: Response, checks: List[Check]) -> bool:
        all_passed = True
        for check in checks:
            try:
                passed = bool(check.evaluate(response))
            except Exception as exc:
                logger.debug("Check %r raised: %s", check.name, exc)
                passed = False
            self.registry.record(check.name, MetricKind.RATE, 1 if passed else 0)
            self.registry.record(CHECKS, MetricKind.RATE, 1 if passed else 0)
            all_passed = all_passed and passed
        return all_passed

    def run_iteration(self, workload: Workload, vu_id: int, iteration: int) -> bool:
        """
        Run exactly one iteration. Returns False when the workload raised.

        Raises:
            ConfigurationError: A metric was recorded under a name that
                already has a different kind. Never swallowed.
            IterationError: Only when abort_on_error is set.
        """
        ctx = IterationContext(self, vu_id, iteration)
        started = time.perf_counter()
        try:
            workload(ctx)
        except ConfigurationError:
            raise
        except Exception as exc:
            self.registry.record(ITERATION_FAILURES, MetricKind.COUNTER, 1)
            logger.warning("VU %d iteration %d failed: %s", vu_id, iteration, exc)
            if self._abort_on_error:
                raise IterationError(
                    f"Iteration failed: {exc}",
                    vu_id=vu_id,
                    iteration=iteration,
                    details={"exception": type(exc).__name__},
                ) from exc
            return False
        self.registry.record(ITERATIONS, MetricKind.COUNTER, 1)
        self.registry.record(
            ITERATION_DURATION, MetricKind.TREND, (time.perf_counter() - started) * 1000.0
        )
        return True
