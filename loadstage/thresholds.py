"""
Threshold evaluation.

Expressions follow "<selector><comparator><number>":
    rate<0.1        p(95)<500       avg <= 200      count>=100

Selectors per metric kind:
    counter: count, rate
    rate:    rate
    trend:   avg, min, max, med, p(N)
    gauge:   value, min, max

Every expression is parsed when the evaluator is built, so a malformed
threshold stops the run before any load is generated.
"""
from __future__ import annotations

import logging
import operator
import re
from dataclasses import dataclass
from typing import Callable, Dict, FrozenSet, List, Mapping, Optional, Sequence

from loadstage.exceptions import ConfigurationError
from loadstage.metrics.registry import BUILTIN_METRICS
from loadstage.metrics.values import percentile_key
from loadstage.models import MetricKind, MetricSnapshot, Threshold, ThresholdResult

logger = logging.getLogger(__name__)

_EXPRESSION = re.compile(
    r"^\s*(?P<name>[a-z]+)\s*(?:\(\s*(?P<pct>[^)]*?)\s*\))?"
    r"\s*(?P<op><=|>=|==|!=|<|>)"
    r"\s*(?P<value>[-+]?(?:\d+(?:\.\d*)?|\.\d+)(?:[eE][-+]?\d+)?)\s*$"
)

_COMPARATORS: Dict[str, Callable[[float, float], bool]] = {
    "<": operator.lt,
    "<=": operator.le,
    ">": operator.gt,
    ">=": operator.ge,
    "==": operator.eq,
    "!=": operator.ne,
}

SELECTORS_BY_KIND: Dict[MetricKind, FrozenSet[str]] = {
    MetricKind.COUNTER: frozenset({"count", "rate"}),
    MetricKind.RATE: frozenset({"rate"}),
    MetricKind.TREND: frozenset({"avg", "min", "max", "med", "p"}),
    MetricKind.GAUGE: frozenset({"value", "min", "max"}),
}

_ALL_SELECTORS = frozenset().union(*SELECTORS_BY_KIND.values())


@dataclass(frozen=True)
class ThresholdExpression:
    """A parsed threshold expression."""

    source: str
    aggregation: str  # "rate", "avg", ..., or "p" for percentiles
    comparator: str
    value: float
    percentile: Optional[float] = None

    @property
    def key(self) -> str:
        """Key of the statistic in MetricSnapshot.values."""
        if self.aggregation == "p":
            return percentile_key(self.percentile)
        return self.aggregation

    def compatible_with(self, kind: MetricKind) -> bool:
        return self.aggregation in SELECTORS_BY_KIND[kind]

    def check(self, observed: float) -> bool:
        return _COMPARATORS[self.comparator](observed, self.value)


def parse_expression(expression: str) -> ThresholdExpression:
    """
    Parse one threshold expression.

    Raises:
        ConfigurationError: Malformed expression or unknown selector.
    """
    match = _EXPRESSION.match(expression or "")
    if match is None:
        raise ConfigurationError(
            f"Malformed threshold expression: {expression!r}",
            code="invalid_threshold",
            details={"expression": expression},
        )
    name = match.group("name")
    pct_text = match.group("pct")
    if name not in _ALL_SELECTORS:
        raise ConfigurationError(
            f"Unknown threshold selector '{name}' in {expression!r}",
            code="invalid_threshold",
            details={"expression": expression, "selector": name},
        )

    percentile = None
    if name == "p":
        try:
            percentile = float(pct_text) if pct_text else None
        except ValueError:
            percentile = None
        if percentile is None or not 0.0 <= percentile <= 100.0:
            raise ConfigurationError(
                f"Percentile must be a number between 0 and 100 in {expression!r}",
                code="invalid_threshold",
                details={"expression": expression},
            )
    elif pct_text is not None:
        raise ConfigurationError(
            f"Selector '{name}' takes no argument in {expression!r}",
            code="invalid_threshold",
            details={"expression": expression, "selector": name},
        )

    return ThresholdExpression(
        source=expression,
        aggregation=name,
        comparator=match.group("op"),
        value=float(match.group("value")),
        percentile=percentile,
    )


class ThresholdEvaluator:
    """
    Evaluates configured thresholds against metric snapshots.

    Example:
        evaluator = ThresholdEvaluator([
            Threshold(metric_name="http_req_failed", expression="rate<0.1"),
        ])
        results = evaluator.evaluate(registry.snapshot(elapsed))
        ThresholdEvaluator.passed(results)
    """

    def __init__(
        self,
        thresholds: Sequence[Threshold],
        known_kinds: Mapping[str, MetricKind] = BUILTIN_METRICS,
    ) -> None:
        self._thresholds = list(thresholds)
        self._parsed: List[ThresholdExpression] = []
        for threshold in self._thresholds:
            parsed = parse_expression(threshold.expression)
            kind = known_kinds.get(threshold.metric_name)
            if kind is not None and not parsed.compatible_with(kind):
                raise ConfigurationError(
                    f"Selector '{parsed.aggregation}' cannot be used on {kind.value} "
                    f"metric '{threshold.metric_name}'",
                    code="invalid_threshold",
                    details={"metric": threshold.metric_name, "expression": threshold.expression},
                )
            self._parsed.append(parsed)

    @property
    def thresholds(self) -> List[Threshold]:
        return list(self._thresholds)

    @property
    def percentiles(self) -> List[float]:
        """Percentiles referenced by any threshold."""
        return sorted({p.percentile for p in self._parsed if p.percentile is not None})

    @property
    def has_abort_thresholds(self) -> bool:
        return any(t.abort_on_fail for t in self._thresholds)

    def _evaluate_one(
        self, threshold: Threshold, parsed: ThresholdExpression, metrics: Mapping[str, MetricSnapshot]
    ) -> ThresholdResult:
        snapshot = metrics.get(threshold.metric_name)
        observed: Optional[float] = None
        if snapshot is None:
            logger.warning("Threshold on '%s' has no data", threshold.metric_name)
        elif not parsed.compatible_with(snapshot.kind):
            logger.warning(
                "Threshold %r does not apply to %s metric '%s'",
                threshold.expression,
                snapshot.kind.value,
                threshold.metric_name,
            )
        else:
            observed = snapshot.values.get(parsed.key, 0.0)
        return ThresholdResult(
            metric_name=threshold.metric_name,
            expression=threshold.expression,
            passed=observed is not None and parsed.check(observed),
            observed=observed,
        )

    def evaluate(self, metrics: Mapping[str, MetricSnapshot]) -> List[ThresholdResult]:
        """Evaluate every threshold, in configuration order."""
        return [
            self._evaluate_one(threshold, parsed, metrics)
            for threshold, parsed in zip(self._thresholds, self._parsed)
        ]

    def should_abort(self, metrics: Mapping[str, MetricSnapshot]) -> Optional[str]:
        """Reason to stop the run early, if an abort_on_fail threshold fails."""
        for threshold, parsed in zip(self._thresholds, self._parsed):
            if not threshold.abort_on_fail:
                continue
            result = self._evaluate_one(threshold, parsed, metrics)
            if not result.passed:
                return f"threshold {threshold.metric_name}: {threshold.expression} crossed"
        return None

    @staticmethod
    def passed(results: Sequence[ThresholdResult]) -> bool:
        """Overall verdict. No thresholds means the run passes."""
        return all(result.passed for result in results)
