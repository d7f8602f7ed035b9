from __future__ import annotations

import json
import math
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator


class MetricKind(str, Enum):
    """Aggregation kind of a metric. Fixed on first observation."""

    COUNTER = "counter"
    RATE = "rate"
    TREND = "trend"
    GAUGE = "gauge"


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


_DURATION_PART = re.compile(r"(\d+(?:\.\d+)?)(ms|us|µs|h|m|s)")
_DURATION_FULL = re.compile(r"(?:\d+(?:\.\d+)?(?:ms|us|µs|h|m|s))+")
_UNIT_SECONDS = {
    "h": 3600.0,
    "m": 60.0,
    "s": 1.0,
    "ms": 0.001,
    "us": 0.000001,
    "µs": 0.000001,
}


def parse_duration(value: Union[str, int, float]) -> float:
    """
    Parse a duration into seconds.

    Accepts numbers (already seconds) and strings like "10s", "1m30s",
    "500ms" or "2h". A bare numeric string is read as seconds.
    """
    if isinstance(value, bool):
        raise ValueError(f"invalid duration: {value!r}")
    if isinstance(value, (int, float)):
        seconds = float(value)
    else:
        seconds = _parse_duration_text(value)
    if not math.isfinite(seconds):
        raise ValueError(f"duration must be finite: {value!r}")
    return seconds


def _parse_duration_text(value: str) -> float:
    text = str(value).strip()
    if not text:
        raise ValueError("duration must not be empty")
    try:
        return float(text)
    except ValueError:
        pass
    if not _DURATION_FULL.fullmatch(text):
        raise ValueError(f"invalid duration: {value!r}")
    return sum(float(num) * _UNIT_SECONDS[unit] for num, unit in _DURATION_PART.findall(text))


class Stage(BaseModel):
    """
    One ramp/plateau segment of the load profile.

    Attributes:
        duration: Length of the stage in seconds (strings like "10s" accepted).
        target: Concurrency reached at the end of the stage.
    """

    model_config = ConfigDict(extra="forbid", frozen=True)

    duration: float = Field(..., ge=0, allow_inf_nan=False)
    target: int = Field(..., ge=0)

    @field_validator("duration", mode="before")
    @classmethod
    def _parse_duration(cls, value: Any) -> float:
        return parse_duration(value)


class Threshold(BaseModel):
    """A pass/fail expression bound to a metric, e.g. http_req_failed: rate<0.1."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    metric_name: str = Field(..., min_length=1)
    expression: str = Field(..., min_length=1)
    abort_on_fail: bool = False


class ThresholdResult(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    metric_name: str
    expression: str
    passed: bool
    # None when the metric never received an observation.
    observed: Optional[float] = None


class MetricSnapshot(BaseModel):
    """
    Finalized view of one metric.

    Attributes:
        name: Metric name, unique within a run.
        kind: Aggregation kind.
        values: Summary statistics keyed by selector ("count", "rate",
            "avg", "p(95)", ...).
        approximate: True when Trend percentiles come from the histogram
            fallback instead of exact samples.
    """

    model_config = ConfigDict(extra="forbid", frozen=True)

    name: str
    kind: MetricKind
    values: Dict[str, float] = Field(default_factory=dict)
    approximate: bool = False

    def value(self, key: str, default: float = 0.0) -> float:
        return self.values.get(key, default)


class RunSummary(BaseModel):
    """
    Aggregate snapshot of a finished run. Built once, after every virtual
    user has stopped; this is the only input of the reporters.
    """

    model_config = ConfigDict(extra="forbid", frozen=True)

    metrics: Dict[str, MetricSnapshot] = Field(default_factory=dict)
    threshold_results: List[ThresholdResult] = Field(default_factory=list)
    passed: bool = True
    run_duration_seconds: float = Field(default=0.0, ge=0)
    configured_stages: List[Stage] = Field(default_factory=list)
    peak_vus: int = Field(default=0, ge=0)
    aborted: bool = False
    abort_reason: Optional[str] = None
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    ext: Dict[str, Any] = Field(default_factory=dict)

    def metric(self, name: str) -> Optional[MetricSnapshot]:
        return self.metrics.get(name)


@dataclass(frozen=True)
class RequestTimings:
    """Per-request timing breakdown in milliseconds."""

    duration: float = 0.0
    blocked: float = 0.0
    connecting: float = 0.0
    tls_handshaking: float = 0.0
    sending: float = 0.0
    waiting: float = 0.0
    receiving: float = 0.0


@dataclass
class Response:
    """
    Result of one request issued through a transport.

    A transport error or timeout is represented by status 0 and a non-empty
    error, never by an exception.
    """

    method: str
    url: str
    status: int
    headers: Dict[str, str] = field(default_factory=dict)
    body: bytes = b""
    timings: RequestTimings = field(default_factory=RequestTimings)
    error: Optional[str] = None
    bytes_sent: int = 0
    bytes_received: int = 0

    @property
    def failed(self) -> bool:
        return self.status == 0 or self.status >= 400

    @property
    def text(self) -> str:
        return self.body.decode("utf-8", errors="replace")

    def json(self, selector: Optional[str] = None) -> Any:
        """
        Decode the body as JSON, optionally walking a dotted path.

        Returns None when the body is not JSON or the path does not exist.
        """
        try:
            data = json.loads(self.body)
        except ValueError:
            return None
        if not selector:
            return data
        for part in selector.split("."):
            if isinstance(data, dict):
                data = data.get(part)
            elif isinstance(data, list) and part.isdigit() and int(part) < len(data):
                data = data[int(part)]
            else:
                return None
        return data


__all__ = [
    "MetricKind",
    "MetricSnapshot",
    "RequestTimings",
    "Response",
    "RunSummary",
    "Stage",
    "Threshold",
    "ThresholdResult",
    "parse_duration",
    "utc_now",
]
