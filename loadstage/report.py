"""
Summary rendering and artifact delivery.

Reporters only format what the registry and the threshold evaluator
already produced; nothing is computed here. Identical summaries render
to identical bytes.

Usage:
    from loadstage.report import DirectorySink, write_reports

    write_reports(summary, DirectorySink("/shared/results"))
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Dict, List, Optional, Protocol, Union

from loadstage.exceptions import ReportingError
from loadstage.metrics.registry import DATA_RECEIVED, HTTP_REQ_DURATION, HTTP_REQ_FAILED, HTTP_REQS
from loadstage.models import RunSummary

logger = logging.getLogger(__name__)

SUMMARY_JSON = "summary.json"
SUMMARY_TEXT = "summary.txt"


class ArtifactSink(Protocol):
    """Where rendered artifacts go. Returns a location for logging."""

    def write(self, name: str, content: str) -> str:
        ...


class DirectorySink:
    """Writes artifacts as files under a directory, creating it if needed."""

    def __init__(self, directory: Union[str, Path]) -> None:
        self.directory = Path(directory)

    def write(self, name: str, content: str) -> str:
        path = self.directory / name
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(content, encoding="utf-8")
        return str(path)


class MemorySink:
    """Keeps artifacts in memory. Handy for tests and embedding."""

    def __init__(self) -> None:
        self.artifacts: Dict[str, str] = {}

    def write(self, name: str, content: str) -> str:
        self.artifacts[name] = content
        return f"memory://{name}"


def render_json(summary: RunSummary) -> str:
    """Complete, pretty-printed JSON encoding of the summary."""
    try:
        data = summary.model_dump(mode="json")
        return json.dumps(data, indent=2, sort_keys=True, ensure_ascii=False) + "\n"
    except (TypeError, ValueError) as exc:
        raise ReportingError(
            f"Could not serialize run summary: {exc}", artifact=SUMMARY_JSON
        ) from exc


def _stat(summary: RunSummary, metric: str, key: str) -> float:
    snapshot = summary.metric(metric)
    return snapshot.value(key) if snapshot is not None else 0.0


def _fmt(val: Optional[float], decimals: int = 2) -> str:
    """Format a value, handling None."""
    if val is None:
        return "N/A"
    return f"{val:.{decimals}f}"


def render_text(summary: RunSummary, indent: str = " ") -> str:
    """
    Fixed-format human-readable summary.

    Field order and rounding are stable; downstream tooling parses them.
    """
    lines: List[str] = [
        "📊 Load Test Results Summary:",
        "==========================",
        f"Total Requests: {int(_stat(summary, HTTP_REQS, 'count'))}",
        f"Failed Requests: {_fmt(_stat(summary, HTTP_REQ_FAILED, 'rate') * 100)}%",
        f"Average Duration: {_fmt(_stat(summary, HTTP_REQ_DURATION, 'avg'))}ms",
        f"95th Percentile: {_fmt(_stat(summary, HTTP_REQ_DURATION, 'p(95)'))}ms",
        f"Max Duration: {_fmt(_stat(summary, HTTP_REQ_DURATION, 'max'))}ms",
        f"Requests/sec: {_fmt(_stat(summary, HTTP_REQS, 'rate'))}",
        f"Data Received: {_fmt(_stat(summary, DATA_RECEIVED, 'count') / 1024)} KB",
        f"Virtual Users: {summary.peak_vus}",
        f"Test Duration: {_fmt(summary.run_duration_seconds)}s",
        "",
    ]

    if summary.threshold_results:
        lines.append("Thresholds:")
        for result in summary.threshold_results:
            mark = "✓" if result.passed else "✗"
            lines.append(
                f"  {mark} {result.metric_name}: {result.expression} "
                f"(observed {_fmt(result.observed)})"
            )
    else:
        lines.append("Thresholds: none")

    if summary.aborted:
        lines.append(f"Aborted: {summary.abort_reason or 'unknown reason'}")
    lines.append(f"Result: {'PASSED' if summary.passed else 'FAILED'}")

    return "".join(f"{indent}{line}\n" if line else "\n" for line in lines)


def write_reports(summary: RunSummary, sink: ArtifactSink, indent: str = " ") -> Dict[str, str]:
    """
    Render and deliver both artifacts.

    Both writes are attempted even if the first one fails.

    Returns:
        Mapping artifact name -> location reported by the sink.

    Raises:
        ReportingError: Rendering or at least one write failed.
    """
    rendered = {
        SUMMARY_JSON: render_json(summary),
        SUMMARY_TEXT: render_text(summary, indent=indent),
    }
    locations: Dict[str, str] = {}
    failures: Dict[str, str] = {}
    for name, content in rendered.items():
        try:
            locations[name] = sink.write(name, content)
        except OSError as exc:
            logger.error("Failed to write %s: %s", name, exc)
            failures[name] = str(exc)
        else:
            logger.info("Wrote %s", locations[name])

    if failures:
        raise ReportingError(
            f"Could not write {', '.join(sorted(failures))}",
            artifact=sorted(failures)[0],
            details={"failures": failures, "written": locations},
        )
    return locations
