"""
Run configuration.

- LoadTestOptions: immutable run options (stages, thresholds, targets, ...)
- Settings: process environment (results directory, log level)

Usage:
    from loadstage.config import LoadTestOptions, get_settings

    options = LoadTestOptions.from_file("options.json")
    output_dir = options.resolved_output_dir(get_settings())
"""

from __future__ import annotations

import json
import os
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Union
from urllib.parse import urlparse

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from loadstage.exceptions import ConfigurationError
from loadstage.metrics.values import DEFAULT_MAX_SAMPLES
from loadstage.models import Stage, Threshold

DEFAULT_TARGET_URL = "http://perf-lab-nginx:9999/hello"
DEFAULT_RESULTS_DIR = "/shared/results"


class Settings:
    """Configuration loaded from environment variables."""

    def __init__(self) -> None:
        # Where summary.json / summary.txt land unless options say otherwise.
        self.results_dir: str = os.getenv("RESULTS_DIR", DEFAULT_RESULTS_DIR)
        self.log_level: str = os.getenv("LOADSTAGE_LOG_LEVEL", "INFO").upper()
        # Overrides the configured target list when set.
        self.target_url: Optional[str] = os.getenv("LOADSTAGE_TARGET_URL")


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


def reset_settings() -> None:
    """Clear settings cache. For testing only."""
    get_settings.cache_clear()


class ThresholdSpec(BaseModel):
    """Long threshold form: {"threshold": "rate<0.1", "abortOnFail": true}."""

    model_config = ConfigDict(extra="forbid", frozen=True, populate_by_name=True)

    threshold: str
    abort_on_fail: bool = Field(default=False, alias="abortOnFail")


class LoadTestOptions(BaseModel):
    """
    Options for one run. Supplied once, immutable afterwards.

    Attributes:
        stages: Ordered ramp profile. Empty means no load.
        thresholds: Metric name -> list of expressions (or ThresholdSpec).
        targets: URLs the built-in workload requests.
        pacing: Seconds each virtual user sleeps between iterations.
        request_timeout: Per-request timeout in seconds.
        tick_interval: Scheduler tick in seconds.
        threshold_interval: How often abortOnFail thresholds are checked.
        abort_on_error: Stop the run on the first failed iteration.
        max_samples: Exact samples kept per Trend before approximating.
        output_dir: Artifact directory. Defaults to RESULTS_DIR.
        ext: Free-form passthrough (e.g. load zone distribution).
    """

    model_config = ConfigDict(extra="forbid", frozen=True, populate_by_name=True)

    stages: List[Stage] = Field(default_factory=list)
    thresholds: Dict[str, List[Union[str, ThresholdSpec]]] = Field(default_factory=dict)
    targets: List[str] = Field(default_factory=lambda: [DEFAULT_TARGET_URL])
    pacing: float = Field(default=1.0, ge=0)
    request_timeout: float = Field(default=30.0, gt=0)
    tick_interval: float = Field(default=0.1, gt=0)
    threshold_interval: float = Field(default=1.0, gt=0)
    abort_on_error: bool = False
    max_samples: int = Field(default=DEFAULT_MAX_SAMPLES, ge=1)
    output_dir: Optional[str] = None
    ext: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("targets")
    @classmethod
    def _check_targets(cls, targets: List[str]) -> List[str]:
        for target in targets:
            parsed = urlparse(target)
            if parsed.scheme not in ("http", "https") or not parsed.netloc:
                raise ValueError(f"target must be an http(s) URL: {target!r}")
        return targets

    def threshold_list(self) -> List[Threshold]:
        """Flatten the thresholds mapping, preserving configuration order."""
        result: List[Threshold] = []
        for metric_name, entries in self.thresholds.items():
            for entry in entries:
                if isinstance(entry, ThresholdSpec):
                    result.append(
                        Threshold(
                            metric_name=metric_name,
                            expression=entry.threshold,
                            abort_on_fail=entry.abort_on_fail,
                        )
                    )
                else:
                    result.append(Threshold(metric_name=metric_name, expression=entry))
        return result

    def resolved_output_dir(self, settings: Optional[Settings] = None) -> str:
        if self.output_dir:
            return self.output_dir
        return (settings or get_settings()).results_dir

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "LoadTestOptions":
        """Validate raw options. Raises ConfigurationError."""
        try:
            return cls.model_validate(dict(data))
        except ValidationError as exc:
            first = exc.errors()[0]
            location = ".".join(str(part) for part in first["loc"])
            raise ConfigurationError(
                f"Invalid options at '{location}': {first['msg']}",
                code="invalid_options",
                details={"errors": exc.errors(include_url=False, include_context=False)},
            ) from exc

    @classmethod
    def from_file(cls, path: Union[str, Path]) -> "LoadTestOptions":
        try:
            with open(path, "r", encoding="utf-8") as handle:
                data = json.load(handle)
        except OSError as exc:
            raise ConfigurationError(
                f"Cannot read options file {path}: {exc}", code="options_unreadable"
            ) from exc
        except ValueError as exc:
            raise ConfigurationError(
                f"Options file {path} is not valid JSON: {exc}", code="options_invalid_json"
            ) from exc
        if not isinstance(data, dict):
            raise ConfigurationError("Options file must contain a JSON object.", code="invalid_options")
        return cls.from_dict(data)


def default_options() -> LoadTestOptions:
    """Ramp to 5, hold/ramp to 10, ramp down; p95 under 500ms and under 10% errors."""
    return LoadTestOptions(
        stages=[
            Stage(duration="10s", target=5),
            Stage(duration="20s", target=10),
            Stage(duration="10s", target=0),
        ],
        thresholds={
            "http_req_duration": ["p(95)<500"],
            "http_req_failed": ["rate<0.1"],
        },
        ext={
            "loadimpact": {
                "distribution": {
                    "amazon:us:ashburn": {"loadZone": "amazon:us:ashburn", "percent": 100},
                },
            },
        },
    )
