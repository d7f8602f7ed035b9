"""
Stage schedule: turns a declarative stage list into a target concurrency.

The schedule is an explicit state machine. For a wall-clock offset it
reports {stage_index, elapsed_in_stage, current_target}. Targets ramp
linearly from the previous stage's target (0 before the first stage) to the
current stage's target. Zero-duration stages jump to their target. Once the
last stage ends the target is 0 and the schedule is finished.

Usage:
    schedule = StageSchedule([{"duration": "10s", "target": 5}])
    schedule.advance(5.0).current_target  # 2
"""
from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Any, List, Mapping, Sequence, Tuple, Union

from pydantic import ValidationError

from loadstage.exceptions import ConfigurationError
from loadstage.models import Stage

StageLike = Union[Stage, Mapping[str, Any]]


@dataclass(frozen=True)
class ScheduleState:
    """Where the schedule is at a given offset."""
    stage_index: int  # == len(stages) once finished
    elapsed_in_stage: float
    current_target: int
    finished: bool = False


def coerce_stages(stages: Sequence[StageLike]) -> Tuple[Stage, ...]:
    """Validate a stage list, raising ConfigurationError on the first bad entry."""
    result: List[Stage] = []
    for index, raw in enumerate(stages):
        if isinstance(raw, Stage):
            result.append(raw)
            continue
        try:
            result.append(Stage.model_validate(raw))
        except ValidationError as exc:
            raise ConfigurationError(
                f"Invalid stage #{index}: {exc.errors()[0]['msg']}",
                code="invalid_stage",
                details={"index": index, "stage": dict(raw) if isinstance(raw, Mapping) else raw},
            ) from exc
    return tuple(result)


class StageSchedule:
    """Immutable ramp profile built from an ordered list of stages."""

    def __init__(self, stages: Sequence[StageLike]) -> None:
        self._stages = coerce_stages(stages)
        starts = []
        offset = 0.0
        for stage in self._stages:
            starts.append(offset)
            offset += stage.duration
        self._starts: Tuple[float, ...] = tuple(starts)
        self._total = offset

    @property
    def stages(self) -> Tuple[Stage, ...]:
        return self._stages

    @property
    def total_duration(self) -> float:
        return self._total

    @property
    def max_target(self) -> int:
        return max((stage.target for stage in self._stages), default=0)

    def advance(self, elapsed: float) -> ScheduleState:
        index, in_stage, target = self._locate(elapsed)
        finished = index >= len(self._stages)
        # Floor, with a little slack so a ramp lands exactly on its target.
        current = 0 if finished else int(math.floor(target + 1e-9))
        return ScheduleState(
            stage_index=index,
            elapsed_in_stage=in_stage,
            current_target=current,
            finished=finished,
        )

    def _locate(self, elapsed: float) -> Tuple[int, float, float]:
        elapsed = max(0.0, elapsed)
        previous = 0
        for index, stage in enumerate(self._stages):
            start = self._starts[index]
            if elapsed < start + stage.duration:
                in_stage = elapsed - start
                progress = in_stage / stage.duration
                target = previous + (stage.target - previous) * progress
                return index, in_stage, target
            previous = stage.target
        return len(self._stages), 0.0, 0.0

    def describe(self) -> str:
        if not self._stages:
            return "no stages"
        parts = [f"{stage.duration:g}s->{stage.target}" for stage in self._stages]
        return ", ".join(parts)
