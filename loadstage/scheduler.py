"""Stage schedule: ordered (duration, target) legs -> concurrency target at elapsed time.

Single source of truth for how many virtual users should be live. Used by the
run loop to drive the pool and by the dashboard to show the expected count.
"""

from __future__ import annotations

import bisect
import math
from collections.abc import Iterable

from .exceptions import InvalidScheduleError
from .models import Stage


def _round_half_up(x: float) -> int:
    return int(math.floor(x + 0.5))


class StageScheduler:
    """Piecewise-linear concurrency target built once from a stage sequence.

    Each stage moves the target linearly from the previous stage's target
    (or start_target for the first stage) to its own target over its
    duration. A zero-duration stage is a step change.
    """

    __slots__ = ("_stages", "_start_target", "_boundaries", "_total")

    def __init__(self, stages: Iterable[Stage], start_target: int = 0) -> None:
        stages = tuple(stages)
        validate_stages(stages, start_target)
        self._stages = stages
        self._start_target = start_target
        # _boundaries[i] = elapsed time at which stage i ends
        boundaries: list[float] = []
        acc = 0.0
        for s in stages:
            acc += s.duration_seconds
            boundaries.append(acc)
        self._boundaries = boundaries
        self._total = acc

    @property
    def stages(self) -> tuple[Stage, ...]:
        return self._stages

    @property
    def total_duration(self) -> float:
        return self._total

    @property
    def start_target(self) -> int:
        return self._start_target

    def is_complete(self, elapsed: float) -> bool:
        return elapsed >= self._total

    def target_at(self, elapsed: float) -> int:
        """Integer target at `elapsed` seconds since run start (rounded half-up)."""
        if elapsed <= 0:
            return self._start_target
        if elapsed >= self._total:
            return self._stages[-1].target
        # First stage whose end lies strictly after elapsed; zero-length stages
        # ending exactly at elapsed are therefore already applied.
        idx = bisect.bisect_right(self._boundaries, elapsed)
        stage = self._stages[idx]
        prev_target = self._stages[idx - 1].target if idx > 0 else self._start_target
        stage_start = self._boundaries[idx] - stage.duration_seconds
        progress = (elapsed - stage_start) / stage.duration_seconds
        return _round_half_up(prev_target + (stage.target - prev_target) * progress)

    def __repr__(self) -> str:
        legs = ", ".join(f"{s.duration_seconds:g}s->{s.target}" for s in self._stages)
        return f"StageScheduler([{legs}], start_target={self._start_target})"


def validate_stages(stages: tuple[Stage, ...], start_target: int = 0) -> None:
    """Raise InvalidScheduleError if the stage sequence cannot be scheduled."""
    if not stages:
        raise InvalidScheduleError("stage sequence must not be empty")
    if start_target < 0:
        raise InvalidScheduleError("start target must be >= 0", context={"start_target": start_target})
    for i, s in enumerate(stages):
        if s.duration_seconds < 0 or not math.isfinite(s.duration_seconds):
            raise InvalidScheduleError(
                "stage duration must be a finite value >= 0",
                context={"stage": i, "duration_seconds": s.duration_seconds},
            )
        if s.target < 0:
            raise InvalidScheduleError("stage target must be >= 0", context={"stage": i, "target": s.target})
    if sum(s.duration_seconds for s in stages) <= 0:
        raise InvalidScheduleError("total schedule duration must be > 0")
