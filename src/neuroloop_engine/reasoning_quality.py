"""Reasoning Quality (RQ).

RQ measures how stable and primed System-2 reasoning is, separately from the
raw S2 skill level:

    RQ = 0.50·S2_Core + 0.30·S2_Consistency + 0.20·Task_Priming - decay

bounded below by ``S2_Core - 10`` and to [0, 100].

Two consistency notions coexist and are kept apart:
- ``calculate_s2_consistency`` is the windowed score spread over the last
  10 S2 sessions and feeds RQ.
- ``get_s2_consistency_delta`` updates the persisted consistency
  accumulator after each S2 session.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Iterable, Literal, Sequence

from .utils import as_float, as_utc, clamp, whole_days_between

S2_GAME_WINDOW = 10
S2_MIN_SESSIONS_FOR_CONSISTENCY = 5
S2_FALLBACK_CONSISTENCY = 50.0
STD_DEV_SATURATION = 50.0

TASK_WINDOW_DAYS = 7
TASK_FULL_WEIGHT_COUNT = 5
TASK_DIMINISHED_WEIGHT = 0.5
TASK_RECENCY_FLOOR = 0.3
TASK_RECENCY_STEP = 0.1

DECAY_GRACE_DAYS = 14
DECAY_PER_WEEK = 2.0
FLOOR_MARGIN = 10.0

CORE_WEIGHT = 0.50
CONSISTENCY_WEIGHT = 0.30
PRIMING_WEIGHT = 0.20

TaskType = Literal["podcast", "article", "book"]

TASK_TYPE_WEIGHTS: dict[str, float] = {
    "podcast": 12.0,
    "article": 15.0,
    "book": 20.0,
}
_DEFAULT_TASK_WEIGHT = TASK_TYPE_WEIGHTS["podcast"]


@dataclass(frozen=True)
class TaskCompletion:
    type: str
    completed_at: datetime


@dataclass(frozen=True)
class RQResult:
    rq: float
    s2_core: float
    s2_consistency: float
    task_priming: float
    s2_core_contribution: float
    s2_consistency_contribution: float
    task_priming_contribution: float
    base_rq: float
    decay: float
    floor: float
    days_since_activity: int | None

    @property
    def is_decaying(self) -> bool:
        return self.decay > 0

    @property
    def rounded(self) -> int:
        return int(round(self.rq))

    def to_dict(self) -> dict:
        return {
            "rq": round(self.rq, 1),
            "s2_core": round(self.s2_core, 1),
            "s2_consistency": round(self.s2_consistency, 1),
            "task_priming": round(self.task_priming, 1),
            "contributions": {
                "s2_core": round(self.s2_core_contribution, 2),
                "s2_consistency": round(self.s2_consistency_contribution, 2),
                "task_priming": round(self.task_priming_contribution, 2),
            },
            "decay": self.decay,
            "floor": round(self.floor, 1),
            "is_decaying": self.is_decaying,
        }


def calculate_s2_core(s2: float) -> float:
    value = as_float(s2)
    if value is None:
        return 0.0
    return clamp(value, 0.0, 100.0)


def calculate_s2_consistency(scores: Sequence[float]) -> float:
    """100 minus the normalized std dev of the last 10 S2 session scores.

    ``scores`` is ordered oldest to newest. Fewer than 5 usable scores in
    the window returns the neutral 50.
    """
    usable = [v for v in (as_float(s) for s in scores) if v is not None]
    window = usable[-S2_GAME_WINDOW:]
    if len(window) < S2_MIN_SESSIONS_FOR_CONSISTENCY:
        return S2_FALLBACK_CONSISTENCY

    mean = sum(window) / len(window)
    variance = sum((s - mean) ** 2 for s in window) / len(window)
    std_dev = math.sqrt(variance)
    penalty = clamp(std_dev / STD_DEV_SATURATION * 100, 0.0, 100.0)
    return clamp(100 - penalty, 0.0, 100.0)


def calculate_single_task_contribution(
    task_type: str,
    completed_at: datetime | None,
    now: datetime,
) -> float:
    """Points one content completion adds to Task_Priming before diminishing returns."""
    base = TASK_TYPE_WEIGHTS.get(task_type, _DEFAULT_TASK_WEIGHT)
    if completed_at is None:
        return base
    days_ago = whole_days_between(completed_at, now)
    recency = max(TASK_RECENCY_FLOOR, 1 - days_ago * TASK_RECENCY_STEP)
    return round(base * recency, 1)


def calculate_task_priming(tasks: Iterable[TaskCompletion], now: datetime) -> float:
    now_utc = as_utc(now)
    window_start = now_utc - timedelta(days=TASK_WINDOW_DAYS)
    recent = [
        t for t in tasks
        if window_start <= as_utc(t.completed_at) <= now_utc
    ]
    if not recent:
        return 0.0

    # Most recent first; tasks past the fifth count at half weight.
    recent.sort(key=lambda t: as_utc(t.completed_at), reverse=True)
    total = 0.0
    for rank, task in enumerate(recent):
        points = calculate_single_task_contribution(task.type, task.completed_at, now_utc)
        if rank >= TASK_FULL_WEIGHT_COUNT:
            points *= TASK_DIMINISHED_WEIGHT
        total += points
    return clamp(total, 0.0, 100.0)


def _latest(*timestamps: datetime | None) -> datetime | None:
    present = [as_utc(ts) for ts in timestamps if ts is not None]
    return max(present) if present else None


def calculate_rq_decay(
    last_s2_game_at: datetime | None,
    last_task_at: datetime | None,
    now: datetime,
) -> tuple[float, int | None]:
    """Return (decay points, days since last activity).

    No decay through day 14 of inactivity, then 2 points per started week.
    A user with no activity at all is not decayed.
    """
    last_activity = _latest(last_s2_game_at, last_task_at)
    if last_activity is None:
        return 0.0, None
    days = whole_days_between(last_activity, now)
    if days <= DECAY_GRACE_DAYS:
        return 0.0, days
    weeks = math.ceil((days - DECAY_GRACE_DAYS) / 7)
    return weeks * DECAY_PER_WEEK, days


def calculate_rq(
    s2: float,
    s2_game_scores: Sequence[float],
    task_completions: Iterable[TaskCompletion],
    last_s2_game_at: datetime | None,
    last_task_at: datetime | None,
    now: datetime,
) -> RQResult:
    s2_core = calculate_s2_core(s2)
    s2_consistency = calculate_s2_consistency(s2_game_scores)
    task_priming = calculate_task_priming(task_completions, now)

    core_part = s2_core * CORE_WEIGHT
    consistency_part = s2_consistency * CONSISTENCY_WEIGHT
    priming_part = task_priming * PRIMING_WEIGHT
    base_rq = core_part + consistency_part + priming_part

    decay, days = calculate_rq_decay(last_s2_game_at, last_task_at, now)
    floor = max(0.0, s2_core - FLOOR_MARGIN)
    # Kept unrounded so the floor holds exactly; round when reporting.
    rq = clamp(base_rq - decay, floor, 100.0)

    return RQResult(
        rq=rq,
        s2_core=s2_core,
        s2_consistency=s2_consistency,
        task_priming=task_priming,
        s2_core_contribution=core_part,
        s2_consistency_contribution=consistency_part,
        task_priming_contribution=priming_part,
        base_rq=base_rq,
        decay=decay,
        floor=floor,
        days_since_activity=days,
    )


def calculate_s2_session_quality(
    accuracy: float,
    timing_consistency: float,
    coherence: float,
) -> float:
    """Session quality in [0, 1] from three 0-100 sub-scores."""
    acc = clamp((as_float(accuracy) or 0.0) / 100, 0.0, 1.0)
    timing = clamp((as_float(timing_consistency) or 0.0) / 100, 0.0, 1.0)
    coh = clamp((as_float(coherence) or 0.0) / 100, 0.0, 1.0)
    return 0.5 * acc + 0.3 * timing + 0.2 * coh


def get_s2_consistency_delta(session_quality: float) -> int:
    if session_quality >= 0.70:
        return 2
    if session_quality >= 0.50:
        return 0
    return -1


def apply_consistency_delta(accumulator: float | None, delta: int) -> float:
    current = as_float(accumulator)
    if current is None:
        current = S2_FALLBACK_CONSISTENCY
    return clamp(current + delta, 0.0, 100.0)


def rq_multiplier(rq: float | None) -> float:
    """Cognitive-age modulation factor in [0.85, 1.0]."""
    value = as_float(rq)
    if value is None:
        return 0.85
    return clamp(0.85 + 0.15 * (value / 100), 0.85, 1.0)
