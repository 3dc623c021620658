"""Rate-limited override of withheld non-game content.

Limits: 1 override per local day, 3 per week (weeks start Monday), none at
all while the S1 buffer (recovery) is below 40. Every override already
used today costs 3 points of S2 capacity for further content.
Games and ``PROTECTION`` results can never be overridden.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Iterable

from .content_gating import ContentGatingResult
from .gating import GameGatingResult
from .unlock import UnlockSuggestion, unlock_suggestions
from .utils import as_utc, local_day_start, local_week_start

MAX_DAILY_OVERRIDES = 1
MAX_WEEKLY_OVERRIDES = 3
MIN_S1_BUFFER_FOR_OVERRIDE = 40
S2_PENALTY_PER_OVERRIDE = 3


@dataclass(frozen=True)
class OverrideRecord:
    task_id: str
    task_type: str
    created_at: datetime
    s2_capacity_at_override: float
    s1_buffer_at_override: float


@dataclass(frozen=True)
class OverrideDecision:
    allowed: bool
    reason_code: str | None
    today_count: int
    week_count: int
    s2_penalty: int
    adjusted_s2_capacity: float
    suggestions: tuple[UnlockSuggestion, ...] = ()

    @property
    def remaining_daily(self) -> int:
        return max(0, MAX_DAILY_OVERRIDES - self.today_count)

    @property
    def remaining_weekly(self) -> int:
        return max(0, MAX_WEEKLY_OVERRIDES - self.week_count)

    def to_dict(self) -> dict:
        return {
            "allowed": self.allowed,
            "reason_code": self.reason_code,
            "today_count": self.today_count,
            "week_count": self.week_count,
            "remaining_daily": self.remaining_daily,
            "remaining_weekly": self.remaining_weekly,
            "s2_penalty": self.s2_penalty,
            "adjusted_s2_capacity": self.adjusted_s2_capacity,
            "suggestions": [s.id for s in self.suggestions],
        }


def count_overrides(
    history: Iterable[OverrideRecord],
    now: datetime,
    timezone_name: str = "UTC",
) -> tuple[int, int]:
    """(overrides today, overrides this week) in the user's local calendar."""
    now_utc = as_utc(now)
    day_start = local_day_start(now_utc, timezone_name)
    week_start = local_week_start(now_utc, timezone_name)
    today = week = 0
    for record in history:
        ts = as_utc(record.created_at)
        if ts > now_utc:
            continue
        if ts >= week_start:
            week += 1
        if ts >= day_start:
            today += 1
    return today, week


def s2_penalty_for(today_count: int) -> int:
    return today_count * S2_PENALTY_PER_OVERRIDE


def evaluate_override(
    result: ContentGatingResult | GameGatingResult,
    history: Iterable[OverrideRecord],
    s1_buffer: float,
    s2_capacity: float,
    now: datetime,
    timezone_name: str = "UTC",
) -> OverrideDecision:
    today, week = count_overrides(history, now, timezone_name)
    penalty = s2_penalty_for(today)
    adjusted = max(0.0, s2_capacity - penalty)

    def decide(allowed: bool, reason: str | None) -> OverrideDecision:
        suggestions: tuple[UnlockSuggestion, ...] = ()
        if isinstance(result, ContentGatingResult) and result.metric_gaps:
            suggestions = tuple(unlock_suggestions(result.metric_gaps))
        return OverrideDecision(allowed, reason, today, week, penalty, adjusted, suggestions)

    if isinstance(result, GameGatingResult) or result.is_game:
        return decide(False, "GAME_NOT_OVERRIDABLE")
    if result.status == "ENABLED":
        return decide(False, "NOT_WITHHELD")
    if result.status != "WITHHELD":
        return decide(False, "PROTECTION_NOT_OVERRIDABLE")
    if s1_buffer < MIN_S1_BUFFER_FOR_OVERRIDE:
        return decide(False, "S1_BUFFER_TOO_LOW")
    if today >= MAX_DAILY_OVERRIDES:
        return decide(False, "DAILY_OVERRIDE_LIMIT")
    if week >= MAX_WEEKLY_OVERRIDES:
        return decide(False, "WEEKLY_OVERRIDE_LIMIT")
    return decide(True, None)


def record_override(
    task_id: str,
    task_type: str,
    s1_buffer: float,
    s2_capacity: float,
    now: datetime,
) -> OverrideRecord:
    return OverrideRecord(
        task_id=task_id,
        task_type=task_type,
        created_at=as_utc(now),
        s2_capacity_at_override=s2_capacity,
        s1_buffer_at_override=s1_buffer,
    )
