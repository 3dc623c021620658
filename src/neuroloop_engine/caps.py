"""Rolling admission caps recomputed from the append-only completion log.

Counters are never cached: every evaluation rebuilds them from the
completions of the user's local day and the trailing 7 days. Two devices
finishing at the same moment can both pass a cap check; such overshoots are
tolerated and surfaced by ``detect_cap_violations``.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Iterable

from .cognitive_states import S1_GAME_TYPES, S2_GAME_TYPES
from .plans import PlanModifiers
from .utils import as_utc, local_day_start

S1_DAILY_MAX = 3
S2_DAILY_MAX = 1
WEEKLY_WINDOW = timedelta(days=7)
INSIGHT_GAME_TYPE = "S2-IN"


@dataclass(frozen=True)
class CompletionRecord:
    game_type: str
    completed_at: datetime
    status: str = "completed"
    score: float | None = None
    xp_awarded: int = 0

    @property
    def counts(self) -> bool:
        return self.status == "completed"


@dataclass(frozen=True)
class GamesCaps:
    s1_daily_used: int = 0
    s1_daily_max: int = S1_DAILY_MAX
    s2_daily_used: int = 0
    s2_daily_max: int = S2_DAILY_MAX
    s2_weekly_used: int = 0
    s2_weekly_max: int = 4
    insight_weekly_used: int = 0
    insight_weekly_max: int = 2
    games_with_xp_today: int = 0

    @property
    def s1_daily_reached(self) -> bool:
        return self.s1_daily_used >= self.s1_daily_max

    @property
    def s2_daily_reached(self) -> bool:
        return self.s2_daily_used >= self.s2_daily_max

    @property
    def s2_weekly_reached(self) -> bool:
        return self.s2_weekly_used >= self.s2_weekly_max

    @property
    def insight_weekly_reached(self) -> bool:
        return self.insight_weekly_used >= self.insight_weekly_max

    def to_dict(self) -> dict[str, int]:
        return {
            "s1_daily_used": self.s1_daily_used,
            "s1_daily_max": self.s1_daily_max,
            "s2_daily_used": self.s2_daily_used,
            "s2_daily_max": self.s2_daily_max,
            "s2_weekly_used": self.s2_weekly_used,
            "s2_weekly_max": self.s2_weekly_max,
            "insight_weekly_used": self.insight_weekly_used,
            "insight_weekly_max": self.insight_weekly_max,
            "games_with_xp_today": self.games_with_xp_today,
        }


def build_games_caps(
    completions: Iterable[CompletionRecord],
    plan: PlanModifiers,
    now: datetime,
    timezone_name: str = "UTC",
) -> GamesCaps:
    now_utc = as_utc(now)
    day_start = local_day_start(now_utc, timezone_name)
    week_start = now_utc - WEEKLY_WINDOW

    s1_today = s2_today = s2_week = insight_week = xp_today = 0
    for record in completions:
        if not record.counts:
            continue
        ts = as_utc(record.completed_at)
        if ts > now_utc:
            continue
        today = ts >= day_start
        in_week = ts >= week_start
        if record.game_type in S1_GAME_TYPES:
            s1_today += today
        elif record.game_type in S2_GAME_TYPES:
            s2_today += today
            s2_week += in_week
            if record.game_type == INSIGHT_GAME_TYPE:
                insight_week += in_week
        if today and record.xp_awarded > 0:
            xp_today += 1

    return GamesCaps(
        s1_daily_used=s1_today,
        s2_daily_used=s2_today,
        s2_weekly_used=s2_week,
        s2_weekly_max=plan.s2_max_per_week,
        insight_weekly_used=insight_week,
        insight_weekly_max=plan.insight_max_per_week,
        games_with_xp_today=xp_today,
    )


def detect_cap_violations(caps: GamesCaps) -> list[str]:
    """Names of caps whose used count is past the max (a completion race)."""
    violations: list[str] = []
    if caps.s1_daily_used > caps.s1_daily_max:
        violations.append("s1_daily")
    if caps.s2_daily_used > caps.s2_daily_max:
        violations.append("s2_daily")
    if caps.s2_weekly_used > caps.s2_weekly_max:
        violations.append("s2_weekly")
    if caps.insight_weekly_used > caps.insight_weekly_max:
        violations.append("insight_weekly")
    return violations
