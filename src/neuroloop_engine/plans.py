"""Training plan tiers and their static modifiers."""

from __future__ import annotations

from dataclasses import dataclass
from types import MappingProxyType
from typing import Literal, Mapping

PlanId = Literal["light", "expert", "superhuman"]

DEFAULT_PLAN: PlanId = "light"


@dataclass(frozen=True)
class PlanModifiers:
    plan_id: str
    s2_threshold_modifier: int
    require_rec_for_s2: float
    insight_max_per_week: int
    s2_max_per_week: int
    daily_games_with_xp: int
    s2_recovery_floor_protection: bool = False


PLAN_MODIFIERS: Mapping[str, PlanModifiers] = MappingProxyType({
    "light": PlanModifiers(
        plan_id="light",
        s2_threshold_modifier=3,
        require_rec_for_s2=50,
        insight_max_per_week=2,
        s2_max_per_week=4,
        daily_games_with_xp=3,
    ),
    "expert": PlanModifiers(
        plan_id="expert",
        s2_threshold_modifier=0,
        require_rec_for_s2=50,
        insight_max_per_week=3,
        s2_max_per_week=7,
        daily_games_with_xp=5,
    ),
    "superhuman": PlanModifiers(
        plan_id="superhuman",
        s2_threshold_modifier=-5,
        require_rec_for_s2=55,
        insight_max_per_week=4,
        s2_max_per_week=10,
        daily_games_with_xp=7,
        s2_recovery_floor_protection=True,
    ),
})


def normalize_plan_id(value: object) -> PlanId:
    if isinstance(value, str):
        key = value.strip().lower()
        if key in PLAN_MODIFIERS:
            return key  # type: ignore[return-value]
    return DEFAULT_PLAN


def get_plan_modifiers(plan_id: object) -> PlanModifiers:
    """Modifiers for ``plan_id``; unknown ids fall back to the strictest plan."""
    return PLAN_MODIFIERS[normalize_plan_id(plan_id)]


def capped_game_xp(base_xp: int, games_with_xp_today: int, plan: PlanModifiers) -> int:
    """XP for a finished game, 0 once the plan's daily XP-game allowance is used."""
    if base_xp <= 0:
        return 0
    if games_with_xp_today >= plan.daily_games_with_xp:
        return 0
    return base_xp


def remaining_xp_games(games_with_xp_today: int, plan: PlanModifiers) -> int:
    return max(0, plan.daily_games_with_xp - games_with_xp_today)
