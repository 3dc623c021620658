"""Unlock suggestion catalog.

Turns metric shortfalls into concrete actions that restore eligibility.
Used by games gating (short action labels) and by the content override
surface (full suggestions with time and expected gain).
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, Literal

UnlockMetric = Literal["sharpness", "readiness", "recovery", "s2_capacity"]
ActionType = Literal["focus", "detox", "rest", "delay", "game"]

MAX_SUGGESTIONS = 3


@dataclass(frozen=True)
class MetricGap:
    metric: str
    current: float
    required: float

    @property
    def gap(self) -> float:
        return max(0.0, self.required - self.current)


@dataclass(frozen=True)
class UnlockSuggestion:
    id: str
    action: str
    estimated_time: str
    target_metric: str
    estimated_gain: int
    action_type: ActionType
    priority: int


_SUGGESTION_POOLS: dict[str, tuple[UnlockSuggestion, ...]] = {
    "sharpness": (
        UnlockSuggestion("s1-ae-session", "Complete an S1-AE Focus session", "10-15 min", "sharpness", 12, "game", 1),
        UnlockSuggestion("focus-block", "90-minute focused work block (no context switching)", "90 min", "sharpness", 10, "focus", 2),
        UnlockSuggestion("breathing-reset", "5-minute breathing reset", "5 min", "sharpness", 5, "rest", 3),
    ),
    "readiness": (
        UnlockSuggestion("delay-task", "Delay by 2-4 hours", "2-4 hours", "readiness", 10, "delay", 1),
        UnlockSuggestion("short-rest", "Short nap or eyes-closed rest (10-20 min)", "10-20 min", "readiness", 8, "rest", 2),
        UnlockSuggestion("low-load-block", "Low-cognitive-load activity for 60 min", "60 min", "readiness", 6, "rest", 3),
    ),
    "recovery": (
        UnlockSuggestion("detox-session", "30-60 min Detox session (no input)", "30-60 min", "recovery", 15, "detox", 1),
        UnlockSuggestion("walk-session", "30 min walk (no screens)", "30 min", "recovery", 10, "detox", 2),
        UnlockSuggestion("no-screens", "No screens for 45 min", "45 min", "recovery", 8, "detox", 3),
    ),
    "s2_capacity": (
        UnlockSuggestion("s2-ct-session", "Complete an S2-CT Reasoning session (if available)", "15-20 min", "s2_capacity", 10, "game", 1),
        UnlockSuggestion("build-sharpness-first", "Build Sharpness with S1-AE session first", "10-15 min", "s2_capacity", 8, "game", 2),
        UnlockSuggestion("rest-for-s2", "Rest and try again later", "1-2 hours", "s2_capacity", 6, "rest", 3),
    ),
}

_GAME_ACTIONS: dict[str, tuple[str, ...]] = {
    "sharpness": ("Complete an S1-AE session", "90-min focus block"),
    "readiness": ("Delay by 2-4 hours", "Short rest (10-20 min)"),
    "recovery": ("30-min detox session", "30-min walk"),
}


def unlock_suggestions(
    metric_gaps: Iterable[MetricGap],
    *,
    games_enabled: bool = True,
) -> list[UnlockSuggestion]:
    """At most three suggestions, one per gap, largest gap first."""
    suggestions: list[UnlockSuggestion] = []
    seen: set[str] = set()
    for gap in sorted(metric_gaps, key=lambda g: g.gap, reverse=True):
        if len(suggestions) >= MAX_SUGGESTIONS:
            break
        pool = _SUGGESTION_POOLS.get(gap.metric, ())
        if not games_enabled:
            pool = tuple(s for s in pool if s.action_type != "game")
        candidates = sorted((s for s in pool if s.id not in seen), key=lambda s: s.priority)
        if candidates:
            suggestions.append(candidates[0])
            seen.add(candidates[0].id)
    return suggestions


def game_unlock_actions(metric_gaps: Iterable[MetricGap]) -> list[str]:
    """Short action labels for a withheld game, deduplicated, at most three."""
    actions: list[str] = []
    for gap in metric_gaps:
        labels = _GAME_ACTIONS.get(gap.metric, ())
        if gap.metric == "sharpness" and gap.gap <= 10:
            labels = labels[1:]
        for label in labels:
            if label not in actions:
                actions.append(label)
    return actions[:MAX_SUGGESTIONS]


def unlock_window(metric_gaps: Iterable[MetricGap]) -> str:
    total = sum(g.gap for g in metric_gaps)
    if total <= 10:
        return "within 1-2 hours"
    if total <= 20:
        return "later today"
    if total <= 35:
        return "tomorrow morning"
    return "after sustained recovery"
