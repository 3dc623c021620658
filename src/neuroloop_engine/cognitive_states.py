"""Cognitive skill states (AE, RA, CT, IN) and the post-game skill update.

S1 = avg(AE, RA) is the fast/intuitive grouping, S2 = avg(CT, IN) the
deliberate/analytical one. Values are owned by the skill tracker and only
read here, except for the bounded-delta update applied by the completion
write-back.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from typing import Literal

from .utils import as_float, clamp

SkillName = Literal["ae", "ra", "ct", "in_"]
GameType = Literal["S1-AE", "S1-RA", "S2-CT", "S2-IN"]

GAME_TYPES: tuple[GameType, ...] = ("S1-AE", "S1-RA", "S2-CT", "S2-IN")
S1_GAME_TYPES: frozenset[str] = frozenset({"S1-AE", "S1-RA"})
S2_GAME_TYPES: frozenset[str] = frozenset({"S2-CT", "S2-IN"})

SKILL_FOR_GAME: dict[str, SkillName] = {
    "S1-AE": "ae",
    "S1-RA": "ra",
    "S2-CT": "ct",
    "S2-IN": "in_",
}

XP_TO_SKILL_FACTOR = 0.5


def _skill(value: object) -> float:
    parsed = as_float(value)
    if parsed is None:
        return 0.0
    return clamp(parsed, 0.0, 100.0)


def system_type_for_game(game_type: str) -> Literal["S1", "S2"]:
    return "S2" if game_type in S2_GAME_TYPES else "S1"


@dataclass(frozen=True)
class CognitiveStates:
    ae: float = 0.0
    ra: float = 0.0
    ct: float = 0.0
    in_: float = 0.0
    version: int = 0

    def __post_init__(self) -> None:
        for name in ("ae", "ra", "ct", "in_"):
            object.__setattr__(self, name, _skill(getattr(self, name)))

    @property
    def s1(self) -> float:
        return (self.ae + self.ra) / 2

    @property
    def s2(self) -> float:
        return (self.ct + self.in_) / 2

    @classmethod
    def from_row(cls, row: dict | None) -> CognitiveStates:
        if not row:
            return cls()
        return cls(
            ae=row.get("ae"),
            ra=row.get("ra"),
            ct=row.get("ct"),
            in_=row.get("in_score", row.get("in")),
            version=int(row.get("version") or 0),
        )


def skill_delta(xp_awarded: float) -> float:
    xp = as_float(xp_awarded) or 0.0
    if xp <= 0:
        return 0.0
    return xp * XP_TO_SKILL_FACTOR


def apply_game_result(states: CognitiveStates, game_type: str, xp_awarded: float) -> CognitiveStates:
    """Raise the skill routed from ``game_type`` by the XP-derived delta.

    No XP (e.g. the daily XP cap was reached) leaves the record unchanged.
    """
    skill = SKILL_FOR_GAME.get(game_type)
    delta = skill_delta(xp_awarded)
    if skill is None or delta == 0:
        return states
    current = getattr(states, skill)
    return replace(
        states,
        **{skill: clamp(current + delta, 0.0, 100.0)},
        version=states.version + 1,
    )
