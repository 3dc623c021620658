"""Games gating: per-game admission from metrics, rolling caps and the plan.

Each game type owns an ordered tuple of ``GateRule``s. Rules are walked in
priority order (caps, plan recovery floor, recovery, sharpness, readiness)
and the first violated rule supplies the status and the single reason code.
No violation means ``ENABLED``.

Missing or non-finite metrics never enable content: the metric's rule slot
resolves to ``WITHHELD`` / ``METRIC_UNAVAILABLE``.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Callable, Literal

from .caps import GamesCaps
from .cognitive_states import GAME_TYPES, S2_GAME_TYPES, GameType
from .plans import PlanModifiers, get_plan_modifiers
from .unlock import MetricGap, game_unlock_actions
from .utils import as_float

Status = Literal["ENABLED", "WITHHELD", "PROTECTION"]
Metric = Literal["recovery", "sharpness", "readiness"]

ENABLED: Status = "ENABLED"
WITHHELD: Status = "WITHHELD"
PROTECTION: Status = "PROTECTION"

CAP_REACHED_DAILY_S1 = "CAP_REACHED_DAILY_S1"
CAP_REACHED_DAILY_S2 = "CAP_REACHED_DAILY_S2"
CAP_REACHED_WEEKLY_S2 = "CAP_REACHED_WEEKLY_S2"
CAP_REACHED_WEEKLY_IN = "CAP_REACHED_WEEKLY_IN"
SUPERHUMAN_REC_REQUIRED = "SUPERHUMAN_REC_REQUIRED"
METRIC_UNAVAILABLE = "METRIC_UNAVAILABLE"
RECOVERY_TOO_LOW = "RECOVERY_TOO_LOW"
SHARPNESS_TOO_LOW = "SHARPNESS_TOO_LOW"
SHARPNESS_TOO_HIGH = "SHARPNESS_TOO_HIGH"
READINESS_TOO_LOW = "READINESS_TOO_LOW"
READINESS_OUT_OF_RANGE = "READINESS_OUT_OF_RANGE"

CAP_REASON_CODES: frozenset[str] = frozenset({
    CAP_REACHED_DAILY_S1,
    CAP_REACHED_DAILY_S2,
    CAP_REACHED_WEEKLY_S2,
    CAP_REACHED_WEEKLY_IN,
})
SAFETY_RULE_REASONS: frozenset[str] = frozenset({RECOVERY_TOO_LOW, SUPERHUMAN_REC_REQUIRED})


@dataclass(frozen=True)
class GatingSnapshot:
    sharpness: float | None
    readiness: float | None
    recovery_effective: float | None
    caps: GamesCaps
    plan: PlanModifiers = field(default_factory=lambda: get_plan_modifiers(None))

    def metric(self, name: str) -> float | None:
        if name == "recovery":
            return as_float(self.recovery_effective)
        return as_float(getattr(self, name))


@dataclass(frozen=True)
class GateDetails:
    metric: str | None = None
    current_value: float | None = None
    required_value: float | None = None


@dataclass(frozen=True)
class GameGatingResult:
    type: str
    status: Status
    reason_code: str | None = None
    details: GateDetails = field(default_factory=GateDetails)
    unlock_actions: tuple[str, ...] = ()

    @property
    def enabled(self) -> bool:
        return self.status == ENABLED

    def to_dict(self) -> dict:
        return {
            "type": self.type,
            "status": self.status,
            "reason_code": self.reason_code,
            "details": {
                "current_value": self.details.current_value,
                "required_value": self.details.required_value,
                "metric": self.details.metric,
            },
            "unlock_actions": list(self.unlock_actions),
        }


@dataclass(frozen=True)
class Violation:
    reason_code: str
    status: Status
    details: GateDetails
    gap: MetricGap | None = None


# A check returns None when the rule passes.
Check = Callable[[GatingSnapshot], "Violation | None"]


@dataclass(frozen=True)
class GateRule:
    reason_code: str
    status: Status
    predicate: Check

    def evaluate(self, snapshot: GatingSnapshot) -> Violation | None:
        return self.predicate(snapshot)


# ---------------------------------------------------------------------------
# Rule factories
# ---------------------------------------------------------------------------


def _cap_rule(reason_code: str, used_attr: str, max_attr: str) -> GateRule:
    def check(snapshot: GatingSnapshot) -> Violation | None:
        used = getattr(snapshot.caps, used_attr)
        limit = getattr(snapshot.caps, max_attr)
        if used >= limit:
            return Violation(
                reason_code, PROTECTION,
                GateDetails(metric=used_attr, current_value=used, required_value=limit),
            )
        return None

    return GateRule(reason_code, PROTECTION, check)


def _plan_floor_rule() -> GateRule:
    def check(snapshot: GatingSnapshot) -> Violation | None:
        plan = snapshot.plan
        if not plan.s2_recovery_floor_protection:
            return None
        recovery = snapshot.metric("recovery")
        # Missing recovery is reported by the recovery rule itself.
        if recovery is None or recovery >= plan.require_rec_for_s2:
            return None
        return Violation(
            SUPERHUMAN_REC_REQUIRED, PROTECTION,
            GateDetails(metric="recovery", current_value=recovery, required_value=plan.require_rec_for_s2),
            gap=MetricGap("recovery", recovery, plan.require_rec_for_s2),
        )

    return GateRule(SUPERHUMAN_REC_REQUIRED, PROTECTION, check)


def _unavailable(metric: str) -> Violation:
    return Violation(METRIC_UNAVAILABLE, WITHHELD, GateDetails(metric=metric))


def _min_rule(metric: Metric, reason_code: str, required: Callable[[PlanModifiers], float]) -> GateRule:
    def check(snapshot: GatingSnapshot) -> Violation | None:
        value = snapshot.metric(metric)
        if value is None:
            return _unavailable(metric)
        needed = required(snapshot.plan)
        if value < needed:
            return Violation(
                reason_code, WITHHELD,
                GateDetails(metric=metric, current_value=value, required_value=needed),
                gap=MetricGap(metric, value, needed),
            )
        return None

    return GateRule(reason_code, WITHHELD, check)


def _max_rule(metric: Metric, reason_code: str, ceiling: float) -> GateRule:
    def check(snapshot: GatingSnapshot) -> Violation | None:
        value = snapshot.metric(metric)
        if value is None:
            return _unavailable(metric)
        if value > ceiling:
            return Violation(
                reason_code, WITHHELD,
                GateDetails(metric=metric, current_value=value, required_value=ceiling),
            )
        return None

    return GateRule(reason_code, WITHHELD, check)


def _range_rule(metric: Metric, reason_code: str, low: float, high: float) -> GateRule:
    def check(snapshot: GatingSnapshot) -> Violation | None:
        value = snapshot.metric(metric)
        if value is None:
            return _unavailable(metric)
        if value < low:
            return Violation(
                reason_code, WITHHELD,
                GateDetails(metric=metric, current_value=value, required_value=low),
                gap=MetricGap(metric, value, low),
            )
        if value > high:
            return Violation(
                reason_code, WITHHELD,
                GateDetails(metric=metric, current_value=value, required_value=high),
            )
        return None

    return GateRule(reason_code, WITHHELD, check)


def _fixed(value: float) -> Callable[[PlanModifiers], float]:
    return lambda plan: value


# ---------------------------------------------------------------------------
# Rule tables, in priority order
# ---------------------------------------------------------------------------

_DAILY_S1 = _cap_rule(CAP_REACHED_DAILY_S1, "s1_daily_used", "s1_daily_max")
_DAILY_S2 = _cap_rule(CAP_REACHED_DAILY_S2, "s2_daily_used", "s2_daily_max")
_WEEKLY_S2 = _cap_rule(CAP_REACHED_WEEKLY_S2, "s2_weekly_used", "s2_weekly_max")
_WEEKLY_IN = _cap_rule(CAP_REACHED_WEEKLY_IN, "insight_weekly_used", "insight_weekly_max")

GATE_RULES: dict[str, tuple[GateRule, ...]] = {
    "S1-AE": (
        _DAILY_S1,
        _min_rule("recovery", RECOVERY_TOO_LOW, _fixed(45)),
        _max_rule("sharpness", SHARPNESS_TOO_HIGH, 75),
    ),
    "S1-RA": (
        _DAILY_S1,
        _min_rule("recovery", RECOVERY_TOO_LOW, _fixed(50)),
        _min_rule("readiness", READINESS_TOO_LOW, _fixed(45)),
    ),
    "S2-CT": (
        _DAILY_S2,
        _WEEKLY_S2,
        _plan_floor_rule(),
        _min_rule("recovery", RECOVERY_TOO_LOW, lambda plan: max(50, plan.require_rec_for_s2)),
        _min_rule("sharpness", SHARPNESS_TOO_LOW, lambda plan: 65 + plan.s2_threshold_modifier),
        _min_rule("readiness", READINESS_TOO_LOW, lambda plan: 60 + plan.s2_threshold_modifier),
    ),
    "S2-IN": (
        _DAILY_S2,
        _WEEKLY_S2,
        _WEEKLY_IN,
        _plan_floor_rule(),
        _min_rule("recovery", RECOVERY_TOO_LOW, lambda plan: max(55, plan.require_rec_for_s2)),
        _min_rule("sharpness", SHARPNESS_TOO_LOW, lambda plan: 60 + plan.s2_threshold_modifier),
        _range_rule("readiness", READINESS_OUT_OF_RANGE, 50, 70),
    ),
}


def evaluate_rules(game_type: str, rules: tuple[GateRule, ...], snapshot: GatingSnapshot) -> GameGatingResult:
    violations = [v for v in (rule.evaluate(snapshot) for rule in rules) if v is not None]
    if not violations:
        return GameGatingResult(type=game_type, status=ENABLED)

    first = violations[0]
    unlock_actions: tuple[str, ...] = ()
    if first.reason_code not in CAP_REASON_CODES:
        gaps = [v.gap for v in violations if v.gap is not None]
        unlock_actions = tuple(game_unlock_actions(gaps))
    return GameGatingResult(
        type=game_type,
        status=first.status,
        reason_code=first.reason_code,
        details=first.details,
        unlock_actions=unlock_actions,
    )


def check_game_availability(game_type: str, snapshot: GatingSnapshot) -> GameGatingResult:
    rules = GATE_RULES.get(game_type)
    if rules is None:
        raise ValueError(f"Unknown game_type={game_type!r}")
    return evaluate_rules(game_type, rules, snapshot)


@dataclass(frozen=True)
class GatingReport:
    results: dict[str, GameGatingResult]
    safety_rule_active: bool
    is_calibrated: bool

    def __getitem__(self, game_type: str) -> GameGatingResult:
        return self.results[game_type]

    def enabled_types(self) -> list[str]:
        return [t for t, r in self.results.items() if r.enabled]

    def to_dict(self) -> dict:
        return {
            "games": {t: r.to_dict() for t, r in self.results.items()},
            "safety_rule_active": self.safety_rule_active,
            "is_calibrated": self.is_calibrated,
        }


def is_safety_rule_active(results: dict[str, GameGatingResult], is_calibrated: bool) -> bool:
    """True when an uncalibrated user has every S2 game held back by recovery."""
    if is_calibrated:
        return False
    s2 = [r for t, r in results.items() if t in S2_GAME_TYPES]
    return bool(s2) and all(r.reason_code in SAFETY_RULE_REASONS for r in s2)


def get_all_games_availability(snapshot: GatingSnapshot, is_calibrated: bool) -> GatingReport:
    results = {game_type: check_game_availability(game_type, snapshot) for game_type in GAME_TYPES}
    return GatingReport(
        results=results,
        safety_rule_active=is_safety_rule_active(results, is_calibrated),
        is_calibrated=is_calibrated,
    )


def game_type_for_area(gym_area: str | None, thinking_mode: str | None) -> GameType:
    mode = (thinking_mode or "slow").lower()
    area = (gym_area or "reasoning").lower()
    if mode == "fast":
        return "S1-RA" if area == "creativity" else "S1-AE"
    if area in ("creativity", "insight"):
        return "S2-IN"
    return "S2-CT"
