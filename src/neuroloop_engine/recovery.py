"""Recovery (REC) decay model.

REC is a 0-100 scalar stored as a checkpoint (value + timestamp). Reads apply
decay from the checkpoint to ``now`` without persisting; recovery actions
(detox, walking) decay the checkpoint first, add their gain, and stamp a new
checkpoint.

Default decay: REC × 2^(-effective_hours / 72), where hours between 23:00 and
07:00 local time count at 0.2 weight. The curve is a pluggable
``DecayStrategy`` so it can be tuned without touching callers.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from typing import Any, Literal, Protocol

from .utils import as_float, as_utc, clamp, to_local

REC_MIN = 0.0
REC_MAX = 100.0

REC_HALF_LIFE_HOURS = 72.0
NIGHT_START_HOUR = 23
NIGHT_END_HOUR = 7
NIGHT_DECAY_MULTIPLIER = 0.2

DETOX_GAIN_PER_MINUTE = 0.12
WALK_GAIN_PER_MINUTE = DETOX_GAIN_PER_MINUTE * 0.5
WALK_MIN_MINUTES = 30.0

RRI_BASE = 35.0
RRI_MIN = 35.0
RRI_MAX = 55.0
RRI_DEFAULT = 45.0
RRI_VALIDITY = timedelta(hours=72)

# Beyond this many effective hours the decayed value rounds to zero anyway.
_MAX_EFFECTIVE_HOURS = REC_HALF_LIFE_HOURS * 64


class DecayStrategy(Protocol):
    name: str

    def decay(self, value: float, start: datetime, end: datetime) -> float:
        """Return ``value`` decayed from ``start`` to ``end``. Must be pure and
        monotonic non-increasing in ``end``."""
        ...


def _is_night_hour(hour: int) -> bool:
    if NIGHT_START_HOUR > NIGHT_END_HOUR:
        return hour >= NIGHT_START_HOUR or hour < NIGHT_END_HOUR
    return NIGHT_START_HOUR <= hour < NIGHT_END_HOUR


def effective_decay_hours(
    start: datetime,
    end: datetime,
    *,
    timezone_name: str = "UTC",
    night_multiplier: float = NIGHT_DECAY_MULTIPLIER,
    limit: float = _MAX_EFFECTIVE_HOURS,
) -> float:
    """Hours between ``start`` and ``end`` with night hours down-weighted."""
    start_utc = as_utc(start)
    end_utc = as_utc(end)
    if end_utc <= start_utc:
        return 0.0

    effective = 0.0
    cursor = start_utc
    while cursor < end_utc and effective < limit:
        local = to_local(cursor, timezone_name)
        boundary = local.replace(minute=0, second=0, microsecond=0) + timedelta(hours=1)
        boundary_utc = as_utc(boundary)
        if boundary_utc <= cursor:
            boundary_utc = cursor + timedelta(hours=1)
        segment_end = min(boundary_utc, end_utc)
        hours = (segment_end - cursor).total_seconds() / 3600.0
        weight = night_multiplier if _is_night_hour(local.hour) else 1.0
        effective += hours * weight
        cursor = segment_end
    return effective


@dataclass(frozen=True)
class NightWeightedHalfLifeDecay:
    half_life_hours: float = REC_HALF_LIFE_HOURS
    night_multiplier: float = NIGHT_DECAY_MULTIPLIER
    timezone_name: str = "UTC"
    name: str = "night_weighted"

    def decay(self, value: float, start: datetime, end: datetime) -> float:
        if value <= 0:
            return 0.0
        hours = effective_decay_hours(
            start,
            end,
            timezone_name=self.timezone_name,
            night_multiplier=self.night_multiplier,
        )
        if hours <= 0:
            return value
        return value * math.pow(2.0, -hours / self.half_life_hours)


@dataclass(frozen=True)
class LinearDecay:
    points_per_hour: float = 0.5
    floor: float = 0.0
    name: str = "linear"

    def decay(self, value: float, start: datetime, end: datetime) -> float:
        elapsed = (as_utc(end) - as_utc(start)).total_seconds() / 3600.0
        if elapsed <= 0:
            return value
        floor = min(value, self.floor)
        return max(floor, value - self.points_per_hour * elapsed)


DEFAULT_DECAY_STRATEGY: DecayStrategy = NightWeightedHalfLifeDecay()


def decay_strategy_for(name: str, *, timezone_name: str = "UTC") -> DecayStrategy:
    if name == "linear":
        return LinearDecay()
    return NightWeightedHalfLifeDecay(timezone_name=timezone_name)


def _round_rec(value: float) -> float:
    return round(clamp(value, REC_MIN, REC_MAX), 1)


@dataclass(frozen=True)
class RecoveryState:
    """Persisted recovery checkpoint. ``version`` increments on every write."""

    value: float | None
    last_timestamp: datetime | None
    has_baseline: bool = False
    version: int = 0

    @property
    def is_valid(self) -> bool:
        return self.has_baseline and self.value is not None and self.last_timestamp is not None


@dataclass(frozen=True)
class RecoveryActionResult:
    new_value: float
    new_timestamp: datetime
    decayed_base: float
    gain: float


def decay_value(
    value: float,
    last_timestamp: datetime | None,
    now: datetime,
    strategy: DecayStrategy | None = None,
) -> float:
    base = clamp(value, REC_MIN, REC_MAX)
    if last_timestamp is None:
        return _round_rec(base)
    strategy = strategy or DEFAULT_DECAY_STRATEGY
    return _round_rec(strategy.decay(base, last_timestamp, now))


def get_current_recovery(
    state: RecoveryState,
    now: datetime,
    strategy: DecayStrategy | None = None,
) -> float | None:
    """Decayed REC at ``now``; None when no baseline exists yet. Never mutates ``state``."""
    if not state.is_valid:
        return None
    return decay_value(state.value, state.last_timestamp, now, strategy)


def recovery_gain(detox_minutes: float, walk_minutes: float) -> float:
    detox = max(0.0, as_float(detox_minutes) or 0.0)
    walk = max(0.0, as_float(walk_minutes) or 0.0)
    gain = detox * DETOX_GAIN_PER_MINUTE
    if walk >= WALK_MIN_MINUTES:
        gain += walk * WALK_GAIN_PER_MINUTE
    return gain


def apply_recovery_action(
    base_value: float,
    base_timestamp: datetime | None,
    detox_minutes: float,
    walk_minutes: float,
    now: datetime,
    strategy: DecayStrategy | None = None,
) -> RecoveryActionResult:
    """Decay the checkpoint to ``now``, add detox/walk gain, stamp ``now``."""
    decayed = decay_value(base_value, base_timestamp, now, strategy)
    gain = recovery_gain(detox_minutes, walk_minutes)
    return RecoveryActionResult(
        new_value=_round_rec(decayed + gain),
        new_timestamp=as_utc(now),
        decayed_base=decayed,
        gain=round(gain, 2),
    )


def apply_action_to_state(
    state: RecoveryState,
    detox_minutes: float,
    walk_minutes: float,
    now: datetime,
    strategy: DecayStrategy | None = None,
) -> RecoveryState:
    """Return the next checkpoint record after a recovery action."""
    base_value = state.value if state.value is not None else RRI_DEFAULT
    base_ts = state.last_timestamp if state.is_valid else None
    result = apply_recovery_action(base_value, base_ts, detox_minutes, walk_minutes, now, strategy)
    return RecoveryState(
        value=result.new_value,
        last_timestamp=result.new_timestamp,
        has_baseline=True,
        version=state.version + 1,
    )


# ---------------------------------------------------------------------------
# Onboarding seed (Recovery Readiness Init)
# ---------------------------------------------------------------------------

_SLEEP_ALIASES: dict[str, str] = {
    "<5h": "<5h", "<5": "<5h",
    "5-6h": "5-6h", "5-6": "5-6h",
    "6-7h": "6-7h", "6-7": "6-7h",
    "7-8h": "7-8h", "7-8": "7-8h",
    ">8h": ">8h", "8+": ">8h", "8h+": ">8h",
}
_DETOX_ALIASES: dict[str, str] = {
    "almost_none": "almost_none", "none": "almost_none",
    "<30min": "<30min",
    "30-60min": "30-60min",
    "1-2h": "1-2h", "1-2": "1-2h",
    ">2h": ">2h", "2+": ">2h",
}
_MENTAL_ALIASES: dict[str, str] = {
    "very_tired": "very_tired", "stressed": "very_tired",
    "bit_tired": "bit_tired", "tired": "bit_tired",
    "ok": "ok", "okay": "ok",
    "clear": "clear", "good": "clear",
    "very_clear": "very_clear",
}

_SLEEP_BONUS: dict[str, float] = {">8h": 8, "7-8h": 8, "6-7h": 4}
_DETOX_BONUS: dict[str, float] = {">2h": 6, "1-2h": 6, "30-60min": 3}
_MENTAL_BONUS: dict[str, float] = {"very_clear": 4, "clear": 4, "ok": 2}


def _normalize_answer(value: Any, aliases: dict[str, str]) -> str | None:
    if not isinstance(value, str):
        return None
    return aliases.get(value.strip().lower())


@dataclass(frozen=True)
class OnboardingSeed:
    sleep_hours: str | None = None
    detox_hours: str | None = None
    mental_state: str | None = None
    rri_value: float | None = None

    @property
    def has_answers(self) -> bool:
        return any(v is not None for v in (self.sleep_hours, self.detox_hours, self.mental_state))


@dataclass(frozen=True)
class RRIResult:
    value: float
    breakdown: dict[str, float] = field(default_factory=dict)


def compute_rri(seed: OnboardingSeed) -> RRIResult:
    """Temporary recovery estimate from onboarding answers, clamped to [35, 55]."""
    sleep = _normalize_answer(seed.sleep_hours, _SLEEP_ALIASES)
    detox = _normalize_answer(seed.detox_hours, _DETOX_ALIASES)
    mental = _normalize_answer(seed.mental_state, _MENTAL_ALIASES)

    sleep_bonus = _SLEEP_BONUS.get(sleep or "", 0.0)
    detox_bonus = _DETOX_BONUS.get(detox or "", 0.0)
    mental_bonus = _MENTAL_BONUS.get(mental or "", 0.0)

    raw = RRI_BASE + sleep_bonus + detox_bonus + mental_bonus
    return RRIResult(
        value=clamp(raw, RRI_MIN, RRI_MAX),
        breakdown={
            "base": RRI_BASE,
            "sleep_bonus": sleep_bonus,
            "detox_bonus": detox_bonus,
            "mental_state_bonus": mental_bonus,
        },
    )


def seed_value(seed: OnboardingSeed | None) -> float:
    if seed is None:
        return RRI_DEFAULT
    explicit = as_float(seed.rri_value)
    if explicit is not None:
        return clamp(explicit, RRI_MIN, RRI_MAX)
    if seed.has_answers:
        return compute_rri(seed).value
    return RRI_DEFAULT


def initialize_recovery_baseline(
    state: RecoveryState | None,
    seed: OnboardingSeed | None,
    now: datetime,
) -> RecoveryState:
    """Create the first checkpoint. Returns ``state`` untouched if a baseline exists."""
    if state is not None and state.has_baseline:
        return state
    version = state.version if state is not None else 0
    return RecoveryState(
        value=seed_value(seed),
        last_timestamp=as_utc(now),
        has_baseline=True,
        version=version + 1,
    )


def is_rri_valid(rri_set_at: datetime | None, now: datetime) -> bool:
    if rri_set_at is None:
        return False
    elapsed = as_utc(now) - as_utc(rri_set_at)
    return timedelta(0) <= elapsed < RRI_VALIDITY


RecoverySource = Literal["checkpoint", "rri", "none"]


@dataclass(frozen=True)
class EffectiveRecovery:
    value: float
    source: RecoverySource

    @property
    def is_using_rri(self) -> bool:
        return self.source == "rri"


def resolve_effective_recovery(
    state: RecoveryState | None,
    rri_value: float | None,
    rri_set_at: datetime | None,
    now: datetime,
    strategy: DecayStrategy | None = None,
) -> EffectiveRecovery:
    """REC used for gating: decayed checkpoint, else a still-valid RRI, else 0."""
    if state is not None:
        current = get_current_recovery(state, now, strategy)
        if current is not None:
            return EffectiveRecovery(value=current, source="checkpoint")

    rri = as_float(rri_value)
    if rri is not None and is_rri_valid(rri_set_at, now):
        return EffectiveRecovery(value=clamp(rri, RRI_MIN, RRI_MAX), source="rri")

    return EffectiveRecovery(value=REC_MIN, source="none")


def bump_version(state: RecoveryState) -> RecoveryState:
    return replace(state, version=state.version + 1)
