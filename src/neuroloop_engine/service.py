"""Service layer: fetch minimal state, run the pure engine, write back.

Each function takes an open psycopg connection. Reads go through ``store``
(which applies the per-data-class error policy); computation is delegated to
the pure modules; mutations are written back as single statements.
Completion write-backs hold a per-user advisory lock so concurrent devices
are serialized at this point.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, TypeVar

import psycopg

from . import store
from .anti_repetition import (
    MAX_GENERATION_ATTEMPTS,
    NEAR_DUPLICATE_WINDOW,
    ComboParams,
    ComboRecord,
    SessionGenerationResult,
    generate_combo_hash,
    generate_valid_session,
)
from .caps import WEEKLY_WINDOW, CompletionRecord, build_games_caps, detect_cap_violations
from .cognitive_states import S2_GAME_TYPES, apply_game_result, system_type_for_game
from .content_gating import ContentGatingResult, compute_s2_capacity, evaluate_reading
from .contracts import SessionCompletedV1
from .gating import GatingReport, GatingSnapshot, get_all_games_availability
from .logging import log_context
from .metrics import record_cap_violation_race
from .overrides import (
    OverrideDecision,
    count_overrides,
    evaluate_override,
    record_override,
    s2_penalty_for,
)
from .plans import capped_game_xp, get_plan_modifiers
from .reasoning_quality import (
    TASK_WINDOW_DAYS,
    RQResult,
    apply_consistency_delta,
    calculate_rq,
    calculate_s2_session_quality,
    get_s2_consistency_delta,
)
from .recovery import (
    DecayStrategy,
    EffectiveRecovery,
    OnboardingSeed,
    RecoveryState,
    apply_action_to_state,
    compute_rri,
    decay_strategy_for,
    initialize_recovery_baseline,
    is_rri_valid,
    resolve_effective_recovery,
)
from .utils import (
    DEFAULT_ASSUMED_TIMEZONE,
    as_utc,
    local_day_start,
    local_week_start,
    resolve_timezone_name,
)

logger = logging.getLogger(__name__)

_defaults: dict[str, Any] = {
    "recovery_decay": "night_weighted",
    "max_generation_attempts": MAX_GENERATION_ATTEMPTS,
    "default_timezone": DEFAULT_ASSUMED_TIMEZONE,
}


def configure(
    *,
    recovery_decay: str | None = None,
    max_generation_attempts: int | None = None,
    default_timezone: str | None = None,
) -> None:
    """Apply process-wide engine settings from ``Config``."""
    if recovery_decay is not None:
        _defaults["recovery_decay"] = recovery_decay
    if max_generation_attempts is not None:
        _defaults["max_generation_attempts"] = max_generation_attempts
    if default_timezone is not None:
        _defaults["default_timezone"] = resolve_timezone_name(default_timezone)


def _tz(profile: store.UserProfile) -> str:
    return profile.timezone or _defaults["default_timezone"]


def _strategy(timezone_name: str, strategy: DecayStrategy | None) -> DecayStrategy:
    if strategy is not None:
        return strategy
    return decay_strategy_for(_defaults["recovery_decay"], timezone_name=timezone_name)


# ---------------------------------------------------------------------------
# Recovery
# ---------------------------------------------------------------------------


async def load_effective_recovery(
    conn: psycopg.AsyncConnection[Any],
    user_id: str,
    now: datetime,
    strategy: DecayStrategy | None = None,
) -> EffectiveRecovery:
    """Today's recovery for display and gating. Fails closed."""
    profile = await store.load_user_profile(conn, user_id)
    state = await store.load_recovery_state(conn, user_id)
    return resolve_effective_recovery(
        state,
        profile.rri_value,
        profile.rri_set_at,
        now,
        _strategy(_tz(profile), strategy),
    )


async def ensure_recovery_baseline(
    conn: psycopg.AsyncConnection[Any],
    user_id: str,
    seed: OnboardingSeed | None,
    now: datetime,
) -> RecoveryState:
    """Create the first checkpoint from the onboarding seed. Idempotent."""
    state = await store.load_recovery_state(conn, user_id)
    if state.has_baseline:
        logger.info(
            "Recovery baseline already present for user=%s, skipping",
            user_id,
            extra=log_context(user_id=user_id),
        )
        return state

    if seed is not None and (seed.has_answers or seed.rri_value is not None):
        rri = seed.rri_value if seed.rri_value is not None else compute_rri(seed).value
        await store.save_rri(conn, user_id, rri, as_utc(now))

    new_state = initialize_recovery_baseline(state, seed, now)
    await store.save_recovery_state(conn, user_id, new_state)
    logger.info(
        "Recovery baseline initialized for user=%s at %.1f",
        user_id,
        new_state.value,
        extra=log_context(user_id=user_id),
    )
    return new_state


async def log_recovery_action(
    conn: psycopg.AsyncConnection[Any],
    user_id: str,
    detox_minutes: float,
    walk_minutes: float,
    now: datetime,
    strategy: DecayStrategy | None = None,
) -> RecoveryState:
    """Decay the checkpoint to ``now``, add the action's gain, persist."""
    await store.acquire_user_lock(conn, user_id)
    profile = await store.load_user_profile(conn, user_id)
    state = await store.load_recovery_state(conn, user_id)

    if not state.is_valid:
        rri = profile.rri_value if is_rri_valid(profile.rri_set_at, now) else None
        state = initialize_recovery_baseline(state, OnboardingSeed(rri_value=rri), now)

    new_state = apply_action_to_state(
        state, detox_minutes, walk_minutes, now, _strategy(_tz(profile), strategy)
    )
    saved = await store.save_recovery_state(conn, user_id, new_state)
    if not saved:
        logger.warning(
            "Recovery checkpoint for user=%s superseded by a newer version",
            user_id,
            extra=log_context(user_id=user_id),
        )
    return new_state


# ---------------------------------------------------------------------------
# Reasoning quality
# ---------------------------------------------------------------------------


async def load_reasoning_quality(
    conn: psycopg.AsyncConnection[Any], user_id: str, now: datetime
) -> RQResult:
    """RQ from stored skills and history. Fails closed."""
    states, _ = await store.load_cognitive_states(conn, user_id)
    scores = await store.load_s2_scores(conn, user_id)
    tasks = await store.load_content_completions(
        conn, user_id, as_utc(now) - timedelta(days=TASK_WINDOW_DAYS)
    )
    last_s2_game_at, last_task_at = await store.load_last_activity(conn, user_id)
    return calculate_rq(states.s2, scores, tasks, last_s2_game_at, last_task_at, now)


# ---------------------------------------------------------------------------
# Games gating
# ---------------------------------------------------------------------------


def _caps_window_start(now: datetime, timezone_name: str) -> datetime:
    return min(local_day_start(now, timezone_name), as_utc(now) - WEEKLY_WINDOW)


def _report_cap_races(user_id: str, violations: list[str]) -> None:
    if not violations:
        return
    record_cap_violation_race(len(violations))
    logger.warning(
        "Cap overshoot for user=%s: %s",
        user_id,
        ", ".join(violations),
        extra=log_context(user_id=user_id, cap_violations=violations),
    )


async def evaluate_games(
    conn: psycopg.AsyncConnection[Any],
    user_id: str,
    now: datetime,
    strategy: DecayStrategy | None = None,
) -> GatingReport:
    profile = await store.load_user_profile(conn, user_id)
    plan = get_plan_modifiers(profile.plan_id)
    recovery = await load_effective_recovery(conn, user_id, now, strategy)
    metrics = await store.load_daily_metrics(conn, user_id)
    completions = await store.load_completions(
        conn, user_id, _caps_window_start(now, _tz(profile))
    )

    caps = build_games_caps(completions, plan, now, _tz(profile))
    _report_cap_races(user_id, detect_cap_violations(caps))

    snapshot = GatingSnapshot(
        sharpness=metrics.sharpness,
        readiness=metrics.readiness,
        recovery_effective=recovery.value,
        caps=caps,
        plan=plan,
    )
    return get_all_games_availability(snapshot, profile.is_calibrated)


# ---------------------------------------------------------------------------
# Content override
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ContentOverrideEvaluation:
    gating: ContentGatingResult
    decision: OverrideDecision
    s1_buffer: float
    s2_capacity: float


async def evaluate_content_override(
    conn: psycopg.AsyncConnection[Any],
    user_id: str,
    reading_type: str,
    demand: str,
    now: datetime,
) -> ContentOverrideEvaluation:
    profile = await store.load_user_profile(conn, user_id)
    recovery = await load_effective_recovery(conn, user_id, now)
    metrics = await store.load_daily_metrics(conn, user_id)
    since = min(local_week_start(now, _tz(profile)), local_day_start(now, _tz(profile)))
    history = await store.load_overrides(conn, user_id, since)

    today_count, _ = count_overrides(history, now, _tz(profile))
    penalty = s2_penalty_for(today_count)
    gating = evaluate_reading(
        reading_type,
        demand,
        metrics.sharpness,
        metrics.readiness,
        recovery.value,
        s2_penalty=penalty,
    )
    s2_capacity = 0.0
    if metrics.sharpness is not None and metrics.readiness is not None:
        s2_capacity = compute_s2_capacity(metrics.sharpness, metrics.readiness)
    decision = evaluate_override(gating, history, recovery.value, s2_capacity, now, _tz(profile))
    return ContentOverrideEvaluation(gating, decision, recovery.value, s2_capacity)


async def request_content_override(
    conn: psycopg.AsyncConnection[Any],
    user_id: str,
    task_id: str,
    task_type: str,
    reading_type: str,
    demand: str,
    now: datetime,
) -> OverrideDecision:
    """Evaluate and, when allowed, append an override record."""
    await store.acquire_user_lock(conn, user_id)
    evaluation = await evaluate_content_override(conn, user_id, reading_type, demand, now)
    decision = evaluation.decision
    if not decision.allowed:
        logger.info(
            "Override refused for user=%s task=%s: %s",
            user_id, task_id, decision.reason_code,
            extra=log_context(user_id=user_id, reason_code=decision.reason_code),
        )
        return decision

    record = record_override(task_id, task_type, evaluation.s1_buffer, evaluation.s2_capacity, now)
    await store.insert_override(conn, user_id, record)
    logger.info(
        "Override recorded for user=%s task=%s",
        user_id, task_id,
        extra=log_context(user_id=user_id),
    )
    return decision


# ---------------------------------------------------------------------------
# Session generation and completion
# ---------------------------------------------------------------------------

T = TypeVar("T")


async def generate_session(
    conn: psycopg.AsyncConnection[Any],
    user_id: str,
    game_name: str,
    game_type: str,
    generator: Callable[[], T],
    hash_extractor: Callable[[T], ComboParams],
    now: datetime,
    *,
    max_attempts: int | None = None,
    apply_params: Callable[[T, ComboParams], T],
) -> SessionGenerationResult[T]:
    profile = await store.load_user_profile(conn, user_id)
    history = await store.load_recent_combos(
        conn, user_id, game_name, as_utc(now) - NEAR_DUPLICATE_WINDOW
    )
    return generate_valid_session(
        generator,
        hash_extractor,
        recent_combos=history,
        system_type=system_type_for_game(game_type),
        now=now,
        max_attempts=max_attempts or _defaults["max_generation_attempts"],
        timezone_name=_tz(profile),
        apply_params=apply_params,
        game_name=game_name,
    )


@dataclass(frozen=True)
class CompletionOutcome:
    xp_awarded: int
    combo_hash: str
    consistency_delta: int | None = None
    s2_consistency: float | None = None
    cap_violations: list[str] = field(default_factory=list)


async def record_game_completion(
    conn: psycopg.AsyncConnection[Any],
    payload: SessionCompletedV1,
    now: datetime,
) -> CompletionOutcome:
    """Persist a finished game: completion row, combo record, skill and
    consistency updates. Caps are rechecked afterwards to surface races."""
    user_id = payload.user_id
    completed_at = as_utc(payload.completed_at or now)

    await store.acquire_user_lock(conn, user_id)
    profile = await store.load_user_profile(conn, user_id)
    plan = get_plan_modifiers(profile.plan_id)
    completions = await store.load_completions(
        conn, user_id, _caps_window_start(completed_at, _tz(profile))
    )
    caps_before = build_games_caps(completions, plan, completed_at, _tz(profile))
    xp = capped_game_xp(payload.base_xp, caps_before.games_with_xp_today, plan)

    record = CompletionRecord(
        game_type=payload.game_type,
        completed_at=completed_at,
        score=payload.score,
        xp_awarded=xp,
    )
    await store.insert_completion(conn, user_id, record, payload.game_name)

    params = payload.params.to_domain() if payload.params is not None else None
    combo_hash = payload.combo_hash or generate_combo_hash(params)
    await store.insert_combo_record(
        conn,
        user_id,
        ComboRecord(
            combo_hash=combo_hash,
            completed_at=completed_at,
            difficulty=payload.difficulty or (params.difficulty if params else None),
            game_name=payload.game_name,
            params=params,
        ),
        fallback_used=payload.fallback_used,
        duplicates_rejected=payload.duplicates_rejected,
        quality_score=payload.score,
    )

    states, accumulator = await store.load_cognitive_states(conn, user_id)
    states = apply_game_result(states, payload.game_type, xp)
    delta: int | None = None
    if payload.game_type in S2_GAME_TYPES and payload.s2_metrics is not None:
        quality = calculate_s2_session_quality(
            payload.s2_metrics.accuracy,
            payload.s2_metrics.timing_consistency,
            payload.s2_metrics.coherence,
        )
        delta = get_s2_consistency_delta(quality)
        accumulator = apply_consistency_delta(accumulator, delta)
    await store.save_cognitive_states(conn, user_id, states, accumulator)

    caps_after = build_games_caps([*completions, record], plan, completed_at, _tz(profile))
    violations = detect_cap_violations(caps_after)
    _report_cap_races(user_id, violations)

    logger.info(
        "Game completion recorded for user=%s (%s, xp=%d)",
        user_id, payload.game_type, xp,
        extra=log_context(user_id=user_id, game_type=payload.game_type),
    )
    return CompletionOutcome(
        xp_awarded=xp,
        combo_hash=combo_hash,
        consistency_delta=delta,
        s2_consistency=accumulator,
        cap_violations=violations,
    )
