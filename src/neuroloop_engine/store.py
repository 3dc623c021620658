"""Persistence boundary: every SQL statement the engine issues lives here.

Reads follow one error policy per data class:
- caps, combo history and override history fail open: the error is logged,
  counted, and an empty history is returned so an outage never blocks
  training.
- recovery, reasoning-quality inputs and cognitive states fail closed:
  ``StoreUnavailable`` is raised instead of fabricating a score.

Fail-open reads run inside a savepoint so a failed query does not poison
the caller's transaction.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any

import psycopg
from psycopg.rows import dict_row
from psycopg.types.json import Json

from .anti_repetition import ComboParams, ComboRecord
from .caps import CompletionRecord
from .cognitive_states import S2_GAME_TYPES, CognitiveStates
from .errors import DataClass, StoreUnavailable
from .logging import log_context
from .metrics import record_store_fail_open
from .overrides import OverrideRecord
from .reasoning_quality import S2_GAME_WINDOW, TaskCompletion
from .recovery import RecoveryState
from .utils import as_float, normalize_timezone_name, parse_timestamp

logger = logging.getLogger(__name__)

_S2_TYPES = sorted(S2_GAME_TYPES)


@dataclass(frozen=True)
class UserProfile:
    timezone: str | None = None
    plan_id: str | None = None
    is_calibrated: bool = False
    rri_value: float | None = None
    rri_set_at: datetime | None = None


@dataclass(frozen=True)
class DailyMetrics:
    sharpness: float | None = None
    readiness: float | None = None


def _fail_closed(data_class: DataClass, user_id: str, exc: Exception) -> StoreUnavailable:
    logger.error(
        "Store read failed for %s (user=%s): %s",
        data_class, user_id, exc,
        extra=log_context(user_id=user_id, data_class=data_class),
    )
    return StoreUnavailable(data_class, f"{data_class} unavailable for user {user_id}")


def _fail_open(data_class: DataClass, user_id: str, exc: Exception) -> None:
    record_store_fail_open()
    logger.warning(
        "Store read failed for %s (user=%s), treating history as empty: %s",
        data_class, user_id, exc,
        extra=log_context(user_id=user_id, data_class=data_class),
    )


async def acquire_user_lock(conn: psycopg.AsyncConnection[Any], user_id: str) -> None:
    """Serialize completion write-backs for the same user (transaction-scoped)."""
    await conn.execute(
        "SELECT pg_advisory_xact_lock(hashtext(%s)::bigint)",
        (str(user_id),),
    )


# ---------------------------------------------------------------------------
# Fail-closed reads
# ---------------------------------------------------------------------------


async def load_recovery_state(
    conn: psycopg.AsyncConnection[Any], user_id: str
) -> RecoveryState:
    try:
        async with conn.cursor(row_factory=dict_row) as cur:
            await cur.execute(
                """
                SELECT value, last_timestamp, has_baseline, version
                FROM recovery_state
                WHERE user_id = %s
                """,
                (user_id,),
            )
            row = await cur.fetchone()
    except psycopg.Error as exc:
        raise _fail_closed("recovery", user_id, exc) from exc

    if row is None:
        return RecoveryState(value=None, last_timestamp=None, has_baseline=False)
    return RecoveryState(
        value=as_float(row["value"]),
        last_timestamp=parse_timestamp(row["last_timestamp"]),
        has_baseline=bool(row["has_baseline"]),
        version=int(row["version"] or 0),
    )


async def load_user_profile(
    conn: psycopg.AsyncConnection[Any], user_id: str
) -> UserProfile:
    try:
        async with conn.cursor(row_factory=dict_row) as cur:
            await cur.execute(
                """
                SELECT timezone, plan_id, is_calibrated, rri_value, rri_set_at
                FROM user_engine_profile
                WHERE user_id = %s
                """,
                (user_id,),
            )
            row = await cur.fetchone()
    except psycopg.Error as exc:
        raise _fail_closed("recovery", user_id, exc) from exc

    if row is None:
        return UserProfile()
    return UserProfile(
        timezone=normalize_timezone_name(row["timezone"]),
        plan_id=row["plan_id"],
        is_calibrated=bool(row["is_calibrated"]),
        rri_value=as_float(row["rri_value"]),
        rri_set_at=parse_timestamp(row["rri_set_at"]),
    )


async def load_cognitive_states(
    conn: psycopg.AsyncConnection[Any], user_id: str
) -> tuple[CognitiveStates, float | None]:
    """Skill values and the persisted S2 consistency accumulator."""
    try:
        async with conn.cursor(row_factory=dict_row) as cur:
            await cur.execute(
                """
                SELECT ae, ra, ct, in_score, s2_consistency, version
                FROM cognitive_states
                WHERE user_id = %s
                """,
                (user_id,),
            )
            row = await cur.fetchone()
    except psycopg.Error as exc:
        raise _fail_closed("cognitive_states", user_id, exc) from exc

    if row is None:
        return CognitiveStates(), None
    return CognitiveStates.from_row(row), as_float(row["s2_consistency"])


async def load_daily_metrics(
    conn: psycopg.AsyncConnection[Any], user_id: str
) -> DailyMetrics:
    """Latest upstream sharpness/readiness. Missing values stay None."""
    try:
        async with conn.cursor(row_factory=dict_row) as cur:
            await cur.execute(
                """
                SELECT sharpness, readiness
                FROM daily_metrics
                WHERE user_id = %s
                ORDER BY computed_at DESC
                LIMIT 1
                """,
                (user_id,),
            )
            row = await cur.fetchone()
    except psycopg.Error as exc:
        raise _fail_closed("cognitive_states", user_id, exc) from exc

    if row is None:
        return DailyMetrics()
    return DailyMetrics(sharpness=as_float(row["sharpness"]), readiness=as_float(row["readiness"]))


async def load_s2_scores(
    conn: psycopg.AsyncConnection[Any], user_id: str, limit: int = S2_GAME_WINDOW
) -> list[float]:
    """Last ``limit`` S2 session scores, oldest first."""
    try:
        async with conn.cursor(row_factory=dict_row) as cur:
            await cur.execute(
                """
                SELECT score
                FROM game_completions
                WHERE user_id = %s
                  AND game_type = ANY(%s)
                  AND status = 'completed'
                  AND score IS NOT NULL
                ORDER BY completed_at DESC
                LIMIT %s
                """,
                (user_id, _S2_TYPES, limit),
            )
            rows = await cur.fetchall()
    except psycopg.Error as exc:
        raise _fail_closed("reasoning_quality", user_id, exc) from exc

    scores = [as_float(r["score"]) for r in rows]
    return [s for s in reversed(scores) if s is not None]


async def load_content_completions(
    conn: psycopg.AsyncConnection[Any], user_id: str, since: datetime
) -> list[TaskCompletion]:
    try:
        async with conn.cursor(row_factory=dict_row) as cur:
            await cur.execute(
                """
                SELECT task_type, completed_at
                FROM content_completions
                WHERE user_id = %s AND completed_at >= %s
                ORDER BY completed_at DESC
                """,
                (user_id, since),
            )
            rows = await cur.fetchall()
    except psycopg.Error as exc:
        raise _fail_closed("reasoning_quality", user_id, exc) from exc

    completions: list[TaskCompletion] = []
    for row in rows:
        ts = parse_timestamp(row["completed_at"])
        if ts is not None:
            completions.append(TaskCompletion(type=row["task_type"], completed_at=ts))
    return completions


async def load_last_activity(
    conn: psycopg.AsyncConnection[Any], user_id: str
) -> tuple[datetime | None, datetime | None]:
    """(last S2 game, last content task) timestamps."""
    try:
        async with conn.cursor(row_factory=dict_row) as cur:
            await cur.execute(
                """
                SELECT
                    (SELECT MAX(completed_at) FROM game_completions
                     WHERE user_id = %s AND game_type = ANY(%s) AND status = 'completed')
                        AS last_s2_game_at,
                    (SELECT MAX(completed_at) FROM content_completions
                     WHERE user_id = %s) AS last_task_at
                """,
                (user_id, _S2_TYPES, user_id),
            )
            row = await cur.fetchone()
    except psycopg.Error as exc:
        raise _fail_closed("reasoning_quality", user_id, exc) from exc

    if row is None:
        return None, None
    return parse_timestamp(row["last_s2_game_at"]), parse_timestamp(row["last_task_at"])


# ---------------------------------------------------------------------------
# Fail-open reads
# ---------------------------------------------------------------------------


async def load_completions(
    conn: psycopg.AsyncConnection[Any], user_id: str, since: datetime
) -> list[CompletionRecord]:
    """Completion log rows since ``since`` for cap computation."""
    try:
        async with conn.transaction():
            async with conn.cursor(row_factory=dict_row) as cur:
                await cur.execute(
                    """
                    SELECT game_type, completed_at, status, score, xp_awarded
                    FROM game_completions
                    WHERE user_id = %s AND completed_at >= %s
                    ORDER BY completed_at DESC
                    """,
                    (user_id, since),
                )
                rows = await cur.fetchall()
    except psycopg.Error as exc:
        _fail_open("caps", user_id, exc)
        return []

    records: list[CompletionRecord] = []
    for row in rows:
        ts = parse_timestamp(row["completed_at"])
        if ts is None:
            continue
        records.append(CompletionRecord(
            game_type=row["game_type"],
            completed_at=ts,
            status=row["status"] or "completed",
            score=as_float(row["score"]),
            xp_awarded=int(row["xp_awarded"] or 0),
        ))
    return records


async def load_recent_combos(
    conn: psycopg.AsyncConnection[Any],
    user_id: str,
    game_name: str,
    since: datetime,
    limit: int = 10,
) -> list[ComboRecord]:
    """Combo history for one game, newest first."""
    try:
        async with conn.transaction():
            async with conn.cursor(row_factory=dict_row) as cur:
                await cur.execute(
                    """
                    SELECT combo_hash, completed_at, difficulty, game_name, params
                    FROM combo_history
                    WHERE user_id = %s AND game_name = %s AND completed_at >= %s
                    ORDER BY completed_at DESC
                    LIMIT %s
                    """,
                    (user_id, game_name, since, limit),
                )
                rows = await cur.fetchall()
    except psycopg.Error as exc:
        _fail_open("combo_history", user_id, exc)
        return []

    records: list[ComboRecord] = []
    for row in rows:
        ts = parse_timestamp(row["completed_at"])
        if ts is None:
            continue
        params = row.get("params")
        records.append(ComboRecord(
            combo_hash=row["combo_hash"],
            completed_at=ts,
            difficulty=row.get("difficulty"),
            game_name=row.get("game_name"),
            params=ComboParams.from_dict(params) if isinstance(params, dict) else None,
        ))
    return records


async def load_overrides(
    conn: psycopg.AsyncConnection[Any], user_id: str, since: datetime
) -> list[OverrideRecord]:
    try:
        async with conn.transaction():
            async with conn.cursor(row_factory=dict_row) as cur:
                await cur.execute(
                    """
                    SELECT task_id, task_type, created_at,
                           s2_capacity_at_override, s1_buffer_at_override
                    FROM content_overrides
                    WHERE user_id = %s AND created_at >= %s
                    ORDER BY created_at DESC
                    """,
                    (user_id, since),
                )
                rows = await cur.fetchall()
    except psycopg.Error as exc:
        _fail_open("overrides", user_id, exc)
        return []

    records: list[OverrideRecord] = []
    for row in rows:
        ts = parse_timestamp(row["created_at"])
        if ts is None:
            continue
        records.append(OverrideRecord(
            task_id=str(row["task_id"]),
            task_type=row["task_type"],
            created_at=ts,
            s2_capacity_at_override=as_float(row["s2_capacity_at_override"]) or 0.0,
            s1_buffer_at_override=as_float(row["s1_buffer_at_override"]) or 0.0,
        ))
    return records


# ---------------------------------------------------------------------------
# Write-backs (single statements; errors propagate to the job runner)
# ---------------------------------------------------------------------------


async def save_recovery_state(
    conn: psycopg.AsyncConnection[Any], user_id: str, state: RecoveryState
) -> bool:
    """Upsert the checkpoint. Returns False when a newer version already exists."""
    async with conn.cursor() as cur:
        await cur.execute(
            """
            INSERT INTO recovery_state (user_id, value, last_timestamp, has_baseline, version, updated_at)
            VALUES (%s, %s, %s, %s, %s, NOW())
            ON CONFLICT (user_id) DO UPDATE SET
                value = EXCLUDED.value,
                last_timestamp = EXCLUDED.last_timestamp,
                has_baseline = EXCLUDED.has_baseline,
                version = EXCLUDED.version,
                updated_at = NOW()
            WHERE recovery_state.version < EXCLUDED.version
            """,
            (user_id, state.value, state.last_timestamp, state.has_baseline, state.version),
        )
        return cur.rowcount != 0


async def save_cognitive_states(
    conn: psycopg.AsyncConnection[Any],
    user_id: str,
    states: CognitiveStates,
    s2_consistency: float | None,
) -> None:
    await conn.execute(
        """
        INSERT INTO cognitive_states (user_id, ae, ra, ct, in_score, s2_consistency, version, updated_at)
        VALUES (%s, %s, %s, %s, %s, %s, %s, NOW())
        ON CONFLICT (user_id) DO UPDATE SET
            ae = EXCLUDED.ae,
            ra = EXCLUDED.ra,
            ct = EXCLUDED.ct,
            in_score = EXCLUDED.in_score,
            s2_consistency = EXCLUDED.s2_consistency,
            version = EXCLUDED.version,
            updated_at = NOW()
        """,
        (user_id, states.ae, states.ra, states.ct, states.in_, s2_consistency, states.version),
    )


async def insert_completion(
    conn: psycopg.AsyncConnection[Any],
    user_id: str,
    record: CompletionRecord,
    game_name: str | None = None,
) -> None:
    await conn.execute(
        """
        INSERT INTO game_completions
            (user_id, game_type, game_name, status, score, xp_awarded, completed_at)
        VALUES (%s, %s, %s, %s, %s, %s, %s)
        """,
        (
            user_id,
            record.game_type,
            game_name,
            record.status,
            record.score,
            record.xp_awarded,
            record.completed_at,
        ),
    )


async def insert_combo_record(
    conn: psycopg.AsyncConnection[Any],
    user_id: str,
    record: ComboRecord,
    *,
    fallback_used: bool = False,
    duplicates_rejected: int = 0,
    quality_score: float | None = None,
) -> None:
    await conn.execute(
        """
        INSERT INTO combo_history
            (user_id, game_name, combo_hash, difficulty, params, completed_at,
             fallback_used, duplicates_rejected, quality_score)
        VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
        """,
        (
            user_id,
            record.game_name,
            record.combo_hash,
            record.difficulty,
            Json(record.params.to_dict()) if record.params is not None else None,
            record.completed_at,
            fallback_used,
            duplicates_rejected,
            quality_score,
        ),
    )


async def insert_override(
    conn: psycopg.AsyncConnection[Any], user_id: str, record: OverrideRecord
) -> None:
    await conn.execute(
        """
        INSERT INTO content_overrides
            (user_id, task_id, task_type, created_at, s2_capacity_at_override, s1_buffer_at_override)
        VALUES (%s, %s, %s, %s, %s, %s)
        """,
        (
            user_id,
            record.task_id,
            record.task_type,
            record.created_at,
            record.s2_capacity_at_override,
            record.s1_buffer_at_override,
        ),
    )


async def save_rri(
    conn: psycopg.AsyncConnection[Any], user_id: str, rri_value: float, set_at: datetime
) -> None:
    await conn.execute(
        """
        INSERT INTO user_engine_profile (user_id, rri_value, rri_set_at)
        VALUES (%s, %s, %s)
        ON CONFLICT (user_id) DO UPDATE SET
            rri_value = EXCLUDED.rri_value,
            rri_set_at = EXCLUDED.rri_set_at
        """,
        (user_id, rri_value, set_at),
    )
