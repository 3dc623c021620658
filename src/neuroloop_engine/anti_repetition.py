"""Anti-repetition for generated drill sessions.

Every generated session is fingerprinted with a combo hash over its
canonicalized parameters. A candidate is rejected when its hash already
occurred the same local day, when it is among the last N sessions of the
game (N=3 for S1, 2 for S2), or when it is a near-duplicate (similarity
>= 0.75) of any session from the last 7 days.

Generation retries up to ``max_attempts`` times and then falls back to
jittering the last candidate's temporal parameters, so a session is always
produced.
"""

from __future__ import annotations

import json
import logging
import random
from dataclasses import dataclass, replace
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Generic, Iterable, Literal, Mapping, Sequence, TypeVar

from .logging import log_context
from .metrics import record_duplicates_rejected, record_generation_fallback
from .utils import as_utc, local_date_for_timezone

logger = logging.getLogger(__name__)

SystemType = Literal["S1", "S2"]

EXCLUSION_WINDOW: dict[str, int] = {"S1": 3, "S2": 2}
NEAR_DUPLICATE_WINDOW = timedelta(days=7)
SIMILARITY_THRESHOLD = 0.75
MAX_GENERATION_ATTEMPTS = 10
TEMPORAL_TOLERANCE = 0.1
FALLBACK_JITTER_KEY = "fallback_jitter"

SIMILARITY_WEIGHTS: dict[str, float] = {
    "stimulus": 0.45,
    "distractor": 0.20,
    "temporal": 0.15,
    "rule": 0.20,
}

_FNV_OFFSET_BASIS = 0xCBF29CE484222325
_FNV_PRIME = 0x100000001B3
_MASK_64 = 0xFFFFFFFFFFFFFFFF


@dataclass(frozen=True)
class ComboParams:
    difficulty: str
    stimulus_ids: tuple[str, ...] = ()
    distractor_set: tuple[str, ...] | None = None
    temporal_params: Mapping[str, float] | None = None
    rule_params: Mapping[str, Any] | None = None

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> ComboParams:
        distractors = data.get("distractor_set")
        return cls(
            difficulty=str(data.get("difficulty", "")),
            stimulus_ids=tuple(str(s) for s in data.get("stimulus_ids") or ()),
            distractor_set=tuple(str(d) for d in distractors) if distractors is not None else None,
            temporal_params=dict(data["temporal_params"]) if data.get("temporal_params") is not None else None,
            rule_params=dict(data["rule_params"]) if data.get("rule_params") is not None else None,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "difficulty": self.difficulty,
            "stimulus_ids": sorted(self.stimulus_ids),
            "distractor_set": sorted(self.distractor_set) if self.distractor_set is not None else None,
            "temporal_params": dict(self.temporal_params) if self.temporal_params is not None else None,
            "rule_params": dict(self.rule_params) if self.rule_params is not None else None,
        }


@dataclass(frozen=True)
class ComboRecord:
    combo_hash: str
    completed_at: datetime
    difficulty: str | None = None
    game_name: str | None = None
    params: ComboParams | None = None


@dataclass(frozen=True)
class ValidationResult:
    valid: bool
    reason: Literal["exact_duplicate_today", "recent_session", "near_duplicate"] | None = None


T = TypeVar("T")


@dataclass(frozen=True)
class SessionGenerationResult(Generic[T]):
    session: T
    combo_hash: str
    params: ComboParams
    duplicates_rejected: int = 0
    fallback_used: bool = False
    attempts: int = 0


# ---------------------------------------------------------------------------
# Hashing
# ---------------------------------------------------------------------------


def _canonical_value(value: Any) -> Any:
    # 500 and 500.0 must serialize identically; payload validation coerces to float.
    if isinstance(value, bool):
        return value
    if isinstance(value, float) and value.is_integer():
        return int(value)
    if isinstance(value, Mapping):
        return {str(k): _canonical_value(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_canonical_value(v) for v in value]
    return value


def canonical_json(params: ComboParams) -> str:
    """Order-independent serialization: id sets sorted, mapping keys sorted,
    integral floats written as ints."""
    return json.dumps(
        _canonical_value(params.to_dict()), sort_keys=True, separators=(",", ":"), default=str
    )


def fnv1a_64(data: bytes) -> int:
    h = _FNV_OFFSET_BASIS
    for byte in data:
        h ^= byte
        h = (h * _FNV_PRIME) & _MASK_64
    return h


def generate_combo_hash(params: ComboParams) -> str:
    digest = fnv1a_64(canonical_json(params).encode("utf-8"))
    return f"{params.difficulty[:1]}{digest:016x}"


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------


def _newest_first(records: Iterable[ComboRecord]) -> list[ComboRecord]:
    return sorted(records, key=lambda r: as_utc(r.completed_at), reverse=True)


def is_combo_valid(
    combo_hash: str,
    recent_combos: Iterable[ComboRecord],
    system_type: SystemType,
    now: datetime,
    timezone_name: str = "UTC",
) -> ValidationResult:
    recent = _newest_first(recent_combos)
    today = local_date_for_timezone(now, timezone_name)

    for record in recent:
        if record.combo_hash == combo_hash and local_date_for_timezone(record.completed_at, timezone_name) == today:
            return ValidationResult(False, "exact_duplicate_today")

    window = EXCLUSION_WINDOW.get(system_type, EXCLUSION_WINDOW["S2"])
    if any(record.combo_hash == combo_hash for record in recent[:window]):
        return ValidationResult(False, "recent_session")
    return ValidationResult(True)


def _jaccard(a: Iterable[str], b: Iterable[str]) -> float:
    set_a, set_b = set(a), set(b)
    union = set_a | set_b
    if not union:
        return 0.0
    return len(set_a & set_b) / len(union)


def _temporal_similarity(a: Mapping[str, Any], b: Mapping[str, Any]) -> float:
    keys = set(a) | set(b)
    if not keys:
        return 0.0
    matched = 0
    for key in keys:
        v1, v2 = a.get(key), b.get(key)
        if not isinstance(v1, (int, float)) or not isinstance(v2, (int, float)):
            continue
        diff = abs(v1 - v2) / max(abs(v1), abs(v2), 1)
        if diff < TEMPORAL_TOLERANCE:
            matched += 1
    return matched / len(keys)


def _rule_key(rules: Mapping[str, Any]) -> str:
    return json.dumps(_canonical_value(dict(rules)), sort_keys=True, default=str)


def calculate_similarity(a: ComboParams, b: ComboParams) -> float:
    """Weighted similarity in [0, 1]; dimensions missing on either side add 0."""
    score = _jaccard(a.stimulus_ids, b.stimulus_ids) * SIMILARITY_WEIGHTS["stimulus"]
    if a.distractor_set is not None and b.distractor_set is not None:
        score += _jaccard(a.distractor_set, b.distractor_set) * SIMILARITY_WEIGHTS["distractor"]
    if a.temporal_params is not None and b.temporal_params is not None:
        score += _temporal_similarity(a.temporal_params, b.temporal_params) * SIMILARITY_WEIGHTS["temporal"]
    if a.rule_params is not None and b.rule_params is not None:
        if _rule_key(a.rule_params) == _rule_key(b.rule_params):
            score += SIMILARITY_WEIGHTS["rule"]
    return min(1.0, score)


def is_near_duplicate(
    candidate: ComboParams,
    recent_combos: Iterable[ComboRecord],
    now: datetime,
) -> bool:
    cutoff = as_utc(now) - NEAR_DUPLICATE_WINDOW
    for record in recent_combos:
        if record.params is None or as_utc(record.completed_at) < cutoff:
            continue
        if calculate_similarity(candidate, record.params) >= SIMILARITY_THRESHOLD:
            return True
    return False


def validate_candidate(
    params: ComboParams,
    recent_combos: Sequence[ComboRecord],
    system_type: SystemType,
    now: datetime,
    timezone_name: str = "UTC",
) -> tuple[str, ValidationResult]:
    combo_hash = generate_combo_hash(params)
    result = is_combo_valid(combo_hash, recent_combos, system_type, now, timezone_name)
    if result.valid and is_near_duplicate(params, recent_combos, now):
        result = ValidationResult(False, "near_duplicate")
    return combo_hash, result


# ---------------------------------------------------------------------------
# Generation
# ---------------------------------------------------------------------------


def perturb_params(params: ComboParams, rng: random.Random) -> ComboParams:
    temporal = dict(params.temporal_params or {})
    temporal[FALLBACK_JITTER_KEY] = rng.random()
    return replace(params, temporal_params=temporal)


def generate_valid_session(
    generator: Callable[[], T],
    hash_extractor: Callable[[T], ComboParams],
    *,
    recent_combos: Iterable[ComboRecord] = (),
    system_type: SystemType = "S1",
    now: datetime | None = None,
    max_attempts: int = MAX_GENERATION_ATTEMPTS,
    timezone_name: str = "UTC",
    rng: random.Random | None = None,
    apply_params: Callable[[T, ComboParams], T],
    game_name: str | None = None,
) -> SessionGenerationResult[T]:
    """Draw candidates until one passes validation; never refuses.

    On exhaustion the last candidate's temporal parameters get a
    ``fallback_jitter`` entry (re-drawn until the hash is new to the
    history). ``apply_params`` folds the jittered parameters back into the
    session object, so the returned session always matches ``params``.
    """
    if max_attempts < 1:
        raise ValueError("max_attempts must be >= 1")
    now = now or datetime.now(timezone.utc)
    history = list(recent_combos)
    rejected = 0
    last_session: T | None = None
    last_params: ComboParams | None = None

    for attempt in range(1, max_attempts + 1):
        session = generator()
        params = hash_extractor(session)
        combo_hash, result = validate_candidate(params, history, system_type, now, timezone_name)
        if result.valid:
            if rejected:
                record_duplicates_rejected(rejected)
            return SessionGenerationResult(
                session=session,
                combo_hash=combo_hash,
                params=params,
                duplicates_rejected=rejected,
                attempts=attempt,
            )
        rejected += 1
        last_session, last_params = session, params

    rng = rng or random.Random()
    known = {record.combo_hash for record in history}
    params = perturb_params(last_params, rng)
    combo_hash = generate_combo_hash(params)
    while combo_hash in known:
        params = perturb_params(last_params, rng)
        combo_hash = generate_combo_hash(params)

    session = apply_params(last_session, params)
    record_duplicates_rejected(rejected)
    record_generation_fallback()
    logger.warning(
        "Session generation exhausted %d attempts; using jittered fallback",
        max_attempts,
        extra=log_context(game_name=game_name, duplicates_rejected=rejected, combo_hash=combo_hash),
    )
    return SessionGenerationResult(
        session=session,
        combo_hash=combo_hash,
        params=params,
        duplicates_rejected=rejected,
        fallback_used=True,
        attempts=max_attempts,
    )
