"""Reading (non-game content) gating.

Two derived indices drive eligibility:

    s2_capacity = round(0.6·sharpness + 0.4·readiness)
    s1_buffer   = recovery

A global mode is picked first (``RECOVERY_MODE`` withholds everything,
``LOW_BANDWIDTH_MODE`` withholds analytical reading), then the category
thresholds for the item's demand level apply. Withheld reading, unlike
games, can be overridden (see ``overrides``).
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Iterable, Literal

from .unlock import MetricGap
from .utils import as_float

ReadingType = Literal["RECOVERY_SAFE", "NON_FICTION", "BOOK"]
Demand = Literal["LOW", "MEDIUM", "HIGH", "VERY_HIGH"]
GlobalMode = Literal["RECOVERY_MODE", "LOW_BANDWIDTH_MODE", "FULL_CAPACITY_MODE"]

RECOVERY_MODE_S1_BUFFER = 45
LOW_BANDWIDTH_S2_CAPACITY = 55

NON_FICTION_MIN_SHARPNESS = 60
BOOK_MIN_READINESS = 55
BOOK_MIN_SHARPNESS = 65

DEMAND_PENALTY: dict[str, int] = {"LOW": 5, "MEDIUM": 12, "HIGH": 18, "VERY_HIGH": 28}

# Per category and demand: minimum s1_buffer, s2_capacity, sharpness, readiness.
READING_THRESHOLDS: dict[str, dict[str, dict[str, float]]] = {
    "RECOVERY_SAFE": {
        "LOW": {"s1_buffer": 50},
    },
    "NON_FICTION": {
        "LOW": {"s1_buffer": 50, "s2_capacity": 55, "sharpness": 60},
        "MEDIUM": {"s1_buffer": 50, "s2_capacity": 65, "sharpness": 60},
        "HIGH": {"s1_buffer": 55, "s2_capacity": 72, "sharpness": 68},
    },
    "BOOK": {
        "MEDIUM": {"s1_buffer": 55, "s2_capacity": 68, "sharpness": 65, "readiness": 55},
        "HIGH": {"s1_buffer": 58, "s2_capacity": 75, "sharpness": 70, "readiness": 55},
        "VERY_HIGH": {"s1_buffer": 60, "s2_capacity": 80, "sharpness": 75, "readiness": 55},
    },
}

# Threshold checks run in this order; the first failure names the reason.
_CHECK_ORDER = ("s1_buffer", "s2_capacity", "sharpness", "readiness")
_REASON_FOR_METRIC = {
    "s1_buffer": "S1_BUFFER_TOO_LOW",
    "s2_capacity": "S2_CAPACITY_TOO_LOW",
    "sharpness": "SHARPNESS_TOO_LOW",
    "readiness": "READINESS_TOO_LOW",
}
# s1_buffer is recovery under another name.
_GAP_METRIC = {"s1_buffer": "recovery"}


@dataclass(frozen=True)
class CapacityIndices:
    s2_capacity: float
    s1_buffer: float
    sharpness: float
    readiness: float


@dataclass(frozen=True)
class ContentGatingResult:
    content_type: str
    demand: str
    status: Literal["ENABLED", "WITHHELD"]
    reason_code: str | None = None
    global_mode: GlobalMode | None = None
    metric_gaps: tuple[MetricGap, ...] = ()
    fit_score: float | None = None
    is_game: bool = False

    @property
    def enabled(self) -> bool:
        return self.status == "ENABLED"


def compute_s2_capacity(sharpness: float, readiness: float, penalty: float = 0.0) -> float:
    return round(0.6 * sharpness + 0.4 * readiness) - penalty


def determine_global_mode(s1_buffer: float, s2_capacity: float) -> GlobalMode:
    if s1_buffer < RECOVERY_MODE_S1_BUFFER:
        return "RECOVERY_MODE"
    if s2_capacity < LOW_BANDWIDTH_S2_CAPACITY:
        return "LOW_BANDWIDTH_MODE"
    return "FULL_CAPACITY_MODE"


def fit_score(demand: str, s2_capacity: float, s1_buffer: float) -> float:
    return (s2_capacity - DEMAND_PENALTY.get(demand, 0)) + 0.35 * (s1_buffer - 50)


def _gaps(required: dict[str, float], indices: CapacityIndices) -> tuple[MetricGap, ...]:
    gaps = []
    for metric in _CHECK_ORDER:
        needed = required.get(metric)
        if needed is None:
            continue
        current = getattr(indices, metric)
        if current < needed:
            gaps.append(MetricGap(_GAP_METRIC.get(metric, metric), current, needed))
    return tuple(gaps)


def _category_requirements(reading_type: str, demand: str) -> dict[str, float] | None:
    table = READING_THRESHOLDS.get(reading_type)
    if table is None:
        return None
    required = table.get(demand)
    if required is None:
        return None
    required = dict(required)
    if reading_type == "NON_FICTION":
        required["sharpness"] = max(required.get("sharpness", 0), NON_FICTION_MIN_SHARPNESS)
    elif reading_type == "BOOK":
        required["sharpness"] = max(required.get("sharpness", 0), BOOK_MIN_SHARPNESS)
        required["readiness"] = max(required.get("readiness", 0), BOOK_MIN_READINESS)
    return required


def evaluate_reading(
    reading_type: str,
    demand: str,
    sharpness: float | None,
    readiness: float | None,
    recovery: float | None,
    *,
    s2_penalty: float = 0.0,
) -> ContentGatingResult:
    """Gate one reading item. ``s2_penalty`` is subtracted from S2 capacity
    (overrides already used today)."""
    values = [as_float(sharpness), as_float(readiness), as_float(recovery)]
    if any(v is None for v in values):
        return ContentGatingResult(reading_type, demand, "WITHHELD", "METRIC_UNAVAILABLE")
    sharp, ready, rec = values

    indices = CapacityIndices(
        s2_capacity=compute_s2_capacity(sharp, ready, s2_penalty),
        s1_buffer=rec,
        sharpness=sharp,
        readiness=ready,
    )
    mode = determine_global_mode(indices.s1_buffer, indices.s2_capacity)
    score = fit_score(demand, indices.s2_capacity, indices.s1_buffer)

    required = _category_requirements(reading_type, demand)
    if required is None:
        reason = "UNKNOWN_READING_TYPE" if reading_type not in READING_THRESHOLDS else "INVALID_DEMAND"
        return ContentGatingResult(reading_type, demand, "WITHHELD", reason, mode, fit_score=score)

    gaps = _gaps(required, indices)

    def withheld(reason: str) -> ContentGatingResult:
        return ContentGatingResult(reading_type, demand, "WITHHELD", reason, mode, gaps, score)

    if mode == "RECOVERY_MODE":
        return withheld("RECOVERY_MODE")
    if mode == "LOW_BANDWIDTH_MODE" and reading_type != "RECOVERY_SAFE":
        return withheld("LOW_BANDWIDTH_MODE")
    for metric in _CHECK_ORDER:
        needed = required.get(metric)
        if needed is not None and getattr(indices, metric) < needed:
            return withheld(_REASON_FOR_METRIC[metric])

    return ContentGatingResult(reading_type, demand, "ENABLED", None, mode, (), score)


@dataclass(frozen=True)
class ReadingItem:
    id: str
    reading_type: str
    demand: str
    duration_minutes: int | None = None


@dataclass(frozen=True)
class ReadingSelection:
    enabled: list[tuple[ReadingItem, ContentGatingResult]] = field(default_factory=list)
    withheld: list[tuple[ReadingItem, ContentGatingResult]] = field(default_factory=list)
    global_mode: GlobalMode | None = None


def select_readings(
    items: Iterable[ReadingItem],
    sharpness: float | None,
    readiness: float | None,
    recovery: float | None,
    *,
    s2_penalty: float = 0.0,
) -> ReadingSelection:
    """Best eligible item per category, at most two in total.

    A book or non-fiction item (never both) leads, with a recovery-safe
    item as complement.
    """
    enabled_by_type: dict[str, list[tuple[ReadingItem, ContentGatingResult]]] = {}
    withheld: list[tuple[ReadingItem, ContentGatingResult]] = []
    mode: GlobalMode | None = None
    for item in items:
        result = evaluate_reading(
            item.reading_type, item.demand, sharpness, readiness, recovery, s2_penalty=s2_penalty
        )
        mode = result.global_mode or mode
        if result.enabled:
            enabled_by_type.setdefault(item.reading_type, []).append((item, result))
        else:
            withheld.append((item, result))

    def best(reading_type: str) -> list[tuple[ReadingItem, ContentGatingResult]]:
        ranked = sorted(enabled_by_type.get(reading_type, []), key=lambda p: p[1].fit_score or 0, reverse=True)
        return ranked[:1]

    chosen = best("BOOK") or best("NON_FICTION")
    chosen = chosen + best("RECOVERY_SAFE")
    return ReadingSelection(enabled=chosen[:2], withheld=withheld, global_mode=mode)
