"""Shared utility functions for the NeuroLoop engine."""

import math
from datetime import date, datetime, time, timedelta, timezone
from typing import Any
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

DEFAULT_ASSUMED_TIMEZONE = "UTC"


def clamp(value: float, low: float, high: float) -> float:
    return max(low, min(high, value))


def as_float(value: Any) -> float | None:
    """Parse a finite float, or None for missing/invalid/NaN values."""
    if value is None or isinstance(value, bool):
        return None
    try:
        parsed = float(value)
    except (TypeError, ValueError):
        return None
    if not math.isfinite(parsed):
        return None
    return parsed


def normalize_timezone_name(value: Any) -> str | None:
    """Normalize timezone preference and verify it's a valid IANA name."""
    if not isinstance(value, str):
        return None
    raw = value.strip()
    if not raw:
        return None
    if raw.upper() == "UTC":
        return "UTC"
    try:
        ZoneInfo(raw)
    except ZoneInfoNotFoundError:
        return None
    return raw


def resolve_timezone_name(value: Any) -> str:
    return normalize_timezone_name(value) or DEFAULT_ASSUMED_TIMEZONE


def as_utc(ts: datetime) -> datetime:
    if ts.tzinfo is None:
        return ts.replace(tzinfo=timezone.utc)
    return ts.astimezone(timezone.utc)


def to_local(ts: datetime, timezone_name: str) -> datetime:
    return as_utc(ts).astimezone(ZoneInfo(resolve_timezone_name(timezone_name)))


def local_date_for_timezone(ts: datetime, timezone_name: str) -> date:
    """Project a timestamp into the configured local calendar date."""
    return to_local(ts, timezone_name).date()


def local_day_start(now: datetime, timezone_name: str) -> datetime:
    """UTC instant of local midnight for the day containing ``now``."""
    tz = ZoneInfo(resolve_timezone_name(timezone_name))
    local_day = to_local(now, timezone_name).date()
    return datetime.combine(local_day, time.min, tzinfo=tz).astimezone(timezone.utc)


def local_week_start(now: datetime, timezone_name: str) -> datetime:
    """UTC instant of local Monday 00:00 for the ISO week containing ``now``."""
    tz = ZoneInfo(resolve_timezone_name(timezone_name))
    local_day = to_local(now, timezone_name).date()
    monday = local_day - timedelta(days=local_day.weekday())
    return datetime.combine(monday, time.min, tzinfo=tz).astimezone(timezone.utc)


def whole_days_between(earlier: datetime, later: datetime) -> int:
    """Elapsed full 24h periods from ``earlier`` to ``later`` (never negative)."""
    delta = as_utc(later) - as_utc(earlier)
    if delta.total_seconds() <= 0:
        return 0
    return delta.days


def parse_timestamp(value: Any) -> datetime | None:
    """Accept datetimes or ISO 8601 strings (with optional trailing Z)."""
    if isinstance(value, datetime):
        return as_utc(value)
    if not isinstance(value, str):
        return None
    raw = value.strip()
    if not raw:
        return None
    if raw.endswith("Z"):
        raw = raw[:-1] + "+00:00"
    try:
        return as_utc(datetime.fromisoformat(raw))
    except ValueError:
        return None
