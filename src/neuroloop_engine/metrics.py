"""In-memory engine metrics.

Asyncio is single-threaded, so plain dicts need no locking.
"""

import time

_start_time = time.monotonic()

_metrics: dict = {
    "jobs_processed": 0,
    "jobs_failed": 0,
    "jobs_dead": 0,
    "handlers": {},
    "engine": {
        "cap_violation_races": 0,
        "generation_fallbacks": 0,
        "duplicates_rejected": 0,
        "store_fail_open": 0,
    },
}


def record_handler_invocation(handler_name: str, duration_ms: float, success: bool) -> None:
    """Record a single handler invocation with timing."""
    h = _metrics["handlers"].setdefault(handler_name, {
        "invocations": 0,
        "successes": 0,
        "failures": 0,
        "total_duration_ms": 0.0,
    })
    h["invocations"] += 1
    h["total_duration_ms"] += duration_ms
    if success:
        h["successes"] += 1
    else:
        h["failures"] += 1


def record_job_completed() -> None:
    _metrics["jobs_processed"] += 1


def record_job_failed() -> None:
    _metrics["jobs_failed"] += 1


def record_job_dead() -> None:
    _metrics["jobs_dead"] += 1


def record_cap_violation_race(count: int = 1) -> None:
    _metrics["engine"]["cap_violation_races"] += count


def record_generation_fallback() -> None:
    _metrics["engine"]["generation_fallbacks"] += 1


def record_duplicates_rejected(count: int) -> None:
    _metrics["engine"]["duplicates_rejected"] += count


def record_store_fail_open() -> None:
    _metrics["engine"]["store_fail_open"] += 1


def reset_metrics() -> None:
    """Zero every counter. Used by tests."""
    _metrics["jobs_processed"] = 0
    _metrics["jobs_failed"] = 0
    _metrics["jobs_dead"] = 0
    _metrics["handlers"].clear()
    for key in _metrics["engine"]:
        _metrics["engine"][key] = 0


def get_metrics() -> dict:
    """Return a snapshot of current metrics."""
    return {
        "uptime_seconds": round(time.monotonic() - _start_time, 1),
        "jobs_processed": _metrics["jobs_processed"],
        "jobs_failed": _metrics["jobs_failed"],
        "jobs_dead": _metrics["jobs_dead"],
        "handlers": {
            name: dict(stats)
            for name, stats in _metrics["handlers"].items()
        },
        "engine": dict(_metrics["engine"]),
    }
