"""Structured logging for the NeuroLoop engine.

Controlled via NEUROLOOP_LOG_FORMAT env var: "json" (default) or "text".

Call sites attach engine context through ``log_context``; the keys land on
the record as ``neuroloop_<name>`` attributes. JSON output carries every
such attribute, text output appends the identifying ones (job, user, game)
so plaintext logs stay greppable per user.
"""

import json
import logging
import sys
import traceback
from datetime import datetime, timezone
from typing import Any

EXTRA_PREFIX = "neuroloop_"
SERVICE_NAME = "neuroloop-engine"

# Shown by the text formatter, in this order.
CONTEXT_FIELDS = ("job_id", "job_type", "user_id", "game_type", "game_name")

LOG_FORMATS = ("json", "text")


def log_context(**fields: Any) -> dict[str, Any]:
    """Build an ``extra=`` mapping; None values are dropped."""
    return {f"{EXTRA_PREFIX}{key}": value for key, value in fields.items() if value is not None}


def engine_extras(record: logging.LogRecord) -> dict[str, Any]:
    return {
        key: value for key, value in record.__dict__.items() if key.startswith(EXTRA_PREFIX)
    }


class JSONFormatter(logging.Formatter):
    """Emit log records as single-line JSON objects."""

    def format(self, record: logging.LogRecord) -> str:
        log_entry: dict = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "service": SERVICE_NAME,
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        if record.exc_info and record.exc_info[1] is not None:
            log_entry["exception"] = "".join(traceback.format_exception(*record.exc_info))

        log_entry.update(engine_extras(record))
        return json.dumps(log_entry, default=str)


class ContextTextFormatter(logging.Formatter):
    """Plaintext lines with a trailing ``[user_id=... job_type=...]`` block."""

    def __init__(self) -> None:
        super().__init__("%(asctime)s %(levelname)s %(name)s: %(message)s")

    def format(self, record: logging.LogRecord) -> str:
        line = super().format(record)
        extras = engine_extras(record)
        context = [
            f"{name}={extras[EXTRA_PREFIX + name]}"
            for name in CONTEXT_FIELDS
            if EXTRA_PREFIX + name in extras
        ]
        if not context:
            return line
        head, sep, tail = line.partition("\n")
        return f"{head} [{' '.join(context)}]{sep}{tail}"


def setup_logging(log_format: str, level: int = logging.INFO) -> None:
    """Configure root logger with either JSON or plaintext format."""
    if log_format not in LOG_FORMATS:
        raise ValueError(f"Unknown log format {log_format!r}; expected one of {LOG_FORMATS}")

    root = logging.getLogger()
    root.setLevel(level)

    for handler in root.handlers[:]:
        root.removeHandler(handler)

    handler = logging.StreamHandler(sys.stderr)
    handler.setLevel(level)
    handler.setFormatter(JSONFormatter() if log_format == "json" else ContextTextFormatter())
    root.addHandler(handler)
