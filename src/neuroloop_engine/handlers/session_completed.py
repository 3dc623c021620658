"""game.session_completed handler: write back a finished drill."""

import logging
import time
from datetime import datetime, timezone
from typing import Any

import psycopg

from .. import service
from ..contracts import GAME_SESSION_COMPLETED, SessionCompletedV1, parse_payload
from ..logging import log_context
from ..metrics import record_handler_invocation
from ..registry import register

logger = logging.getLogger(__name__)


@register(GAME_SESSION_COMPLETED)
async def handle_session_completed(
    conn: psycopg.AsyncConnection[Any], payload: dict[str, Any]
) -> None:
    completed = parse_payload(SessionCompletedV1, payload, job_type=GAME_SESSION_COMPLETED)
    started = time.monotonic()
    success = False
    try:
        outcome = await service.record_game_completion(
            conn, completed, datetime.now(timezone.utc)
        )
        if outcome.cap_violations:
            logger.info(
                "Completion accepted past cap for user=%s (%s)",
                completed.user_id,
                ", ".join(outcome.cap_violations),
                extra=log_context(user_id=completed.user_id, game_type=completed.game_type),
            )
        success = True
    finally:
        record_handler_invocation(
            "handle_session_completed", (time.monotonic() - started) * 1000, success
        )
