"""Recovery job handlers.

recovery.baseline_requested seeds the first checkpoint from onboarding
answers (no-op once a baseline exists); recovery.action_logged applies a
detox/walk session to the checkpoint.
"""

import logging
import time
from datetime import datetime, timezone
from typing import Any

import psycopg

from .. import service
from ..contracts import (
    RECOVERY_ACTION_LOGGED,
    RECOVERY_BASELINE_REQUESTED,
    BaselineRequestedV1,
    RecoveryActionLoggedV1,
    parse_payload,
)
from ..logging import log_context
from ..metrics import record_handler_invocation
from ..recovery import OnboardingSeed
from ..registry import register

logger = logging.getLogger(__name__)


@register(RECOVERY_BASELINE_REQUESTED)
async def handle_baseline_requested(
    conn: psycopg.AsyncConnection[Any], payload: dict[str, Any]
) -> None:
    request = parse_payload(BaselineRequestedV1, payload, job_type=RECOVERY_BASELINE_REQUESTED)
    started = time.monotonic()
    success = False
    try:
        seed = OnboardingSeed(
            sleep_hours=request.sleep_hours,
            detox_hours=request.detox_hours,
            mental_state=request.mental_state,
            rri_value=request.rri_value,
        )
        now = request.requested_at or datetime.now(timezone.utc)
        await service.ensure_recovery_baseline(conn, request.user_id, seed, now)
        success = True
    finally:
        record_handler_invocation(
            "handle_baseline_requested", (time.monotonic() - started) * 1000, success
        )


@register(RECOVERY_ACTION_LOGGED)
async def handle_recovery_action(
    conn: psycopg.AsyncConnection[Any], payload: dict[str, Any]
) -> None:
    action = parse_payload(RecoveryActionLoggedV1, payload, job_type=RECOVERY_ACTION_LOGGED)
    started = time.monotonic()
    success = False
    try:
        now = action.occurred_at or datetime.now(timezone.utc)
        state = await service.log_recovery_action(
            conn, action.user_id, action.detox_minutes, action.walk_minutes, now
        )
        logger.info(
            "Recovery action applied for user=%s: REC=%.1f",
            action.user_id,
            state.value,
            extra=log_context(user_id=action.user_id),
        )
        success = True
    finally:
        record_handler_invocation(
            "handle_recovery_action", (time.monotonic() - started) * 1000, success
        )
