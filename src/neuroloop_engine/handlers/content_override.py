"""content.override_requested handler.

A refused override is a normal outcome, not a job failure: the decision is
logged and the job completes.
"""

import time
from datetime import datetime, timezone
from typing import Any

import psycopg

from .. import service
from ..contracts import CONTENT_OVERRIDE_REQUESTED, OverrideRequestedV1, parse_payload
from ..metrics import record_handler_invocation
from ..registry import register


@register(CONTENT_OVERRIDE_REQUESTED)
async def handle_override_requested(
    conn: psycopg.AsyncConnection[Any], payload: dict[str, Any]
) -> None:
    request = parse_payload(OverrideRequestedV1, payload, job_type=CONTENT_OVERRIDE_REQUESTED)
    started = time.monotonic()
    success = False
    try:
        await service.request_content_override(
            conn,
            request.user_id,
            request.task_id,
            request.task_type,
            request.reading_type,
            request.demand,
            request.requested_at or datetime.now(timezone.utc),
        )
        success = True
    finally:
        record_handler_invocation(
            "handle_override_requested", (time.monotonic() - started) * 1000, success
        )
