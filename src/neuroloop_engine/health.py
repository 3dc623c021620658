"""Minimal async HTTP health endpoint.

``/health`` reports database reachability plus the in-memory counters
(jobs, handler timings, cap races, generation fallbacks, fail-open reads).
"""

import asyncio
import json
import logging

import psycopg

from .metrics import get_metrics

logger = logging.getLogger(__name__)

_HTTP_200 = "HTTP/1.1 200 OK\r\nContent-Type: application/json\r\n"
_HTTP_503 = "HTTP/1.1 503 Service Unavailable\r\nContent-Type: application/json\r\n"
_HTTP_404 = "HTTP/1.1 404 Not Found\r\nContent-Type: application/json\r\n"


async def check_db(db_url: str) -> str:
    """SELECT 1 with a 2s timeout. Returns 'ok' or 'error'."""
    try:
        async with asyncio.timeout(2):
            async with await psycopg.AsyncConnection.connect(
                db_url, autocommit=True
            ) as conn:
                await conn.execute("SELECT 1")
        return "ok"
    except (psycopg.Error, OSError, TimeoutError):
        return "error"


def build_response(path: str, db_status: str) -> str:
    if path != "/health":
        body = json.dumps({"error": "not_found"})
        return f"{_HTTP_404}Content-Length: {len(body)}\r\n\r\n{body}"

    metrics = get_metrics()
    status = "ok" if db_status == "ok" else "degraded"
    body = json.dumps({
        "status": status,
        "uptime_seconds": metrics["uptime_seconds"],
        "db": db_status,
        "metrics": metrics,
    })
    status_line = _HTTP_200 if status == "ok" else _HTTP_503
    return f"{status_line}Content-Length: {len(body)}\r\n\r\n{body}"


async def _handle_request(
    reader: asyncio.StreamReader,
    writer: asyncio.StreamWriter,
    db_url: str,
) -> None:
    try:
        request_line = await asyncio.wait_for(reader.readline(), timeout=5)
        parts = request_line.decode("utf-8", errors="replace").strip().split()
        path = parts[1] if len(parts) >= 2 else "/"

        db_status = await check_db(db_url) if path == "/health" else "skipped"
        writer.write(build_response(path, db_status).encode())
        await writer.drain()
    except (OSError, TimeoutError, UnicodeError):
        logger.debug("Health endpoint request error", exc_info=True)
    finally:
        writer.close()
        await writer.wait_closed()


async def start_health_server(port: int, db_url: str) -> asyncio.Server:
    async def handler(reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        await _handle_request(reader, writer, db_url)

    server = await asyncio.start_server(handler, "0.0.0.0", port)
    logger.info("Health endpoint listening on port %d", port)
    return server
