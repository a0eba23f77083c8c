"""Health endpoint for container probes.

Serves ``GET /health`` on a bare ``asyncio`` server: 200 when the database
answers, 503 when it does not, with the worker metrics in the body.
"""

import asyncio
import json
import logging
from typing import Any

import psycopg

from .metrics import get_metrics

logger = logging.getLogger(__name__)

HEALTH_PATH = "/health"
DB_CHECK_TIMEOUT_SECONDS = 2
REQUEST_TIMEOUT_SECONDS = 5

_REASONS = {200: "OK", 404: "Not Found", 503: "Service Unavailable"}


async def check_database(db_url: str) -> str:
    """'ok' if ``SELECT 1`` answers in time, otherwise 'error'."""
    try:
        async with asyncio.timeout(DB_CHECK_TIMEOUT_SECONDS):
            async with await psycopg.AsyncConnection.connect(db_url, autocommit=True) as conn:
                await conn.execute("SELECT 1")
    except (OSError, TimeoutError, psycopg.Error):
        return "error"
    return "ok"


def build_health_response(path: str, db_status: str) -> tuple[int, dict[str, Any]]:
    if path != HEALTH_PATH:
        return 404, {"error": "not_found"}
    status = "ok" if db_status == "ok" else "degraded"
    metrics = get_metrics()
    body = {
        "status": status,
        "db": db_status,
        "uptime_seconds": metrics["uptime_seconds"],
        "metrics": metrics,
    }
    return (200 if status == "ok" else 503), body


def encode_response(code: int, body: dict[str, Any]) -> bytes:
    payload = json.dumps(body)
    head = (
        f"HTTP/1.1 {code} {_REASONS[code]}\r\n"
        "Content-Type: application/json\r\n"
        f"Content-Length: {len(payload)}\r\n\r\n"
    )
    return (head + payload).encode()


def request_path(request_line: bytes) -> str:
    # "GET /health HTTP/1.1"
    parts = request_line.decode("utf-8", errors="replace").split()
    return parts[1] if len(parts) >= 2 else "/"


async def _serve(reader: asyncio.StreamReader, writer: asyncio.StreamWriter, db_url: str) -> None:
    try:
        line = await asyncio.wait_for(reader.readline(), timeout=REQUEST_TIMEOUT_SECONDS)
        path = request_path(line)
        db_status = await check_database(db_url) if path == HEALTH_PATH else "skipped"
        writer.write(encode_response(*build_health_response(path, db_status)))
        await writer.drain()
    except (OSError, TimeoutError):
        logger.debug("Health request aborted", exc_info=True)
    finally:
        writer.close()
        await writer.wait_closed()


async def start_health_server(port: int, db_url: str) -> asyncio.Server:
    async def on_connect(reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        await _serve(reader, writer, db_url)

    server = await asyncio.start_server(on_connect, "0.0.0.0", port)
    logger.info("Health endpoint listening on port %d", port)
    return server
