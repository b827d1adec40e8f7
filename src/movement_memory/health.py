"""HTTP status endpoint for container healthchecks.

A raw asyncio.start_server speaking just enough HTTP/1.1 for curl and the
Docker HEALTHCHECK:

- GET /health   database reachability plus job counters; 503 when degraded
- GET /metrics  the full metrics snapshot, including per-exercise recompute
                timings and the projection subscriptions
"""

import asyncio
import json
import logging
from collections.abc import Callable
from typing import Any

import psycopg

from .metrics import get_metrics
from .registry import subscriptions

logger = logging.getLogger(__name__)

_REASONS = {200: "OK", 404: "Not Found", 405: "Method Not Allowed", 503: "Service Unavailable"}


async def check_database(db_url: str, timeout: float = 2.0) -> str:
    """``SELECT 1`` within ``timeout`` seconds; returns "ok" or "error"."""
    try:
        async with asyncio.timeout(timeout):
            async with await psycopg.AsyncConnection.connect(db_url, autocommit=True) as conn:
                await conn.execute("SELECT 1")
        return "ok"
    except (OSError, TimeoutError, psycopg.Error):
        logger.warning("Health check could not reach the database", exc_info=True)
        return "error"


def _health(db_status: str) -> tuple[int, dict[str, Any]]:
    metrics = get_metrics()
    status = "ok" if db_status == "ok" else "degraded"
    return (200 if status == "ok" else 503), {
        "status": status,
        "db": db_status,
        "uptime_seconds": metrics["uptime_seconds"],
        "jobs": metrics["jobs"],
        "recomputes": metrics["recomputes"]["total"],
    }


def _metrics(db_status: str) -> tuple[int, dict[str, Any]]:
    return 200, {**get_metrics(), "subscriptions": subscriptions()}


# path -> (needs database check, body builder)
ROUTES: dict[str, tuple[bool, Callable[[str], tuple[int, dict[str, Any]]]]] = {
    "/health": (True, _health),
    "/metrics": (False, _metrics),
}


def needs_database(method: str, path: str) -> bool:
    route = ROUTES.get(path)
    return method == "GET" and route is not None and route[0]


def build_response(method: str, path: str, db_status: str = "skipped") -> str:
    """Render the raw HTTP response for one request line."""
    route = ROUTES.get(path)
    if route is None:
        code, body = 404, {"error": "not_found"}
    elif method != "GET":
        code, body = 405, {"error": "method_not_allowed", "allow": "GET"}
    else:
        code, body = route[1](db_status)

    payload = json.dumps(body)
    headers = [
        f"HTTP/1.1 {code} {_REASONS[code]}",
        "Content-Type: application/json",
        f"Content-Length: {len(payload.encode())}",
        "Connection: close",
    ]
    if code == 405:
        headers.append("Allow: GET")
    return "\r\n".join(headers) + "\r\n\r\n" + payload


async def _handle_request(
    reader: asyncio.StreamReader,
    writer: asyncio.StreamWriter,
    db_url: str,
) -> None:
    try:
        request_line = await asyncio.wait_for(reader.readline(), timeout=5)
        parts = request_line.decode("utf-8", errors="replace").split()
        method = parts[0].upper() if parts else "GET"
        path = parts[1].split("?", 1)[0] if len(parts) >= 2 else "/"

        db_status = await check_database(db_url) if needs_database(method, path) else "skipped"
        writer.write(build_response(method, path, db_status).encode())
        await writer.drain()
    except (OSError, TimeoutError):
        logger.debug("Health endpoint request dropped", exc_info=True)
    finally:
        writer.close()
        await writer.wait_closed()


async def start_health_server(port: int, db_url: str) -> asyncio.Server:
    """Serve the status routes on ``port``; the caller closes the returned server."""

    async def handler(reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        await _handle_request(reader, writer, db_url)

    server = await asyncio.start_server(handler, "0.0.0.0", port)
    logger.info("Status endpoint listening on port %d (%s)", port, ", ".join(sorted(ROUTES)))
    return server
