"""Projection update router.

Dispatches projection.update jobs to every projection handler registered
for the job's event_type. Each handler runs in its own savepoint so one
failing projection does not roll back the others' writes.

Handler failures are re-raised after all handlers ran: the worker owns
retry and dead-letter policy for the job as a whole.
"""

import logging
import time
from typing import Any

import psycopg

from ..metrics import record_handler_invocation
from ..registry import get_projection_handlers, register

logger = logging.getLogger(__name__)


class ProjectionUpdateError(RuntimeError):
    """One or more projection handlers failed for a job."""

    def __init__(self, event_type: str, failures: dict[str, Exception]) -> None:
        self.event_type = event_type
        self.failures = failures
        names = ", ".join(sorted(failures))
        super().__init__(f"Projection handlers failed for event_type={event_type}: {names}")


@register("projection.update")
async def handle_projection_update(
    conn: psycopg.AsyncConnection[Any], payload: dict[str, Any]
) -> None:
    """Route projection.update jobs to all registered handlers for the event_type."""
    event_type = payload.get("event_type", "")
    user_id = payload.get("user_id")
    if not user_id:
        raise ValueError(f"Missing user_id in projection.update payload (event_type={event_type})")

    handlers = get_projection_handlers(event_type)
    if not handlers:
        logger.debug("No projection handlers for event_type=%s", event_type)
        return

    failures: dict[str, Exception] = {}
    for handler in handlers:
        name = handler.__name__
        start = time.monotonic()
        try:
            async with conn.transaction():
                await handler(conn, payload)
        except Exception as exc:
            duration_ms = (time.monotonic() - start) * 1000
            record_handler_invocation(name, duration_ms, success=False)
            logger.exception(
                "Projection handler %s failed for event_type=%s user=%s",
                name,
                event_type,
                user_id,
                extra={"mm_handler_name": name, "mm_duration_ms": round(duration_ms, 1)},
            )
            failures[name] = exc
            continue

        duration_ms = (time.monotonic() - start) * 1000
        record_handler_invocation(name, duration_ms, success=True)
        logger.debug(
            "Projection handler %s done in %.1fms",
            name,
            duration_ms,
            extra={"mm_handler_name": name, "mm_duration_ms": round(duration_ms, 1)},
        )

    if failures:
        raise ProjectionUpdateError(event_type, failures)
