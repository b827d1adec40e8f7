"""Movement memory projection handler.

Reacts to set.logged, set.edited, and set.deleted events.
Per affected (user, exercise):
- takes the per-key advisory lock
- reads the recent set history, whole-history totals and the stored memory
- recomputes from scratch and upserts

Full recompute on every event. A racing or repeated job converges on the
same stored memory.
"""

import logging
import time
from datetime import date, datetime, timezone
from typing import Any

import psycopg

from ..config import EngineSettings
from ..logging import log_context
from ..memory import recompute_movement_memory
from ..metrics import record_recompute
from ..persistence import (
    DEFAULT_HISTORY_LIMIT,
    acquire_memory_lock,
    load_lifetime_totals,
    load_movement_memory,
    load_set_history,
    save_movement_memory,
)
from ..registry import projection_handler

logger = logging.getLogger(__name__)


def _normalize_exercise_id(value: Any) -> str | None:
    if value is None:
        return None
    normalized = str(value).strip()
    return normalized or None


def affected_exercises(payload: dict[str, Any]) -> set[str]:
    """Exercises whose memory an event touches.

    An edit that moves a set to another exercise touches both.
    """
    targets: set[str] = set()
    for field in ("exercise_id", "previous_exercise_id"):
        exercise_id = _normalize_exercise_id(payload.get(field))
        if exercise_id:
            targets.add(exercise_id)
    return targets


def resolve_as_of(payload: dict[str, Any]) -> date:
    raw = payload.get("as_of")
    if isinstance(raw, date):
        return raw
    if isinstance(raw, str) and raw.strip():
        try:
            return date.fromisoformat(raw.strip()[:10])
        except ValueError:
            logger.warning("Ignoring unparseable as_of=%r", raw)
    return datetime.now(timezone.utc).date()


@projection_handler("set.logged", "set.edited", "set.deleted")
async def update_movement_memory(
    conn: psycopg.AsyncConnection[Any], payload: dict[str, Any]
) -> None:
    """Full recompute of movement_memory for the affected exercise(s)."""
    user_id = payload["user_id"]
    event_type = payload.get("event_type", "")

    targets = affected_exercises(payload)
    if not targets:
        logger.warning(
            "Event %s (%s) has no exercise_id, skipping",
            payload.get("event_id"),
            event_type,
        )
        return

    as_of = resolve_as_of(payload)
    limit = int(payload.get("history_limit") or DEFAULT_HISTORY_LIMIT)
    settings = EngineSettings.from_env()

    for exercise_id in sorted(targets):
        with log_context(user_id=user_id, exercise_id=exercise_id):
            await _recompute_one(conn, user_id, exercise_id, as_of=as_of, limit=limit, settings=settings)


async def _recompute_one(
    conn: psycopg.AsyncConnection[Any],
    user_id: str,
    exercise_id: str,
    *,
    as_of: date,
    limit: int,
    settings: EngineSettings,
) -> None:
    start = time.monotonic()
    await acquire_memory_lock(conn, user_id, exercise_id)
    history = await load_set_history(conn, user_id, exercise_id, limit=limit)
    lifetime = await load_lifetime_totals(conn, user_id, exercise_id)
    previous = await load_movement_memory(conn, user_id, exercise_id)

    memory = recompute_movement_memory(
        user_id,
        exercise_id,
        history,
        as_of=as_of,
        previous=previous,
        lifetime=lifetime,
        settings=settings,
    )
    if memory is not None:
        await save_movement_memory(conn, memory)
    duration_ms = (time.monotonic() - start) * 1000
    record_recompute(exercise_id, written=memory is not None, duration_ms=duration_ms)

    if memory is None:
        logger.info("No qualifying sets, nothing to store")
        return
    logger.info(
        "Updated movement_memory (sets=%d, exposures=%d, trend=%s, confidence=%s) in %.1fms",
        len(history),
        memory.exposure_count,
        memory.trend.value if memory.trend else None,
        memory.confidence_level.value,
        duration_ms,
        extra={"mm_duration_ms": round(duration_ms, 1)},
    )
