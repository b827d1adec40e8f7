"""Datastore access for set history and stored movement memories.

Tables read:
- workouts (id, user_id, date_completed, context)
- workout_sets (id, workout_id, exercise_id, actual_weight, actual_reps,
  actual_rpe, is_warmup, set_order)

Table written:
- movement_memory (user_id, exercise_id, data JSONB, version, updated_at),
  unique on (user_id, exercise_id)

Read failures are psycopg exceptions and propagate unchanged; retrying is
the job runner's decision, not ours.
"""

import logging
from typing import Any

import psycopg
from psycopg.rows import dict_row
from psycopg.types.json import Json
from pydantic import ValidationError

from .models import LifetimeTotals, MovementMemory, SetRecord

logger = logging.getLogger(__name__)

DEFAULT_HISTORY_LIMIT = 500


def memory_lock_key(user_id: str, exercise_id: str) -> str:
    return f"movement_memory:{user_id}:{exercise_id}"


async def acquire_memory_lock(
    conn: psycopg.AsyncConnection[Any], user_id: str, exercise_id: str
) -> None:
    """Serialize recomputes for one (user, exercise) until the transaction ends."""
    await conn.execute(
        "SELECT pg_advisory_xact_lock(hashtext(%s)::bigint)",
        (memory_lock_key(user_id, exercise_id),),
    )


def row_to_set_record(row: dict[str, Any]) -> SetRecord | None:
    """Map a joined workout_sets/workouts row; None if it cannot be placed in time."""
    if row.get("timestamp") is None:
        return None
    try:
        return SetRecord(
            set_id=row.get("id"),
            exercise_id=str(row["exercise_id"]),
            timestamp=row["timestamp"],
            weight=row.get("weight"),
            reps=row.get("reps"),
            effort=row.get("effort"),
            is_warmup=bool(row.get("is_warmup")),
            set_order=row.get("set_order"),
            session_id=row.get("session_id"),
            context=row.get("context"),
        )
    except ValidationError:
        logger.warning("Skipping unreadable set row %s", row.get("id"))
        return None


async def load_set_history(
    conn: psycopg.AsyncConnection[Any],
    user_id: str,
    exercise_id: str,
    *,
    limit: int = DEFAULT_HISTORY_LIMIT,
    exclude_session_id: str | None = None,
) -> list[SetRecord]:
    """Most recent completed sets for one exercise, oldest first.

    At most ``limit`` rows are read. When the limit cuts into the oldest
    session, that partial session is dropped so every session in the result
    is whole.
    """
    async with conn.cursor(row_factory=dict_row) as cur:
        await cur.execute(
            """
            SELECT ws.id,
                   ws.exercise_id,
                   ws.actual_weight AS weight,
                   ws.actual_reps AS reps,
                   ws.actual_rpe AS effort,
                   ws.is_warmup,
                   ws.set_order,
                   w.id AS session_id,
                   w.date_completed AS timestamp,
                   w.context
            FROM workout_sets ws
            JOIN workouts w ON w.id = ws.workout_id
            WHERE w.user_id = %s
              AND ws.exercise_id = %s
              AND w.date_completed IS NOT NULL
              AND (%s::text IS NULL OR w.id::text <> %s::text)
            ORDER BY w.date_completed DESC, ws.set_order DESC, ws.id DESC
            LIMIT %s
            """,
            (user_id, exercise_id, exclude_session_id, exclude_session_id, limit),
        )
        rows = await cur.fetchall()

    records = [row_to_set_record(row) for row in rows]
    history = [r for r in records if r is not None]
    history.reverse()
    if len(rows) >= limit and history:
        oldest = history[0].session_key
        whole = [r for r in history if r.session_key != oldest]
        if whole:
            history = whole
    return history


async def load_lifetime_totals(
    conn: psycopg.AsyncConnection[Any],
    user_id: str,
    exercise_id: str,
    *,
    exclude_session_id: str | None = None,
) -> LifetimeTotals:
    """Session count, volume and first date over the unbounded history."""
    async with conn.cursor(row_factory=dict_row) as cur:
        await cur.execute(
            """
            SELECT COUNT(DISTINCT w.id) AS exposure_count,
                   COALESCE(SUM(COALESCE(ws.actual_weight, 0) * COALESCE(ws.actual_reps, 0)), 0)
                       AS total_volume,
                   MIN(w.date_completed) AS first_logged
            FROM workout_sets ws
            JOIN workouts w ON w.id = ws.workout_id
            WHERE w.user_id = %s
              AND ws.exercise_id = %s
              AND w.date_completed IS NOT NULL
              AND NOT COALESCE(ws.is_warmup, FALSE)
              AND (ws.actual_weight IS NOT NULL OR ws.actual_reps IS NOT NULL)
              AND (%s::text IS NULL OR w.id::text <> %s::text)
            """,
            (user_id, exercise_id, exclude_session_id, exclude_session_id),
        )
        row = await cur.fetchone()
    if row is None:
        return LifetimeTotals()
    return LifetimeTotals(
        exposure_count=row.get("exposure_count") or 0,
        total_volume=round(float(row.get("total_volume") or 0), 2),
        first_logged=row.get("first_logged"),
    )


async def load_movement_memory(
    conn: psycopg.AsyncConnection[Any], user_id: str, exercise_id: str
) -> MovementMemory | None:
    async with conn.cursor(row_factory=dict_row) as cur:
        await cur.execute(
            """
            SELECT data
            FROM movement_memory
            WHERE user_id = %s AND exercise_id = %s
            """,
            (user_id, exercise_id),
        )
        row = await cur.fetchone()
    if row is None or not row.get("data"):
        return None
    try:
        return MovementMemory.from_json(row["data"])
    except ValidationError:
        logger.warning(
            "Stored movement memory for user=%s exercise=%s is unreadable; rebuilding",
            user_id,
            exercise_id,
        )
        return None


async def save_movement_memory(
    conn: psycopg.AsyncConnection[Any], memory: MovementMemory
) -> None:
    async with conn.cursor() as cur:
        await cur.execute(
            """
            INSERT INTO movement_memory (user_id, exercise_id, data, version, updated_at)
            VALUES (%s, %s, %s, 1, NOW())
            ON CONFLICT (user_id, exercise_id) DO UPDATE SET
                data = EXCLUDED.data,
                version = movement_memory.version + 1,
                updated_at = NOW()
            """,
            (memory.user_id, memory.exercise_id, Json(memory.model_dump(mode="json"))),
        )
