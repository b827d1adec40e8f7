"""CLI entry point for replaying set history and inspecting suggestions."""

from __future__ import annotations

import argparse
import asyncio
import json
import os
from datetime import date, datetime, timezone
from pathlib import Path
from typing import Any, Sequence

import psycopg
from pydantic import ValidationError

from .collaborators import coach_context, periodization_signal
from .config import EngineSettings
from .memory import recompute_movement_memory
from .models import MovementMemory, SetRecord, WorkoutContext
from .persistence import (
    DEFAULT_HISTORY_LIMIT,
    load_lifetime_totals,
    load_movement_memory,
    load_set_history,
)
from .suggestion import generate_next_time_suggestion


def _parse_date(value: str) -> date:
    try:
        return date.fromisoformat(value)
    except ValueError as exc:
        raise argparse.ArgumentTypeError(f"not an ISO date: {value!r}") from exc


def _add_common(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--as-of",
        type=_parse_date,
        default=None,
        help="Reference date for recency (YYYY-MM-DD). Defaults to today (UTC).",
    )
    parser.add_argument(
        "--context",
        choices=[c.value for c in WorkoutContext],
        default=None,
        help="Context of the upcoming session.",
    )
    parser.add_argument(
        "--coach",
        action="store_true",
        help="Print the flattened coach and planner views instead of the full suggestion.",
    )


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="movement-memory",
        description="Recompute movement memories and next-time suggestions.",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    replay = sub.add_parser(
        "replay",
        help="Recompute from a JSON file holding a list of set records.",
    )
    replay.add_argument("path", type=Path, help="JSON file with a list of set records.")
    replay.add_argument("--user-id", default="local", help="User id stamped on the memory.")
    replay.add_argument(
        "--exercise-id",
        default=None,
        help="Exercise to replay. Defaults to the exercise of the first record.",
    )
    _add_common(replay)

    suggest = sub.add_parser(
        "suggest",
        help="Recompute from the database without writing anything back.",
    )
    suggest.add_argument("--user-id", required=True)
    suggest.add_argument("--exercise-id", required=True)
    suggest.add_argument(
        "--exclude-session-id",
        default=None,
        help="Leave out an in-progress session.",
    )
    suggest.add_argument("--history-limit", type=int, default=DEFAULT_HISTORY_LIMIT)
    _add_common(suggest)
    return parser


def load_set_records(path: Path) -> list[SetRecord]:
    raw = json.loads(path.read_text(encoding="utf-8"))
    if not isinstance(raw, list):
        raise ValueError(f"{path} must contain a JSON list of set records")
    return [SetRecord.model_validate(item) for item in raw]


def _render(
    memory: MovementMemory | None,
    args: argparse.Namespace,
    as_of: date,
    settings: EngineSettings,
) -> dict[str, Any]:
    context = WorkoutContext(args.context) if args.context else None
    suggestion = generate_next_time_suggestion(
        memory, as_of=as_of, context=context, settings=settings
    )
    if args.coach:
        return {
            "suggestion": coach_context(suggestion, memory) if suggestion else None,
            "periodization": periodization_signal(memory) if memory else None,
        }
    return {
        "memory": memory.model_dump(mode="json") if memory else None,
        "suggestion": suggestion.model_dump(mode="json") if suggestion else None,
    }


def _replay(args: argparse.Namespace, as_of: date, settings: EngineSettings) -> dict[str, Any]:
    records = load_set_records(args.path)
    exercise_id = args.exercise_id or (records[0].exercise_id if records else "unknown")
    sets = [r for r in records if r.exercise_id == exercise_id]
    memory = recompute_movement_memory(
        args.user_id, exercise_id, sets, as_of=as_of, settings=settings
    )
    return _render(memory, args, as_of, settings)


async def _suggest(
    args: argparse.Namespace, as_of: date, settings: EngineSettings
) -> dict[str, Any]:
    database_url = os.environ.get("DATABASE_URL", "").strip()
    if not database_url:
        raise RuntimeError("DATABASE_URL must be set")

    async with await psycopg.AsyncConnection.connect(database_url) as conn:
        history = await load_set_history(
            conn,
            args.user_id,
            args.exercise_id,
            limit=args.history_limit,
            exclude_session_id=args.exclude_session_id,
        )
        lifetime = await load_lifetime_totals(
            conn,
            args.user_id,
            args.exercise_id,
            exclude_session_id=args.exclude_session_id,
        )
        previous = await load_movement_memory(conn, args.user_id, args.exercise_id)
        await conn.rollback()

    memory = recompute_movement_memory(
        args.user_id,
        args.exercise_id,
        history,
        as_of=as_of,
        previous=previous,
        lifetime=lifetime,
        settings=settings,
    )
    return _render(memory, args, as_of, settings)


def run(argv: Sequence[str] | None = None) -> dict[str, Any]:
    parser = _build_parser()
    args = parser.parse_args(argv)
    as_of = args.as_of or datetime.now(timezone.utc).date()
    settings = EngineSettings.from_env()
    if args.command == "replay":
        try:
            return _replay(args, as_of, settings)
        except (OSError, ValueError, ValidationError) as exc:
            parser.error(f"cannot replay {args.path}: {exc}")
    return asyncio.run(_suggest(args, as_of, settings))


def main(argv: Sequence[str] | None = None) -> None:
    result = run(argv)
    print(json.dumps(result, indent=2, sort_keys=True))
    raise SystemExit(0)


if __name__ == "__main__":
    main()
