"""In-process counters for the worker, served by the health endpoint.

Asyncio runs everything on one thread, so plain dicts need no locking.
Recompute timings are kept per exercise: a slow exercise usually means a
long history, which is what ``MM_HISTORY_LIMIT`` is tuned against.
"""

import time
from collections import Counter
from typing import Any

JOB_OUTCOMES = ("completed", "superseded", "retried", "dead")

_start_time = time.monotonic()

_jobs: Counter[str] = Counter()
_handlers: dict[str, dict[str, Any]] = {}
_recomputes: dict[str, dict[str, Any]] = {}


def _timing(table: dict[str, dict[str, Any]], name: str) -> dict[str, Any]:
    return table.setdefault(name, {
        "count": 0,
        "total_duration_ms": 0.0,
        "max_duration_ms": 0.0,
    })


def _observe(stats: dict[str, Any], duration_ms: float) -> None:
    stats["count"] += 1
    stats["total_duration_ms"] += duration_ms
    stats["max_duration_ms"] = max(stats["max_duration_ms"], duration_ms)


def record_handler_invocation(handler_name: str, duration_ms: float, success: bool) -> None:
    stats = _timing(_handlers, handler_name)
    stats.setdefault("failures", 0)
    _observe(stats, duration_ms)
    if not success:
        stats["failures"] += 1


def record_recompute(exercise_id: str, *, written: bool, duration_ms: float) -> None:
    """Time one recompute; ``written`` is False when there was nothing to store."""
    stats = _timing(_recomputes, exercise_id)
    stats.setdefault("skipped", 0)
    _observe(stats, duration_ms)
    if not written:
        stats["skipped"] += 1


def record_job(outcome: str, count: int = 1) -> None:
    if outcome not in JOB_OUTCOMES:
        raise ValueError(f"Unknown job outcome {outcome!r}")
    _jobs[outcome] += count


def _with_mean(stats: dict[str, Any]) -> dict[str, Any]:
    snapshot = dict(stats)
    count = snapshot["count"]
    snapshot["mean_duration_ms"] = round(snapshot["total_duration_ms"] / count, 3) if count else 0.0
    return snapshot


def get_metrics() -> dict[str, Any]:
    """Snapshot of all counters; safe to serialise and mutate."""
    recomputes = {name: _with_mean(stats) for name, stats in _recomputes.items()}
    return {
        "uptime_seconds": round(time.monotonic() - _start_time, 1),
        "jobs": {outcome: _jobs[outcome] for outcome in JOB_OUTCOMES},
        "recomputes": {
            "total": sum(s["count"] for s in recomputes.values()),
            "skipped": sum(s["skipped"] for s in recomputes.values()),
            "by_exercise": recomputes,
        },
        "handlers": {name: _with_mean(stats) for name, stats in _handlers.items()},
    }
