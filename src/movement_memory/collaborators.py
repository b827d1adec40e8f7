"""Read-only views consumed by the coaching and periodization layers.

Both collaborators pull; nothing here pushes. Values are flattened to
primitive scalars and short strings so they can be dropped into a prompt
or a planner input without further formatting.
"""

from __future__ import annotations

from typing import Any

from .models import LastPerformance, MovementMemory, NextTimeSuggestion
from .suggestion import describe_performance


def display_text(last: LastPerformance | None) -> str:
    """Label like "185 x 5 @ RPE 8" for the last logged session."""
    if last is None:
        return "No data"
    return describe_performance(last.weight, last.reps, last.effort)


def coach_context(suggestion: NextTimeSuggestion, memory: MovementMemory) -> dict[str, Any]:
    """Flat context block for the coach prompt: next-time advice plus the
    personal records it should be weighed against.
    """
    rec = suggestion.recommendation
    return {
        "exercise_id": suggestion.exercise_id,
        "last_performance": display_text(suggestion.last_performance),
        "recommended": describe_performance(rec.weight, rec.reps, rec.target_effort),
        "recommended_weight": rec.weight,
        "recommended_reps": rec.reps,
        "target_effort": rec.target_effort,
        "trend": suggestion.trend.value if suggestion.trend is not None else None,
        "confidence_level": suggestion.confidence_level.value,
        "reasoning": suggestion.reasoning,
        "exposure_count": suggestion.exposure_count,
        "best_e1rm": suggestion.best_e1rm,
        "alerts": [alert.message for alert in suggestion.alerts],
        **personal_record_summary(memory),
    }


def personal_record_summary(memory: MovementMemory) -> dict[str, Any]:
    prs = memory.personal_records
    return {
        "pr_weight": prs.best_weight.value if prs.best_weight else None,
        "pr_weight_reps": prs.best_weight.reps if prs.best_weight else None,
        "pr_reps": prs.best_reps.value if prs.best_reps else None,
        "pr_e1rm": prs.best_e1rm.value if prs.best_e1rm else None,
        "pr_volume": prs.best_volume.value if prs.best_volume else None,
    }


def periodization_signal(memory: MovementMemory) -> dict[str, Any]:
    """Trend and exposure for the block planner."""
    return {
        "exercise_id": memory.exercise_id,
        "trend": memory.trend.value if memory.trend is not None else None,
        "exposure_count": memory.exposure_count,
        "days_since_last": memory.days_since_last,
    }
