"""Next-time suggestion generator.

Turns a movement memory into a concrete prescription (weight x reps @ RPE)
plus ordered alerts. Every reasoning string quotes the number that drove the
decision.
"""

from __future__ import annotations

import math
from datetime import date

from .config import DEFAULT_SETTINGS, EngineSettings
from .models import (
    Alert,
    AlertType,
    ClassificationRecord,
    ConfidenceLevel,
    LastPerformance,
    MovementMemory,
    NextTimeSuggestion,
    ProgressionKind,
    Recommendation,
    Trend,
    WorkoutContext,
)

_ALERT_ORDER = (AlertType.MISSED_SESSION, AlertType.REGRESSION, AlertType.PLATEAU)


def _fmt(value: float) -> str:
    if float(value).is_integer():
        return str(int(value))
    return f"{value:g}"


def describe_performance(
    weight: float | None, reps: int | None, effort: float | None = None
) -> str:
    """Short label such as "185 x 5 @ RPE 8" or "BW x 12"."""
    parts: list[str] = []
    if weight is not None and weight > 0:
        parts.append(_fmt(weight))
    elif weight is not None or reps is not None:
        parts.append("BW")
    if reps is not None:
        parts.append(f"x {reps}")
    if effort is not None:
        parts.append(f"@ RPE {_fmt(effort)}")
    return " ".join(parts) or "No data"


def round_down_to_step(value: float, step: float, ceiling: float) -> float:
    """Floor a reduced load to the loading increment.

    ``ceiling`` is the load being backed off from and is never exceeded.
    The result stays at or above one step, or at the ceiling when the
    ceiling itself is lighter than a step.
    """
    if step <= 0:
        return round(min(value, ceiling), 2)
    stepped = math.floor(value / step) * step
    return round(min(max(stepped, min(step, ceiling)), ceiling), 2)


def plateau_detected(records: list[ClassificationRecord], run: int) -> bool:
    """True when the last ``run`` outcomes were all matched at one load."""
    if run <= 0 or len(records) < run:
        return False
    tail = records[-run:]
    if any(r.kind != ProgressionKind.MATCHED for r in tail):
        return False
    return len({(r.weight, r.reps) for r in tail}) == 1


def _days_since(memory: MovementMemory, last: LastPerformance, as_of: date | None) -> int | None:
    if as_of is not None and last.date is not None:
        return max((as_of - last.date.date()).days, 0)
    return memory.days_since_last


def generate_next_time_suggestion(
    memory: MovementMemory | None,
    *,
    as_of: date | None = None,
    context: WorkoutContext | None = None,
    settings: EngineSettings = DEFAULT_SETTINGS,
) -> NextTimeSuggestion | None:
    """Build the next-session prescription, or None if never logged."""
    if memory is None or memory.last_performance is None:
        return None

    last = memory.last_performance
    weight = last.weight
    reps = last.reps
    target_effort = settings.default_target_effort
    conservative_effort = settings.default_target_effort - 1
    consider_variation = False
    alerts: dict[AlertType, Alert] = {}
    performance = describe_performance(last.weight, last.reps)
    classification = memory.last_classification
    loaded = weight is not None and weight > 0

    sessions = memory.exposure_count
    session_label = f"{sessions} session{'s' if sessions != 1 else ''}"

    if memory.trend is None or classification is None:
        reasoning = (
            f"No prior data to compare yet ({session_label} logged). "
            f"Repeat {performance} and log it to build history."
        )
    elif memory.trend == Trend.PROGRESSING:
        if classification.kind == ProgressionKind.REP_INCREASE or not loaded:
            reps = (reps or 0) + 1
            reasoning = (
                f"Progressed last session ({classification.message}). "
                f"Try {describe_performance(weight, reps)}: +1 rep at the same load."
            )
        else:
            increment = settings.increment_for(weight)
            weight = round(weight + increment, 2)
            reasoning = (
                f"Progressed last session ({classification.message}). "
                f"Try +{_fmt(increment)} to {describe_performance(weight, reps)}."
            )
    elif memory.trend == Trend.STAGNANT:
        consider_variation = True
        reasoning = (
            f"Matched {performance} last session. Repeat it, or change one variable "
            f"(tempo, rest, rep target) to restart progress."
        )
    else:
        target_effort = conservative_effort
        if loaded:
            weight = round_down_to_step(
                weight * (1 - settings.regression_backoff),
                settings.increment_for(weight),
                weight,
            )
        reasoning = (
            f"{classification.message} vs the previous session. "
            f"Back off to {describe_performance(weight, reps)} and rebuild."
        )
        alerts[AlertType.REGRESSION] = Alert(
            type=AlertType.REGRESSION,
            message=f"Performance dropped last session ({classification.message})",
            suggested_action="Check recovery, then rebuild from a slightly lighter load",
        )

    if context == WorkoutContext.DELOADING and loaded:
        weight = round_down_to_step(
            last.weight * settings.deload_factor,
            settings.increment_for(last.weight),
            last.weight,
        )
        reps = last.reps
        target_effort = conservative_effort
        reasoning = (
            f"Deload session: {_fmt(round(settings.deload_factor * 100))}% of "
            f"{_fmt(last.weight)} is {describe_performance(weight, reps)}."
        )
    elif context == WorkoutContext.MAINTAINING:
        weight = last.weight
        reps = last.reps
        reasoning = f"Maintenance phase: hold {performance}."

    days_since = _days_since(memory, last, as_of)
    if days_since is not None and days_since > settings.stale_after_days:
        alerts[AlertType.MISSED_SESSION] = Alert(
            type=AlertType.MISSED_SESSION,
            message=f"{days_since} days since last session",
            suggested_action="Start lighter to rebuild",
        )
        target_effort = min(target_effort, conservative_effort)
        if loaded:
            stale_weight = round_down_to_step(
                last.weight * (1 - settings.stale_backoff),
                settings.increment_for(last.weight),
                last.weight,
            )
            weight = min(weight, stale_weight) if weight is not None else stale_weight
        reasoning += (
            f" {days_since} days since the last session, so start at "
            f"{describe_performance(weight, reps)}."
        )

    if plateau_detected(memory.recent_classifications, settings.plateau_run):
        alerts[AlertType.PLATEAU] = Alert(
            type=AlertType.PLATEAU,
            message=(
                f"Matched {performance} for {settings.plateau_run} sessions in a row"
            ),
            suggested_action="Add a rep, make a small load jump, or swap the variation",
        )
        consider_variation = True

    if memory.confidence_level == ConfidenceLevel.LOW:
        reasoning += f" (low confidence - {session_label})"

    best_e1rm = memory.personal_records.best_e1rm
    return NextTimeSuggestion(
        exercise_id=memory.exercise_id,
        last_performance=last,
        recommendation=Recommendation(weight=weight, reps=reps, target_effort=target_effort),
        confidence_level=memory.confidence_level,
        trend=memory.trend,
        reasoning=reasoning,
        exposure_count=memory.exposure_count,
        best_e1rm=best_e1rm.value if best_e1rm is not None else None,
        alerts=[alerts[t] for t in _ALERT_ORDER if t in alerts],
        consider_variation=consider_variation,
    )
