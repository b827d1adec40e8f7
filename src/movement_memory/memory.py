"""Movement memory recompute.

Full recompute from the set history of one (user, exercise) pair, never
an incremental diff against the stored aggregate. Edits, deletes and racing
recomputes all converge on the same result. The only state carried over
from the previous aggregate is the personal records, which may only ever
go up.
"""

from __future__ import annotations

import logging
import statistics
from collections.abc import Iterable, Sequence
from datetime import date, datetime

from .comparator import classify, find_comparable_previous, top_set, trend_for
from .confidence import ConfidenceFactors, consistency_metric, score_confidence
from .config import DEFAULT_SETTINGS, EngineSettings
from .estimation import estimate_max
from .models import (
    ClassificationRecord,
    LastPerformance,
    LifetimeTotals,
    MovementMemory,
    PersonalRecords,
    RepRange,
    RepsRecord,
    SetRecord,
    ValueRecord,
    WeightRecord,
)

logger = logging.getLogger(__name__)


def _sort_key(s: SetRecord) -> tuple[datetime, int, str]:
    return (s.timestamp, s.set_order, s.set_id or "")


def group_sessions(sets: Iterable[SetRecord]) -> list[list[SetRecord]]:
    """Qualifying sets grouped by session, sessions in chronological order."""
    ordered = sorted((s for s in sets if s.is_qualifying), key=_sort_key)
    sessions: dict[str, list[SetRecord]] = {}
    for s in ordered:
        sessions.setdefault(s.session_key, []).append(s)
    return list(sessions.values())


def _mean(values: Sequence[float]) -> float | None:
    if not values:
        return None
    return round(statistics.fmean(values), 1)


def _session_volume(session: Sequence[SetRecord]) -> float:
    return round(sum(s.volume for s in session), 2)


def _snapshot(session: Sequence[SetRecord]) -> LastPerformance:
    weights = [s.weight for s in session if s.weight is not None]
    top_weight = max(weights) if weights else None
    if top_weight is not None:
        reps_at_top = [s.reps for s in session if s.weight == top_weight and s.reps is not None]
    else:
        reps_at_top = [s.reps for s in session if s.reps is not None]
    context = next((s.context for s in reversed(session) if s.context is not None), None)
    return LastPerformance(
        weight=top_weight,
        reps=max(reps_at_top) if reps_at_top else None,
        effort=_mean([s.effort for s in session if s.effort is not None]),
        set_count=len(session),
        date=session[-1].timestamp,
        context=context,
        total_volume=_session_volume(session),
    )


def _classify_sessions(
    sessions: Sequence[Sequence[SetRecord]],
) -> list[ClassificationRecord]:
    records: list[ClassificationRecord] = []
    earlier: list[SetRecord] = []
    for session in sessions:
        current = top_set(session)
        if current is not None and earlier:
            previous = find_comparable_previous(current, earlier)
            outcome = classify(current, previous)
            if outcome is not None:
                records.append(ClassificationRecord(
                    kind=outcome.kind,
                    message=outcome.message,
                    delta=outcome.delta,
                    weight=current.weight,
                    reps=current.reps,
                    date=current.timestamp,
                ))
        earlier.extend(session)
    return records


def scan_personal_records(sessions: Sequence[Sequence[SetRecord]]) -> PersonalRecords:
    """Best observed value per metric over the whole history.

    Only a strictly greater value replaces the running best, so each record
    is stamped with the first date that value was reached.
    """
    best_weight: WeightRecord | None = None
    best_reps: RepsRecord | None = None
    best_e1rm: ValueRecord | None = None
    best_volume: ValueRecord | None = None

    for session in sessions:
        for s in session:
            if s.weight is not None and s.weight > 0:
                if best_weight is None or s.weight > best_weight.value:
                    best_weight = WeightRecord(value=s.weight, reps=s.reps, date=s.timestamp)
            if s.reps is not None and s.reps > 0:
                if best_reps is None or s.reps > best_reps.value:
                    best_reps = RepsRecord(value=s.reps, weight=s.weight, date=s.timestamp)
            e1rm = estimate_max(s.weight, s.reps)
            if e1rm > 0 and (best_e1rm is None or e1rm > best_e1rm.value):
                best_e1rm = ValueRecord(value=e1rm, date=s.timestamp)
        volume = _session_volume(session)
        if volume > 0 and (best_volume is None or volume > best_volume.value):
            best_volume = ValueRecord(value=volume, date=session[-1].timestamp)

    return PersonalRecords(
        best_weight=best_weight,
        best_reps=best_reps,
        best_e1rm=best_e1rm,
        best_volume=best_volume,
    )


def _keep_greater(stored, candidate):
    if stored is None:
        return candidate
    if candidate is None or candidate.value <= stored.value:
        return stored
    return candidate


def merge_personal_records(
    stored: PersonalRecords | None, scanned: PersonalRecords
) -> PersonalRecords:
    """Combine stored and freshly scanned records without ever lowering one."""
    if stored is None:
        return scanned
    return PersonalRecords(
        best_weight=_keep_greater(stored.best_weight, scanned.best_weight),
        best_reps=_keep_greater(stored.best_reps, scanned.best_reps),
        best_e1rm=_keep_greater(stored.best_e1rm, scanned.best_e1rm),
        best_volume=_keep_greater(stored.best_volume, scanned.best_volume),
    )


def _typical_rep_range(sessions: Sequence[Sequence[SetRecord]]) -> RepRange | None:
    reps = [s.reps for session in sessions for s in session if s.reps is not None]
    if not reps:
        return None
    return RepRange(min=min(reps), max=max(reps))


def _confidence_factors(
    sessions: Sequence[Sequence[SetRecord]],
    *,
    exposure_count: int,
    days_since_last: int,
) -> ConfidenceFactors:
    tops = [top_set(session) for session in sessions]
    tops = [t for t in tops if t is not None]
    if any((t.weight or 0) > 0 for t in tops):
        loads = [t.weight or 0.0 for t in tops]
    else:
        loads = [float(t.reps or 0) for t in tops]

    window_sets = [s for session in sessions for s in session]
    reported = sum(1 for s in window_sets if s.effort is not None)
    ratio = reported / len(window_sets) if window_sets else 0.0

    return ConfidenceFactors(
        exposure_count=exposure_count,
        recency_days=days_since_last,
        consistency=consistency_metric(loads),
        effort_reporting_ratio=ratio,
    )


def recompute_movement_memory(
    user_id: str,
    exercise_id: str,
    sets: Iterable[SetRecord],
    *,
    as_of: date,
    previous: MovementMemory | None = None,
    lifetime: LifetimeTotals | None = None,
    settings: EngineSettings = DEFAULT_SETTINGS,
) -> MovementMemory | None:
    """Derive the movement memory for one (user, exercise) from its sets.

    Returns None only when there is neither a qualifying set nor an existing
    memory: memories are created lazily and never dropped. With no
    qualifying sets left (everything deleted), the running aggregates reset
    while the stored personal records are kept.

    ``sets`` may be a bounded window of recent sessions. ``lifetime`` then
    supplies the exposure count, lifetime volume and first date over the
    full history. A window value still wins where it is larger (or, for the
    first date, earlier).
    """
    sessions = group_sessions(sets)
    stored_records = previous.personal_records if previous is not None else None

    if not sessions:
        if previous is None:
            return None
        logger.info(
            "No qualifying sets left for user=%s exercise=%s; keeping personal records only",
            user_id,
            exercise_id,
        )
        return MovementMemory(
            user_id=user_id,
            exercise_id=exercise_id,
            as_of=as_of,
            personal_records=stored_records or PersonalRecords(),
        )

    last_session = sessions[-1]
    snapshot = _snapshot(last_session)
    last_day = last_session[-1].timestamp.date()
    days_since_last = max((as_of - last_day).days, 0)

    classifications = _classify_sessions(sessions)
    recent_classifications = classifications[-settings.classification_history:]
    last_classification = classifications[-1] if classifications else None
    trend = trend_for(last_classification.kind) if last_classification else None

    all_sets = [s for session in sessions for s in session]
    exposure_count = len(sessions)
    lifetime_volume = round(sum(s.volume for s in all_sets), 2)
    first_logged = all_sets[0].timestamp
    if lifetime is not None:
        exposure_count = max(exposure_count, lifetime.exposure_count)
        lifetime_volume = max(lifetime_volume, lifetime.total_volume)
        if lifetime.first_logged is not None:
            first_logged = min(first_logged, lifetime.first_logged)

    factors = _confidence_factors(
        sessions[-settings.consistency_window:],
        exposure_count=exposure_count,
        days_since_last=days_since_last,
    )

    return MovementMemory(
        user_id=user_id,
        exercise_id=exercise_id,
        as_of=as_of,
        last_performance=snapshot,
        exposure_count=exposure_count,
        first_logged=first_logged,
        total_lifetime_volume=lifetime_volume,
        average_effort=_mean([s.effort for s in all_sets if s.effort is not None]),
        typical_rep_range=_typical_rep_range(sessions[-settings.recent_session_window:]),
        personal_records=merge_personal_records(stored_records, scan_personal_records(sessions)),
        trend=trend,
        confidence_level=score_confidence(factors),
        days_since_last=days_since_last,
        last_classification=last_classification,
        recent_classifications=recent_classifications,
    )
