"""Progression classifier.

Compares a newly logged working set with the closest comparable set from
the previous session and returns one outcome of a closed set of variants.
Rule order encodes coaching priority: direct load/rep gains outrank the
indirect volume and estimated-max signals, which outrank effort changes.

Pure and deterministic; recompute replays it over full history on every
edit, so the same pair must always yield the same outcome.
"""

from __future__ import annotations

from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from typing import ClassVar, Union

from .estimation import estimate_max
from .models import ProgressionKind, SetRecord, Trend

E1RM_NOISE_THRESHOLD = 1.01
MATCHED_EFFORT_TOLERANCE = 0.5
UNREPORTED_EFFORT = 10.0


def _fmt(value: float) -> str:
    if float(value).is_integer():
        return str(int(value))
    return f"{value:g}"


def _plural(count: int, word: str) -> str:
    return f"{count} {word}{'s' if count != 1 else ''}"


@dataclass(frozen=True)
class WeightIncrease:
    kind: ClassVar[ProgressionKind] = ProgressionKind.WEIGHT_INCREASE
    delta: float

    @property
    def message(self) -> str:
        return f"+{_fmt(self.delta)} weight"


@dataclass(frozen=True)
class RepIncrease:
    kind: ClassVar[ProgressionKind] = ProgressionKind.REP_INCREASE
    delta: int

    @property
    def message(self) -> str:
        return f"+{_plural(self.delta, 'rep')}"


@dataclass(frozen=True)
class VolumeIncrease:
    kind: ClassVar[ProgressionKind] = ProgressionKind.VOLUME_INCREASE
    delta: float
    percent: float

    @property
    def message(self) -> str:
        return f"+{self.percent:.0f}% volume (+{_fmt(round(self.delta, 1))})"


@dataclass(frozen=True)
class E1rmIncrease:
    kind: ClassVar[ProgressionKind] = ProgressionKind.E1RM_INCREASE
    delta: float

    @property
    def message(self) -> str:
        return f"+{_fmt(round(self.delta))} estimated max"


@dataclass(frozen=True)
class EffortDecrease:
    kind: ClassVar[ProgressionKind] = ProgressionKind.EFFORT_DECREASE
    delta: float
    previous_effort: float
    current_effort: float

    @property
    def message(self) -> str:
        return f"RPE {_fmt(self.previous_effort)} -> {_fmt(self.current_effort)} at the same load"


@dataclass(frozen=True)
class Matched:
    kind: ClassVar[ProgressionKind] = ProgressionKind.MATCHED

    @property
    def delta(self) -> None:
        return None

    @property
    def message(self) -> str:
        return "Stimulus matched, not progressed"


@dataclass(frozen=True)
class Regressed:
    kind: ClassVar[ProgressionKind] = ProgressionKind.REGRESSED
    weight_drop: float
    rep_drop: int

    @property
    def delta(self) -> float:
        return self.weight_drop

    @property
    def reason(self) -> str:
        reasons: list[str] = []
        if self.weight_drop > 0:
            reasons.append(f"{_fmt(self.weight_drop)} weight")
        if self.rep_drop > 0:
            reasons.append(_plural(self.rep_drop, "rep"))
        return ", ".join(reasons)

    @property
    def message(self) -> str:
        return f"Regressed: -{self.reason}"


Classification = Union[
    WeightIncrease,
    RepIncrease,
    VolumeIncrease,
    E1rmIncrease,
    EffortDecrease,
    Matched,
    Regressed,
]

_TREND_BY_KIND: dict[ProgressionKind, Trend] = {
    ProgressionKind.WEIGHT_INCREASE: Trend.PROGRESSING,
    ProgressionKind.REP_INCREASE: Trend.PROGRESSING,
    ProgressionKind.VOLUME_INCREASE: Trend.PROGRESSING,
    ProgressionKind.E1RM_INCREASE: Trend.PROGRESSING,
    ProgressionKind.EFFORT_DECREASE: Trend.PROGRESSING,
    ProgressionKind.MATCHED: Trend.STAGNANT,
    ProgressionKind.REGRESSED: Trend.REGRESSING,
}


def trend_for(kind: ProgressionKind) -> Trend:
    """Coarse direction of a comparator outcome."""
    return _TREND_BY_KIND[kind]


def classify(current: SetRecord, previous: SetRecord | None) -> Classification | None:
    """Classify ``current`` against ``previous``.

    Returns None when no judgement is possible: no previous set, either set
    is a warmup, or either set has neither weight nor reps. A single missing
    metric compares as 0 (bodyweight movements log reps only); a missing
    effort compares as 10.
    """
    if previous is None:
        return None
    if current.is_warmup or previous.is_warmup:
        return None
    if not current.is_qualifying or not previous.is_qualifying:
        return None

    cur_weight = current.weight or 0.0
    cur_reps = current.reps or 0
    cur_effort = current.effort if current.effort is not None else UNREPORTED_EFFORT
    prev_weight = previous.weight or 0.0
    prev_reps = previous.reps or 0
    prev_effort = previous.effort if previous.effort is not None else UNREPORTED_EFFORT

    if cur_weight > prev_weight and cur_reps >= prev_reps:
        return WeightIncrease(delta=cur_weight - prev_weight)

    if cur_reps > prev_reps and cur_weight >= prev_weight:
        return RepIncrease(delta=cur_reps - prev_reps)

    cur_volume = cur_weight * cur_reps
    prev_volume = prev_weight * prev_reps
    if cur_volume > prev_volume:
        delta = cur_volume - prev_volume
        percent = (delta / prev_volume) * 100 if prev_volume > 0 else 100.0
        return VolumeIncrease(delta=delta, percent=percent)

    cur_e1rm = estimate_max(cur_weight, cur_reps)
    prev_e1rm = estimate_max(prev_weight, prev_reps)
    if cur_e1rm > prev_e1rm * E1RM_NOISE_THRESHOLD:
        return E1rmIncrease(delta=cur_e1rm - prev_e1rm)

    same_load = cur_weight == prev_weight and cur_reps == prev_reps
    if same_load and cur_effort < prev_effort:
        return EffortDecrease(
            delta=prev_effort - cur_effort,
            previous_effort=prev_effort,
            current_effort=cur_effort,
        )

    if same_load and abs(cur_effort - prev_effort) <= MATCHED_EFFORT_TOLERANCE:
        return Matched()

    if cur_weight < prev_weight or cur_reps < prev_reps:
        return Regressed(
            weight_drop=max(prev_weight - cur_weight, 0.0),
            rep_drop=max(prev_reps - cur_reps, 0),
        )

    return Matched()


def top_set(sets: Iterable[SetRecord]) -> SetRecord | None:
    """Heaviest qualifying set, then most reps, then earliest set order."""
    best: SetRecord | None = None
    for candidate in sets:
        if not candidate.is_qualifying:
            continue
        if best is None:
            best = candidate
            continue
        cand_key = (candidate.weight or 0.0, candidate.reps or 0, -candidate.set_order)
        best_key = (best.weight or 0.0, best.reps or 0, -best.set_order)
        if cand_key > best_key:
            best = candidate
    return best


def find_comparable_previous(
    current: SetRecord,
    candidates: Sequence[SetRecord],
) -> SetRecord | None:
    """Pick the set ``current`` should be judged against.

    ``current`` is a session's top set, so it is compared with the top set
    of the nearest prior session: a ramp or back-off set in either session
    never stands in for the working set. Sets from ``current``'s own session
    are never candidates.
    """
    prior = [
        s
        for s in candidates
        if s.is_qualifying
        and s.session_key != current.session_key
        and s.timestamp <= current.timestamp
    ]
    if not prior:
        return None

    nearest = max(prior, key=lambda s: (s.timestamp, s.set_order))
    return top_set(s for s in prior if s.session_key == nearest.session_key)
