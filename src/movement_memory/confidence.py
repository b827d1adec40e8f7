"""Confidence scoring for movement memories.

Four longitudinal signals are turned into a 0-100 point score and bucketed:

- exposure (max 40): how many sessions back the memory
- recency (max 25): days since the last session
- consistency (max 20): dispersion of recent loads, lower is better
- effort reporting (max 15): share of recent sets with a logged RPE
"""

from __future__ import annotations

import math
import statistics
from collections.abc import Sequence
from dataclasses import dataclass

from .models import ConfidenceLevel

HIGH_THRESHOLD = 70
MEDIUM_THRESHOLD = 40


@dataclass(frozen=True)
class ConfidenceFactors:
    exposure_count: int
    recency_days: float
    consistency: float
    effort_reporting_ratio: float


def _non_negative(value: float) -> float:
    try:
        parsed = float(value)
    except (TypeError, ValueError):
        return 0.0
    if not math.isfinite(parsed) or parsed < 0:
        return 0.0
    return parsed


def _exposure_points(exposure_count: float) -> int:
    if exposure_count >= 5:
        return 40
    if exposure_count >= 3:
        return 25
    return min(int(exposure_count) * 5, 40)


def _recency_points(recency_days: float) -> int:
    if recency_days <= 7:
        return 25
    if recency_days <= 14:
        return 15
    if recency_days <= 28:
        return 5
    return 0


def confidence_points(factors: ConfidenceFactors) -> float:
    """Raw 0-100 score. Negative or non-finite factors count as 0."""
    exposure = _non_negative(factors.exposure_count)
    recency = _non_negative(factors.recency_days)
    consistency = _non_negative(factors.consistency)
    ratio = min(_non_negative(factors.effort_reporting_ratio), 1.0)

    score: float = _exposure_points(exposure)
    score += _recency_points(recency)
    score += max(0.0, 20 - consistency * 2)
    score += round(ratio * 15)
    return score


def score_confidence(factors: ConfidenceFactors) -> ConfidenceLevel:
    score = confidence_points(factors)
    if score >= HIGH_THRESHOLD:
        return ConfidenceLevel.HIGH
    if score >= MEDIUM_THRESHOLD:
        return ConfidenceLevel.MEDIUM
    return ConfidenceLevel.LOW


def consistency_metric(loads: Sequence[float]) -> float:
    """Coefficient of variation of per-session loads, in tens of percent.

    10% CV costs 2 consistency points, 100% CV costs all 20. Fewer than two
    loads, or a non-positive mean, carry no dispersion signal and return 0.
    """
    values = [float(v) for v in loads if v is not None and math.isfinite(float(v))]
    if len(values) < 2:
        return 0.0
    mean = statistics.fmean(values)
    if mean <= 0:
        return 0.0
    cv_percent = statistics.pstdev(values) / mean * 100
    return round(cv_percent / 10, 4)
