"""Estimated one-repetition maximum."""

from __future__ import annotations

import math


def estimate_max(weight: float | None, reps: int | None) -> float:
    """Estimate 1RM with the Epley formula, rounded to a whole unit.

    A single rep is its own estimate, whatever the load. Otherwise missing,
    non-positive or non-finite input returns 0 ("no data") instead of
    raising.
    """
    if weight is None or reps is None or not math.isfinite(weight):
        return 0
    if reps == 1:
        return weight
    if reps <= 0 or weight <= 0:
        return 0
    return round(weight * (1 + reps / 30))
