"""Tests for the progression classifier and comparable-set selection."""

from datetime import datetime, timedelta, timezone

import pytest
from hypothesis import given, strategies as st

from movement_memory.comparator import (
    E1rmIncrease,
    EffortDecrease,
    Matched,
    Regressed,
    RepIncrease,
    VolumeIncrease,
    WeightIncrease,
    classify,
    find_comparable_previous,
    top_set,
    trend_for,
)
from movement_memory.models import ProgressionKind, SetRecord, Trend

BASE = datetime(2026, 3, 2, 18, 0, tzinfo=timezone.utc)


def _set(
    weight=None,
    reps=None,
    effort=None,
    *,
    day: int = 0,
    order: int = 1,
    warmup: bool = False,
    session: str | None = None,
) -> SetRecord:
    return SetRecord(
        exercise_id="barbell_back_squat",
        timestamp=BASE + timedelta(days=day, minutes=order),
        weight=weight,
        reps=reps,
        effort=effort,
        is_warmup=warmup,
        set_order=order,
        session_id=session,
    )


class TestShortCircuits:
    def test_no_previous(self):
        assert classify(_set(185, 5), None) is None

    def test_current_warmup(self):
        assert classify(_set(95, 5, warmup=True), _set(185, 5)) is None

    def test_previous_warmup(self):
        assert classify(_set(185, 5), _set(95, 5, warmup=True)) is None

    def test_current_lacks_weight_and_reps(self):
        assert classify(_set(effort=8), _set(185, 5)) is None

    def test_previous_lacks_weight_and_reps(self):
        assert classify(_set(185, 5), _set(effort=8)) is None


class TestOrderedRules:
    def test_weight_increase(self):
        result = classify(_set(185, 5, 8), _set(180, 5, 8))
        assert isinstance(result, WeightIncrease)
        assert result.kind == ProgressionKind.WEIGHT_INCREASE
        assert result.delta == 5

    def test_weight_increase_outranks_rep_increase(self):
        result = classify(_set(190, 6), _set(185, 5))
        assert isinstance(result, WeightIncrease)

    def test_rep_increase(self):
        result = classify(_set(185, 7), _set(185, 5))
        assert isinstance(result, RepIncrease)
        assert result.delta == 2
        assert result.message == "+2 reps"

    def test_volume_increase(self):
        result = classify(_set(180, 6), _set(185, 5))
        assert isinstance(result, VolumeIncrease)
        assert result.delta == pytest.approx(155)
        assert result.percent == pytest.approx(155 / 925 * 100)
        assert result.message.startswith("+17% volume")

    def test_e1rm_increase_without_volume_gain(self):
        # 130x7 -> 160 e1rm vs 100x10 -> 133 e1rm; volume drops 1000 -> 910
        result = classify(_set(130, 7), _set(100, 10))
        assert isinstance(result, E1rmIncrease)
        assert result.delta == 27

    def test_effort_decrease_at_matched_load(self):
        result = classify(_set(185, 5, 7), _set(185, 5, 9))
        assert isinstance(result, EffortDecrease)
        assert result.delta == 2
        assert "RPE 9 -> 7" in result.message

    def test_matched_same_effort(self):
        assert classify(_set(185, 5, 8), _set(185, 5, 8)) == Matched()

    def test_matched_within_half_point(self):
        assert isinstance(classify(_set(185, 5, 8.5), _set(185, 5, 8)), Matched)

    def test_regressed_weight(self):
        result = classify(_set(175, 5, 8), _set(185, 5, 8))
        assert isinstance(result, Regressed)
        assert result.weight_drop == 10
        assert result.rep_drop == 0
        assert result.message == "Regressed: -10 weight"

    def test_regressed_both_metrics(self):
        result = classify(_set(175, 4), _set(185, 5))
        assert isinstance(result, Regressed)
        assert result.reason == "10 weight, 1 rep"

    def test_harder_effort_at_same_load_falls_back_to_matched(self):
        assert isinstance(classify(_set(185, 5, 10), _set(185, 5, 8)), Matched)

    def test_missing_effort_counts_as_ten(self):
        # unreported 10 vs reported 9: not easier, not within tolerance
        assert isinstance(classify(_set(185, 5), _set(185, 5, 9)), Matched)
        assert isinstance(classify(_set(185, 5, 9), _set(185, 5)), EffortDecrease)

    def test_bodyweight_rep_increase(self):
        result = classify(_set(reps=12), _set(reps=10))
        assert isinstance(result, RepIncrease)
        assert result.delta == 2


class TestTrendMapping:
    @pytest.mark.parametrize(
        "kind",
        [
            ProgressionKind.WEIGHT_INCREASE,
            ProgressionKind.REP_INCREASE,
            ProgressionKind.VOLUME_INCREASE,
            ProgressionKind.E1RM_INCREASE,
            ProgressionKind.EFFORT_DECREASE,
        ],
    )
    def test_progressing_kinds(self, kind):
        assert trend_for(kind) == Trend.PROGRESSING

    def test_matched_is_stagnant(self):
        assert trend_for(ProgressionKind.MATCHED) == Trend.STAGNANT

    def test_regressed_is_regressing(self):
        assert trend_for(ProgressionKind.REGRESSED) == Trend.REGRESSING

    def test_every_kind_mapped(self):
        for kind in ProgressionKind:
            assert trend_for(kind) in set(Trend)


_set_strategy = st.builds(
    _set,
    weight=st.one_of(st.none(), st.floats(min_value=0, max_value=400, allow_nan=False)),
    reps=st.one_of(st.none(), st.integers(min_value=0, max_value=30)),
    effort=st.one_of(st.none(), st.floats(min_value=1, max_value=10, allow_nan=False)),
    warmup=st.booleans(),
)


class TestDeterminism:
    @given(current=_set_strategy, previous=_set_strategy)
    def test_same_pair_same_outcome(self, current, previous):
        assert classify(current, previous) == classify(current, previous)

    @given(current=_set_strategy, previous=_set_strategy)
    def test_warmups_never_classified(self, current, previous):
        if current.is_warmup or previous.is_warmup:
            assert classify(current, previous) is None

    @given(current=_set_strategy)
    def test_no_previous_never_classified(self, current):
        assert classify(current, None) is None


class TestTopSet:
    def test_heaviest_then_most_reps(self):
        sets = [_set(185, 5, order=1), _set(195, 3, order=2), _set(195, 4, order=3)]
        assert top_set(sets).set_order == 3

    def test_ignores_warmups(self):
        sets = [_set(225, 1, warmup=True, order=1), _set(185, 5, order=2)]
        assert top_set(sets).weight == 185

    def test_empty(self):
        assert top_set([]) is None


class TestFindComparablePrevious:
    def test_top_set_of_nearest_session(self):
        candidates = [
            _set(175, 5, day=0, order=1),
            _set(180, 5, day=3, order=1),
            _set(180, 4, day=3, order=2),
        ]
        current = _set(185, 5, day=6, order=2)
        chosen = find_comparable_previous(current, candidates)
        assert chosen.weight == 180
        assert chosen.reps == 5

    def test_back_off_set_not_matched_by_order(self):
        # top set moved from first to second slot; compare 100x5 with 100x5
        candidates = [_set(100, 5, day=0, order=1), _set(90, 5, day=0, order=2)]
        current = _set(100, 5, day=3, order=2)
        chosen = find_comparable_previous(current, candidates)
        assert (chosen.weight, chosen.set_order) == (100, 1)
        assert isinstance(classify(current, chosen), Matched)

    def test_same_session_sets_never_compared(self):
        candidates = [_set(180, 5, day=0, order=1), _set(185, 5, day=0, order=2)]
        current = _set(190, 5, day=0, order=3)
        assert find_comparable_previous(current, candidates) is None

    def test_explicit_session_ids_split_same_day(self):
        candidates = [_set(180, 5, day=0, order=1, session="morning")]
        current = _set(185, 5, day=0, order=2, session="evening")
        assert find_comparable_previous(current, candidates).weight == 180

    def test_skips_warmups(self):
        candidates = [_set(95, 5, day=0, order=1, warmup=True)]
        assert find_comparable_previous(_set(185, 5, day=2), candidates) is None
