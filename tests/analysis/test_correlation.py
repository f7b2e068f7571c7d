"""
Temporal Correlation Tests
==========================

INVARIANTS TESTED:
1. Every instant belongs to exactly one epoch-aligned window
2. Windows are half-open and cross month boundaries cleanly
3. Pair scoring follows the weighted Jaccard thresholds
4. Boosts hit both moments, cap at 100 and do not accumulate
"""

from datetime import datetime, timedelta, timezone

import pytest
from hypothesis import given, strategies as st

from moments.analysis import (
    TemporalCorrelator,
    group_by_window,
    jaccard,
    score_pair,
    window_bounds,
    window_key,
)
from moments.contracts import CorrelationType

from tests.fixtures import BASE_TIME, FixedClock, make_moment, make_source


instants = st.datetimes(
    min_value=datetime(2000, 1, 1),
    max_value=datetime(2100, 1, 1),
    timezones=st.just(timezone.utc),
)


class TestWindows:

    def test_epoch_is_window_start(self):
        assert window_key(datetime(1970, 1, 1, tzinfo=timezone.utc), 14) == "1970-01-01"

    def test_month_boundary_same_window(self):
        # 2024-02-29 .. 2024-03-13 is one 14-day window counted from the epoch
        key = window_key(datetime(2024, 2, 29, tzinfo=timezone.utc), 14)
        assert key == "2024-02-29"
        assert window_key(datetime(2024, 3, 13, 23, 59, tzinfo=timezone.utc), 14) == key
        assert window_key(datetime(2024, 3, 14, tzinfo=timezone.utc), 14) == "2024-03-14"
        assert window_key(datetime(2024, 2, 28, 23, 59, tzinfo=timezone.utc), 14) == "2024-02-15"

    def test_naive_timestamps_treated_as_utc(self):
        assert window_key(datetime(2024, 3, 4), 7) == window_key(datetime(2024, 3, 4, tzinfo=timezone.utc), 7)

    def test_invalid_window(self):
        with pytest.raises(ValueError):
            window_key(BASE_TIME, 0)

    @given(instants, st.integers(min_value=1, max_value=60))
    def test_instant_inside_its_window(self, ts, days):
        start, end = window_bounds(window_key(ts, days), days)
        assert start <= ts < end
        assert end - start == timedelta(days=days)

    def test_group_by_window(self):
        a = make_moment("a", extracted_at=datetime(2024, 1, 25, tzinfo=timezone.utc))
        b = make_moment("b", extracted_at=datetime(2024, 2, 1, tzinfo=timezone.utc))
        c = make_moment("c", extracted_at=datetime(2024, 2, 9, tzinfo=timezone.utc))
        groups = group_by_window([a, b, c], 14)
        assert sorted(len(v) for v in groups.values()) == [1, 2]


class TestJaccard:

    def test_empty_sets_score_zero(self):
        assert jaccard(set(), set()) == 0.0

    def test_half_overlap(self):
        assert jaccard({"a", "b"}, {"b", "c", "a", "d"}) == 0.5

    @given(st.sets(st.integers(max_value=20)), st.sets(st.integers(max_value=20)))
    def test_bounded_and_symmetric(self, a, b):
        score = jaccard(a, b)
        assert 0.0 <= score <= 1.0
        assert score == jaccard(b, a)

    @given(st.sets(st.integers(), min_size=1))
    def test_identity(self, a):
        assert jaccard(a, a) == 1.0


class TestScorePair:

    def test_identical_moments_same_source(self):
        score = score_pair(make_moment("a"), make_moment("b"))
        # entity 1.0*0.4 + factor 1.0*0.3 + keyword 1.0*0.2 + same source 0.1
        assert score.strength == pytest.approx(1.0)
        assert score.impact_boost == 10
        assert "Same source entity" in score.reasons
        assert score.common_factors == ("company", "partners", "technology")

    def test_disjoint_moments_score_zero(self):
        first = make_moment("a")
        second = make_moment(
            "b", source=make_source("Anthropic", "anthropic-overview"),
            companies=("Anthropic",), technologies=("Claude",),
            micro=("customers",), macro=("regulation",), keywords=("safety",),
        )
        score = score_pair(first, second)
        assert score.strength == 0.0
        assert score.reasons == ()
        assert score.impact_boost == 0

    def test_entity_overlap_below_threshold_ignored(self):
        first = make_moment("a", companies=("A", "B", "C", "D", "E"), technologies=())
        second = make_moment("b", source=make_source("Other", "x"),
                             companies=("A", "F", "G", "H", "I"), technologies=(),
                             micro=(), macro=(), keywords=())
        # 1/9 entity overlap is under 0.2
        assert score_pair(first, second).entity_overlap == 0.0

    def test_thematic_when_factors_dominate(self):
        first = make_moment("a", companies=("A",), technologies=(), keywords=())
        second = make_moment("b", source=make_source("Other", "x"),
                             companies=("B",), technologies=(), keywords=())
        score = score_pair(first, second)
        assert score.entity_overlap == 0.0
        assert score.correlation_type is CorrelationType.THEMATIC

    def test_temporal_when_entities_dominate(self):
        assert score_pair(make_moment("a"), make_moment("b")).correlation_type is CorrelationType.TEMPORAL


class TestTemporalCorrelator:

    def test_boosts_both_moments(self):
        correlator = TemporalCorrelator(14, 0.6, FixedClock())
        a, b = make_moment("a", score=60), make_moment("b", score=95)

        outcome = correlator.correlate_all([a, b])

        scores = {m.id: m.impact.score for m in outcome.moments}
        assert scores == {"a": 70, "b": 100}
        assert len(outcome.correlations) == 1
        correlation = outcome.correlations[0]
        assert correlation.id == "corr-a-b"
        assert correlation.discovered_at == BASE_TIME

    def test_recorrelation_is_idempotent(self):
        correlator = TemporalCorrelator(14, 0.6)
        first = correlator.correlate_all([make_moment("a"), make_moment("b")])
        second = correlator.correlate_all(first.moments)
        assert [m.impact.score for m in second.moments] == [m.impact.score for m in first.moments]
        assert [m.impact.base_score for m in second.moments] == [60, 60]

    def test_below_threshold_not_correlated(self):
        correlator = TemporalCorrelator(14, 0.6)
        a = make_moment("a")
        b = make_moment("b", source=make_source("Other", "x"), keywords=("unrelated",),
                        companies=("Zeta",), technologies=())
        outcome = correlator.correlate_all([a, b])
        assert outcome.correlations == ()
        assert [m.impact.score for m in outcome.moments] == [60, 60]

    def test_only_requested_windows_touched(self):
        correlator = TemporalCorrelator(7, 0.6)
        early = [make_moment("a"), make_moment("b")]
        late_time = BASE_TIME + timedelta(days=30)
        late = [make_moment("c", extracted_at=late_time), make_moment("d", extracted_at=late_time)]

        outcome = correlator.correlate_windows(early + late, [window_key(late_time, 7)])

        scores = {m.id: m.impact.score for m in outcome.moments}
        assert scores == {"a": 60, "b": 60, "c": 70, "d": 70}
        assert outcome.windows == (window_key(late_time, 7),)

    def test_moments_in_different_windows_not_paired(self):
        correlator = TemporalCorrelator(7, 0.6)
        a = make_moment("a")
        b = make_moment("b", extracted_at=BASE_TIME + timedelta(days=30))
        assert correlator.correlate_all([a, b]).correlations == ()

    def test_order_preserved(self):
        correlator = TemporalCorrelator(14, 0.6)
        moments = [make_moment(str(n)) for n in range(4)]
        assert [m.id for m in correlator.correlate_all(moments).moments] == ["0", "1", "2", "3"]

    def test_invalid_window(self):
        with pytest.raises(ValueError):
            TemporalCorrelator(0)
