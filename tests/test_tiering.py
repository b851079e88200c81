"""
Unit tests for eligibility, rolling counts and tier assignment.

Each test builds a small synthetic event history for one or a few members.
"""

import pytest
import random
from pathlib import Path
from datetime import date, timedelta

# Add parent to path for imports
import sys
sys.path.insert(0, str(Path(__file__).parent.parent))

from ed_tiering.tiering import (
    Event,
    MemberRate,
    MemberTiering,
    TieringConfig,
    UtilizationRecord,
    ADMISSION,
    ED_VISIT,
    PCP_VISIT,
    TIER_1,
    TIER_2,
    LOW,
)

REFERENCE = date(2022, 1, 26)


def event(member_id, event_type, start, length=0):
    return Event(member_id, event_type, start, start + timedelta(days=length))


def days_before_reference(n):
    return REFERENCE - timedelta(days=n)


@pytest.fixture
def tiering():
    return MemberTiering(TieringConfig(reference_date=REFERENCE))


class TestTieringConfig:
    """Test configuration defaults and validation."""

    def test_defaults(self):
        config = TieringConfig()
        assert config.reference_date == date(2022, 1, 26)
        assert config.tier1_threshold == 8
        assert config.tier2_threshold == 3
        assert config.window_days == 364
        assert config.cutoff_date == date(2021, 1, 26)

    def test_rejects_negative_window(self):
        with pytest.raises(ValueError):
            TieringConfig(window_days=-1)

    def test_rejects_inverted_thresholds(self):
        with pytest.raises(ValueError):
            TieringConfig(tier1_threshold=3, tier2_threshold=8)

    def test_rejects_zero_tier2_threshold(self):
        with pytest.raises(ValueError):
            TieringConfig(tier2_threshold=0)


class TestEligibilityFilter:
    """Test exclusion of members with a recent Admission."""

    def test_recent_admission_excludes_all_member_events(self, tiering):
        events = [
            event('Q', ADMISSION, days_before_reference(10), 3),
            event('Q', ED_VISIT, days_before_reference(100)),
            event('Q', PCP_VISIT, days_before_reference(50)),
            event('A', ED_VISIT, days_before_reference(20)),
        ]
        eligible_events, eligible_members = tiering.filter_eligible(events)

        assert eligible_members == ['A']
        assert all(e.member_id != 'Q' for e in eligible_events)
        assert tiering.excluded_members(events) == {'Q'}

    def test_admission_on_cutoff_date_excludes(self, tiering):
        events = [event('B', ADMISSION, date(2021, 1, 26))]
        assert tiering.excluded_members(events) == {'B'}

    def test_admission_day_before_cutoff_keeps_member(self, tiering):
        events = [
            event('B', ADMISSION, date(2021, 1, 25), 10),
            event('B', ED_VISIT, date(2021, 6, 1)),
        ]
        _, eligible_members = tiering.filter_eligible(events)
        assert eligible_members == ['B']

    def test_recent_non_admission_events_do_not_exclude(self, tiering):
        events = [
            event('C', ED_VISIT, days_before_reference(1)),
            event('C', PCP_VISIT, days_before_reference(2)),
        ]
        assert tiering.excluded_members(events) == set()

    def test_cutoff_follows_reference_date(self):
        tiering = MemberTiering(TieringConfig(reference_date=date(2023, 1, 1)))
        events = [event('D', ADMISSION, date(2021, 6, 1))]
        assert tiering.excluded_members(events) == set()

    def test_empty_input(self, tiering):
        assert tiering.filter_eligible([]) == ([], [])


class TestRollingCounts:
    """Test the trailing 365-day same-type event count."""

    def test_daily_ed_visits_accumulate(self, tiering):
        start = date(2021, 3, 1)
        events = [event('M', ED_VISIT, start + timedelta(days=i)) for i in range(10)]
        records = tiering.rolling_counts(events)

        counts = sorted(r.rolling_count for r in records)
        assert counts == list(range(1, 11))
        last = max(records, key=lambda r: r.start_date)
        assert last.rolling_count == 10

    def test_window_is_inclusive_of_364_days_back(self, tiering):
        first = date(2020, 3, 1)
        events = [
            event('W', ED_VISIT, first),
            event('W', ED_VISIT, first + timedelta(days=364)),
        ]
        records = sorted(tiering.rolling_counts(events), key=lambda r: r.start_date)
        assert [r.rolling_count for r in records] == [1, 2]

    def test_event_365_days_back_falls_out(self, tiering):
        first = date(2020, 3, 1)
        events = [
            event('W', ED_VISIT, first),
            event('W', ED_VISIT, first + timedelta(days=365)),
        ]
        records = tiering.rolling_counts(events)
        assert [r.rolling_count for r in records] == [1, 1]

    def test_same_day_events_count_each_other(self, tiering):
        day = date(2021, 5, 5)
        events = [
            event('S', ED_VISIT, day),
            event('S', ED_VISIT, day),
            event('S', ED_VISIT, day + timedelta(days=1)),
        ]
        records = sorted(tiering.rolling_counts(events), key=lambda r: r.start_date)
        assert [r.rolling_count for r in records] == [2, 2, 3]

    def test_partitions_by_member_and_type(self, tiering):
        day = date(2021, 5, 5)
        events = [
            event('X', ED_VISIT, day),
            event('X', PCP_VISIT, day),
            event('X', PCP_VISIT, day + timedelta(days=3)),
            event('Y', ED_VISIT, day),
        ]
        records = tiering.rolling_counts(events)
        by_key = {}
        for r in records:
            by_key.setdefault((r.member_id, r.event_type), []).append(r.rolling_count)

        assert by_key[('X', ED_VISIT)] == [1]
        assert sorted(by_key[('X', PCP_VISIT)]) == [1, 2]
        assert by_key[('Y', ED_VISIT)] == [1]

    def test_input_order_does_not_matter(self, tiering):
        start = date(2021, 1, 1)
        events = [event('O', ED_VISIT, start + timedelta(days=d)) for d in (300, 0, 500, 100)]
        records = {r.start_date: r.rolling_count for r in tiering.rolling_counts(events)}

        assert records[start] == 1
        assert records[start + timedelta(days=100)] == 2
        assert records[start + timedelta(days=300)] == 3
        # days 0 and 100 have fallen out by day 500
        assert records[start + timedelta(days=500)] == 2

    def test_custom_window_length(self):
        tiering = MemberTiering(TieringConfig(reference_date=REFERENCE, window_days=29))
        start = date(2021, 1, 1)
        events = [event('C', ED_VISIT, start + timedelta(days=d)) for d in (0, 29, 30)]
        records = sorted(tiering.rolling_counts(events), key=lambda r: r.start_date)
        assert [r.rolling_count for r in records] == [1, 2, 2]

    def test_matches_brute_force_count(self, tiering):
        rng = random.Random(42)
        base = date(2020, 1, 1)
        events = [
            event(f'R{rng.randint(1, 5)}', rng.choice([ED_VISIT, PCP_VISIT]),
                  base + timedelta(days=rng.randint(0, 900)))
            for _ in range(400)
        ]
        records = tiering.rolling_counts(events)

        expected = []
        for e in events:
            count = sum(
                1 for other in events
                if other.member_id == e.member_id
                and other.event_type == e.event_type
                and 0 <= (e.start_date - other.start_date).days <= 364
            )
            expected.append((e.member_id, e.event_type, e.start_date, count))

        actual = [(r.member_id, r.event_type, r.start_date, r.rolling_count) for r in records]
        assert sorted(actual) == sorted(expected)

    def test_counts_bounded_by_partition_size(self, tiering):
        rng = random.Random(7)
        base = date(2020, 1, 1)
        events = [
            event('B', ED_VISIT, base + timedelta(days=rng.randint(0, 1000)))
            for _ in range(200)
        ]
        for record in tiering.rolling_counts(events):
            assert 1 <= record.rolling_count <= len(events)

    def test_appending_latest_event_keeps_prior_counts(self, tiering):
        base = date(2021, 1, 1)
        events = [event('A', ED_VISIT, base + timedelta(days=d)) for d in (0, 40, 200, 390)]
        before = sorted(r.rolling_count for r in tiering.rolling_counts(events))

        extended = events + [event('A', ED_VISIT, base + timedelta(days=400))]
        after = sorted(tiering.rolling_counts(extended), key=lambda r: r.start_date)

        assert sorted(r.rolling_count for r in after[:-1]) == before
        assert after[-1].rolling_count >= 1


class TestEdRates:
    """Test per-member peak ED utilization."""

    def test_member_without_ed_visit_defaults_to_zero(self, tiering):
        records = [UtilizationRecord('P', PCP_VISIT, date(2021, 1, 1), 5)]
        assert tiering.ed_rates(['P'], records) == [MemberRate('P', 0)]

    def test_peak_is_max_rolling_count(self, tiering):
        records = [
            UtilizationRecord('E', ED_VISIT, date(2020, 1, 1), 1),
            UtilizationRecord('E', ED_VISIT, date(2020, 2, 1), 4),
            UtilizationRecord('E', ED_VISIT, date(2021, 6, 1), 2),
        ]
        assert tiering.ed_rates(['E'], records) == [MemberRate('E', 4)]

    def test_peak_rates_for_other_event_types(self, tiering):
        records = [
            UtilizationRecord('E', PCP_VISIT, date(2020, 1, 1), 6),
            UtilizationRecord('E', ED_VISIT, date(2020, 1, 1), 1),
        ]
        assert tiering.peak_rates(records, PCP_VISIT) == {'E': 6}


class TestTierClassifier:
    """Test the threshold mapping from ED rate to tier."""

    @pytest.mark.parametrize("ed_rate,tier", [
        (0, LOW), (2, LOW), (3, TIER_2), (7, TIER_2), (8, TIER_1), (50, TIER_1),
    ])
    def test_thresholds(self, tiering, ed_rate, tier):
        assert tiering.classify(ed_rate) == tier

    def test_every_rate_maps_to_one_tier(self, tiering):
        for ed_rate in range(0, 100):
            tier = tiering.classify(ed_rate)
            assert tier in (LOW, TIER_2, TIER_1)
            assert (tier == TIER_1) == (ed_rate >= 8)
            assert (tier == LOW) == (ed_rate < 3)

    def test_custom_thresholds(self):
        tiering = MemberTiering(TieringConfig(tier1_threshold=5, tier2_threshold=5))
        assert tiering.classify(4) == LOW
        assert tiering.classify(5) == TIER_1


class TestPipeline:
    """End-to-end scenarios through MemberTiering.run."""

    def test_scenarios(self, tiering):
        start = days_before_reference(200)
        events = [
            # M: ten daily ED visits
            *[event('M', ED_VISIT, start + timedelta(days=i)) for i in range(10)],
            # N: three ED visits within 30 days
            *[event('N', ED_VISIT, start + timedelta(days=d)) for d in (0, 14, 29)],
            # P: old Admission, two ED visits
            event('P', ADMISSION, days_before_reference(400), 4),
            event('P', ED_VISIT, start),
            event('P', ED_VISIT, start + timedelta(days=3)),
            # Q: recent Admission and a heavy ED history
            event('Q', ADMISSION, days_before_reference(10), 2),
            *[event('Q', ED_VISIT, start + timedelta(days=i)) for i in range(12)],
            # Z: only PCP visits
            event('Z', PCP_VISIT, start),
        ]
        result = tiering.run(events)

        assert result.excluded_members == {'Q'}
        assert result.eligible_members == ['M', 'N', 'P', 'Z']

        tiers = {t.member_id: (t.ed_rate, t.tier) for t in result.tiered_members}
        assert tiers == {
            'M': (10, TIER_1),
            'N': (3, TIER_2),
            'P': (2, LOW),
            'Z': (0, LOW),
        }

        assert [(t.member_id, t.tier) for t in result.roster] == [('M', TIER_1), ('N', TIER_2)]

    def test_every_eligible_member_classified_once(self, tiering):
        rng = random.Random(3)
        base = days_before_reference(700)
        events = [
            event(f'U{rng.randint(1, 30)}', rng.choice([ADMISSION, ED_VISIT, PCP_VISIT]),
                  base + timedelta(days=rng.randint(0, 690)))
            for _ in range(500)
        ]
        result = tiering.run(events)

        ids = [t.member_id for t in result.tiered_members]
        assert len(ids) == len(set(ids))
        assert set(ids) == set(result.eligible_members)
        assert not set(ids) & result.excluded_members
        for t in result.tiered_members:
            has_ed = any(e.member_id == t.member_id and e.event_type == ED_VISIT for e in events)
            assert (t.ed_rate == 0) == (not has_ed)

    def test_roster_sorted_by_rate_then_member(self, tiering):
        start = days_before_reference(100)
        events = [
            *[event('b', ED_VISIT, start + timedelta(days=i)) for i in range(4)],
            *[event('a', ED_VISIT, start + timedelta(days=i)) for i in range(4)],
            *[event('c', ED_VISIT, start + timedelta(days=i)) for i in range(9)],
        ]
        result = tiering.run(events)
        assert [t.member_id for t in result.roster] == ['c', 'a', 'b']

    def test_empty_input_gives_empty_roster(self, tiering):
        result = tiering.run([])
        assert result.roster == []
        assert result.tiered_members == []
