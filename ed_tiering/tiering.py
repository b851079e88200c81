"""
Eligibility filtering, rolling ED utilization and tier assignment.

Members with a recent Admission are removed from the ED Diversion program,
each remaining event gets a trailing 365-day count of same-type events, and
each member's peak ED Visit count is mapped to a tier.
"""

from collections import defaultdict
from dataclasses import dataclass
from datetime import date, timedelta
from typing import Dict, Iterable, List, Set, Tuple
import logging

logger = logging.getLogger(__name__)

ADMISSION = "Admission"
ED_VISIT = "ED Visit"
PCP_VISIT = "PCP Visit"
EVENT_TYPES = (ADMISSION, ED_VISIT, PCP_VISIT)

TIER_1 = "Tier 1"
TIER_2 = "Tier 2"
LOW = "Low"
ROSTER_TIERS = (TIER_1, TIER_2)

# Analysis reference date of the claims extract (last end_date in the data)
DEFAULT_REFERENCE_DATE = date(2022, 1, 26)


@dataclass(frozen=True)
class Event:
    """A single medical encounter for a member."""
    member_id: str
    event_type: str
    start_date: date
    end_date: date

    @property
    def duration_days(self) -> int:
        return (self.end_date - self.start_date).days


@dataclass(frozen=True)
class UtilizationRecord:
    """Trailing same-type event count at one event's start date."""
    member_id: str
    event_type: str
    start_date: date
    rolling_count: int


@dataclass(frozen=True)
class MemberRate:
    member_id: str
    ed_rate: int


@dataclass(frozen=True)
class TieredMember:
    member_id: str
    ed_rate: int
    tier: str


@dataclass(frozen=True)
class TieringConfig:
    """
    Tunable parameters of the tiering algorithm.

    window_days is the look-back added to the current day, so the default
    of 364 gives an inclusive 365-day window.
    """
    reference_date: date = DEFAULT_REFERENCE_DATE
    exclusion_days: int = 365
    tier1_threshold: int = 8
    tier2_threshold: int = 3
    window_days: int = 364

    def __post_init__(self):
        if self.window_days < 0:
            raise ValueError(f"window_days must be >= 0, got {self.window_days}")
        if self.exclusion_days < 0:
            raise ValueError(f"exclusion_days must be >= 0, got {self.exclusion_days}")
        if self.tier2_threshold < 1:
            raise ValueError(f"tier2_threshold must be >= 1, got {self.tier2_threshold}")
        if self.tier2_threshold > self.tier1_threshold:
            raise ValueError(
                f"tier2_threshold ({self.tier2_threshold}) must not exceed "
                f"tier1_threshold ({self.tier1_threshold})"
            )

    @property
    def cutoff_date(self) -> date:
        """Admissions starting on or after this date make a member ineligible."""
        return self.reference_date - timedelta(days=self.exclusion_days)


@dataclass
class TieringResult:
    """Everything the pipeline derives from one set of events."""
    excluded_members: Set[str]
    eligible_members: List[str]
    utilization: List[UtilizationRecord]
    tiered_members: List[TieredMember]
    roster: List[TieredMember]


class MemberTiering:
    """Stratifies members into ED utilization tiers."""

    def __init__(self, config: TieringConfig = None):
        self.config = config or TieringConfig()

    def excluded_members(self, events: Iterable[Event]) -> Set[str]:
        """Members with an Admission starting on or after the cutoff date."""
        cutoff = self.config.cutoff_date
        return {
            e.member_id for e in events
            if e.event_type == ADMISSION and e.start_date >= cutoff
        }

    def filter_eligible(self, events: List[Event],
                        excluded: Set[str] = None) -> Tuple[List[Event], List[str]]:
        """
        Drop every event of an excluded member.

        Returns the eligible events and the sorted eligible member ids.
        """
        if excluded is None:
            excluded = self.excluded_members(events)
        eligible_events = [e for e in events if e.member_id not in excluded]
        eligible_members = sorted({e.member_id for e in eligible_events})

        logger.info(
            f"Eligibility: {len(excluded):,} members excluded "
            f"(Admission on or after {self.config.cutoff_date}), "
            f"{len(eligible_members):,} eligible"
        )
        return eligible_events, eligible_members

    def rolling_counts(self, events: Iterable[Event]) -> List[UtilizationRecord]:
        """
        Count, for each event, the same member and type events whose start
        date falls within the trailing window ending on its own start date.

        Same-day events all count toward each other.
        """
        partitions: Dict[Tuple[str, str], List[date]] = defaultdict(list)
        for event in events:
            partitions[(event.member_id, event.event_type)].append(event.start_date)

        records = []
        for (member_id, event_type), dates in partitions.items():
            records.extend(
                UtilizationRecord(member_id, event_type, start, count)
                for start, count in self._window_counts(sorted(dates))
            )

        logger.debug(f"Computed rolling counts for {len(partitions):,} member/type partitions")
        return records

    def _window_counts(self, dates: List[date]) -> List[Tuple[date, int]]:
        window = self.config.window_days
        counts = []
        left = 0
        right = 0
        for current in dates:
            # right moves past every event on the current day
            while right < len(dates) and dates[right] <= current:
                right += 1
            while (current - dates[left]).days > window:
                left += 1
            counts.append((current, right - left))
        return counts

    @staticmethod
    def peak_rates(records: Iterable[UtilizationRecord], event_type: str) -> Dict[str, int]:
        """Highest rolling count per member for one event type."""
        peaks: Dict[str, int] = {}
        for record in records:
            if record.event_type != event_type:
                continue
            if record.rolling_count > peaks.get(record.member_id, 0):
                peaks[record.member_id] = record.rolling_count
        return peaks

    def ed_rates(self, eligible_members: Iterable[str],
                 records: Iterable[UtilizationRecord]) -> List[MemberRate]:
        """Peak ED Visit count for every eligible member, 0 without ED Visits."""
        peaks = self.peak_rates(records, ED_VISIT)
        return [MemberRate(m, peaks.get(m, 0)) for m in eligible_members]

    def classify(self, ed_rate: int) -> str:
        if ed_rate >= self.config.tier1_threshold:
            return TIER_1
        if ed_rate >= self.config.tier2_threshold:
            return TIER_2
        return LOW

    def assign_tiers(self, rates: Iterable[MemberRate]) -> List[TieredMember]:
        return [TieredMember(r.member_id, r.ed_rate, self.classify(r.ed_rate)) for r in rates]

    @staticmethod
    def build_roster(tiered: Iterable[TieredMember]) -> List[TieredMember]:
        """Tier 1 and Tier 2 members, highest ED rate first."""
        roster = [t for t in tiered if t.tier in ROSTER_TIERS]
        roster.sort(key=lambda t: (-t.ed_rate, t.member_id))
        return roster

    def run(self, events: List[Event]) -> TieringResult:
        """Run eligibility, windowing and classification end to end."""
        logger.info(f"Tiering {len(events):,} events (reference date {self.config.reference_date})")

        excluded = self.excluded_members(events)
        eligible_events, eligible_members = self.filter_eligible(events, excluded)
        utilization = self.rolling_counts(eligible_events)
        rates = self.ed_rates(eligible_members, utilization)
        tiered = self.assign_tiers(rates)
        roster = self.build_roster(tiered)

        logger.info(
            f"Tiering: {sum(t.tier == TIER_1 for t in roster):,} Tier 1, "
            f"{sum(t.tier == TIER_2 for t in roster):,} Tier 2, "
            f"{len(tiered) - len(roster):,} Low"
        )
        return TieringResult(
            excluded_members=excluded,
            eligible_members=eligible_members,
            utilization=utilization,
            tiered_members=tiered,
            roster=roster,
        )
