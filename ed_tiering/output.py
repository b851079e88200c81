"""
Report generation for ED utilization tiering.

Writes the Tier 1 / Tier 2 roster as CSV and a JSON summary holding the
descriptive statistics of the claims extract.
"""

import json
from datetime import datetime, timezone
from dataclasses import asdict
from pathlib import Path
from typing import List, Dict, Any, Iterable, Optional
import duckdb
import logging

from .ingest import sql_string
from .tiering import TieringConfig, TieringResult, TieredMember, TIER_1, TIER_2, LOW

logger = logging.getLogger(__name__)

# Version of this tool
TOOL_VERSION = "1.0.0"

ED_RATE_PERCENTILES = (0.5, 0.75, 0.9, 0.95, 0.99)


def _float(value) -> Optional[float]:
    return float(value) if value is not None else None


class ReportGenerator:
    """Generates the roster export and the JSON summary report."""

    def __init__(self, conn: duckdb.DuckDBPyConnection):
        self.conn = conn

    def register_tiers(self, result: TieringResult) -> None:
        """Expose classified members and the roster as DuckDB tables."""
        for table, members in (("member_tiers", result.tiered_members), ("roster", result.roster)):
            self._create_tier_table(table, members)

    def _create_tier_table(self, table: str, members: Iterable[TieredMember]) -> None:
        members = list(members)
        self.conn.execute(f"""
            CREATE OR REPLACE TABLE {table} AS
            SELECT
                UNNEST(CAST(? AS VARCHAR[])) AS member_id,
                UNNEST(CAST(? AS INTEGER[])) AS ed_rate,
                UNNEST(CAST(? AS VARCHAR[])) AS tier
        """, [
            [m.member_id for m in members],
            [m.ed_rate for m in members],
            [m.tier for m in members],
        ])

    def date_range(self) -> Dict[str, Optional[str]]:
        """Span of the extract, measured on event end dates."""
        first, last = self.conn.execute(
            "SELECT MIN(end_date), MAX(end_date) FROM events"
        ).fetchone()
        return {
            "first_end_date": str(first) if first else None,
            "last_end_date": str(last) if last else None,
        }

    def event_type_distribution(self) -> List[Dict[str, Any]]:
        """Count and share of each event type."""
        results = self.conn.execute("""
            SELECT
                event_type,
                COUNT(*) AS event_count,
                SUM(COUNT(*)) OVER () AS total_count,
                ROUND(COUNT(*) * 100.0 / SUM(COUNT(*)) OVER (), 1) AS pct
            FROM events
            GROUP BY event_type
            ORDER BY pct DESC, event_type
        """).fetchall()

        return [
            {
                "event_type": event_type,
                "event_count": int(count),
                "total_count": int(total),
                "pct": float(pct),
            }
            for event_type, count, total, pct in results
        ]

    def median_duration_days(self) -> Dict[str, float]:
        """Median length in days of each event type."""
        results = self.conn.execute("""
            SELECT
                event_type,
                PERCENTILE_CONT(0.5) WITHIN GROUP (
                    ORDER BY date_diff('day', start_date, end_date)
                ) AS median_days
            FROM events
            GROUP BY event_type
            ORDER BY event_type
        """).fetchall()
        return {event_type: float(median) for event_type, median in results}

    def disease_frequency(self) -> List[Dict[str, Any]]:
        """Count and share of each disease group across all diagnoses."""
        results = self.conn.execute("""
            WITH disease_counts AS (
                SELECT
                    disease_group,
                    COUNT(*) AS disease_count,
                    SUM(COUNT(*)) OVER () AS total_count
                FROM diagnoses
                GROUP BY disease_group
            )
            SELECT
                disease_group,
                disease_count,
                total_count,
                ROUND(disease_count * 100.0 / total_count, 1) AS pct
            FROM disease_counts
            ORDER BY pct DESC, disease_group
        """).fetchall()

        return [
            {
                "disease_group": group,
                "disease_count": int(count),
                "total_count": int(total),
                "pct": float(pct),
            }
            for group, count, total, pct in results
        ]

    def disease_recurrence(self) -> List[Dict[str, Any]]:
        """Average number of diagnoses per member within each disease group."""
        results = self.conn.execute("""
            WITH recurrent_diagnoses AS (
                SELECT
                    member_id,
                    disease_group,
                    COUNT(*) AS num_diagnosis
                FROM diagnoses
                GROUP BY member_id, disease_group
            )
            SELECT
                disease_group,
                AVG(num_diagnosis) AS avg_num_diagnosis
            FROM recurrent_diagnoses
            GROUP BY disease_group
            ORDER BY avg_num_diagnosis DESC, disease_group
        """).fetchall()

        return [
            {"disease_group": group, "avg_num_diagnosis": round(float(avg), 3)}
            for group, avg in results
        ]

    def ed_rate_distribution(self) -> Dict[str, Any]:
        """Summary of eligible members' ED rates, used to choose tier thresholds."""
        percentiles = ",\n".join(
            f"PERCENTILE_CONT({p}) WITHIN GROUP (ORDER BY ed_rate) AS p{round(p * 100)}"
            for p in ED_RATE_PERCENTILES
        )
        row = self.conn.execute(f"""
            SELECT
                COUNT(*) AS members,
                AVG(ed_rate) AS mean,
                {percentiles},
                MAX(ed_rate) AS max_rate
            FROM member_tiers
        """).fetchone()

        members, mean, *quantiles, max_rate = row
        distribution = {"members": int(members), "mean": _float(mean)}
        for p, value in zip(ED_RATE_PERCENTILES, quantiles):
            distribution[f"p{round(p * 100)}"] = _float(value)
        distribution["max"] = int(max_rate) if max_rate is not None else None
        return distribution

    def tier_counts(self) -> Dict[str, int]:
        results = dict(self.conn.execute(
            "SELECT tier, COUNT(*) FROM member_tiers GROUP BY tier"
        ).fetchall())
        return {tier: int(results.get(tier, 0)) for tier in (TIER_1, TIER_2, LOW)}

    def write_roster(self, output_path: str) -> int:
        """Export the roster to CSV; the header is written even when it is empty."""
        Path(output_path).parent.mkdir(parents=True, exist_ok=True)
        self.conn.execute(f"""
            COPY (
                SELECT member_id, ed_rate, tier
                FROM roster
                ORDER BY ed_rate DESC, member_id
            ) TO {sql_string(output_path)} (HEADER, DELIMITER ',')
        """)
        count = self.conn.execute("SELECT COUNT(*) FROM roster").fetchone()[0]
        logger.info(f"Roster written to {output_path} ({count:,} members)")
        return count

    def generate_report(
        self,
        result: TieringResult,
        config: TieringConfig,
        skipped: Iterable = (),
        report_path: Optional[str] = None,
        roster_path: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Generate the full summary report and write the requested files."""
        self.register_tiers(result)

        total_members = len(result.excluded_members) + len(result.eligible_members)
        skipped = [asdict(s) for s in skipped]

        report = {
            "generated_at": datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ"),
            "tool_version": TOOL_VERSION,
            "configuration": {
                "reference_date": str(config.reference_date),
                "exclusion_cutoff_date": str(config.cutoff_date),
                "window_days": config.window_days,
                "tier1_threshold": config.tier1_threshold,
                "tier2_threshold": config.tier2_threshold,
            },
            "total_members_scanned": total_members,
            "total_members_excluded": len(result.excluded_members),
            "total_members_eligible": len(result.eligible_members),
            "total_members_on_roster": len(result.roster),
            "tier_counts": self.tier_counts(),
            "ed_rate_distribution": self.ed_rate_distribution(),
            "date_range": self.date_range(),
            "event_type_distribution": self.event_type_distribution(),
            "median_duration_days": self.median_duration_days(),
            "disease_frequency": self.disease_frequency(),
            "disease_recurrence": self.disease_recurrence(),
            "skipped_record_count": len(skipped),
            "skipped_records": skipped,
        }

        if roster_path:
            self.write_roster(roster_path)
        if report_path:
            self.write_report(report, report_path)

        logger.info(f"Total members scanned: {total_members:,}")
        logger.info(f"Total members on roster: {len(result.roster):,}")
        return report

    def write_report(self, report: Dict[str, Any], output_path: str) -> None:
        Path(output_path).parent.mkdir(parents=True, exist_ok=True)
        with open(output_path, 'w') as f:
            json.dump(report, f, indent=2, default=str)
        logger.info(f"Report written to {output_path}")
