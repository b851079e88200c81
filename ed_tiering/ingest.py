"""
Data ingestion module for ED utilization tiering.

Loads and validates:
1. Medical events (Admission, ED Visit, PCP Visit) with start/end dates
2. Chronic and behavioral-health diagnoses

Both files may be CSV or Parquet. Valid rows are kept as Python records and
mirrored into DuckDB tables `events` and `diagnoses` for reporting.
"""

import csv
import duckdb
from pathlib import Path
from dataclasses import dataclass
from datetime import date
from typing import Any, Dict, List, Optional, Sequence
import logging

from .tiering import Event, EVENT_TYPES

logger = logging.getLogger(__name__)

# Canonical column -> accepted source column names
EVENT_COLUMNS = {
    "member_id": ("member_id", "member_profile_id"),
    "event_type": ("event_type", "event_subtype_name"),
    "start_date": ("start_date",),
    "end_date": ("end_date",),
}

DIAGNOSIS_COLUMNS = {
    "member_id": ("member_id", "member_profile_id"),
    "disease_group": ("disease_group",),
    "diagnosis_date": ("diagnosis_date", "date_of_diagnosis"),
}


class DataFormatError(ValueError):
    """Raised when an input value cannot be trusted, e.g. an unparseable date."""

    def __init__(self, source: str, row_number: Optional[int], field: str, value: Any,
                 problem: str = "invalid"):
        self.source = source
        self.row_number = row_number
        self.field = field
        self.value = value
        self.problem = problem
        location = f"{source} row {row_number}" if row_number is not None else source
        super().__init__(f"{location}: {problem} {field} {value!r}")


@dataclass(frozen=True)
class Diagnosis:
    member_id: str
    disease_group: str
    diagnosis_date: Optional[date]


@dataclass(frozen=True)
class SkippedRecord:
    """An input row rejected during validation."""
    source: str
    row_number: int
    reason: str
    record: Dict[str, Any]


def sql_string(value) -> str:
    """Quote a value, typically a file path, as a SQL string literal."""
    return "'" + str(value).replace("'", "''") + "'"


def _date_expr(column: str) -> str:
    # Accept plain dates as well as timestamps written as text
    return (
        f'COALESCE(TRY_CAST("{column}" AS DATE), '
        f'CAST(TRY_CAST("{column}" AS TIMESTAMP) AS DATE))'
    )


class DataIngestor:
    """Handles loading and validation of the events and diagnoses files."""

    def __init__(
        self,
        data_dir: Path,
        events_file: str = "medical_events.csv",
        diagnoses_file: str = "chronic_and_bh.csv",
        memory_limit: str = '2GB',
        threads: int = 2,
    ):
        self.data_dir = Path(data_dir)
        self.events_file = events_file
        self.diagnoses_file = diagnoses_file
        self.conn = duckdb.connect()
        self.conn.execute(f"SET memory_limit={sql_string(memory_limit)}")
        self.conn.execute(f"SET threads={int(threads)}")

        self.events: List[Event] = []
        self.diagnoses: List[Diagnosis] = []
        self.skipped: List[SkippedRecord] = []

    def _stage(self, source: str, path: Path, table: str) -> Optional[Dict[int, str]]:
        """
        Copy a source file into a temporary all-VARCHAR table.

        Returns the raw text of CSV lines DuckDB rejected, keyed by data row
        number, or None when the file has no header at all.
        """
        if path.suffix.lower() == ".parquet":
            self.conn.execute(f"""
                CREATE OR REPLACE TEMP TABLE {table} AS
                SELECT * FROM read_parquet({sql_string(path)})
            """)
            return {}

        with open(path, newline='', encoding='utf-8-sig') as f:
            header = next(csv.reader(f), None)
        if not header or not any(name.strip() for name in header):
            return None

        # Columns come from the header so ragged rows cannot change the layout:
        # short rows are padded with NULLs, long rows land in the rejects table
        columns = ", ".join(f"{sql_string(name.strip())}: 'VARCHAR'" for name in header)
        rejects = f"{table}_rejects"
        self.conn.execute(f"DROP TABLE IF EXISTS {rejects}")
        self.conn.execute(f"DROP TABLE IF EXISTS {rejects}_scans")
        self.conn.execute(f"""
            CREATE OR REPLACE TEMP TABLE {table} AS
            SELECT * FROM read_csv(
                {sql_string(path)},
                header=true,
                delim=',',
                columns={{{columns}}},
                null_padding=true,
                store_rejects=true,
                rejects_table='{rejects}',
                rejects_scan='{rejects}_scans'
            )
        """)

        results = self.conn.execute(f"""
            SELECT line, MIN(csv_line), MIN(error_message)
            FROM {rejects}
            GROUP BY line
            ORDER BY line
        """).fetchall()

        rejected = {}
        for line, csv_line, message in results:
            # line counts the header as line 1
            row_number = int(line) - 1
            rejected[row_number] = csv_line
            self._record(source, row_number, f"malformed row: {message}", {"line": csv_line})
        return rejected

    def _resolve_columns(
        self,
        source: str,
        table: str,
        wanted: Dict[str, Sequence[str]],
        optional: Sequence[str] = (),
    ) -> Dict[str, Optional[str]]:
        """Map canonical column names onto the columns the file actually has."""
        described = self.conn.execute(f"DESCRIBE {table}").fetchall()
        available = {row[0].lower(): row[0] for row in described}

        resolved = {}
        for canonical, aliases in wanted.items():
            match = next((available[a] for a in aliases if a in available), None)
            if match is None and canonical not in optional:
                raise DataFormatError(source, None, "column", canonical, problem="missing")
            resolved[canonical] = match
        return resolved

    @staticmethod
    def _row_numbers(rejected: Dict[int, str]):
        """Data row numbers of the rows that survived the CSV reader, in order."""
        row_number = 0
        while True:
            row_number += 1
            if row_number not in rejected:
                yield row_number

    def _record(self, source: str, row_number: int, reason: str, record: Dict[str, Any]) -> None:
        skipped = SkippedRecord(source, row_number, reason, record)
        self.skipped.append(skipped)
        logger.warning(f"Skipping {source} row {row_number}: {reason}")

    def _store_events(self, events: List[Event]) -> None:
        self.conn.execute("""
            CREATE OR REPLACE TABLE events AS
            SELECT
                UNNEST(CAST(? AS VARCHAR[])) AS member_id,
                UNNEST(CAST(? AS VARCHAR[])) AS event_type,
                UNNEST(CAST(? AS DATE[])) AS start_date,
                UNNEST(CAST(? AS DATE[])) AS end_date
        """, [
            [e.member_id for e in events],
            [e.event_type for e in events],
            [e.start_date for e in events],
            [e.end_date for e in events],
        ])

    def _store_diagnoses(self, diagnoses: List[Diagnosis]) -> None:
        self.conn.execute("""
            CREATE OR REPLACE TABLE diagnoses AS
            SELECT
                UNNEST(CAST(? AS VARCHAR[])) AS member_id,
                UNNEST(CAST(? AS VARCHAR[])) AS disease_group,
                UNNEST(CAST(? AS DATE[])) AS diagnosis_date
        """, [
            [d.member_id for d in diagnoses],
            [d.disease_group for d in diagnoses],
            [d.diagnosis_date for d in diagnoses],
        ])

    def load_events(self) -> List[Event]:
        """Load and validate the medical events file."""
        path = self.data_dir / self.events_file
        if not path.exists():
            raise FileNotFoundError(f"Events data not found: {path}")

        logger.info(f"Loading events from {path}")
        rejected = self._stage(self.events_file, path, "raw_events")
        if rejected is None:
            logger.warning(f"{self.events_file} is empty")
            self._store_events([])
            self.events = []
            return self.events

        cols = self._resolve_columns(self.events_file, "raw_events", EVENT_COLUMNS)

        rows = self.conn.execute(f"""
            SELECT
                TRIM(CAST("{cols['member_id']}" AS VARCHAR)) AS member_id,
                TRIM(CAST("{cols['event_type']}" AS VARCHAR)) AS event_type,
                CAST("{cols['start_date']}" AS VARCHAR) AS start_raw,
                {_date_expr(cols['start_date'])} AS start_date,
                CAST("{cols['end_date']}" AS VARCHAR) AS end_raw,
                {_date_expr(cols['end_date'])} AS end_date
            FROM raw_events
        """).fetchall()

        events = []
        for row_number, row in zip(self._row_numbers(rejected), rows):
            member_id, event_type, start_raw, start, end_raw, end = row
            record = {
                "member_id": member_id,
                "event_type": event_type,
                "start_date": start_raw,
                "end_date": end_raw,
            }

            if not member_id:
                self._record(self.events_file, row_number, "missing member_id", record)
                continue
            if event_type not in EVENT_TYPES:
                self._record(self.events_file, row_number,
                             f"unrecognized event_type {event_type!r}", record)
                continue
            if start is None:
                raise DataFormatError(self.events_file, row_number, "start_date", start_raw)
            if end is None:
                raise DataFormatError(self.events_file, row_number, "end_date", end_raw)
            if start > end:
                self._record(self.events_file, row_number,
                             f"start_date {start} is after end_date {end}", record)
                continue

            events.append(Event(member_id, event_type, start, end))

        self._store_events(events)
        self.events = events
        logger.info(f"Events loaded: {len(events):,} valid of {len(rows) + len(rejected):,} rows")
        return events

    def load_diagnoses(self) -> List[Diagnosis]:
        """Load and validate the chronic and behavioral-health diagnoses file."""
        path = self.data_dir / self.diagnoses_file
        if not path.exists():
            raise FileNotFoundError(f"Diagnosis data not found: {path}")

        logger.info(f"Loading diagnoses from {path}")
        rejected = self._stage(self.diagnoses_file, path, "raw_diagnoses")
        if rejected is None:
            logger.warning(f"{self.diagnoses_file} is empty")
            self._store_diagnoses([])
            self.diagnoses = []
            return self.diagnoses

        cols = self._resolve_columns(
            self.diagnoses_file, "raw_diagnoses", DIAGNOSIS_COLUMNS, optional=("diagnosis_date",)
        )

        if cols["diagnosis_date"] is None:
            logger.warning(f"{self.diagnoses_file} has no diagnosis date column")
            date_select = "NULL AS date_raw, CAST(NULL AS DATE) AS diagnosis_date"
        else:
            date_select = (
                f'CAST("{cols["diagnosis_date"]}" AS VARCHAR) AS date_raw, '
                f'{_date_expr(cols["diagnosis_date"])} AS diagnosis_date'
            )

        rows = self.conn.execute(f"""
            SELECT
                TRIM(CAST("{cols['member_id']}" AS VARCHAR)) AS member_id,
                TRIM(CAST("{cols['disease_group']}" AS VARCHAR)) AS disease_group,
                {date_select}
            FROM raw_diagnoses
        """).fetchall()

        diagnoses = []
        for row_number, row in zip(self._row_numbers(rejected), rows):
            member_id, disease_group, date_raw, diagnosis_date = row
            record = {
                "member_id": member_id,
                "disease_group": disease_group,
                "diagnosis_date": date_raw,
            }

            if not member_id:
                self._record(self.diagnoses_file, row_number, "missing member_id", record)
                continue
            if not disease_group:
                self._record(self.diagnoses_file, row_number, "missing disease_group", record)
                continue
            if date_raw is not None and diagnosis_date is None:
                raise DataFormatError(self.diagnoses_file, row_number, "diagnosis_date", date_raw)

            diagnoses.append(Diagnosis(member_id, disease_group, diagnosis_date))

        self._store_diagnoses(diagnoses)
        self.diagnoses = diagnoses
        logger.info(f"Diagnoses loaded: {len(diagnoses):,} valid of {len(rows) + len(rejected):,} rows")
        return diagnoses

    def load_all(self) -> None:
        """Load all data sources."""
        self.load_events()
        self.load_diagnoses()
        if self.skipped:
            logger.warning(f"{len(self.skipped):,} malformed records skipped")
        logger.info("All data sources loaded successfully")

    def get_connection(self) -> duckdb.DuckDBPyConnection:
        """Return the DuckDB connection for reporting."""
        return self.conn

    def close(self) -> None:
        """Close the database connection."""
        self.conn.close()
