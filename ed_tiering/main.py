#!/usr/bin/env python3
"""
ED Utilization Tiering Engine

CLI tool that profiles a claims extract and stratifies members into ED
utilization tiers for the ED Diversion program.
"""

import argparse
import logging
import sys
import os
import resource
import platform
from pathlib import Path
from datetime import datetime, date

from .ingest import DataIngestor, DataFormatError
from .tiering import MemberTiering, TieringConfig, DEFAULT_REFERENCE_DATE
from .output import ReportGenerator


def get_memory_usage_mb() -> float:
    """Get current memory usage in MB."""
    if platform.system() == 'Linux':
        with open('/proc/self/status', 'r') as f:
            for line in f:
                if line.startswith('VmRSS:'):
                    return int(line.split()[1]) / 1024  # KB to MB
    usage = resource.getrusage(resource.RUSAGE_SELF)
    return usage.ru_maxrss / 1024


def get_peak_memory_mb() -> float:
    """Get peak memory usage in MB."""
    usage = resource.getrusage(resource.RUSAGE_SELF)
    # ru_maxrss is in KB on Linux, bytes on macOS
    if platform.system() == 'Darwin':
        return usage.ru_maxrss / (1024 * 1024)
    return usage.ru_maxrss / 1024


def parse_date(value: str) -> date:
    try:
        return datetime.strptime(value, '%Y-%m-%d').date()
    except ValueError:
        raise argparse.ArgumentTypeError(f"expected YYYY-MM-DD, got {value!r}")


# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(levelname)s - %(message)s',
    datefmt='%Y-%m-%d %H:%M:%S'
)
logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description='ED Utilization Tiering Engine',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python -m ed_tiering.main --roster tiered_members.csv
  python -m ed_tiering.main --data-dir ./data --reference-date 2022-01-26
  python -m ed_tiering.main --tier1-threshold 10 --tier2-threshold 4 -v
        """
    )

    parser.add_argument(
        '--data-dir', '-d',
        type=str,
        default='./data',
        help='Directory containing input data files (default: ./data)'
    )

    parser.add_argument(
        '--events-file',
        type=str,
        default='medical_events.csv',
        help='Medical events file inside the data directory (default: medical_events.csv)'
    )

    parser.add_argument(
        '--diagnoses-file',
        type=str,
        default='chronic_and_bh.csv',
        help='Chronic/behavioral-health diagnoses file (default: chronic_and_bh.csv)'
    )

    parser.add_argument(
        '--roster', '-o',
        type=str,
        default='tiered_members.csv',
        help='Output CSV roster of Tier 1 and Tier 2 members (default: tiered_members.csv)'
    )

    parser.add_argument(
        '--report',
        type=str,
        default='tiering_report.json',
        help='Output JSON summary report (default: tiering_report.json)'
    )

    parser.add_argument(
        '--reference-date',
        type=parse_date,
        default=DEFAULT_REFERENCE_DATE,
        help=f'Analysis reference date, YYYY-MM-DD (default: {DEFAULT_REFERENCE_DATE})'
    )

    parser.add_argument(
        '--tier1-threshold',
        type=int,
        default=8,
        help='Minimum ED rate for Tier 1 (default: 8)'
    )

    parser.add_argument(
        '--tier2-threshold',
        type=int,
        default=3,
        help='Minimum ED rate for Tier 2 (default: 3)'
    )

    parser.add_argument(
        '--window-days',
        type=int,
        default=364,
        help='Days looked back from each event for the rolling count (default: 364)'
    )

    parser.add_argument(
        '--memory-limit',
        type=str,
        default='2GB',
        help='DuckDB memory limit (default: 2GB)'
    )

    parser.add_argument(
        '--threads',
        type=int,
        default=2,
        help='DuckDB worker threads (default: 2)'
    )

    parser.add_argument(
        '--verbose', '-v',
        action='store_true',
        help='Enable verbose output'
    )
    return parser


def main(argv=None):
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.verbose:
        logging.getLogger().setLevel(logging.DEBUG)

    try:
        config = TieringConfig(
            reference_date=args.reference_date,
            tier1_threshold=args.tier1_threshold,
            tier2_threshold=args.tier2_threshold,
            window_days=args.window_days,
        )
    except ValueError as e:
        parser.error(str(e))

    data_dir = Path(args.data_dir)
    if not data_dir.exists():
        logger.error(f"Data directory not found: {data_dir}")
        sys.exit(1)

    logger.info("=" * 60)
    logger.info("ED Utilization Tiering Engine")
    logger.info("=" * 60)
    logger.info(f"Data directory: {data_dir.absolute()}")
    logger.info(f"Roster file: {args.roster}")
    logger.info(f"Report file: {args.report}")
    logger.info(f"Reference date: {config.reference_date} (exclusion cutoff {config.cutoff_date})")
    logger.info(f"Tier thresholds: Tier 1 >= {config.tier1_threshold}, Tier 2 >= {config.tier2_threshold}")
    logger.info("")

    start_time = datetime.now()
    ingestor = None

    try:
        # Phase 1: Data Ingestion
        logger.info("PHASE 1: Loading data sources...")
        ingestor = DataIngestor(
            data_dir,
            events_file=args.events_file,
            diagnoses_file=args.diagnoses_file,
            memory_limit=args.memory_limit,
            threads=args.threads,
        )
        ingestor.load_all()

        # Phase 2: Eligibility and tiering
        logger.info("")
        logger.info("PHASE 2: Tiering members...")
        result = MemberTiering(config).run(ingestor.events)

        # Phase 3: Report Generation
        logger.info("")
        logger.info("PHASE 3: Generating report...")
        generator = ReportGenerator(ingestor.get_connection())
        report = generator.generate_report(
            result, config, ingestor.skipped, roster_path=args.roster
        )

        elapsed = datetime.now() - start_time
        peak_memory_mb = get_peak_memory_mb()

        report['execution_metrics'] = {
            'total_runtime_seconds': round(elapsed.total_seconds(), 2),
            'total_runtime_human': str(elapsed),
            'peak_memory_mb': round(peak_memory_mb, 2),
            'final_memory_mb': round(get_memory_usage_mb(), 2),
            'platform': platform.system(),
            'python_version': platform.python_version(),
            'cpu_count': os.cpu_count(),
        }
        generator.write_report(report, args.report)

        # Summary
        logger.info("")
        logger.info("=" * 60)
        logger.info("SUMMARY")
        logger.info("=" * 60)
        logger.info(f"Total runtime: {elapsed}")
        logger.info(f"Peak memory: {peak_memory_mb:.2f} MB")
        logger.info(f"Members scanned: {report['total_members_scanned']:,}")
        logger.info(f"Members excluded: {report['total_members_excluded']:,}")
        logger.info(f"Skipped records: {report['skipped_record_count']:,}")
        logger.info("")
        logger.info("Tier counts:")
        for tier, count in report['tier_counts'].items():
            logger.info(f"  {tier}: {count:,}")
        logger.info("")
        logger.info(f"Roster written to: {args.roster}")
        logger.info("=" * 60)

    except FileNotFoundError as e:
        logger.error(f"Required file not found: {e}")
        sys.exit(1)
    except DataFormatError as e:
        logger.error(f"Corrupt input data: {e}")
        sys.exit(1)
    except Exception as e:
        logger.exception(f"Error during execution: {e}")
        sys.exit(1)
    finally:
        if ingestor is not None:
            ingestor.close()

    return 0


if __name__ == '__main__':
    sys.exit(main())
