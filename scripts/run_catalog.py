"""
run_catalog.py — Run the report catalog over a loan portfolio.

Reads the loans table from a SQLite database (or a CSV export), runs every
catalog report (or the ones named with --report) and writes one CSV per
report to the output directory.

Usage:
    python scripts/run_catalog.py --db data/loans.db
    python scripts/run_catalog.py --csv data/prosperLoanData.csv --report status_summary
"""

import argparse
import logging
import sys
from pathlib import Path

from portfolio_risk.catalog import CATALOG, load_report_specs
from portfolio_risk.config import configure_logging, load_config
from portfolio_risk.exceptions import AnalyticsError
from portfolio_risk.records import PROSPER_COLUMNS, RecordStore
from portfolio_risk.reports import run_catalog

PROJECT_ROOT = Path(__file__).resolve().parent.parent
DB_PATH = PROJECT_ROOT / "data" / "loans.db"
OUTPUT_DIR = PROJECT_ROOT / "output" / "reports"

log = logging.getLogger(__name__)


def parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run portfolio risk reports.")
    source = parser.add_mutually_exclusive_group()
    source.add_argument("--db", type=Path, default=None, help="SQLite database (default: data/loans.db)")
    source.add_argument("--csv", type=Path, default=None, help="CSV export instead of SQLite")
    parser.add_argument("--table", default="loans", help="SQLite table name")
    parser.add_argument("--config", type=Path, default=None, help="YAML configuration file")
    parser.add_argument("--extra-reports", type=Path, default=None,
                        help="YAML file with additional report definitions")
    parser.add_argument("--report", action="append", dest="reports", default=None,
                        help="Report to run (repeatable); default: all")
    parser.add_argument("--out", type=Path, default=OUTPUT_DIR, help="Output directory")
    parser.add_argument("--raw-columns", action="store_true",
                        help="Source already uses schema column names; skip the Prosper rename")
    parser.add_argument("--verbose", action="store_true", help="Print every report table")
    return parser.parse_args(argv)


def main(argv=None) -> int:
    args = parse_args(argv)
    config = load_config(args.config)
    configure_logging(config.log_level)

    rename = None if args.raw_columns else PROSPER_COLUMNS
    max_rows = config.engine.max_rows
    as_of_date = config.engine.as_of_date

    catalog = dict(CATALOG)
    if args.extra_reports:
        catalog.update(load_report_specs(args.extra_reports))

    try:
        if args.csv:
            store = RecordStore.from_csv(args.csv, rename=rename, max_rows=max_rows, as_of_date=as_of_date)
        else:
            db = args.db or DB_PATH
            store = RecordStore.from_sqlite(db, table=args.table, rename=rename,
                                            max_rows=max_rows, as_of_date=as_of_date)
        results = run_catalog(store, names=args.reports, config=config,
                              catalog=catalog, verbose=args.verbose)
    except AnalyticsError as exc:
        log.error(str(exc))
        return 1

    args.out.mkdir(parents=True, exist_ok=True)
    for name, frame in results.items():
        path = args.out / f"{name}.csv"
        frame.to_csv(path, index=False)
        log.info(f"Wrote {name}: {len(frame):,} rows -> {path}")

    log.info(f"Done: {len(results)} reports in {args.out}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
