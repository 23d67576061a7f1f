"""
Loan portfolio risk analytics.

Load loan records into a RecordStore, then run declarative reports from
the catalog (or your own ReportSpecs) through one generic pipeline:

    store = RecordStore.from_sqlite('data/loans.db', rename=PROSPER_COLUMNS)
    results = run_catalog(store)
"""

from portfolio_risk.config import AnalyticsConfig, configure_logging, load_config
from portfolio_risk.exceptions import (
    AnalyticsError,
    ConfigurationError,
    MissingColumnsError,
    ResourceLimitExceeded,
)
from portfolio_risk.records import PROSPER_COLUMNS, LoanRecord, RecordStore
from portfolio_risk.reports import ReportSpec, format_report, run_catalog, run_report, to_rows

__version__ = '0.1.0'
