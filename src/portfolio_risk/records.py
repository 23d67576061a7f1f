"""
Record store adapter: the loan record schema, status classification, and
the per-record preparation every report builds on.

Functions:
    normalize_status — case/space/punctuation-insensitive status key
    classify_status — map a raw status onto its status group
    prepare_records — coerce types and add the derived per-loan columns

Classes:
    LoanRecord — one loan, the structural contract of the input
    RecordStore — read-only prepared snapshot of loan records
"""

import logging
import re
import sqlite3
from dataclasses import asdict, dataclass, fields
from datetime import date
from pathlib import Path
from typing import Iterable, Mapping, Optional, Union

import numpy as np
import pandas as pd

from portfolio_risk.exceptions import MissingColumnsError, ResourceLimitExceeded

logger = logging.getLogger(__name__)


# =============================================================================
# Schema
# =============================================================================

@dataclass(frozen=True)
class LoanRecord:
    """One loan of the snapshot. Every field but the identifiers is optional."""
    loan_id: str
    status: str
    original_amount: float
    listing_id: Optional[str] = None
    borrower_id: Optional[str] = None
    loan_number: Optional[int] = None
    origination_date: Optional[date] = None
    closed_date: Optional[date] = None
    term_months: Optional[int] = None
    borrower_rate: Optional[float] = None
    borrower_apr: Optional[float] = None
    lender_yield: Optional[float] = None
    estimated_effective_yield: Optional[float] = None
    monthly_payment: Optional[float] = None
    stated_monthly_income: Optional[float] = None
    debt_to_income_ratio: Optional[float] = None
    estimated_loss: Optional[float] = None
    estimated_return: Optional[float] = None
    prosper_rating: Optional[str] = None
    prosper_score: Optional[float] = None
    customer_payments: Optional[float] = None
    principal_payments: Optional[float] = None
    interest_and_fees: Optional[float] = None
    service_fees: Optional[float] = None
    collection_fees: Optional[float] = None
    gross_principal_loss: Optional[float] = None
    net_principal_loss: Optional[float] = None
    non_principal_recoveries: Optional[float] = None
    credit_score_lower: Optional[float] = None
    credit_score_upper: Optional[float] = None
    current_delinquencies: Optional[int] = None
    delinquencies_last_7y: Optional[int] = None
    public_records_last_10y: Optional[int] = None
    open_credit_lines: Optional[int] = None
    revolving_credit_balance: Optional[float] = None
    available_bankcard_credit: Optional[float] = None
    bankcard_utilization: Optional[float] = None
    employment_status: Optional[str] = None
    employment_duration_months: Optional[float] = None
    occupation: Optional[str] = None
    income_range: Optional[str] = None
    is_homeowner: Optional[bool] = None
    investor_count: Optional[int] = None
    friends_investment_count: Optional[int] = None
    percent_funded: Optional[float] = None
    days_delinquent: Optional[int] = None
    state: Optional[str] = None


RECORD_COLUMNS = [f.name for f in fields(LoanRecord)]
REQUIRED_COLUMNS = ['loan_id', 'status', 'original_amount']

DATE_COLUMNS = ['origination_date', 'closed_date']
TEXT_COLUMNS = ['loan_id', 'listing_id', 'borrower_id', 'status', 'prosper_rating',
                'employment_status', 'occupation', 'income_range', 'state']
INTEGER_COLUMNS = ['loan_number', 'term_months', 'current_delinquencies',
                   'delinquencies_last_7y', 'public_records_last_10y',
                   'open_credit_lines', 'investor_count', 'friends_investment_count',
                   'days_delinquent']
BOOLEAN_COLUMNS = ['is_homeowner']
NUMERIC_COLUMNS = [c for c in RECORD_COLUMNS
                   if c not in DATE_COLUMNS + TEXT_COLUMNS + INTEGER_COLUMNS + BOOLEAN_COLUMNS]

# Raw Prosper export headers -> record schema
PROSPER_COLUMNS = {
    'LoanKey': 'loan_id',
    'ListingKey': 'listing_id',
    'MemberKey': 'borrower_id',
    'LoanNumber': 'loan_number',
    'LoanOriginationDate': 'origination_date',
    'ClosedDate': 'closed_date',
    'Term': 'term_months',
    'LoanStatus': 'status',
    'LoanOriginalAmount': 'original_amount',
    'BorrowerRate': 'borrower_rate',
    'BorrowerAPR': 'borrower_apr',
    'LenderYield': 'lender_yield',
    'EstimatedEffectiveYield': 'estimated_effective_yield',
    'MonthlyLoanPayment': 'monthly_payment',
    'StatedMonthlyIncome': 'stated_monthly_income',
    'DebtToIncomeRatio': 'debt_to_income_ratio',
    'EstimatedLoss': 'estimated_loss',
    'EstimatedReturn': 'estimated_return',
    'ProsperRating (Alpha)': 'prosper_rating',
    'ProsperScore': 'prosper_score',
    'LP_CustomerPayments': 'customer_payments',
    'LP_CustomerPrincipalPayments': 'principal_payments',
    'LP_InterestandFees': 'interest_and_fees',
    'LP_ServiceFees': 'service_fees',
    'LP_CollectionFees': 'collection_fees',
    'LP_GrossPrincipalLoss': 'gross_principal_loss',
    'LP_NetPrincipalLoss': 'net_principal_loss',
    'LP_NonPrincipalRecoverypayments': 'non_principal_recoveries',
    'CreditScoreRangeLower': 'credit_score_lower',
    'CreditScoreRangeUpper': 'credit_score_upper',
    'CurrentDelinquencies': 'current_delinquencies',
    'DelinquenciesLast7Years': 'delinquencies_last_7y',
    'PublicRecordsLast10Years': 'public_records_last_10y',
    'OpenCreditLines': 'open_credit_lines',
    'RevolvingCreditBalance': 'revolving_credit_balance',
    'AvailableBankcardCredit': 'available_bankcard_credit',
    'BankcardUtilization': 'bankcard_utilization',
    'EmploymentStatus': 'employment_status',
    'EmploymentStatusDuration': 'employment_duration_months',
    'Occupation': 'occupation',
    'IncomeRange': 'income_range',
    'IsBorrowerHomeowner': 'is_homeowner',
    'Investors': 'investor_count',
    'InvestmentFromFriendsCount': 'friends_investment_count',
    'PercentFunded': 'percent_funded',
    'LoanCurrentDaysDelinquent': 'days_delinquent',
    'BorrowerState': 'state',
}


# =============================================================================
# Status classification
# =============================================================================

STATUS_GROUPS = ('performing', 'completed', 'bad', 'delinquent', 'other')

BAD_STATUSES = frozenset({'defaulted', 'chargedoff'})
PAST_DUE_PREFIX = 'pastdue'

_PARENTHETICAL = re.compile(r'\(.*?\)')
_NON_LETTERS = re.compile(r'[^a-z]')


def normalize_status(status) -> Optional[str]:
    """'Past Due (1-15 days)' -> 'pastdue', 'Charged Off' -> 'chargedoff'."""
    if status is None or (isinstance(status, float) and np.isnan(status)) or status is pd.NA:
        return None
    return _NON_LETTERS.sub('', _PARENTHETICAL.sub('', str(status).lower()))


def classify_status(status) -> str:
    """Return the status group of a raw status value."""
    key = normalize_status(status)
    if key is None:
        return 'other'
    if key == 'current':
        return 'performing'
    if key == 'completed':
        return 'completed'
    if key in BAD_STATUSES:
        return 'bad'
    if key.startswith(PAST_DUE_PREFIX):
        return 'delinquent'
    return 'other'


def _parse_bool(value):
    if value is None or value is pd.NA:
        return pd.NA
    if isinstance(value, (bool, np.bool_)):
        return bool(value)
    if isinstance(value, (int, float, np.integer, np.floating)):
        return pd.NA if np.isnan(value) else bool(value)
    text = str(value).strip().lower()
    if text in ('true', 't', 'yes', 'y', '1'):
        return True
    if text in ('false', 'f', 'no', 'n', '0'):
        return False
    return pd.NA


# =============================================================================
# Preparation
# =============================================================================

def prepare_records(frame: pd.DataFrame,
                    as_of_date=None) -> pd.DataFrame:
    """
    Coerce the raw columns to their schema types and add derived columns.

    Parameters
    ----------
    frame : pd.DataFrame
        Raw records using the schema column names. Optional schema columns
        that are absent are added as nulls.
    as_of_date : date-like, optional
        End date for the duration of loans that have not closed.
        Defaults to today.

    Returns
    -------
    pd.DataFrame
        A new frame; the input is not modified.

    Notes
    -----
    Values that cannot be parsed (dates, numbers) become null rather than
    failing the batch. Derived columns:

    - status_group, is_bad, is_completed, is_current, is_past_due
    - credit_score_mid: (lower + upper) / 2, null unless both are present
    - origination_year / origination_quarter / origination_month
    - months_active: month boundaries crossed between origination and the
      closed date (or as_of_date when still open)
    - days_to_close: days between origination and the closed date
    - net_return: customer payments less gross principal loss
    - payment_to_income_pct: monthly payment / stated income * 100, null
      when income is not positive
    - realized_loss_ratio: gross principal loss / amount for bad loans,
      0 for every other loan, null when the amount is 0
    """
    df = frame.copy()

    for col in RECORD_COLUMNS:
        if col not in df.columns:
            df[col] = np.nan

    for col in TEXT_COLUMNS:
        df[col] = df[col].astype('object').where(df[col].notna(), None)

    for col in NUMERIC_COLUMNS:
        df[col] = pd.to_numeric(df[col], errors='coerce').astype('float64')

    for col in INTEGER_COLUMNS:
        values = pd.to_numeric(df[col], errors='coerce').astype('float64')
        values = values.where(values == np.floor(values))
        df[col] = values.astype('Int64')

    for col in BOOLEAN_COLUMNS:
        df[col] = df[col].map(_parse_bool).astype('boolean')

    for col in DATE_COLUMNS:
        raw = df[col]
        parsed = pd.to_datetime(raw, errors='coerce')
        bad_dates = int((raw.notna() & parsed.isna()).sum())
        if bad_dates:
            logger.warning(f"{bad_dates:,} records have an unparseable {col}; treated as missing")
        df[col] = parsed

    # Status flags
    df['status_group'] = df['status'].map(classify_status)
    df['is_bad'] = df['status_group'] == 'bad'
    df['is_completed'] = df['status_group'] == 'completed'
    df['is_current'] = df['status_group'] == 'performing'
    df['is_past_due'] = df['status_group'] == 'delinquent'

    df['credit_score_mid'] = (df['credit_score_lower'] + df['credit_score_upper']) / 2

    # Time cohorts
    orig = df['origination_date']
    df['origination_year'] = orig.dt.year.astype('Int64')
    df['origination_quarter'] = orig.dt.quarter.astype('Int64')
    df['origination_month'] = orig.dt.month.astype('Int64')

    end = pd.Timestamp(as_of_date) if as_of_date is not None else pd.Timestamp(date.today())
    closed = df['closed_date']
    end_dates = closed.where(closed.notna(), end)
    months = ((end_dates.dt.year - orig.dt.year) * 12
              + (end_dates.dt.month - orig.dt.month))
    df['months_active'] = months.astype('Int64')
    df['days_to_close'] = (closed - orig).dt.days.astype('Int64')

    df['net_return'] = df['customer_payments'] - df['gross_principal_loss']

    income = df['stated_monthly_income']
    df['payment_to_income_pct'] = (df['monthly_payment'] * 100 / income).where(income > 0)

    amount = df['original_amount']
    loss_ratio = (df['gross_principal_loss'] / amount).where(amount > 0)
    df['realized_loss_ratio'] = loss_ratio.where(df['is_bad'], 0.0).where(amount > 0)

    return df


# =============================================================================
# Store
# =============================================================================

class RecordStore:
    """
    Read-only snapshot of prepared loan records.

    The store validates the required columns and the row ceiling once, on
    construction. ``frame`` always returns a copy so reports cannot mutate
    the snapshot.
    """

    def __init__(self, frame: pd.DataFrame,
                 max_rows: Optional[int] = None,
                 as_of_date=None):
        missing = [col for col in REQUIRED_COLUMNS if col not in frame.columns]
        if missing:
            raise MissingColumnsError(missing, context='record store')
        if max_rows is not None and len(frame) > max_rows:
            raise ResourceLimitExceeded(len(frame), max_rows)

        self.max_rows = max_rows
        self.as_of_date = as_of_date
        self.source_columns = frozenset(frame.columns)
        self._frame = prepare_records(frame, as_of_date=as_of_date)
        logger.info(f"Record store holds {len(self._frame):,} loans")

    def __len__(self) -> int:
        return len(self._frame)

    @property
    def frame(self) -> pd.DataFrame:
        return self._frame.copy()

    @property
    def columns(self) -> list:
        return list(self._frame.columns)

    # ------------------------------------------------------------------
    # Constructors
    # ------------------------------------------------------------------

    @classmethod
    def from_frame(cls, frame: pd.DataFrame,
                   rename: Optional[Mapping[str, str]] = None,
                   **kwargs) -> 'RecordStore':
        if rename:
            frame = frame.rename(columns=dict(rename))
        return cls(frame, **kwargs)

    @classmethod
    def from_records(cls, records: Iterable[Union[LoanRecord, Mapping]],
                     **kwargs) -> 'RecordStore':
        rows = [asdict(r) if isinstance(r, LoanRecord) else dict(r) for r in records]
        frame = pd.DataFrame(rows)
        if frame.empty:
            frame = pd.DataFrame(columns=RECORD_COLUMNS)
        return cls(frame, **kwargs)

    @classmethod
    def from_csv(cls, path: Union[str, Path],
                 rename: Optional[Mapping[str, str]] = None,
                 max_rows: Optional[int] = None,
                 **kwargs) -> 'RecordStore':
        """Read a CSV export; reads at most max_rows + 1 lines so the ceiling can trip."""
        nrows = max_rows + 1 if max_rows is not None else None
        frame = pd.read_csv(path, nrows=nrows, low_memory=False)
        logger.info(f"Read {len(frame):,} rows from {path}")
        return cls.from_frame(frame, rename=rename, max_rows=max_rows, **kwargs)

    @classmethod
    def from_sqlite(cls, path: Union[str, Path],
                    table: str = 'loans',
                    rename: Optional[Mapping[str, str]] = None,
                    max_rows: Optional[int] = None,
                    **kwargs) -> 'RecordStore':
        """Read one table from a SQLite database."""
        query = f'SELECT * FROM "{table}"'
        if max_rows is not None:
            query += f' LIMIT {int(max_rows) + 1}'
        conn = sqlite3.connect(str(path))
        try:
            frame = pd.read_sql_query(query, conn)
        finally:
            conn.close()
        logger.info(f"Read {len(frame):,} rows from {path}:{table}")
        return cls.from_frame(frame, rename=rename, max_rows=max_rows, **kwargs)
