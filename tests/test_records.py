"""Tests for portfolio_risk/records.py"""

import sqlite3
from datetime import date

import numpy as np
import pandas as pd
import pytest

from portfolio_risk.exceptions import MissingColumnsError, ResourceLimitExceeded
from portfolio_risk.records import (
    PROSPER_COLUMNS,
    RECORD_COLUMNS,
    LoanRecord,
    RecordStore,
    classify_status,
    normalize_status,
    prepare_records,
)


@pytest.fixture
def raw_loans():
    """
    Five loans covering every status group.

    A completed, B defaulted, C current, D past due, E charged off with a
    malformed origination date.
    """
    return pd.DataFrame({
        'loan_id': ['A', 'B', 'C', 'D', 'E'],
        'status': ['Completed', 'Defaulted', 'Current', 'Past Due (1-15 days)', 'Chargedoff'],
        'original_amount': [1000.0, 2000.0, 500.0, 4000.0, 0.0],
        'origination_date': ['2010-01-15', '2011-03-01', '2012-11-20', '2013-06-30', 'not a date'],
        'closed_date': ['2013-01-15', '2012-09-01', None, None, '2014-02-01'],
        'credit_score_lower': [700, 640, 660, None, 600],
        'credit_score_upper': [719, 659, 679, 699, 619],
        'gross_principal_loss': [0.0, 1500.0, 0.0, 0.0, 300.0],
        'customer_payments': [1200.0, 600.0, 200.0, 900.0, 0.0],
        'monthly_payment': [30.0, 70.0, 20.0, 150.0, 0.0],
        'stated_monthly_income': [3000.0, 0.0, 2500.0, None, 1000.0],
        'term_months': [36, 36.0, 60, 12.5, None],
        'is_homeowner': ['True', 'False', True, None, 'yes'],
    })


class TestStatusClassification:
    def test_normalize_ignores_case_space_and_punctuation(self):
        """Charged Off / ChargedOff / chargedoff are the same status."""
        assert normalize_status('Charged Off') == 'chargedoff'
        assert normalize_status('ChargedOff') == 'chargedoff'
        assert normalize_status('Past Due (>120 days)') == 'pastdue'

    def test_normalize_null(self):
        """Null statuses normalize to None."""
        assert normalize_status(None) is None
        assert normalize_status(np.nan) is None

    @pytest.mark.parametrize('status, group', [
        ('Current', 'performing'),
        ('Completed', 'completed'),
        ('Defaulted', 'bad'),
        ('Chargedoff', 'bad'),
        ('Past Due (16-30 days)', 'delinquent'),
        ('FinalPaymentInProgress', 'other'),
        ('Cancelled', 'other'),
        (None, 'other'),
    ])
    def test_classify(self, status, group):
        """Each raw status maps onto exactly one status group."""
        assert classify_status(status) == group


class TestPrepareRecords:
    def test_missing_optional_columns_added_as_null(self, raw_loans):
        """Every schema column exists after preparation."""
        df = prepare_records(raw_loans, as_of_date='2015-01-01')
        for col in RECORD_COLUMNS:
            assert col in df.columns
        assert df['state'].isna().all()

    def test_input_not_modified(self, raw_loans):
        """Preparation works on a copy."""
        before = raw_loans.copy()
        prepare_records(raw_loans, as_of_date='2015-01-01')
        pd.testing.assert_frame_equal(raw_loans, before)

    def test_status_flags(self, raw_loans):
        """is_bad covers Defaulted and Chargedoff only."""
        df = prepare_records(raw_loans, as_of_date='2015-01-01')
        assert df['is_bad'].tolist() == [False, True, False, False, True]
        assert df['is_completed'].tolist() == [True, False, False, False, False]
        assert df['is_current'].tolist() == [False, False, True, False, False]
        assert df['is_past_due'].tolist() == [False, False, False, True, False]

    def test_malformed_date_becomes_null(self, raw_loans, caplog):
        """An unparseable date is null and logged, never fatal."""
        with caplog.at_level('WARNING'):
            df = prepare_records(raw_loans, as_of_date='2015-01-01')
        assert pd.isna(df.loc[4, 'origination_date'])
        assert pd.isna(df.loc[4, 'origination_year'])
        assert 'unparseable origination_date' in caplog.text

    def test_credit_score_mid_needs_both_bounds(self, raw_loans):
        """Mid score is null unless both bounds are present."""
        df = prepare_records(raw_loans, as_of_date='2015-01-01')
        assert df.loc[0, 'credit_score_mid'] == pytest.approx(709.5)
        assert pd.isna(df.loc[3, 'credit_score_mid'])

    def test_time_cohorts(self, raw_loans):
        """Year, quarter and month of origination."""
        df = prepare_records(raw_loans, as_of_date='2015-01-01')
        assert df.loc[2, 'origination_year'] == 2012
        assert df.loc[2, 'origination_quarter'] == 4
        assert df.loc[2, 'origination_month'] == 11

    def test_months_active_uses_closed_date_or_as_of(self, raw_loans):
        """Closed loans end at closed_date, open loans at as_of_date."""
        df = prepare_records(raw_loans, as_of_date='2015-01-01')
        assert df.loc[0, 'months_active'] == 36
        assert df.loc[1, 'months_active'] == 18
        # 2012-11 -> 2015-01
        assert df.loc[2, 'months_active'] == 26

    def test_days_to_close(self, raw_loans):
        """Days between origination and close; null while open."""
        df = prepare_records(raw_loans, as_of_date='2015-01-01')
        assert df.loc[1, 'days_to_close'] == (pd.Timestamp('2012-09-01') - pd.Timestamp('2011-03-01')).days
        assert pd.isna(df.loc[2, 'days_to_close'])

    def test_payment_to_income_guards_zero_income(self, raw_loans):
        """PTI is null when income is zero or missing."""
        df = prepare_records(raw_loans, as_of_date='2015-01-01')
        assert df.loc[0, 'payment_to_income_pct'] == pytest.approx(1.0)
        assert pd.isna(df.loc[1, 'payment_to_income_pct'])
        assert pd.isna(df.loc[3, 'payment_to_income_pct'])

    def test_realized_loss_ratio(self, raw_loans):
        """Loss / amount for bad loans, 0 for others, null for zero amount."""
        df = prepare_records(raw_loans, as_of_date='2015-01-01')
        assert df.loc[1, 'realized_loss_ratio'] == pytest.approx(0.75)
        assert df.loc[0, 'realized_loss_ratio'] == 0.0
        assert pd.isna(df.loc[4, 'realized_loss_ratio'])

    def test_net_return(self, raw_loans):
        """Customer payments less gross principal loss."""
        df = prepare_records(raw_loans, as_of_date='2015-01-01')
        assert df.loc[1, 'net_return'] == pytest.approx(-900.0)

    def test_non_integral_integer_becomes_null(self, raw_loans):
        """A fractional term is not silently truncated."""
        df = prepare_records(raw_loans, as_of_date='2015-01-01')
        assert df.loc[1, 'term_months'] == 36
        assert pd.isna(df.loc[3, 'term_months'])

    def test_homeowner_flags_parsed(self, raw_loans):
        """String and boolean homeowner flags share one nullable boolean type."""
        df = prepare_records(raw_loans, as_of_date='2015-01-01')
        assert df['is_homeowner'].dtype == 'boolean'
        assert df.loc[0, 'is_homeowner'] == True  # noqa: E712
        assert df.loc[1, 'is_homeowner'] == False  # noqa: E712
        assert pd.isna(df.loc[3, 'is_homeowner'])
        assert df.loc[4, 'is_homeowner'] == True  # noqa: E712


class TestRecordStore:
    def test_missing_required_columns(self, raw_loans):
        """A source without the required columns is rejected."""
        with pytest.raises(MissingColumnsError, match="Missing required columns"):
            RecordStore(raw_loans.drop(columns=['original_amount']))

    def test_row_ceiling(self, raw_loans):
        """More rows than max_rows aborts with a resource error."""
        with pytest.raises(ResourceLimitExceeded):
            RecordStore(raw_loans, max_rows=4)

    def test_row_ceiling_boundary(self, raw_loans):
        """Exactly max_rows rows is allowed."""
        store = RecordStore(raw_loans, max_rows=5, as_of_date='2015-01-01')
        assert len(store) == 5

    def test_frame_is_a_copy(self, raw_loans):
        """Mutating the returned frame does not touch the store."""
        store = RecordStore(raw_loans, as_of_date='2015-01-01')
        df = store.frame
        df['original_amount'] = 0.0
        assert store.frame['original_amount'].sum() == pytest.approx(7500.0)

    def test_source_columns_recorded(self, raw_loans):
        """The store remembers which columns the source actually had."""
        store = RecordStore(raw_loans, as_of_date='2015-01-01')
        assert 'credit_score_lower' in store.source_columns
        assert 'state' not in store.source_columns
        assert 'state' in store.columns

    def test_from_records(self):
        """LoanRecord dataclasses and plain mappings are both accepted."""
        records = [
            LoanRecord('A', 'Completed', 1000.0, origination_date=date(2010, 1, 1)),
            {'loan_id': 'B', 'status': 'Defaulted', 'original_amount': 2000.0},
        ]
        store = RecordStore.from_records(records, as_of_date='2015-01-01')
        assert len(store) == 2
        assert store.frame['is_bad'].tolist() == [False, True]

    def test_from_records_empty(self):
        """An empty source gives an empty store."""
        store = RecordStore.from_records([])
        assert len(store) == 0

    def test_from_csv_with_prosper_headers(self, tmp_path):
        """Raw export headers are renamed onto the schema."""
        path = tmp_path / 'loans.csv'
        pd.DataFrame({
            'LoanKey': ['K1', 'K2'],
            'LoanStatus': ['Current', 'Chargedoff'],
            'LoanOriginalAmount': [1000, 2500],
            'BorrowerState': ['CA', 'TX'],
        }).to_csv(path, index=False)
        store = RecordStore.from_csv(path, rename=PROSPER_COLUMNS)
        df = store.frame
        assert df['loan_id'].tolist() == ['K1', 'K2']
        assert df['state'].tolist() == ['CA', 'TX']
        assert df['is_bad'].tolist() == [False, True]

    def test_from_csv_reads_one_past_ceiling(self, tmp_path):
        """The CSV reader stops after max_rows + 1 rows and trips the ceiling."""
        path = tmp_path / 'loans.csv'
        pd.DataFrame({
            'loan_id': [f'L{i}' for i in range(10)],
            'status': ['Current'] * 10,
            'original_amount': [100.0] * 10,
        }).to_csv(path, index=False)
        with pytest.raises(ResourceLimitExceeded, match="more than 3"):
            RecordStore.from_csv(path, max_rows=3)

    def test_from_sqlite(self, tmp_path):
        """A SQLite table loads through the same preparation."""
        path = tmp_path / 'loans.db'
        conn = sqlite3.connect(str(path))
        pd.DataFrame({
            'loan_id': ['A', 'B', 'C'],
            'status': ['Completed', 'Defaulted', 'Current'],
            'original_amount': [1000.0, 2000.0, 500.0],
        }).to_sql('loans', conn, index=False)
        conn.close()
        store = RecordStore.from_sqlite(path, table='loans')
        assert len(store) == 3
        assert store.frame['status_group'].tolist() == ['completed', 'bad', 'performing']
