"""Tests for portfolio_risk/aggregation.py"""

import numpy as np
import pandas as pd
import pytest

from portfolio_risk.aggregation import (
    Derived,
    Metric,
    aggregate,
    aggregate_partitioned,
    apply_derived,
    finalize,
    merge_partials,
    partial_aggregate,
    safe_divide,
)
from portfolio_risk.exceptions import ConfigurationError
from portfolio_risk.windows import portfolio_share


@pytest.fixture
def abc_loans():
    """Loan A completed, B defaulted, C current."""
    return pd.DataFrame({
        'loan_id': ['A', 'B', 'C'],
        'original_amount': [1000.0, 2000.0, 500.0],
        'is_bad': [False, True, False],
    })


@pytest.fixture
def pool():
    """
    Twelve loans in three grades with some null rates and recoveries.

    Grade C has no recovery data at all and zero losses.
    """
    return pd.DataFrame({
        'grade': ['A', 'A', 'A', 'A', 'B', 'B', 'B', 'B', 'C', 'C', 'C', 'C'],
        'borrower_id': ['m1', 'm1', 'm2', 'm3', 'm4', 'm4', 'm5', 'm6', 'm7', 'm8', 'm8', 'm9'],
        'original_amount': [1000.0, 2000.0, 1500.0, 500.0, 3000.0, 1000.0,
                            2500.0, 4000.0, 800.0, 1200.0, 600.0, 900.0],
        'borrower_rate': [0.08, 0.09, np.nan, 0.07, 0.15, 0.16, 0.14, np.nan, 0.25, 0.27, 0.26, 0.30],
        'gross_principal_loss': [0.0, 500.0, 0.0, 0.0, 1000.0, 0.0, 2000.0, 0.0, 0.0, 0.0, 0.0, 0.0],
        'non_principal_recoveries': [0.0, 50.0, 0.0, 0.0, 100.0, 0.0, 0.0, 0.0,
                                     np.nan, np.nan, np.nan, np.nan],
        'is_bad': [False, True, False, False, True, False, True, False, False, False, False, False],
    })


POOL_METRICS = [
    Metric.count('loan_count'),
    Metric.count_distinct('unique_borrowers', 'borrower_id'),
    Metric.count_distinct_if('unique_defaulters', 'borrower_id', 'is_bad'),
    Metric.count_if('default_count', 'is_bad'),
    Metric.sum('total_volume', 'original_amount'),
    Metric.sum_if('bad_volume', 'original_amount', 'is_bad'),
    Metric.mean('avg_rate', 'borrower_rate'),
    Metric.min('min_amount', 'original_amount'),
    Metric.max('max_amount', 'original_amount'),
    Metric.rate('default_rate_pct', 'is_bad'),
    Metric.mean('avg_loss', 'gross_principal_loss'),
    Metric.mean('avg_recoveries', 'non_principal_recoveries'),
    Metric.ratio('recovery_rate_pct', 'avg_recoveries', 'avg_loss', scale=100),
]


class TestSafeDivide:
    def test_scalar(self):
        """Zero and null denominators give NaN."""
        assert safe_divide(1, 4) == 0.25
        assert np.isnan(safe_divide(1, 0))
        assert np.isnan(safe_divide(1, None))
        assert np.isnan(safe_divide(np.nan, 2))

    def test_series(self):
        """Element-wise guard on Series."""
        result = safe_divide(pd.Series([1.0, 0.0, 2.0]), pd.Series([2.0, 0.0, np.nan]))
        assert result.iloc[0] == 0.5
        assert result.iloc[1:].isna().all()


class TestAggregate:
    def test_concrete_bad_grouping(self, abc_loans):
        """Grouping A/B/C by bad flag gives 2/1 loans, 1500/2000 volume, 42.86%/57.14% share."""
        result = aggregate(abc_loans, ['is_bad'], [
            Metric.count('count'),
            Metric.sum('total_amount', 'original_amount'),
        ])
        result['share_pct'] = portfolio_share(result, 'total_amount')

        assert result['is_bad'].tolist() == [False, True]
        assert result['count'].tolist() == [2, 1]
        assert result['total_amount'].tolist() == [1500.0, 2000.0]
        assert result['share_pct'].round(2).tolist() == [42.86, 57.14]

    def test_metric_values(self, pool):
        """Every metric kind on grade A."""
        result = aggregate(pool, ['grade'], POOL_METRICS)
        a = result.set_index('grade').loc['A']
        assert a['loan_count'] == 4
        assert a['unique_borrowers'] == 3
        assert a['unique_defaulters'] == 1
        assert a['default_count'] == 1
        assert a['total_volume'] == pytest.approx(5000.0)
        assert a['bad_volume'] == pytest.approx(2000.0)
        # mean over the three non-null rates only
        assert a['avg_rate'] == pytest.approx(0.08)
        assert a['min_amount'] == 500.0
        assert a['max_amount'] == 2000.0
        assert a['default_rate_pct'] == pytest.approx(25.0)
        assert a['recovery_rate_pct'] == pytest.approx(10.0)

    def test_null_guards(self, pool):
        """No qualifying values means null, never zero."""
        result = aggregate(pool, ['grade'], POOL_METRICS).set_index('grade')
        c = result.loc['C']
        # grade C has no defaults: the conditional sum is null, the count is zero
        assert pd.isna(c['bad_volume'])
        assert c['default_count'] == 0
        # recoveries all null and losses all zero: the ratio is null
        assert pd.isna(c['avg_recoveries'])
        assert pd.isna(c['recovery_rate_pct'])
        assert c['default_rate_pct'] == 0.0

    def test_ratio_with_zero_denominator(self):
        """avg(recoveries) / avg(loss) with both zero is null."""
        df = pd.DataFrame({'g': ['x', 'x'], 'rec': [0.0, 0.0], 'loss': [0.0, 0.0]})
        result = aggregate(df, ['g'], [
            Metric.mean('avg_rec', 'rec'),
            Metric.mean('avg_loss', 'loss'),
            Metric.ratio('recovery_rate_pct', 'avg_rec', 'avg_loss', scale=100),
        ])
        assert pd.isna(result.loc[0, 'recovery_rate_pct'])

    def test_null_keys_excluded(self):
        """Records with a null key do not form a group."""
        df = pd.DataFrame({'state': ['CA', None, 'CA'], 'x': [1.0, 2.0, 3.0]})
        result = aggregate(df, ['state'], [Metric.count('n')])
        assert result['state'].tolist() == ['CA']
        assert result['n'].tolist() == [2]

    def test_portfolio_level(self, pool):
        """No keys gives one portfolio row."""
        result = aggregate(pool, [], [Metric.count('n'), Metric.rate('default_rate_pct', 'is_bad')])
        assert len(result) == 1
        assert result.loc[0, 'n'] == 12
        assert result.loc[0, 'default_rate_pct'] == pytest.approx(25.0)

    def test_having_after_aggregation(self, pool):
        """Minimum-count filter applies to aggregated rows."""
        pool = pool.assign(region=['N'] * 10 + ['S'] * 2)
        result = aggregate(pool, ['region'], [Metric.count('n')], having=[('n', 'ge', 5)])
        assert result['region'].tolist() == ['N']

    def test_condition_predicate(self, pool):
        """Rates accept condition lists as predicates."""
        result = aggregate(pool, [], [
            Metric.rate('large_pct', [('original_amount', 'ge', 2000)]),
        ])
        assert result.loc[0, 'large_pct'] == pytest.approx(4 / 12 * 100)

    def test_order_independent(self, pool):
        """Shuffled input gives the same aggregate."""
        expected = aggregate(pool, ['grade'], POOL_METRICS)
        shuffled = pool.sample(frac=1.0, random_state=3)
        result = aggregate(shuffled, ['grade'], POOL_METRICS)
        pd.testing.assert_frame_equal(result, expected)

    def test_unknown_ratio_reference(self, pool):
        """A ratio over an undefined metric is a configuration error."""
        with pytest.raises(ConfigurationError, match="unknown metric"):
            aggregate(pool, ['grade'], [Metric.count('n'), Metric.ratio('r', 'n', 'nope')])

    def test_missing_column(self, pool):
        """A metric over a missing column is a configuration error."""
        with pytest.raises(ConfigurationError, match="not found"):
            aggregate(pool, ['grade'], [Metric.mean('m', 'nope')])


class TestPartialMerge:
    def test_two_halves_equal_whole(self, pool):
        """Merging the partials of two halves equals aggregating everything at once."""
        expected = aggregate(pool, ['grade'], POOL_METRICS)
        halves = [pool.iloc[:5], pool.iloc[5:]]
        partials = [partial_aggregate(h, ['grade'], POOL_METRICS) for h in halves]
        merged = finalize(merge_partials(partials, ['grade']), ['grade'], POOL_METRICS)
        pd.testing.assert_frame_equal(merged, expected, check_dtype=False, atol=1e-9)

    def test_mean_is_not_average_of_averages(self):
        """Means merge as (sum, count) pairs."""
        df = pd.DataFrame({'g': ['x'] * 4, 'v': [1.0, 1.0, 1.0, 9.0]})
        metrics = [Metric.mean('avg_v', 'v')]
        partials = [partial_aggregate(df.iloc[:3], ['g'], metrics),
                    partial_aggregate(df.iloc[3:], ['g'], metrics)]
        merged = finalize(merge_partials(partials, ['g']), ['g'], metrics)
        assert merged.loc[0, 'avg_v'] == pytest.approx(3.0)

    @pytest.mark.parametrize('partitions', [1, 2, 3, 5])
    def test_partitioned_equals_direct(self, pool, partitions):
        """The thread-pool path gives the direct result for any partition count."""
        expected = aggregate(pool, ['grade'], POOL_METRICS)
        result = aggregate_partitioned(pool, ['grade'], POOL_METRICS, partitions=partitions)
        pd.testing.assert_frame_equal(result, expected, check_dtype=False, atol=1e-9)

    def test_group_missing_from_one_partition(self, pool):
        """A key present in only one partition still merges correctly."""
        expected = aggregate(pool, ['grade'], POOL_METRICS)
        result = aggregate_partitioned(pool, ['grade'], POOL_METRICS, partitions=2)
        assert result['grade'].tolist() == ['A', 'B', 'C']
        assert result['loan_count'].tolist() == expected['loan_count'].tolist()

    def test_invalid_partitions(self, pool):
        """Zero partitions is rejected."""
        with pytest.raises(ConfigurationError):
            aggregate_partitioned(pool, ['grade'], POOL_METRICS, partitions=0)


class TestMetricDefinitions:
    def test_unknown_kind(self):
        """Unknown metric kinds fail at definition time."""
        with pytest.raises(ConfigurationError, match="unknown kind"):
            Metric('x', 'median', 'amount')

    def test_value_kind_needs_column(self):
        """Means need an input column."""
        with pytest.raises(ConfigurationError, match="needs a column"):
            Metric('x', 'mean')

    def test_from_spec(self):
        """Plain dicts build metrics."""
        m = Metric.from_spec({'name': 'default_rate_pct', 'kind': 'rate', 'where': 'is_bad', 'scale': 100})
        assert m.kind == 'rate'
        assert m.input_columns == ['is_bad']


class TestDerived:
    def test_division_by_zero_is_null(self):
        """inf from a zero denominator becomes NaN."""
        df = pd.DataFrame({'a': [1.0, 1.0, 0.0], 'b': [2.0, 0.0, 0.0]})
        result = Derived('q', 'a / b').evaluate(df)
        assert result.iloc[0] == 0.5
        assert result.iloc[1:].isna().all()

    def test_chained(self):
        """Later derived columns may use earlier ones."""
        df = pd.DataFrame({'a': [2.0], 'b': [3.0]})
        out = apply_derived(df, [Derived('c', 'a * b'), Derived('d', 'c + 1')])
        assert out.loc[0, 'd'] == 7.0

    def test_boolean_arithmetic(self):
        """Flags act as 0/1 in expressions."""
        df = pd.DataFrame({'p': [100.0, 100.0, 100.0],
                           'is_bad': [False, True, False],
                           'is_past_due': [False, False, True]})
        result = Derived('adj', 'p * (1 - is_bad) * (1.0 - 0.5 * is_past_due)').evaluate(df)
        assert result.tolist() == [100.0, 0.0, 50.0]

    def test_unknown_column(self):
        """Expressions over missing columns are configuration errors."""
        with pytest.raises(ConfigurationError, match="Cannot evaluate"):
            Derived('x', 'nope * 2').evaluate(pd.DataFrame({'a': [1.0]}))
