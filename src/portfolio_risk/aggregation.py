"""
Aggregation engine: group records by one or more keys and compute summary
metrics per group.

Aggregation runs in two phases so it can be partitioned:

1. ``partial_aggregate`` reduces a chunk of records to per-group *state*
   (row count, sums with their non-null counts, min/max, predicate hits,
   distinct-value sets).
2. ``merge_partials`` combines states from several chunks with associative,
   commutative operations, and ``finalize`` turns state into metric values.

Means are carried as (sum, count) pairs and never averaged across chunks,
so aggregating two halves and merging equals aggregating the whole.

Null handling: numeric metrics only see non-null inputs and a group with
no qualifying values reports null for that metric, never zero. Every
division goes through ``safe_divide``.
"""

import logging
from concurrent.futures import ThreadPoolExecutor
from typing import Optional, Sequence, Union

import numpy as np
import pandas as pd

from portfolio_risk.bucketing import Condition
from portfolio_risk.exceptions import ConfigurationError

logger = logging.getLogger(__name__)

PORTFOLIO_KEY = '_portfolio'

METRIC_KINDS = ('count', 'count_distinct', 'count_distinct_if', 'count_if',
                'sum', 'sum_if', 'mean', 'min', 'max', 'rate', 'ratio')

_NEEDS_COLUMN = ('count_distinct', 'count_distinct_if', 'sum', 'sum_if', 'mean', 'min', 'max')
_NEEDS_WHERE = ('count_distinct_if', 'count_if', 'sum_if', 'rate')


# =============================================================================
# Helpers
# =============================================================================

def _to_float(values) -> pd.Series:
    series = values if isinstance(values, pd.Series) else pd.Series(values)
    return pd.to_numeric(series, errors='coerce').astype('float64')


def safe_divide(numerator, denominator):
    """
    Null-guarded division: a zero or null denominator gives NaN.

    Works on scalars or aligned Series.
    """
    if not isinstance(denominator, pd.Series) and not isinstance(numerator, pd.Series):
        if denominator is None or numerator is None or pd.isna(denominator) or pd.isna(numerator):
            return np.nan
        if denominator == 0:
            return np.nan
        return float(numerator) / float(denominator)

    if isinstance(denominator, pd.Series):
        den = _to_float(denominator)
        den = den.where(den != 0)
    else:
        den = np.nan if denominator is None or pd.isna(denominator) or denominator == 0 \
            else float(denominator)
    num = _to_float(numerator) if isinstance(numerator, pd.Series) else numerator
    result = num / den
    return result.astype('float64').replace([np.inf, -np.inf], np.nan)


def where_mask(frame: pd.DataFrame, where) -> pd.Series:
    """
    Evaluate a predicate over ``frame``.

    ``where`` is either the name of a boolean column (e.g. ``'is_bad'``),
    a Condition, or a list of condition specs combined with AND.
    """
    if where is None:
        return pd.Series(True, index=frame.index)
    if isinstance(where, str):
        if where not in frame.columns:
            raise ConfigurationError(f"Predicate column '{where}' not found")
        return frame[where].fillna(False).astype(bool)
    if isinstance(where, Condition):
        return where.mask(frame)
    mask = pd.Series(True, index=frame.index)
    for spec in where:
        mask &= Condition.from_spec(spec).mask(frame)
    return mask


# =============================================================================
# Metric definitions
# =============================================================================

class Metric:
    """
    One output column of an aggregation.

    Parameters
    ----------
    name : str
        Output column name.
    kind : str
        One of METRIC_KINDS.
    column : str, optional
        Input column for value metrics.
    where : str or list, optional
        Predicate for the conditional kinds (see ``where_mask``).
    scale : float
        Multiplier applied to the final value; 100 for ``_pct`` columns.
    numerator, denominator : str, optional
        Names of two other metrics, for ``kind='ratio'``.
    """

    def __init__(self, name: str,
                 kind: str,
                 column: Optional[str] = None,
                 where=None,
                 scale: float = 1.0,
                 numerator: Optional[str] = None,
                 denominator: Optional[str] = None):
        if kind not in METRIC_KINDS:
            raise ConfigurationError(f"Metric '{name}': unknown kind '{kind}'")
        if kind in _NEEDS_COLUMN and not column:
            raise ConfigurationError(f"Metric '{name}': kind '{kind}' needs a column")
        if kind in _NEEDS_WHERE and where is None:
            raise ConfigurationError(f"Metric '{name}': kind '{kind}' needs a predicate")
        if kind == 'ratio' and not (numerator and denominator):
            raise ConfigurationError(f"Metric '{name}': ratio needs numerator and denominator")
        self.name = name
        self.kind = kind
        self.column = column
        self.where = where
        self.scale = float(scale)
        self.numerator = numerator
        self.denominator = denominator

    def __repr__(self):
        return f"Metric({self.name!r}, {self.kind!r})"

    @property
    def input_columns(self) -> list:
        cols = [self.column] if self.column else []
        if isinstance(self.where, str):
            cols.append(self.where)
        elif self.where is not None and not isinstance(self.where, Condition):
            cols.extend(Condition.from_spec(c).column for c in self.where)
        elif isinstance(self.where, Condition):
            cols.append(self.where.column)
        return cols

    # ------------------------------------------------------------------
    # Constructors
    # ------------------------------------------------------------------

    @classmethod
    def count(cls, name):
        return cls(name, 'count')

    @classmethod
    def count_distinct(cls, name, column):
        return cls(name, 'count_distinct', column)

    @classmethod
    def count_distinct_if(cls, name, column, where):
        return cls(name, 'count_distinct_if', column, where=where)

    @classmethod
    def count_if(cls, name, where):
        return cls(name, 'count_if', where=where)

    @classmethod
    def sum(cls, name, column, scale=1.0):
        return cls(name, 'sum', column, scale=scale)

    @classmethod
    def sum_if(cls, name, column, where, scale=1.0):
        return cls(name, 'sum_if', column, where=where, scale=scale)

    @classmethod
    def mean(cls, name, column, scale=1.0):
        return cls(name, 'mean', column, scale=scale)

    @classmethod
    def min(cls, name, column):
        return cls(name, 'min', column)

    @classmethod
    def max(cls, name, column):
        return cls(name, 'max', column)

    @classmethod
    def rate(cls, name, where, scale=100.0):
        """Share of the group's rows satisfying ``where`` (x100 by default)."""
        return cls(name, 'rate', where=where, scale=scale)

    @classmethod
    def ratio(cls, name, numerator, denominator, scale=1.0):
        """numerator / denominator of two other metrics, null-guarded."""
        return cls(name, 'ratio', numerator=numerator, denominator=denominator, scale=scale)

    @classmethod
    def from_spec(cls, spec) -> 'Metric':
        if isinstance(spec, Metric):
            return spec
        spec = dict(spec)
        try:
            return cls(spec.pop('name'), spec.pop('kind'), **spec)
        except (KeyError, TypeError) as exc:
            raise ConfigurationError(f"Invalid metric definition {spec!r}: {exc}") from None


class Derived:
    """
    A column computed from other columns of the same frame, e.g.
    ``Derived('net_return', 'customer_payments - gross_principal_loss')``.

    Infinite results (division by zero) are returned as NaN.
    """

    def __init__(self, name: str, expr: str, scale: float = 1.0):
        self.name = name
        self.expr = expr
        self.scale = float(scale)

    def __repr__(self):
        return f"Derived({self.name!r}, {self.expr!r})"

    @classmethod
    def from_spec(cls, spec) -> 'Derived':
        if isinstance(spec, Derived):
            return spec
        if isinstance(spec, (list, tuple)):
            return cls(*spec)
        return cls(**dict(spec))

    def evaluate(self, frame: pd.DataFrame) -> pd.Series:
        with np.errstate(divide='ignore', invalid='ignore'):
            try:
                result = frame.eval(self.expr, engine='python')
            except (NameError, KeyError, SyntaxError) as exc:
                raise ConfigurationError(f"Cannot evaluate '{self.name}' = {self.expr}: {exc}") from None
        if not isinstance(result, pd.Series):
            result = pd.Series(result, index=frame.index)
        values = _to_float(result).replace([np.inf, -np.inf], np.nan)
        return values * self.scale


def apply_derived(frame: pd.DataFrame, derived: Sequence[Derived]) -> pd.DataFrame:
    """Evaluate derived columns in order; later ones may use earlier ones."""
    if not derived:
        return frame
    df = frame.copy()
    for d in derived:
        df[d.name] = d.evaluate(df)
    return df


# =============================================================================
# Partial aggregation
# =============================================================================

def _group_keys(frame: pd.DataFrame, keys: Sequence[str]):
    keys = list(keys)
    if not keys:
        frame = frame.assign(**{PORTFOLIO_KEY: 'ALL'})
        keys = [PORTFOLIO_KEY]
    missing = [k for k in keys if k not in frame.columns]
    if missing:
        raise ConfigurationError(f"Grouping keys not found: {missing}")
    return frame, keys


def partial_aggregate(frame: pd.DataFrame,
                      keys: Sequence[str],
                      metrics: Sequence[Metric]) -> pd.DataFrame:
    """
    Reduce ``frame`` to one state row per distinct key.

    Rows with a null key are excluded. With no keys the whole frame is one
    group, keyed by the constant column ``_portfolio``.
    """
    frame, keys = _group_keys(frame, keys)
    work = frame[keys].copy()
    for m in metrics:
        if m.kind in ('count', 'ratio'):
            continue
        if m.kind in ('rate', 'count_if'):
            work[f'__h_{m.name}'] = where_mask(frame, m.where).astype('int64')
            continue
        if m.column not in frame.columns:
            raise ConfigurationError(f"Metric '{m.name}': column '{m.column}' not found")
        values = frame[m.column]
        if m.kind in ('count_distinct', 'count_distinct_if'):
            values = values.astype('object').where(values.notna(), None)
        else:
            values = _to_float(values)
        if m.kind.endswith('_if'):
            values = values.where(where_mask(frame, m.where))
        work[f'__v_{m.name}'] = values

    grouped = work.groupby(keys, sort=True, dropna=True, observed=True)
    states = {'__n': grouped.size()}
    for m in metrics:
        if m.kind in ('count', 'ratio'):
            continue
        if m.kind in ('rate', 'count_if'):
            states[f'{m.name}__hits'] = grouped[f'__h_{m.name}'].sum()
            continue
        col = f'__v_{m.name}'
        if m.kind in ('count_distinct', 'count_distinct_if'):
            states[f'{m.name}__set'] = grouped[col].agg(lambda s: frozenset(s.dropna()))
            continue
        states[f'{m.name}__cnt'] = grouped[col].count()
        if m.kind in ('sum', 'sum_if', 'mean'):
            states[f'{m.name}__sum'] = grouped[col].sum()
        elif m.kind == 'min':
            states[f'{m.name}__min'] = grouped[col].min()
        elif m.kind == 'max':
            states[f'{m.name}__max'] = grouped[col].max()

    if grouped.ngroups == 0:
        return pd.DataFrame(columns=keys + list(states))
    partial = pd.DataFrame(states)
    partial.index.names = keys
    return partial.reset_index()


def _union(sets: pd.Series) -> frozenset:
    return frozenset().union(*sets)


def merge_partials(partials: Sequence[pd.DataFrame],
                   keys: Sequence[str]) -> pd.DataFrame:
    """Combine partial states; every merge operation is associative and commutative."""
    keys = list(keys) or [PORTFOLIO_KEY]
    partials = [p for p in partials if p is not None]
    if not partials:
        raise ValueError("No partial aggregates to merge")
    non_empty = [p for p in partials if len(p)]
    if not non_empty:
        return partials[0]
    combined = pd.concat(non_empty, ignore_index=True)
    agg = {}
    for col in combined.columns:
        if col in keys:
            continue
        if col.endswith('__min'):
            agg[col] = 'min'
        elif col.endswith('__max'):
            agg[col] = 'max'
        elif col.endswith('__set'):
            agg[col] = _union
        else:
            agg[col] = 'sum'
    merged = combined.groupby(keys, sort=True, dropna=True, observed=True).agg(agg)
    return merged.reset_index()


def finalize(partial: pd.DataFrame,
             keys: Sequence[str],
             metrics: Sequence[Metric]) -> pd.DataFrame:
    """Turn merged state into metric values, one row per group."""
    keys = list(keys)
    out = partial[keys].copy() if keys else pd.DataFrame(index=partial.index)
    n = partial['__n'].astype('int64')

    for m in metrics:
        if m.kind == 'count':
            out[m.name] = n
        elif m.kind in ('count_distinct', 'count_distinct_if'):
            out[m.name] = partial[f'{m.name}__set'].map(len).astype('int64')
        elif m.kind == 'count_if':
            out[m.name] = partial[f'{m.name}__hits'].astype('int64')
        elif m.kind == 'rate':
            out[m.name] = safe_divide(partial[f'{m.name}__hits'], n) * m.scale
        elif m.kind in ('sum', 'sum_if'):
            cnt = partial[f'{m.name}__cnt']
            out[m.name] = _to_float(partial[f'{m.name}__sum']).where(cnt > 0) * m.scale
        elif m.kind == 'mean':
            out[m.name] = safe_divide(partial[f'{m.name}__sum'], partial[f'{m.name}__cnt']) * m.scale
        elif m.kind in ('min', 'max'):
            cnt = partial[f'{m.name}__cnt']
            out[m.name] = _to_float(partial[f'{m.name}__{m.kind}']).where(cnt > 0)

    # ratios may refer to any metric above, including earlier ratios
    for m in metrics:
        if m.kind != 'ratio':
            continue
        for ref in (m.numerator, m.denominator):
            if ref not in out.columns:
                raise ConfigurationError(f"Ratio '{m.name}' refers to unknown metric '{ref}'")
        out[m.name] = safe_divide(out[m.numerator], out[m.denominator]) * m.scale

    return out.reset_index(drop=True)


# =============================================================================
# Entry points
# =============================================================================

def apply_having(frame: pd.DataFrame, having: Sequence) -> pd.DataFrame:
    """Minimum-count style filters applied to aggregated rows."""
    if not having:
        return frame
    mask = where_mask(frame, list(having))
    return frame[mask].reset_index(drop=True)


def aggregate(frame: pd.DataFrame,
              keys: Sequence[str],
              metrics: Sequence[Union[Metric, dict]],
              having: Sequence = ()) -> pd.DataFrame:
    """
    Group ``frame`` by ``keys`` and compute ``metrics`` per group.

    Parameters
    ----------
    frame : pd.DataFrame
        Prepared (and bucketed) records.
    keys : sequence of str
        Grouping columns; empty for a single portfolio-level row.
    metrics : sequence of Metric
        Output metrics, in output column order.
    having : sequence of condition specs
        Filters on the aggregated rows, e.g. ``[('loan_count', 'ge', 100)]``.

    Returns
    -------
    pd.DataFrame
        One row per non-null key, ordered by key.
    """
    metrics = [Metric.from_spec(m) for m in metrics]
    partial = partial_aggregate(frame, keys, metrics)
    result = finalize(partial, keys, metrics)
    return apply_having(result, having)


def _split(frame: pd.DataFrame, partitions: int) -> list:
    bounds = np.linspace(0, len(frame), partitions + 1).astype(int)
    return [frame.iloc[a:b] for a, b in zip(bounds[:-1], bounds[1:])]


def aggregate_partitioned(frame: pd.DataFrame,
                          keys: Sequence[str],
                          metrics: Sequence[Union[Metric, dict]],
                          partitions: int = 2,
                          max_workers: Optional[int] = None,
                          having: Sequence = ()) -> pd.DataFrame:
    """
    Same result as ``aggregate`` computed by mapping ``partial_aggregate``
    over row partitions on a thread pool and merging the partial states.
    """
    if partitions < 1:
        raise ConfigurationError(f"partitions must be >= 1, got {partitions}")
    metrics = [Metric.from_spec(m) for m in metrics]
    chunks = _split(frame, partitions)
    logger.debug(f"Aggregating {len(frame):,} rows in {len(chunks)} partitions")

    with ThreadPoolExecutor(max_workers=max_workers or partitions) as pool:
        partials = list(pool.map(lambda chunk: partial_aggregate(chunk, keys, metrics), chunks))

    merged = merge_partials(partials, keys)
    result = finalize(merged, keys, metrics)
    return apply_having(result, having)
