"""
Window/ranking engine: quantities that need every aggregated row at once.

All functions take the aggregated row set (post-HAVING) and return a new
Series aligned to it; none of them reorders the input. Ties in any ordering
are broken by the label columns ascending so results are reproducible.
"""

import logging
from typing import Optional, Sequence

import numpy as np
import pandas as pd

from portfolio_risk.exceptions import ConfigurationError

logger = logging.getLogger(__name__)

WINDOW_KINDS = ('share', 'cumulative_share', 'rank', 'row_number',
                'partition_mean', 'partition_sum')


def _check(frame: pd.DataFrame, columns) -> None:
    missing = [c for c in columns if c not in frame.columns]
    if missing:
        raise ConfigurationError(f"Window refers to unknown columns: {missing}")


def portfolio_share(frame: pd.DataFrame, column: str) -> pd.Series:
    """Each row's ``column`` as a percentage of the column total."""
    _check(frame, [column])
    values = pd.to_numeric(frame[column], errors='coerce').astype('float64')
    total = values.sum(min_count=1)
    if pd.isna(total) or total == 0:
        return pd.Series(np.nan, index=frame.index)
    return values / total * 100


def _ordered_index(frame: pd.DataFrame,
                   order_by: str,
                   ascending: bool,
                   tie_break: Sequence[str]) -> pd.Index:
    by = [order_by] + [c for c in tie_break if c != order_by]
    directions = [ascending] + [True] * (len(by) - 1)
    ordered = frame.sort_values(by=by, ascending=directions, kind='mergesort', na_position='last')
    return ordered.index


def cumulative_share(frame: pd.DataFrame,
                     share_column: str,
                     order_by: str,
                     ascending: bool = False,
                     tie_break: Sequence[str] = ()) -> pd.Series:
    """
    Running total of ``share_column`` along ``order_by``.

    Rows tied on ``order_by`` are taken in ascending ``tie_break`` order.
    For non-null shares that sum to 100 the last value is 100.
    """
    _check(frame, [share_column, order_by, *tie_break])
    index = _ordered_index(frame, order_by, ascending, tie_break)
    shares = pd.to_numeric(frame.loc[index, share_column], errors='coerce').astype('float64')
    running = shares.cumsum()
    return running.reindex(frame.index)


def competition_rank(frame: pd.DataFrame,
                     column: str,
                     ascending: bool = False) -> pd.Series:
    """
    Standard competition ranking ("1224"): tied rows share a rank and the
    next distinct value skips ahead. Null values get no rank.
    """
    _check(frame, [column])
    values = pd.to_numeric(frame[column], errors='coerce').astype('float64')
    return values.rank(method='min', ascending=ascending, na_option='keep').astype('Int64')


def row_number(frame: pd.DataFrame,
               column: str,
               ascending: bool = False,
               tie_break: Sequence[str] = ()) -> pd.Series:
    """Ordinal position 1..n along ``column``, ties broken by ``tie_break``."""
    _check(frame, [column, *tie_break])
    index = _ordered_index(frame, column, ascending, tie_break)
    numbers = pd.Series(np.arange(1, len(index) + 1), index=index, dtype='int64')
    return numbers.reindex(frame.index)


def partition_mean(frame: pd.DataFrame, column: str, partition_by: Sequence[str]) -> pd.Series:
    """Mean of ``column`` over the rows sharing the same partition key."""
    _check(frame, [column, *partition_by])
    values = pd.to_numeric(frame[column], errors='coerce').astype('float64')
    if not partition_by:
        return pd.Series(values.mean(), index=frame.index)
    keys = [frame[c] for c in partition_by]
    return values.groupby(keys, dropna=False).transform('mean')


def partition_sum(frame: pd.DataFrame, column: str, partition_by: Sequence[str]) -> pd.Series:
    _check(frame, [column, *partition_by])
    values = pd.to_numeric(frame[column], errors='coerce').astype('float64')
    if not partition_by:
        return pd.Series(values.sum(min_count=1), index=frame.index)
    keys = [frame[c] for c in partition_by]
    return values.groupby(keys, dropna=False).transform(lambda s: s.sum(min_count=1))


class Window:
    """
    A named window computation over aggregated rows.

    Parameters
    ----------
    name : str
        Output column.
    kind : str
        One of WINDOW_KINDS.
    column : str
        Input column (the metric for share/rank/partition kinds, the share
        column for cumulative_share).
    order_by : str, optional
        Ordering column for cumulative_share; defaults to ``column``.
    ascending : bool
        Direction of rank/row_number/cumulative ordering. Default descending.
    partition_by : sequence of str
        Partition keys for partition_mean/partition_sum.
    """

    def __init__(self, name: str,
                 kind: str,
                 column: str,
                 order_by: Optional[str] = None,
                 ascending: bool = False,
                 partition_by: Sequence[str] = ()):
        if kind not in WINDOW_KINDS:
            raise ConfigurationError(f"Window '{name}': unknown kind '{kind}'")
        if kind.startswith('partition_') and not partition_by:
            raise ConfigurationError(f"Window '{name}': '{kind}' needs partition_by")
        self.name = name
        self.kind = kind
        self.column = column
        self.order_by = order_by
        self.ascending = ascending
        self.partition_by = tuple(partition_by)

    def __repr__(self):
        return f"Window({self.name!r}, {self.kind!r}, {self.column!r})"

    @classmethod
    def from_spec(cls, spec) -> 'Window':
        if isinstance(spec, Window):
            return spec
        return cls(**dict(spec))

    def compute(self, frame: pd.DataFrame, tie_break: Sequence[str] = ()) -> pd.Series:
        if self.kind == 'share':
            return portfolio_share(frame, self.column)
        if self.kind == 'cumulative_share':
            return cumulative_share(frame, self.column, self.order_by or self.column,
                                    ascending=self.ascending, tie_break=tie_break)
        if self.kind == 'rank':
            return competition_rank(frame, self.column, ascending=self.ascending)
        if self.kind == 'row_number':
            return row_number(frame, self.column, ascending=self.ascending, tie_break=tie_break)
        if self.kind == 'partition_mean':
            return partition_mean(frame, self.column, self.partition_by)
        return partition_sum(frame, self.column, self.partition_by)


def apply_windows(frame: pd.DataFrame,
                  windows: Sequence[Window],
                  tie_break: Sequence[str] = ()) -> pd.DataFrame:
    """
    Add window columns in order; a later window may use an earlier one
    (e.g. cumulative share over a share column ordered by a row number).
    """
    if not windows:
        return frame
    df = frame.copy()
    for window in windows:
        df[window.name] = window.compute(df, tie_break=tie_break)
    return df
