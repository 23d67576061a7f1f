"""
Bucketing engine: map records (or aggregated rows) to discrete labels.

A rule is an ordered list of (predicate, label) cases evaluated top-down;
the first case that matches wins. Records whose required inputs are null
get the rule's ``null_label``, which is None (excluded from grouping)
unless the rule defines an explicit catch-all such as 'Unknown'.

Classes:
    Condition — one column comparison, null never matches
    Case — a label and the conditions that must all hold for it
    BucketRule — ordered first-match-wins rule
    ConjunctionRule — BucketRule over conditions on several columns
    RangeRule — half-open intervals over one numeric column
"""

import logging
from typing import Iterable, Mapping, Optional, Sequence

import numpy as np
import pandas as pd

from portfolio_risk.exceptions import ConfigurationError

logger = logging.getLogger(__name__)


OPERATORS = ('eq', 'ne', 'lt', 'le', 'gt', 'ge', 'in', 'not_in', 'between',
             'notnull', 'isnull', 'startswith')

_SYMBOLS = {'==': 'eq', '!=': 'ne', '<': 'lt', '<=': 'le', '>': 'gt', '>=': 'ge'}


def _as_bool(mask: pd.Series) -> pd.Series:
    """Collapse a nullable comparison result: null means 'no match'."""
    return mask.fillna(False).astype(bool)


def _coerce_value(series: pd.Series, value):
    if pd.api.types.is_datetime64_any_dtype(series) and value is not None:
        return pd.Timestamp(value)
    return value


class Condition:
    """
    A single predicate ``column <op> value``.

    Comparisons follow SQL semantics: a null input never satisfies any
    operator except ``isnull``, so ``ne`` and ``not_in`` exclude nulls too.
    """

    def __init__(self, column: str, op: str = 'eq', value=None):
        op = _SYMBOLS.get(op, op)
        if op not in OPERATORS:
            raise ConfigurationError(f"Unknown operator '{op}' for column '{column}'")
        if op in ('in', 'not_in'):
            if isinstance(value, (str, bytes)) or not isinstance(value, Iterable):
                raise ConfigurationError(f"Operator '{op}' needs a list of values")
            value = tuple(value)
        if op == 'between' and (not isinstance(value, (list, tuple)) or len(value) != 2):
            raise ConfigurationError("Operator 'between' needs [low, high]")
        self.column = column
        self.op = op
        self.value = value

    def __repr__(self):
        return f"Condition({self.column!r}, {self.op!r}, {self.value!r})"

    @classmethod
    def from_spec(cls, spec) -> 'Condition':
        """Accept [column, op, value], [column, op] or {'column': .., 'op': .., 'value': ..}."""
        if isinstance(spec, Condition):
            return spec
        if isinstance(spec, Mapping):
            return cls(spec['column'], spec.get('op', 'eq'), spec.get('value'))
        spec = list(spec)
        if len(spec) == 2:
            return cls(spec[0], spec[1])
        if len(spec) == 3:
            return cls(*spec)
        raise ConfigurationError(f"Cannot parse condition {spec!r}")

    def mask(self, frame: pd.DataFrame) -> pd.Series:
        if self.column not in frame.columns:
            raise ConfigurationError(f"Condition refers to unknown column '{self.column}'")
        column = frame[self.column]
        value = _coerce_value(column, self.value)
        present = _as_bool(column.notna())

        if self.op == 'isnull':
            return ~present
        if self.op == 'notnull':
            return present

        # compare only present values so object columns never meet None
        series = column[present]
        if self.op == 'eq':
            result = series == value
        elif self.op == 'ne':
            result = series != value
        elif self.op == 'lt':
            result = series < value
        elif self.op == 'le':
            result = series <= value
        elif self.op == 'gt':
            result = series > value
        elif self.op == 'ge':
            result = series >= value
        elif self.op == 'in':
            result = series.isin(value)
        elif self.op == 'not_in':
            result = ~series.isin(value)
        elif self.op == 'between':
            low, high = (_coerce_value(series, v) for v in value)
            result = (series >= low) & (series <= high)
        else:
            result = series.astype('string').str.startswith(str(value))
        out = pd.Series(False, index=frame.index)
        out[present] = _as_bool(result).to_numpy()
        return out

    def matches(self, record: Mapping) -> bool:
        frame = pd.DataFrame([{self.column: record.get(self.column)}])
        return bool(self.mask(frame).iloc[0])


class Case:
    """A label together with the conditions (ANDed) that select it."""

    def __init__(self, label, when: Sequence = ()):
        self.label = label
        self.when = tuple(Condition.from_spec(c) for c in when)

    def __repr__(self):
        return f"Case({self.label!r}, when={list(self.when)!r})"

    def mask(self, frame: pd.DataFrame) -> pd.Series:
        result = pd.Series(True, index=frame.index)
        for condition in self.when:
            result &= condition.mask(frame)
        return result


class BucketRule:
    """
    Ordered first-match-wins classification rule.

    Parameters
    ----------
    name : str
        Rule name; also the default output column name.
    cases : sequence of Case
        Evaluated in order, the first matching case labels the row.
    default : optional
        Label for rows that match no case (SQL ``ELSE``). None excludes them.
    requires : sequence of str
        Input columns that must be non-null; rows missing any get null_label.
    null_label : optional
        Label for rows with missing required inputs. None excludes them.
    order : sequence, optional
        Display/sort order of the labels. Defaults to case order.
    """

    def __init__(self, name: str,
                 cases: Sequence[Case],
                 default=None,
                 requires: Sequence[str] = (),
                 null_label=None,
                 order: Optional[Sequence] = None):
        if not cases and default is None:
            raise ConfigurationError(f"Rule '{name}' has no cases and no default")
        self.name = name
        self.cases = tuple(cases)
        self.default = default
        self.requires = tuple(requires)
        self.null_label = null_label
        self._order = tuple(order) if order is not None else None

    def __repr__(self):
        return f"{type(self).__name__}({self.name!r})"

    @property
    def labels(self) -> list:
        """Every label the rule can produce, in evaluation order."""
        labels = []
        for label in [c.label for c in self.cases] + [self.default, self.null_label]:
            if label is not None and label not in labels:
                labels.append(label)
        return labels

    @property
    def order(self) -> list:
        return list(self._order) if self._order is not None else self.labels

    def assign(self, frame: pd.DataFrame) -> pd.Series:
        """Label every row of ``frame``; unlabelled rows are None."""
        missing = [c for c in self.requires if c not in frame.columns]
        if missing:
            raise ConfigurationError(f"Rule '{self.name}' needs columns {missing}")

        labels = pd.Series([None] * len(frame), index=frame.index, dtype='object')
        available = pd.Series(True, index=frame.index)
        for col in self.requires:
            available &= frame[col].notna()

        remaining = available.copy()
        for case in self.cases:
            hit = remaining & case.mask(frame)
            labels[hit] = case.label
            remaining &= ~hit
        if self.default is not None:
            labels[remaining] = self.default
        if self.null_label is not None:
            labels[~available] = self.null_label
        return labels

    def label_for(self, record: Mapping):
        """Label a single record given as a mapping."""
        columns = set(self.requires)
        for case in self.cases:
            columns.update(c.column for c in case.when)
        frame = pd.DataFrame([{c: record.get(c) for c in sorted(columns)}])
        for col in frame.columns:
            frame[col] = frame[col].infer_objects()
        return self.assign(frame).iloc[0]


class ConjunctionRule(BucketRule):
    """
    Combined rule: each label is selected by a logical AND of raw thresholds
    across several columns, evaluated top-down, first match wins.
    """

    @classmethod
    def from_spec(cls, name: str, cases: Sequence, default=None, **kwargs) -> 'ConjunctionRule':
        """cases: [(label, [[column, op, value], ...]), ...]"""
        return cls(name, [Case(label, when) for label, when in cases], default=default, **kwargs)


class RangeRule(BucketRule):
    """
    Half-open intervals over one numeric column.

    ``edges`` must be strictly increasing and ``labels`` one longer than
    ``edges``. With ``closed='left'`` the intervals are
    ``(-inf, e0), [e0, e1), ..., [en, inf)``; with ``closed='right'`` they are
    ``(-inf, e0], (e0, e1], ..., (en, inf)``. ``lower``/``upper`` are an
    inclusive domain guard: values outside them get no label.
    """

    def __init__(self, name: str,
                 column: str,
                 edges: Sequence[float],
                 labels: Sequence,
                 closed: str = 'left',
                 lower: Optional[float] = None,
                 upper: Optional[float] = None,
                 null_label=None,
                 order: Optional[Sequence] = None):
        edges = [float(e) for e in edges]
        if closed not in ('left', 'right'):
            raise ConfigurationError(f"Rule '{name}': closed must be 'left' or 'right'")
        if any(b <= a for a, b in zip(edges, edges[1:])):
            raise ConfigurationError(f"Rule '{name}': edges must be strictly increasing, got {edges}")
        if len(labels) != len(edges) + 1:
            raise ConfigurationError(
                f"Rule '{name}': {len(edges)} edges need {len(edges) + 1} labels, got {len(labels)}")
        if lower is not None and upper is not None and lower > upper:
            raise ConfigurationError(f"Rule '{name}': domain lower bound exceeds upper bound")

        self.column = column
        self.edges = tuple(edges)
        self.closed = closed
        self.lower = lower
        self.upper = upper

        cases = []
        for i, label in enumerate(labels):
            when = []
            upper_op = 'lt' if closed == 'left' else 'le'
            lower_op = 'ge' if closed == 'left' else 'gt'
            if i > 0:
                when.append(Condition(column, lower_op, edges[i - 1]))
            if i < len(edges):
                when.append(Condition(column, upper_op, edges[i]))
            cases.append(Case(label, when))
        super().__init__(name, cases, requires=(column,), null_label=null_label, order=order)

    def intervals(self) -> list:
        """(label, low, high, low_inclusive, high_inclusive) for each interval."""
        bounds = [-np.inf] + list(self.edges) + [np.inf]
        out = []
        for i, case in enumerate(self.cases):
            low, high = bounds[i], bounds[i + 1]
            if self.closed == 'left':
                out.append((case.label, low, high, np.isfinite(low), False))
            else:
                out.append((case.label, low, high, False, np.isfinite(high)))
        return out

    def interval_of(self, value: float):
        """Label of a single value, None when null or outside the domain."""
        if value is None or pd.isna(value):
            return self.null_label
        if (self.lower is not None and value < self.lower) or \
                (self.upper is not None and value > self.upper):
            return None
        position = np.searchsorted(self.edges, value,
                                   side='right' if self.closed == 'left' else 'left')
        return self.cases[int(position)].label

    def assign(self, frame: pd.DataFrame) -> pd.Series:
        labels = super().assign(frame)
        values = frame[self.column]
        outside = pd.Series(False, index=frame.index)
        if self.lower is not None:
            outside |= _as_bool(values < self.lower)
        if self.upper is not None:
            outside |= _as_bool(values > self.upper)
        if outside.any():
            logger.warning(f"Rule '{self.name}': {int(outside.sum()):,} rows outside "
                           f"[{self.lower}, {self.upper}] excluded")
            labels[outside] = None
        return labels


# =============================================================================
# Multi-dimension helpers
# =============================================================================

def assign_buckets(frame: pd.DataFrame,
                   rules: Sequence[BucketRule],
                   drop_unlabelled: bool = False) -> pd.DataFrame:
    """
    Add one label column per rule (named after the rule).

    Dimensions are independent; with ``drop_unlabelled`` rows left without
    a label on any dimension are removed.
    """
    df = frame.copy()
    for rule in rules:
        df[rule.name] = rule.assign(frame)
    if drop_unlabelled and rules:
        keep = df[[r.name for r in rules]].notna().all(axis=1)
        dropped = int((~keep).sum())
        if dropped:
            logger.debug(f"{dropped:,} rows excluded by missing bucket inputs")
        df = df[keep]
    return df


def bucket_record(record: Mapping, rules: Sequence[BucketRule]) -> tuple:
    """Label tuple for a single record, one entry per rule."""
    return tuple(rule.label_for(record) for rule in rules)
