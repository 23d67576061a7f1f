"""
Declarative report definitions and the one pipeline that runs them.

A report is data (a ReportSpec); ``run_report`` interprets it in a fixed
order:

    require -> filter -> derive -> score -> pre-group -> bucket ->
    aggregate -> having -> portfolio parameters -> post-derive ->
    windows -> post-buckets -> scenarios -> sort -> project columns

A spec without metrics is a row listing: it stops after scoring and goes
straight to sort and projection.
"""

import logging
from typing import Dict, Iterable, List, Mapping, Optional, Sequence

import numpy as np
import pandas as pd

from portfolio_risk.aggregation import (
    Derived,
    Metric,
    aggregate,
    aggregate_partitioned,
    apply_derived,
)
from portfolio_risk.bucketing import BucketRule, Condition
from portfolio_risk.config import AnalyticsConfig, load_config
from portfolio_risk.exceptions import ConfigurationError, MissingColumnsError
from portfolio_risk.records import RecordStore
from portfolio_risk.rules import get_model, get_rule
from portfolio_risk.scenarios import project_scenarios
from portfolio_risk.scoring import CompositeModel
from portfolio_risk.windows import Window, apply_windows

logger = logging.getLogger(__name__)


# =============================================================================
# Spec building blocks
# =============================================================================

class Sort:
    """
    One sort key. ``order`` gives an explicit label order (labels not in it
    sort last); otherwise values sort naturally.
    """

    def __init__(self, column: str, ascending: bool = True, order: Optional[Sequence] = None):
        self.column = column
        self.ascending = ascending
        self.order = list(order) if order is not None else None

    def __repr__(self):
        return f"Sort({self.column!r}, ascending={self.ascending})"

    @classmethod
    def from_spec(cls, spec) -> 'Sort':
        """'col' ascending, '-col' descending, or {'column', 'ascending', 'order'}."""
        if isinstance(spec, Sort):
            return spec
        if isinstance(spec, str):
            if spec.startswith('-'):
                return cls(spec[1:], ascending=False)
            return cls(spec)
        return cls(**dict(spec))


class Stage:
    """A first aggregation level, e.g. per borrower before grouping borrowers."""

    def __init__(self, keys: Sequence[str],
                 metrics: Sequence[Metric],
                 having: Sequence = (),
                 derived: Sequence[Derived] = ()):
        if not keys:
            raise ConfigurationError("A pre-group stage needs at least one key")
        self.keys = list(keys)
        self.metrics = [Metric.from_spec(m) for m in metrics]
        self.having = [Condition.from_spec(c) for c in having]
        self.derived = [Derived.from_spec(d) for d in derived]

    @classmethod
    def from_spec(cls, spec) -> 'Stage':
        if isinstance(spec, Stage):
            return spec
        spec = dict(spec)
        return cls(spec['keys'], spec.get('metrics', ()), spec.get('having', ()),
                   spec.get('derived', ()))

    def run(self, frame: pd.DataFrame) -> pd.DataFrame:
        rows = aggregate(frame, self.keys, self.metrics, having=self.having)
        return apply_derived(rows, self.derived)


def _dimension(entry):
    """Normalise a dimension to (output column, rule or None)."""
    if isinstance(entry, BucketRule):
        return entry.name, entry
    if isinstance(entry, str):
        return entry, None
    if isinstance(entry, (tuple, list)) and len(entry) == 2:
        column, rule = entry
        if isinstance(rule, str):
            rule = get_rule(rule)
        return column, rule
    if isinstance(entry, Mapping):
        if 'rule' in entry:
            rule = get_rule(entry['rule']) if isinstance(entry['rule'], str) else entry['rule']
            return entry.get('as', rule.name), rule
        if 'column' in entry:
            return entry['column'], None
    raise ConfigurationError(f"Cannot parse dimension {entry!r}")


class ReportSpec:
    """
    Declarative definition of one report.

    Parameters
    ----------
    name : str
        Catalog key.
    title : str
        Display title.
    requires : sequence of str
        Source columns the report cannot run without.
    filters : sequence of condition specs
        Record-level filters (SQL WHERE), ANDed.
    derived : sequence of Derived
        Record-level computed columns.
    scoring : CompositeModel, optional
        Adds factor, score and category columns to each record.
    pre_group : Stage, optional
        First aggregation level; its rows feed the main grouping.
    dimensions : sequence
        Grouping keys: column names, BucketRules, or (column, rule) pairs.
    metrics : sequence of Metric
        Aggregated output columns. Empty for a listing report.
    having : sequence of condition specs
        Filters on aggregated rows.
    portfolio_metrics : sequence of Metric
        Computed once over the whole portfolio and added to every row as
        constants, for comparisons such as variance from the portfolio
        average.
    post_derived : sequence of Derived
        Computed columns over aggregated rows.
    windows : sequence of Window
        Shares, ranks, cumulative and partitioned quantities.
    post_buckets : sequence of BucketRule
        Rules applied to aggregated rows (e.g. tier from a rank).
    scenarios : str, optional
        Name of a configured scenario set to project the single row with.
    sort : sequence
        Sort keys; the dimension columns ascending always break ties.
    columns : sequence of str, optional
        Output columns in order. Defaults to every computed column.
    """

    def __init__(self, name: str,
                 title: str = '',
                 requires: Sequence[str] = (),
                 filters: Sequence = (),
                 derived: Sequence = (),
                 scoring: Optional[CompositeModel] = None,
                 pre_group: Optional[Stage] = None,
                 dimensions: Sequence = (),
                 metrics: Sequence = (),
                 having: Sequence = (),
                 portfolio_metrics: Sequence = (),
                 post_derived: Sequence = (),
                 windows: Sequence = (),
                 post_buckets: Sequence = (),
                 scenarios: Optional[str] = None,
                 sort: Sequence = (),
                 columns: Optional[Sequence[str]] = None):
        if not name:
            raise ConfigurationError("Report needs a name")
        self.name = name
        self.title = title or name.replace('_', ' ').title()
        self.requires = list(requires)
        self.filters = [Condition.from_spec(c) for c in filters]
        self.derived = [Derived.from_spec(d) for d in derived]
        self.scoring = scoring
        self.pre_group = Stage.from_spec(pre_group) if pre_group is not None else None
        self.dimensions = [_dimension(d) for d in dimensions]
        self.metrics = [Metric.from_spec(m) for m in metrics]
        self.having = [Condition.from_spec(c) for c in having]
        self.portfolio_metrics = [Metric.from_spec(m) for m in portfolio_metrics]
        self.post_derived = [Derived.from_spec(d) for d in post_derived]
        self.windows = [Window.from_spec(w) for w in windows]
        self.post_buckets = [get_rule(r) if isinstance(r, str) else r for r in post_buckets]
        self.scenarios = scenarios
        self.sort = [Sort.from_spec(s) for s in sort]
        self.columns = list(columns) if columns is not None else None
        self._validate()

    def __repr__(self):
        return f"ReportSpec({self.name!r})"

    @property
    def is_listing(self) -> bool:
        return not self.metrics

    @property
    def keys(self) -> list:
        return [column for column, _ in self.dimensions]

    def _validate(self) -> None:
        names = [m.name for m in self.metrics] + [m.name for m in self.portfolio_metrics]
        duplicates = sorted({n for n in names if names.count(n) > 1})
        if duplicates:
            raise ConfigurationError(f"Report '{self.name}': duplicate metric names {duplicates}")
        if self.is_listing and (self.dimensions or self.pre_group or self.windows or self.having):
            raise ConfigurationError(f"Report '{self.name}': grouping needs at least one metric")
        if self.scenarios and self.dimensions:
            raise ConfigurationError(
                f"Report '{self.name}': scenarios project a single portfolio row, drop the dimensions")

    @classmethod
    def from_dict(cls, data: Mapping) -> 'ReportSpec':
        """Build a spec from plain data (e.g. parsed YAML); rules and models are looked up by name."""
        data = dict(data)
        scoring = data.pop('scoring', None)
        if isinstance(scoring, str):
            scoring = get_model(scoring)
        unknown = sorted(set(data) - set(_SPEC_FIELDS))
        if unknown:
            raise ConfigurationError(f"Report '{data.get('name')}': unknown fields {unknown}")
        return cls(scoring=scoring, **data)


_SPEC_FIELDS = ('name', 'title', 'requires', 'filters', 'derived', 'pre_group', 'dimensions',
                'metrics', 'having', 'portfolio_metrics', 'post_derived', 'windows',
                'post_buckets', 'scenarios', 'sort', 'columns')


# =============================================================================
# Pipeline
# =============================================================================

def as_store(source, config: Optional[AnalyticsConfig] = None) -> RecordStore:
    """Wrap a DataFrame or an iterable of records in a RecordStore."""
    if isinstance(source, RecordStore):
        return source
    config = config or load_config()
    kwargs = dict(max_rows=config.engine.max_rows, as_of_date=config.engine.as_of_date)
    if isinstance(source, pd.DataFrame):
        return RecordStore(source, **kwargs)
    return RecordStore.from_records(source, **kwargs)


def apply_filters(frame: pd.DataFrame, filters: Sequence[Condition]) -> pd.DataFrame:
    if not filters:
        return frame
    mask = pd.Series(True, index=frame.index)
    for condition in filters:
        mask &= condition.mask(frame)
    logger.debug(f"Filters kept {int(mask.sum()):,} of {len(frame):,} rows")
    return frame[mask]


def bucket_dimensions(frame: pd.DataFrame, dimensions: Sequence) -> pd.DataFrame:
    df = frame.copy()
    for column, rule in dimensions:
        if rule is not None:
            df[column] = rule.assign(frame)
        elif column not in df.columns:
            raise ConfigurationError(f"Dimension column '{column}' not found")
    return df


def sort_rows(frame: pd.DataFrame,
              sorts: Sequence[Sort],
              tie_break: Sequence[str] = ()) -> pd.DataFrame:
    """Stable sort by ``sorts`` then ``tie_break`` ascending."""
    by, ascending, helpers = [], [], []
    df = frame.copy()
    for i, s in enumerate(sorts):
        if s.column not in df.columns:
            raise ConfigurationError(f"Sort column '{s.column}' not found")
        if s.order is not None:
            helper = f'__sort_{i}'
            ranks = {label: position for position, label in enumerate(s.order)}
            df[helper] = df[s.column].map(ranks).fillna(len(ranks)).astype('int64')
            by.append(helper)
            helpers.append(helper)
        else:
            by.append(s.column)
        ascending.append(s.ascending)
    for column in tie_break:
        if column not in by and column in df.columns:
            by.append(column)
            ascending.append(True)
    if by:
        df = df.sort_values(by=by, ascending=ascending, kind='mergesort', na_position='last')
    return df.drop(columns=helpers).reset_index(drop=True)


def _aggregate(frame, keys, metrics, having, config: AnalyticsConfig) -> pd.DataFrame:
    partitions = config.engine.partitions
    if partitions > 1 and len(frame) >= partitions:
        return aggregate_partitioned(frame, keys, metrics, partitions=partitions, having=having)
    return aggregate(frame, keys, metrics, having=having)


def _portfolio_parameters(store: RecordStore, metrics: Sequence[Metric]) -> Dict[str, float]:
    if not metrics:
        return {}
    base = aggregate(store.frame, [], metrics)
    if base.empty:
        return {m.name: np.nan for m in metrics}
    return {m.name: base[m.name].iloc[0] for m in metrics}


def run_report(source,
               spec: ReportSpec,
               config: Optional[AnalyticsConfig] = None,
               verbose: bool = False) -> pd.DataFrame:
    """
    Run one report over a record source.

    Parameters
    ----------
    source : RecordStore, pd.DataFrame or iterable of LoanRecord
    spec : ReportSpec
    config : AnalyticsConfig, optional
        Defaults to ``load_config()``.
    verbose : bool
        Print the formatted table (default: False).

    Returns
    -------
    pd.DataFrame
        Output rows in report order with exactly the report's columns.

    Raises
    ------
    MissingColumnsError
        If the source lacks a column listed in ``spec.requires``.
    """
    config = config or load_config()
    store = as_store(source, config)

    missing = [c for c in spec.requires if c not in store.source_columns]
    if missing:
        raise MissingColumnsError(missing, context=f"report '{spec.name}'")

    df = apply_filters(store.frame, spec.filters)
    df = apply_derived(df, spec.derived)
    if spec.scoring is not None:
        df = spec.scoring.score(df)

    keys = spec.keys
    if spec.is_listing:
        result = df
    else:
        if spec.pre_group is not None:
            df = spec.pre_group.run(df)
        df = bucket_dimensions(df, spec.dimensions)
        result = _aggregate(df, keys, spec.metrics, spec.having, config)

        for name, value in _portfolio_parameters(store, spec.portfolio_metrics).items():
            result[name] = value
        result = apply_derived(result, spec.post_derived)
        result = apply_windows(result, spec.windows, tie_break=keys)
        for rule in spec.post_buckets:
            result[rule.name] = rule.assign(result)
        if spec.scenarios:
            if len(result) != 1:
                logger.warning(f"Report '{spec.name}': no baseline row, scenarios skipped")
                result = result.iloc[0:0].copy()
                result.insert(0, 'scenario_name', pd.Series(dtype=object))
            else:
                result = project_scenarios(result, config.scenario_set(spec.scenarios),
                                           derived=spec.post_derived)

    result = sort_rows(result, spec.sort, tie_break=keys)

    if spec.columns is not None:
        missing = [c for c in spec.columns if c not in result.columns]
        if missing:
            raise ConfigurationError(f"Report '{spec.name}' selects unknown columns {missing}")
        result = result[spec.columns]

    logger.info(f"{spec.name}: {len(result):,} rows")
    if verbose:
        print_report(result, spec.title)
    return result


def run_catalog(source,
                names: Optional[Iterable[str]] = None,
                config: Optional[AnalyticsConfig] = None,
                catalog: Optional[Mapping[str, ReportSpec]] = None,
                verbose: bool = False) -> Dict[str, pd.DataFrame]:
    """
    Run several reports over one store. Missing columns and the row ceiling
    abort the whole batch.
    """
    if catalog is None:
        from portfolio_risk.catalog import CATALOG
        catalog = CATALOG
    config = config or load_config()
    store = as_store(source, config)
    names = list(names) if names is not None else list(catalog)

    unknown = [n for n in names if n not in catalog]
    if unknown:
        raise ConfigurationError(f"Unknown reports: {unknown}")

    results = {}
    for name in names:
        results[name] = run_report(store, catalog[name], config=config, verbose=verbose)
    return results


# =============================================================================
# Output
# =============================================================================

def _plain(value):
    if value is None:
        return None
    if isinstance(value, pd.Timestamp):
        return None if pd.isna(value) else value.date().isoformat()
    if isinstance(value, (float, np.floating)) and np.isnan(value):
        return None
    if value is pd.NA or value is pd.NaT:
        return None
    if isinstance(value, np.generic):
        return value.item()
    return value


def to_rows(frame: pd.DataFrame) -> List[dict]:
    """Flat ``column -> scalar`` mappings; every missing value becomes None."""
    return [{column: _plain(value) for column, value in record.items()}
            for record in frame.to_dict(orient='records')]


def format_report(frame: pd.DataFrame) -> pd.DataFrame:
    """Display copy: ``_pct`` columns as '12.34%', other floats to two decimals."""
    out = frame.copy()
    for col in out.columns:
        series = out[col]
        if col.endswith('_pct'):
            out[col] = series.map(lambda x: '' if pd.isna(x) else f"{x:.2f}%")
        elif pd.api.types.is_float_dtype(series):
            out[col] = series.map(lambda x: '' if pd.isna(x) else f"{x:,.2f}")
    return out


def print_report(frame: pd.DataFrame, title: str) -> None:
    print(f"\n{'=' * 120}")
    print(title.upper())
    print(f"{'=' * 120}")
    if frame.empty:
        print("(no rows)")
    else:
        print(format_report(frame).to_string(index=False))
    print(f"{'=' * 120}\n")
