"""
Composite scoring engine.

A composite model is an equal-weight linear sum of factor rules: each
factor is a bucketing rule whose labels are integer weights. The summed
score is mapped to a risk category through contiguous threshold bands.
Band coverage is checked when the model is built, so a model that leaves
a score unmapped can never be used.

Functions:
    score_records — add factor, score and category columns to records
    validate_scores — realized default rate per risk category
    score_outcome_correlation — Spearman correlation of score vs. default
"""

import logging
from typing import Optional, Sequence

import numpy as np
import pandas as pd
from scipy import stats

from portfolio_risk.aggregation import Metric, aggregate
from portfolio_risk.bucketing import BucketRule, RangeRule
from portfolio_risk.exceptions import ConfigurationError

logger = logging.getLogger(__name__)


class RiskBand:
    """Inclusive integer score range ``[low, high]``; ``high=None`` runs to the maximum score."""

    def __init__(self, label: str, low: int, high: Optional[int] = None):
        self.label = label
        self.low = int(low)
        self.high = None if high is None else int(high)

    def __repr__(self):
        return f"RiskBand({self.label!r}, {self.low}, {self.high})"


class CompositeModel:
    """
    Parameters
    ----------
    name : str
    factors : sequence of BucketRule
        Rules whose labels are non-negative integer weights.
    bands : sequence of RiskBand
        Ordered from lowest to highest score.
    score_column, category_column : str
        Output column names.

    Raises
    ------
    ConfigurationError
        If a factor label is not a non-negative integer, or the bands are
        not contiguous, overlap, or fail to cover ``0..max_score``.
    """

    def __init__(self, name: str,
                 factors: Sequence[BucketRule],
                 bands: Sequence[RiskBand],
                 score_column: str = 'composite_score',
                 category_column: str = 'risk_category',
                 pct_column: str = 'risk_score_pct'):
        if not factors:
            raise ConfigurationError(f"Model '{name}' has no factors")
        self.name = name
        self.factors = tuple(factors)
        self.score_column = score_column
        self.category_column = category_column
        self.pct_column = pct_column

        for factor in self.factors:
            for weight in factor.labels:
                if isinstance(weight, bool) or not isinstance(weight, (int, np.integer)) or weight < 0:
                    raise ConfigurationError(
                        f"Model '{name}': factor '{factor.name}' has non-integer weight {weight!r}")

        self.max_score = sum(max(f.labels) for f in self.factors)
        self.bands = self._validate_bands(list(bands))
        self.category_rule = RangeRule(
            category_column, score_column,
            edges=[band.high for band in self.bands[:-1]],
            labels=[band.label for band in self.bands],
            closed='right',
            lower=0, upper=self.max_score,
        )

    def __repr__(self):
        return f"CompositeModel({self.name!r}, max_score={self.max_score})"

    def _validate_bands(self, bands: list) -> list:
        if not bands:
            raise ConfigurationError(f"Model '{self.name}' has no risk bands")
        if bands[0].low != 0:
            raise ConfigurationError(f"Model '{self.name}': first band must start at 0, not {bands[0].low}")

        resolved = []
        for i, band in enumerate(bands):
            high = band.high
            if high is None:
                if i != len(bands) - 1:
                    raise ConfigurationError(f"Model '{self.name}': only the last band may be open-ended")
                high = self.max_score
            if high < band.low:
                raise ConfigurationError(f"Model '{self.name}': band '{band.label}' is empty")
            if i > 0:
                previous = resolved[-1]
                if band.low <= previous.high:
                    raise ConfigurationError(
                        f"Model '{self.name}': bands '{previous.label}' and '{band.label}' overlap")
                if band.low != previous.high + 1:
                    raise ConfigurationError(
                        f"Model '{self.name}': gap between '{previous.label}' and '{band.label}'")
            resolved.append(RiskBand(band.label, band.low, high))

        if resolved[-1].high != self.max_score:
            raise ConfigurationError(
                f"Model '{self.name}': bands end at {resolved[-1].high} but scores reach {self.max_score}")
        return resolved

    @property
    def labels(self) -> list:
        return [band.label for band in self.bands]

    def category_of(self, score: int) -> Optional[str]:
        return self.category_rule.interval_of(score)

    @property
    def input_columns(self) -> list:
        cols = []
        for factor in self.factors:
            for col in factor.requires:
                if col not in cols:
                    cols.append(col)
        return cols

    def score(self, frame: pd.DataFrame) -> pd.DataFrame:
        """
        Add one weight column per factor plus the score, score percentage
        and category. Records missing any factor input get a null score and
        category and so drop out of any grouping by category.
        """
        df = frame.copy()
        weights = []
        for factor in self.factors:
            df[factor.name] = pd.to_numeric(factor.assign(frame), errors='coerce').astype('Float64')
            weights.append(factor.name)

        total = df[weights].sum(axis=1, min_count=len(weights))
        complete = df[weights].notna().all(axis=1)
        df[self.score_column] = total.where(complete).astype('Int64')
        df[self.pct_column] = (df[self.score_column].astype('float64') / self.max_score * 100)
        df[self.category_column] = self.category_rule.assign(df)

        unscored = int((~complete).sum())
        if unscored:
            logger.debug(f"Model '{self.name}': {unscored:,} records lack factor inputs")
        return df


def score_records(frame: pd.DataFrame, model: CompositeModel) -> pd.DataFrame:
    return model.score(frame)


def validate_scores(scored: pd.DataFrame,
                    model: CompositeModel,
                    outcome: str = 'is_bad') -> pd.DataFrame:
    """
    Realized outcome per risk category, in band order.

    Answers whether the rule-based score tracks actual defaults: the
    default rate should rise from the lowest to the highest band.
    """
    result = aggregate(scored, [model.category_column], [
        Metric.count('loan_count'),
        Metric.mean('avg_score', model.score_column),
        Metric.rate('default_rate_pct', outcome),
    ])
    order = {label: i for i, label in enumerate(model.labels)}
    result['_order'] = result[model.category_column].map(order)
    return result.sort_values('_order').drop(columns='_order').reset_index(drop=True)


def score_outcome_correlation(scored: pd.DataFrame,
                              model: CompositeModel,
                              outcome: str = 'is_bad') -> float:
    """Spearman rank correlation between score and outcome; NaN when undefined."""
    data = scored[[model.score_column, outcome]].dropna()
    if len(data) < 3:
        return np.nan
    x = data[model.score_column].astype('float64')
    y = data[outcome].astype('float64')
    if x.nunique() < 2 or y.nunique() < 2:
        return np.nan
    rho, _ = stats.spearmanr(x, y)
    return float(rho)
