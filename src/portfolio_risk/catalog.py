"""
The report catalog: 38 portfolio questions expressed as ReportSpecs.

Conventions shared by every report:

- column names are snake_case;
- percentages are x100 and end in ``_pct``, raw rates (borrower_rate,
  lender_yield, ...) keep the 0-1 scale of the input data;
- values are never rounded here, rounding is a display concern.

Reports are listed from the simplest (row listings) to the most involved
(composite scoring and the risk scorecard).
"""

import logging
from pathlib import Path
from typing import Dict, List, Union

import yaml

from portfolio_risk.aggregation import Derived, Metric
from portfolio_risk.exceptions import ConfigurationError
from portfolio_risk.reports import ReportSpec, Sort
from portfolio_risk.rules import (
    COMPOSITE_RISK_MODEL,
    CONCENTRATION_TIER,
    CREDIT_SCORE_CATEGORY,
    CREDIT_TIER,
    CURRENT_DELINQUENCY_BUCKET,
    DELINQUENCY_STATUS,
    DTI_CATEGORY,
    DTI_RANGE,
    DTI_SEGMENT,
    DTI_TIER,
    EMPLOYMENT_STABILITY,
    HISTORICAL_DELINQUENCY_BUCKET,
    HOUSING_STATUS,
    INCOME_CATEGORY,
    INVESTOR_CATEGORY,
    INVESTOR_RETURN_TIER,
    INVESTOR_TIER,
    LOAN_OUTCOME,
    PERFORMANCE_PROFILE,
    PTI_BUCKET,
    QUARTER_LABEL,
    RATING_ORDER,
    SCORECARD_INCOME_CATEGORY,
    SCORECARD_RISK_CATEGORY,
    STATE_RISK_CATEGORY,
    TERM_LABEL,
    UTILIZATION_BUCKET,
)
from portfolio_risk.windows import Window

logger = logging.getLogger(__name__)

# Frequently used metrics
DEFAULT_RATE = Metric.rate('default_rate_pct', 'is_bad')
DEFAULT_COUNT = Metric.count_if('default_count', 'is_bad')
AVG_INTEREST_RATE_PCT = Metric.mean('avg_interest_rate_pct', 'borrower_rate', scale=100)
AVG_CREDIT_SCORE_MID = Metric.mean('avg_credit_score', 'credit_score_mid')

BAD_OR_COMPLETED = ('status_group', 'in', ['completed', 'bad'])


def _share(name: str, column: str) -> Window:
    return Window(name, 'share', column)


# =============================================================================
# Row listings
# =============================================================================

POST_2009_PERFORMANCE = ReportSpec(
    'post_2009_performance',
    title='Loan Performance Tracking (Post-2009)',
    requires=['origination_date'],
    filters=[('origination_date', 'ge', '2009-12-31')],
    sort=['origination_date', 'loan_id'],
    columns=['loan_id', 'origination_date', 'original_amount', 'customer_payments',
             'estimated_return', 'estimated_loss'],
)

NET_RETURN_PER_LOAN = ReportSpec(
    'net_return_per_loan',
    title='Net Return per Loan',
    requires=['customer_payments', 'gross_principal_loss'],
    filters=[BAD_OR_COMPLETED],
    sort=['loan_number', 'loan_id'],
    columns=['loan_id', 'loan_number', 'original_amount', 'lender_yield', 'customer_payments',
             'gross_principal_loss', 'net_return'],
)

TIME_TO_DEFAULT = ReportSpec(
    'time_to_default',
    title='Time to Default',
    requires=['origination_date', 'closed_date'],
    filters=[('is_bad', 'eq', True), ('closed_date', 'notnull')],
    derived=[Derived('days_to_default', 'days_to_close')],
    sort=['loan_number', 'loan_id'],
    columns=['loan_id', 'loan_number', 'origination_date', 'closed_date', 'days_to_default', 'status'],
)


# =============================================================================
# Single-dimension summaries
# =============================================================================

STATUS_SUMMARY = ReportSpec(
    'status_summary',
    title='Loan Performance Summary by Status',
    dimensions=['status'],
    metrics=[
        Metric.count('total_loans'),
        Metric.count_distinct('unique_borrowers', 'borrower_id'),
        Metric.mean('avg_loan_amount', 'original_amount'),
        Metric.min('min_loan_amount', 'original_amount'),
        Metric.max('max_loan_amount', 'original_amount'),
        Metric.mean('avg_borrower_apr', 'borrower_apr'),
        Metric.mean('avg_monthly_payment', 'monthly_payment'),
    ],
    windows=[_share('portfolio_share_pct', 'total_loans')],
    sort=['-total_loans'],
)

DEFAULT_FACTORS_BY_STATUS = ReportSpec(
    'default_factors_by_status',
    title='Explanatory Factors by Loan Status',
    dimensions=['status'],
    metrics=[
        Metric.mean('avg_borrower_apr', 'borrower_apr'),
        Metric.mean('avg_dti', 'debt_to_income_ratio'),
        Metric.mean('avg_monthly_income', 'stated_monthly_income'),
        Metric.mean('avg_open_credit_lines', 'open_credit_lines'),
        Metric.count('total_loans'),
    ],
)

YEARLY_TREND = ReportSpec(
    'yearly_trend',
    title='Year-over-Year Origination Trend',
    requires=['origination_date'],
    filters=[('origination_date', 'notnull')],
    dimensions=['origination_year'],
    metrics=[
        Metric.count('loans_originated'),
        Metric.mean('avg_loan_amount', 'original_amount'),
        Metric.mean('avg_interest_rate', 'borrower_rate'),
        DEFAULT_RATE,
        Metric.mean('avg_investors_per_loan', 'investor_count'),
        Metric.sum('total_loan_volume', 'original_amount'),
        Metric.rate('current_loans_pct', 'is_current'),
    ],
    sort=['-origination_year'],
)

RATING_PERFORMANCE = ReportSpec(
    'rating_performance',
    title='Risk Rating vs. Realized Performance',
    requires=['prosper_rating'],
    filters=[('prosper_rating', 'notnull')],
    dimensions=['prosper_rating'],
    metrics=[
        Metric.count('total_loans'),
        Metric.mean('avg_borrower_apr', 'borrower_apr'),
        DEFAULT_RATE,
        Metric.mean('avg_lender_yield', 'lender_yield'),
    ],
    sort=[Sort('prosper_rating', order=RATING_ORDER)],
)

EXPECTED_VS_REALIZED_LOSS = ReportSpec(
    'expected_vs_realized_loss',
    title='Expected vs. Realized Loss by Rating',
    requires=['prosper_rating', 'estimated_loss', 'gross_principal_loss'],
    dimensions=['prosper_rating'],
    metrics=[
        Metric.count('total_loans'),
        Metric.mean('avg_estimated_loss_pct', 'estimated_loss', scale=100),
        Metric.mean('avg_realized_loss_pct', 'realized_loss_ratio', scale=100),
    ],
    post_derived=[Derived('loss_gap_pct', 'avg_realized_loss_pct - avg_estimated_loss_pct')],
    sort=[Sort('prosper_rating', order=RATING_ORDER)],
)

SOCIAL_INVESTMENT = ReportSpec(
    'social_investment',
    title='Social vs. Standard Investment',
    requires=['friends_investment_count'],
    dimensions=['friends_investment_count'],
    metrics=[
        Metric.count('total_loans'),
        Metric.mean('avg_borrower_apr', 'borrower_apr'),
        DEFAULT_RATE,
    ],
)

DTI_SEGMENT_DEFAULT = ReportSpec(
    'dti_segment_default',
    title='DTI Segmentation and Default Rate',
    requires=['debt_to_income_ratio'],
    dimensions=[DTI_SEGMENT],
    metrics=[
        Metric.count('total_loans'),
        Metric.mean('avg_borrower_apr', 'borrower_apr'),
        DEFAULT_RATE,
    ],
    sort=[Sort('dti_segment', order=DTI_SEGMENT.order)],
)

TERM_RATE_OPTIMIZATION = ReportSpec(
    'term_rate_optimization',
    title='Loan Term and Rate Optimization',
    requires=['term_months'],
    dimensions=['term_months'],
    metrics=[
        Metric.count('total_loans'),
        Metric.mean('avg_loan_amount', 'original_amount'),
        Metric.mean('avg_borrower_rate', 'borrower_rate'),
        Metric.mean('avg_borrower_apr', 'borrower_apr'),
        DEFAULT_RATE,
        Metric.rate('completion_rate_pct', 'is_completed'),
        Metric.mean('avg_monthly_payment', 'monthly_payment'),
        Metric.sum('total_monthly_payments', 'monthly_payment'),
        Metric.mean('avg_investors_per_loan', 'investor_count'),
    ],
)

HOMEOWNER_OCCUPATION_RISK = ReportSpec(
    'homeowner_occupation_risk',
    title='Homeownership and Occupation Risk Profiles',
    requires=['occupation', 'is_homeowner'],
    filters=[('occupation', 'notnull'), ('occupation', 'ne', 'Other')],
    dimensions=['is_homeowner', 'occupation'],
    metrics=[
        Metric.count('loan_count'),
        DEFAULT_RATE,
        Metric.mean('avg_loan_amount', 'original_amount'),
        Metric.mean('avg_interest_rate', 'borrower_rate'),
        Metric.mean('avg_credit_score', 'credit_score_lower'),
        Metric.mean('avg_dti', 'debt_to_income_ratio'),
    ],
    having=[('loan_count', 'ge', 100)],
    sort=['-default_rate_pct'],
)

INVESTOR_CONCENTRATION = ReportSpec(
    'investor_concentration',
    title='Investor Concentration and Diversification',
    requires=['investor_count'],
    dimensions=[INVESTOR_TIER],
    metrics=[
        Metric.count('loan_count'),
        Metric.mean('avg_loan_amount', 'original_amount'),
        Metric.mean('avg_percent_funded', 'percent_funded'),
        DEFAULT_RATE,
        Metric.mean('avg_borrower_rate', 'borrower_rate'),
        Metric.sum('total_loan_volume', 'original_amount'),
    ],
    windows=[_share('portfolio_share_pct', 'loan_count')],
    sort=['-loan_count'],
    columns=['investor_tier', 'loan_count', 'portfolio_share_pct', 'avg_loan_amount',
             'avg_percent_funded', 'default_rate_pct', 'avg_borrower_rate', 'total_loan_volume'],
)

PRINCIPAL_LOSS_RECOVERY = ReportSpec(
    'principal_loss_recovery',
    title='Principal Loss and Recovery Rate',
    requires=['gross_principal_loss', 'net_principal_loss', 'non_principal_recoveries'],
    filters=[('gross_principal_loss', 'notnull')],
    dimensions=[LOAN_OUTCOME],
    metrics=[
        Metric.count('loan_count'),
        Metric.sum('total_original_amount', 'original_amount'),
        Metric.mean('avg_gross_principal_loss', 'gross_principal_loss'),
        Metric.mean('avg_net_principal_loss', 'net_principal_loss'),
        Metric.sum('total_gross_loss', 'gross_principal_loss'),
        Metric.sum('total_net_loss', 'net_principal_loss'),
        Metric.mean('avg_recoveries', 'non_principal_recoveries'),
        Metric.ratio('recovery_rate_pct', 'avg_recoveries', 'avg_gross_principal_loss', scale=100),
        Metric.mean('avg_investors', 'investor_count'),
    ],
    sort=['-loan_count'],
)

RISK_RETURN_RATING_TERM = ReportSpec(
    'risk_return_rating_term',
    title='Risk-Return Ranking by Rating and Term',
    requires=['prosper_rating', 'term_months', 'lender_yield'],
    dimensions=['prosper_rating', 'term_months'],
    metrics=[
        Metric.count('total_loans'),
        Metric.mean('avg_lender_yield', 'lender_yield'),
        DEFAULT_RATE,
    ],
    post_derived=[Derived('risk_adjusted_return_pct', 'avg_lender_yield * 100 - default_rate_pct')],
    sort=['-risk_adjusted_return_pct'],
)


# =============================================================================
# Cohorts, borrowers and terms
# =============================================================================

REPEAT_BORROWER_BASIC = ReportSpec(
    'repeat_borrower_basic',
    title='Repeat Borrower Analysis',
    requires=['borrower_id'],
    filters=[('borrower_id', 'notnull')],
    pre_group={
        'keys': ['borrower_id'],
        'metrics': [Metric.count('total_loans'), Metric.count_if('bad_loans', 'is_bad')],
        'derived': [Derived('borrower_default_rate_pct', 'bad_loans * 100 / total_loans')],
    },
    dimensions=['total_loans'],
    metrics=[
        Metric.count('borrower_count'),
        Metric.mean('avg_default_rate_pct', 'borrower_default_rate_pct'),
    ],
)

COHORT_BY_YEAR = ReportSpec(
    'cohort_by_year',
    title='Cohort Analysis by Origination Year',
    requires=['origination_date'],
    dimensions=['origination_year'],
    metrics=[
        Metric.count('total_loans'),
        Metric.count_if('bad_loans', 'is_bad'),
        Metric.sum('total_gross_loss', 'gross_principal_loss'),
    ],
)

DTI_DELINQUENCY = ReportSpec(
    'dti_delinquency',
    title='DTI Buckets and Delinquency',
    requires=['debt_to_income_ratio'],
    filters=[('debt_to_income_ratio', 'notnull')],
    dimensions=[DTI_RANGE],
    metrics=[
        Metric.count('borrower_count'),
        Metric.mean('avg_days_delinquent', 'days_delinquent'),
        Metric.rate('delinquency_rate_pct', [('status_group', 'in', ['delinquent', 'bad'])]),
    ],
    sort=[Sort('dti_range', order=DTI_RANGE.order)],
)

VINTAGE_QUARTERLY = ReportSpec(
    'vintage_quarterly',
    title='Vintage Analysis by Quarter',
    requires=['origination_date'],
    filters=[('origination_date', 'notnull')],
    dimensions=['origination_year', 'origination_quarter'],
    metrics=[
        Metric.count('loans_issued'),
        Metric.mean('avg_prosper_score', 'prosper_score'),
        Metric.sum('quarterly_volume', 'original_amount'),
        Metric.mean('avg_ticket_size', 'original_amount'),
    ],
    sort=['-origination_year', '-origination_quarter'],
)

TERM_COMPARISON = ReportSpec(
    'term_comparison',
    title='Loan Term Comparison (36 vs 60 Months)',
    requires=['term_months', 'monthly_payment'],
    filters=[('term_months', 'in', [36, 60])],
    dimensions=['term_months'],
    metrics=[
        Metric.count('loan_count'),
        Metric.sum('total_volume', 'original_amount'),
        Metric.mean('avg_loan_amount', 'original_amount'),
        AVG_INTEREST_RATE_PCT,
        DEFAULT_COUNT,
        DEFAULT_RATE,
        Metric.mean('avg_dti', 'debt_to_income_ratio'),
        Metric.mean('avg_monthly_income', 'stated_monthly_income'),
        AVG_CREDIT_SCORE_MID,
        Metric.mean('avg_monthly_payment', 'monthly_payment'),
        Metric.ratio('months_to_payoff', 'avg_loan_amount', 'avg_monthly_payment'),
        Metric.ratio('payment_to_income_pct', 'avg_monthly_payment', 'avg_monthly_income', scale=100),
    ],
    post_buckets=[TERM_LABEL],
)

RISK_ADJUSTED_YIELD = ReportSpec(
    'risk_adjusted_yield',
    title="Risk-Adjusted Yield Matrix (Lender's Perspective)",
    requires=['prosper_rating', 'term_months', 'lender_yield', 'estimated_loss'],
    filters=[('prosper_rating', 'notnull'), ('term_months', 'eq', 36)],
    dimensions=['prosper_rating'],
    metrics=[
        Metric.count('total_loans'),
        Metric.mean('avg_borrower_apr_pct', 'borrower_apr', scale=100),
        Metric.mean('avg_lender_yield_pct', 'lender_yield', scale=100),
        Metric.mean('avg_estimated_loss_pct', 'estimated_loss', scale=100),
        Metric.sum('total_volume', 'original_amount'),
    ],
    post_derived=[Derived('net_estimated_return_pct', 'avg_lender_yield_pct - avg_estimated_loss_pct')],
    sort=['-net_estimated_return_pct'],
    columns=['prosper_rating', 'total_loans', 'avg_borrower_apr_pct', 'avg_lender_yield_pct',
             'avg_estimated_loss_pct', 'net_estimated_return_pct', 'total_volume'],
)

CREDIT_EMPLOYMENT_RISK = ReportSpec(
    'credit_employment_risk',
    title='Risk by Credit Score and Employment Status',
    requires=['credit_score_lower', 'employment_status'],
    filters=[('credit_score_lower', 'notnull'), ('employment_status', 'notnull')],
    dimensions=['credit_score_lower', 'employment_status'],
    metrics=[
        Metric.count('loan_count'),
        DEFAULT_RATE,
        Metric.mean('avg_interest_rate', 'borrower_rate'),
        Metric.mean('avg_loan_amount', 'original_amount'),
        Metric.mean('avg_dti', 'debt_to_income_ratio'),
        Metric.count_distinct_if('unique_defaulters', 'borrower_id', 'is_bad'),
    ],
    having=[('loan_count', 'ge', 50)],
    sort=['-credit_score_lower', '-default_rate_pct'],
)

REPEAT_BORROWER_BEHAVIOR = ReportSpec(
    'repeat_borrower_behavior',
    title='Repeat Borrower Behavior and Credit History',
    requires=['borrower_id'],
    filters=[('borrower_id', 'notnull')],
    pre_group={
        'keys': ['borrower_id'],
        'metrics': [
            Metric.count('total_loans'),
            Metric.sum('total_borrowed', 'original_amount'),
            Metric.mean('avg_borrow_rate', 'borrower_rate'),
            Metric.count_if('times_failed', 'is_bad'),
            Metric.mean('avg_credit_score', 'credit_score_lower'),
            Metric.mean('avg_dti', 'debt_to_income_ratio'),
        ],
    },
    dimensions=['total_loans'],
    metrics=[
        Metric.count('borrower_count'),
        Metric.mean('avg_total_borrowed', 'total_borrowed'),
        Metric.mean('avg_borrow_rate', 'avg_borrow_rate'),
        Metric.sum('failed_loans', 'times_failed'),
        Metric.sum('loans_taken', 'total_loans'),
        Metric.ratio('overall_default_rate_pct', 'failed_loans', 'loans_taken', scale=100),
        Metric.mean('avg_credit_score', 'avg_credit_score'),
        Metric.mean('avg_dti', 'avg_dti'),
    ],
    having=[('total_loans', 'le', 10)],
    sort=['-total_loans'],
    columns=['total_loans', 'borrower_count', 'avg_total_borrowed', 'avg_borrow_rate',
             'overall_default_rate_pct', 'avg_credit_score', 'avg_dti'],
)

MONTHLY_SEASONALITY = ReportSpec(
    'monthly_seasonality',
    title='Monthly Seasonality and Trend',
    requires=['origination_date'],
    filters=[('origination_date', 'notnull')],
    dimensions=['origination_year', 'origination_month', ('quarter', QUARTER_LABEL)],
    metrics=[
        Metric.count('loans_originated'),
        Metric.sum('total_volume', 'original_amount'),
        Metric.mean('avg_borrower_rate', 'borrower_rate'),
        DEFAULT_COUNT,
        Metric.rate('monthly_default_rate_pct', 'is_bad'),
        Metric.count_if('completed_count', 'is_completed'),
        Metric.count_if('current_count', 'is_current'),
    ],
    windows=[
        Window('yearly_avg_monthly_loans', 'partition_mean', 'loans_originated',
               partition_by=['origination_year']),
        Window('quarterly_avg_defaults', 'partition_mean', 'default_count', partition_by=['quarter']),
    ],
    sort=['-origination_year', '-origination_month'],
)

INVESTOR_TIER_RETURNS = ReportSpec(
    'investor_tier_returns',
    title='Investment Returns by Investor Tier',
    requires=['investor_count', 'lender_yield', 'customer_payments', 'interest_and_fees',
              'net_principal_loss'],
    filters=[('original_amount', 'notnull'), ('investor_count', 'notnull'), ('lender_yield', 'notnull')],
    dimensions=[INVESTOR_RETURN_TIER],
    metrics=[
        Metric.count('loan_count'),
        Metric.mean('avg_loan_size', 'original_amount'),
        Metric.mean('avg_months_active', 'months_active'),
        Metric.mean('avg_borrower_rate', 'borrower_rate'),
        Metric.mean('avg_lender_yield', 'lender_yield'),
        Metric.mean('avg_customer_payments', 'customer_payments'),
        Metric.mean('avg_interest_and_fees', 'interest_and_fees'),
        Metric.mean('avg_net_principal_loss', 'net_principal_loss'),
        Metric.ratio('avg_total_return_pct', 'avg_customer_payments', 'avg_loan_size', scale=100),
        Metric.ratio('avg_interest_return_pct', 'avg_interest_and_fees', 'avg_loan_size', scale=100),
        Metric.ratio('avg_loss_rate_pct', 'avg_net_principal_loss', 'avg_loan_size', scale=100),
        DEFAULT_RATE,
        Metric.rate('fully_funded_pct', [('percent_funded', 'ge', 1.0)]),
    ],
    sort=['-loan_count'],
    columns=['investor_return_tier', 'loan_count', 'avg_loan_size', 'avg_months_active',
             'avg_borrower_rate', 'avg_lender_yield', 'avg_total_return_pct',
             'avg_interest_return_pct', 'avg_loss_rate_pct', 'default_rate_pct', 'fully_funded_pct'],
)

STATE_CONCENTRATION = ReportSpec(
    'state_concentration',
    title='Geographic Concentration (State Level)',
    requires=['state'],
    filters=[('state', 'notnull')],
    dimensions=['state'],
    metrics=[
        Metric.count('state_loans'),
        Metric.sum('state_loan_volume', 'original_amount'),
        Metric.mean('avg_state_rate', 'borrower_rate'),
        Metric.rate('state_default_rate_pct', 'is_bad'),
    ],
    windows=[
        _share('volume_share_pct', 'state_loan_volume'),
        Window('state_rank', 'row_number', 'state_loans'),
        Window('cumulative_volume_pct', 'cumulative_share', 'volume_share_pct',
               order_by='state_rank', ascending=True),
    ],
    post_buckets=[CONCENTRATION_TIER],
    sort=['state_rank'],
    columns=['state_rank', 'state', 'state_loans', 'state_loan_volume', 'volume_share_pct',
             'cumulative_volume_pct', 'avg_state_rate', 'state_default_rate_pct', 'concentration_tier'],
)


# =============================================================================
# Multi-dimensional risk
# =============================================================================

CREDIT_UTILIZATION = ReportSpec(
    'credit_utilization',
    title='Credit Utilization',
    requires=['bankcard_utilization'],
    # utilization outside [0, 1] is dropped by the bucket's domain guard
    filters=[('bankcard_utilization', 'notnull')],
    dimensions=[UTILIZATION_BUCKET],
    metrics=[
        Metric.count('borrower_count'),
        AVG_INTEREST_RATE_PCT,
        AVG_CREDIT_SCORE_MID,
        DEFAULT_COUNT,
        DEFAULT_RATE,
        Metric.mean('avg_loan_amount', 'original_amount'),
        Metric.mean('avg_revolving_balance', 'revolving_credit_balance'),
        Metric.mean('avg_available_credit', 'available_bankcard_credit'),
    ],
    post_derived=[Derived('calculated_utilization_pct',
                          'avg_revolving_balance * 100 / (avg_revolving_balance + avg_available_credit)')],
    sort=[Sort('utilization_bucket', order=UTILIZATION_BUCKET.order)],
)

DELINQUENCY_HISTORY = ReportSpec(
    'delinquency_history',
    title='Delinquency History Impact',
    requires=['current_delinquencies', 'delinquencies_last_7y'],
    filters=[('current_delinquencies', 'notnull'), ('delinquencies_last_7y', 'notnull')],
    dimensions=[CURRENT_DELINQUENCY_BUCKET, HISTORICAL_DELINQUENCY_BUCKET],
    metrics=[
        Metric.count('loan_count'),
        AVG_INTEREST_RATE_PCT,
        DEFAULT_COUNT,
        DEFAULT_RATE,
        AVG_CREDIT_SCORE_MID,
        Metric.mean('avg_loan_amount', 'original_amount'),
    ],
    having=[('loan_count', 'ge', 5)],
    windows=[_share('portfolio_share_pct', 'loan_count')],
    sort=['-default_rate_pct'],
)

INVESTOR_PERFORMANCE = ReportSpec(
    'investor_performance',
    title='Investor Performance',
    requires=['investor_count', 'lender_yield', 'estimated_loss'],
    filters=[('investor_count', 'gt', 0)],
    dimensions=[INVESTOR_CATEGORY],
    metrics=[
        Metric.count('loan_count'),
        Metric.mean('avg_investors_per_loan', 'investor_count'),
        Metric.mean('avg_loan_amount', 'original_amount'),
        AVG_INTEREST_RATE_PCT,
        Metric.mean('avg_lender_yield_pct', 'lender_yield', scale=100),
        DEFAULT_COUNT,
        Metric.rate('actual_default_rate_pct', 'is_bad'),
        Metric.mean('avg_estimated_yield_pct', 'estimated_effective_yield', scale=100),
        Metric.mean('avg_estimated_loss_pct', 'estimated_loss', scale=100),
        Metric.mean('avg_estimated_return_pct', 'estimated_return', scale=100),
    ],
    post_derived=[Derived('net_expected_return_pct', 'avg_lender_yield_pct - avg_estimated_loss_pct')],
    sort=['-loan_count'],
)

PORTFOLIO_STRESS_TEST = ReportSpec(
    'portfolio_stress_test',
    title='Portfolio Stress Test',
    requires=['monthly_payment'],
    derived=[
        Derived('loss_exposure', 'original_amount * is_bad'),
        Derived('adjusted_monthly_payment', 'monthly_payment * (1 - is_bad) * (1.0 - 0.5 * is_past_due)'),
    ],
    metrics=[
        Metric.count('total_loans'),
        Metric.sum('total_volume', 'original_amount'),
        Metric.mean('avg_rate', 'borrower_rate'),
        DEFAULT_RATE,
        Metric.sum('actual_losses', 'loss_exposure'),
        Metric.sum('adjusted_monthly_payments', 'adjusted_monthly_payment'),
    ],
    post_derived=[Derived('loss_rate_pct', 'actual_losses * 100 / total_volume')],
    scenarios='portfolio_stress',
    columns=['scenario_name', 'total_loans', 'total_volume', 'avg_rate', 'default_rate_pct',
             'actual_losses', 'adjusted_monthly_payments', 'loss_rate_pct'],
)

GEOGRAPHIC_RISK = ReportSpec(
    'geographic_risk',
    title='Geographic Risk',
    requires=['state'],
    filters=[('state', 'notnull'), ('state', 'ne', '')],
    dimensions=['state'],
    metrics=[
        Metric.count('total_loans'),
        Metric.sum('total_volume', 'original_amount'),
        AVG_INTEREST_RATE_PCT,
        DEFAULT_COUNT,
        DEFAULT_RATE,
        AVG_CREDIT_SCORE_MID,
        Metric.mean('avg_dti', 'debt_to_income_ratio'),
        Metric.mean('avg_monthly_income', 'stated_monthly_income'),
    ],
    having=[('total_loans', 'ge', 5)],
    windows=[
        Window('default_rate_rank', 'rank', 'default_rate_pct'),
        Window('volume_rank', 'rank', 'total_volume'),
        Window('interest_rate_rank', 'rank', 'avg_interest_rate_pct'),
    ],
    post_buckets=[STATE_RISK_CATEGORY],
    sort=['-default_rate_pct'],
)

BORROWER_CHARACTERISTICS = ReportSpec(
    'borrower_characteristics',
    title='Borrower Characteristics',
    requires=['income_range', 'is_homeowner', 'employment_status'],
    filters=[('income_range', 'notnull'), ('income_range', 'ne', 'Not displayed')],
    dimensions=[INCOME_CATEGORY, 'is_homeowner', 'employment_status'],
    metrics=[
        Metric.count('borrower_count'),
        AVG_CREDIT_SCORE_MID,
        Metric.mean('avg_dti', 'debt_to_income_ratio'),
        Metric.mean('avg_loan_size', 'original_amount'),
        DEFAULT_RATE,
        AVG_INTEREST_RATE_PCT,
        Metric.mean('avg_monthly_income', 'stated_monthly_income'),
    ],
    windows=[_share('portfolio_share_pct', 'borrower_count')],
    sort=[Sort('income_category', order=INCOME_CATEGORY.order),
          Sort('is_homeowner', ascending=False),
          '-borrower_count'],
)

PAYMENT_TO_INCOME = ReportSpec(
    'payment_to_income',
    title='Monthly Payment to Income',
    requires=['monthly_payment', 'stated_monthly_income'],
    filters=[('monthly_payment', 'gt', 0), ('stated_monthly_income', 'notnull'),
             ('payment_to_income_pct', 'notnull')],
    dimensions=[PTI_BUCKET],
    metrics=[
        Metric.count('loan_count'),
        Metric.mean('avg_pti_pct', 'payment_to_income_pct'),
        AVG_INTEREST_RATE_PCT,
        Metric.mean('avg_loan_amount', 'original_amount'),
        Metric.mean('avg_monthly_income', 'stated_monthly_income'),
        DEFAULT_COUNT,
        DEFAULT_RATE,
        Metric.mean('avg_term_months', 'term_months'),
    ],
    windows=[_share('portfolio_share_pct', 'loan_count')],
    sort=[Sort('pti_bucket', order=PTI_BUCKET.order)],
)

OCCUPATION_RISK = ReportSpec(
    'occupation_risk',
    title='Occupational Risk Segmentation',
    requires=['occupation', 'employment_status'],
    filters=[('occupation', 'notnull'), ('occupation', 'ne', 'Other'), ('employment_status', 'notnull')],
    dimensions=['occupation', 'employment_status'],
    metrics=[
        Metric.count('occupation_loans'),
        Metric.count_distinct('unique_workers', 'borrower_id'),
        Metric.mean('avg_monthly_income', 'stated_monthly_income'),
        Metric.mean('avg_loan_amount', 'original_amount'),
        Metric.mean('avg_employment_months', 'employment_duration_months'),
        Metric.mean('avg_borrower_rate', 'borrower_rate'),
        DEFAULT_COUNT,
        DEFAULT_RATE,
        Metric.count_if('completed_count', 'is_completed'),
        Metric.mean('avg_dti', 'debt_to_income_ratio'),
        Metric.mean('avg_credit_score', 'credit_score_lower'),
    ],
    having=[('occupation_loans', 'ge', 100)],
    post_derived=[Derived('loan_to_annual_income_pct',
                          'avg_loan_amount * 100 / (avg_monthly_income * 12)')],
    windows=[Window('risk_rank', 'row_number', 'default_count')],
    sort=['-default_count'],
)

DEFAULT_PROPENSITY = ReportSpec(
    'default_propensity',
    title='Default Propensity (Multi-Factor Segmentation)',
    requires=['credit_score_lower', 'debt_to_income_ratio', 'current_delinquencies', 'term_months'],
    filters=[('credit_score_lower', 'notnull'), ('debt_to_income_ratio', 'notnull'),
             ('current_delinquencies', 'notnull')],
    dimensions=[CREDIT_TIER, DTI_TIER, DELINQUENCY_STATUS, 'term_months'],
    metrics=[
        Metric.count('segment_loans'),
        Metric.count_if('segment_defaults', 'is_bad'),
        Metric.rate('default_probability_pct', 'is_bad'),
        Metric.count_if('segment_completed', 'is_completed'),
        Metric.count_if('segment_current', 'is_current'),
    ],
    portfolio_metrics=[Metric.rate('portfolio_default_rate_pct', 'is_bad')],
    post_derived=[
        Derived('performance_rate_pct', '(segment_completed + segment_current) * 100 / segment_loans'),
        Derived('variance_from_portfolio_avg_pct', 'default_probability_pct - portfolio_default_rate_pct'),
    ],
    sort=['-default_probability_pct'],
    columns=['credit_tier', 'dti_tier', 'delinquency_status', 'term_months', 'segment_loans',
             'segment_defaults', 'default_probability_pct', 'segment_completed', 'segment_current',
             'performance_rate_pct', 'variance_from_portfolio_avg_pct'],
)

BORROWER_MIGRATION = ReportSpec(
    'borrower_migration',
    title='Borrower Migration and Performance Progression',
    requires=['borrower_id'],
    filters=[('borrower_id', 'notnull')],
    pre_group={
        'keys': ['borrower_id'],
        'metrics': [
            Metric.count_distinct('total_loans', 'loan_id'),
            Metric.count_if('current_loans', 'is_current'),
            Metric.count_if('completed_loans', 'is_completed'),
            Metric.count_if('defaulted_loans', 'is_bad'),
            Metric.count_if('past_due_loans', 'is_past_due'),
            Metric.rate('default_rate_pct', 'is_bad'),
            Metric.min('lowest_credit_score', 'credit_score_lower'),
            Metric.max('highest_credit_score', 'credit_score_lower'),
            Metric.mean('avg_borrow_rate', 'borrower_rate'),
            Metric.mean('avg_loan_size', 'original_amount'),
        ],
        'derived': [
            Derived('open_loans', 'current_loans + past_due_loans'),
            Derived('unfinished_loans', 'total_loans - completed_loans - current_loans'),
        ],
    },
    dimensions=[PERFORMANCE_PROFILE],
    metrics=[
        Metric.count('borrower_count'),
        Metric.mean('avg_loans_per_borrower', 'total_loans'),
        Metric.mean('avg_default_rate_pct', 'default_rate_pct'),
        Metric.mean('avg_lowest_credit_score', 'lowest_credit_score'),
        Metric.mean('avg_highest_credit_score', 'highest_credit_score'),
        Metric.mean('avg_borrow_rate', 'avg_borrow_rate'),
        Metric.sum('total_loans_in_profile', 'total_loans'),
        Metric.mean('avg_loan_size', 'avg_loan_size'),
    ],
    sort=['-borrower_count'],
)


# =============================================================================
# Composite scoring
# =============================================================================

COMPOSITE_RISK_SCORE = ReportSpec(
    'composite_risk_score',
    title='Composite Borrower Risk Score',
    requires=['credit_score_lower', 'debt_to_income_ratio', 'current_delinquencies',
              'public_records_last_10y', 'employment_status'],
    filters=[('credit_score_lower', 'notnull'), ('debt_to_income_ratio', 'notnull')],
    scoring=COMPOSITE_RISK_MODEL,
    dimensions=['risk_category'],
    metrics=[
        Metric.count('loan_count'),
        Metric.mean('avg_risk_score', 'composite_score'),
        Metric.mean('avg_risk_score_pct', 'risk_score_pct'),
        Metric.rate('actual_default_rate_pct', 'is_bad'),
        Metric.mean('avg_rate_charged', 'borrower_rate'),
        Metric.mean('avg_loan_amount', 'original_amount'),
        Metric.count_distinct('unique_borrowers', 'borrower_id'),
    ],
    sort=[Sort('risk_category', order=COMPOSITE_RISK_MODEL.labels)],
)

RISK_SCORECARD = ReportSpec(
    'risk_scorecard',
    title='Comprehensive Risk Scorecard',
    requires=['credit_score_lower', 'credit_score_upper', 'debt_to_income_ratio',
              'employment_duration_months', 'income_range'],
    filters=[('credit_score_lower', 'notnull'), ('debt_to_income_ratio', 'notnull'),
             ('employment_duration_months', 'notnull'), ('income_range', 'notnull'),
             ('income_range', 'ne', 'Not displayed')],
    dimensions=[('risk_category', SCORECARD_RISK_CATEGORY), CREDIT_SCORE_CATEGORY, DTI_CATEGORY,
                EMPLOYMENT_STABILITY, ('income_category', SCORECARD_INCOME_CATEGORY), HOUSING_STATUS],
    metrics=[
        Metric.count('loan_count'),
        AVG_INTEREST_RATE_PCT,
        Metric.mean('avg_loan_amount', 'original_amount'),
        DEFAULT_COUNT,
        DEFAULT_RATE,
    ],
    having=[('loan_count', 'ge', 5)],
    windows=[
        _share('portfolio_share_pct', 'loan_count'),
        Window('risk_rank', 'rank', 'default_rate_pct'),
    ],
    sort=[Sort('risk_category', order=SCORECARD_RISK_CATEGORY.order), '-default_rate_pct'],
)


# =============================================================================
# Registry
# =============================================================================

CATALOG: Dict[str, ReportSpec] = {spec.name: spec for spec in [
    POST_2009_PERFORMANCE,
    NET_RETURN_PER_LOAN,
    TIME_TO_DEFAULT,
    STATUS_SUMMARY,
    DEFAULT_FACTORS_BY_STATUS,
    YEARLY_TREND,
    RATING_PERFORMANCE,
    EXPECTED_VS_REALIZED_LOSS,
    SOCIAL_INVESTMENT,
    DTI_SEGMENT_DEFAULT,
    TERM_RATE_OPTIMIZATION,
    HOMEOWNER_OCCUPATION_RISK,
    INVESTOR_CONCENTRATION,
    PRINCIPAL_LOSS_RECOVERY,
    RISK_RETURN_RATING_TERM,
    REPEAT_BORROWER_BASIC,
    COHORT_BY_YEAR,
    DTI_DELINQUENCY,
    VINTAGE_QUARTERLY,
    TERM_COMPARISON,
    RISK_ADJUSTED_YIELD,
    CREDIT_EMPLOYMENT_RISK,
    REPEAT_BORROWER_BEHAVIOR,
    MONTHLY_SEASONALITY,
    INVESTOR_TIER_RETURNS,
    STATE_CONCENTRATION,
    CREDIT_UTILIZATION,
    DELINQUENCY_HISTORY,
    INVESTOR_PERFORMANCE,
    PORTFOLIO_STRESS_TEST,
    GEOGRAPHIC_RISK,
    BORROWER_CHARACTERISTICS,
    PAYMENT_TO_INCOME,
    OCCUPATION_RISK,
    DEFAULT_PROPENSITY,
    BORROWER_MIGRATION,
    COMPOSITE_RISK_SCORE,
    RISK_SCORECARD,
]}


def list_reports() -> List[str]:
    return list(CATALOG)


def get_report(name: str) -> ReportSpec:
    try:
        return CATALOG[name]
    except KeyError:
        raise ConfigurationError(f"Unknown report '{name}'") from None


def load_report_specs(path: Union[str, Path]) -> Dict[str, ReportSpec]:
    """
    Load extra report definitions from YAML.

    The file holds a ``reports`` list; each entry uses the ReportSpec field
    names, with rules and scoring models referenced by name, e.g.::

        reports:
          - name: default_by_credit_tier
            dimensions: [{rule: credit_tier}]
            metrics:
              - {name: loan_count, kind: count}
              - {name: default_rate_pct, kind: rate, where: is_bad, scale: 100}
    """
    with open(path) as f:
        data = yaml.safe_load(f) or {}
    entries = data.get('reports') if isinstance(data, dict) else None
    if not isinstance(entries, list):
        raise ConfigurationError(f"{path}: expected a top-level 'reports' list")
    specs = {}
    for entry in entries:
        spec = ReportSpec.from_dict(entry)
        if spec.name in specs:
            raise ConfigurationError(f"{path}: duplicate report '{spec.name}'")
        specs[spec.name] = spec
    logger.info(f"Loaded {len(specs)} report definitions from {path}")
    return specs
