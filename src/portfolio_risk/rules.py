"""
Named classification rules used by the report catalog.

Every rule here is data: boundaries, labels and inequality direction. The
direction matters at the edges, e.g. ``credit_tier`` puts a score of exactly
680 in '680-719 (Near-Prime)' while ``dti_range`` puts a DTI of exactly 0.40
in '21-40% (Mid)'.
"""

from portfolio_risk.bucketing import BucketRule, Case, ConjunctionRule, RangeRule
from portfolio_risk.exceptions import ConfigurationError
from portfolio_risk.scoring import CompositeModel, RiskBand


# =============================================================================
# Credit
# =============================================================================

CREDIT_TIER = RangeRule(
    'credit_tier', 'credit_score_lower',
    edges=[640, 680, 720],
    labels=['Below 640 (Deep Sub)', '640-679 (Subprime)', '680-719 (Near-Prime)', '720+ (Prime)'],
    closed='left',
)

CREDIT_SCORE_CATEGORY = RangeRule(
    'credit_score_category', 'credit_score_mid',
    edges=[640, 680, 720],
    labels=['Poor (<640)', 'Fair (640-679)', 'Good (680-719)', 'Excellent (720+)'],
    closed='left',
)

UTILIZATION_BUCKET = RangeRule(
    'utilization_bucket', 'bankcard_utilization',
    edges=[0.10, 0.30, 0.50, 0.70, 0.90],
    labels=['0-10%', '11-30%', '31-50%', '51-70%', '71-90%', '91-100%'],
    closed='right',
    lower=0.0, upper=1.0,
)


# =============================================================================
# Debt to income
# =============================================================================

DTI_SEGMENT = RangeRule(
    'dti_segment', 'debt_to_income_ratio',
    edges=[0.20, 0.35],
    labels=['Low DTI (< 20%)', 'Mid DTI (20-35%)', 'High DTI (> 35%)'],
    closed='left',
)

DTI_RANGE = RangeRule(
    'dti_range', 'debt_to_income_ratio',
    edges=[0.20, 0.40, 0.60],
    labels=['0-20% (Low)', '21-40% (Mid)', '41-60% (High)', '60%+ (Critical)'],
    closed='right',
)

DTI_TIER = RangeRule(
    'dti_tier', 'debt_to_income_ratio',
    edges=[0.30, 0.50],
    labels=['Low DTI', 'Mid DTI', 'High DTI'],
    closed='left',
)

DTI_CATEGORY = RangeRule(
    'dti_category', 'debt_to_income_ratio',
    edges=[0.20, 0.40],
    labels=['Low DTI (<=20%)', 'Medium DTI (21-40%)', 'High DTI (>40%)'],
    closed='right',
)

PTI_BUCKET = RangeRule(
    'pti_bucket', 'payment_to_income_pct',
    edges=[15, 25, 35, 45],
    labels=['Very Low (<=15%)', 'Low (16-25%)', 'Moderate (26-35%)', 'High (36-45%)', 'Very High (>45%)'],
    closed='right',
    null_label='No Income',
)


# =============================================================================
# Delinquency
# =============================================================================

CURRENT_DELINQUENCY_BUCKET = RangeRule(
    'current_delinquency_bucket', 'current_delinquencies',
    edges=[0, 2, 5],
    labels=['0 Delinquencies', '1-2 Delinquencies', '3-5 Delinquencies', '6+ Delinquencies'],
    closed='right',
    lower=0,
)

HISTORICAL_DELINQUENCY_BUCKET = RangeRule(
    'historical_delinquency_bucket', 'delinquencies_last_7y',
    edges=[0, 5, 10],
    labels=['0 Past Delinquencies', '1-5 Past Delinquencies',
            '6-10 Past Delinquencies', '11+ Past Delinquencies'],
    closed='right',
    lower=0,
)

DELINQUENCY_STATUS = RangeRule(
    'delinquency_status', 'current_delinquencies',
    edges=[0],
    labels=['Clean', 'Delinquent'],
    closed='right',
    lower=0,
)


# =============================================================================
# Investors
# =============================================================================

# zero-investor listings fall outside the tiers
INVESTOR_TIER = RangeRule(
    'investor_tier', 'investor_count',
    edges=[1, 10, 50, 100, 500],
    labels=['1 Investor', '2-10 Investors', '11-50 Investors', '51-100 Investors',
            '101-500 Investors', '500+ Investors'],
    closed='right',
    lower=1,
)

INVESTOR_RETURN_TIER = RangeRule(
    'investor_return_tier', 'investor_count',
    edges=[50, 100, 200, 500],
    labels=['<50 Investors', '50-99 Investors', '100-199 Investors',
            '200-499 Investors', '500+ Investors'],
    closed='left',
)

INVESTOR_CATEGORY = RangeRule(
    'investor_category', 'investor_count',
    edges=[10, 50, 100, 200],
    labels=['1-10 Investors', '11-50 Investors', '51-100 Investors',
            '101-200 Investors', '200+ Investors'],
    closed='right',
    lower=1,
)


# =============================================================================
# Borrower profile
# =============================================================================

EMPLOYMENT_STABILITY = RangeRule(
    'employment_stability', 'employment_duration_months',
    edges=[12, 24, 60],
    labels=['Limited (<1 yr)', 'Some Stability (1-2 yrs)', 'Stable (2-5 yrs)', 'Very Stable (5+ yrs)'],
    closed='left',
)

INCOME_CATEGORY = BucketRule(
    'income_category',
    [
        Case('No Income', [('income_range', 'in', ['Not employed', '$0'])]),
        Case('Low Income', [('income_range', 'eq', '$1-24,999')]),
        Case('Lower Middle', [('income_range', 'eq', '$25,000-49,999')]),
        Case('Middle Income', [('income_range', 'eq', '$50,000-74,999')]),
        Case('Upper Middle', [('income_range', 'eq', '$75,000-99,999')]),
        Case('High Income', [('income_range', 'eq', '$100,000+')]),
    ],
    default='Not Displayed',
    requires=['income_range'],
    order=['High Income', 'Upper Middle', 'Middle Income', 'Lower Middle',
           'Low Income', 'No Income', 'Not Displayed'],
)

SCORECARD_INCOME_CATEGORY = BucketRule(
    'scorecard_income_category',
    [
        Case('High Income', [('income_range', 'eq', '$100,000+')]),
        Case('Middle Income', [('income_range', 'in', ['$75,000-99,999', '$50,000-74,999'])]),
        Case('Lower Middle', [('income_range', 'eq', '$25,000-49,999')]),
        Case('Low Income', [('income_range', 'eq', '$1-24,999')]),
    ],
    default='No/Minimal Income',
    requires=['income_range'],
)

HOUSING_STATUS = BucketRule(
    'housing_status',
    [Case('Homeowner', [('is_homeowner', 'eq', True)])],
    default='Renter',
)


# =============================================================================
# Loan and outcome
# =============================================================================

TERM_LABEL = BucketRule(
    'term_label',
    [
        Case('Medium Term', [('term_months', 'eq', 36)]),
        Case('Long Term', [('term_months', 'eq', 60)]),
    ],
    requires=['term_months'],
)

LOAN_OUTCOME = BucketRule(
    'loan_outcome',
    [
        Case('Completed', [('status_group', 'eq', 'completed')]),
        Case('Current', [('status_group', 'eq', 'performing')]),
        Case('Defaulted / Charged-Off', [('status_group', 'eq', 'bad')]),
    ],
    default='Other',
)

QUARTER_LABEL = RangeRule(
    'quarter_label', 'origination_month',
    edges=[3, 6, 9],
    labels=['Q1', 'Q2', 'Q3', 'Q4'],
    closed='right',
    lower=1, upper=12,
)

RATING_ORDER = ['AA', 'A', 'B', 'C', 'D', 'E', 'HR']


# =============================================================================
# Rules over aggregated rows
# =============================================================================

CONCENTRATION_TIER = RangeRule(
    'concentration_tier', 'state_rank',
    edges=[10, 25],
    labels=['Top 10 States', 'Top 25 States', 'Remainder'],
    closed='right',
)

STATE_RISK_CATEGORY = RangeRule(
    'state_risk_category', 'default_rate_rank',
    edges=[5, 15],
    labels=['High Risk', 'Medium Risk', 'Low Risk'],
    closed='right',
)

# default_rate_pct is per borrower, on the 0-100 scale
PERFORMANCE_PROFILE = ConjunctionRule.from_spec(
    'performance_profile',
    [
        ('Perfect-Performing', [('default_rate_pct', 'eq', 0), ('unfinished_loans', 'eq', 0)]),
        ('Currently-Performing', [('default_rate_pct', 'eq', 0), ('open_loans', 'gt', 0)]),
        ('Low-Risk', [('default_rate_pct', 'gt', 0), ('default_rate_pct', 'le', 25)]),
        ('Medium-Risk', [('default_rate_pct', 'gt', 0), ('default_rate_pct', 'le', 50)]),
    ],
    default='High-Risk',
    requires=['default_rate_pct'],
)


# =============================================================================
# Composite risk factors (integer weights)
# =============================================================================

CREDIT_SCORE_FACTOR = RangeRule(
    'credit_score_factor', 'credit_score_lower',
    edges=[640, 680, 720, 760],
    labels=[4, 3, 2, 1, 0],
    closed='left',
)

DTI_FACTOR = RangeRule(
    'dti_factor', 'debt_to_income_ratio',
    edges=[0.20, 0.35, 0.50, 0.70],
    labels=[0, 1, 2, 3, 4],
    closed='left',
)

DELINQUENCY_FACTOR = RangeRule(
    'delinquency_factor', 'current_delinquencies',
    edges=[0, 2, 5],
    labels=[0, 1, 2, 3],
    closed='right',
    lower=0,
)

PUBLIC_RECORDS_FACTOR = RangeRule(
    'public_records_factor', 'public_records_last_10y',
    edges=[0, 1],
    labels=[0, 2, 3],
    closed='right',
    lower=0,
)

EMPLOYMENT_FACTOR = BucketRule(
    'employment_factor',
    [
        Case(0, [('employment_status', 'eq', 'Employed')]),
        Case(1, [('employment_status', 'eq', 'Self-employed')]),
        Case(3, [('employment_status', 'eq', 'Not employed')]),
    ],
    default=1,
    requires=['employment_status'],
)

SCORECARD_RISK_CATEGORY = ConjunctionRule.from_spec(
    'scorecard_risk_category',
    [
        ('Low Risk', [('credit_score_mid', 'ge', 720),
                      ('debt_to_income_ratio', 'le', 0.30),
                      ('employment_duration_months', 'ge', 24),
                      ('income_range', 'in', ['$50,000-74,999', '$75,000-99,999', '$100,000+'])]),
        ('Medium Risk', [('credit_score_mid', 'ge', 640),
                         ('debt_to_income_ratio', 'le', 0.50)]),
    ],
    default='High Risk',
    requires=['credit_score_mid', 'debt_to_income_ratio'],
)


RULES = {rule.name: rule for rule in [
    CREDIT_TIER, CREDIT_SCORE_CATEGORY, UTILIZATION_BUCKET,
    DTI_SEGMENT, DTI_RANGE, DTI_TIER, DTI_CATEGORY, PTI_BUCKET,
    CURRENT_DELINQUENCY_BUCKET, HISTORICAL_DELINQUENCY_BUCKET, DELINQUENCY_STATUS,
    INVESTOR_TIER, INVESTOR_RETURN_TIER, INVESTOR_CATEGORY,
    EMPLOYMENT_STABILITY, INCOME_CATEGORY, SCORECARD_INCOME_CATEGORY, HOUSING_STATUS,
    TERM_LABEL, LOAN_OUTCOME, QUARTER_LABEL,
    CONCENTRATION_TIER, STATE_RISK_CATEGORY, PERFORMANCE_PROFILE,
    CREDIT_SCORE_FACTOR, DTI_FACTOR, DELINQUENCY_FACTOR, PUBLIC_RECORDS_FACTOR,
    EMPLOYMENT_FACTOR, SCORECARD_RISK_CATEGORY,
]}


def get_rule(name: str) -> BucketRule:
    try:
        return RULES[name]
    except KeyError:
        raise ConfigurationError(f"Unknown bucketing rule '{name}'") from None


# =============================================================================
# Composite models
# =============================================================================

COMPOSITE_RISK_MODEL = CompositeModel(
    'composite_risk',
    factors=[CREDIT_SCORE_FACTOR, DTI_FACTOR, DELINQUENCY_FACTOR,
             PUBLIC_RECORDS_FACTOR, EMPLOYMENT_FACTOR],
    bands=[
        RiskBand('Low Risk', 0, 3),
        RiskBand('Medium Risk', 4, 8),
        RiskBand('High Risk', 9, 13),
        RiskBand('Very High Risk', 14),
    ],
)

MODELS = {COMPOSITE_RISK_MODEL.name: COMPOSITE_RISK_MODEL}


def get_model(name: str) -> CompositeModel:
    try:
        return MODELS[name]
    except KeyError:
        raise ConfigurationError(f"Unknown scoring model '{name}'") from None
