"""
Scenario projector: deterministic what-if rows from one baseline aggregate.

Each scenario multiplies named fields of the baseline row and holds every
other field constant; derived fields (e.g. loss rate from losses) are then
re-evaluated per row. Scenario sets come from configuration, so adding a
scenario needs no code change.
"""

import logging
from typing import Mapping, Sequence

import pandas as pd

from portfolio_risk.aggregation import Derived, apply_derived
from portfolio_risk.exceptions import ConfigurationError

logger = logging.getLogger(__name__)


class Scenario:
    def __init__(self, name: str, multipliers: Mapping[str, float]):
        clean = {}
        for field, factor in dict(multipliers or {}).items():
            if isinstance(factor, bool) or not isinstance(factor, (int, float)):
                raise ConfigurationError(f"Scenario '{name}': multiplier for '{field}' must be numeric")
            if factor < 0:
                raise ConfigurationError(f"Scenario '{name}': multiplier for '{field}' is negative")
            clean[field] = float(factor)
        self.name = name
        self.multipliers = clean

    def __repr__(self):
        return f"Scenario({self.name!r}, {self.multipliers!r})"


class ScenarioSet:
    """
    A baseline label plus ordered stress scenarios.

    Parameters
    ----------
    name : str
    baseline_name : str
        Label of the unmodified baseline row.
    scenarios : sequence of Scenario
    """

    def __init__(self, name: str, baseline_name: str, scenarios: Sequence[Scenario]):
        names = [baseline_name] + [s.name for s in scenarios]
        duplicates = sorted({n for n in names if names.count(n) > 1})
        if duplicates:
            raise ConfigurationError(f"Scenario set '{name}' has duplicate names: {duplicates}")
        self.name = name
        self.baseline_name = baseline_name
        self.scenarios = tuple(scenarios)

    def __repr__(self):
        return f"ScenarioSet({self.name!r}, {len(self.scenarios)} scenarios)"

    def __len__(self):
        return len(self.scenarios)

    @classmethod
    def from_dict(cls, name: str, data: Mapping) -> 'ScenarioSet':
        if not isinstance(data, Mapping):
            raise ConfigurationError(f"Scenario set '{name}' must be a mapping")
        scenarios = []
        for entry in data.get('scenarios') or []:
            if not isinstance(entry, Mapping) or 'name' not in entry:
                raise ConfigurationError(f"Scenario set '{name}': every scenario needs a name")
            scenarios.append(Scenario(entry['name'], entry.get('multipliers', {})))
        return cls(name, data.get('baseline', 'Baseline'), scenarios)


def project_scenarios(baseline: pd.DataFrame,
                      scenario_set: ScenarioSet,
                      derived: Sequence[Derived] = (),
                      label_column: str = 'scenario_name') -> pd.DataFrame:
    """
    Produce the baseline row followed by one row per scenario.

    Parameters
    ----------
    baseline : pd.DataFrame
        Exactly one aggregate row.
    scenario_set : ScenarioSet
    derived : sequence of Derived
        Columns recomputed on every output row after the multipliers apply.
    label_column : str
        Name of the scenario label column, placed first.

    Returns
    -------
    pd.DataFrame
        1 + len(scenario_set) rows. The baseline row is the input row
        unchanged apart from the label.
    """
    if len(baseline) != 1:
        raise ValueError(f"Scenario projection needs exactly one baseline row, got {len(baseline)}")

    base = baseline.reset_index(drop=True)
    rows = [base.copy()]
    for scenario in scenario_set.scenarios:
        unknown = [f for f in scenario.multipliers if f not in base.columns]
        if unknown:
            raise ConfigurationError(f"Scenario '{scenario.name}' stresses unknown fields: {unknown}")
        row = base.copy()
        for field, factor in scenario.multipliers.items():
            row[field] = row[field].astype('float64') * factor
        rows.append(apply_derived(row, derived))

    out = pd.concat(rows, ignore_index=True)
    out.insert(0, label_column, [scenario_set.baseline_name] + [s.name for s in scenario_set.scenarios])
    logger.debug(f"Projected {len(scenario_set)} scenarios from '{scenario_set.name}'")
    return out
