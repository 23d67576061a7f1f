"""
Configuration loading.

Settings live in YAML. ``load_config()`` reads, in order of precedence:

1. the path passed in,
2. the file named by the ``PORTFOLIO_RISK_CONFIG`` environment variable,
3. the packaged ``defaults.yaml``.

``PORTFOLIO_RISK_MAX_ROWS`` and ``PORTFOLIO_RISK_LOG_LEVEL`` override the
corresponding keys of whichever file was loaded.

Structural problems (wrong types, bad scenario definitions) raise
ConfigurationError at load time.
"""

import logging
import os
from datetime import date
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Union

import pandas as pd
import yaml

from portfolio_risk.exceptions import ConfigurationError
from portfolio_risk.scenarios import ScenarioSet

logger = logging.getLogger(__name__)

_PACKAGE_ROOT = Path(__file__).resolve().parent
DEFAULT_CONFIG_PATH = _PACKAGE_ROOT / 'defaults.yaml'

ENV_PREFIX = 'PORTFOLIO_RISK_'
LOG_FORMAT = '%(levelname)s | %(message)s'


def _get_env(key: str, default: Any = None) -> Any:
    return os.environ.get(f'{ENV_PREFIX}{key.upper()}', default)


class EngineSettings:
    """Operational limits of a report run."""

    def __init__(self, max_rows: Optional[int] = None,
                 as_of_date: Optional[date] = None,
                 partitions: int = 1):
        if max_rows is not None:
            if isinstance(max_rows, bool) or not isinstance(max_rows, int) or max_rows < 1:
                raise ConfigurationError(f"engine.max_rows must be a positive integer, got {max_rows!r}")
        if isinstance(partitions, bool) or not isinstance(partitions, int) or partitions < 1:
            raise ConfigurationError(f"engine.partitions must be an integer >= 1, got {partitions!r}")
        if as_of_date is not None:
            try:
                as_of_date = pd.Timestamp(as_of_date).date()
            except (ValueError, TypeError):
                raise ConfigurationError(f"engine.as_of_date is not a date: {as_of_date!r}") from None
        self.max_rows = max_rows
        self.as_of_date = as_of_date
        self.partitions = partitions

    def __repr__(self):
        return (f"EngineSettings(max_rows={self.max_rows}, as_of_date={self.as_of_date}, "
                f"partitions={self.partitions})")


class AnalyticsConfig:
    def __init__(self, engine: Optional[EngineSettings] = None,
                 scenario_sets: Optional[Dict[str, ScenarioSet]] = None,
                 log_level: str = 'INFO',
                 source: Optional[Path] = None):
        self.engine = engine or EngineSettings()
        self.scenario_sets = dict(scenario_sets or {})
        self.log_level = log_level
        self.source = source

    def __repr__(self):
        return f"AnalyticsConfig(engine={self.engine!r}, scenario_sets={sorted(self.scenario_sets)})"

    def scenario_set(self, name: str) -> ScenarioSet:
        try:
            return self.scenario_sets[name]
        except KeyError:
            raise ConfigurationError(
                f"Unknown scenario set '{name}'; configured: {sorted(self.scenario_sets)}") from None


def parse_config(data: Optional[Mapping], source: Optional[Path] = None) -> AnalyticsConfig:
    """Build an AnalyticsConfig from already-parsed YAML data."""
    data = data or {}
    if not isinstance(data, Mapping):
        raise ConfigurationError("Configuration root must be a mapping")

    engine_data = data.get('engine') or {}
    if not isinstance(engine_data, Mapping):
        raise ConfigurationError("'engine' must be a mapping")
    unknown = sorted(set(engine_data) - {'max_rows', 'as_of_date', 'partitions'})
    if unknown:
        raise ConfigurationError(f"Unknown engine settings: {unknown}")

    max_rows = engine_data.get('max_rows')
    env_rows = _get_env('max_rows')
    if env_rows is not None:
        try:
            max_rows = int(env_rows)
        except ValueError:
            raise ConfigurationError(f"{ENV_PREFIX}MAX_ROWS is not an integer: {env_rows!r}") from None

    engine = EngineSettings(
        max_rows=max_rows,
        as_of_date=engine_data.get('as_of_date'),
        partitions=engine_data.get('partitions', 1),
    )

    sets_data = data.get('scenario_sets') or {}
    if not isinstance(sets_data, Mapping):
        raise ConfigurationError("'scenario_sets' must be a mapping")
    scenario_sets = {name: ScenarioSet.from_dict(name, body) for name, body in sets_data.items()}

    log_level = _get_env('log_level') or (data.get('logging') or {}).get('level', 'INFO')
    if not isinstance(logging.getLevelName(str(log_level).upper()), int):
        raise ConfigurationError(f"Unknown log level {log_level!r}")

    return AnalyticsConfig(engine=engine, scenario_sets=scenario_sets,
                           log_level=str(log_level).upper(), source=source)


def load_config(path: Optional[Union[str, Path]] = None) -> AnalyticsConfig:
    """Read and validate a YAML configuration file."""
    path = Path(path or _get_env('config') or DEFAULT_CONFIG_PATH)
    if not path.exists():
        raise ConfigurationError(f"Configuration file not found: {path}")
    with open(path) as f:
        try:
            data = yaml.safe_load(f)
        except yaml.YAMLError as exc:
            raise ConfigurationError(f"Cannot parse {path}: {exc}") from None
    config = parse_config(data, source=path)
    logger.debug(f"Loaded configuration from {path}")
    return config


def configure_logging(level: Union[str, int] = 'INFO') -> None:
    """Install the console log format used by the scripts and the dashboard."""
    if isinstance(level, str):
        level = level.upper()
    logging.basicConfig(level=level, format=LOG_FORMAT)
