"""Tests for portfolio_risk/config.py"""

from datetime import date

import pytest

from portfolio_risk.config import DEFAULT_CONFIG_PATH, load_config, parse_config
from portfolio_risk.exceptions import ConfigurationError


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    """Keep the caller's environment out of these tests."""
    for key in ('PORTFOLIO_RISK_CONFIG', 'PORTFOLIO_RISK_MAX_ROWS', 'PORTFOLIO_RISK_LOG_LEVEL'):
        monkeypatch.delenv(key, raising=False)


class TestLoadConfig:
    def test_packaged_defaults(self):
        """The shipped defaults load and define the stress scenarios."""
        config = load_config()
        assert config.source == DEFAULT_CONFIG_PATH
        assert config.engine.partitions == 1
        assert config.engine.max_rows == 5_000_000
        stress = config.scenario_set('portfolio_stress')
        assert len(stress) == 3
        assert stress.baseline_name == 'Baseline (Actual)'
        assert stress.scenarios[2].multipliers['default_rate_pct'] == pytest.approx(1.25)

    def test_explicit_path(self, tmp_path):
        """A YAML file passed in replaces the defaults."""
        path = tmp_path / 'risk.yaml'
        path.write_text(
            "engine:\n"
            "  max_rows: 100\n"
            "  as_of_date: 2014-03-31\n"
            "  partitions: 4\n"
            "logging:\n"
            "  level: debug\n"
        )
        config = load_config(path)
        assert config.engine.max_rows == 100
        assert config.engine.as_of_date == date(2014, 3, 31)
        assert config.engine.partitions == 4
        assert config.log_level == 'DEBUG'
        assert config.scenario_sets == {}

    def test_env_path(self, tmp_path, monkeypatch):
        """PORTFOLIO_RISK_CONFIG points at another file."""
        path = tmp_path / 'env.yaml'
        path.write_text("engine:\n  partitions: 2\n")
        monkeypatch.setenv('PORTFOLIO_RISK_CONFIG', str(path))
        assert load_config().engine.partitions == 2

    def test_env_overrides(self, monkeypatch):
        """Row ceiling and log level can be overridden from the environment."""
        monkeypatch.setenv('PORTFOLIO_RISK_MAX_ROWS', '10')
        monkeypatch.setenv('PORTFOLIO_RISK_LOG_LEVEL', 'warning')
        config = load_config()
        assert config.engine.max_rows == 10
        assert config.log_level == 'WARNING'

    def test_missing_file(self, tmp_path):
        """A path that does not exist is a configuration error."""
        with pytest.raises(ConfigurationError, match="not found"):
            load_config(tmp_path / 'nope.yaml')

    def test_unparseable_yaml(self, tmp_path):
        """YAML syntax errors surface as configuration errors."""
        path = tmp_path / 'bad.yaml'
        path.write_text("engine: [unclosed\n")
        with pytest.raises(ConfigurationError, match="Cannot parse"):
            load_config(path)


class TestParseConfig:
    def test_empty(self):
        """An empty document gives the built-in defaults."""
        config = parse_config(None)
        assert config.engine.max_rows is None
        assert config.log_level == 'INFO'

    def test_unknown_engine_key(self):
        """Typos in engine settings fail at load time."""
        with pytest.raises(ConfigurationError, match="Unknown engine settings"):
            parse_config({'engine': {'max_row': 5}})

    def test_invalid_partitions(self):
        """partitions must be at least 1."""
        with pytest.raises(ConfigurationError, match="partitions"):
            parse_config({'engine': {'partitions': 0}})

    def test_invalid_scenario_multiplier(self):
        """Bad multipliers fail when the configuration loads."""
        with pytest.raises(ConfigurationError, match="negative"):
            parse_config({'scenario_sets': {'s': {'scenarios': [
                {'name': 'x', 'multipliers': {'default_rate_pct': -0.5}}]}}})

    def test_unknown_scenario_set(self):
        """Asking for an unconfigured set names the configured ones."""
        with pytest.raises(ConfigurationError, match="Unknown scenario set"):
            parse_config({}).scenario_set('portfolio_stress')

    def test_unknown_log_level(self):
        """Log levels are validated."""
        with pytest.raises(ConfigurationError, match="log level"):
            parse_config({'logging': {'level': 'LOUD'}})
