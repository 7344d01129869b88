"""Tests for run option resolution."""

import pytest

from fleetplay.config import ConfigError, RunOptions, env_overrides, load_config_file, load_options


class TestRunOptions:
    """Tests for the RunOptions dataclass."""

    def test_defaults(self):
        """Test default option values."""
        options = RunOptions()
        assert options.forks == 5
        assert options.strategy == "linear"
        assert options.connection_retries == 3
        assert options.tags == []
        assert not options.check

    def test_validation(self):
        """Test invalid values are rejected at construction."""
        with pytest.raises(ConfigError):
            RunOptions(forks=0)
        with pytest.raises(ConfigError):
            RunOptions(hash_behaviour="deep")
        with pytest.raises(ConfigError):
            RunOptions(connection_retries=-1)

    def test_from_dict_unknown_keys(self):
        """Test unknown keys are reported."""
        with pytest.raises(ConfigError, match="Unknown configuration keys"):
            RunOptions.from_dict({"forks": 2, "colour": "blue"})

    def test_from_dict_coerces(self):
        """Test string values are converted to field types."""
        options = RunOptions.from_dict({"forks": "8", "check": "yes", "tags": "a, b"})
        assert options.forks == 8
        assert options.check is True
        assert options.tags == ["a", "b"]

    def test_bad_number(self):
        """Test unparseable numbers raise ConfigError."""
        with pytest.raises(ConfigError, match="Invalid value for forks"):
            RunOptions.from_dict({"forks": "many"})

    def test_merged_ignores_none(self):
        """Test None overrides leave values alone."""
        options = RunOptions(limit="web").merged({"forks": 20, "limit": None})
        assert options.forks == 20
        assert options.limit == "web"


class TestConfigSources:
    """Tests for file, environment, and CLI precedence."""

    def test_file_env_cli_precedence(self, tmp_path):
        """Test CLI beats environment beats file."""
        config = tmp_path / "custom.yml"
        config.write_text("forks: 7\nstrategy: free\nretry_delay: 0.5\n")
        environ = {"FLEETPLAY_FORKS": "9"}

        options = load_options(config, environ=environ)
        assert options.forks == 9
        assert options.strategy == "free"
        assert options.retry_delay == 0.5

        options = load_options(config, cli_overrides={"forks": 11}, environ=environ)
        assert options.forks == 11

    def test_default_file_in_cwd(self, tmp_path, monkeypatch):
        """Test fleetplay.yml in the working directory is picked up."""
        (tmp_path / "fleetplay.yml").write_text("forks: 3\n")
        monkeypatch.chdir(tmp_path)
        assert load_options(environ={}).forks == 3

    def test_no_default_file(self, tmp_path, monkeypatch):
        """Test a missing default file means defaults."""
        monkeypatch.chdir(tmp_path)
        assert load_config_file() == {}

    def test_explicit_missing_file(self, tmp_path):
        """Test an explicit config path must exist."""
        with pytest.raises(ConfigError, match="not found"):
            load_config_file(tmp_path / "nope.yml")

    def test_file_must_be_mapping(self, tmp_path):
        """Test a list in the config file is rejected."""
        config = tmp_path / "bad.yml"
        config.write_text("- forks\n")
        with pytest.raises(ConfigError, match="mapping"):
            load_config_file(config)

    def test_env_overrides(self):
        """Test FLEETPLAY_* variables are collected and coerced."""
        overrides = env_overrides({
            "FLEETPLAY_CHECK": "true",
            "FLEETPLAY_SKIP_TAGS": "slow,net",
            "FLEETPLAY_CONNECT_TIMEOUT": "2.5",
            "UNRELATED": "x",
        })
        assert overrides == {"check": True, "skip_tags": ["slow", "net"], "connect_timeout": 2.5}
