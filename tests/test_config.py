"""
Tests for the configuration system.
"""

import pytest
import yaml


class TestConfigValue:
    """Single values."""

    def test_default_and_set(self):
        from minter.config import ConfigValue

        value = ConfigValue(default=4, validator=lambda x: x > 0)
        assert value.get() == 4
        value.set(8)
        assert value.get() == 8

    def test_validator_rejects(self):
        from minter.config import ConfigValue
        from minter.errors import ConfigError

        value = ConfigValue(default=4, validator=lambda x: x > 0)
        with pytest.raises(ConfigError):
            value.set(0)

    def test_type_mismatch_rejected(self):
        from minter.config import ConfigValue
        from minter.errors import ConfigError

        with pytest.raises(ConfigError):
            ConfigValue(default=4).set("four")
        with pytest.raises(ConfigError):
            ConfigValue(default=4).set(True)

    def test_int_accepted_for_float(self):
        from minter.config import ConfigValue

        value = ConfigValue(default=0.5)
        value.set(2)
        assert value.get() == 2.0
        assert isinstance(value.get(), float)

    def test_env_var_wins(self, monkeypatch):
        from minter.config import ConfigValue

        value = ConfigValue(default=4, env_var="MINTER_TEST_VALUE")
        value.set(8)
        monkeypatch.setenv("MINTER_TEST_VALUE", "16")
        assert value.get() == 16

    def test_change_callback(self):
        from minter.config import ConfigValue

        seen = []
        value = ConfigValue(default="a")
        value.on_change(lambda old, new: seen.append((old, new)))
        value.set("b")
        assert seen == [(None, "b")]


class TestConfigManager:
    """Loading, dotted access, validation."""

    def test_singleton(self):
        from minter.config import ConfigManager, get_config_manager

        assert get_config_manager() is ConfigManager()

    def test_defaults(self):
        from minter.config import get_config

        cfg = get_config().to_dict()
        assert cfg["orchestrator"]["concurrency"] == 4
        assert cfg["retry"]["max_attempts"] == 5
        assert cfg["retry"]["base_backoff"] == 0.5
        assert cfg["retry"]["max_backoff"] == 30.0
        assert cfg["transport"]["per_call_timeout"] == 30.0
        assert cfg["transport"]["network"] == "ic"

    def test_load_from_file(self, tmp_path):
        from minter.config import get_config_manager

        path = tmp_path / "minter.yaml"
        path.write_text(yaml.safe_dump({"retry": {"max_attempts": 3}, "transport": {"network": "local"}}))

        mgr = get_config_manager()
        mgr.load_from_file(path)
        assert mgr.get("retry.max_attempts") == 3
        assert mgr.get("transport.network") == "local"
        assert mgr.loaded_paths == [path]

    def test_unknown_key_rejected(self, tmp_path):
        from minter.config import get_config_manager
        from minter.errors import ConfigError

        path = tmp_path / "minter.yaml"
        path.write_text(yaml.safe_dump({"retry": {"max_attemps": 3}}))
        with pytest.raises(ConfigError, match="retry.max_attemps"):
            get_config_manager().load_from_file(path)

    def test_missing_file(self, tmp_path):
        from minter.config import get_config_manager
        from minter.errors import ConfigError

        with pytest.raises(ConfigError):
            get_config_manager().load_from_file(tmp_path / "nope.yaml")

    def test_load_defaults_skips_bad_files(self, tmp_path, monkeypatch):
        from minter.config import get_config_manager

        monkeypatch.chdir(tmp_path)
        (tmp_path / "minter.yaml").write_text("retry: [not, a, mapping]")
        home = tmp_path / "home"
        (home / ".minter").mkdir(parents=True)
        (home / ".minter" / "config.yaml").write_text(yaml.safe_dump({"orchestrator": {"concurrency": 2}}))

        mgr = get_config_manager()
        mgr.load_defaults(home=home)
        assert mgr.get("orchestrator.concurrency") == 2

    def test_set_and_invalid_path(self):
        from minter.config import get_config_manager
        from minter.errors import ConfigError

        mgr = get_config_manager()
        mgr.set("orchestrator.concurrency", 16)
        assert mgr.get("orchestrator.concurrency") == 16
        with pytest.raises(ConfigError):
            mgr.set("orchestrator.nothing", 1)
        with pytest.raises(ConfigError):
            mgr.set("orchestrator", 1)

    def test_validate_reports_bad_env(self, monkeypatch):
        from minter.config import get_config_manager

        monkeypatch.setenv("MINTER_CONCURRENCY", "0")
        monkeypatch.setenv("MINTER_MAX_ATTEMPTS", "many")
        errors = get_config_manager().validate()

        assert any(e.startswith("orchestrator.concurrency") for e in errors)
        assert any(e.startswith("retry.max_attempts") for e in errors)

    def test_export_schema(self):
        from minter.config import get_config_manager

        schema = get_config_manager().export_schema()
        concurrency = schema["properties"]["orchestrator"]["concurrency"]
        assert concurrency["env_var"] == "MINTER_CONCURRENCY"
        assert concurrency["type"] == "int"
        assert concurrency["default"] == 4

    def test_to_yaml_round_trips(self):
        from minter.config import get_config

        assert yaml.safe_load(get_config().to_yaml())["observability"]["log_format"] == "json"

    def test_run_options_from_config(self):
        from minter.config import get_config_manager
        from minter.orchestrator import RunOptions

        mgr = get_config_manager()
        mgr.set("retry.max_attempts", 2)
        options = RunOptions.from_config(mgr.config, concurrency=9, resume=None)

        assert options.max_attempts == 2
        assert options.concurrency == 9
        assert options.resume is True

    @pytest.mark.parametrize("overrides", [
        {"jitter_factor": 2.0},
        {"jitter_factor": -0.1},
        {"base_backoff": -1.0},
        {"max_backoff": -1.0},
        {"backoff_multiplier": 0.5},
    ])
    def test_run_options_reject_bad_backoff(self, overrides):
        from minter.orchestrator import RunOptions

        with pytest.raises(ValueError):
            RunOptions(**overrides)
