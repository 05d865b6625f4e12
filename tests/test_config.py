"""
Unit tests for engine configuration loading.
"""

import json
import logging

import pytest

from compound_prompts.config import (
    ConfigError,
    EngineConfig,
    configure_logging,
    get_config_path,
    load_config,
)


class TestEngineConfig:
    """Test EngineConfig construction and schema validation."""

    def test_defaults(self):
        config = EngineConfig.from_dict({})

        assert config.database_url == "sqlite:///compound_prompts.db"
        assert config.bulk_max_workers == 8
        assert config.log_level == "INFO"
        assert config.api_prefix == "/compound_prompts"

    def test_values_from_dict(self):
        config = EngineConfig.from_dict({"bulk_max_workers": 2, "api_prefix": "/api"})

        assert config.bulk_max_workers == 2
        assert config.api_prefix == "/api"

    def test_unknown_key_rejected(self):
        with pytest.raises(ConfigError):
            EngineConfig.from_dict({"max_nesting_depth": 10})

    def test_invalid_worker_count_rejected(self):
        with pytest.raises(ConfigError):
            EngineConfig.from_dict({"bulk_max_workers": 0})

    def test_invalid_log_level_rejected(self):
        with pytest.raises(ConfigError):
            EngineConfig.from_dict({"log_level": "LOUD"})

    def test_as_dict(self):
        assert EngineConfig().as_dict()["database_url"] == "sqlite:///compound_prompts.db"


class TestLoadConfig:
    """Test loading config from disk and environment."""

    def test_missing_file_uses_defaults(self, temp_config_dir, monkeypatch):
        monkeypatch.delenv("COMPOUND_PROMPTS_DATABASE_URL", raising=False)

        config = load_config(str(temp_config_dir / "missing.json"))

        assert config == EngineConfig()

    def test_loads_file(self, temp_config_dir, monkeypatch):
        monkeypatch.delenv("COMPOUND_PROMPTS_DATABASE_URL", raising=False)
        path = temp_config_dir / "config.json"
        path.write_text(json.dumps({"database_url": "sqlite:///prompts.db", "log_level": "DEBUG"}))

        config = load_config(str(path))

        assert config.database_url == "sqlite:///prompts.db"
        assert config.log_level == "DEBUG"

    def test_environment_overrides_database_url(self, temp_config_dir, monkeypatch):
        path = temp_config_dir / "config.json"
        path.write_text(json.dumps({"database_url": "sqlite:///prompts.db"}))
        monkeypatch.setenv("COMPOUND_PROMPTS_DATABASE_URL", "sqlite://")

        assert load_config(str(path)).database_url == "sqlite://"

    def test_config_path_from_environment(self, temp_config_dir, monkeypatch):
        path = temp_config_dir / "config.json"
        path.write_text(json.dumps({"api_prefix": "/custom"}))
        monkeypatch.setenv("COMPOUND_PROMPTS_CONFIG", str(path))

        assert get_config_path() == str(path)
        assert load_config().api_prefix == "/custom"

    def test_invalid_json(self, temp_config_dir):
        path = temp_config_dir / "config.json"
        path.write_text("{broken")

        with pytest.raises(ConfigError):
            load_config(str(path))

    def test_schema_violation(self, temp_config_dir):
        path = temp_config_dir / "config.json"
        path.write_text(json.dumps({"bulk_max_workers": "many"}))

        with pytest.raises(ConfigError):
            load_config(str(path))


def test_configure_logging(monkeypatch):
    calls = []
    monkeypatch.setattr(logging, "basicConfig", lambda **kwargs: calls.append(kwargs))

    configure_logging(EngineConfig(log_level="DEBUG"))

    assert calls[0]["level"] == "DEBUG"
