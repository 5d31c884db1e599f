"""Tests for configuration loading."""

import json

from chatflow.config import (
    EngineConfig,
    get_chatflow_config,
    get_engine_setting,
    get_log_format,
    get_log_level,
)


def write_config(monkeypatch, tmp_path, data) -> None:
    path = tmp_path / "chatflow.json"
    path.write_text(data if isinstance(data, str) else json.dumps(data))
    monkeypatch.setenv("CHATFLOW_CONFIG_FILE", str(path))


class TestConfigFile:
    def test_missing_file_is_empty(self):
        assert get_chatflow_config() == {}

    def test_malformed_file_is_empty(self, monkeypatch, tmp_path):
        write_config(monkeypatch, tmp_path, "{not json")
        assert get_chatflow_config() == {}

    def test_logging_settings(self, monkeypatch, tmp_path):
        write_config(monkeypatch, tmp_path, {"logging": {"level": "DEBUG", "format": "json"}})

        assert get_log_level() == "DEBUG"
        assert get_log_format() == "json"

    def test_logging_defaults(self):
        assert get_log_level() == "INFO"
        assert get_log_format() == "auto"


class TestEngineSettings:
    def test_defaults(self):
        config = EngineConfig()

        assert config.max_depth == 100
        assert config.sweep_interval_seconds == 300.0
        assert config.default_session_timeout == 30
        assert config.default_session_timeout_unit == "minutes"
        assert config.non_persistent_session_hours == 24

    def test_file_overrides_default(self, monkeypatch, tmp_path):
        write_config(monkeypatch, tmp_path, {"engine": {"max_depth": 25}})
        assert EngineConfig().max_depth == 25

    def test_environment_overrides_file(self, monkeypatch, tmp_path):
        write_config(monkeypatch, tmp_path, {"engine": {"max_depth": 25}})
        monkeypatch.setenv("CHATFLOW_MAX_DEPTH", "7")

        assert EngineConfig().max_depth == 7

    def test_uncastable_value_falls_back(self, monkeypatch):
        monkeypatch.setenv("CHATFLOW_MAX_DEPTH", "lots")
        assert get_engine_setting("max_depth", 100, int) == 100

    def test_explicit_values_win(self):
        assert EngineConfig(max_depth=3).max_depth == 3
