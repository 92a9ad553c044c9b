"""Tests for configuration loading and logging setup."""

import logging

import pytest

from converge_kernel.config import ConfigError, load_config
from converge_kernel.logging_setup import configure_logging


class TestLoadConfig:
    def test_defaults_without_file(self, monkeypatch):
        monkeypatch.delenv("CONVERGE_CONFIG", raising=False)
        monkeypatch.delenv("CONVERGE_LOG_LEVEL", raising=False)
        config = load_config()
        assert config.log_level == "INFO"
        assert config.scheduler.max_apply_attempts == 5
        assert config.drift.interval_seconds == 180.0
        assert config.source.path is None

    def test_reads_yaml(self, tmp_path, monkeypatch):
        monkeypatch.delenv("CONVERGE_LOG_LEVEL", raising=False)
        path = tmp_path / "converge.yaml"
        path.write_text(
            "log_level: DEBUG\n"
            "scheduler:\n"
            "  max_workers: 2\n"
            "  apply_timeout_seconds: 5\n"
            "source:\n"
            "  path: ./manifests\n"
            "  poll_schedule: '*/5 * * * *'\n"
        )
        config = load_config(str(path))
        assert config.log_level == "DEBUG"
        assert config.scheduler.max_workers == 2
        assert config.scheduler.apply_timeout_seconds == 5.0
        assert config.source.poll_schedule == "*/5 * * * *"

    def test_path_from_environment(self, tmp_path, monkeypatch):
        path = tmp_path / "converge.yaml"
        path.write_text("drift:\n  interval_seconds: 60\n")
        monkeypatch.setenv("CONVERGE_CONFIG", str(path))
        assert load_config().drift.interval_seconds == 60.0

    def test_log_level_override(self, tmp_path, monkeypatch):
        path = tmp_path / "converge.yaml"
        path.write_text("log_level: INFO\n")
        monkeypatch.setenv("CONVERGE_LOG_LEVEL", "warning")
        assert load_config(str(path)).log_level == "WARNING"

    def test_empty_file(self, tmp_path, monkeypatch):
        monkeypatch.delenv("CONVERGE_LOG_LEVEL", raising=False)
        path = tmp_path / "converge.yaml"
        path.write_text("")
        assert load_config(str(path)).log_level == "INFO"

    def test_missing_file(self, tmp_path):
        with pytest.raises(ConfigError):
            load_config(str(tmp_path / "missing.yaml"))

    def test_invalid_yaml(self, tmp_path):
        path = tmp_path / "converge.yaml"
        path.write_text("scheduler: [oops")
        with pytest.raises(ConfigError):
            load_config(str(path))

    def test_not_a_mapping(self, tmp_path):
        path = tmp_path / "converge.yaml"
        path.write_text("- one\n- two\n")
        with pytest.raises(ConfigError):
            load_config(str(path))

    def test_invalid_values(self, tmp_path):
        path = tmp_path / "converge.yaml"
        path.write_text("scheduler:\n  max_workers: 0\n")
        with pytest.raises(ConfigError) as exc:
            load_config(str(path))
        assert "max_workers" in str(exc.value)
        assert exc.value.exit_code == 2


class TestConfigureLogging:
    def test_level_by_name(self):
        configure_logging("debug", force=True)
        assert logging.getLogger().level == logging.DEBUG
        configure_logging(logging.INFO, force=True)
        assert logging.getLogger().level == logging.INFO

    def test_unknown_name_falls_back_to_info(self):
        configure_logging("chatty", force=True)
        assert logging.getLogger().level == logging.INFO
