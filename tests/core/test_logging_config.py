"""Tests for logging configuration."""

from __future__ import annotations

import json
import logging

import pytest

from tether.core import logging_config
from tether.core.logging_config import JsonFormatter, configure_logging, get_logger


@pytest.fixture(autouse=True)
def _restore_root_logger(monkeypatch):
    root = logging.getLogger()
    handlers, level = list(root.handlers), root.level
    monkeypatch.setattr(logging_config, "_configured", False)
    yield
    for handler in root.handlers:
        if handler not in handlers:
            handler.close()
    root.handlers[:] = handlers
    root.setLevel(level)


class TestConfigureLogging:
    """Tests for configure_logging."""

    def test_level_and_file(self, tmp_path):
        log_file = tmp_path / "logs" / "tether.log"
        configure_logging(level="debug", file_path=str(log_file))

        get_logger("tether.test").debug("session_created: id=%s", "s1")
        for handler in logging.getLogger().handlers:
            handler.flush()

        assert logging.getLogger().level == logging.DEBUG
        assert "session_created: id=s1" in log_file.read_text()

    def test_env_overrides(self, monkeypatch, tmp_path):
        log_file = tmp_path / "tether.log"
        monkeypatch.setenv("TETHER_LOG_LEVEL", "ERROR")
        monkeypatch.setenv("TETHER_LOG_FORMAT", "json")
        monkeypatch.setenv("TETHER_LOG_FILE", str(log_file))

        configure_logging()
        get_logger("tether.test").error("process_timeout: id=%s", "p1")
        for handler in logging.getLogger().handlers:
            handler.flush()

        record = json.loads(log_file.read_text().splitlines()[-1])
        assert record["level"] == "ERROR"
        assert record["message"] == "process_timeout: id=p1"

    def test_second_call_ignored_unless_forced(self):
        configure_logging(level="WARNING")
        configure_logging(level="DEBUG")
        assert logging.getLogger().level == logging.WARNING

        configure_logging(level="DEBUG", force=True)
        assert logging.getLogger().level == logging.DEBUG


def test_json_formatter_includes_extra_fields():
    record = logging.LogRecord("tether.x", logging.INFO, __file__, 1, "hello %s", ("you",), None)
    record.session_id = "s1"

    data = json.loads(JsonFormatter().format(record))

    assert data["logger"] == "tether.x"
    assert data["message"] == "hello you"
    assert data["extra"] == {"session_id": "s1"}


def test_get_logger_returns_named_logger():
    assert get_logger("tether.core.session") is logging.getLogger("tether.core.session")
