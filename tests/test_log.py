"""Tests for concord.log — logging setup and context binding."""

from __future__ import annotations

import json
import logging

import pytest

from concord.log import (
    _PREFIX,
    JsonFormatter,
    LogContext,
    TextFormatter,
    _configure_from_env,
    configure_logging,
    current_context,
    get_logger,
    reset_logging,
)


def _record(msg: str = "hello", level: int = logging.INFO, name: str = "concord.engine") -> logging.LogRecord:
    return logging.LogRecord(name, level, __file__, 1, msg, None, None)


class TestGetLogger:
    def test_prefixes_bare_names(self) -> None:
        assert get_logger("scheduler").name == "concord.scheduler"

    def test_keeps_module_names(self) -> None:
        assert get_logger("concord.engine").name == "concord.engine"

    def test_bare_prefix(self) -> None:
        assert get_logger("concord").name == "concord"


class TestConfigureLogging:
    def setup_method(self) -> None:
        reset_logging()

    def test_adds_single_handler(self) -> None:
        root = logging.getLogger(_PREFIX)
        assert root.handlers == []
        configure_logging(level="DEBUG")
        assert len(root.handlers) == 1
        assert root.level == logging.DEBUG

    def test_idempotent(self) -> None:
        configure_logging(level="DEBUG")
        configure_logging(level="ERROR")
        root = logging.getLogger(_PREFIX)
        assert len(root.handlers) == 1
        assert root.level == logging.DEBUG

    def test_force_replaces(self) -> None:
        configure_logging(level="DEBUG")
        configure_logging(level="ERROR", fmt="json", force=True)
        root = logging.getLogger(_PREFIX)
        assert len(root.handlers) == 1
        assert root.level == logging.ERROR
        assert isinstance(root.handlers[0].formatter, JsonFormatter)

    def test_reset_clears(self) -> None:
        configure_logging(level="INFO")
        reset_logging()
        assert logging.getLogger(_PREFIX).handlers == []


class TestEnvConfiguration:
    def setup_method(self) -> None:
        reset_logging()

    def test_nothing_set_leaves_unconfigured(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.delenv("CONCORD_DEBUG", raising=False)
        monkeypatch.delenv("CONCORD_LOG_LEVEL", raising=False)
        _configure_from_env()
        assert logging.getLogger(_PREFIX).handlers == []

    def test_debug_flag(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("CONCORD_DEBUG", "1")
        monkeypatch.setenv("CONCORD_LOG_LEVEL", "ERROR")
        _configure_from_env()
        assert logging.getLogger(_PREFIX).level == logging.DEBUG

    def test_unknown_level_falls_back(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.delenv("CONCORD_DEBUG", raising=False)
        monkeypatch.setenv("CONCORD_LOG_LEVEL", "chatty")
        _configure_from_env()
        assert logging.getLogger(_PREFIX).level == logging.WARNING


class TestFormatters:
    def test_text_strips_prefix(self) -> None:
        line = TextFormatter(color=False).format(_record())
        assert "I engine" in line
        assert line.endswith("| hello")
        assert "\033[" not in line

    def test_text_includes_context(self) -> None:
        with LogContext(task_id="t-1"):
            line = TextFormatter(color=False).format(_record())
        assert "task_id=t-1" in line

    def test_json_structure(self) -> None:
        with LogContext(chain_id="c-1"):
            payload = json.loads(JsonFormatter().format(_record(level=logging.WARNING)))
        assert payload["level"] == "WARNING"
        assert payload["logger"] == "concord.engine"
        assert payload["message"] == "hello"
        assert payload["context"] == {"chain_id": "c-1"}


class TestLogContext:
    def test_nesting_and_restore(self) -> None:
        assert current_context() == {}
        with LogContext(task_id="a", agent_id="x"):
            with LogContext(task_id="b"):
                assert current_context() == {"task_id": "b", "agent_id": "x"}
            assert current_context() == {"task_id": "a", "agent_id": "x"}
        assert current_context() == {}
