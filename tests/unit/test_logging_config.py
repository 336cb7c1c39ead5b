"""Unit tests for structured logging configuration."""

import json
import logging
import sys

import pytest

from git_proxy.logging_config import (
    JSONFormatter,
    LogContext,
    TextFormatter,
    clear_context,
    generate_request_id,
    get_context,
    set_context,
    setup_logging,
)


def _record(message="hello", **extra):
    record = logging.LogRecord(
        name="git_proxy.test", level=logging.INFO, pathname=__file__,
        lineno=10, msg=message, args=(), exc_info=None,
    )
    for key, value in extra.items():
        setattr(record, key, value)
    return record


@pytest.fixture(autouse=True)
def _clean_context():
    clear_context()
    yield
    clear_context()


@pytest.fixture
def restore_root_logger():
    root = logging.getLogger()
    handlers, level = list(root.handlers), root.level
    yield root
    root.handlers[:] = handlers
    root.setLevel(level)


class TestContext:
    """Tests for correlation context handling."""

    def test_set_and_clear(self):
        set_context(request_id="req-1", operation="fetch")
        assert get_context() == {"request_id": "req-1", "operation": "fetch"}
        clear_context()
        assert get_context() == {}

    def test_log_context_nests_and_restores(self):
        with LogContext(request_id="outer", operation="clone"):
            with LogContext(request_id="inner", operation="push"):
                assert get_context() == {"request_id": "inner", "operation": "push"}
            assert get_context() == {"request_id": "outer", "operation": "clone"}
        assert get_context() == {}

    def test_generated_ids_are_unique(self):
        assert generate_request_id() != generate_request_id()


class TestFormatters:
    """Tests for JSON and text output."""

    def test_json_includes_context_and_extra(self):
        formatter = JSONFormatter(include_location=False)
        with LogContext(request_id="req-9", operation="fetch"):
            line = formatter.format(_record(exit_code=0))
        payload = json.loads(line)
        assert payload["message"] == "hello"
        assert payload["level"] == "INFO"
        assert payload["logger"] == "git_proxy.test"
        assert payload["request_id"] == "req-9"
        assert payload["operation"] == "fetch"
        assert payload["exit_code"] == 0
        assert payload["timestamp"].endswith("Z")
        assert "location" not in payload

    def test_json_location(self):
        payload = json.loads(JSONFormatter().format(_record()))
        assert payload["location"].startswith("test_logging_config.py:10:")

    def test_text_format(self):
        formatter = TextFormatter(include_timestamp=False)
        with LogContext(request_id="req-3"):
            line = formatter.format(_record())
        assert line == "INFO [git_proxy.test] [req-3] hello"

    def test_text_exception(self):
        try:
            raise RuntimeError("boom")
        except RuntimeError:
            record = _record()
            record.exc_info = sys.exc_info()
        line = TextFormatter(include_timestamp=False).format(record)
        assert "RuntimeError: boom" in line


class TestSetupLogging:
    """Tests for root logger configuration."""

    def test_defaults(self, restore_root_logger, monkeypatch):
        monkeypatch.delenv("LOG_LEVEL", raising=False)
        monkeypatch.delenv("LOG_FORMAT", raising=False)
        setup_logging()
        assert restore_root_logger.level == logging.WARNING
        assert len(restore_root_logger.handlers) == 1
        assert isinstance(restore_root_logger.handlers[0].formatter, TextFormatter)

    def test_environment(self, restore_root_logger, monkeypatch):
        monkeypatch.setenv("LOG_LEVEL", "debug")
        monkeypatch.setenv("LOG_FORMAT", "json")
        setup_logging()
        assert restore_root_logger.level == logging.DEBUG
        assert isinstance(restore_root_logger.handlers[0].formatter, JSONFormatter)

    def test_arguments_override_environment(self, restore_root_logger, monkeypatch):
        monkeypatch.setenv("LOG_LEVEL", "DEBUG")
        setup_logging(level="ERROR", format_type="text")
        assert restore_root_logger.level == logging.ERROR
