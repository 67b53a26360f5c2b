"""Tests for structured logging configuration."""

import json
import logging
import sys
from unittest.mock import patch

from importguard.app.core.logging import (
    ContextFilter,
    JSONFormatter,
    get_log_context,
    get_logger,
    get_logging_config,
    hash_identifier,
    set_request_id,
    setup_logging,
)


def _record(msg="Test message", level=logging.INFO, exc_info=None) -> logging.LogRecord:
    return logging.LogRecord(
        name="test",
        level=level,
        pathname="test.py",
        lineno=1,
        msg=msg,
        args=(),
        exc_info=exc_info,
    )


class TestJSONFormatter:
    """Test JSON formatter for structured logging."""

    def test_basic_json_format(self):
        data = json.loads(JSONFormatter().format(_record()))

        assert data["level"] == "INFO"
        assert data["logger"] == "test"
        assert data["message"] == "Test message"
        assert "timestamp" in data
        assert data["source"]["file"] == "test.py"
        assert data["source"]["line"] == 1

    def test_json_format_with_context(self):
        record = _record("import_rate_limit.exceeded")
        record.request_id = "req-1"
        record.user_id = "123"
        record.limit_type = "ip"
        record.wallet_id = None

        data = json.loads(JSONFormatter().format(record))

        assert data["request_id"] == "req-1"
        assert data["user_id"] == "123"
        assert data["limit_type"] == "ip"
        assert "wallet_id" not in data

    def test_json_format_with_extra_fields(self):
        record = _record()
        record.retry_after_s = 42

        data = json.loads(JSONFormatter().format(record))
        assert data["extra"]["retry_after_s"] == 42

    def test_json_format_with_exception(self):
        try:
            raise ValueError("Test error")
        except ValueError:
            record = _record("Error occurred", logging.ERROR, sys.exc_info())

        data = json.loads(JSONFormatter().format(record))
        exception_text = "".join(data["exception"])
        assert "ValueError" in exception_text
        assert "Test error" in exception_text


class TestContextFilter:
    """Test context filter for adding default fields."""

    def test_adds_defaults(self):
        record = _record()
        assert ContextFilter().filter(record) is True
        assert record.user_id is None
        assert record.limit_type is None

    def test_keeps_existing_fields(self):
        record = _record()
        record.user_id = "7"
        ContextFilter().filter(record)
        assert record.user_id == "7"

    def test_request_id_from_context(self):
        set_request_id("ctx-req")
        try:
            record = _record()
            ContextFilter().filter(record)
            assert record.request_id == "ctx-req"
        finally:
            set_request_id(None)


class TestLogContext:
    """Test get_log_context helper."""

    def test_drops_none_values(self):
        context = get_log_context(user_id="1", limit_type="user")
        assert context == {"user_id": "1", "limit_type": "user"}

    def test_hashes_client_ip(self):
        context = get_log_context(client_ip="192.168.1.200")
        assert context["client_ip"] == hash_identifier("192.168.1.200")
        assert "192.168.1.200" not in json.dumps(context)
        assert len(context["client_ip"]) == 16

    def test_extra_fields(self):
        context = get_log_context(limit_type="wallet", retry_after_s=5)
        assert context["retry_after_s"] == 5


class TestLoggingConfig:
    """Test logging configuration."""

    def _config(self, log_format):
        with patch("importguard.app.core.logging.settings") as mock_settings:
            mock_settings.log_format = log_format
            mock_settings.log_level = "debug"
            return get_logging_config()

    def test_json_format(self):
        config = self._config("json")
        assert config["formatters"]["default"]["()"].endswith("JSONFormatter")
        assert config["loggers"]["importguard"]["level"] == "DEBUG"

    def test_structured_format_includes_context(self):
        config = self._config("structured")
        assert "request_id=%(request_id)s" in config["formatters"]["default"]["format"]

    def test_text_format(self):
        config = self._config("text")
        assert "request_id" not in config["formatters"]["default"]["format"]
        assert config["handlers"]["error_console"]["level"] == "ERROR"

    def test_setup_logging_applies_config(self):
        setup_logging()
        logger = get_logger()
        assert logger.name == "importguard"
        assert logger.propagate is False
        assert logging.getLogger("uvicorn.access").level == logging.WARNING
