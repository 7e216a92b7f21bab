"""Tests for logging configuration."""

import json
import logging
import sys

import pytest

from orchestration.logging_config import ConsoleFormatter, JSONFormatter, setup_logging


def make_record(msg="Test message", level=logging.INFO, exc_info=None):
    return logging.LogRecord(
        name="test",
        level=level,
        pathname="test.py",
        lineno=1,
        msg=msg,
        args=(),
        exc_info=exc_info,
    )


@pytest.fixture
def restore_root_logger():
    """Put root handlers back after setup_logging replaced them."""
    root = logging.getLogger()
    handlers, level = root.handlers[:], root.level
    yield root
    root.handlers[:] = handlers
    root.setLevel(level)


class TestJSONFormatter:
    """Tests for JSON log formatter."""

    def test_basic_format(self):
        """Test basic JSON log format."""
        data = json.loads(JSONFormatter().format(make_record()))

        assert data["level"] == "INFO"
        assert data["logger"] == "test"
        assert data["message"] == "Test message"
        assert data["timestamp"].endswith("Z")

    def test_extra_fields(self):
        """Test planner extra fields are included."""
        record = make_record("Adapted plan")
        record.plan_id = "plan-abc"
        record.task_id = "task-003"
        record.attempt = 2
        record.duration_ms = 150.5

        data = json.loads(JSONFormatter().format(record))

        assert data["plan_id"] == "plan-abc"
        assert data["task_id"] == "task-003"
        assert data["attempt"] == 2
        assert data["duration_ms"] == 150.5
        assert "agent_type" not in data

    def test_exception_included(self):
        """Test exception text is included."""
        try:
            raise RuntimeError("boom")
        except RuntimeError:
            record = make_record("Failed", level=logging.ERROR, exc_info=sys.exc_info())

        data = json.loads(JSONFormatter().format(record))
        assert "RuntimeError: boom" in data["exception"]


class TestConsoleFormatter:
    """Tests for console log formatter."""

    def test_basic_format(self):
        """Test basic console format includes level and message."""
        output = ConsoleFormatter().format(make_record())

        assert "INFO" in output
        assert "Test message" in output
        assert "test" in output

    def test_extra_fields_in_brackets(self):
        """Test extra fields appear in brackets."""
        record = make_record("Retrying")
        record.operation_id = "op-1"
        record.agent_type = "agent-api"
        record.duration_ms = 12.345

        output = ConsoleFormatter().format(record)

        assert "[op=op-1, agent=agent-api, 12.3ms]" in output


class TestSetupLogging:
    """Tests for logging setup."""

    def test_debug_mode_sets_debug_level(self, restore_root_logger):
        """Test debug mode sets DEBUG level and console output."""
        setup_logging(debug=True, json_logs=True)

        assert restore_root_logger.level == logging.DEBUG
        assert len(restore_root_logger.handlers) == 1
        assert isinstance(restore_root_logger.handlers[0].formatter, ConsoleFormatter)

    def test_json_logs(self, restore_root_logger):
        """Test JSON output outside debug mode."""
        setup_logging(debug=False, json_logs=True)

        assert restore_root_logger.level == logging.INFO
        assert isinstance(restore_root_logger.handlers[0].formatter, JSONFormatter)
