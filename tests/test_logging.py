"""
Tests for structured logging configuration and alert delivery.
"""

import json
import logging

import pytest
import structlog

from ai_reliability_guard.core.alerts import BREAKER_OPEN, BUDGET_WARNING, AlertManager
from ai_reliability_guard.logging import (
    bind_execution_context,
    clear_execution_context,
    configure_logging,
)


@pytest.fixture(autouse=True)
def restore_logging():
    root = logging.getLogger()
    handlers, level = list(root.handlers), root.level
    yield
    for handler in root.handlers:
        if handler not in handlers:
            handler.close()
    root.handlers[:] = handlers
    root.setLevel(level)
    structlog.contextvars.clear_contextvars()
    structlog.reset_defaults()


class TestConfigureLogging:
    """Test logging setup."""

    def test_invalid_level_rejected(self):
        with pytest.raises(ValueError, match="Invalid log level"):
            configure_logging("LOUD")

    def test_invalid_format_rejected(self):
        with pytest.raises(ValueError, match="Invalid log format"):
            configure_logging("INFO", "xml")

    def test_json_lines_include_bound_context(self, tmp_path):
        log_file = tmp_path / "guard.log"
        configure_logging("INFO", "json", log_file=log_file)

        bind_execution_context(agent_type="SummaryAgent", tenant_id="acme")
        structlog.get_logger("tests").info("retry_scheduled", delay=0.4)
        clear_execution_context("agent_type", "tenant_id")
        structlog.get_logger("tests").info("after_clear")

        lines = [json.loads(line) for line in log_file.read_text().splitlines()]
        assert lines[0]["event"] == "retry_scheduled"
        assert lines[0]["agent_type"] == "SummaryAgent"
        assert lines[0]["tenant_id"] == "acme"
        assert lines[0]["level"] == "info"
        assert "agent_type" not in lines[1]

    def test_level_filters_events(self, tmp_path):
        log_file = tmp_path / "guard.log"
        configure_logging("WARNING", "json", log_file=log_file)

        structlog.get_logger("tests").info("quiet")
        structlog.get_logger("tests").warning("loud")

        events = [json.loads(line)["event"] for line in log_file.read_text().splitlines()]
        assert events == ["loud"]


class TestAlertManager:
    """Test alert routing."""

    def test_handler_receives_payload(self):
        delivered = []
        manager = AlertManager(handler=lambda event, payload: delivered.append((event, payload)))

        manager.notify(BREAKER_OPEN, {"model_id": "gpt-4o"})

        assert delivered == [(BREAKER_OPEN, {"model_id": "gpt-4o"})]
        assert manager.recent()[0].event == BREAKER_OPEN

    def test_failing_handler_does_not_propagate(self):
        def broken(event, payload):
            raise RuntimeError("webhook down")

        manager = AlertManager(handler=broken)
        alert = manager.notify(BUDGET_WARNING, {"scope": "daily_tokens"})

        assert alert.event == BUDGET_WARNING
        assert len(manager.recent()) == 1

    def test_unknown_event_rejected(self):
        with pytest.raises(ValueError, match="Unknown alert event"):
            AlertManager().notify("disk_full", {})

    def test_recent_is_bounded_and_filterable(self):
        manager = AlertManager(limit=3)
        for i in range(5):
            manager.notify(BUDGET_WARNING if i % 2 else BREAKER_OPEN, {"i": i})

        assert [a.payload["i"] for a in manager.recent()] == [2, 3, 4]
        assert [a.payload["i"] for a in manager.recent(BUDGET_WARNING)] == [3]
