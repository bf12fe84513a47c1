"""Tests for structlog configuration."""
import json

import pytest
import structlog

from utils.logging import configure_logging


@pytest.fixture(autouse=True)
def _restore_structlog():
    yield
    structlog.reset_defaults()


class TestConfigureLogging:
    def test_json_lines(self, capsys):
        configure_logging("INFO", json_output=True)
        structlog.get_logger().info("queue_item_sent", item_id="q-1")

        line = capsys.readouterr().out.strip().splitlines()[-1]
        event = json.loads(line)
        assert event["event"] == "queue_item_sent"
        assert event["item_id"] == "q-1"
        assert event["level"] == "info"
        assert "timestamp" in event

    def test_level_filter(self, capsys):
        configure_logging("WARNING", json_output=True)
        log = structlog.get_logger()
        log.info("hidden")
        log.warning("shown")

        out = capsys.readouterr().out
        assert "hidden" not in out
        assert "shown" in out

    def test_unknown_level_defaults_to_info(self, capsys):
        configure_logging("chatty", json_output=False)
        structlog.get_logger().info("visible_event")
        assert "visible_event" in capsys.readouterr().out
