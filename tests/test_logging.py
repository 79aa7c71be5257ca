"""Tests for structured logging setup."""

from __future__ import annotations

import json
import logging

import pytest
import structlog

from toprf.logging import configure_logging


@pytest.fixture(autouse=True)
def _restore_logging():
    yield
    configure_logging(log_format="console", log_level="INFO")


class TestConfigureLogging:
    def test_json_output(self, capsys: pytest.CaptureFixture[str]) -> None:
        configure_logging(log_format="json", log_level="INFO")
        structlog.get_logger().info("hello_event", key_id="0x01")
        line = capsys.readouterr().out.strip().splitlines()[-1]
        data = json.loads(line)
        assert data["event"] == "hello_event"
        assert data["key_id"] == "0x01"
        assert data["level"] == "info"
        assert "timestamp" in data

    def test_level_filters_debug(self, capsys: pytest.CaptureFixture[str]) -> None:
        configure_logging(log_format="json", log_level="WARNING")
        structlog.get_logger().info("quiet_event")
        structlog.get_logger().warning("loud_event")
        out = capsys.readouterr().out
        assert "quiet_event" not in out
        assert "loud_event" in out

    def test_context_vars_merged(self, capsys: pytest.CaptureFixture[str]) -> None:
        configure_logging(log_format="json")
        structlog.contextvars.bind_contextvars(http_request_id="abc")
        try:
            structlog.get_logger().info("traced")
        finally:
            structlog.contextvars.unbind_contextvars("http_request_id")
        assert json.loads(capsys.readouterr().out.strip().splitlines()[-1])["http_request_id"] == "abc"

    def test_unknown_level_falls_back_to_info(self) -> None:
        configure_logging(log_format="console", log_level="LOUD")
        assert logging.getLogger().level == logging.INFO

    def test_noisy_loggers_quieted(self) -> None:
        configure_logging(log_format="console", log_level="DEBUG")
        assert logging.getLogger("httpx").level == logging.WARNING
