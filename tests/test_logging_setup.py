"""Tests for logging configuration."""

import json
import logging

import pytest
import structlog

from watchsync.core.config import LoggingConfig
from watchsync.core.logging_setup import configure_logging


@pytest.fixture
def restore_logging():
    """Undo global logging configuration after the test."""
    root = logging.getLogger()
    handlers, level = list(root.handlers), root.level
    yield
    for handler in list(root.handlers):
        root.removeHandler(handler)
        handler.close()
    for handler in handlers:
        root.addHandler(handler)
    root.setLevel(level)
    structlog.reset_defaults()


def test_file_output_is_json(tmp_path, restore_logging):
    """Test that the log file receives one JSON object per event."""
    log_file = tmp_path / "logs" / "watchsync.log"
    configure_logging(LoggingConfig(level="DEBUG", file=str(log_file)))

    structlog.get_logger("watchsync.test").info("cache_written", owner_id="u1", items=3)
    for handler in logging.getLogger().handlers:
        handler.flush()

    record = json.loads(log_file.read_text().strip().splitlines()[-1])
    assert record["event"] == "cache_written"
    assert record["owner_id"] == "u1"
    assert record["items"] == 3
    assert record["level"] == "info"


def test_level_and_httpx_quieted(restore_logging):
    """Test the configured root level and the httpx logger level."""
    configure_logging(LoggingConfig(level="warning"))

    assert logging.getLogger().level == logging.WARNING
    assert logging.getLogger("httpx").level == logging.WARNING
