"""Tests for structlog configuration."""

import json

import pytest
import structlog

from gridfleet.core.log import configure_logging


@pytest.fixture(autouse=True)
def reset_structlog():
    yield
    structlog.reset_defaults()


def test_json_lines(capsys: pytest.CaptureFixture) -> None:
    configure_logging("INFO", "json")

    structlog.get_logger("test").info("service_ready", url="localhost:7001")

    line = json.loads(capsys.readouterr().out.strip())
    assert line["event"] == "service_ready"
    assert line["url"] == "localhost:7001"
    assert line["level"] == "info"
    assert "timestamp" in line


def test_level_filtering(capsys: pytest.CaptureFixture) -> None:
    configure_logging("warning", "text")
    logger = structlog.get_logger("test")

    logger.info("readiness_poll_failed")
    logger.warning("teardown_call_failed", stage="shutdown")

    out = capsys.readouterr().out
    assert "readiness_poll_failed" not in out
    assert "teardown_call_failed" in out
