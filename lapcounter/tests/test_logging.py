"""
Unit Tests: Structured Logging
"""

import io
import json
import logging

import pytest

from lapcounter.observability.logging import (
    JsonFormatter,
    LogLevel,
    StructuredLogger,
    current_context,
    log_context,
    setup_logging,
)


@pytest.fixture
def captured():
    stream = io.StringIO()
    handler = logging.StreamHandler(stream)
    handler.setFormatter(JsonFormatter())
    logger = logging.getLogger("lapcounter.tests.logging")
    logger.addHandler(handler)
    logger.setLevel(logging.DEBUG)
    logger.propagate = False
    yield logger, stream
    logger.removeHandler(handler)


def lines(stream):
    return [json.loads(line) for line in stream.getvalue().splitlines()]


class TestJsonFormatter:
    """Tests for JSON output with context."""

    def test_fields(self, captured):
        logger, stream = captured

        with log_context(session_id="s1"):
            logger.warning("Retrying", extra={"attempt": 2})

        record = lines(stream)[0]
        assert record["message"] == "Retrying"
        assert record["level"] == "WARNING"
        assert record["logger"] == "lapcounter.tests.logging"
        assert record["session_id"] == "s1"
        assert record["attempt"] == 2
        assert record["@timestamp"].endswith("Z")

    def test_context_is_scoped(self, captured):
        logger, stream = captured

        with log_context(request_id="r1"):
            with log_context(participant_id="p1"):
                assert current_context() == {"request_id": "r1", "participant_id": "p1"}
            logger.info("inner done")
        logger.info("outside")

        first, second = lines(stream)
        assert first["request_id"] == "r1"
        assert "participant_id" not in first
        assert "request_id" not in second

    def test_exception_is_included(self, captured):
        logger, stream = captured

        try:
            raise RuntimeError("boom")
        except RuntimeError:
            logger.exception("failed")

        assert "RuntimeError: boom" in lines(stream)[0]["exception"]


class TestStructuredLogger:
    """Tests for StructuredLogger."""

    def test_with_extra(self, captured):
        _, stream = captured
        log = StructuredLogger("lapcounter.tests.logging").with_extra(component="store")

        log.info("saved", key="sessions/a.json")

        record = lines(stream)[0]
        assert record["component"] == "store"
        assert record["key"] == "sessions/a.json"


class TestSetup:
    """Tests for setup_logging."""

    def test_level_parsing(self):
        assert LogLevel.parse("warning") is LogLevel.WARNING
        with pytest.raises(ValueError):
            LogLevel.parse("loud")

    def test_setup_writes_json_to_stream(self):
        stream = io.StringIO()
        root = logging.getLogger()
        saved = (root.level, list(root.handlers))
        try:
            setup_logging("INFO", stream=stream)
            logging.getLogger("lapcounter.tests.setup").debug("hidden")
            logging.getLogger("lapcounter.tests.setup").info("shown")
        finally:
            root.setLevel(saved[0])
            root.handlers[:] = saved[1]

        assert [r["message"] for r in lines(stream)] == ["shown"]
