"""
Unit tests for structured logging utilities.
"""

import json
import logging
from io import StringIO

import pytest

from errorlog.utils.logging import (
    setup_logging,
    get_logger,
    JSONFormatter,
    log_mode_transition,
    log_store_failure,
    log_error_with_context,
)


@pytest.fixture
def captured():
    """Logger adapter writing JSON lines to a string buffer."""
    logger = get_logger("test_capture")

    stream = StringIO()
    handler = logging.StreamHandler(stream)
    handler.setFormatter(JSONFormatter())
    logger.logger.addHandler(handler)
    logger.logger.setLevel(logging.DEBUG)

    yield logger, stream

    logger.logger.removeHandler(handler)


def _last_line(stream: StringIO) -> dict:
    return json.loads(stream.getvalue().strip().splitlines()[-1])


def test_json_formatter():
    """Test JSON formatter produces valid JSON output."""
    formatter = JSONFormatter()

    logger = logging.getLogger("test")
    logger.setLevel(logging.INFO)

    stream = StringIO()
    handler = logging.StreamHandler(stream)
    handler.setFormatter(formatter)
    logger.addHandler(handler)

    try:
        logger.info("Test message", extra={"error_id": "err_123", "store": "MemoryStore"})
    finally:
        logger.removeHandler(handler)

    log_data = json.loads(stream.getvalue())

    assert "timestamp" in log_data
    assert log_data["level"] == "INFO"
    assert log_data["logger"] == "test"
    assert log_data["message"] == "Test message"
    assert log_data["error_id"] == "err_123"
    assert log_data["store"] == "MemoryStore"
    assert "source" in log_data


def test_json_formatter_nests_unknown_extras(captured):
    """Extras that are not context fields go under 'context'."""
    logger, stream = captured

    logger.info("Queued", extra={"queue_length": 3})

    log_data = _last_line(stream)
    assert log_data["context"]["queue_length"] == 3
    assert "queue_length" not in log_data


def test_get_logger_with_context():
    """Test getting logger with context."""
    logger = get_logger("test_module", store="RedisStore", application_name="Billing")

    assert logger.extra["store"] == "RedisStore"
    assert logger.extra["application_name"] == "Billing"


def test_with_context_does_not_mutate_parent():
    """with_context returns a new adapter with merged context."""
    logger = get_logger("test_module", store="RedisStore")

    child = logger.with_context(mode="failing")

    assert child.extra == {"store": "RedisStore", "mode": "failing"}
    assert logger.extra == {"store": "RedisStore"}


def test_adapter_context_is_promoted(captured):
    """Adapter context fields appear at the top level of each line."""
    logger, stream = captured

    logger.with_context(mode="failing").info("inside")
    logger.info("outside")

    lines = [json.loads(line) for line in stream.getvalue().strip().splitlines()]
    assert lines[0]["mode"] == "failing"
    assert "mode" not in lines[1]


def test_log_mode_transition_to_failing(captured):
    """Entering failure mode is logged as a warning."""
    logger, stream = captured

    log_mode_transition(logger, "RedisStore", "normal", "failing", queue_length=0)

    log_data = _last_line(stream)
    assert log_data["level"] == "WARNING"
    assert log_data["store"] == "RedisStore"
    assert log_data["mode"] == "failing"
    assert log_data["context"]["previous_mode"] == "normal"


def test_log_mode_transition_to_normal(captured):
    """Recovery is logged at info level."""
    logger, stream = captured

    log_mode_transition(logger, "RedisStore", "failing", "normal", queue_length=0)

    assert _last_line(stream)["level"] == "INFO"


def test_log_store_failure(captured):
    """Test store failure logging."""
    logger, stream = captured

    log_store_failure(logger, "RedisStore", "write", ConnectionError("refused"), error_id="abc")

    log_data = _last_line(stream)
    assert log_data["level"] == "WARNING"
    assert log_data["error_id"] == "abc"
    assert log_data["context"]["operation"] == "write"
    assert log_data["context"]["error_type"] == "ConnectionError"
    assert "refused" in log_data["message"]


def test_log_error_with_context(captured):
    """Test error logging with context."""
    logger, stream = captured

    try:
        raise ValueError("Test error")
    except ValueError as e:
        log_error_with_context(logger, "Failed to log exception", e, original_error_type="KeyError")

    log_data = _last_line(stream)
    assert log_data["level"] == "ERROR"
    assert log_data["error"]["type"] == "ValueError"
    assert log_data["error"]["message"] == "Test error"
    assert "Traceback" in log_data["error"]["stack_trace"]
    assert log_data["context"]["original_error_type"] == "KeyError"


def test_setup_logging():
    """Test logging setup."""
    root_logger = logging.getLogger()
    saved_handlers = root_logger.handlers[:]
    saved_level = root_logger.level

    try:
        setup_logging(log_level="DEBUG")

        assert root_logger.level == logging.DEBUG
        assert len(root_logger.handlers) == 1
        assert isinstance(root_logger.handlers[0].formatter, JSONFormatter)
        assert logging.getLogger("redis").level == logging.WARNING
    finally:
        root_logger.handlers[:] = saved_handlers
        root_logger.setLevel(saved_level)
