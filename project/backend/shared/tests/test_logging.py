"""
Tests for structured logging.
"""

import json
import logging
import sys

from shared.logging import JSONFormatter, get_job_id, get_logger, get_run_id, set_log_context


def _record(msg="hello", **extra):
    record = logging.LogRecord("test", logging.INFO, __file__, 1, msg, None, None)
    for key, value in extra.items():
        setattr(record, key, value)
    return record


def test_get_logger_configures_once():
    """Test that repeated calls do not stack handlers."""
    logger = get_logger("test_logging_once")
    handlers = len(logger.handlers)
    assert get_logger("test_logging_once") is logger
    assert len(logger.handlers) == handlers


def test_formatter_emits_json_with_extra_fields():
    """Test that extra fields are serialized; complex values become strings."""
    payload = json.loads(JSONFormatter().format(_record(user_id="u1", amount=7, meta={"a": 1})))
    assert payload["message"] == "hello"
    assert payload["level"] == "INFO"
    assert payload["user_id"] == "u1"
    assert payload["amount"] == 7
    assert payload["meta"] == "{'a': 1}"


def test_formatter_injects_context_ids():
    """Test that run_id and job_id from context are attached."""
    set_log_context(run_id="run-1", job_id="job-9")
    try:
        assert get_run_id() == "run-1"
        assert get_job_id() == "job-9"
        payload = json.loads(JSONFormatter().format(_record()))
        assert payload["run_id"] == "run-1"
        assert payload["job_id"] == "job-9"
    finally:
        set_log_context()
    assert get_run_id() is None


def test_formatter_includes_exception():
    try:
        raise ValueError("boom")
    except ValueError:
        record = _record()
        record.exc_info = sys.exc_info()
    payload = json.loads(JSONFormatter().format(record))
    assert "ValueError: boom" in payload["exception"]
