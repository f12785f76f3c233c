"""Unit tests for logging configuration."""

from __future__ import annotations

import json
import logging
import logging.handlers
from io import StringIO
from pathlib import Path

import pytest
import structlog

from mnemos.config import LoggingConfig
from mnemos.logging import (
    add_correlation_id,
    bind_job_context,
    clear_job_context,
    get_correlation_id,
    get_logger,
    set_correlation_id,
    setup_logging,
)


@pytest.fixture(autouse=True)
def reset_logging():
    """Reset logging configuration around each test."""
    logging.getLogger().handlers.clear()
    structlog.reset_defaults()
    structlog.contextvars.clear_contextvars()
    set_correlation_id(None)
    yield
    logging.getLogger().handlers.clear()
    structlog.reset_defaults()
    structlog.contextvars.clear_contextvars()
    set_correlation_id(None)


@pytest.fixture
def capture_stream() -> StringIO:
    return StringIO()


def _setup_json(stream: StringIO, level: str = "INFO") -> None:
    setup_logging(LoggingConfig(level=level, format="json", file=None))
    logging.getLogger().handlers[0].stream = stream


def _last_entry(stream: StringIO) -> dict:
    return json.loads(stream.getvalue().strip().splitlines()[-1])


def test_json_output_format(capture_stream: StringIO) -> None:
    """Test JSON rendering includes event, kwargs, level, logger and timestamp."""
    _setup_json(capture_stream)

    get_logger("mnemos.jobs.store").info("embed_job_enqueued", entity_uid="Alice", priority=2)

    entry = _last_entry(capture_stream)
    assert entry["event"] == "embed_job_enqueued"
    assert entry["entity_uid"] == "Alice"
    assert entry["priority"] == 2
    assert entry["level"] == "info"
    assert entry["logger"] == "mnemos.jobs.store"
    assert "timestamp" in entry


def test_console_output_format(capture_stream: StringIO) -> None:
    """Test console rendering is human-readable, not JSON."""
    setup_logging(LoggingConfig(level="DEBUG", format="console", file=None))
    logging.getLogger().handlers[0].stream = capture_stream

    get_logger("test.module").debug("rate_limit_waiting", wait_seconds=1.5)

    output = capture_stream.getvalue()
    assert "rate_limit_waiting" in output
    assert "wait_seconds" in output
    with pytest.raises(json.JSONDecodeError):
        json.loads(output.strip())


def test_log_level_filtering(capture_stream: StringIO) -> None:
    """Test messages below the configured level are dropped."""
    _setup_json(capture_stream, level="WARNING")
    logger = get_logger("test.module")

    logger.info("info_message")
    assert capture_stream.getvalue() == ""

    logger.warning("warning_message")
    assert "warning_message" in capture_stream.getvalue()


def test_correlation_id_binding(capture_stream: StringIO) -> None:
    """Test the correlation ID is attached while set and absent after clearing."""
    _setup_json(capture_stream)
    logger = get_logger("test.module")

    set_correlation_id("pass-123")
    assert get_correlation_id() == "pass-123"
    logger.info("with_correlation")
    assert _last_entry(capture_stream)["correlation_id"] == "pass-123"

    set_correlation_id(None)
    logger.info("without_correlation")
    assert "correlation_id" not in _last_entry(capture_stream)


def test_correlation_id_processor() -> None:
    """Test the processor directly."""
    assert "correlation_id" not in add_correlation_id(None, "", {"event": "x"})

    set_correlation_id("abc")
    assert add_correlation_id(None, "", {"event": "x"})["correlation_id"] == "abc"


def test_job_context_binding(capture_stream: StringIO) -> None:
    """Test job and worker ids are bound and then cleared."""
    _setup_json(capture_stream)
    logger = get_logger("test.module")

    bind_job_context(job_id="job-1", worker_id="worker-1")
    logger.info("embed_job_started")
    entry = _last_entry(capture_stream)
    assert entry["job_id"] == "job-1"
    assert entry["worker_id"] == "worker-1"

    clear_job_context()
    logger.info("after_job")
    entry = _last_entry(capture_stream)
    assert "job_id" not in entry
    assert "worker_id" not in entry


def test_file_rotation_handler_configuration(tmp_path: Path) -> None:
    """Test a rotating file handler is installed with the configured limits."""
    log_file = tmp_path / "logs" / "mnemos.log"
    setup_logging(
        LoggingConfig(
            level="INFO",
            format="json",
            file=log_file,
            rotation_size_mb=5,
            retention_count=2,
        )
    )

    handler = logging.getLogger().handlers[0]
    assert isinstance(handler, logging.handlers.RotatingFileHandler)
    assert handler.maxBytes == 5 * 1024 * 1024
    assert handler.backupCount == 2

    get_logger("test.module").info("file_write", data="x")
    handler.flush()

    entry = json.loads(log_file.read_text().strip())
    assert entry["event"] == "file_write"


def test_exception_formatting(capture_stream: StringIO) -> None:
    """Test exc_info renders the traceback into the JSON entry."""
    _setup_json(capture_stream)

    try:
        raise ValueError("bad vector")
    except ValueError:
        get_logger("test.module").error("embed_job_failed", exc_info=True)

    entry = _last_entry(capture_stream)
    assert entry["level"] == "error"
    assert "ValueError: bad vector" in entry["exception"]
