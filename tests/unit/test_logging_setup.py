"""Unit tests for JSON log formatting, redaction and logger configuration."""

import json
import logging
import sys
from logging.handlers import RotatingFileHandler

import pytest

from basichttp.bootstrap.logging_setup import (
    BACKUP_COUNT,
    MAX_BYTES,
    CorrelationIdFilter,
    JsonFormatter,
    configure_logging,
    redact_sensitive,
)
from basichttp.domain.correlation_id import (
    LOGGER_ROOT,
    clear_correlation_id,
    get_logger,
    set_correlation_id,
)


def make_record(**attributes) -> logging.LogRecord:
    record = logging.LogRecord(
        name="basichttp.test",
        level=logging.INFO,
        pathname="test.py",
        lineno=1,
        msg="Test message",
        args=(),
        exc_info=None,
    )
    for key, value in attributes.items():
        setattr(record, key, value)
    return record


@pytest.fixture(name="json_formatter")
def json_formatter_fixture():
    """Create a JSON formatter instance."""
    return JsonFormatter(datefmt="%Y-%m-%d %H:%M:%S")


@pytest.fixture(name="restore_root_logger")
def restore_root_logger_fixture():
    """Undo handler changes made by configure_logging."""
    logger = logging.getLogger(LOGGER_ROOT)
    saved = (list(logger.handlers), logger.level, logger.propagate)
    yield logger
    for handler in list(logger.handlers):
        handler.close()
    logger.handlers[:] = saved[0]
    logger.setLevel(saved[1])
    logger.propagate = saved[2]


def test_json_formatter_basic_fields(json_formatter):
    """Required fields are always present."""
    data = json.loads(
        json_formatter.format(make_record(correlation_id="abc", component="test"))
    )

    assert data["level"] == "INFO"
    assert data["correlation_id"] == "abc"
    assert data["component"] == "test"
    assert data["message"] == "Test message"
    assert "timestamp" in data


def test_json_formatter_includes_event_and_extras(json_formatter):
    """Known structured keys are copied from the record."""
    record = make_record(
        event="range_served",
        client="127.0.0.1:5000",
        status_code=206,
        start=0,
        end=9,
        duration_ms=1.5,
        unrelated="dropped",
    )
    data = json.loads(json_formatter.format(record))

    assert data["event"] == "range_served"
    assert data["client"] == "127.0.0.1:5000"
    assert data["status_code"] == 206
    assert (data["start"], data["end"]) == (0, 9)
    assert data["duration_ms"] == 1.5
    assert "unrelated" not in data


def test_json_formatter_sorts_keys(json_formatter):
    """Output key order is stable."""
    output = json_formatter.format(make_record(event="x", route="/files/a"))
    keys = list(json.loads(output).keys())
    assert keys == sorted(keys)


def test_json_formatter_redacts_string_extras(json_formatter):
    """Sensitive-looking values never reach the log."""
    data = json.loads(json_formatter.format(make_record(error="password=hunter2")))
    assert data["error"] == "[REDACTED]"


def test_json_formatter_includes_exception(json_formatter):
    """Exception text is serialized."""
    try:
        raise ValueError("boom")
    except ValueError:
        record = make_record()
        record.exc_info = sys.exc_info()
    data = json.loads(json_formatter.format(record))
    assert "ValueError: boom" in data["exception"]


@pytest.mark.parametrize(
    "value",
    [
        "Authorization: Bearer abc",
        "token=abc123",
        "api_key=secret",
        "Cookie: session=1",
        "YWJjZGVmZ2hpamtsbW5vcHFyc3R1dnd4eXphYmNkZWZnaGlq",
    ],
)
def test_redact_sensitive_values(value):
    """Credentials and long opaque strings are replaced."""
    assert redact_sensitive(value) == "[REDACTED]"


@pytest.mark.parametrize("value", ["", "/files/report.pdf", "bytes=0-99"])
def test_redact_keeps_safe_values(value):
    """Ordinary values pass through."""
    assert redact_sensitive(value) == value


def test_correlation_filter_sets_defaults():
    """Records logged without the adapter still carry both fields."""
    record = make_record()
    assert CorrelationIdFilter().filter(record) is True
    assert record.correlation_id == "-"
    assert record.component == "basichttp.test"


def test_adapter_injects_correlation_and_component(caplog):
    """The adapter tags records with the bound id and short component name."""
    caplog.set_level(logging.INFO, logger=LOGGER_ROOT)
    logger = get_logger("pipeline.range")

    set_correlation_id("req-1")
    logger.info("bound", extra={"event": "one"})
    clear_correlation_id()
    logger.info("unbound")

    bound, unbound = caplog.records[-2:]
    assert bound.correlation_id == "req-1"
    assert bound.component == "pipeline.range"
    assert bound.event == "one"
    assert unbound.correlation_id == "-"


def test_configure_logging_installs_single_stdout_handler(restore_root_logger):
    """Repeated configuration replaces rather than stacks handlers."""
    configure_logging("DEBUG")
    configure_logging("WARNING")
    logger = restore_root_logger

    assert len(logger.handlers) == 1
    assert logger.level == logging.WARNING
    assert logger.propagate is False
    assert isinstance(logger.handlers[0].formatter, JsonFormatter)


def test_configure_logging_writes_json_to_rotating_file(restore_root_logger, tmp_path):
    """A file destination uses a size-rotated JSON log."""
    log_file = tmp_path / "logs" / "server.log"
    configure_logging("INFO", str(log_file))
    handler = restore_root_logger.handlers[0]

    assert isinstance(handler, RotatingFileHandler)
    assert handler.maxBytes == MAX_BYTES
    assert handler.backupCount == BACKUP_COUNT

    get_logger("test").info("hello", extra={"event": "file_event"})
    handler.flush()
    entry = json.loads(log_file.read_text(encoding="utf-8").splitlines()[-1])
    assert entry["event"] == "file_event"
    assert entry["component"] == "test"


def test_configure_logging_plain_text(restore_root_logger, capsys):
    """use_json=False keeps the human-readable format."""
    configure_logging("INFO", use_json=False)
    get_logger("test").info("plain message")
    restore_root_logger.handlers[0].flush()
    assert "plain message" in capsys.readouterr().out


def test_unknown_level_falls_back_to_info(restore_root_logger):
    """An unrecognized level name does not break configuration."""
    configure_logging("CHATTY")
    assert restore_root_logger.level == logging.INFO
