import asyncio
import json
import logging

import pytest

from ftp_access.errors import CommandError
from ftp_access.monitoring.context import (
    get_session_context,
    reset_session_context,
    set_session_context,
)
from ftp_access.monitoring.errors import record_error
from ftp_access.monitoring.logger import DefaultLogSink, JsonFormatter, LogSink, log
from ftp_access.protocol.reply import ControlReply


def test_record_error_never_raises():
    """Test record_error swallows its own failures."""
    reply = ControlReply(550, ("No such file",))
    try:
        raise CommandError("RETR missing.txt", reply)
    except CommandError as e:
        record_error("client", "download_to", "download failed", details={"path": "missing.txt"}, exc=e)


def test_record_error_reports_reply_code(caplog):
    """Test the JSON line of a recorded error carries function, details and stacktrace."""
    caplog.set_level(logging.INFO, logger="ftp_access")
    try:
        raise CommandError("SIZE x", ControlReply(550, ("nope",)))
    except CommandError as e:
        record_error("client", "size", "size failed", details={"path": "x"}, exc=e)

    record = caplog.records[-1]
    payload = json.loads(JsonFormatter().format(record))

    assert payload["level"] == "ERROR"
    assert payload["component"] == "client"
    assert payload["function"] == "size"
    assert payload["details"] == {"path": "x", "error_type": "CommandError", "reply_code": 550}
    assert "Traceback" in payload["stacktrace"]
    assert "CommandError" in payload["stacktrace"]


def test_plain_records_have_no_error_fields():
    """Test ordinary log lines omit the error-only fields."""
    record = logging.LogRecord("ftp_access", logging.INFO, __file__, 1, "hello", None, None)
    payload = json.loads(JsonFormatter().format(record))

    assert payload["message"] == "hello"
    assert "function" not in payload
    assert "details" not in payload
    assert "stacktrace" not in payload


def test_logger_context_injection():
    """Test log() works without a session context."""
    # Ensure log() doesn't crash when context is missing
    log('INFO', 'test message', component='test')


def test_log_picks_up_session_context(caplog):
    """Test log() fills fields from the session context."""
    caplog.set_level(logging.INFO, logger="ftp_access")
    tokens = set_session_context(session_id="abc123", operation="list", remote_path="/docs")
    try:
        log("INFO", "listing", component="client")
    finally:
        reset_session_context(tokens)

    record = caplog.records[-1]
    assert record.session_id == "abc123"
    assert record.operation == "list"
    assert record.remote_path == "/docs"

    payload = json.loads(JsonFormatter().format(record))
    assert payload["component"] == "client"
    assert payload["session_id"] == "abc123"


def test_context_is_reset():
    """Test resetting restores the empty context."""
    tokens = set_session_context(session_id="s1", operation="size")
    assert get_session_context()["session_id"] == "s1"
    reset_session_context(tokens)
    assert get_session_context() == {"session_id": None, "operation": None, "remote_path": None}


def test_default_sink(caplog):
    """Test DefaultLogSink forwards trace lines to the package logger."""
    caplog.set_level(logging.DEBUG, logger="ftp_access")
    sink = DefaultLogSink()
    assert isinstance(sink, LogSink)

    sink.write("DEBUG", "> NOOP")

    record = caplog.records[-1]
    assert record.getMessage() == "> NOOP"
    assert record.component == "ftp_protocol"


@pytest.mark.asyncio
async def test_context_is_task_local():
    """Test concurrent tasks see their own context."""
    async def worker(name):
        tokens = set_session_context(session_id=name)
        await asyncio.sleep(0)
        try:
            return get_session_context()["session_id"]
        finally:
            reset_session_context(tokens)

    assert await asyncio.gather(worker("a"), worker("b")) == ["a", "b"]
