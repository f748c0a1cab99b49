# ftp_access/monitoring/logger.py
"""
Structured JSON logger for the FTP client.
"""
import logging
import json
from datetime import datetime, timezone
from typing import Optional, Protocol, runtime_checkable

from ftp_access.config import settings

def get_session_context():
    # Import lazily to avoid import cycles
    from ftp_access.monitoring.context import get_session_context as _g
    return _g()

class JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        log_record = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "message": record.getMessage(),
            "component": getattr(record, "component", None) or record.module,
            "session_id": getattr(record, "session_id", None),
            "operation": getattr(record, "operation", None),
            "remote_path": getattr(record, "remote_path", None),
        }
        # Error records carry extra fields from record_error
        for key in ("function", "details", "stacktrace"):
            value = getattr(record, key, None)
            if value is not None:
                log_record[key] = value
        return json.dumps(log_record, default=str)

logger = logging.getLogger("ftp_access")
logger.setLevel(getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO))
handler = logging.StreamHandler()
handler.setFormatter(JsonFormatter())
logger.handlers = [handler]

# Helper to log with context
def log(level: str, message: str, component: str = None, session_id: str = None, operation: str = None, **kwargs):
    ctx = get_session_context()
    if session_id is None:
        session_id = ctx.get("session_id")
    if operation is None:
        operation = ctx.get("operation")

    extra = {
        "session_id": session_id,
        "operation": operation,
        "remote_path": kwargs.pop("remote_path", ctx.get("remote_path")),
        "component": component,
        **kwargs
    }
    logger.log(getattr(logging, level.upper(), logging.INFO), message, extra=extra)


@runtime_checkable
class LogSink(Protocol):
    """Anything that can receive protocol trace lines."""

    def write(self, level: str, message: str) -> None:
        ...


class DefaultLogSink:
    """Forwards trace lines to the package logger."""

    def __init__(self, component: Optional[str] = "ftp_protocol"):
        self.component = component

    def write(self, level: str, message: str) -> None:
        log(level, message, component=self.component)
