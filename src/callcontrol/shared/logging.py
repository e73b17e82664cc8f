"""
JSON logging for the control plane.

One JSON object per line. Fields passed with ``extra={...}`` are flattened
into the object, and fields bound with ``bind_log_context`` (the campaign id
of a dialer task, for instance) ride along on every record logged from that
task and the tasks it spawns.
"""

import json
import logging
import sys
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any

from callcontrol.config import Settings, get_settings

_log_context: ContextVar[dict[str, Any] | None] = ContextVar("log_context", default=None)

_RECORD_ATTRS = frozenset(vars(logging.LogRecord("", 0, "", 0, "", (), None))) | {"message", "asctime", "taskName"}
_ENVELOPE_KEYS = ("timestamp", "level", "logger", "message", "exception")

_QUIET_LOGGERS = ("httpx", "httpcore", "python_multipart", "aiosqlite", "asyncio")


def bind_log_context(**fields: Any) -> None:
    """Attach fields to every record logged from the current task."""
    _log_context.set({**(_log_context.get() or {}), **fields})


def current_log_context() -> dict[str, Any]:
    return dict(_log_context.get() or {})


class JsonFormatter(logging.Formatter):
    """Render a record, its bound context and its extras as one JSON line."""

    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        entry.update(current_log_context())

        for key, value in record.__dict__.items():
            if key in _RECORD_ATTRS:
                continue
            entry[f"extra_{key}" if key in _ENVELOPE_KEYS else key] = value

        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)

        return json.dumps(entry, default=str)


def get_logger(name: str) -> logging.Logger:
    """Module logger; output goes through the root handler set by ``setup_logging``."""
    return logging.getLogger(name)


def setup_logging(settings: Settings | None = None) -> None:
    """Send every logger to stdout as JSON at the configured level."""
    settings = settings or get_settings()

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JsonFormatter())

    root_logger = logging.getLogger()
    root_logger.handlers = [handler]
    root_logger.setLevel(settings.log_level)

    # SQL echo only in debug
    logging.getLogger("sqlalchemy.engine").setLevel(logging.INFO if settings.debug else logging.WARNING)
    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
