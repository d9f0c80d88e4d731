"""
logging_config.py — Log formatting for the relay service.

Production emits one JSON object per line; other environments get a short
coloured console format. Scheduler and delivery code pass ``run_number``,
``message_id`` and friends through ``extra``; the request middleware adds
request-scoped context that every formatter picks up.

    logger.info("Run #%d completed", n, extra={"run_number": n, "batch_size": 2})
"""

from __future__ import annotations

import json
import logging
import sys
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from backend.app.core.config import settings

_request_context: ContextVar[Dict[str, Any]] = ContextVar("request_context", default={})

EXTRA_FIELDS = (
    "message_id",
    "delivery_id",
    "run_number",
    "batch_size",
    "consecutive_failures",
    "duration_ms",
    "status_code",
    "endpoint",
)

QUIET_LOGGERS = ("uvicorn.access", "httpx", "httpcore")


def set_request_context(**kwargs: Any) -> None:
    """Replace the request context; call with no arguments to clear it."""
    _request_context.set(kwargs)


def get_request_context() -> Dict[str, Any]:
    return _request_context.get()


def _extra_fields(record: logging.LogRecord) -> Dict[str, Any]:
    return {key: getattr(record, key) for key in EXTRA_FIELDS if hasattr(record, key)}


class JSONFormatter(logging.Formatter):
    """One JSON object per record."""

    def format(self, record: logging.LogRecord) -> str:
        entry: Dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        entry.update(_extra_fields(record))

        ctx = get_request_context()
        if ctx:
            entry["context"] = ctx

        if record.exc_info and record.exc_info[1]:
            exc = record.exc_info[1]
            entry["exception"] = {"type": type(exc).__name__, "message": str(exc)}

        return json.dumps(entry, default=str)


class PrettyFormatter(logging.Formatter):
    """``HH:MM:SS LEVEL [request] [run #n] [msg id] logger: text``"""

    COLORS = {
        "DEBUG": "\033[36m",
        "INFO": "\033[32m",
        "WARNING": "\033[33m",
        "ERROR": "\033[31m",
        "CRITICAL": "\033[35m",
    }
    RESET = "\033[0m"

    def format(self, record: logging.LogRecord) -> str:
        color = self.COLORS.get(record.levelname, self.RESET)
        tags = []

        request_id = get_request_context().get("request_id")
        if request_id:
            tags.append(f"[{request_id[:8]}]")
        run_number = getattr(record, "run_number", None)
        if run_number is not None:
            tags.append(f"[run #{run_number}]")
        message_id = getattr(record, "message_id", None)
        if message_id is not None:
            tags.append(f"[msg {message_id}]")

        prefix = f"{color}{self.formatTime(record, '%H:%M:%S')} {record.levelname:8s}{self.RESET}"
        line = " ".join([prefix, *tags, f"{record.name}: {record.getMessage()}"])

        if record.exc_info and record.exc_info[1]:
            line += f"\n  {type(record.exc_info[1]).__name__}: {record.exc_info[1]}"
        return line


def setup_logging(level: Optional[str] = None, json_output: Optional[bool] = None) -> None:
    """Install a single stdout handler on the root logger."""
    root = logging.getLogger()
    root.setLevel(getattr(logging, (level or settings.LOG_LEVEL).upper(), logging.INFO))
    root.handlers.clear()

    if json_output is None:
        json_output = settings.is_production
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JSONFormatter() if json_output else PrettyFormatter())
    root.addHandler(handler)

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy.engine").setLevel(
        logging.INFO if settings.DATABASE_ECHO else logging.WARNING
    )


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)
