"""
Structured JSON logging with per-fetch ``query_key``.

Usage:
    Call ``setup_logging()`` once at startup.
    The fetch coordinator sets ``query_key`` in ``contextvars`` inside each
    producer call, so every log line emitted while a key is being fetched
    includes it automatically.
"""

from __future__ import annotations

import asyncio
import contextvars
import json
import logging
import sys
from datetime import datetime, timezone

from querycache.settings import settings

# Context variable for fetch tracing
query_key_ctx: contextvars.ContextVar[str] = contextvars.ContextVar(
    "query_key", default="-"
)


def _task_name() -> str | None:
    """Name of the running asyncio task (``query:<key>``, ``poll:<key>``)."""
    try:
        task = asyncio.current_task()
    except RuntimeError:
        return None
    return task.get_name() if task is not None else None


class JSONFormatter(logging.Formatter):
    """Emit each log record as a single JSON line."""

    def format(self, record: logging.LogRecord) -> str:
        log_entry = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "query_key": query_key_ctx.get("-"),
            "task": _task_name(),
        }
        if record.exc_info and record.exc_info[1]:
            log_entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(log_entry, default=str)


def setup_logging(level: str | None = None) -> None:
    """Configure root logger with JSON output to stdout.

    ``level`` defaults to ``settings.log_level``.
    """
    root = logging.getLogger()
    root.setLevel((level or settings.log_level).upper())

    # Remove existing handlers
    for h in root.handlers[:]:
        root.removeHandler(h)

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JSONFormatter())
    root.addHandler(handler)

    # Producers talk HTTP; keep transport chatter out of the stream
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
