from __future__ import annotations

import logging
import json
import sys
from datetime import datetime, timezone
from contextvars import ContextVar
from typing import Optional

from circulation.core.config import settings

# Request-scoped data
request_id_ctx: ContextVar[Optional[str]] = ContextVar("request_id", default=None)
current_user_id_ctx: ContextVar[Optional[str]] = ContextVar("current_user_id", default=None)
# Set for the duration of one overdue sweep
sweep_id_ctx: ContextVar[Optional[str]] = ContextVar("sweep_id", default=None)

_CONTEXT_FIELDS = (
    ("request_id", request_id_ctx),
    ("user_id", current_user_id_ctx),
    ("sweep_id", sweep_id_ctx),
)


class JSONFormatter(logging.Formatter):
    """Structured JSON log formatter."""

    def format(self, record: logging.LogRecord) -> str:
        log_entry = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        for field, ctx in _CONTEXT_FIELDS:
            value = ctx.get()
            if value:
                log_entry[field] = value

        # logger.info(..., extra={"extra_data": {...}})
        if hasattr(record, "extra_data"):
            log_entry.update(record.extra_data)

        if record.exc_info and record.exc_info[0] is not None:
            log_entry["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_entry, default=str)


def setup_logging() -> None:
    """Configure structured JSON logging for the service."""
    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO))

    root_logger.handlers.clear()

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JSONFormatter())
    root_logger.addHandler(handler)

    # Reduce noise from third-party loggers
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
    logging.getLogger("aiosqlite").setLevel(logging.WARNING)


def get_logger(name: str) -> logging.Logger:
    """Get a named logger."""
    return logging.getLogger(name)
