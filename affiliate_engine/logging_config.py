"""Structured logging for the affiliate engine.

In dev: human-readable lines
In prod (LOG_FORMAT=json): JSON lines carrying the request id, so a payout
dispatch can be followed from the admin call through every rail request.
"""
from __future__ import annotations

import json
import logging
import sys
from datetime import datetime, timezone

from config.settings import settings


class RequestIDFilter(logging.Filter):
    """Copy the current request id onto every record."""

    def filter(self, record: logging.LogRecord) -> bool:
        from affiliate_engine.middleware.request_id import request_id_var
        if not hasattr(record, "request_id"):
            record.request_id = request_id_var.get() or "-"
        return True


class JSONFormatter(logging.Formatter):
    """Emit structured JSON log lines."""

    # Extra fields services attach via `extra=` that should reach the aggregator
    _EXTRA_FIELDS = ("commission_id", "affiliate_id", "order_id", "rail", "outcome", "event_id")

    def format(self, record: logging.LogRecord) -> str:
        log = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        if record.exc_info and record.exc_info[1]:
            log["exception"] = self.formatException(record.exc_info)
        rid = getattr(record, "request_id", None)
        if rid and rid != "-":
            log["request_id"] = rid
        for field in self._EXTRA_FIELDS:
            if hasattr(record, field):
                log[field] = getattr(record, field)
        return json.dumps(log, default=str)


def setup_logging(log_format: str | None = None, log_level: str | None = None) -> None:
    """Configure the root logger from LOG_FORMAT / LOG_LEVEL."""
    log_format = log_format or settings.LOG_FORMAT
    log_level = (log_level or settings.LOG_LEVEL).upper()

    root = logging.getLogger()
    root.setLevel(getattr(logging, log_level, logging.INFO))
    root.handlers.clear()

    handler = logging.StreamHandler(sys.stdout)
    handler.addFilter(RequestIDFilter())
    if log_format == "json":
        handler.setFormatter(JSONFormatter())
    else:
        handler.setFormatter(logging.Formatter(
            "%(asctime)s %(levelname)-8s [%(request_id)s] %(name)s: %(message)s",
            datefmt="%H:%M:%S",
        ))

    root.addHandler(handler)

    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)
