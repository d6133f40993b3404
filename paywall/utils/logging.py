"""
JSON log lines tagged with the request's correlation ID.

The middleware in paywall.main assigns the ID per request; background
work without a request logs correlation_id null. Webhook fields attached
through ``extra=`` (event_id, event_type, ...) become top-level keys.
"""
import json
import logging
import sys
import uuid
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Optional

_correlation_id: ContextVar[Optional[str]] = ContextVar("paywall_correlation_id", default=None)

EXTRA_FIELDS = (
    "service",
    "event_id",
    "event_type",
    "livemode",
    "user_id",
    "source",
    "success",
    "error",
    "processing_time_ms",
    "details",
)

QUIET_LOGGERS = ("uvicorn.access", "sqlalchemy.engine", "httpcore", "httpx", "stripe")


def get_correlation_id() -> Optional[str]:
    return _correlation_id.get()


def set_correlation_id(cid: str) -> None:
    _correlation_id.set(cid)


def generate_correlation_id() -> str:
    """32 hex characters."""
    return uuid.uuid4().hex


class StructuredJsonFormatter(logging.Formatter):
    """One JSON object per record. Unset extras are left out."""

    def format(self, record: logging.LogRecord) -> str:
        payload = dict(
            timestamp=datetime.fromtimestamp(record.created, timezone.utc).strftime(
                "%Y-%m-%dT%H:%M:%S.%fZ"
            ),
            level=record.levelname,
            correlation_id=get_correlation_id(),
            module=record.name,
            message=record.getMessage(),
        )
        payload.update(
            (field, getattr(record, field))
            for field in EXTRA_FIELDS
            if getattr(record, field, None) is not None
        )
        if record.exc_info and record.exc_info[0] is not None:
            payload["exception"] = self.formatException(record.exc_info)
        return json.dumps(payload, default=str)


def configure_structured_logging(log_level: str = "INFO") -> None:
    """Route the root logger through a single JSON stdout handler."""
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(StructuredJsonFormatter())

    root = logging.getLogger()
    root.handlers = [handler]
    level = logging.getLevelName((log_level or "INFO").upper())
    root.setLevel(level if isinstance(level, int) else logging.INFO)

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
