"""
Single-line JSON logs tagged with a correlation ID.

HTTP requests get their ID from CorrelationIdMiddleware; worker cycles open a
correlation_scope so every line of one sweep shares an ID. Record identifiers
passed through `extra=` are copied into the entry, UUIDs cut to 8 characters.
"""
import json
import logging
import uuid
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Iterator, Optional

correlation_id_ctx: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)

ID_FIELDS = ("appointment_id", "backjob_id", "conversation_id")
EXTRA_FIELDS = ID_FIELDS + ("event_type", "worker")

QUIET_LOGGERS = ("uvicorn.access", "sqlalchemy.engine", "httpcore", "httpx")


def get_correlation_id() -> Optional[str]:
    return correlation_id_ctx.get()


def set_correlation_id(cid: str) -> None:
    correlation_id_ctx.set(cid)


def generate_correlation_id() -> str:
    """UUID4 hex, 32 chars."""
    return uuid.uuid4().hex


@contextmanager
def correlation_scope(prefix: str) -> Iterator[str]:
    """Tag log lines inside the block with `<prefix>-<12 hex>`, restoring the outer ID after."""
    cid = f"{prefix}-{generate_correlation_id()[:12]}"
    token = correlation_id_ctx.set(cid)
    try:
        yield cid
    finally:
        correlation_id_ctx.reset(token)


class StructuredJsonFormatter(logging.Formatter):
    """{"timestamp", "level", "correlation_id", "module", "message", [exception], [ids...]}"""

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%fZ"),
            "level": record.levelname,
            "correlation_id": get_correlation_id(),
            "module": record.name,
            "message": record.getMessage(),
        }
        if record.exc_info and record.exc_info[0] is not None:
            entry["exception"] = self.formatException(record.exc_info)

        for field in EXTRA_FIELDS:
            value = getattr(record, field, None)
            if value is None:
                continue
            entry[field] = str(value)[:8] if field in ID_FIELDS else value

        return json.dumps(entry, default=str)


def configure_structured_logging(log_level: str = "INFO") -> None:
    """Install one stdout JSON handler on the root logger. Safe to call again."""
    root = logging.getLogger()
    root.setLevel(getattr(logging, log_level.upper(), logging.INFO))

    handler = logging.StreamHandler()
    handler.setFormatter(StructuredJsonFormatter())
    root.handlers = [handler]

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
