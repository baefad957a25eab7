"""Structured logging configuration with correlation context.

Log records carry the request id plus the checkout session and payment id
being processed, so a single purchase can be traced from the 402 response
through verification to the ledger write.
"""
from __future__ import annotations

import json
import logging
import sys
import uuid
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Optional

request_id_var: ContextVar[Optional[str]] = ContextVar("request_id", default=None)
session_id_var: ContextVar[Optional[str]] = ContextVar("session_id", default=None)
payment_id_var: ContextVar[Optional[str]] = ContextVar("payment_id", default=None)

_CONTEXT_FIELDS = ("request_id", "session_id", "payment_id")

# attributes every LogRecord has; anything else came in through ``extra``
_RESERVED = frozenset(vars(logging.makeLogRecord({}))) | {"message", "asctime", *_CONTEXT_FIELDS}


class CorrelationFilter(logging.Filter):
    """Logging filter that copies correlation context onto log records."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.request_id = request_id_var.get()
        record.session_id = session_id_var.get()
        record.payment_id = payment_id_var.get()
        return True


class StructuredFormatter(logging.Formatter):
    """JSON formatter for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
        }

        for field in _CONTEXT_FIELDS:
            value = getattr(record, field, None)
            if value:
                log_data[field] = value

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        # Extra fields passed via ``logger.info(..., extra={...})``
        for key, value in record.__dict__.items():
            if key not in _RESERVED:
                log_data[key] = value

        return json.dumps(log_data, default=str)


def setup_logging(level: str = "INFO", json_format: bool = True) -> None:
    """Install one stdout handler on the root logger, replacing any others."""
    root = logging.getLogger()
    root.setLevel(level.upper())
    for existing in list(root.handlers):
        root.removeHandler(existing)

    if json_format:
        formatter: logging.Formatter = StructuredFormatter()
    else:
        formatter = logging.Formatter(
            "%(asctime)s - %(name)s - %(levelname)s - "
            "[%(request_id)s] %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(formatter)
    handler.addFilter(CorrelationFilter())
    root.addHandler(handler)


def generate_request_id() -> str:
    """Generate a new request ID."""
    return f"req_{uuid.uuid4().hex[:16]}"


def set_request_id(request_id: str) -> None:
    request_id_var.set(request_id)


def get_request_id() -> Optional[str]:
    return request_id_var.get()


def set_payment_context(
    session_id: Optional[str] = None,
    payment_id: Optional[str] = None,
) -> None:
    """Attach checkout session and payment id to subsequent log records."""
    if session_id is not None:
        session_id_var.set(session_id)
    if payment_id is not None:
        payment_id_var.set(payment_id)


def clear_context() -> None:
    """Clear all context variables."""
    request_id_var.set(None)
    session_id_var.set(None)
    payment_id_var.set(None)


__all__ = [
    "CorrelationFilter",
    "StructuredFormatter",
    "setup_logging",
    "generate_request_id",
    "set_request_id",
    "get_request_id",
    "set_payment_context",
    "clear_context",
    "request_id_var",
    "session_id_var",
    "payment_id_var",
]
