"""
Recon Core - Structured Logging

One stream handler on the root logger. Production emits a JSON object per
record for log aggregation; other environments get a single text line.

request_id and company_id are held in context variables so concurrent
requests (and the tasks a reconciliation run spawns) each log their own.
"""

import json
import logging
import os
import sys
import traceback
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any, Dict, Optional, TextIO

_request_id: ContextVar[Optional[str]] = ContextVar("request_id", default=None)
_company_id: ContextVar[Optional[str]] = ContextVar("company_id", default=None)

# Attributes every LogRecord has; anything else came in through `extra`
_STANDARD_ATTRS = frozenset(
    logging.LogRecord("", 0, "", 0, "", (), None).__dict__
) | {"message", "asctime", "request_id", "company_id"}

TEXT_FORMAT = "%(asctime)s %(levelname)-7s [%(request_id)s] %(name)s: %(message)s"

QUIET_LOGGERS = ("uvicorn.access", "sqlalchemy.engine", "aiosqlite", "asyncio")


class JSONFormatter(logging.Formatter):
    """Render a record as one JSON line."""

    def __init__(self, service_name: str = "recon-core"):
        super().__init__()
        self.service_name = service_name
        self.environment = os.environ.get("ENVIRONMENT", "development")

    def format(self, record: logging.LogRecord) -> str:
        payload: Dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "service": self.service_name,
            "environment": self.environment,
            "request_id": getattr(record, "request_id", None),
            "company_id": getattr(record, "company_id", None),
        }

        extra = {k: v for k, v in record.__dict__.items() if k not in _STANDARD_ATTRS}
        if extra:
            payload["extra"] = extra

        if record.exc_info and record.exc_info[0]:
            payload["exception"] = {
                "type": record.exc_info[0].__name__,
                "message": str(record.exc_info[1]),
                "traceback": "".join(traceback.format_exception(*record.exc_info)),
            }

        return json.dumps(payload, default=str)


class RequestContextFilter(logging.Filter):
    """
    Copy the current request context onto each record.

    Values passed explicitly through `extra` win over the context.
    """

    def filter(self, record: logging.LogRecord) -> bool:
        if getattr(record, "request_id", None) is None:
            record.request_id = _request_id.get()
        if getattr(record, "company_id", None) is None:
            record.company_id = _company_id.get()
        return True


def setup_logging(
    level: str = "INFO",
    json_format: bool = True,
    service_name: str = "recon-core",
    stream: Optional[TextIO] = None
) -> logging.Logger:
    """
    Install the application handler on the root logger.

    Args:
        level: Root log level name
        json_format: JSON lines (production) instead of text
        service_name: Stamped on JSON records
        stream: Output stream, stdout by default; the reconcile job passes
            stderr so its JSON result stays alone on stdout

    Returns:
        The root logger
    """
    log_level = getattr(logging, level.upper(), logging.INFO)

    handler = logging.StreamHandler(stream or sys.stdout)
    handler.setLevel(log_level)
    handler.addFilter(RequestContextFilter())
    handler.setFormatter(JSONFormatter(service_name) if json_format else logging.Formatter(TEXT_FORMAT))

    root = logging.getLogger()
    for existing in list(root.handlers):
        root.removeHandler(existing)
    root.addHandler(handler)
    root.setLevel(log_level)

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    return root


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)


def set_request_context(request_id: Optional[str] = None, company_id: Optional[str] = None):
    """Bind context for the current task. Arguments left as None keep their value."""
    if request_id is not None:
        _request_id.set(request_id)
    if company_id is not None:
        _company_id.set(company_id)


def get_request_context() -> Dict[str, Optional[str]]:
    return {"request_id": _request_id.get(), "company_id": _company_id.get()}


def clear_request_context():
    _request_id.set(None)
    _company_id.set(None)
