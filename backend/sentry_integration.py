"""
Recon Core - Sentry Integration

Error tracking for the API and the reconcile job. Everything here is a
no-op until init_sentry() succeeds, so callers never check for a DSN.
"""

import logging
from typing import Any, Dict, Optional

import sentry_sdk
from sentry_sdk.integrations.fastapi import FastApiIntegration
from sentry_sdk.integrations.logging import LoggingIntegration
from sentry_sdk.integrations.sqlalchemy import SqlalchemyIntegration
from sentry_sdk.utils import BadDsn

from logging_config import get_request_context

logger = logging.getLogger(__name__)

REDACTED = "[REDACTED]"

# Substrings of keys whose values never leave the process
SENSITIVE_KEYS = (
    "password", "token", "secret", "api_key", "api-key", "authorization",
    "cookie", "account_number", "bsb",
)

_enabled = False


def is_enabled() -> bool:
    return _enabled


def init_sentry(
    dsn: Optional[str],
    environment: str = "development",
    release: Optional[str] = None,
    traces_sample_rate: float = 0.0,
) -> bool:
    """
    Initialize the Sentry SDK.

    Returns:
        True when events will be sent
    """
    global _enabled

    if not dsn:
        logger.info("Sentry DSN not configured; error tracking disabled")
        return False

    try:
        sentry_sdk.init(
            dsn=dsn,
            environment=environment,
            release=release,
            traces_sample_rate=traces_sample_rate,
            send_default_pii=False,
            before_send=filter_sensitive_data,
            integrations=[
                FastApiIntegration(transaction_style="endpoint"),
                SqlalchemyIntegration(),
                LoggingIntegration(level=logging.INFO, event_level=logging.ERROR),
            ],
        )
    except BadDsn as e:
        logger.error(f"Invalid SENTRY_DSN, error tracking disabled: {e}")
        return False

    _enabled = True
    logger.info(f"Sentry enabled ({environment})")
    return True


def redact(data: Any) -> Any:
    """Replace values under sensitive keys, recursing through dicts and lists."""
    if isinstance(data, dict):
        return {
            key: REDACTED if _is_sensitive(key) else redact(value)
            for key, value in data.items()
        }
    if isinstance(data, (list, tuple)):
        return [redact(item) for item in data]
    return data


def _is_sensitive(key: Any) -> bool:
    lowered = str(key).lower()
    return any(marker in lowered for marker in SENSITIVE_KEYS)


def filter_sensitive_data(event: Dict[str, Any], hint: Dict[str, Any]) -> Dict[str, Any]:
    """before_send hook: scrub headers, bodies, extras and breadcrumb data."""
    request = event.get("request")
    if isinstance(request, dict):
        for part in ("headers", "data", "cookies"):
            if part in request:
                request[part] = redact(request[part])

    if "extra" in event:
        event["extra"] = redact(event["extra"])

    breadcrumbs = event.get("breadcrumbs")
    if isinstance(breadcrumbs, dict):
        for crumb in breadcrumbs.get("values", []):
            if "data" in crumb:
                crumb["data"] = redact(crumb["data"])

    return event


def capture_exception(exception: BaseException, context: Optional[Dict[str, Any]] = None) -> Optional[str]:
    """
    Report an exception tagged with the current request and company.

    Returns:
        The Sentry event id, or None when tracking is disabled
    """
    if not _enabled:
        return None

    with sentry_sdk.new_scope() as scope:
        for key, value in get_request_context().items():
            if value:
                scope.set_tag(key, value)
        for key, value in (context or {}).items():
            scope.set_extra(key, value)
        return sentry_sdk.capture_exception(exception)


def set_tag(key: str, value: str):
    if _enabled:
        sentry_sdk.set_tag(key, value)
