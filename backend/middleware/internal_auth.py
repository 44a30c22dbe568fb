"""
Internal Service Authentication

Reconciliation endpoints are called by other services (the scheduler, the
bookkeeping backend, support tooling), never by end users. Each caller
sends a shared key:

    X-Internal-Api-Key: <key>
    X-Service-Name: <caller>        (optional, recorded as the run actor)

Keys come from INTERNAL_API_KEY and/or the comma-separated
INTERNAL_API_KEYS (for rotation). They are read once; call
reset_api_key_cache() after changing the environment.
"""

import hmac
import logging
import os
from dataclasses import dataclass
from functools import lru_cache
from typing import FrozenSet, Optional

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import APIKeyHeader

logger = logging.getLogger(__name__)

API_KEY_HEADER = "X-Internal-Api-Key"
SERVICE_NAME_HEADER = "X-Service-Name"
KEY_ENV_VARS = ("INTERNAL_API_KEY", "INTERNAL_API_KEYS")

api_key_header = APIKeyHeader(name=API_KEY_HEADER, auto_error=False)


@dataclass(frozen=True)
class InternalService:
    """An authenticated caller."""
    name: str
    key_suffix: str


@lru_cache(maxsize=1)
def configured_keys() -> FrozenSet[str]:
    keys = frozenset(
        key.strip()
        for env_var in KEY_ENV_VARS
        for key in os.environ.get(env_var, "").split(",")
        if key.strip()
    )
    if not keys:
        logger.warning("No internal API keys configured; reconciliation endpoints will return 503")
    return keys


def reset_api_key_cache():
    configured_keys.cache_clear()


def is_valid_key(api_key: Optional[str]) -> bool:
    """Compare against every configured key in constant time."""
    if not api_key:
        return False
    candidate = api_key.encode()
    matches = [hmac.compare_digest(candidate, key.encode()) for key in configured_keys()]
    return any(matches)


async def require_internal_service(
    request: Request,
    api_key: Optional[str] = Depends(api_key_header)
) -> InternalService:
    """
    FastAPI dependency for reconciliation endpoints.

    Raises:
        HTTPException: 503 if no keys are configured, 401 if the header is
            missing, 403 if the key does not match
    """
    caller = request.headers.get(SERVICE_NAME_HEADER) or "unknown"

    if not configured_keys():
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Internal authentication not configured"
        )

    if not api_key:
        logger.warning("Rejected request without API key", extra={"caller": caller, "path": request.url.path})
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=f"Missing {API_KEY_HEADER} header",
            headers={"WWW-Authenticate": "ApiKey"}
        )

    if not is_valid_key(api_key):
        logger.warning(
            "Rejected request with unknown API key",
            extra={"caller": caller, "key_suffix": api_key[-4:], "path": request.url.path}
        )
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Invalid API key")

    return InternalService(name=caller, key_suffix=api_key[-4:])
