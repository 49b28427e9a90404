"""Shared-secret guard for the snapshot endpoints.

Snapshot callers send the dashboard key in X-DASHBOARD-API-KEY. The Klaviyo
private key travels in the request body and is unrelated to this check.
"""
import logging
import os
import secrets
from typing import Optional

from fastapi import HTTPException, Security, status
from fastapi.security import APIKeyHeader


logger = logging.getLogger(__name__)

API_KEY_HEADER = "X-DASHBOARD-API-KEY"
API_KEY_ENV = "DASHBOARD_API_KEY"

api_key_header = APIKeyHeader(
    name=API_KEY_HEADER,
    auto_error=False,
    description="Dashboard service key (DASHBOARD_API_KEY)",
)


def _configured_key() -> str:
    key = os.getenv(API_KEY_ENV, "").strip()
    if not key:
        raise RuntimeError(f"{API_KEY_ENV} environment variable not configured")
    return key


async def require_api_key(
    api_key: Optional[str] = Security(api_key_header),
) -> None:
    """Reject callers whose header does not match DASHBOARD_API_KEY.

    The comparison is constant-time over the UTF-8 bytes of both keys.

    Raises:
        RuntimeError: DASHBOARD_API_KEY is unset (server misconfiguration)
        HTTPException: 401 for a missing or wrong key
    """
    expected = _configured_key()

    if api_key is None or not secrets.compare_digest(
        api_key.encode("utf-8"), expected.encode("utf-8")
    ):
        logger.warning(
            "Rejected snapshot request: %s",
            "missing API key" if api_key is None else "invalid API key",
        )
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid API key",
            headers={"WWW-Authenticate": "API-Key"},
        )
