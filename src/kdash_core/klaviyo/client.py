"""Async Klaviyo REST client with shared rate limiting and 429 retry."""
import asyncio
import json
import logging
import re
from typing import Any, Optional, Union

import aiohttp

from .exceptions import (
    KlaviyoApiError,
    KlaviyoThrottledError,
    KlaviyoTransportError,
)
from .rate_limiter import AsyncRateLimiter, RateLimiter


logger = logging.getLogger(__name__)

_RETRY_HINT = re.compile(r"(\d+)\s*second", re.IGNORECASE)


def _redact(text: str, credential: str) -> str:
    if not text or not credential:
        return text
    return text.replace(credential, "[REDACTED]")


def _first_error(payload: Any) -> dict:
    if isinstance(payload, dict):
        errors = payload.get("errors")
        if isinstance(errors, list) and errors and isinstance(errors[0], dict):
            return errors[0]
    return {}


def parse_retry_delay(payload: Any, retry_after: Optional[str] = None) -> Optional[float]:
    """Extract a retry delay in seconds from a 429 response.

    Looks for "N second(s)" in errors[0].detail first, then a numeric
    Retry-After header. Returns None when neither is usable.
    """
    detail = _first_error(payload).get("detail")
    if isinstance(detail, str):
        match = _RETRY_HINT.search(detail)
        if match:
            return float(match.group(1))

    if retry_after:
        try:
            return float(retry_after)
        except ValueError:
            return None

    return None


def extract_error_message(payload: Any, status: int) -> str:
    """Human message from a Klaviyo error envelope."""
    error = _first_error(payload)
    message = error.get("detail") or error.get("title")
    if not message and isinstance(payload, dict):
        message = payload.get("message")
    return str(message) if message else f"HTTP {status}"


class KlaviyoClient:
    """Authenticated, rate-limited Klaviyo API v3 client.

    One instance can serve every tenant: the credential is passed per call and
    only the rate limiter is shared state.
    """

    DEFAULT_BASE_URL = "https://a.klaviyo.com/api"
    DEFAULT_REVISION = "2024-10-15"
    AUTH_SCHEME = "Klaviyo-API-Key"

    MAX_ATTEMPTS = 3
    DEFAULT_RETRY_DELAY = 1.0  # seconds
    DEFAULT_REQUEST_TIMEOUT = 10.0  # seconds

    def __init__(
        self,
        session: aiohttp.ClientSession,
        rate_limiter: Optional[AsyncRateLimiter] = None,
        base_url: str = DEFAULT_BASE_URL,
        revision: str = DEFAULT_REVISION,
        max_attempts: int = MAX_ATTEMPTS,
        request_timeout: float = DEFAULT_REQUEST_TIMEOUT,
    ):
        """Initialize Klaviyo client.

        Args:
            session: Injected aiohttp ClientSession
            rate_limiter: Shared admission gate (a private one if None)
            base_url: API root, e.g. "https://a.klaviyo.com/api"
            revision: Value of the `revision` header sent on every request
            max_attempts: Total attempts per request when throttled
            request_timeout: Per-request timeout in seconds
        """
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        self.session = session
        self.rate_limiter = rate_limiter or RateLimiter()
        self.base_url = base_url.rstrip("/")
        self.revision = revision
        self.max_attempts = max_attempts
        self.request_timeout = request_timeout

    def _headers(self, credential: str) -> dict:
        return {
            "Authorization": f"{self.AUTH_SCHEME} {credential}",
            "Accept": "application/json",
            "Content-Type": "application/json",
            "revision": self.revision,
        }

    async def request(
        self,
        credential: str,
        endpoint: str,
        method: str = "GET",
        body: Optional[dict] = None,
        params: Optional[Union[dict, list[tuple[str, str]]]] = None,
    ) -> dict:
        """Issue one logical request, retrying only on HTTP 429.

        Args:
            credential: Tenant private API key (never logged)
            endpoint: Path below base_url, e.g. "/metrics/"
            method: HTTP method
            body: JSON body for non-GET requests
            params: Query parameters for GET requests

        Returns:
            Decoded JSON body ({} when empty)

        Raises:
            KlaviyoThrottledError: 429 on every attempt
            KlaviyoApiError: Any other non-2xx response, or a 2xx body that is
                not a JSON object
            KlaviyoTransportError: Network failure, timeout or rate limiter
                failure (not retried)
        """
        method = method.upper()
        url = f"{self.base_url}{endpoint}"
        kwargs: dict[str, Any] = {
            "headers": self._headers(credential),
            "timeout": aiohttp.ClientTimeout(total=self.request_timeout),
        }
        if method == "GET":
            if params:
                kwargs["params"] = params
        elif body is not None:
            kwargs["json"] = body

        attempt = 0
        while True:
            attempt += 1
            await self.rate_limiter.acquire()

            try:
                async with self.session.request(method, url, **kwargs) as resp:
                    if 200 <= resp.status < 300:
                        if resp.status == 204:
                            return {}
                        try:
                            data = await resp.json(content_type=None)
                        except ValueError:
                            logger.error(
                                "Non-JSON %s body from %s %s", resp.status, method, endpoint
                            )
                            raise KlaviyoApiError(
                                resp.status, "Invalid JSON in response body", endpoint
                            )
                        if data is None:
                            return {}
                        if not isinstance(data, dict):
                            raise KlaviyoApiError(
                                resp.status,
                                f"Expected a JSON object, got {type(data).__name__}",
                                endpoint,
                            )
                        return data

                    response_text = await resp.text()
                    try:
                        payload = json.loads(response_text) if response_text else {}
                    except ValueError:
                        payload = {}

                    if resp.status == 429:
                        if attempt >= self.max_attempts:
                            logger.error(
                                "Klaviyo throttled %s %s after %s attempts",
                                method,
                                endpoint,
                                attempt,
                            )
                            raise KlaviyoThrottledError(endpoint, attempt)

                        delay = parse_retry_delay(
                            payload, resp.headers.get("Retry-After")
                        )
                        if delay is None:
                            delay = self.DEFAULT_RETRY_DELAY
                        logger.warning(
                            "HTTP 429 on %s, waiting %.2fs before retry %s/%s",
                            endpoint,
                            delay,
                            attempt,
                            self.max_attempts - 1,
                        )
                        await asyncio.sleep(delay)
                        continue

                    message = extract_error_message(payload, resp.status)
                    logger.error(
                        "Klaviyo API error on %s %s (%s): %s",
                        method,
                        endpoint,
                        resp.status,
                        _redact(response_text[:500], credential),
                    )
                    raise KlaviyoApiError(
                        resp.status, _redact(message, credential), endpoint
                    )

            except (aiohttp.ClientError, asyncio.TimeoutError) as e:
                raise KlaviyoTransportError(
                    f"Network error on {method} {endpoint}: "
                    f"{_redact(str(e), credential) or type(e).__name__}"
                ) from e
