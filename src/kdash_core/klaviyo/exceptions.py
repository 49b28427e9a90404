"""Custom exceptions for the Klaviyo client."""
from typing import Optional


class KlaviyoClientError(Exception):
    """Base exception for all Klaviyo client errors."""


class KlaviyoTransportError(KlaviyoClientError):
    """Raised for connectivity failures (timeout, DNS, connection reset)."""


class KlaviyoThrottledError(KlaviyoClientError):
    """Raised when HTTP 429 persists after the final retry attempt."""

    def __init__(self, endpoint: str, attempts: int):
        self.endpoint = endpoint
        self.attempts = attempts
        super().__init__(
            f"Throttled by Klaviyo after {attempts} attempts: endpoint={endpoint}"
        )


class KlaviyoApiError(KlaviyoClientError):
    """Raised for non-2xx responses other than 429."""

    def __init__(self, status: int, message: str, endpoint: Optional[str] = None):
        self.status = status
        self.message = message
        self.endpoint = endpoint
        super().__init__(f"Klaviyo API Error (HTTP {status}): {message}")


class MetricNotFoundError(KlaviyoClientError):
    """Catalog resolution miss.

    Never raised. Instances are attached to degraded sub-fetch outcomes so a
    missing metric is distinguishable from a genuine zero.
    """

    def __init__(self, metric_name: str):
        self.metric_name = metric_name
        super().__init__(f"Metric not found in catalog: {metric_name!r}")
