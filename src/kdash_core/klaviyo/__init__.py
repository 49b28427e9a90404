"""Klaviyo API integration: metered client, pagination, catalog, aggregates."""
from .aggregates import AggregateQueryExecutor
from .catalog import MetricCatalogResolver
from .client import KlaviyoClient
from .exceptions import (
    KlaviyoApiError,
    KlaviyoClientError,
    KlaviyoThrottledError,
    KlaviyoTransportError,
    MetricNotFoundError,
)
from .pagination import PaginatedFetcher
from .rate_limiter import RateLimiter, RedisRateLimiter

__all__ = [
    "AggregateQueryExecutor",
    "KlaviyoClient",
    "MetricCatalogResolver",
    "PaginatedFetcher",
    "RateLimiter",
    "RedisRateLimiter",
    "KlaviyoClientError",
    "KlaviyoApiError",
    "KlaviyoThrottledError",
    "KlaviyoTransportError",
    "MetricNotFoundError",
]
