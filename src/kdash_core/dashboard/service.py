"""Wiring for snapshot builds: one client stack per process, many tenants."""
import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

import aiohttp
from redis.asyncio import Redis

from ..config import DashboardSettings
from ..klaviyo.aggregates import AggregateQueryExecutor
from ..klaviyo.catalog import MetricCatalogResolver
from ..klaviyo.client import KlaviyoClient
from ..klaviyo.pagination import PaginatedFetcher
from ..klaviyo.rate_limiter import AsyncRateLimiter, RateLimiter, RedisRateLimiter
from ..schemas.snapshot import DashboardSnapshot
from .aggregator import DashboardAggregator


logger = logging.getLogger(__name__)


def create_rate_limiter(
    settings: DashboardSettings, redis: Optional[Redis] = None
) -> AsyncRateLimiter:
    """Redis-backed limiter when a Redis client is given, else in-process."""
    if redis is not None:
        logger.info(
            "Using Redis rate limiter (min interval %.3fs)",
            settings.min_request_interval,
        )
        return RedisRateLimiter(redis, min_interval=settings.min_request_interval)
    return RateLimiter(settings.min_request_interval)


class DashboardService:
    """Builds snapshots for any tenant through a shared client and limiter."""

    def __init__(
        self,
        settings: DashboardSettings,
        session: aiohttp.ClientSession,
        rate_limiter: Optional[AsyncRateLimiter] = None,
    ) -> None:
        self.settings = settings
        self.rate_limiter = rate_limiter or create_rate_limiter(settings)

        self.client = KlaviyoClient(
            session=session,
            rate_limiter=self.rate_limiter,
            base_url=settings.base_url,
            revision=settings.api_revision,
            max_attempts=settings.max_attempts,
            request_timeout=settings.request_timeout,
        )
        self.fetcher = PaginatedFetcher(self.client)
        self.resolver = MetricCatalogResolver(self.fetcher, settings.match_policy)
        self.executor = AggregateQueryExecutor(self.client)
        self.aggregator = DashboardAggregator(
            client=self.client,
            fetcher=self.fetcher,
            resolver=self.resolver,
            executor=self.executor,
            timezone_name=settings.timezone,
            include_performance=settings.include_performance,
            metric_detail_limit=settings.metric_detail_limit,
            metric_detail_concurrency=settings.metric_detail_concurrency,
            default_deadline=settings.snapshot_deadline,
        )

    async def build_snapshot(
        self, credential: str, deadline: Optional[float] = None
    ) -> DashboardSnapshot:
        """Build one tenant's snapshot; raises only if the catalog fails."""
        return await self.aggregator.build(credential, deadline=deadline)


@asynccontextmanager
async def open_service(
    settings: DashboardSettings,
    timeout: Optional[aiohttp.ClientTimeout] = None,
) -> AsyncIterator[DashboardService]:
    """Own one HTTP session, plus a Redis client when REDIS_URL is set.

    Both are closed when the context exits.
    """
    redis: Optional[Redis] = None
    if settings.redis_url:
        redis = Redis.from_url(settings.redis_url, decode_responses=False)

    try:
        async with aiohttp.ClientSession(timeout=timeout) as session:
            yield DashboardService(
                settings,
                session,
                rate_limiter=create_rate_limiter(settings, redis),
            )
    finally:
        if redis is not None:
            await redis.aclose()
