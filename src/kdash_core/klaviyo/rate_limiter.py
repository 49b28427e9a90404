"""Request admission gates shared by every Klaviyo call in the process.

RateLimiter keeps the last admission time in memory behind an asyncio.Lock.
RedisRateLimiter keeps it in Redis behind a Redis lock, so several worker
processes sharing one upstream budget stay under the same ceiling.
"""
import asyncio
import logging
import time
from typing import Awaitable, Callable, Optional, Protocol

from redis.asyncio import Redis
from redis.asyncio.lock import Lock as AsyncRedisLock
from redis.exceptions import RedisError

from .exceptions import KlaviyoTransportError


logger = logging.getLogger(__name__)


class AsyncRateLimiter(Protocol):
    """Anything the client can await before issuing a request."""

    async def acquire(self) -> None:
        ...


class RateLimiter:
    """Minimum-interval gate, safe under concurrent acquire() calls.

    The compare-sleep-record step runs while holding the lock, so two callers
    can never both observe the same last admission. asyncio.Lock wakes waiters
    in FIFO order.
    """

    DEFAULT_MIN_INTERVAL = 0.25  # seconds, <= 4 req/s

    def __init__(
        self,
        min_interval: float = DEFAULT_MIN_INTERVAL,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        if min_interval < 0:
            raise ValueError("min_interval must be >= 0")
        self.min_interval = min_interval
        self._clock = clock
        self._sleep = sleep
        self._lock = asyncio.Lock()
        self._last_admission: Optional[float] = None

    @property
    def last_admission(self) -> Optional[float]:
        """Clock reading of the most recently admitted call (None before any)."""
        return self._last_admission

    async def acquire(self) -> None:
        async with self._lock:
            if self._last_admission is not None:
                while True:
                    elapsed = self._clock() - self._last_admission
                    if elapsed >= self.min_interval:
                        break
                    await self._sleep(self.min_interval - elapsed)
            self._last_admission = self._clock()


class RedisRateLimiter:
    """Minimum-interval gate whose state lives in Redis.

    Time is read from the Redis server so every process compares against the
    same clock.
    """

    LOCK_TTL_SECONDS = 10
    LOCK_BLOCKING_TIMEOUT = 30

    def __init__(
        self,
        redis: Redis,
        key: str = "kdash:klaviyo:last_admission",
        min_interval: float = RateLimiter.DEFAULT_MIN_INTERVAL,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.redis = redis
        self.key = key
        self.min_interval = min_interval
        self._sleep = sleep
        self._lock_key = f"{key}:lock"

    async def _now(self) -> float:
        seconds, microseconds = await self.redis.time()
        return seconds + microseconds / 1_000_000

    async def acquire(self) -> None:
        """Wait for this process's turn across every process sharing the key.

        Raises:
            KlaviyoTransportError: Redis unreachable or the lock not obtained
        """
        try:
            await self._acquire()
        except RedisError as e:
            raise KlaviyoTransportError(f"Rate limiter Redis error: {e}") from e

    async def _acquire(self) -> None:
        lock = AsyncRedisLock(
            self.redis,
            name=self._lock_key,
            timeout=self.LOCK_TTL_SECONDS,
            blocking=True,
            blocking_timeout=self.LOCK_BLOCKING_TIMEOUT,
        )
        acquired = await lock.acquire()
        if not acquired:
            raise KlaviyoTransportError(
                f"Could not acquire rate limiter lock {self._lock_key} "
                f"within {self.LOCK_BLOCKING_TIMEOUT}s"
            )

        try:
            raw_last = await self.redis.get(self.key)
            if raw_last is not None:
                last = float(raw_last)
                while True:
                    elapsed = await self._now() - last
                    if elapsed >= self.min_interval:
                        break
                    await self._sleep(self.min_interval - elapsed)

            now = await self._now()
            # Expire the key once it can no longer delay anyone.
            ttl_ms = max(int(self.min_interval * 1000) * 4, 1000)
            await self.redis.set(self.key, repr(now), px=ttl_ms)
        finally:
            try:
                await lock.release()
            except Exception as e:
                logger.error("Failed to release rate limiter lock: %s", e)
