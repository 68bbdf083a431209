"""
Windowed request throttling backed by a shared counter store.

Each identity gets one counter per fixed window. The store increments the
counter atomically and expires it when the window ends, so several service
processes share one view of the limit. The limiter never waits on the store
longer than ``store_timeout_ms``; when the store is slow or unreachable the
request is admitted (fail open) unless ``fail_open`` is disabled.
"""

import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Callable, Dict, Optional, Tuple

import redis.asyncio as redis

from booking_service.config import Config
from booking_service.logging_config import logger
from booking_service.timeout_guard import guard


class CounterStore(ABC):
    """Atomic increment-with-expiry counters"""

    @abstractmethod
    async def increment(self, key: str, window_ms: int) -> Tuple[int, int]:
        """Increment ``key`` and return ``(count, ms_until_window_resets)``."""

    async def close(self):
        pass


class InMemoryCounterStore(CounterStore):
    """Single-process store with fixed windows. Used when no Redis URL is configured."""

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._counters: Dict[str, Tuple[int, float]] = {}

    def _now_ms(self) -> float:
        return self._clock() * 1000

    async def increment(self, key: str, window_ms: int) -> Tuple[int, int]:
        now = self._now_ms()
        count, window_start = self._counters.get(key, (0, now))
        if now - window_start >= window_ms:
            count, window_start = 0, now
        count += 1
        self._counters[key] = (count, window_start)
        self._evict_expired(now, window_ms)
        return count, int(window_start + window_ms - now)

    def _evict_expired(self, now: float, window_ms: int):
        if len(self._counters) < 1024:
            return
        expired = [k for k, (_, start) in self._counters.items() if now - start >= window_ms]
        for k in expired:
            self._counters.pop(k, None)


class RedisCounterStore(CounterStore):
    """Counters in Redis. Window creation, INCR and PTTL run in one MULTI/EXEC transaction."""

    def __init__(self, url: str):
        self._redis = redis.from_url(url)

    async def increment(self, key: str, window_ms: int) -> Tuple[int, int]:
        # SET NX PX opens the window with its expiry, so a counter never exists without a TTL
        async with self._redis.pipeline(transaction=True) as pipe:
            pipe.set(key, 0, px=window_ms, nx=True)
            pipe.incr(key)
            pipe.pttl(key)
            _, count, ttl = await pipe.execute()

        if ttl is None or ttl < 0:
            ttl = window_ms
        return int(count), int(ttl)

    async def close(self):
        await self._redis.aclose()


@dataclass(frozen=True)
class RateLimitDecision:
    allowed: bool
    limit: int
    remaining: int
    retry_after_ms: int = 0
    reset_at: Optional[int] = None
    degraded: bool = False

    def headers(self) -> Dict[str, str]:
        headers = {
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": str(self.remaining),
        }
        if self.reset_at is not None:
            headers["X-RateLimit-Reset"] = str(self.reset_at)
        if not self.allowed:
            headers["Retry-After"] = str(max(1, -(-self.retry_after_ms // 1000)))
        return headers


class RateLimiter:
    def __init__(self, store: CounterStore,
                 max_requests: int = Config.RATE_LIMIT_MAX_REQUESTS,
                 window_ms: int = Config.RATE_LIMIT_WINDOW_MS,
                 store_timeout_ms: int = Config.RATE_LIMIT_STORE_TIMEOUT_MS,
                 fail_open: bool = Config.RATE_LIMIT_FAIL_OPEN,
                 key_prefix: str = "ratelimit",
                 wall_clock: Callable[[], float] = time.time):
        if max_requests <= 0 or window_ms <= 0:
            raise ValueError("max_requests and window_ms must be positive")
        self.store = store
        self.max_requests = max_requests
        self.window_ms = window_ms
        self.store_timeout_ms = store_timeout_ms
        self.fail_open = fail_open
        self.key_prefix = key_prefix
        self._wall_clock = wall_clock

    async def admit(self, identity: str) -> RateLimitDecision:
        key = f"{self.key_prefix}:{identity}"
        try:
            count, ttl_ms = await guard(
                self.store.increment(key, self.window_ms),
                self.store_timeout_ms,
                f"Rate limit store did not answer within {self.store_timeout_ms}ms",
            )
        except Exception as e:
            return self._degraded(identity, e)

        ttl_ms = max(1, min(ttl_ms, self.window_ms))
        reset_at = int(self._wall_clock() + ttl_ms / 1000)
        if count <= self.max_requests:
            return RateLimitDecision(
                allowed=True,
                limit=self.max_requests,
                remaining=self.max_requests - count,
                reset_at=reset_at,
            )

        logger.info(f"Rate limit exceeded for {identity}: {count}/{self.max_requests}, retry in {ttl_ms}ms")
        return RateLimitDecision(
            allowed=False,
            limit=self.max_requests,
            remaining=0,
            retry_after_ms=ttl_ms,
            reset_at=reset_at,
        )

    def _degraded(self, identity: str, error: Exception) -> RateLimitDecision:
        if self.fail_open:
            logger.warning(f"Rate limit store unavailable ({type(error).__name__}: {error}); "
                           f"admitting {identity} without a check")
            return RateLimitDecision(allowed=True, limit=self.max_requests,
                                     remaining=self.max_requests, degraded=True)

        logger.error(f"Rate limit store unavailable ({type(error).__name__}: {error}); "
                     f"rejecting {identity}")
        return RateLimitDecision(allowed=False, limit=self.max_requests, remaining=0,
                                 retry_after_ms=self.window_ms, degraded=True)

    async def close(self):
        await self.store.close()


def build_rate_limiter() -> Optional[RateLimiter]:
    if not Config.RATE_LIMIT_ENABLED:
        logger.info("Rate limiting disabled")
        return None

    if Config.REDIS_URL:
        store = RedisCounterStore(Config.REDIS_URL)
        logger.info("Rate limiting enabled (redis store)")
    else:
        store = InMemoryCounterStore()
        logger.info("Rate limiting enabled (in-memory store)")
    return RateLimiter(store)
