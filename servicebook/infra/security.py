import logging
import time
from collections import defaultdict, deque
from typing import Deque, Dict, Protocol

import redis.asyncio as redis
from redis.exceptions import RedisError
from starlette.requests import Request

logger = logging.getLogger("servicebook.rate_limit")

WINDOW_SECONDS = 60


class RateLimiter(Protocol):
    async def allow(self, key: str) -> bool: ...

    async def reset(self) -> None: ...

    async def close(self) -> None: ...


class InMemoryRateLimiter:
    def __init__(self, requests_per_minute: int) -> None:
        self.requests_per_minute = requests_per_minute
        self._requests: Dict[str, Deque[float]] = defaultdict(deque)

    async def allow(self, key: str) -> bool:
        now = time.monotonic()
        timestamps = self._requests[key]
        while timestamps and timestamps[0] <= now - WINDOW_SECONDS:
            timestamps.popleft()
        if len(timestamps) >= self.requests_per_minute:
            return False
        timestamps.append(now)
        return True

    async def reset(self) -> None:
        self._requests.clear()

    async def close(self) -> None:
        return None


class RedisRateLimiter:
    """Fixed one-minute window counter shared by every API process."""

    def __init__(
        self,
        redis_url: str,
        requests_per_minute: int,
        redis_client: redis.Redis | None = None,
    ) -> None:
        self.requests_per_minute = requests_per_minute
        self.redis = redis_client or redis.from_url(redis_url, encoding="utf-8", decode_responses=False)

    async def allow(self, key: str) -> bool:
        bucket = int(time.time() // WINDOW_SECONDS)
        redis_key = f"booking-rate:{key}:{bucket}"
        try:
            async with self.redis.pipeline(transaction=True) as pipe:
                pipe.incr(redis_key)
                pipe.expire(redis_key, WINDOW_SECONDS + 5)
                count, _ = await pipe.execute()
        except RedisError:
            logger.warning("redis rate limiter unavailable; allowing request")
            return True
        return int(count) <= self.requests_per_minute

    async def reset(self) -> None:
        try:
            cursor = 0
            while True:
                cursor, keys = await self.redis.scan(cursor=cursor, match="booking-rate:*", count=100)
                if keys:
                    await self.redis.delete(*keys)
                if cursor == 0:
                    break
        except RedisError:
            logger.warning("redis rate limiter reset failed")

    async def close(self) -> None:
        try:
            await self.redis.aclose()
        except RedisError:
            logger.warning("redis rate limiter close failed")


def create_rate_limiter(app_settings) -> RateLimiter:
    if getattr(app_settings, "redis_url", None):
        return RedisRateLimiter(app_settings.redis_url, app_settings.booking_rate_limit_per_minute)
    return InMemoryRateLimiter(app_settings.booking_rate_limit_per_minute)


def resolve_client_key(request: Request) -> str:
    subject = request.headers.get("X-User-Sub")
    if subject:
        return f"sub:{subject.strip()}"
    client_host = request.client.host if request.client else "unknown"
    return f"ip:{client_host}"
