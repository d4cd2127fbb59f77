"""
Counter stores for the fixed-window rate limiter.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Dict, Optional

import redis.asyncio as redis

from shared.logging import get_logger


@dataclass
class RateLimitEntry:
    """Window state for one identifier."""
    count: int
    reset_time: int  # epoch milliseconds


class RateLimitStore(ABC):
    """Storage contract for rate-limit windows."""

    @abstractmethod
    async def get(self, key: str) -> Optional[RateLimitEntry]:
        ...

    @abstractmethod
    async def set_with_reset(self, key: str, entry: RateLimitEntry) -> None:
        """Store ``entry``; it may be discarded once ``entry.reset_time`` passes."""

    @abstractmethod
    async def sweep(self, now_ms: int) -> int:
        """Remove entries whose window ended before ``now_ms``. Returns the count removed."""

    async def close(self) -> None:
        """Release backend resources."""


class InMemoryRateLimitStore(RateLimitStore):
    """Process-local window map. Does not survive restarts."""

    def __init__(self):
        self._entries: Dict[str, RateLimitEntry] = {}

    async def get(self, key: str) -> Optional[RateLimitEntry]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        return RateLimitEntry(count=entry.count, reset_time=entry.reset_time)

    async def set_with_reset(self, key: str, entry: RateLimitEntry) -> None:
        self._entries[key] = RateLimitEntry(count=entry.count, reset_time=entry.reset_time)

    async def sweep(self, now_ms: int) -> int:
        stale = [key for key, entry in self._entries.items() if now_ms > entry.reset_time]
        for key in stale:
            del self._entries[key]
        return len(stale)

    def __len__(self) -> int:
        return len(self._entries)


class RedisRateLimitStore(RateLimitStore):
    """Redis-backed window map shared by every service instance.

    Each window is a hash with ``count`` and ``reset_time`` fields that
    expires one millisecond after the window ends, so sweeping is left to
    Redis. The read and the write are separate commands: two instances
    hitting the same key at once can both see the old count.
    """

    KEY_PREFIX = "rate_limit:"

    def __init__(self, redis_url: str):
        self.redis_url = redis_url
        self.logger = get_logger("solutions.rate_limiter.redis")
        self._redis: Optional[redis.Redis] = None

    async def _get_redis(self) -> redis.Redis:
        """Get Redis connection."""
        if self._redis is None:
            self._redis = redis.from_url(
                self.redis_url,
                encoding="utf-8",
                decode_responses=True,
                socket_connect_timeout=5,
                socket_timeout=5
            )
        return self._redis

    def _make_key(self, key: str) -> str:
        return f"{self.KEY_PREFIX}{key}"

    async def get(self, key: str) -> Optional[RateLimitEntry]:
        client = await self._get_redis()
        data = await client.hgetall(self._make_key(key))
        if not data:
            return None
        return RateLimitEntry(count=int(data["count"]), reset_time=int(data["reset_time"]))

    async def set_with_reset(self, key: str, entry: RateLimitEntry) -> None:
        client = await self._get_redis()
        redis_key = self._make_key(key)
        async with client.pipeline(transaction=True) as pipeline:
            pipeline.hset(redis_key, mapping={"count": entry.count, "reset_time": entry.reset_time})
            pipeline.pexpireat(redis_key, entry.reset_time + 1)
            await pipeline.execute()

    async def sweep(self, now_ms: int) -> int:
        return 0

    async def close(self) -> None:
        if self._redis is not None:
            await self._redis.aclose()
            self._redis = None
