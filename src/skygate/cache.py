"""Short-lived caches for panel sessions and idempotent upstream reads.

Two backends share one async interface: an in-process dictionary (the
default) and Redis (when ``SKYGATE_REDIS_URL`` is set, so several gateway
workers share one panel session). A cache failure is a miss, never a
request failure.
"""

from __future__ import annotations

import inspect
import time
from threading import Lock
from typing import Any, Protocol

from redis.asyncio import Redis

from skygate.logging import get_logger

logger = get_logger(__name__)


class TTLCache(Protocol):
    async def get(self, key: str) -> str | None: ...

    async def set(self, key: str, value: str, ttl_seconds: int) -> None: ...

    async def delete(self, key: str) -> None: ...

    async def health(self) -> bool: ...

    async def close(self) -> None: ...


class MemoryCache:
    """In-process TTL cache with lazy expiry."""

    def __init__(
        self,
        max_entries: int = 1024,
        clock: Any = time.monotonic,
    ) -> None:
        self.max_entries = max_entries
        self._clock = clock
        self._entries: dict[str, tuple[float, str]] = {}
        self._lock = Lock()

    def _purge_expired(self, now: float) -> None:
        expired = [key for key, (expires, _) in self._entries.items() if expires <= now]
        for key in expired:
            del self._entries[key]

    async def get(self, key: str) -> str | None:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            expires, value = entry
            if expires <= self._clock():
                del self._entries[key]
                return None
            return value

    async def set(self, key: str, value: str, ttl_seconds: int) -> None:
        if ttl_seconds <= 0:
            return
        with self._lock:
            now = self._clock()
            if len(self._entries) >= self.max_entries:
                self._purge_expired(now)
            if len(self._entries) >= self.max_entries:
                oldest = min(self._entries, key=lambda item: self._entries[item][0])
                del self._entries[oldest]
            self._entries[key] = (now + ttl_seconds, value)

    async def delete(self, key: str) -> None:
        with self._lock:
            self._entries.pop(key, None)

    async def health(self) -> bool:
        return True

    async def close(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        with self._lock:
            self._purge_expired(self._clock())
            return len(self._entries)


class RedisCache:
    """TTL cache stored in Redis under a common key prefix."""

    def __init__(self, redis: Redis, prefix: str = "skygate:cache") -> None:
        self.redis = redis
        self.prefix = prefix

    def _key(self, key: str) -> str:
        return f"{self.prefix}:{key}"

    async def get(self, key: str) -> str | None:
        try:
            value = await self.redis.get(self._key(key))
        except Exception as exc:
            logger.warning("cache_get_failed", backend="redis", error=str(exc))
            return None
        if isinstance(value, bytes):
            return value.decode("utf-8")
        return value

    async def set(self, key: str, value: str, ttl_seconds: int) -> None:
        if ttl_seconds <= 0:
            return
        try:
            await self.redis.set(self._key(key), value, ex=ttl_seconds)
        except Exception as exc:
            logger.warning("cache_set_failed", backend="redis", error=str(exc))

    async def delete(self, key: str) -> None:
        try:
            await self.redis.delete(self._key(key))
        except Exception as exc:
            logger.warning("cache_delete_failed", backend="redis", error=str(exc))

    async def health(self) -> bool:
        try:
            await self.redis.ping()
            return True
        except Exception:
            return False

    async def close(self) -> None:
        close_result = getattr(self.redis, "aclose", None) or getattr(self.redis, "close", None)
        if callable(close_result):
            result = close_result()
            if inspect.isawaitable(result):
                await result


def create_redis_client(redis_url: str) -> Redis:
    """Create a Redis client with a bounded connection pool."""
    return Redis.from_url(redis_url, decode_responses=True, max_connections=20)


def create_cache(redis_url: str | None) -> TTLCache:
    """Return the Redis cache when a URL is configured, else the memory cache."""
    if redis_url:
        logger.info("cache_backend_selected", backend="redis")
        return RedisCache(create_redis_client(redis_url))
    return MemoryCache()
