"""
Cache Service
=============
Key-value store with TTL expiry, used for payment intent records and
read-through caching of order reads.

The cache is advisory: every Redis failure is logged and swallowed here, and
callers fall back to the source of truth. Nothing above this module ever sees
a redis exception.

pip install redis structlog
"""

import asyncio
import fnmatch
import json
from abc import ABC, abstractmethod
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple, TypeVar

import structlog

logger = structlog.get_logger().bind(component="cache")

T = TypeVar("T")


class ICache(ABC):
    """Cache interface (swap Redis for the in-memory fake in tests)"""

    @abstractmethod
    async def get(self, key: str) -> Optional[Any]:
        pass

    @abstractmethod
    async def set(self, key: str, value: Any, ttl_seconds: int) -> bool:
        pass

    @abstractmethod
    async def delete(self, key: str) -> bool:
        pass

    @abstractmethod
    async def pop(self, key: str) -> Optional[Any]:
        """Atomically read and delete a key. Only one concurrent caller gets the value."""
        pass

    @abstractmethod
    async def delete_pattern(self, pattern: str) -> int:
        pass

    @abstractmethod
    async def ping(self) -> bool:
        pass


class InMemoryCache(ICache):
    """Process-local cache with TTL expiry"""

    def __init__(self):
        self._data: Dict[str, Tuple[str, datetime]] = {}
        self._lock = asyncio.Lock()

    def _live(self, key: str) -> Optional[str]:
        entry = self._data.get(key)
        if not entry:
            return None
        raw, expires = entry
        if datetime.utcnow() >= expires:
            del self._data[key]
            return None
        return raw

    async def get(self, key: str) -> Optional[Any]:
        async with self._lock:
            raw = self._live(key)
            return json.loads(raw) if raw is not None else None

    async def set(self, key: str, value: Any, ttl_seconds: int) -> bool:
        async with self._lock:
            expires = datetime.utcnow() + timedelta(seconds=ttl_seconds)
            self._data[key] = (json.dumps(value, default=str), expires)
            return True

    async def delete(self, key: str) -> bool:
        async with self._lock:
            return self._data.pop(key, None) is not None

    async def pop(self, key: str) -> Optional[Any]:
        async with self._lock:
            raw = self._live(key)
            if raw is None:
                return None
            del self._data[key]
            return json.loads(raw)

    async def delete_pattern(self, pattern: str) -> int:
        async with self._lock:
            keys = [k for k in self._data if fnmatch.fnmatchcase(k, pattern)]
            for k in keys:
                del self._data[k]
            return len(keys)

    async def ping(self) -> bool:
        return True


class RedisCache(ICache):
    """Redis-backed cache. Failures degrade to cache misses."""

    def __init__(self, url: str):
        self._url = url
        self._redis = None
        self._initialized = False

    @property
    def connected(self) -> bool:
        return self._initialized

    async def initialize(self):
        """Initialize Redis connection"""
        try:
            import redis.asyncio as redis
            self._redis = redis.from_url(self._url, decode_responses=True)
            await self._redis.ping()
            self._initialized = True
            logger.info("redis_connected", url=self._url[:20] + "...")
        except Exception as e:
            logger.warning("redis_unavailable", error=str(e))
            self._initialized = False

    async def get(self, key: str) -> Optional[Any]:
        if not self._redis:
            return None
        try:
            raw = await self._redis.get(key)
            return json.loads(raw) if raw else None
        except Exception as e:
            logger.error("cache_get_failed", key=key, error=str(e))
            return None

    async def set(self, key: str, value: Any, ttl_seconds: int) -> bool:
        if not self._redis:
            return False
        try:
            await self._redis.set(key, json.dumps(value, default=str), ex=ttl_seconds)
            return True
        except Exception as e:
            logger.error("cache_set_failed", key=key, error=str(e))
            return False

    async def delete(self, key: str) -> bool:
        if not self._redis:
            return False
        try:
            return bool(await self._redis.delete(key))
        except Exception as e:
            logger.error("cache_delete_failed", key=key, error=str(e))
            return False

    async def pop(self, key: str) -> Optional[Any]:
        if not self._redis:
            return None
        try:
            raw = await self._redis.getdel(key)
            return json.loads(raw) if raw else None
        except Exception as e:
            logger.error("cache_pop_failed", key=key, error=str(e))
            return None

    async def delete_pattern(self, pattern: str) -> int:
        if not self._redis:
            return 0
        try:
            deleted = 0
            async for key in self._redis.scan_iter(match=pattern):
                deleted += await self._redis.delete(key)
            return deleted
        except Exception as e:
            logger.error("cache_delete_pattern_failed", pattern=pattern, error=str(e))
            return 0

    async def ping(self) -> bool:
        if not self._redis:
            return False
        try:
            return bool(await self._redis.ping())
        except Exception:
            return False

    async def close(self):
        """Close Redis connection"""
        if self._redis:
            await self._redis.aclose()


async def cache_wrapper(
    cache: ICache,
    key: str,
    fn: Callable[[], Awaitable[T]],
    ttl_seconds: int,
) -> T:
    """Read-through: return the cached value or compute, store and return it.

    ``fn`` must return something JSON-serializable. A None result is not cached.
    """
    cached = await cache.get(key)
    if cached is not None:
        return cached

    data = await fn()
    if data is not None:
        await cache.set(key, data, ttl_seconds)
    return data
