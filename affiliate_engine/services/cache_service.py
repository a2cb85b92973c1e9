"""
Clinic-scoped cache and counter store.

Backs the public touch rate limiter and the IP intelligence cache.

Supports:
1. Redis (production, shared across instances)
2. In-memory fallback (development/testing)

Usage:
    cache = get_cache()
    await cache.set(clinic_id, "ipintel:abc", data, ttl=3600)
    count = await cache.incr(clinic_id, "rl:touch:abc:29123", ttl=60)
"""
import json
import asyncio
import logging
from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

from affiliate_engine.config import settings

logger = logging.getLogger(__name__)


class CacheBackend(ABC):
    """Abstract cache backend interface."""

    @abstractmethod
    async def get(self, key: str) -> Optional[Any]:
        """Get value from cache."""

    @abstractmethod
    async def set(self, key: str, value: Any, ttl: int = 3600) -> bool:
        """Set value in cache with TTL (seconds)."""

    @abstractmethod
    async def delete(self, key: str) -> bool:
        """Delete key from cache."""

    @abstractmethod
    async def incr(self, key: str, ttl: int) -> Optional[int]:
        """Increment a counter, starting its TTL on first increment. None if unavailable."""


class InMemoryCache(CacheBackend):
    """
    In-memory cache for development/fallback.

    Not shared between processes; use Redis when running more than one
    instance.
    """

    def __init__(self):
        self._cache: Dict[str, tuple[Any, datetime]] = {}
        self._lock = asyncio.Lock()

    def _alive(self, key: str, now: datetime) -> bool:
        entry = self._cache.get(key)
        if entry is None:
            return False
        if entry[1] <= now:
            del self._cache[key]
            return False
        return True

    async def get(self, key: str) -> Optional[Any]:
        async with self._lock:
            if self._alive(key, datetime.now(timezone.utc)):
                return self._cache[key][0]
            return None

    async def set(self, key: str, value: Any, ttl: int = 3600) -> bool:
        async with self._lock:
            expires_at = datetime.now(timezone.utc) + timedelta(seconds=ttl)
            self._cache[key] = (value, expires_at)
            return True

    async def delete(self, key: str) -> bool:
        async with self._lock:
            return self._cache.pop(key, None) is not None

    async def incr(self, key: str, ttl: int) -> Optional[int]:
        async with self._lock:
            now = datetime.now(timezone.utc)
            if self._alive(key, now):
                value, expires_at = self._cache[key]
                self._cache[key] = (value + 1, expires_at)
                return value + 1
            self._cache[key] = (1, now + timedelta(seconds=ttl))
            return 1


class RedisCache(CacheBackend):
    """Redis cache backend for production."""

    def __init__(self, redis_url: str):
        self._redis_url = redis_url
        self._client = None

    async def _get_client(self):
        if self._client is None:
            import redis.asyncio as redis
            self._client = redis.from_url(self._redis_url, decode_responses=True)
        return self._client

    async def get(self, key: str) -> Optional[Any]:
        try:
            client = await self._get_client()
            value = await client.get(key)
            if value:
                return json.loads(value)
            return None
        except Exception as e:
            logger.warning(f"Redis get failed for {key}: {e}")
            return None

    async def set(self, key: str, value: Any, ttl: int = 3600) -> bool:
        try:
            client = await self._get_client()
            await client.set(key, json.dumps(value), ex=ttl)
            return True
        except Exception as e:
            logger.warning(f"Redis set failed for {key}: {e}")
            return False

    async def delete(self, key: str) -> bool:
        try:
            client = await self._get_client()
            await client.delete(key)
            return True
        except Exception as e:
            logger.warning(f"Redis delete failed for {key}: {e}")
            return False

    async def incr(self, key: str, ttl: int) -> Optional[int]:
        try:
            client = await self._get_client()
            async with client.pipeline(transaction=True) as pipe:
                pipe.incr(key)
                pipe.expire(key, ttl, nx=True)
                count, _ = await pipe.execute()
            return int(count)
        except Exception as e:
            logger.warning(f"Redis incr failed for {key}: {e}")
            return None


class CacheService:
    """
    Clinic-isolated cache. Keys follow ``{namespace}:{clinic_id}:{key}``;
    clinic-independent keys use ``{namespace}:global:{key}``.
    """

    def __init__(self, backend: CacheBackend, namespace: str = "affiliate"):
        self._backend = backend
        self._namespace = namespace

    @property
    def backend(self) -> CacheBackend:
        return self._backend

    def _make_key(self, clinic_id: Optional[str], key: str) -> str:
        scope = str(clinic_id) if clinic_id else "global"
        return f"{self._namespace}:{scope}:{key}"

    async def get(self, clinic_id: Optional[str], key: str) -> Optional[Any]:
        return await self._backend.get(self._make_key(clinic_id, key))

    async def set(self, clinic_id: Optional[str], key: str, value: Any, ttl: int = 3600) -> bool:
        return await self._backend.set(self._make_key(clinic_id, key), value, ttl)

    async def delete(self, clinic_id: Optional[str], key: str) -> bool:
        return await self._backend.delete(self._make_key(clinic_id, key))

    async def incr(self, clinic_id: Optional[str], key: str, ttl: int) -> Optional[int]:
        return await self._backend.incr(self._make_key(clinic_id, key), ttl)


class RateLimiter:
    """
    Fixed-window request counter on top of the cache backend.

    Fails open: when the counter store is unreachable the request is
    allowed and a warning is logged by the backend.
    """

    def __init__(self, cache: CacheService, limit: int, window_seconds: int = 60):
        self.cache = cache
        self.limit = limit
        self.window_seconds = window_seconds

    async def hit(self, bucket: str, identity: str) -> bool:
        """Count one request. Returns False when the identity is over its budget."""
        window = int(datetime.now(timezone.utc).timestamp()) // self.window_seconds
        count = await self.cache.incr(None, f"rl:{bucket}:{identity}:{window}", ttl=self.window_seconds)
        if count is None:
            return True
        return count <= self.limit


# Singleton cache instance
_cache_instance: Optional[CacheService] = None


def get_cache() -> CacheService:
    """Get the cache service singleton."""
    global _cache_instance

    if _cache_instance is None:
        if settings.REDIS_URL:
            backend = RedisCache(settings.REDIS_URL)
            logger.info("Cache initialized with Redis backend")
        else:
            backend = InMemoryCache()
            logger.info("Cache initialized with in-memory backend")

        _cache_instance = CacheService(backend, namespace=settings.CACHE_NAMESPACE)

    return _cache_instance


def get_touch_rate_limiter() -> RateLimiter:
    return RateLimiter(get_cache(), limit=settings.TOUCH_RATE_LIMIT_PER_MINUTE, window_seconds=60)
