"""
Cache Service

Memoizes expensive pipeline artifacts (embeddings, search results, query
analysis, retrieval results) with a time-to-live.

Backends:
---------
- MemoryCacheBackend: in-process dict, expired entries evicted lazily on
  the next write or by an explicit sweep
- RedisCacheBackend: shared across workers, expiry handled by Redis (EX)

Concurrency:
------------
Entries are written whole, so concurrent first-writers for the same key
resolve as last-write-wins. Values are copied on the way in and out so a
caller mutating its result list never alters what is cached.
"""

import copy
import hashlib
import json
import logging
import time
from typing import Any, Callable, Dict, List, Optional

from redis.asyncio import Redis

from docrag.core.config import settings

logger = logging.getLogger(__name__)

EMBEDDING_PREFIX = "emb:"
SEARCH_PREFIX = "search:"
QUERY_ANALYSIS_PREFIX = "agent:query_analysis:"
RETRIEVAL_PREFIX = "agent:retrieval:"
RERANKING_PREFIX = "agent:reranking:"
COMPRESSION_PREFIX = "agent:compression:"


def hash_key(*parts: Any) -> str:
    """Deterministic sha256 over the JSON form of the key parts."""
    raw = json.dumps(parts, sort_keys=True, default=str)
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()


class CacheEntry:
    """A cached value with its creation and expiry times."""

    __slots__ = ("key", "value", "created_at", "expires_at")

    def __init__(self, key: str, value: Any, created_at: float, expires_at: float):
        self.key = key
        self.value = value
        self.created_at = created_at
        self.expires_at = expires_at

    def is_expired(self, now: float) -> bool:
        return now >= self.expires_at


class MemoryCacheBackend:
    """Process-local TTL cache."""

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._entries: Dict[str, CacheEntry] = {}
        self._clock = clock

    async def get(self, key: str) -> Optional[Any]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        if entry.is_expired(self._clock()):
            # Never serve an expired value; removal happens on the next write/sweep
            return None
        return copy.deepcopy(entry.value)

    async def set(self, key: str, value: Any, ttl_seconds: int) -> None:
        now = self._clock()
        self._evict_expired(now)
        self._entries[key] = CacheEntry(key, copy.deepcopy(value), now, now + ttl_seconds)

    async def delete(self, key: str) -> bool:
        return self._entries.pop(key, None) is not None

    async def clear(self) -> None:
        self._entries.clear()

    async def sweep(self) -> int:
        return self._evict_expired(self._clock())

    def _evict_expired(self, now: float) -> int:
        expired = [key for key, entry in self._entries.items() if entry.is_expired(now)]
        for key in expired:
            del self._entries[key]
        return len(expired)

    def __len__(self) -> int:
        return len(self._entries)


class RedisCacheBackend:
    """Redis-backed TTL cache (JSON-serialized values)."""

    def __init__(self, redis: Redis, namespace: str = "docrag:"):
        self.redis = redis
        self.namespace = namespace

    async def get(self, key: str) -> Optional[Any]:
        raw = await self.redis.get(self.namespace + key)
        if raw is None:
            return None
        return json.loads(raw)

    async def set(self, key: str, value: Any, ttl_seconds: int) -> None:
        await self.redis.set(self.namespace + key, json.dumps(value, default=str), ex=ttl_seconds)

    async def delete(self, key: str) -> bool:
        return bool(await self.redis.delete(self.namespace + key))

    async def clear(self) -> None:
        async for key in self.redis.scan_iter(match=f"{self.namespace}*"):
            await self.redis.delete(key)

    async def sweep(self) -> int:
        # Redis expires keys itself
        return 0


class CacheService:
    """
    TTL cache for pipeline artifacts.

    Cache failures are logged and treated as misses; they never fail the
    request that triggered them.

    Usage:
    ------
    cache = CacheService()

    key = cache.make_key(RETRIEVAL_PREFIX, query, user_id)
    results = await cache.get(key)
    if results is None:
        results = await compute()
        await cache.set(key, results, ttl_seconds=3600)
    """

    def __init__(
        self,
        backend: Optional[Any] = None,
        default_ttl_seconds: Optional[int] = None
    ):
        self.backend = backend or MemoryCacheBackend()
        self.default_ttl_seconds = default_ttl_seconds or settings.CACHE_TTL_SECONDS

    @staticmethod
    def make_key(prefix: str, *parts: Any) -> str:
        return f"{prefix}{hash_key(*parts)}"

    async def get(self, key: str) -> Optional[Any]:
        try:
            value = await self.backend.get(key)
        except Exception as e:
            logger.warning(f"Cache read failed for {key[:40]}: {e}")
            return None
        if value is not None:
            logger.debug(f"Cache hit: {key[:40]}")
        return value

    async def set(self, key: str, value: Any, ttl_seconds: Optional[int] = None) -> None:
        try:
            await self.backend.set(key, value, ttl_seconds or self.default_ttl_seconds)
        except Exception as e:
            logger.warning(f"Cache write failed for {key[:40]}: {e}")

    async def remove(self, key: str) -> bool:
        try:
            return await self.backend.delete(key)
        except Exception as e:
            logger.warning(f"Cache delete failed for {key[:40]}: {e}")
            return False

    async def clear_all(self) -> None:
        await self.backend.clear()
        logger.info("Cache cleared")

    async def sweep_expired(self) -> int:
        removed = await self.backend.sweep()
        if removed:
            logger.debug(f"Swept {removed} expired cache entries")
        return removed

    # ========================================
    # Typed helpers
    # ========================================

    async def get_cached_embedding(self, text: str) -> Optional[List[float]]:
        return await self.get(self.make_key(EMBEDDING_PREFIX, text))

    async def set_cached_embedding(self, text: str, embedding: List[float]) -> None:
        await self.set(self.make_key(EMBEDDING_PREFIX, text), embedding, settings.EMBEDDING_CACHE_TTL_SECONDS)

    async def get_search_results(self, search_type: str, *parts: Any) -> Optional[List[Dict[str, Any]]]:
        return await self.get(self.make_key(f"{SEARCH_PREFIX}{search_type}:", *parts))

    async def set_search_results(self, search_type: str, results: List[Dict[str, Any]], *parts: Any) -> None:
        await self.set(
            self.make_key(f"{SEARCH_PREFIX}{search_type}:", *parts),
            results,
            settings.SEARCH_CACHE_TTL_SECONDS
        )


# Global cache instance
_cache_service: Optional[CacheService] = None


async def get_cache_service() -> CacheService:
    """
    Get or create the global cache service.

    Uses Redis when CACHE_BACKEND=redis, otherwise an in-process cache.
    """
    global _cache_service

    if _cache_service is None:
        if settings.CACHE_BACKEND == "redis":
            from docrag.db.redis import get_redis
            _cache_service = CacheService(RedisCacheBackend(await get_redis()))
        else:
            _cache_service = CacheService(MemoryCacheBackend())
        logger.info(f"Created global CacheService ({settings.CACHE_BACKEND} backend)")

    return _cache_service
