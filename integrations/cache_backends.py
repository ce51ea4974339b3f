#!/usr/bin/env python3
"""
Cache Backend Implementations

Response cache backends used by the HTTP transport: an in-process TTL cache
and a Redis backend for sharing cached responses between processes.
"""

import json
import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional

import redis.asyncio as redis

from .cache import TTLCache
from .settings import IntegrationSettings

logger = logging.getLogger(__name__)


class CacheBackend(ABC):
    """Abstract base class for cache backends."""

    @abstractmethod
    async def get(self, key: str) -> Optional[Any]:
        """Get value from cache."""

    @abstractmethod
    async def set(self, key: str, value: Any, ttl: Optional[float] = None) -> None:
        """Set value in cache with optional TTL."""

    @abstractmethod
    async def delete(self, key: str) -> bool:
        """Delete key from cache."""

    @abstractmethod
    async def clear(self) -> None:
        """Clear all cache entries."""

    @abstractmethod
    async def get_stats(self) -> Dict[str, Any]:
        """Get cache statistics."""

    async def close(self) -> None:
        """Release backend resources."""


class MemoryBackend(CacheBackend):
    """In-memory cache backend using TTLCache."""

    def __init__(self, max_size: int = 1000, default_ttl: float = 300):
        self.cache = TTLCache(max_size=max_size, default_ttl=default_ttl)

    async def get(self, key: str) -> Optional[Any]:
        return await self.cache.get(key, direct_key=True)

    async def set(self, key: str, value: Any, ttl: Optional[float] = None) -> None:
        await self.cache.set(key, value, ttl=ttl, direct_key=True)

    async def delete(self, key: str) -> bool:
        return await self.cache.delete(key, direct_key=True)

    async def clear(self) -> None:
        await self.cache.clear()

    async def get_stats(self) -> Dict[str, Any]:
        return {"backend": "memory", **self.cache.get_stats()}


class RedisBackend(CacheBackend):
    """Redis cache backend for sharing cached responses between workers."""

    def __init__(
        self,
        redis_url: str = "redis://localhost:6379",
        key_prefix: str = "integrations:",
        client: Optional[Any] = None,
    ):
        self.redis_url = redis_url
        self.key_prefix = key_prefix
        self.redis_client = client
        self._stats = {"hits": 0, "misses": 0, "sets": 0, "deletes": 0, "errors": 0}

    def _get_client(self):
        if self.redis_client is None:
            self.redis_client = redis.from_url(self.redis_url)
        return self.redis_client

    def _make_key(self, key: str) -> str:
        return f"{self.key_prefix}{key}"

    async def get(self, key: str) -> Optional[Any]:
        try:
            data = await self._get_client().get(self._make_key(key))
        except redis.RedisError as e:
            self._stats["errors"] += 1
            logger.warning("Redis cache get failed for %s: %s", key, e)
            return None

        if data is None:
            self._stats["misses"] += 1
            return None

        self._stats["hits"] += 1
        if isinstance(data, bytes):
            data = data.decode("utf-8")
        return json.loads(data)

    async def set(self, key: str, value: Any, ttl: Optional[float] = None) -> None:
        data = json.dumps(value)
        try:
            client = self._get_client()
            if ttl:
                await client.setex(self._make_key(key), max(1, int(ttl)), data)
            else:
                await client.set(self._make_key(key), data)
            self._stats["sets"] += 1
        except redis.RedisError as e:
            self._stats["errors"] += 1
            logger.warning("Redis cache set failed for %s: %s", key, e)

    async def delete(self, key: str) -> bool:
        try:
            result = await self._get_client().delete(self._make_key(key))
        except redis.RedisError as e:
            self._stats["errors"] += 1
            logger.warning("Redis cache delete failed for %s: %s", key, e)
            return False
        self._stats["deletes"] += 1
        return result > 0

    async def clear(self) -> None:
        client = self._get_client()
        async for key in client.scan_iter(match=f"{self.key_prefix}*"):
            await client.delete(key)

    async def get_stats(self) -> Dict[str, Any]:
        lookups = self._stats["hits"] + self._stats["misses"]
        return {
            **self._stats,
            "backend": "redis",
            "hit_rate": self._stats["hits"] / lookups if lookups else 0.0,
        }

    async def close(self) -> None:
        if self.redis_client is not None:
            await self.redis_client.aclose()


def create_cache_backend(settings: IntegrationSettings, provider: str) -> Optional[CacheBackend]:
    """Build the response cache configured in ``settings`` (None when disabled)."""
    if not settings.cache_enabled:
        return None
    if settings.cache_backend == "memory":
        return MemoryBackend(
            max_size=settings.cache_max_size, default_ttl=settings.cache_ttl_seconds
        )
    if settings.cache_backend == "redis":
        return RedisBackend(
            redis_url=settings.redis_url, key_prefix=f"integrations:{provider}:"
        )
    raise ValueError(f"Unsupported cache backend: {settings.cache_backend}")
