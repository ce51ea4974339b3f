#!/usr/bin/env python3
"""
TTL Caching

Async-safe LRU cache with per-entry time-to-live, used for response caching,
token caches and secret caches across the integrations.
"""

import asyncio
import hashlib
import time
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Optional


@dataclass
class CacheEntry:
    """Cache entry with value, expiration time, and metadata."""

    value: Any
    expires_at: float
    created_at: float = field(default_factory=time.monotonic)
    access_count: int = 0

    def is_expired(self, now: Optional[float] = None) -> bool:
        return (now if now is not None else time.monotonic()) >= self.expires_at

    @property
    def age(self) -> float:
        return time.monotonic() - self.created_at


class TTLCache:
    """
    LRU cache with TTL expiration and hit/miss statistics.

    Keys are either given directly or generated from an operation name and
    keyword parameters, so ``get("get_secret", name="db")`` and
    ``set("get_secret", value, name="db")`` address the same entry.
    """

    def __init__(self, max_size: int = 1000, default_ttl: float = 300):
        self.max_size = max_size
        self.default_ttl = default_ttl
        self._entries: "OrderedDict[str, CacheEntry]" = OrderedDict()
        self.lock = asyncio.Lock()

        self.hits = 0
        self.misses = 0
        self.evictions = 0
        self.expirations = 0

    @staticmethod
    def generate_key(operation: str, **kwargs) -> str:
        """Generate a consistent cache key from operation and parameters."""
        sorted_params = sorted(kwargs.items())
        key_data = f"{operation}:{':'.join(f'{k}:{v}' for k, v in sorted_params)}"

        if len(key_data) > 100:
            return f"{operation}:{hashlib.md5(key_data.encode()).hexdigest()}"
        return key_data

    def _key(self, operation: str, direct_key: bool, kwargs: Dict[str, Any]) -> str:
        return operation if direct_key else self.generate_key(operation, **kwargs)

    def _remove(self, key: str):
        self._entries.pop(key, None)

    async def get(self, operation: str, direct_key: bool = False, **kwargs) -> Optional[Any]:
        key = self._key(operation, direct_key, kwargs)

        async with self.lock:
            entry = self._entries.get(key)
            if entry is None:
                self.misses += 1
                return None

            if entry.is_expired():
                self._remove(key)
                self.expirations += 1
                self.misses += 1
                return None

            entry.access_count += 1
            self._entries.move_to_end(key)
            self.hits += 1
            return entry.value

    async def set(
        self,
        operation: str,
        value: Any,
        ttl: Optional[float] = None,
        direct_key: bool = False,
        **kwargs,
    ):
        key = self._key(operation, direct_key, kwargs)
        ttl = self.default_ttl if ttl is None else ttl

        async with self.lock:
            self._remove(key)
            while len(self._entries) >= self.max_size:
                self._entries.popitem(last=False)
                self.evictions += 1
            self._entries[key] = CacheEntry(
                value=value, expires_at=time.monotonic() + ttl
            )

    async def delete(self, operation: str, direct_key: bool = False, **kwargs) -> bool:
        key = self._key(operation, direct_key, kwargs)
        async with self.lock:
            if key in self._entries:
                self._remove(key)
                return True
            return False

    async def invalidate_prefix(self, prefix: str) -> int:
        """Drop every entry whose key starts with ``prefix``."""
        async with self.lock:
            keys = [key for key in self._entries if key.startswith(prefix)]
            for key in keys:
                self._remove(key)
            return len(keys)

    async def get_or_set(
        self,
        operation: str,
        factory: Callable[[], Awaitable[Any]],
        ttl: Optional[float] = None,
        **kwargs,
    ) -> Any:
        """Return the cached value or compute, store and return it."""
        value = await self.get(operation, **kwargs)
        if value is not None:
            return value
        value = await factory()
        if value is not None:
            await self.set(operation, value, ttl=ttl, **kwargs)
        return value

    async def exists(self, operation: str, direct_key: bool = False, **kwargs) -> bool:
        key = self._key(operation, direct_key, kwargs)
        async with self.lock:
            entry = self._entries.get(key)
            if entry is None:
                return False
            if entry.is_expired():
                self._remove(key)
                self.expirations += 1
                return False
            return True

    async def clear(self):
        async with self.lock:
            self._entries.clear()
            self.hits = 0
            self.misses = 0
            self.evictions = 0
            self.expirations = 0

    def cleanup_expired(self) -> int:
        """Remove expired entries (synchronous for background tasks)."""
        now = time.monotonic()
        expired = [key for key, entry in self._entries.items() if entry.is_expired(now)]
        for key in expired:
            self._remove(key)
        self.expirations += len(expired)
        return len(expired)

    def get_hit_rate(self) -> float:
        total = self.hits + self.misses
        return (self.hits / total) * 100 if total else 0.0

    def get_stats(self) -> Dict[str, Any]:
        return {
            "size": len(self._entries),
            "max_size": self.max_size,
            "hits": self.hits,
            "misses": self.misses,
            "hit_rate": round(self.get_hit_rate(), 2),
            "evictions": self.evictions,
            "expirations": self.expirations,
            "default_ttl": self.default_ttl,
        }

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: str) -> bool:
        return key in self._entries
