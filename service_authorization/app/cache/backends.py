"""
Key/value backends for the permission cache.

Backends store serialized strings and raise on failure; the
PermissionCache above them decides what a failure means.
"""

import re
import threading
import time
from abc import ABC, abstractmethod
from collections import OrderedDict
from fnmatch import fnmatchcase
from typing import Callable, Optional, Tuple

import redis.asyncio as redis

from shared.logging import get_logger
from shared.errors import ExternalServiceError


class CacheBackend(ABC):
    """Minimal async key/value contract with TTL and glob invalidation."""

    async def start(self):
        """Open connections."""

    async def stop(self):
        """Close connections."""

    @abstractmethod
    async def get(self, key: str) -> Optional[str]:
        ...

    @abstractmethod
    async def set(self, key: str, value: str, ttl_seconds: int) -> None:
        ...

    @abstractmethod
    async def delete(self, key: str) -> bool:
        ...

    @abstractmethod
    async def delete_pattern(self, pattern: str) -> int:
        """Delete keys matching a ``*`` glob; returns how many were removed."""

    def escape(self, text: str) -> str:
        """Quote glob metacharacters so ``text`` matches only itself in a pattern."""
        return re.sub(r"([*?[])", r"[\1]", text)

    @abstractmethod
    async def exists(self, key: str) -> bool:
        ...

    @abstractmethod
    async def clear(self) -> int:
        ...

    async def size(self) -> int:
        return 0

    async def health_check(self) -> bool:
        return True


class MemoryCacheBackend(CacheBackend):
    """In-process LRU cache with per-key expiry."""

    def __init__(self, max_size: int = 1000, clock: Callable[[], float] = time.time):
        self.logger = get_logger("authorization.cache.memory")
        self.max_size = max_size
        self.clock = clock
        self._entries: "OrderedDict[str, Tuple[str, float]]" = OrderedDict()
        self._lock = threading.RLock()
        self.evictions = 0

    async def get(self, key: str) -> Optional[str]:
        with self._lock:
            item = self._entries.get(key)
            if item is None:
                return None
            value, expires_at = item
            if expires_at <= self.clock():
                del self._entries[key]
                return None
            self._entries.move_to_end(key)
            return value

    async def set(self, key: str, value: str, ttl_seconds: int) -> None:
        with self._lock:
            self._entries[key] = (value, self.clock() + ttl_seconds)
            self._entries.move_to_end(key)
            while len(self._entries) > self.max_size:
                self._entries.popitem(last=False)
                self.evictions += 1

    async def delete(self, key: str) -> bool:
        with self._lock:
            return self._entries.pop(key, None) is not None

    async def delete_pattern(self, pattern: str) -> int:
        with self._lock:
            doomed = [k for k in self._entries if fnmatchcase(k, pattern)]
            for key in doomed:
                del self._entries[key]
        return len(doomed)

    async def exists(self, key: str) -> bool:
        return await self.get(key) is not None

    async def clear(self) -> int:
        with self._lock:
            count = len(self._entries)
            self._entries.clear()
        return count

    async def size(self) -> int:
        return len(self._entries)

    def cleanup_expired(self) -> int:
        """Drop expired entries eagerly; returns how many were removed."""
        now = self.clock()
        with self._lock:
            expired = [k for k, (_, expires_at) in self._entries.items() if expires_at <= now]
            for key in expired:
                del self._entries[key]
        if expired:
            self.logger.debug("Expired cache entries removed", count=len(expired))
        return len(expired)


class RedisCacheBackend(CacheBackend):
    """Redis-backed cache shared between service instances."""

    def __init__(self, redis_url: str, client: Optional[redis.Redis] = None):
        self.redis_url = redis_url
        self.logger = get_logger("authorization.cache.redis")
        self.redis: Optional[redis.Redis] = client

    async def start(self):
        """Start the Redis connection."""
        try:
            if self.redis is None:
                self.redis = redis.from_url(
                    self.redis_url,
                    encoding="utf-8",
                    decode_responses=True,
                    socket_connect_timeout=5,
                    socket_timeout=5,
                    retry_on_timeout=True,
                    health_check_interval=30
                )

            await self.redis.ping()
            self.logger.info("Redis cache started")

        except Exception as e:
            self.logger.error("Failed to start Redis cache", error=str(e))
            raise ExternalServiceError("redis", str(e))

    async def stop(self):
        """Stop the Redis connection."""
        if self.redis:
            await self.redis.close()
            self.logger.info("Redis cache stopped")

    async def get(self, key: str) -> Optional[str]:
        return await self.redis.get(key)

    async def set(self, key: str, value: str, ttl_seconds: int) -> None:
        await self.redis.setex(key, ttl_seconds, value)

    async def delete(self, key: str) -> bool:
        return bool(await self.redis.delete(key))

    def escape(self, text: str) -> str:
        # Redis globs escape with a backslash, including inside classes.
        return re.sub(r"([\\*?\[\]])", r"\\\1", text)

    async def delete_pattern(self, pattern: str) -> int:
        keys = [key async for key in self.redis.scan_iter(match=pattern, count=500)]
        if not keys:
            return 0
        return await self.redis.delete(*keys)

    async def exists(self, key: str) -> bool:
        return bool(await self.redis.exists(key))

    async def clear(self) -> int:
        removed = 0
        for prefix in ("permission:", "user_permissions:"):
            removed += await self.delete_pattern(f"{prefix}*")
        return removed

    async def size(self) -> int:
        count = 0
        for prefix in ("permission:", "user_permissions:"):
            async for _ in self.redis.scan_iter(match=f"{prefix}*", count=500):
                count += 1
        return count

    async def health_check(self) -> bool:
        """Check Redis health."""
        try:
            await self.redis.ping()
            return True
        except Exception:
            return False
