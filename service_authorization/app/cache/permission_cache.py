"""
Permission decision cache.
"""

import asyncio
import hashlib
import json
import time
from dataclasses import dataclass
from typing import Dict, Any, Optional, Tuple

from shared.logging import get_logger
from ..errors import CacheBackendError
from ..permissions.models import (
    AuthenticatedUser, PermissionCheckResult, Role, UserPermissions,
)
from .backends import CacheBackend, MemoryCacheBackend


@dataclass
class CacheEntry:
    """Stored envelope around a cached value."""
    key: str
    value: Any
    cached_at: float
    expires_at: float

    def to_json(self) -> str:
        return json.dumps({
            "key": self.key,
            "value": self.value,
            "cached_at": self.cached_at,
            "expires_at": self.expires_at,
        }, default=str)

    @classmethod
    def from_json(cls, raw: str) -> "CacheEntry":
        data = json.loads(raw)
        return cls(
            key=data["key"],
            value=data["value"],
            cached_at=data["cached_at"],
            expires_at=data["expires_at"],
        )


def context_digest(context: Optional[Dict[str, Any]]) -> str:
    """Stable digest of a check context; empty contexts share one digest."""
    if not context:
        return "none"
    payload = json.dumps(context, sort_keys=True, default=str)
    return hashlib.md5(payload.encode()).hexdigest()


class PermissionCache:
    """TTL cache for decisions and per-user permission snapshots.

    Every backend call runs under ``timeout`` seconds. Failures and
    timeouts surface as CacheBackendError; callers choose whether to fall
    back (lookups) or propagate (invalidation). A disabled cache stores
    nothing and reports misses.
    """

    def __init__(
        self,
        backend: Optional[CacheBackend] = None,
        enabled: bool = True,
        default_ttl: int = 300,
        user_permission_ttl: int = 600,
        timeout: float = 0.05,
        metrics=None,
    ):
        self.logger = get_logger("authorization.cache")
        self.backend = backend or MemoryCacheBackend()
        self.enabled = enabled
        self.default_ttl = default_ttl
        self.user_permission_ttl = user_permission_ttl
        self.timeout = timeout
        self.metrics = metrics

        self.hits = 0
        self.misses = 0
        self.errors = 0

        # Bumped on every invalidation; writes computed under an older value are dropped.
        self._epoch = 0
        self._user_generations: Dict[str, int] = {}
        self._role_generations: Dict[str, int] = {}

        # Cache key prefixes
        self.PERMISSION_PREFIX = "permission:"
        self.USER_PERMISSIONS_PREFIX = "user_permissions:"

    async def start(self):
        await self.backend.start()

    async def stop(self):
        await self.backend.stop()

    async def _call(self, operation: str, coro):
        try:
            return await asyncio.wait_for(coro, timeout=self.timeout)
        except asyncio.TimeoutError as e:
            self.errors += 1
            self.logger.warning("Cache operation timed out", operation=operation, timeout=self.timeout)
            raise CacheBackendError(operation, "cache operation timed out") from e
        except Exception as e:
            self.errors += 1
            self.logger.warning("Cache operation failed", operation=operation, error=str(e))
            raise CacheBackendError(operation, str(e)) from e

    def _record_lookup(self, hit: bool):
        if hit:
            self.hits += 1
        else:
            self.misses += 1
        if self.metrics is not None:
            self.metrics.increment_counter("permission_cache_lookups_total", result="hit" if hit else "miss")

    async def get(self, key: str) -> Optional[Any]:
        """Cached value for ``key`` or None."""
        if not self.enabled:
            return None
        raw = await self._call("get", self.backend.get(key))
        if raw is None:
            self._record_lookup(False)
            return None
        entry = CacheEntry.from_json(raw)
        if entry.expires_at <= time.time():
            self._record_lookup(False)
            return None
        self._record_lookup(True)
        return entry.value

    async def set(self, key: str, value: Any, ttl_seconds: Optional[int] = None) -> None:
        if not self.enabled:
            return
        ttl = ttl_seconds or self.default_ttl
        now = time.time()
        entry = CacheEntry(key=key, value=value, cached_at=now, expires_at=now + ttl)
        await self._call("set", self.backend.set(key, entry.to_json(), ttl))
        self.logger.debug("Cached value", cache_key=key, ttl=ttl)

    async def has(self, key: str) -> bool:
        if not self.enabled:
            return False
        return await self._call("exists", self.backend.exists(key))

    async def invalidate(self, key: str) -> bool:
        if not self.enabled:
            return False
        return await self._call("delete", self.backend.delete(key))

    async def invalidate_pattern(self, pattern: str) -> int:
        """Remove every key matching a ``*`` glob."""
        if not self.enabled:
            return 0
        removed = await self._call("delete_pattern", self.backend.delete_pattern(pattern))
        self.logger.info("Cache invalidated", pattern=pattern, count=removed)
        return removed

    async def clear(self) -> int:
        if not self.enabled:
            return 0
        self._epoch += 1
        removed = await self._call("clear", self.backend.clear())
        self.hits = 0
        self.misses = 0
        self.logger.info("Cache cleared", count=removed)
        return removed

    async def get_stats(self) -> Dict[str, Any]:
        total = self.hits + self.misses
        size = 0
        if self.enabled:
            try:
                size = await self._call("size", self.backend.size())
            except CacheBackendError:
                size = -1
        return {
            "enabled": self.enabled,
            "backend": type(self.backend).__name__,
            "size": size,
            "hits": self.hits,
            "misses": self.misses,
            "errors": self.errors,
            "hit_rate": (self.hits / total) if total else 0.0,
        }

    # Key builders

    def check_key(
        self,
        user: AuthenticatedUser,
        resource: str,
        action: str,
        resource_id: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
    ) -> str:
        role = Role(user.role).value
        return (
            f"{self.PERMISSION_PREFIX}{user.id}:{role}:{resource}:{action}:"
            f"{resource_id or 'null'}:{context_digest(context)}"
        )

    def user_permissions_key(self, user_id: str, role: Role) -> str:
        return f"{self.USER_PERMISSIONS_PREFIX}{user_id}:{Role(role).value}"

    # Typed helpers

    async def get_check_result(self, key: str) -> Optional[PermissionCheckResult]:
        data = await self.get(key)
        if data is None:
            return None
        result = PermissionCheckResult.from_dict(data)
        result.cache_hit = True
        return result

    async def set_check_result(
        self,
        key: str,
        result: PermissionCheckResult,
        ttl_seconds: Optional[int] = None,
        user: Optional[AuthenticatedUser] = None,
        generation: Optional[Tuple[int, int, int]] = None,
    ) -> bool:
        """Store a decision.

        When ``generation`` (read via :meth:`generation` before the decision
        was computed) is given, the write only sticks if no invalidation for
        ``user`` happened in between. Returns whether the entry was kept.
        """
        if generation is None or user is None:
            await self.set(key, result.to_dict(), ttl_seconds)
            return True
        return await self._set_if_current(key, result.to_dict(), ttl_seconds, user.id, user.role, generation)

    async def cache_user_permissions(
        self,
        permissions: UserPermissions,
        generation: Optional[Tuple[int, int, int]] = None,
    ) -> bool:
        key = self.user_permissions_key(permissions.user_id, permissions.role)
        if generation is None:
            await self.set(key, permissions.to_dict(), self.user_permission_ttl)
            return True
        return await self._set_if_current(
            key, permissions.to_dict(), self.user_permission_ttl,
            permissions.user_id, permissions.role, generation
        )

    async def get_cached_user_permissions(self, user_id: str, role: Role) -> Optional[UserPermissions]:
        data = await self.get(self.user_permissions_key(user_id, role))
        if data is None:
            return None
        return UserPermissions.from_dict(data)

    # Generations

    def generation(self, user_id: str, role: Role) -> Tuple[int, int, int]:
        """Invalidation counters covering decisions for ``user_id`` in ``role``."""
        return (
            self._epoch,
            self._user_generations.get(user_id, 0),
            self._role_generations.get(Role(role).value, 0),
        )

    async def _set_if_current(
        self,
        key: str,
        value: Any,
        ttl_seconds: Optional[int],
        user_id: str,
        role: Role,
        generation: Tuple[int, int, int],
    ) -> bool:
        if self.generation(user_id, role) != generation:
            self.logger.debug("Dropped stale cache write", cache_key=key)
            return False
        await self.set(key, value, ttl_seconds)
        if self.generation(user_id, role) != generation:
            # Invalidated while the write was in flight.
            await self.invalidate(key)
            self.logger.debug("Dropped stale cache write", cache_key=key)
            return False
        return True

    async def invalidate_user_permissions(self, user_id: str) -> int:
        """Drop every decision and snapshot cached for ``user_id``."""
        self._user_generations[user_id] = self._user_generations.get(user_id, 0) + 1
        escaped = self.backend.escape(user_id)
        removed = await self.invalidate_pattern(f"{self.PERMISSION_PREFIX}{escaped}:*")
        removed += await self.invalidate_pattern(f"{self.USER_PERMISSIONS_PREFIX}{escaped}:*")
        return removed

    async def invalidate_role_permissions(self, role: Role) -> int:
        """Drop every decision and snapshot cached for users holding ``role``."""
        role_name = Role(role).value
        self._role_generations[role_name] = self._role_generations.get(role_name, 0) + 1
        removed = await self.invalidate_pattern(f"{self.PERMISSION_PREFIX}*:{role_name}:*")
        removed += await self.invalidate_pattern(f"{self.USER_PERMISSIONS_PREFIX}*:{role_name}")
        return removed
