"""In-memory cache for resolved user permission snapshots with TTL support."""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Iterable, Optional

from rolegate.shared.config import get_settings

from .models import UserWithRoles

logger = logging.getLogger(__name__)


def _now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class CacheEntry:
    """Cache entry with TTL tracking."""

    value: Any
    expires_at: datetime

    @property
    def is_expired(self) -> bool:
        return _now() >= self.expires_at


class PermissionCache:
    """
    Per-user cache of UserWithRoles snapshots.

    A TTL of zero disables caching entirely, so every check re-reads the
    store. Cache invalidation occurs:
    - Automatically when TTL expires
    - When admin writes change a role, permission or assignment
    - On application restart (cache is not persistent)
    """

    def __init__(self, ttl_seconds: Optional[int] = None):
        """Initialize cache with the configured TTL."""
        if ttl_seconds is None:
            ttl_seconds = get_settings().permission_cache_ttl_seconds

        self.ttl = timedelta(seconds=max(ttl_seconds, 0))
        self._user_cache: Dict[str, CacheEntry] = {}
        self._lock = asyncio.Lock()

        logger.info(
            f"PermissionCache initialized with TTL={ttl_seconds}s"
            + ("" if self.enabled else " (disabled)")
        )

    @property
    def enabled(self) -> bool:
        return self.ttl > timedelta(0)

    # =========================================================================
    # User Snapshot Cache
    # =========================================================================

    async def get_user(self, user_id: str) -> Optional[UserWithRoles]:
        """Get cached snapshot for a user."""
        if not self.enabled:
            return None
        key = f"user:{user_id}"
        entry = self._user_cache.get(key)
        if entry is None:
            return None
        if entry.is_expired:
            self._user_cache.pop(key, None)
            return None
        return entry.value

    async def set_user(self, user_id: str, snapshot: UserWithRoles) -> None:
        """Cache a user snapshot, dropping entries that have already expired."""
        if not self.enabled:
            return
        await self.cleanup_expired()
        self._user_cache[f"user:{user_id}"] = CacheEntry(
            value=snapshot, expires_at=_now() + self.ttl
        )

    # =========================================================================
    # Invalidation
    # =========================================================================

    async def invalidate_users(self, user_ids: Iterable[str]) -> None:
        """Invalidate cache for specific users."""
        for user_id in user_ids:
            if self._user_cache.pop(f"user:{user_id}", None) is not None:
                logger.debug(f"Invalidated user cache: {user_id}")

    async def invalidate_all(self) -> None:
        """Invalidate every cached snapshot."""
        async with self._lock:
            if self._user_cache:
                self._user_cache.clear()
                logger.info("Invalidated all permission caches")

    # =========================================================================
    # Statistics
    # =========================================================================

    def get_stats(self) -> Dict:
        """Get cache statistics for monitoring."""
        return {
            "enabled": self.enabled,
            "ttlSeconds": int(self.ttl.total_seconds()),
            "userCacheSize": len(self._user_cache),
            "userCacheExpired": sum(
                1 for e in self._user_cache.values() if e.is_expired
            ),
        }

    async def cleanup_expired(self) -> None:
        """Remove expired entries."""
        async with self._lock:
            expired = [k for k, v in self._user_cache.items() if v.is_expired]
            for k in expired:
                del self._user_cache[k]

            if expired:
                logger.debug(f"Cleaned up expired cache entries: users={len(expired)}")


# Global cache instance (singleton)
_cache_instance: Optional[PermissionCache] = None


def get_permission_cache() -> PermissionCache:
    """Get or create the global PermissionCache instance."""
    global _cache_instance
    if _cache_instance is None:
        _cache_instance = PermissionCache()
    return _cache_instance
