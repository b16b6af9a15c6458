"""
Permission caching layer.

Keeps each user's effective permission set in memory to avoid a database
round trip on every access decision.

Cache strategy:
- TTL: 15 minutes by default (PERMISSION_CACHE_TTL_SECONDS)
- Invalidation: per user, per role (fan-out to every affected user), or full flush
- Expired entries are swept on an interval (PERMISSION_CACHE_CLEANUP_INTERVAL_SECONDS)

The cache is process local. With several API instances, a change applied
through one instance reaches the others only when their entry expires, so
permission changes are visible everywhere within one TTL at most.
"""
import asyncio
import time
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from typing import Any, Dict, Optional

from cms_backend.features.permissions.resolver import PermissionChecks, PermissionResolver
from cms_backend.utils import get_logger


log = get_logger(__name__)

DEFAULT_TTL_SECONDS = 15 * 60
DEFAULT_CLEANUP_INTERVAL_SECONDS = 5 * 60


@dataclass(frozen=True)
class CacheEntry:
    permissions: frozenset[str]
    expires_at: float


class PermissionCache(PermissionChecks):
    """
    Time-boxed memoization of PermissionResolver results, keyed by user id.

    Usage:
        cache = PermissionCache(resolver, ttl_seconds=900)
        cache.start()                   # inside the running event loop
        await cache.has_permission(user_id, "Product", "update")
        cache.clear_user_permissions_cache(user_id)
        await cache.stop()              # at shutdown

    Args:
        resolver: Computes sets on a miss and answers role -> users lookups
        ttl_seconds: Lifetime of an entry
        cleanup_interval_seconds: Interval of the expired-entry sweep
        clock: Monotonic time source in seconds; tests pass a fake clock
    """

    def __init__(
        self,
        resolver: PermissionResolver,
        ttl_seconds: float = DEFAULT_TTL_SECONDS,
        cleanup_interval_seconds: float = DEFAULT_CLEANUP_INTERVAL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ):
        if ttl_seconds <= 0:
            raise ValueError("TTL must be positive")
        if cleanup_interval_seconds <= 0:
            raise ValueError("Cleanup interval must be positive")

        self.resolver = resolver
        self.ttl_seconds = ttl_seconds
        self.cleanup_interval_seconds = cleanup_interval_seconds
        self.clock = clock

        self._entries: Dict[str, CacheEntry] = {}
        # Bumped by every invalidation; a lookup that started before an
        # invalidation does not store its (possibly stale) result.
        self._generation = 0
        self._hits = 0
        self._misses = 0
        self._cleanup_task: Optional[asyncio.Task] = None

    # ------------------------------------------------------------------
    # Lookup
    # ------------------------------------------------------------------

    async def get_cached_user_permissions(self, user_id: str) -> frozenset[str]:
        """
        Get a user's effective permissions, computing them on a miss.

        A live entry (expires_at > now) is returned unchanged; otherwise the
        resolver runs and its result replaces the entry.
        """
        now = self.clock()
        entry = self._entries.get(user_id)
        if entry is not None and entry.expires_at > now:
            self._hits += 1
            return entry.permissions

        self._misses += 1
        generation = self._generation
        permissions = await self.resolver.calculate_user_permissions(user_id)

        if generation == self._generation:
            self._entries[user_id] = CacheEntry(permissions=permissions, expires_at=now + self.ttl_seconds)
        else:
            log.debug("Cache invalidated while resolving user %s, result not stored", user_id)
        return permissions

    async def get_user_permissions(self, user_id: str) -> frozenset[str]:
        return await self.get_cached_user_permissions(user_id)

    # ------------------------------------------------------------------
    # Invalidation
    # ------------------------------------------------------------------

    def clear_user_permissions_cache(self, user_id: str) -> bool:
        """
        Drop one user's entry.

        Call this whenever the user's roles or direct permissions change.
        Returns True if an entry was removed.
        """
        self._generation += 1
        return self._entries.pop(user_id, None) is not None

    def clear_users_permissions_cache(self, user_ids: Iterable[str]) -> int:
        """Drop the entries of several users; returns how many were removed."""
        return sum(1 for user_id in user_ids if self.clear_user_permissions_cache(user_id))

    async def clear_role_permissions_cache(self, role_id: str) -> int:
        """
        Drop the entries of every user affected by a role.

        Call this whenever a role's permissions, parent or status change. If the
        role -> users lookup fails, the error is logged and nothing is cleared;
        affected entries still expire with the TTL.

        Returns the number of affected users, cached or not.
        """
        try:
            user_ids = await self.resolver.get_role_user_ids(role_id)
        except Exception:
            log.exception("Failed to clear role permissions cache for role %s", role_id)
            return 0

        for user_id in user_ids:
            self.clear_user_permissions_cache(user_id)
        log.info("Cleared permission cache for %d users with role %s", len(user_ids), role_id)
        return len(user_ids)

    def clear_all_permissions_cache(self) -> int:
        """Flush every entry, e.g. after bulk permission updates."""
        self._generation += 1
        count = len(self._entries)
        self._entries.clear()
        log.info("Cleared all permission caches (%d entries)", count)
        return count

    # ------------------------------------------------------------------
    # Housekeeping
    # ------------------------------------------------------------------

    def cleanup_expired_cache(self) -> int:
        """Remove already-expired entries; returns how many were removed."""
        now = self.clock()
        expired = [user_id for user_id, entry in self._entries.items() if entry.expires_at <= now]
        for user_id in expired:
            del self._entries[user_id]

        if expired:
            log.info("Cleaned up %d expired permission cache entries", len(expired))
        return len(expired)

    def get_cache_stats(self) -> Dict[str, Any]:
        """Entry counts and settings, for monitoring and debugging."""
        now = self.clock()
        valid = sum(1 for entry in self._entries.values() if entry.expires_at > now)
        return {
            "total_entries": len(self._entries),
            "valid_entries": valid,
            "expired_entries": len(self._entries) - valid,
            "ttl_seconds": self.ttl_seconds,
            "cleanup_interval_seconds": self.cleanup_interval_seconds,
            "hits": self._hits,
            "misses": self._misses,
        }

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def is_running(self) -> bool:
        return self._cleanup_task is not None and not self._cleanup_task.done()

    def start(self) -> None:
        """Start the periodic sweep. Must be called from the running event loop."""
        if self.is_running:
            return

        async def cleanup_loop():
            while True:
                await asyncio.sleep(self.cleanup_interval_seconds)
                try:
                    self.cleanup_expired_cache()
                except Exception as e:
                    log.warning("Permission cache cleanup error: %s", e)

        self._cleanup_task = asyncio.get_running_loop().create_task(cleanup_loop())
        log.info(
            "Permission cache started (ttl=%ss, cleanup every %ss)",
            self.ttl_seconds, self.cleanup_interval_seconds
        )

    async def stop(self) -> None:
        """Stop the periodic sweep. Safe to call when not started."""
        task, self._cleanup_task = self._cleanup_task, None
        if task is None or task.done():
            return

        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        log.info("Permission cache stopped")
