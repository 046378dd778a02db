"""
Redis read-through cache for resolved permission sets.

Keys: {prefix}:user:{user_id}:{company_id or "-"}

Entries are invalidated on every write to a user's role or direct grants
(and for every holder when a role's permissions change). A Redis failure on
read falls back to uncached resolution. A failed invalidation is raised to
the writer, and until a later invalidation succeeds the affected users are
never served from (or written to) the cache by this process.
"""
from typing import Iterable, Optional

import redis.asyncio as redis
from pydantic import ValidationError

from app.core import config
from app.features.permissions.schemas import CacheStatistics, EffectivePermissions
from app.utils import get_logger


log = get_logger(__name__)


class PermissionCache:
    """App-scoped cache object; one instance is shared by all requests."""

    def __init__(
        self,
        client: redis.Redis,
        ttl: int = config.PERMISSIONS_CACHE_TTL,
        prefix: str = config.PERMISSIONS_CACHE_PREFIX,
        enabled: bool = True,
    ):
        self.client = client
        self.ttl = ttl
        self.prefix = prefix
        self.enabled = enabled
        self.hits = 0
        self.misses = 0
        # Users whose cached entries could not be deleted
        self._stale_users: set[str] = set()
        self._stale_all = False

    def key(self, user_id: str, company_id: Optional[str]) -> str:
        return f"{self.prefix}:user:{user_id}:{company_id or '-'}"

    def _user_pattern(self, user_id: str) -> str:
        return f"{self.prefix}:user:{user_id}:*"

    def is_stale(self, user_id: str) -> bool:
        return self._stale_all or user_id in self._stale_users

    async def get(self, user_id: str, company_id: Optional[str]) -> Optional[EffectivePermissions]:
        if not self.enabled:
            return None

        key = self.key(user_id, company_id)
        if self.is_stale(user_id):
            self.misses += 1
            log.debug(f"Cache BYPASS (pending invalidation): {key}")
            return None

        try:
            cached_value = await self.client.get(key)
        except redis.RedisError as e:
            log.warning(f"Redis error reading {key} (falling back to uncached): {e}")
            return None

        if cached_value is None:
            self.misses += 1
            log.debug(f"Cache MISS: {key}")
            return None

        try:
            result = EffectivePermissions.model_validate_json(cached_value)
        except ValidationError as e:
            self.misses += 1
            log.warning(f"Discarding unreadable cache entry {key}: {e}")
            try:
                await self.client.delete(key)
            except redis.RedisError as delete_error:
                log.warning(f"Redis error deleting {key}: {delete_error}")
            return None

        self.hits += 1
        log.debug(f"Cache HIT: {key}")
        result.from_cache = True
        return result

    async def set(
        self,
        user_id: str,
        company_id: Optional[str],
        result: EffectivePermissions,
        ttl: Optional[int] = None
    ) -> None:
        if not self.enabled or self.is_stale(user_id):
            return

        ttl = self.ttl if ttl is None else min(ttl, self.ttl)
        if ttl < 1:
            return

        key = self.key(user_id, company_id)
        try:
            await self.client.setex(key, ttl, result.model_dump_json())
        except redis.RedisError as e:
            log.warning(f"Redis error writing {key}: {e}")

    async def _delete_matching(self, pattern: str) -> int:
        deleted = 0
        try:
            async for key in self.client.scan_iter(match=pattern):
                deleted += await self.client.delete(key)
        except redis.RedisError as e:
            log.error(f"Failed to invalidate permission cache keys {pattern}: {e}")
            raise
        return deleted

    async def invalidate_user(self, user_id: str) -> int:
        """
        Drop every cached entry of one user, across company contexts.

        Raises:
            redis.RedisError: the entries may still exist; the user is
                bypassed locally until a later invalidation succeeds
        """
        try:
            deleted = await self._delete_matching(self._user_pattern(user_id))
        except redis.RedisError:
            self._stale_users.add(user_id)
            raise

        self._stale_users.discard(user_id)
        log.debug(f"Invalidated {deleted} cached permission sets for user {user_id}")
        return deleted

    async def invalidate_users(self, user_ids: Iterable[str]) -> int:
        """Invalidate every user, then raise the first failure if any."""
        deleted = 0
        error: Optional[redis.RedisError] = None
        for user_id in set(user_ids):
            try:
                deleted += await self.invalidate_user(user_id)
            except redis.RedisError as e:
                error = error or e
        if error is not None:
            raise error
        return deleted

    async def invalidate_all(self) -> int:
        try:
            deleted = await self._delete_matching(f"{self.prefix}:user:*")
        except redis.RedisError:
            self._stale_all = True
            raise

        self._stale_all = False
        self._stale_users.clear()
        log.info(f"Invalidated all {deleted} cached permission sets")
        return deleted

    async def statistics(self) -> CacheStatistics:
        total = 0
        try:
            async for _key in self.client.scan_iter(match=f"{self.prefix}:user:*"):
                total += 1
        except redis.RedisError as e:
            log.warning(f"Redis error counting cache entries: {e}")

        lookups = self.hits + self.misses
        return CacheStatistics(
            enabled=self.enabled,
            total_entries=total,
            hits=self.hits,
            misses=self.misses,
            hit_ratio=self.hits / lookups if lookups else 0.0,
        )

    async def close(self) -> None:
        await self.client.aclose()


def create_permission_cache() -> Optional[PermissionCache]:
    """Build the cache from configuration; None when no Redis is configured."""
    if not config.REDIS_URL or not config.PERMISSIONS_CACHE_ENABLED:
        log.info("Permission cache disabled")
        return None

    client = redis.from_url(
        config.REDIS_URL,
        encoding="utf-8",
        decode_responses=True,
        max_connections=50,
    )
    log.info(f"Permission cache enabled (ttl={config.PERMISSIONS_CACHE_TTL}s)")
    return PermissionCache(client)
