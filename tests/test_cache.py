"""Tests for the permission cache and its invalidation."""

from datetime import datetime, timedelta, timezone

import pytest
import redis.asyncio as redis

from app.features.permissions import service, store
from app.features.permissions.cache import PermissionCache
from app.features.permissions.catalog import EMPLOYEE_ROLE_ID, SUPER_ADMIN_ROLE_ID
from app.features.permissions.resolver import (
    invalidate_company,
    invalidate_role_holders,
    resolve_effective_permissions,
    warmup_cache,
)


async def keys(redis_client, pattern="test-permissions:*") -> list[str]:
    return sorted([key async for key in redis_client.scan_iter(match=pattern)])


@pytest.mark.cache
@pytest.mark.asyncio
class TestPermissionCache:

    async def test_key_layout(self, cache):
        assert cache.key("U1", None) == "test-permissions:user:U1:-"
        assert cache.key("U1", "C1") == "test-permissions:user:U1:C1"

    async def test_hit_after_first_resolution(self, db_session, catalog, company_a, make_user, cache):
        user = await make_user(company_a)
        await service.assign_role(db_session, user.id, EMPLOYEE_ROLE_ID, None)

        first = await resolve_effective_permissions(db_session, user.id, cache=cache)
        second = await resolve_effective_permissions(db_session, user.id, cache=cache)

        assert first.from_cache is False
        assert second.from_cache is True
        assert second.permission_names == first.permission_names
        assert cache.hits == 1
        assert cache.misses == 1

    async def test_force_refresh_skips_read(self, db_session, catalog, company_a, make_user, cache):
        user = await make_user(company_a)
        await resolve_effective_permissions(db_session, user.id, cache=cache)

        refreshed = await resolve_effective_permissions(db_session, user.id, cache=cache, force_refresh=True)

        assert refreshed.from_cache is False

    async def test_point_in_time_not_cached(self, db_session, catalog, company_a, make_user, cache, redis_client):
        user = await make_user(company_a)

        await resolve_effective_permissions(
            db_session, user.id, cache=cache, at=datetime.now(timezone.utc) + timedelta(days=1)
        )

        assert await keys(redis_client) == []

    async def test_per_company_keys(self, db_session, catalog, company_a, company_b, make_user, cache, redis_client):
        user = await make_user()
        await service.assign_role(db_session, user.id, SUPER_ADMIN_ROLE_ID, None)

        a = await resolve_effective_permissions(db_session, user.id, company_a.id, cache=cache)
        b = await resolve_effective_permissions(db_session, user.id, company_b.id, cache=cache)

        assert a.company_id == company_a.id
        assert b.company_id == company_b.id
        assert await keys(redis_client) == sorted([
            cache.key(user.id, company_a.id), cache.key(user.id, company_b.id)
        ])

    async def test_ttl_bounded_by_earliest_expiry(self, db_session, catalog, company_a, make_user, cache, redis_client):
        user = await make_user(company_a)
        await service.assign_role(db_session, user.id, EMPLOYEE_ROLE_ID, None)
        await service.grant_direct_permission(
            db_session, user.id, catalog["company.read"].id, True, None,
            expires_at=datetime.now(timezone.utc) + timedelta(minutes=10)
        )

        await resolve_effective_permissions(db_session, user.id, cache=cache)

        ttl = await redis_client.ttl(cache.key(user.id, None))
        assert 0 < ttl <= 600

    async def test_default_ttl_without_expiry(self, db_session, catalog, company_a, make_user, cache, redis_client):
        user = await make_user(company_a)

        await resolve_effective_permissions(db_session, user.id, cache=cache)

        ttl = await redis_client.ttl(cache.key(user.id, None))
        assert 600 < ttl <= 3600

    async def test_disabled_cache(self, db_session, catalog, company_a, make_user, redis_client):
        cache = PermissionCache(redis_client, prefix="test-permissions", enabled=False)
        user = await make_user(company_a)

        await resolve_effective_permissions(db_session, user.id, cache=cache)
        second = await resolve_effective_permissions(db_session, user.id, cache=cache)

        assert second.from_cache is False
        assert await keys(redis_client) == []

    async def test_redis_failure_falls_back(self, db_session, catalog, company_a, make_user, cache, monkeypatch):
        user = await make_user(company_a)
        await service.assign_role(db_session, user.id, EMPLOYEE_ROLE_ID, None)

        async def unavailable(*args, **kwargs):
            raise redis.ConnectionError("connection refused")

        monkeypatch.setattr(cache.client, "get", unavailable)
        monkeypatch.setattr(cache.client, "setex", unavailable)

        resolved = await resolve_effective_permissions(db_session, user.id, cache=cache)

        assert sorted(resolved.permission_names) == ["team.read", "user.read"]

    async def test_unreadable_entry_is_discarded(self, db_session, catalog, company_a, make_user, cache, redis_client):
        user = await make_user(company_a)
        await service.assign_role(db_session, user.id, EMPLOYEE_ROLE_ID, None)
        await redis_client.set(cache.key(user.id, None), '{"user_id": 42}')

        assert await cache.get(user.id, None) is None
        assert cache.misses == 1
        assert await keys(redis_client) == []

        resolved = await resolve_effective_permissions(db_session, user.id, cache=cache)

        assert resolved.from_cache is False
        assert sorted(resolved.permission_names) == ["team.read", "user.read"]

    async def test_statistics(self, db_session, catalog, company_a, make_user, cache):
        user = await make_user(company_a)
        await resolve_effective_permissions(db_session, user.id, cache=cache)
        await resolve_effective_permissions(db_session, user.id, cache=cache)

        stats = await cache.statistics()

        assert stats.enabled is True
        assert stats.total_entries == 1
        assert stats.hits == 1
        assert stats.misses == 1
        assert stats.hit_ratio == 0.5


@pytest.mark.cache
@pytest.mark.asyncio
class TestCacheInvalidation:

    async def test_direct_grant_invalidates_user(self, db_session, catalog, company_a, make_user, cache):
        user = await make_user(company_a)
        await resolve_effective_permissions(db_session, user.id, cache=cache)

        await service.grant_direct_permission(
            db_session, user.id, catalog["user.read"].id, True, None, cache=cache
        )
        resolved = await resolve_effective_permissions(db_session, user.id, cache=cache)

        assert resolved.from_cache is False
        assert resolved.permission_names == ["user.read"]

    async def test_role_assignment_invalidates_user(self, db_session, catalog, company_a, make_user, cache):
        user = await make_user(company_a)
        await resolve_effective_permissions(db_session, user.id, cache=cache)

        await service.assign_role(db_session, user.id, EMPLOYEE_ROLE_ID, None, cache=cache)
        resolved = await resolve_effective_permissions(db_session, user.id, cache=cache)

        assert "team.read" in resolved.permission_names

    async def test_role_permission_change_invalidates_holders(self, db_session, catalog, company_a, make_user, make_role, cache):
        holders = [await make_user(company_a), await make_user(company_a)]
        role = await make_role("Auditor", ["user.read"], company_a)
        await service.bulk_assign_role(db_session, [u.id for u in holders], role.id, None)
        for holder in holders:
            await resolve_effective_permissions(db_session, holder.id, cache=cache)

        await service.add_permission_to_role(db_session, role.id, catalog["team.read"].id, cache=cache)

        for holder in holders:
            resolved = await resolve_effective_permissions(db_session, holder.id, cache=cache)
            assert resolved.from_cache is False
            assert "team.read" in resolved.permission_names

    async def test_invalidate_user_covers_every_company_key(self, cache, redis_client):
        await redis_client.set("test-permissions:user:U1:-", "{}")
        await redis_client.set("test-permissions:user:U1:C1", "{}")
        await redis_client.set("test-permissions:user:U2:-", "{}")

        deleted = await cache.invalidate_user("U1")

        assert deleted == 2
        assert await keys(redis_client) == ["test-permissions:user:U2:-"]

    async def test_failed_invalidation_is_raised_and_bypasses_stale_entry(
        self, db_session, catalog, company_a, make_user, cache, redis_client, monkeypatch
    ):
        user = await make_user(company_a)
        await service.assign_role(db_session, user.id, EMPLOYEE_ROLE_ID, None)
        await resolve_effective_permissions(db_session, user.id, cache=cache)

        def unavailable(*args, **kwargs):
            raise redis.ConnectionError("connection refused")

        monkeypatch.setattr(cache.client, "scan_iter", unavailable)
        with pytest.raises(redis.ConnectionError):
            await service.grant_direct_permission(
                db_session, user.id, catalog["team.read"].id, False, None, cache=cache
            )
        monkeypatch.undo()

        # The denial was committed even though the old entry is still in Redis
        assert (await store.get_direct_grant(db_session, user.id, catalog["team.read"].id)).granted is False
        assert await keys(redis_client) == [cache.key(user.id, None)]

        for _ in range(2):
            resolved = await resolve_effective_permissions(db_session, user.id, cache=cache)
            assert resolved.from_cache is False
            assert resolved.permission_names == ["user.read"]

        await cache.invalidate_user(user.id)
        await resolve_effective_permissions(db_session, user.id, cache=cache)
        assert (await resolve_effective_permissions(db_session, user.id, cache=cache)).from_cache is True

    async def test_failed_invalidate_users_still_attempts_everyone(self, cache, redis_client, monkeypatch):
        await redis_client.set("test-permissions:user:U1:-", "{}")
        await redis_client.set("test-permissions:user:U2:-", "{}")
        delete = redis_client.delete

        async def flaky_delete(key):
            if key.startswith("test-permissions:user:U1:"):
                raise redis.ConnectionError("connection reset")
            return await delete(key)

        monkeypatch.setattr(redis_client, "delete", flaky_delete)

        with pytest.raises(redis.ConnectionError):
            await cache.invalidate_users(["U1", "U2"])

        assert await keys(redis_client) == ["test-permissions:user:U1:-"]
        assert cache.is_stale("U1")
        assert not cache.is_stale("U2")

    async def test_invalidate_all(self, cache, redis_client):
        await redis_client.set("test-permissions:user:U1:-", "{}")
        await redis_client.set("other:user:U1:-", "{}")

        await cache.invalidate_all()

        assert await keys(redis_client) == []
        assert await redis_client.get("other:user:U1:-") == "{}"

    async def test_invalidate_company_and_role(self, db_session, catalog, company_a, company_b, make_user, cache, redis_client):
        a_user = await make_user(company_a)
        b_user = await make_user(company_b)
        await service.assign_role(db_session, a_user.id, EMPLOYEE_ROLE_ID, None)
        await resolve_effective_permissions(db_session, a_user.id, cache=cache)
        await resolve_effective_permissions(db_session, b_user.id, cache=cache)

        assert await invalidate_company(db_session, cache, company_a.id) == 1
        assert await keys(redis_client) == [cache.key(b_user.id, None)]

        await resolve_effective_permissions(db_session, a_user.id, cache=cache)
        assert await invalidate_role_holders(db_session, cache, EMPLOYEE_ROLE_ID) == 1


@pytest.mark.cache
@pytest.mark.asyncio
class TestCacheWarmup:

    async def test_warmup_company(self, db_session, catalog, company_a, make_user, cache):
        users = [await make_user(company_a) for _ in range(2)]

        result = await warmup_cache(db_session, cache, company_id=company_a.id)

        assert result.warmed_count == 2
        assert result.users_processed == 2
        assert result.errors == []
        for user in users:
            assert (await resolve_effective_permissions(db_session, user.id, cache=cache)).from_cache is True

    async def test_warmup_reports_unknown_users(self, db_session, catalog, company_a, make_user, cache):
        user = await make_user(company_a)

        result = await warmup_cache(db_session, cache, user_ids=[user.id, "01HZZZZZZZZZZZZZZZZZZZZZZZ"])

        assert result.warmed_count == 1
        assert len(result.errors) == 1
