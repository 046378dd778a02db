"""
Effective-permission resolution.

Given a user, compute the permissions they currently hold:

1. Super-Admin role holders get the whole catalog; nothing else is consulted
   (direct denials included) and no company boundary check runs.
2. Permissions of the user's non-expired role.
3. Union of non-expired direct grants.
4. Minus every non-expired direct denial, whatever the source. Denial wins;
   there is no other ordering between grants.

The resolver only reads. Results may be cached per (user, company) in a
PermissionCache; writers invalidate those keys after they commit.
"""
import asyncio
from datetime import datetime
from typing import Awaitable, Iterable, Optional, TypeVar
from sqlalchemy.ext.asyncio import AsyncSession

from app.features.permissions import store
from app.features.permissions.cache import PermissionCache
from app.features.permissions.catalog import SUPER_ADMIN_ROLE_ID
from app.features.permissions.exceptions import CrossCompanyScope, UserNotFound
from app.features.permissions.schemas import (
    BulkPermissionCheck,
    CacheWarmupResult,
    EffectivePermission,
    EffectivePermissions,
    PermissionCheckResult,
    PermissionSource,
)
from app.features.users.models import User
from app.utils import as_utc, get_logger, utcnow


log = get_logger(__name__)

T = TypeVar("T")


async def _with_timeout(awaitable: Awaitable[T], timeout: Optional[float]) -> T:
    if timeout is None:
        return await awaitable
    return await asyncio.wait_for(awaitable, timeout)


# ============================================================================
# Super-Admin Bypass
# ============================================================================

async def is_super_admin(
    db: AsyncSession,
    user_id: str,
    company_id: Optional[str] = None,
    *,
    at: Optional[datetime] = None,
    timeout: Optional[float] = None
) -> bool:
    """
    Check whether the user's current role is the fixed Super-Admin role.

    Holding super_admin.* or system.* permissions individually does not make
    a user a super admin. Any failure while checking returns False so
    callers fall through to normal permission checks.
    """
    now = as_utc(at) if at is not None else utcnow()
    try:
        role_id = await _with_timeout(
            store.get_active_role_id(db, user_id, now),
            timeout
        )
    except Exception as e:
        log.error(f"Error checking super admin status for user {user_id} (company {company_id}): {e}")
        return False

    return role_id == SUPER_ADMIN_ROLE_ID


# ============================================================================
# Resolution
# ============================================================================

def _seconds_until_earliest(expiries: list[datetime], now: datetime) -> Optional[int]:
    if not expiries:
        return None
    earliest = min(as_utc(e) for e in expiries)
    return int((earliest - now).total_seconds())


async def _catalog_for_super_admin(db: AsyncSession, role_name: str) -> list[EffectivePermission]:
    return [
        EffectivePermission(
            name=p.name,
            category=p.category,
            source=PermissionSource.SUPER_ADMIN,
            source_role_id=SUPER_ADMIN_ROLE_ID,
            source_role_name=role_name,
        )
        for p in await store.list_permissions(db)
    ]


async def _merge_role_and_direct(
    db: AsyncSession,
    user: User,
    now: datetime,
    expiries: list[datetime]
) -> list[EffectivePermission]:
    merged: dict[str, EffectivePermission] = {}

    active = await store.get_active_role(db, user.id, now)
    if active is not None:
        role, role_expires_at = active
        if role.company_id is not None and role.company_id != user.company_id:
            log.warning(
                f"Ignoring role {role.id} of company {role.company_id} held by user {user.id} "
                f"of company {user.company_id}"
            )
        else:
            if role_expires_at is not None:
                expiries.append(role_expires_at)
            for permission in await store.get_role_permissions(db, role.id):
                merged[permission.name] = EffectivePermission(
                    name=permission.name,
                    category=permission.category,
                    source=PermissionSource.ROLE,
                    source_role_id=role.id,
                    source_role_name=role.name,
                    expires_at=as_utc(role_expires_at),
                )

    denied: set[str] = set()
    for permission, granted, expires_at in await store.get_direct_grants(db, user.id, user.company_id, now):
        if expires_at is not None:
            expiries.append(expires_at)
        if granted:
            merged[permission.name] = EffectivePermission(
                name=permission.name,
                category=permission.category,
                source=PermissionSource.DIRECT,
                expires_at=as_utc(expires_at),
            )
        else:
            denied.add(permission.name)

    for name in denied:
        if merged.pop(name, None) is not None:
            log.debug(f"Direct denial removed {name} for user {user.id}")

    return sorted(merged.values(), key=lambda p: (p.category, p.name))


async def _resolve(
    db: AsyncSession,
    user_id: str,
    company_id: Optional[str],
    cache: Optional[PermissionCache],
    force_refresh: bool,
    at: Optional[datetime]
) -> EffectivePermissions:
    # Point-in-time evaluations bypass the cache
    use_cache = cache is not None and at is None

    if use_cache and not force_refresh:
        cached = await cache.get(user_id, company_id)
        if cached is not None:
            return cached

    now = as_utc(at) if at is not None else utcnow()

    user = await store.get_user(db, user_id)
    if user is None:
        raise UserNotFound(user_id)

    expiries: list[datetime] = []
    super_admin = await is_super_admin(db, user.id, company_id, at=now)

    if super_admin:
        active = await store.get_active_role(db, user.id, now)
        role_name = "Super Admin"
        if active is not None:
            role, role_expires_at = active
            role_name = role.name
            if role_expires_at is not None:
                expiries.append(role_expires_at)
        log.debug(f"User {user_id} is super admin - granting all permissions")
        permissions = await _catalog_for_super_admin(db, role_name)
    else:
        if company_id is not None and company_id != user.company_id:
            raise CrossCompanyScope(f"User {user_id} does not belong to company {company_id}")
        permissions = await _merge_role_and_direct(db, user, now, expiries)

    result = EffectivePermissions(
        user_id=user.id,
        company_id=company_id or user.company_id,
        is_super_admin=super_admin,
        permissions=permissions,
        calculated_at=now,
    )

    if use_cache:
        await cache.set(user_id, company_id, result, _seconds_until_earliest(expiries, now))

    log.debug(f"Resolved {len(permissions)} permissions for user {user_id}")
    return result


async def resolve_effective_permissions(
    db: AsyncSession,
    user_id: str,
    company_id: Optional[str] = None,
    *,
    cache: Optional[PermissionCache] = None,
    force_refresh: bool = False,
    at: Optional[datetime] = None,
    timeout: Optional[float] = None
) -> EffectivePermissions:
    """
    Get all effective permissions for a user.

    Args:
        db: Database session
        user_id: User to resolve
        company_id: Company context; must be the user's own company unless the
            user is a super admin
        cache: Optional shared cache
        force_refresh: Skip the cache read (the fresh result is still stored)
        at: Evaluate expiry at this instant instead of now (never cached)
        timeout: Seconds before the read is abandoned with TimeoutError

    Raises:
        UserNotFound: the user id does not exist
        CrossCompanyScope: company_id is not the user's company
    """
    return await _with_timeout(
        _resolve(db, user_id, company_id, cache, force_refresh, at),
        timeout
    )


async def has_permission(
    db: AsyncSession,
    user_id: str,
    permission_name: str,
    company_id: Optional[str] = None,
    *,
    cache: Optional[PermissionCache] = None,
    at: Optional[datetime] = None,
    timeout: Optional[float] = None
) -> bool:
    """Membership test against the resolved set (same precedence rules)."""
    resolved = await resolve_effective_permissions(
        db, user_id, company_id, cache=cache, at=at, timeout=timeout
    )
    granted = resolved.get(permission_name) is not None
    log.debug(f"Permission check {permission_name} for user {user_id}: {granted}")
    return granted


async def has_permissions(
    db: AsyncSession,
    user_id: str,
    permission_names: Iterable[str],
    company_id: Optional[str] = None,
    *,
    cache: Optional[PermissionCache] = None,
    at: Optional[datetime] = None,
    timeout: Optional[float] = None
) -> BulkPermissionCheck:
    """Check several permissions against a single resolution."""
    resolved = await resolve_effective_permissions(
        db, user_id, company_id, cache=cache, at=at, timeout=timeout
    )

    results = []
    for name in dict.fromkeys(permission_names):
        permission = resolved.get(name)
        results.append(PermissionCheckResult(
            permission_name=name,
            granted=permission is not None,
            source=permission.source if permission else None,
            source_role_name=permission.source_role_name if permission else None,
        ))

    return BulkPermissionCheck(user_id=user_id, results=results, from_cache=resolved.from_cache)


# ============================================================================
# Cache maintenance
# ============================================================================

async def invalidate_role_holders(db: AsyncSession, cache: Optional[PermissionCache], role_id: str) -> int:
    """Drop cached sets of everyone linked to the role."""
    if cache is None:
        return 0
    return await cache.invalidate_users(await store.list_role_holder_ids(db, role_id))


async def invalidate_company(db: AsyncSession, cache: Optional[PermissionCache], company_id: str) -> int:
    if cache is None:
        return 0
    return await cache.invalidate_users(await store.list_company_user_ids(db, company_id))


async def warmup_cache(
    db: AsyncSession,
    cache: PermissionCache,
    *,
    user_ids: Optional[list[str]] = None,
    company_id: Optional[str] = None,
    role_id: Optional[str] = None
) -> CacheWarmupResult:
    """
    Recompute and store permission sets ahead of the first check.

    Per-user failures are collected in the result rather than raised.
    """
    errors: list[str] = []

    if user_ids:
        users = await store.get_users(db, user_ids)
        found = {u.id for u in users}
        errors.extend(f"User not found: {uid}" for uid in user_ids if uid not in found)
        targets = [u.id for u in users]
    elif company_id:
        targets = await store.list_company_user_ids(db, company_id)
    elif role_id:
        targets = await store.list_role_holder_ids(db, role_id)
    else:
        targets = []

    warmed = 0
    for uid in targets:
        try:
            await resolve_effective_permissions(db, uid, cache=cache, force_refresh=True)
            warmed += 1
        except Exception as e:
            message = f"Failed to warm up cache for user {uid}: {e}"
            errors.append(message)
            log.warning(message)

    log.info(f"Cache warmup completed: {warmed}/{len(targets)} users processed")
    return CacheWarmupResult(warmed_count=warmed, users_processed=len(targets), errors=errors)
