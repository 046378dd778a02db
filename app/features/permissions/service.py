"""
Role and permission catalog management.

Every operation validates that the referenced entities exist and that they
share a company scope before writing. `scope_company_id` is the acting
tenant: when set, only that company's users and roles may be touched, system
roles are read-only, and super_admin.* permissions cannot be handed out.
None means platform scope (super admins).

Writes commit first, then invalidate the affected cache entries. A Redis
error during invalidation is raised after the commit, so the write stands
and the caller learns the cache may be stale. Bulk operations run in one
transaction: all links are written or none are.
"""
from datetime import datetime
from typing import Iterable, Optional
from sqlalchemy import delete
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.features.companies.models import Company
from app.features.permissions import store
from app.features.permissions.cache import PermissionCache
from app.features.permissions.catalog import SUPER_ADMIN_CATEGORY, SUPER_ADMIN_ROLE_ID
from app.features.permissions.exceptions import (
    AlreadyExists,
    CrossCompanyScope,
    GrantNotFound,
    InvalidState,
    NotFoundError,
    PermissionNotFound,
    RoleNotFound,
    UserNotFound,
)
from app.features.permissions.models import Permission, Role
from app.features.permissions.resolver import invalidate_role_holders
from app.features.permissions.schemas import PermissionCreate, RoleCreate, RoleUpdate
from app.features.users.models import User
from app.utils import as_utc, get_logger, utcnow


log = get_logger(__name__)


# ============================================================================
# Validation helpers
# ============================================================================

async def _get_user(db: AsyncSession, user_id: str) -> User:
    user = await store.get_user(db, user_id)
    if user is None:
        raise UserNotFound(user_id)
    return user


async def _get_role(db: AsyncSession, role_id: str) -> Role:
    role = await store.get_role(db, role_id)
    if role is None:
        raise RoleNotFound(role_id)
    return role


async def _get_permission(db: AsyncSession, permission_id: str) -> Permission:
    permission = await store.get_permission(db, permission_id)
    if permission is None:
        raise PermissionNotFound(permission_id)
    return permission


async def _get_permissions(db: AsyncSession, permission_ids: Iterable[str]) -> list[Permission]:
    """All requested permissions, in request order, or PermissionNotFound naming the missing ids."""
    wanted = list(dict.fromkeys(permission_ids))
    found = {p.id: p for p in await store.get_permissions(db, wanted)}
    missing = [pid for pid in wanted if pid not in found]
    if missing:
        raise PermissionNotFound(missing)
    return [found[pid] for pid in wanted]


def _check_user_in_scope(user: User, scope_company_id: Optional[str]) -> None:
    if scope_company_id is not None and user.company_id != scope_company_id:
        raise CrossCompanyScope(f"User {user.id} is not in company {scope_company_id}")


def _check_role_writable(role: Role, scope_company_id: Optional[str]) -> None:
    if scope_company_id is None:
        return
    if role.is_system_role or role.company_id is None:
        raise InvalidState(f"System role '{role.name}' is read-only")
    if role.company_id != scope_company_id:
        raise CrossCompanyScope(f"Role {role.id} belongs to another company")


def _check_role_assignable(role: Role, user: User, scope_company_id: Optional[str]) -> None:
    # System-wide roles may be held by any user
    if role.company_id is not None and role.company_id != user.company_id:
        raise CrossCompanyScope(
            f"Role '{role.name}' of company {role.company_id} cannot be assigned to "
            f"user {user.id} of company {user.company_id}"
        )
    if role.id == SUPER_ADMIN_ROLE_ID and scope_company_id is not None:
        raise CrossCompanyScope("Only the platform scope may assign the Super Admin role")


async def _check_grantor(db: AsyncSession, grantor_id: Optional[str]) -> None:
    # None records a system-initiated write
    if grantor_id is not None:
        await _get_user(db, grantor_id)


async def _check_super_admins_kept(
    db: AsyncSession,
    user_ids: Iterable[str],
    scope_company_id: Optional[str],
    now: datetime
) -> None:
    if scope_company_id is None:
        return
    for assignment in await store.get_role_assignments(db, user_ids):
        expires_at = as_utc(assignment.expires_at)
        if assignment.role_id == SUPER_ADMIN_ROLE_ID and (expires_at is None or expires_at > now):
            raise CrossCompanyScope(
                f"Only the platform scope may replace the Super Admin role of user {assignment.user_id}"
            )


def _check_permissions_grantable(permissions: Iterable[Permission], scope_company_id: Optional[str]) -> None:
    if scope_company_id is None:
        return
    restricted = [p.name for p in permissions if p.category == SUPER_ADMIN_CATEGORY]
    if restricted:
        raise CrossCompanyScope(f"Platform-only permissions: {', '.join(restricted)}")


def _normalize_expiry(expires_at: Optional[datetime], now: datetime) -> Optional[datetime]:
    expires_at = as_utc(expires_at)
    if expires_at is not None and expires_at <= now:
        raise InvalidState("expires_at must be in the future")
    return expires_at


async def _commit(db: AsyncSession, conflict_message: str) -> None:
    try:
        await db.commit()
    except IntegrityError:
        await db.rollback()
        raise InvalidState(conflict_message)


# ============================================================================
# Permission catalog
# ============================================================================

async def list_permission_catalog(db: AsyncSession) -> dict[str, list[Permission]]:
    """Every permission, grouped by category (both sorted)."""
    catalog: dict[str, list[Permission]] = {}
    for permission in await store.list_permissions(db):
        catalog.setdefault(permission.category, []).append(permission)
    return catalog


async def create_permission(
    db: AsyncSession,
    data: PermissionCreate,
    *,
    cache: Optional[PermissionCache] = None
) -> Permission:
    """Add a permission to the catalog (platform operation)."""
    if await store.get_permission_by_name(db, data.name):
        raise AlreadyExists(f"Permission '{data.name}' already exists")

    permission = Permission(**data.model_dump())
    db.add(permission)
    try:
        await db.commit()
    except IntegrityError:
        await db.rollback()
        raise AlreadyExists(f"Permission '{data.name}' already exists")
    await db.refresh(permission)

    # Super admins hold the whole catalog
    if cache is not None:
        await cache.invalidate_all()

    log.info(f"Created permission {permission.name} ({permission.category})")
    return permission


async def delete_permission(
    db: AsyncSession,
    permission_id: str,
    *,
    cache: Optional[PermissionCache] = None
) -> None:
    """Remove an unreferenced permission."""
    permission = await _get_permission(db, permission_id)

    references = await store.count_permission_references(db, permission_id)
    if references:
        raise InvalidState(
            f"Permission '{permission.name}' is referenced by {references} role or user grants"
        )

    await db.execute(delete(Permission).where(Permission.id == permission_id))
    await db.commit()

    if cache is not None:
        await cache.invalidate_all()

    log.info(f"Deleted permission {permission.name}")


# ============================================================================
# Roles
# ============================================================================

async def list_roles(db: AsyncSession, company_id: Optional[str] = None) -> list[Role]:
    return await store.list_roles(db, company_id)


async def get_role(db: AsyncSession, role_id: str) -> Role:
    return await _get_role(db, role_id)


async def create_role(
    db: AsyncSession,
    data: RoleCreate,
    *,
    scope_company_id: Optional[str] = None
) -> Role:
    """
    Create a role.

    Under a tenant scope the role is always a non-system role of that company.
    """
    if scope_company_id is not None:
        if data.company_id not in (None, scope_company_id):
            raise CrossCompanyScope("Cannot create roles for another company")
        company_id = scope_company_id
        is_system_role = False
    else:
        company_id = data.company_id
        is_system_role = data.is_system_role
        if is_system_role and company_id is not None:
            raise InvalidState("System roles cannot belong to a company")

    if company_id is not None and await db.get(Company, company_id) is None:
        raise NotFoundError(f"Company not found: {company_id}")

    if await store.find_role_by_name(db, data.name, company_id):
        raise AlreadyExists(f"Role '{data.name}' already exists in this scope")

    role = Role(
        name=data.name,
        description=data.description,
        company_id=company_id,
        is_system_role=is_system_role,
    )
    role.permissions = []
    db.add(role)
    try:
        await db.commit()
    except IntegrityError:
        await db.rollback()
        raise AlreadyExists(f"Role '{data.name}' already exists in this scope")
    await db.refresh(role)

    log.info(f"Created role '{role.name}' (company={company_id}, system={is_system_role})")
    return role


async def update_role(
    db: AsyncSession,
    role_id: str,
    data: RoleUpdate,
    *,
    scope_company_id: Optional[str] = None,
    cache: Optional[PermissionCache] = None
) -> Role:
    role = await _get_role(db, role_id)
    _check_role_writable(role, scope_company_id)

    update_data = data.model_dump(exclude_unset=True)
    new_name = update_data.get("name")
    if new_name and await store.find_role_by_name(db, new_name, role.company_id, exclude_role_id=role.id):
        raise AlreadyExists(f"Role '{new_name}' already exists in this scope")

    for key, value in update_data.items():
        setattr(role, key, value)

    try:
        await db.commit()
    except IntegrityError:
        await db.rollback()
        raise AlreadyExists(f"Role '{new_name}' already exists in this scope")
    await db.refresh(role)

    # Cached sets carry the role name
    await invalidate_role_holders(db, cache, role.id)

    log.info(f"Updated role {role.id}: {update_data}")
    return role


async def delete_role(
    db: AsyncSession,
    role_id: str,
    *,
    scope_company_id: Optional[str] = None,
    cache: Optional[PermissionCache] = None
) -> None:
    """
    Delete a role nobody currently holds.

    Expired assignments of the role are removed with it.
    """
    role = await _get_role(db, role_id)
    _check_role_writable(role, scope_company_id)
    if role.id == SUPER_ADMIN_ROLE_ID:
        raise InvalidState("The Super Admin role cannot be deleted")

    holders = await store.count_active_role_holders(db, role_id, utcnow())
    if holders:
        raise InvalidState(f"Role '{role.name}' is held by {holders} users")

    stale_holders = await store.list_role_holder_ids(db, role_id)
    await store.delete_role_assignments_for_role(db, role_id)
    await store.delete_all_role_permissions(db, role_id)
    await db.execute(delete(Role).where(Role.id == role_id))
    await _commit(db, f"Role '{role.name}' is still referenced")

    if cache is not None:
        await cache.invalidate_users(stale_holders)

    log.info(f"Deleted role '{role.name}' ({role_id})")


# ============================================================================
# Role -> Permission
# ============================================================================

async def add_permission_to_role(
    db: AsyncSession,
    role_id: str,
    permission_id: str,
    *,
    scope_company_id: Optional[str] = None,
    cache: Optional[PermissionCache] = None
) -> None:
    role = await _get_role(db, role_id)
    _check_role_writable(role, scope_company_id)
    permission = await _get_permission(db, permission_id)
    _check_permissions_grantable([permission], scope_company_id)

    if await store.role_permission_exists(db, role_id, permission_id):
        raise InvalidState(f"Permission '{permission.name}' already assigned to role '{role.name}'")

    await store.insert_role_permissions(db, role_id, [permission_id])
    await _commit(db, f"Permission '{permission.name}' already assigned to role '{role.name}'")
    await invalidate_role_holders(db, cache, role_id)

    log.info(f"Permission '{permission.name}' assigned to role '{role.name}'")


async def remove_permission_from_role(
    db: AsyncSession,
    role_id: str,
    permission_id: str,
    *,
    scope_company_id: Optional[str] = None,
    cache: Optional[PermissionCache] = None
) -> None:
    role = await _get_role(db, role_id)
    _check_role_writable(role, scope_company_id)

    if not await store.delete_role_permission(db, role_id, permission_id):
        raise GrantNotFound(f"Permission {permission_id} is not assigned to role '{role.name}'")

    await db.commit()
    await invalidate_role_holders(db, cache, role_id)

    log.info(f"Permission {permission_id} removed from role '{role.name}'")


async def replace_role_permissions(
    db: AsyncSession,
    role_id: str,
    permission_ids: Iterable[str],
    *,
    scope_company_id: Optional[str] = None,
    cache: Optional[PermissionCache] = None
) -> None:
    """
    Atomically make the role hold exactly these permissions.

    Unknown ids abort before anything is written; duplicates in the input
    collapse to one link. Calling twice with the same ids is a no-op.
    """
    role = await _get_role(db, role_id)
    _check_role_writable(role, scope_company_id)
    permissions = await _get_permissions(db, permission_ids)
    _check_permissions_grantable(permissions, scope_company_id)

    try:
        await store.delete_all_role_permissions(db, role_id)
        await store.insert_role_permissions(db, role_id, [p.id for p in permissions])
        await db.commit()
    except Exception:
        await db.rollback()
        raise

    await invalidate_role_holders(db, cache, role_id)
    log.info(f"Replaced permissions of role '{role.name}' with {len(permissions)} permissions")


# ============================================================================
# User -> Role
# ============================================================================

async def assign_role(
    db: AsyncSession,
    user_id: str,
    role_id: str,
    grantor_id: Optional[str],
    expires_at: Optional[datetime] = None,
    *,
    scope_company_id: Optional[str] = None,
    cache: Optional[PermissionCache] = None
) -> None:
    """
    Make `role_id` the user's role, replacing any previous one.

    Raises:
        UserNotFound, RoleNotFound, CrossCompanyScope
        redis.RedisError: cache invalidation failed after the commit
    """
    await bulk_assign_role(
        db, [user_id], role_id, grantor_id, expires_at,
        scope_company_id=scope_company_id, cache=cache
    )


async def bulk_assign_role(
    db: AsyncSession,
    user_ids: Iterable[str],
    role_id: str,
    grantor_id: Optional[str],
    expires_at: Optional[datetime] = None,
    *,
    scope_company_id: Optional[str] = None,
    cache: Optional[PermissionCache] = None
) -> None:
    """Assign one role to many users; every user is validated before any link is written."""
    user_ids = list(dict.fromkeys(user_ids))
    now = utcnow()
    expires_at = _normalize_expiry(expires_at, now)

    users = {u.id: u for u in await store.get_users(db, user_ids)}
    for uid in user_ids:
        if uid not in users:
            raise UserNotFound(uid)
    role = await _get_role(db, role_id)

    for user in users.values():
        _check_user_in_scope(user, scope_company_id)
        _check_role_assignable(role, user, scope_company_id)
    await _check_super_admins_kept(db, user_ids, scope_company_id, now)
    await _check_grantor(db, grantor_id)

    try:
        await store.upsert_role_assignments(db, user_ids, role_id, grantor_id, now, expires_at)
        await db.commit()
    except Exception:
        await db.rollback()
        raise

    if cache is not None:
        await cache.invalidate_users(user_ids)

    log.info(f"Role '{role.name}' assigned to {len(user_ids)} users by {grantor_id}")


async def remove_role(
    db: AsyncSession,
    user_id: str,
    *,
    scope_company_id: Optional[str] = None,
    cache: Optional[PermissionCache] = None
) -> None:
    user = await _get_user(db, user_id)
    _check_user_in_scope(user, scope_company_id)

    assignment = await store.get_role_assignment(db, user_id)
    if assignment is None:
        raise GrantNotFound(f"User {user_id} holds no role")
    if assignment.role_id == SUPER_ADMIN_ROLE_ID and scope_company_id is not None:
        raise CrossCompanyScope("Only the platform scope may remove the Super Admin role")

    await store.delete_role_assignment(db, user_id)
    await db.commit()

    if cache is not None:
        await cache.invalidate_user(user_id)

    log.info(f"Removed role {assignment.role_id} from user {user_id}")


# ============================================================================
# User -> Permission
# ============================================================================

async def grant_direct_permission(
    db: AsyncSession,
    user_id: str,
    permission_id: str,
    granted: bool,
    grantor_id: Optional[str],
    reason: Optional[str] = None,
    expires_at: Optional[datetime] = None,
    *,
    scope_company_id: Optional[str] = None,
    cache: Optional[PermissionCache] = None
) -> None:
    """
    Record a direct grant (granted=True) or denial (granted=False).

    An existing record for the same permission is overwritten.
    """
    await bulk_grant_direct_permissions(
        db, user_id, [permission_id], granted, grantor_id, reason, expires_at,
        scope_company_id=scope_company_id, cache=cache
    )


async def bulk_grant_direct_permissions(
    db: AsyncSession,
    user_id: str,
    permission_ids: Iterable[str],
    granted: bool,
    grantor_id: Optional[str],
    reason: Optional[str] = None,
    expires_at: Optional[datetime] = None,
    *,
    scope_company_id: Optional[str] = None,
    cache: Optional[PermissionCache] = None
) -> None:
    """Grant or deny several permissions to one user in a single transaction."""
    now = utcnow()
    expires_at = _normalize_expiry(expires_at, now)

    user = await _get_user(db, user_id)
    _check_user_in_scope(user, scope_company_id)
    permissions = await _get_permissions(db, permission_ids)
    if granted:
        _check_permissions_grantable(permissions, scope_company_id)
    await _check_grantor(db, grantor_id)

    try:
        for permission in permissions:
            await store.upsert_direct_grant(
                db,
                user_id=user.id,
                permission_id=permission.id,
                company_id=user.company_id,
                granted=granted,
                granted_by_id=grantor_id,
                granted_at=now,
                expires_at=expires_at,
                reason=reason,
            )
        await db.commit()
    except Exception:
        await db.rollback()
        raise

    if cache is not None:
        await cache.invalidate_user(user.id)

    action = "Granted" if granted else "Denied"
    log.info(
        f"{action} {', '.join(p.name for p in permissions)} for user {user.id} by {grantor_id}"
        + (f" ({reason})" if reason else "")
    )


async def revoke_direct_permission(
    db: AsyncSession,
    user_id: str,
    permission_id: str,
    *,
    scope_company_id: Optional[str] = None,
    cache: Optional[PermissionCache] = None
) -> None:
    """Delete a direct grant or denial; the role's permissions apply again."""
    user = await _get_user(db, user_id)
    _check_user_in_scope(user, scope_company_id)

    if not await store.delete_direct_grant(db, user_id, permission_id):
        raise GrantNotFound(f"User {user_id} has no direct grant for permission {permission_id}")

    await db.commit()

    if cache is not None:
        await cache.invalidate_user(user_id)

    log.info(f"Revoked direct grant of permission {permission_id} for user {user_id}")
