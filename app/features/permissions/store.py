"""
Grant store access layer.

Thin async queries over roles, permissions and the three link tables.
Every read or write of user_roles / user_permissions is filtered by
company scope or by user id; callers verify the user's company first.
Nothing here commits; transactions belong to the caller.
"""
from datetime import datetime
from typing import Iterable, Optional, Sequence
from sqlalchemy import select, delete, update, insert, and_, or_, func
from sqlalchemy.ext.asyncio import AsyncSession

from app.features.permissions.models import (
    Permission,
    Role,
    role_permissions,
    user_roles,
    user_permissions,
)
from app.features.users.models import User


def not_expired(column, at: datetime):
    return or_(column.is_(None), column > at)


def same_company(column, company_id: Optional[str]):
    if company_id is None:
        return column.is_(None)
    return column == company_id


# ============================================================================
# Users
# ============================================================================

async def get_user(db: AsyncSession, user_id: str) -> Optional[User]:
    result = await db.execute(select(User).where(User.id == user_id))
    return result.scalar_one_or_none()


async def get_users(db: AsyncSession, user_ids: Iterable[str]) -> list[User]:
    result = await db.execute(select(User).where(User.id.in_(list(user_ids))))
    return list(result.scalars().all())


async def list_company_user_ids(db: AsyncSession, company_id: str) -> list[str]:
    result = await db.execute(select(User.id).where(User.company_id == company_id))
    return list(result.scalars().all())


# ============================================================================
# Permissions
# ============================================================================

async def get_permission(db: AsyncSession, permission_id: str) -> Optional[Permission]:
    result = await db.execute(select(Permission).where(Permission.id == permission_id))
    return result.scalar_one_or_none()


async def get_permission_by_name(db: AsyncSession, name: str) -> Optional[Permission]:
    result = await db.execute(select(Permission).where(Permission.name == name))
    return result.scalar_one_or_none()


async def get_permissions(db: AsyncSession, permission_ids: Iterable[str]) -> list[Permission]:
    result = await db.execute(select(Permission).where(Permission.id.in_(list(permission_ids))))
    return list(result.scalars().all())


async def list_permissions(db: AsyncSession) -> list[Permission]:
    result = await db.execute(select(Permission).order_by(Permission.category, Permission.name))
    return list(result.scalars().all())


async def count_permission_references(db: AsyncSession, permission_id: str) -> int:
    role_links = await db.execute(
        select(func.count()).select_from(role_permissions)
        .where(role_permissions.c.permission_id == permission_id)
    )
    user_links = await db.execute(
        select(func.count()).select_from(user_permissions)
        .where(user_permissions.c.permission_id == permission_id)
    )
    return (role_links.scalar() or 0) + (user_links.scalar() or 0)


# ============================================================================
# Roles
# ============================================================================

async def get_role(db: AsyncSession, role_id: str) -> Optional[Role]:
    result = await db.execute(
        select(Role).where(Role.id == role_id).execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def find_role_by_name(
    db: AsyncSession,
    name: str,
    company_id: Optional[str],
    exclude_role_id: Optional[str] = None
) -> Optional[Role]:
    """Case-insensitive name lookup within exactly one scope."""
    stmt = select(Role).where(
        and_(func.lower(Role.name) == name.lower(), same_company(Role.company_id, company_id))
    )
    if exclude_role_id:
        stmt = stmt.where(Role.id != exclude_role_id)
    result = await db.execute(stmt)
    return result.scalars().first()


async def list_roles(db: AsyncSession, company_id: Optional[str] = None) -> list[Role]:
    """System roles plus, when given, one company's roles."""
    stmt = select(Role)
    if company_id:
        stmt = stmt.where(or_(Role.company_id == company_id, Role.company_id.is_(None)))
    else:
        stmt = stmt.where(Role.company_id.is_(None))
    result = await db.execute(stmt.order_by(Role.name))
    return list(result.scalars().all())


async def get_role_permissions(db: AsyncSession, role_id: str) -> list[Permission]:
    result = await db.execute(
        select(Permission)
        .join(role_permissions, role_permissions.c.permission_id == Permission.id)
        .where(role_permissions.c.role_id == role_id)
        .order_by(Permission.name)
    )
    return list(result.scalars().all())


async def role_permission_exists(db: AsyncSession, role_id: str, permission_id: str) -> bool:
    result = await db.execute(
        select(role_permissions).where(
            and_(
                role_permissions.c.role_id == role_id,
                role_permissions.c.permission_id == permission_id
            )
        )
    )
    return result.first() is not None


async def insert_role_permissions(db: AsyncSession, role_id: str, permission_ids: Sequence[str]) -> None:
    if not permission_ids:
        return
    await db.execute(
        insert(role_permissions),
        [{"role_id": role_id, "permission_id": pid} for pid in permission_ids]
    )


async def delete_role_permission(db: AsyncSession, role_id: str, permission_id: str) -> int:
    result = await db.execute(
        delete(role_permissions).where(
            and_(
                role_permissions.c.role_id == role_id,
                role_permissions.c.permission_id == permission_id
            )
        )
    )
    return result.rowcount


async def delete_all_role_permissions(db: AsyncSession, role_id: str) -> int:
    result = await db.execute(delete(role_permissions).where(role_permissions.c.role_id == role_id))
    return result.rowcount


# ============================================================================
# User -> Role
# ============================================================================

async def get_active_role(db: AsyncSession, user_id: str, at: datetime):
    """
    The user's current role and its expiry, or None.

    Returns:
        Row with (Role, expires_at) or None when unassigned or expired
    """
    result = await db.execute(
        select(Role, user_roles.c.expires_at)
        .join(user_roles, user_roles.c.role_id == Role.id)
        .where(
            and_(
                user_roles.c.user_id == user_id,
                not_expired(user_roles.c.expires_at, at)
            )
        )
    )
    return result.first()


async def get_active_role_id(db: AsyncSession, user_id: str, at: datetime) -> Optional[str]:
    result = await db.execute(
        select(user_roles.c.role_id).where(
            and_(
                user_roles.c.user_id == user_id,
                not_expired(user_roles.c.expires_at, at)
            )
        )
    )
    return result.scalar_one_or_none()


async def get_role_assignment(db: AsyncSession, user_id: str):
    result = await db.execute(select(user_roles).where(user_roles.c.user_id == user_id))
    return result.first()


async def get_role_assignments(db: AsyncSession, user_ids: Iterable[str]):
    result = await db.execute(select(user_roles).where(user_roles.c.user_id.in_(list(user_ids))))
    return list(result.all())


async def upsert_role_assignments(
    db: AsyncSession,
    user_ids: Sequence[str],
    role_id: str,
    granted_by_id: Optional[str],
    granted_at: datetime,
    expires_at: Optional[datetime]
) -> None:
    """Give each user exactly this role, replacing any previous assignment."""
    if not user_ids:
        return
    await db.execute(delete(user_roles).where(user_roles.c.user_id.in_(list(user_ids))))
    await db.execute(
        insert(user_roles),
        [
            {
                "user_id": uid,
                "role_id": role_id,
                "granted_by_id": granted_by_id,
                "granted_at": granted_at,
                "expires_at": expires_at,
            }
            for uid in user_ids
        ]
    )


async def delete_role_assignment(db: AsyncSession, user_id: str) -> int:
    result = await db.execute(delete(user_roles).where(user_roles.c.user_id == user_id))
    return result.rowcount


async def count_active_role_holders(db: AsyncSession, role_id: str, at: datetime) -> int:
    result = await db.execute(
        select(func.count()).select_from(user_roles).where(
            and_(
                user_roles.c.role_id == role_id,
                not_expired(user_roles.c.expires_at, at)
            )
        )
    )
    return result.scalar() or 0


async def list_role_holder_ids(db: AsyncSession, role_id: str) -> list[str]:
    """All users linked to the role, expired or not."""
    result = await db.execute(select(user_roles.c.user_id).where(user_roles.c.role_id == role_id))
    return list(result.scalars().all())


async def delete_role_assignments_for_role(db: AsyncSession, role_id: str) -> int:
    result = await db.execute(delete(user_roles).where(user_roles.c.role_id == role_id))
    return result.rowcount


# ============================================================================
# User -> Permission (grants and denials)
# ============================================================================

async def get_direct_grants(
    db: AsyncSession,
    user_id: str,
    company_id: Optional[str],
    at: datetime
):
    """
    Non-expired direct grants and denials of a user within one company.

    Returns:
        Rows of (Permission, granted, expires_at)
    """
    result = await db.execute(
        select(Permission, user_permissions.c.granted, user_permissions.c.expires_at)
        .join(user_permissions, user_permissions.c.permission_id == Permission.id)
        .where(
            and_(
                user_permissions.c.user_id == user_id,
                same_company(user_permissions.c.company_id, company_id),
                not_expired(user_permissions.c.expires_at, at)
            )
        )
    )
    return result.all()


async def get_direct_grant(db: AsyncSession, user_id: str, permission_id: str):
    result = await db.execute(
        select(user_permissions).where(
            and_(
                user_permissions.c.user_id == user_id,
                user_permissions.c.permission_id == permission_id
            )
        )
    )
    return result.first()


async def upsert_direct_grant(
    db: AsyncSession,
    user_id: str,
    permission_id: str,
    company_id: Optional[str],
    granted: bool,
    granted_by_id: Optional[str],
    granted_at: datetime,
    expires_at: Optional[datetime],
    reason: Optional[str]
) -> None:
    """Insert the (user, permission) tuple or overwrite its polarity and metadata."""
    values = {
        "company_id": company_id,
        "granted": granted,
        "granted_by_id": granted_by_id,
        "granted_at": granted_at,
        "expires_at": expires_at,
        "reason": reason,
    }
    if await get_direct_grant(db, user_id, permission_id):
        await db.execute(
            update(user_permissions)
            .where(
                and_(
                    user_permissions.c.user_id == user_id,
                    user_permissions.c.permission_id == permission_id
                )
            )
            .values(**values)
        )
    else:
        await db.execute(
            insert(user_permissions).values(user_id=user_id, permission_id=permission_id, **values)
        )


async def delete_direct_grant(db: AsyncSession, user_id: str, permission_id: str) -> int:
    result = await db.execute(
        delete(user_permissions).where(
            and_(
                user_permissions.c.user_id == user_id,
                user_permissions.c.permission_id == permission_id
            )
        )
    )
    return result.rowcount
