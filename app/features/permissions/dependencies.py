"""
FastAPI dependencies for route protection.

Guards resolve the caller's effective permissions in their own company and
answer 403 when a required permission is missing. Super-Admin role holders
pass every guard; the bypass is recorded on request.state so handlers can
tell it apart from an ordinary grant.
"""
from typing import Annotated, Optional
from fastapi import Depends, HTTPException, status, Request
from sqlalchemy.ext.asyncio import AsyncSession

from app.core import config
from app.core.database.engine import get_db
from app.features.permissions.cache import PermissionCache
from app.features.permissions.resolver import has_permissions, is_super_admin
from app.features.users.dependencies import get_current_user
from app.features.users.models import User
from app.utils import get_logger


log = get_logger(__name__)


def get_permission_cache(request: Request) -> Optional[PermissionCache]:
    """The app-scoped cache created at startup, if any."""
    return getattr(request.app.state, "permission_cache", None)


async def super_admin_bypass(
    request: Request,
    db: Annotated[AsyncSession, Depends(get_db)],
    current_user: Annotated[User, Depends(get_current_user)]
) -> bool:
    """
    Record on request.state whether the caller bypasses permission checks.

    Runs before any company boundary check.
    """
    bypass = await is_super_admin(
        db, current_user.id, current_user.company_id,
        timeout=config.PERMISSION_CHECK_TIMEOUT
    )
    request.state.super_admin_bypass = bypass
    if bypass:
        log.debug(f"Super admin bypass for user {current_user.id} on {request.url.path}")
    return bypass


def _check_failed() -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_403_FORBIDDEN,
        detail="Permission check failed"
    )


def require_permissions(*permission_names: str):
    """
    FastAPI dependency to require ALL of the given permissions.

    Usage:
        @router.post("/teams")
        async def create_team(
            user: User = Depends(require_permissions("team.create"))
        ):
            pass

    Returns:
        Dependency function that returns the current user if every permission is held

    Raises:
        HTTPException: 403 naming the missing permissions
    """
    async def permission_dependency(
        request: Request,
        db: Annotated[AsyncSession, Depends(get_db)],
        current_user: Annotated[User, Depends(get_current_user)],
        bypass: Annotated[bool, Depends(super_admin_bypass)],
        cache: Annotated[Optional[PermissionCache], Depends(get_permission_cache)]
    ) -> User:
        if bypass:
            return current_user

        try:
            check = await has_permissions(
                db, current_user.id, permission_names, current_user.company_id,
                cache=cache, timeout=config.PERMISSION_CHECK_TIMEOUT
            )
        except Exception as e:
            log.error(f"Permission check failed for user {current_user.id}: {e}")
            raise _check_failed()

        if not check.all_granted:
            log.warning(
                f"User {current_user.id} denied on {request.url.path}: missing {check.missing}"
            )
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"Missing required permissions: {', '.join(check.missing)}"
            )

        return current_user

    return permission_dependency


def require_any_permission(*permission_names: str):
    """
    FastAPI dependency to require ANY of the given permissions.

    Usage:
        @router.get("/teams")
        async def list_teams(
            user: User = Depends(require_any_permission("team.read", "company.read"))
        ):
            pass
    """
    async def permission_dependency(
        request: Request,
        db: Annotated[AsyncSession, Depends(get_db)],
        current_user: Annotated[User, Depends(get_current_user)],
        bypass: Annotated[bool, Depends(super_admin_bypass)],
        cache: Annotated[Optional[PermissionCache], Depends(get_permission_cache)]
    ) -> User:
        if bypass:
            return current_user

        try:
            check = await has_permissions(
                db, current_user.id, permission_names, current_user.company_id,
                cache=cache, timeout=config.PERMISSION_CHECK_TIMEOUT
            )
        except Exception as e:
            log.error(f"Permission check failed for user {current_user.id}: {e}")
            raise _check_failed()

        if check.granted_count == 0:
            log.warning(f"User {current_user.id} denied on {request.url.path}: none of {list(permission_names)}")
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"Permission denied: requires one of {', '.join(permission_names)}"
            )

        return current_user

    return permission_dependency


async def require_company_access(
    company_id: str,
    current_user: Annotated[User, Depends(get_current_user)],
    bypass: Annotated[bool, Depends(super_admin_bypass)]
) -> User:
    """
    Ensure the `company_id` path parameter is the caller's own company.

    Super admins may access any company.
    """
    if bypass:
        return current_user

    if current_user.company_id != company_id:
        log.warning(f"User {current_user.id} of company {current_user.company_id} denied access to company {company_id}")
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Access to this company is not allowed"
        )

    return current_user
