"""
FastAPI dependencies for authentication.

The authenticated user (id, company_id) is what the permission resolver
and the authorization guards consume.
"""
from typing import Annotated
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.database.engine import get_db
from app.features.users.models import User
from app.features.users.auth import verify_jwt_token
from app.utils import get_logger, utcnow


log = get_logger(__name__)
security = HTTPBearer()


async def get_current_user(
    credentials: Annotated[HTTPAuthorizationCredentials, Depends(security)],
    db: Annotated[AsyncSession, Depends(get_db)]
) -> User:
    """
    Get the current authenticated user from the bearer token.

    This dependency:
    1. Extracts JWT from Authorization header
    2. Verifies it
    3. Looks up the local user by identity-provider subject
    4. Updates last_login_at timestamp

    Users are provisioned elsewhere; an unknown subject is rejected.
    """
    payload = verify_jwt_token(credentials.credentials)
    subject = payload.get("sub")

    result = await db.execute(
        select(User).where(User.external_id == subject)
    )
    user = result.scalar_one_or_none()

    if user is None:
        log.info(f"Rejected token for unknown subject {subject}")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Unknown user",
            headers={"WWW-Authenticate": "Bearer"},
        )

    if not user.is_active:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="User account is deactivated",
        )

    user.last_login_at = utcnow()
    await db.flush()

    return user
