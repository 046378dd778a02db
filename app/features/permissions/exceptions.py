"""
Typed failures raised by the permission resolver and catalog management.

Guards translate these into HTTP responses (see install_exception_handlers).
"""
from fastapi import FastAPI, status
from starlette.requests import Request
from starlette.responses import JSONResponse

from app.utils import get_logger


log = get_logger(__name__)


class PermissionSystemError(Exception):
    """Base class; `code` is a stable machine-readable identifier."""
    code = "PERMISSION_ERROR"
    status_code = status.HTTP_400_BAD_REQUEST

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class NotFoundError(PermissionSystemError):
    code = "NOT_FOUND"
    status_code = status.HTTP_404_NOT_FOUND


class UserNotFound(NotFoundError):
    code = "USER_NOT_FOUND"

    def __init__(self, user_id: str):
        super().__init__(f"User not found: {user_id}")
        self.user_id = user_id


class RoleNotFound(NotFoundError):
    code = "ROLE_NOT_FOUND"

    def __init__(self, role_id: str):
        super().__init__(f"Role not found: {role_id}")
        self.role_id = role_id


class PermissionNotFound(NotFoundError):
    code = "PERMISSION_NOT_FOUND"

    def __init__(self, permission_ids: str | list[str]):
        if isinstance(permission_ids, str):
            permission_ids = [permission_ids]
        super().__init__(f"Permission not found: {', '.join(permission_ids)}")
        self.permission_ids = permission_ids


class GrantNotFound(NotFoundError):
    """A role-permission link, role assignment or direct grant does not exist."""
    code = "GRANT_NOT_FOUND"


class AlreadyExists(PermissionSystemError):
    code = "ALREADY_EXISTS"
    status_code = status.HTTP_409_CONFLICT


class CrossCompanyScope(PermissionSystemError):
    code = "CROSS_COMPANY_SCOPE"
    status_code = status.HTTP_403_FORBIDDEN


class InvalidState(PermissionSystemError):
    code = "INVALID_STATE"
    status_code = status.HTTP_409_CONFLICT


async def permission_error_handler(_request: Request, exc: PermissionSystemError) -> JSONResponse:
    log.info(f"{exc.code}: {exc.message}")
    return JSONResponse(
        status_code=exc.status_code,
        content={"success": False, "code": exc.code, "message": exc.message},
    )


def install_exception_handlers(app: FastAPI) -> None:
    """Map every PermissionSystemError subclass to its HTTP status."""
    app.add_exception_handler(PermissionSystemError, permission_error_handler)
