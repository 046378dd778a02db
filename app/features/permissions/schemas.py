"""
Pydantic schemas for permission management.

Inputs for catalog management and the resolved-permission models returned
to guards (these are also what the permission cache serializes).
"""
import enum
from datetime import datetime
from typing import Annotated, List, Optional
from pydantic import BaseModel, Field, StringConstraints, field_validator


# Permission names are free-form data validated by shape: "<category>.<action>"
PermissionName = Annotated[
    str,
    StringConstraints(
        strip_whitespace=True,
        min_length=3,
        max_length=100,
        pattern=r"^[a-z][a-z0-9_]*(\.[a-z][a-z0-9_]*)+$",
    ),
]


# ============================================================================
# Permission Schemas
# ============================================================================

class PermissionCreate(BaseModel):
    """Schema for adding a permission to the catalog."""
    name: PermissionName = Field(..., description="Unique permission name, e.g. 'team.read'")
    category: str = Field(..., min_length=1, max_length=50, description="Grouping label")
    description: Optional[str] = Field(None, max_length=1000)

    @field_validator('category')
    @classmethod
    def category_lowercase(cls, v: str) -> str:
        return v.strip().lower()


# ============================================================================
# Role Schemas
# ============================================================================

class RoleBase(BaseModel):
    """Base role schema."""
    name: str = Field(..., min_length=1, max_length=100, description="Role name, unique per company")
    description: Optional[str] = Field(None, max_length=1000, description="Role description")

    @field_validator('name')
    @classmethod
    def name_not_blank(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError('Role name must not be blank')
        return v


class RoleCreate(RoleBase):
    """Schema for creating a new role."""
    company_id: Optional[str] = Field(None, description="Company ID (null for system-wide role)")
    is_system_role: bool = False


class RoleUpdate(BaseModel):
    """Schema for updating a role."""
    name: Optional[str] = Field(None, min_length=1, max_length=100)
    description: Optional[str] = Field(None, max_length=1000)


# ============================================================================
# Effective Permissions
# ============================================================================

class PermissionSource(str, enum.Enum):
    """Where an effective permission came from."""
    ROLE = "role"
    DIRECT = "direct"
    SUPER_ADMIN = "super_admin"


class EffectivePermission(BaseModel):
    name: str
    category: str
    source: PermissionSource
    source_role_id: Optional[str] = None
    source_role_name: Optional[str] = None
    expires_at: Optional[datetime] = None


class EffectivePermissions(BaseModel):
    """Resolved permission set for one user in one company context."""
    user_id: str
    company_id: Optional[str]
    is_super_admin: bool = False
    permissions: List[EffectivePermission] = []
    calculated_at: datetime
    from_cache: bool = False

    @property
    def permission_names(self) -> list[str]:
        return [p.name for p in self.permissions]

    def get(self, name: str) -> Optional[EffectivePermission]:
        for permission in self.permissions:
            if permission.name == name:
                return permission
        return None


class PermissionCheckResult(BaseModel):
    permission_name: str
    granted: bool
    source: Optional[PermissionSource] = None
    source_role_name: Optional[str] = None


class BulkPermissionCheck(BaseModel):
    user_id: str
    results: List[PermissionCheckResult]
    from_cache: bool = False

    @property
    def granted_count(self) -> int:
        return sum(1 for r in self.results if r.granted)

    @property
    def missing(self) -> list[str]:
        return [r.permission_name for r in self.results if not r.granted]

    @property
    def all_granted(self) -> bool:
        return not self.missing


# ============================================================================
# Cache Schemas
# ============================================================================

class CacheStatistics(BaseModel):
    enabled: bool
    total_entries: int
    hits: int
    misses: int
    hit_ratio: float


class CacheWarmupResult(BaseModel):
    warmed_count: int
    users_processed: int
    errors: List[str] = []
