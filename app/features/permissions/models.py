"""
Permission and Role models for company-scoped RBAC.

This module implements the grant store schema:
- Permission catalog (globally unique names grouped by category)
- Roles, system-wide (company_id is null) or scoped to one company
- Role -> Permission links
- User -> Role assignment (one row per user, optional expiry)
- User -> Permission direct grants and denials (optional expiry)
"""
from sqlalchemy import (
    String, ForeignKey, Table, Column, Text, DateTime, Boolean, UniqueConstraint, func
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.core.database.base import Base, TimestampMixin, generate_ulid


# ============================================================================
# Association Tables
# ============================================================================

# Role-Permission relationship
role_permissions = Table(
    "role_permissions",
    Base.metadata,
    Column("role_id", String(26), ForeignKey("roles.id", ondelete="CASCADE"), primary_key=True),
    Column("permission_id", String(26), ForeignKey("permissions.id", ondelete="RESTRICT"), primary_key=True),
    Column("created_at", DateTime(timezone=True), nullable=False, server_default=func.now()),
)

# A user holds at most one role; user_id is the primary key
user_roles = Table(
    "user_roles",
    Base.metadata,
    Column("user_id", String(26), ForeignKey("users.id", ondelete="CASCADE"), primary_key=True),
    Column("role_id", String(26), ForeignKey("roles.id", ondelete="RESTRICT"), nullable=False, index=True),
    Column("granted_by_id", String(26), ForeignKey("users.id", ondelete="SET NULL"), nullable=True),
    Column("granted_at", DateTime(timezone=True), nullable=False),
    Column("expires_at", DateTime(timezone=True), nullable=True),
)

# Direct grants (granted=True) and denials (granted=False) within the user's company
user_permissions = Table(
    "user_permissions",
    Base.metadata,
    Column("user_id", String(26), ForeignKey("users.id", ondelete="CASCADE"), primary_key=True),
    Column("permission_id", String(26), ForeignKey("permissions.id", ondelete="RESTRICT"), primary_key=True),
    Column("company_id", String(26), ForeignKey("companies.id", ondelete="CASCADE"), nullable=True, index=True),
    Column("granted", Boolean, nullable=False, default=True),
    Column("granted_by_id", String(26), ForeignKey("users.id", ondelete="SET NULL"), nullable=True),
    Column("granted_at", DateTime(timezone=True), nullable=False),
    Column("expires_at", DateTime(timezone=True), nullable=True),
    Column("reason", String(500), nullable=True),
)


# ============================================================================
# Core Models
# ============================================================================

class Permission(Base, TimestampMixin):
    """
    Permission model: one named capability checked at an authorization boundary.

    Names are data ("team.manage_members"), not an enumeration, so the
    catalog can grow without a redeploy. The category only groups
    permissions for display.
    """
    __tablename__ = "permissions"

    id: Mapped[str] = mapped_column(String(26), primary_key=True, default=generate_ulid)

    name: Mapped[str] = mapped_column(String(100), unique=True, nullable=False, index=True)
    category: Mapped[str] = mapped_column(String(50), nullable=False, index=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)

    def __repr__(self) -> str:
        return f"<Permission(id={self.id}, name={self.name!r}, category={self.category})>"


class Role(Base, TimestampMixin):
    """
    Role model for grouping permissions.

    Roles are company-specific or global (company_id is null).
    System roles are seeded and read-only to tenant admins.
    """
    __tablename__ = "roles"
    __table_args__ = (
        UniqueConstraint("name", "company_id", name="uq_role_name_per_company"),
    )

    id: Mapped[str] = mapped_column(String(26), primary_key=True, default=generate_ulid)

    name: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Optional: Link to specific company (null = system-wide role)
    company_id: Mapped[str | None] = mapped_column(
        String(26),
        ForeignKey("companies.id", ondelete="CASCADE"),
        nullable=True,
        index=True
    )

    is_system_role: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    permissions: Mapped[list["Permission"]] = relationship(
        "Permission",
        secondary=role_permissions,
        lazy="selectin",
        order_by="Permission.name"
    )

    def __repr__(self) -> str:
        return f"<Role(id={self.id}, name={self.name!r}, company_id={self.company_id})>"
