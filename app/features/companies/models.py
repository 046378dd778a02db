"""
Company model: the tenant boundary.

Roles, role assignments and direct permission grants are all filtered by the
company they belong to; tables are shared across tenants.
"""
from sqlalchemy import String, Boolean
from sqlalchemy.orm import Mapped, mapped_column

from app.core.database.base import Base, TimestampMixin, generate_ulid


class Company(Base, TimestampMixin):
    """
    Company (tenant) record.

    Users belong to at most one company. Company-scoped roles are only
    valid for users of the same company.
    """
    __tablename__ = "companies"

    id: Mapped[str] = mapped_column(String(26), primary_key=True, default=generate_ulid)
    name: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    def __repr__(self) -> str:
        return f"<Company(id={self.id}, name={self.name!r})>"
