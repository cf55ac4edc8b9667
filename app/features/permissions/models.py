"""
Resource, Permission and binding models for role-based access control.

This module implements the authorization data model:
- Resources: named, protectable entity types (goals, performance_reviews, ...)
- Permissions: one (resource, action) pair each
- Role permissions: default policy binding a fixed role to a permission
- User permissions: per-user overrides that grant or deny, optionally expiring
- Audit log of RBAC mutations
"""
import enum
from datetime import datetime
from typing import Any, Dict
from sqlalchemy import (
    String, ForeignKey, JSON, Text, DateTime, Boolean, Enum, UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.core.database.base import Base, TimestampMixin, utcnow
from app.features.users.models import UserRole


class PermissionAction(str, enum.Enum):
    """Operations applicable to a resource."""
    VIEW = "view"
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"
    APPROVE = "approve"
    ASSIGN = "assign"
    ADMIN = "admin"


def _enum_values(enum_cls) -> list[str]:
    return [member.value for member in enum_cls]


# ============================================================================
# Core Models
# ============================================================================

class Resource(Base, TimestampMixin):
    """
    A module or section of the application that permissions protect.

    Examples: goals, performance_reviews, meetings, surveys
    """
    __tablename__ = "resources"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(100), unique=True, nullable=False, index=True)
    display_name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)

    permissions: Mapped[list["Permission"]] = relationship(
        "Permission",
        back_populates="resource",
        lazy="selectin"
    )

    def __repr__(self) -> str:
        return f"<Resource(id={self.id}, name={self.name!r})>"


class Permission(Base, TimestampMixin):
    """
    Permission model defining one action on one resource.

    Examples:
    - resource="goals", action="create"
    - resource="performance_reviews", action="approve"
    """
    __tablename__ = "permissions"
    __table_args__ = (
        UniqueConstraint("resource_id", "action", name="uq_permissions_resource_action"),
    )

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    resource_id: Mapped[int] = mapped_column(
        ForeignKey("resources.id"),
        nullable=False,
        index=True
    )
    action: Mapped[PermissionAction] = mapped_column(
        Enum(PermissionAction, name="permission_type", values_callable=_enum_values),
        nullable=False,
    )
    description: Mapped[str] = mapped_column(Text, nullable=False)

    resource: Mapped["Resource"] = relationship(
        "Resource",
        back_populates="permissions",
        lazy="selectin"
    )

    def __repr__(self) -> str:
        return f"<Permission(id={self.id}, resource_id={self.resource_id}, action={self.action.value})>"


class RolePermission(Base, TimestampMixin):
    """Binds a role to a permission: "this role may do this"."""
    __tablename__ = "role_permissions"
    __table_args__ = (
        UniqueConstraint("role", "permission_id", name="uq_role_permissions_role_permission"),
    )

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    role: Mapped[UserRole] = mapped_column(
        Enum(UserRole, name="user_role", values_callable=_enum_values),
        nullable=False,
        index=True
    )
    permission_id: Mapped[int] = mapped_column(
        ForeignKey("permissions.id"),
        nullable=False,
        index=True
    )

    permission: Mapped["Permission"] = relationship("Permission", lazy="selectin")

    def __repr__(self) -> str:
        return f"<RolePermission(id={self.id}, role={self.role.value}, permission_id={self.permission_id})>"


class UserPermission(Base, TimestampMixin):
    """
    Per-user override of the role defaults.

    granted=True force-allows and granted=False force-denies, regardless of
    what the user's role would decide. An override whose expires_at lies in
    the past is ignored.
    """
    __tablename__ = "user_permissions"
    __table_args__ = (
        UniqueConstraint("user_id", "permission_id", name="uq_user_permissions_user_permission"),
    )

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(
        ForeignKey("users.id"),
        nullable=False,
        index=True
    )
    permission_id: Mapped[int] = mapped_column(
        ForeignKey("permissions.id"),
        nullable=False,
        index=True
    )
    granted: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    granted_by: Mapped[int | None] = mapped_column(
        ForeignKey("users.id", ondelete="SET NULL"),
        nullable=True
    )
    granted_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
        default=utcnow
    )
    # NULL means never expires
    expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    permission: Mapped["Permission"] = relationship("Permission", lazy="selectin")

    def __repr__(self) -> str:
        return (
            f"<UserPermission(id={self.id}, user_id={self.user_id}, "
            f"permission_id={self.permission_id}, granted={self.granted})>"
        )


class AuditLog(Base, TimestampMixin):
    """
    Audit log for tracking permission-related actions.

    Tracks who did what, when, and from where.
    """
    __tablename__ = "audit_logs"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)

    # Actor
    user_id: Mapped[int | None] = mapped_column(
        ForeignKey("users.id", ondelete="SET NULL"),
        nullable=True,
        index=True
    )

    # Action details
    action: Mapped[str] = mapped_column(String(50), nullable=False, index=True)
    resource_type: Mapped[str] = mapped_column(String(50), nullable=False, index=True)
    resource_id: Mapped[int | None] = mapped_column(nullable=True, index=True)

    # Context
    details: Mapped[Dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    ip_address: Mapped[str | None] = mapped_column(String(45), nullable=True)
    user_agent: Mapped[str | None] = mapped_column(String(255), nullable=True)

    def __repr__(self) -> str:
        return f"<AuditLog(id={self.id}, user_id={self.user_id}, action={self.action}, resource={self.resource_type})>"
