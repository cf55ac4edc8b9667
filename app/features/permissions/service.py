"""
Resource registry, permission catalog and binding management.

Every function takes an AsyncSession and raises the errors from
`app.core.exceptions` for unknown ids, duplicates and blocked deletes.
Writes are flushed, not committed: the caller commits, so a mutation and
its audit entry land in one transaction. A failed flush rolls back the
whole session.
"""
from datetime import datetime
from typing import List, Optional
from sqlalchemy import select, func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.database.base import as_utc, utcnow
from app.core.exceptions import Conflict, InvalidArgument, NotFound
from app.features.users.models import User, UserRole
from app.features.permissions.models import (
    Resource,
    Permission,
    PermissionAction,
    RolePermission,
    UserPermission,
)
from app.utils import get_logger


log = get_logger(__name__)


def parse_role(value) -> UserRole:
    """Validate a role string against the closed set of roles."""
    try:
        return UserRole(value)
    except ValueError:
        raise InvalidArgument(f"Unknown role '{value}'")


def parse_action(value) -> PermissionAction:
    """Validate an action string against the closed set of actions."""
    try:
        return PermissionAction(value)
    except ValueError:
        raise InvalidArgument(f"Unknown action '{value}'")


# ============================================================================
# Resource Registry
# ============================================================================

async def create_resource(
    db: AsyncSession,
    name: str,
    display_name: str,
    description: Optional[str] = None
) -> Resource:
    """Register a new protectable resource. Raises Conflict on a duplicate name."""
    if await get_resource_by_name(db, name) is not None:
        raise Conflict(f"Resource '{name}' already exists")

    resource = Resource(name=name, display_name=display_name, description=description)
    db.add(resource)
    try:
        await db.flush()
    except IntegrityError:
        await db.rollback()
        raise Conflict(f"Resource '{name}' already exists")
    await db.refresh(resource)
    log.info("Created resource %s (%s)", resource.id, name)
    return resource


async def list_resources(db: AsyncSession) -> List[Resource]:
    result = await db.execute(select(Resource).order_by(Resource.id))
    return list(result.scalars().all())


async def get_resource(db: AsyncSession, resource_id: int) -> Resource:
    resource = await db.get(Resource, resource_id)
    if resource is None:
        raise NotFound("Resource not found")
    return resource


async def get_resource_by_name(db: AsyncSession, name: str) -> Optional[Resource]:
    result = await db.execute(select(Resource).where(Resource.name == name))
    return result.scalar_one_or_none()


async def delete_resource(db: AsyncSession, resource_id: int) -> None:
    """Delete a resource. Rejected with Conflict while permissions reference it."""
    resource = await get_resource(db, resource_id)

    dependents = await db.scalar(
        select(func.count()).select_from(Permission).where(Permission.resource_id == resource_id)
    )
    if dependents:
        raise Conflict(
            f"Resource '{resource.name}' is referenced by {dependents} permission(s)",
            dependents=dependents,
        )

    await db.delete(resource)
    await db.flush()
    log.info("Deleted resource %s (%s)", resource_id, resource.name)


# ============================================================================
# Permission Catalog
# ============================================================================

async def create_permission(
    db: AsyncSession,
    resource_id: int,
    action: PermissionAction,
    description: Optional[str] = None
) -> Permission:
    """
    Catalog an action on a resource.

    Raises:
        NotFound: the resource does not exist
        Conflict: the (resource, action) pair is already cataloged
    """
    resource = await get_resource(db, resource_id)
    action = parse_action(action)

    if await find_permission(db, resource_id, action) is not None:
        raise Conflict(f"Permission '{action.value}' on '{resource.name}' already exists")

    if not description:
        description = f"{action.value.capitalize()} access to {resource.display_name}"

    permission = Permission(resource_id=resource_id, action=action, description=description)
    db.add(permission)
    try:
        await db.flush()
    except IntegrityError:
        await db.rollback()
        raise Conflict(f"Permission '{action.value}' on '{resource.name}' already exists")
    await db.refresh(permission)
    log.info("Created permission %s (%s:%s)", permission.id, resource.name, action.value)
    return permission


async def list_permissions(db: AsyncSession) -> List[Permission]:
    result = await db.execute(select(Permission).order_by(Permission.id))
    return list(result.scalars().all())


async def list_resource_permissions(db: AsyncSession, resource_id: int) -> List[Permission]:
    await get_resource(db, resource_id)
    result = await db.execute(
        select(Permission).where(Permission.resource_id == resource_id).order_by(Permission.id)
    )
    return list(result.scalars().all())


async def get_permission(db: AsyncSession, permission_id: int) -> Permission:
    permission = await db.get(Permission, permission_id)
    if permission is None:
        raise NotFound("Permission not found")
    return permission


async def find_permission(
    db: AsyncSession,
    resource_id: int,
    action: PermissionAction
) -> Optional[Permission]:
    result = await db.execute(
        select(Permission).where(
            Permission.resource_id == resource_id,
            Permission.action == action,
        )
    )
    return result.scalar_one_or_none()


async def delete_permission(db: AsyncSession, permission_id: int) -> None:
    """Delete a permission. Rejected with Conflict while bindings reference it."""
    permission = await get_permission(db, permission_id)

    role_refs = await db.scalar(
        select(func.count()).select_from(RolePermission).where(RolePermission.permission_id == permission_id)
    )
    user_refs = await db.scalar(
        select(func.count()).select_from(UserPermission).where(UserPermission.permission_id == permission_id)
    )
    if role_refs or user_refs:
        raise Conflict(
            "Permission is referenced by role or user bindings",
            role_bindings=role_refs,
            user_bindings=user_refs,
        )

    await db.delete(permission)
    await db.flush()
    log.info("Deleted permission %s", permission_id)


# ============================================================================
# Role-Permission Bindings
# ============================================================================

async def assign_permission_to_role(
    db: AsyncSession,
    role: UserRole,
    permission_id: int
) -> RolePermission:
    """
    Bind a permission to a role.

    Raises:
        NotFound: the permission does not exist
        Conflict: the role is already bound to the permission
    """
    role = parse_role(role)
    await get_permission(db, permission_id)

    existing = await db.execute(
        select(RolePermission).where(
            RolePermission.role == role,
            RolePermission.permission_id == permission_id,
        )
    )
    if existing.scalar_one_or_none() is not None:
        raise Conflict(f"Permission {permission_id} already assigned to role '{role.value}'")

    binding = RolePermission(role=role, permission_id=permission_id)
    db.add(binding)
    try:
        await db.flush()
    except IntegrityError:
        await db.rollback()
        raise Conflict(f"Permission {permission_id} already assigned to role '{role.value}'")
    await db.refresh(binding)
    log.info("Assigned permission %s to role %s (binding %s)", permission_id, role.value, binding.id)
    return binding


async def list_role_permissions(db: AsyncSession, role: UserRole) -> List[RolePermission]:
    result = await db.execute(
        select(RolePermission)
        .where(RolePermission.role == parse_role(role))
        .order_by(RolePermission.id)
    )
    return list(result.scalars().all())


async def get_role_permission(db: AsyncSession, binding_id: int) -> RolePermission:
    binding = await db.get(RolePermission, binding_id)
    if binding is None:
        raise NotFound("Role permission not found")
    return binding


async def remove_role_permission(db: AsyncSession, binding_id: int) -> RolePermission:
    """Delete a role binding by id and return the removed row."""
    binding = await get_role_permission(db, binding_id)
    await db.delete(binding)
    await db.flush()
    log.info("Removed role permission %s (%s -> %s)", binding_id, binding.role.value, binding.permission_id)
    return binding


# ============================================================================
# User-Permission Overrides
# ============================================================================

async def get_user(db: AsyncSession, user_id: int) -> User:
    user = await db.get(User, user_id)
    if user is None:
        raise NotFound("User not found")
    return user


async def find_user_permission(
    db: AsyncSession,
    user_id: int,
    permission_id: int
) -> Optional[UserPermission]:
    result = await db.execute(
        select(UserPermission).where(
            UserPermission.user_id == user_id,
            UserPermission.permission_id == permission_id,
        )
    )
    return result.scalar_one_or_none()


def _set_override(
    override: UserPermission,
    granted: bool,
    expires_at: Optional[datetime],
    granted_by: Optional[int]
) -> None:
    override.granted = granted
    override.expires_at = as_utc(expires_at)
    override.granted_by = granted_by
    override.granted_at = utcnow()


async def assign_permission_to_user(
    db: AsyncSession,
    user_id: int,
    permission_id: int,
    granted: bool = True,
    expires_at: Optional[datetime] = None,
    granted_by: Optional[int] = None
) -> UserPermission:
    """
    Create or replace the override for (user, permission).

    At most one override exists per pair: a second assignment overwrites the
    first (last-write-wins) and resets granted_at.
    """
    await get_user(db, user_id)
    await get_permission(db, permission_id)

    override = await find_user_permission(db, user_id, permission_id)
    if override is None:
        override = UserPermission(user_id=user_id, permission_id=permission_id)
        db.add(override)
    _set_override(override, granted, expires_at, granted_by)

    try:
        await db.flush()
    except IntegrityError:
        # Another assignment inserted the pair first; overwrite its row
        await db.rollback()
        override = await find_user_permission(db, user_id, permission_id)
        if override is None:
            raise Conflict(f"User permission for user {user_id} and permission {permission_id} changed concurrently")
        _set_override(override, granted, expires_at, granted_by)
        await db.flush()
    await db.refresh(override)
    log.info(
        "Set user permission %s: user=%s permission=%s granted=%s expires_at=%s",
        override.id, user_id, permission_id, granted, override.expires_at,
    )
    return override


async def list_user_permissions(db: AsyncSession, user_id: int) -> List[UserPermission]:
    await get_user(db, user_id)
    result = await db.execute(
        select(UserPermission)
        .where(UserPermission.user_id == user_id)
        .order_by(UserPermission.id)
    )
    return list(result.scalars().all())


async def get_user_permission(db: AsyncSession, override_id: int) -> UserPermission:
    override = await db.get(UserPermission, override_id)
    if override is None:
        raise NotFound("User permission not found")
    return override


async def remove_user_permission(db: AsyncSession, override_id: int) -> UserPermission:
    """Delete an override; the next check falls back to the role default."""
    override = await get_user_permission(db, override_id)
    await db.delete(override)
    await db.flush()
    log.info("Removed user permission %s (user %s)", override_id, override.user_id)
    return override
