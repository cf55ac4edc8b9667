"""
Authorization evaluator and dependencies for RBAC.

Implements:
- Permission checking: user overrides first, then role bindings, deny otherwise
- Effective permission listing
- FastAPI dependencies for route protection
- Audit logging helpers
"""
from datetime import datetime
from typing import Dict, Any, Optional, List, Tuple
from fastapi import Depends, Request
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.database.base import as_utc, utcnow
from app.core.database.engine import get_db
from app.core.exceptions import Forbidden
from app.features.users.dependencies import get_current_user
from app.features.users.models import User
from app.features.permissions.models import (
    Permission,
    Resource,
    RolePermission,
    UserPermission,
    AuditLog,
)
from app.features.permissions.service import get_user, parse_action
from app.utils import get_logger


log = get_logger(__name__)


def is_override_active(override: UserPermission, now: Optional[datetime] = None) -> bool:
    """An override counts only while expires_at is unset or in the future."""
    if override.expires_at is None:
        return True
    return as_utc(override.expires_at) > (now or utcnow())


# ============================================================================
# Permission Checking Functions
# ============================================================================

async def check_permission(
    db: AsyncSession,
    user_id: int,
    resource_name: str,
    action: str
) -> bool:
    """
    Decide whether a user may perform an action on a resource.

    Precedence:
    1. Unknown resource or uncataloged (resource, action) denies.
    2. An unexpired user override returns its granted value, in both
       directions, regardless of the role.
    3. Otherwise the user's role binding decides; no binding denies.

    Args:
        db: Database session
        user_id: User to evaluate
        resource_name: Resource name (e.g., "goals")
        action: One of view, create, update, delete, approve, assign, admin

    Returns:
        True if allowed, False otherwise. Denial is never an error.

    Raises:
        InvalidArgument: action is not a known action
        NotFound: user does not exist
    """
    action = parse_action(action)
    user = await get_user(db, user_id)

    resource = await db.scalar(select(Resource).where(Resource.name == resource_name))
    if resource is None:
        log.debug(f"Unknown resource {resource_name!r} - denied {action.value} for user {user_id}")
        return False

    permission = await db.scalar(
        select(Permission).where(
            Permission.resource_id == resource.id,
            Permission.action == action,
        )
    )
    if permission is None:
        log.debug(f"No permission {action.value} cataloged on {resource_name} - denied for user {user_id}")
        return False

    override = await db.scalar(
        select(UserPermission).where(
            UserPermission.user_id == user_id,
            UserPermission.permission_id == permission.id,
        )
    )
    if override is not None and is_override_active(override):
        log.debug(
            f"User {user_id} {'granted' if override.granted else 'denied'} {action.value} on "
            f"{resource_name} via override {override.id}"
        )
        return override.granted

    binding = await db.scalar(
        select(RolePermission.id).where(
            RolePermission.role == user.role,
            RolePermission.permission_id == permission.id,
        )
    )
    allowed = binding is not None
    log.debug(
        f"User {user_id} ({user.role.value}) {'granted' if allowed else 'denied'} "
        f"{action.value} on {resource_name} by role"
    )
    return allowed


async def get_effective_permissions(db: AsyncSession, user_id: int) -> Tuple[User, List[Dict[str, Any]]]:
    """
    Get every (resource, action) a user is currently allowed.

    Uses the same precedence as check_permission: active overrides replace
    the role decision for their permission.

    Returns:
        The user and a list of dicts with resource, resource_display_name,
        action, description, source ("role" or "user") and expires_at
    """
    user = await get_user(db, user_id)

    result = await db.execute(
        select(Permission, Resource)
        .join(Resource, Permission.resource_id == Resource.id)
        .order_by(Resource.name, Permission.id)
    )
    catalog = result.all()

    result = await db.execute(
        select(RolePermission.permission_id).where(RolePermission.role == user.role)
    )
    role_granted = set(result.scalars().all())

    result = await db.execute(
        select(UserPermission).where(UserPermission.user_id == user_id)
    )
    now = utcnow()
    overrides = {
        override.permission_id: override
        for override in result.scalars().all()
        if is_override_active(override, now)
    }

    effective = []
    for permission, resource in catalog:
        override = overrides.get(permission.id)
        if override is not None:
            if not override.granted:
                continue
            source, expires_at = "user", override.expires_at
        elif permission.id in role_granted:
            source, expires_at = "role", None
        else:
            continue

        effective.append({
            "resource": resource.name,
            "resource_display_name": resource.display_name,
            "action": permission.action,
            "description": permission.description,
            "source": source,
            "expires_at": expires_at,
        })

    return user, effective


# ============================================================================
# FastAPI Dependencies
# ============================================================================

def _forbidden(resource: str, action: str) -> Forbidden:
    return Forbidden(
        f"Missing permission: {action} on {resource}",
        required={"resource": resource, "action": action},
    )


def require_permission(resource: str, action: str):
    """
    FastAPI dependency to require a specific permission.

    Usage:
        @router.post("/goals")
        async def create_goal(
            db: AsyncSession = Depends(get_db),
            user: User = Depends(require_permission("goals", "create"))
        ):
            # User has permission to create goals
            pass

    Returns:
        Dependency function that returns the current user if they have permission

    Raises:
        Forbidden: if user doesn't have permission
    """
    async def permission_dependency(
        db: AsyncSession = Depends(get_db),
        current_user: User = Depends(get_current_user)
    ) -> User:
        if not await check_permission(db, current_user.id, resource, action):
            raise _forbidden(resource, action)
        return current_user

    return permission_dependency


def require_any_permission(permissions: List[Tuple[str, str]]):
    """
    FastAPI dependency to require ANY of the specified permissions.

    Usage:
        @router.post("/role-permissions")
        async def bind(
            user: User = Depends(require_any_permission([("role_permissions", "create"), ("role_permissions", "admin")]))
        ):
            pass

    Raises:
        Forbidden: naming the first required permission
    """
    async def permission_dependency(
        db: AsyncSession = Depends(get_db),
        current_user: User = Depends(get_current_user)
    ) -> User:
        for resource, action in permissions:
            if await check_permission(db, current_user.id, resource, action):
                return current_user

        resource, action = permissions[0]
        raise _forbidden(resource, action)

    return permission_dependency


async def ensure_self_or_permission(
    db: AsyncSession,
    current_user: User,
    target_user_id: int,
    resource: str,
    action: str
) -> None:
    """Allow a user to act on themselves; anyone else needs the permission."""
    if target_user_id == current_user.id:
        return
    if not await check_permission(db, current_user.id, resource, action):
        raise _forbidden(resource, action)


# ============================================================================
# Audit Logging
# ============================================================================

async def create_audit_log(
    db: AsyncSession,
    user_id: Optional[int],
    action: str,
    resource_type: str,
    resource_id: Optional[int] = None,
    details: Optional[Dict[str, Any]] = None,
    request: Optional[Request] = None
) -> AuditLog:
    """
    Create an audit log entry.

    The entry is flushed into the current transaction, so it commits or
    rolls back together with the change it records.

    Args:
        db: Database session
        user_id: User performing the action
        action: Action performed (e.g., "create", "delete", "assign")
        resource_type: Type of record (e.g., "resource", "role_permission")
        resource_id: ID of the record
        details: Additional details (must be JSON serializable)
        request: Incoming request, for client IP and user agent

    Returns:
        Created AuditLog object
    """
    audit_log = AuditLog(
        user_id=user_id,
        action=action,
        resource_type=resource_type,
        resource_id=resource_id,
        details=details,
        ip_address=request.client.host if request is not None and request.client else None,
        user_agent=request.headers.get("user-agent") if request is not None else None
    )

    db.add(audit_log)
    await db.flush()
    await db.refresh(audit_log)

    log.info(
        f"Audit: user={user_id} action={action} resource={resource_type}:{resource_id}"
    )

    return audit_log
