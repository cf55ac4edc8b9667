"""
Permission management API routes.

Provides endpoints for resources, permissions, role and user bindings,
permission checks and the audit log. Mutations are gated by the evaluator
itself, and each one commits together with its audit entry when the
request's session closes.
"""
from typing import List, Optional
from fastapi import APIRouter, Depends, Request, Response, status
from sqlalchemy import select, func
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.database.engine import get_db
from app.features.users.dependencies import get_current_user
from app.features.users.models import User, UserRole
from app.features.permissions import service
from app.features.permissions.models import AuditLog
from app.features.permissions.schemas import (
    ResourceCreate,
    ResourceResponse,
    PermissionCreate,
    PermissionResponse,
    AssignPermissionToRole,
    RolePermissionResponse,
    RolePermissionWithPermission,
    AssignPermissionToUser,
    UserPermissionResponse,
    UserPermissionWithPermission,
    PermissionCheck,
    PermissionCheckRequest,
    PermissionCheckResponse,
    BatchPermissionCheckRequest,
    BatchPermissionCheckResponse,
    EffectivePermission,
    EffectivePermissionsResponse,
    AuditLogResponse,
    AuditLogListResponse,
)
from app.features.permissions.dependencies import (
    check_permission,
    create_audit_log,
    ensure_self_or_permission,
    get_effective_permissions,
    require_any_permission,
    require_permission,
)
from app.utils import get_logger


log = get_logger(__name__)
router = APIRouter()


def _mutation_gate(resource: str, action: str):
    """Mutations need the specific action or `admin` on the RBAC resource."""
    return require_any_permission([(resource, action), (resource, "admin")])


# ============================================================================
# Resource Routes
# ============================================================================

@router.post("/resources", response_model=ResourceResponse, status_code=status.HTTP_201_CREATED)
async def create_resource(
    resource: ResourceCreate,
    request: Request,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(_mutation_gate("resources", "create"))
):
    """Register a new resource."""
    db_resource = await service.create_resource(
        db, resource.name, resource.display_name, resource.description
    )
    await create_audit_log(
        db,
        user_id=current_user.id,
        action="create",
        resource_type="resource",
        resource_id=db_resource.id,
        details=resource.model_dump(),
        request=request,
    )
    return db_resource


@router.get("/resources", response_model=List[ResourceResponse])
async def list_resources(
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user)
):
    """List all resources."""
    return await service.list_resources(db)


@router.get("/resources/{resource_id}", response_model=ResourceResponse)
async def get_resource(
    resource_id: int,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user)
):
    """Get a specific resource by ID."""
    return await service.get_resource(db, resource_id)


@router.delete("/resources/{resource_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_resource(
    resource_id: int,
    request: Request,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(_mutation_gate("resources", "delete"))
):
    """Delete a resource that no permission references."""
    await service.delete_resource(db, resource_id)
    await create_audit_log(
        db,
        user_id=current_user.id,
        action="delete",
        resource_type="resource",
        resource_id=resource_id,
        request=request,
    )
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.get("/resources/{resource_id}/permissions", response_model=List[PermissionResponse])
async def list_resource_permissions(
    resource_id: int,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user)
):
    """List the permissions cataloged for a resource."""
    return await service.list_resource_permissions(db, resource_id)


# ============================================================================
# Permission Routes
# ============================================================================

@router.post("/permissions", response_model=PermissionResponse, status_code=status.HTTP_201_CREATED)
async def create_permission(
    permission: PermissionCreate,
    request: Request,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(_mutation_gate("permissions", "create"))
):
    """Catalog an action on a resource."""
    db_permission = await service.create_permission(
        db, permission.resource_id, permission.action, permission.description
    )
    await create_audit_log(
        db,
        user_id=current_user.id,
        action="create",
        resource_type="permission",
        resource_id=db_permission.id,
        details=permission.model_dump(mode="json"),
        request=request,
    )
    return db_permission


@router.get("/permissions", response_model=List[PermissionResponse])
async def list_permissions(
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user)
):
    """List all permissions."""
    return await service.list_permissions(db)


@router.get("/permissions/{permission_id}", response_model=PermissionResponse)
async def get_permission(
    permission_id: int,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user)
):
    """Get a specific permission by ID."""
    return await service.get_permission(db, permission_id)


@router.delete("/permissions/{permission_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_permission(
    permission_id: int,
    request: Request,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(_mutation_gate("permissions", "delete"))
):
    """Delete a permission that no binding references."""
    await service.delete_permission(db, permission_id)
    await create_audit_log(
        db,
        user_id=current_user.id,
        action="delete",
        resource_type="permission",
        resource_id=permission_id,
        request=request,
    )
    return Response(status_code=status.HTTP_204_NO_CONTENT)


# ============================================================================
# Role Permission Routes
# ============================================================================

@router.post("/role-permissions", response_model=RolePermissionResponse, status_code=status.HTTP_201_CREATED)
async def assign_permission_to_role(
    assignment: AssignPermissionToRole,
    request: Request,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(_mutation_gate("role_permissions", "create"))
):
    """Bind a permission to a role. A duplicate binding is a conflict."""
    binding = await service.assign_permission_to_role(db, assignment.role, assignment.permission_id)
    await create_audit_log(
        db,
        user_id=current_user.id,
        action="assign",
        resource_type="role_permission",
        resource_id=binding.id,
        details={"role": binding.role.value, "permission_id": binding.permission_id},
        request=request,
    )
    return binding


@router.get("/roles/{role}/permissions", response_model=List[RolePermissionWithPermission])
async def list_role_permissions(
    role: UserRole,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user)
):
    """List a role's bindings together with the bound permissions."""
    return await service.list_role_permissions(db, role)


@router.delete("/role-permissions/{binding_id}", status_code=status.HTTP_204_NO_CONTENT)
async def remove_role_permission(
    binding_id: int,
    request: Request,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(_mutation_gate("role_permissions", "delete"))
):
    """Remove a role binding."""
    binding = await service.remove_role_permission(db, binding_id)
    await create_audit_log(
        db,
        user_id=current_user.id,
        action="remove",
        resource_type="role_permission",
        resource_id=binding_id,
        details={"role": binding.role.value, "permission_id": binding.permission_id},
        request=request,
    )
    return Response(status_code=status.HTTP_204_NO_CONTENT)


# ============================================================================
# User Permission Routes
# ============================================================================

@router.post("/user-permissions", response_model=UserPermissionResponse, status_code=status.HTTP_201_CREATED)
async def assign_permission_to_user(
    assignment: AssignPermissionToUser,
    request: Request,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(_mutation_gate("user_permissions", "create"))
):
    """Create or replace a user's override for a permission."""
    # A retried insert rolls back the session and expires current_user
    actor_id = current_user.id
    override = await service.assign_permission_to_user(
        db,
        user_id=assignment.user_id,
        permission_id=assignment.permission_id,
        granted=assignment.granted,
        expires_at=assignment.expires_at,
        granted_by=actor_id,
    )
    await create_audit_log(
        db,
        user_id=actor_id,
        action="assign",
        resource_type="user_permission",
        resource_id=override.id,
        details=assignment.model_dump(mode="json"),
        request=request,
    )
    return override


@router.get("/users/{user_id}/permissions", response_model=List[UserPermissionWithPermission])
async def list_user_permissions(
    user_id: int,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user)
):
    """List a user's overrides. Other users' overrides need user_permissions:view."""
    await ensure_self_or_permission(db, current_user, user_id, "user_permissions", "view")
    return await service.list_user_permissions(db, user_id)


@router.delete("/user-permissions/{override_id}", status_code=status.HTTP_204_NO_CONTENT)
async def remove_user_permission(
    override_id: int,
    request: Request,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(_mutation_gate("user_permissions", "delete"))
):
    """Remove an override; the user falls back to the role default."""
    override = await service.remove_user_permission(db, override_id)
    await create_audit_log(
        db,
        user_id=current_user.id,
        action="remove",
        resource_type="user_permission",
        resource_id=override_id,
        details={"user_id": override.user_id, "permission_id": override.permission_id},
        request=request,
    )
    return Response(status_code=status.HTTP_204_NO_CONTENT)


# ============================================================================
# Permission Check Routes
# ============================================================================

@router.post("/check-permission", response_model=PermissionCheckResponse)
async def check_user_permission(
    check_request: PermissionCheckRequest,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user)
):
    """Check a permission for an arbitrary user (needs user_permissions:view for others)."""
    await ensure_self_or_permission(db, current_user, check_request.user_id, "user_permissions", "view")
    allowed = await check_permission(db, check_request.user_id, check_request.resource, check_request.action)
    return PermissionCheckResponse(has_permission=allowed)


@router.post("/check-my-permission", response_model=PermissionCheckResponse)
async def check_my_permission(
    check_request: PermissionCheck,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user)
):
    """Check a permission for the authenticated user."""
    allowed = await check_permission(db, current_user.id, check_request.resource, check_request.action)
    return PermissionCheckResponse(has_permission=allowed)


@router.post("/check-my-permissions", response_model=BatchPermissionCheckResponse)
async def check_my_permissions(
    batch: BatchPermissionCheckRequest,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user)
):
    """Check several permissions for the authenticated user, in request order."""
    results = []
    for check in batch.checks:
        results.append(await check_permission(db, current_user.id, check.resource, check.action))
    return BatchPermissionCheckResponse(results=results)


@router.get("/my-permissions", response_model=EffectivePermissionsResponse)
async def get_my_permissions(
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user)
):
    """All permissions the authenticated user currently holds."""
    user, effective = await get_effective_permissions(db, current_user.id)
    return EffectivePermissionsResponse(
        user_id=user.id,
        role=user.role,
        permissions=[EffectivePermission(**entry) for entry in effective],
    )


# ============================================================================
# Audit Log Routes
# ============================================================================

@router.get("/audit-logs", response_model=AuditLogListResponse)
async def list_audit_logs(
    skip: int = 0,
    limit: int = 50,
    user_id: Optional[int] = None,
    action: Optional[str] = None,
    resource_type: Optional[str] = None,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(require_permission("audit_logs", "view"))
):
    """List audit logs with optional filtering."""
    stmt = select(AuditLog)

    if user_id:
        stmt = stmt.where(AuditLog.user_id == user_id)
    if action:
        stmt = stmt.where(AuditLog.action == action)
    if resource_type:
        stmt = stmt.where(AuditLog.resource_type == resource_type)

    # Get total count
    count_stmt = select(func.count()).select_from(stmt.subquery())
    total = await db.scalar(count_stmt) or 0

    # Get paginated results
    stmt = stmt.order_by(AuditLog.id.desc()).offset(skip).limit(limit)
    result = await db.execute(stmt)
    logs = result.scalars().all()

    pages = (total + limit - 1) // limit if limit > 0 else 0
    page = (skip // limit) + 1 if limit > 0 else 1

    return AuditLogListResponse(
        items=[AuditLogResponse.model_validate(entry) for entry in logs],
        total=total,
        page=page,
        page_size=limit,
        pages=pages
    )
