"""
Pydantic schemas for permission management.

Request and response models for resources, permissions, role and user
bindings, permission checks and audit logs. JSON keys are camelCase on the
wire; snake_case is accepted on input as well.
"""
import re
from datetime import datetime
from typing import Any, Dict, List, Literal, Optional
from pydantic import BaseModel, Field, ConfigDict, field_validator
from pydantic.alias_generators import to_camel

from app.features.users.models import UserRole
from app.features.permissions.models import PermissionAction


RESOURCE_NAME_PATTERN = re.compile(r"^[a-z][a-z0-9_]*$")


class CamelModel(BaseModel):
    """Base schema emitting camelCase keys."""
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        from_attributes=True,
    )


# ============================================================================
# Resource Schemas
# ============================================================================

class ResourceBase(CamelModel):
    """Base resource schema."""
    name: str = Field(..., min_length=1, max_length=100, description="Unique resource key (e.g., 'goals')")
    display_name: str = Field(..., min_length=1, max_length=255, description="Human-readable name")
    description: Optional[str] = Field(None, max_length=1000, description="Resource description")


class ResourceCreate(ResourceBase):
    """Schema for creating a new resource."""

    @field_validator('name')
    @classmethod
    def name_lowercase_identifier(cls, v: str) -> str:
        """Validate resource name format."""
        if not RESOURCE_NAME_PATTERN.match(v):
            raise ValueError('Resource name must be lowercase letters, digits and underscores, starting with a letter')
        return v


class ResourceResponse(ResourceBase):
    """Schema for resource response."""
    id: int
    created_at: datetime
    updated_at: datetime


# ============================================================================
# Permission Schemas
# ============================================================================

class PermissionCreate(CamelModel):
    """Schema for creating a new permission."""
    resource_id: int = Field(..., description="Resource ID")
    action: PermissionAction = Field(..., description="One of view, create, update, delete, approve, assign, admin")
    description: Optional[str] = Field(None, max_length=1000, description="Permission description")

    @field_validator('action', mode='before')
    @classmethod
    def action_lowercase(cls, v: Any) -> Any:
        """Ensure action is lowercase."""
        return v.lower() if isinstance(v, str) else v


class PermissionResponse(CamelModel):
    """Schema for permission response."""
    id: int
    resource_id: int
    action: PermissionAction
    description: str
    created_at: datetime
    updated_at: datetime


class PermissionWithResource(PermissionResponse):
    """Schema for permission with its resource."""
    resource: ResourceResponse


# ============================================================================
# Binding Schemas
# ============================================================================

class AssignPermissionToRole(CamelModel):
    """Schema for binding a permission to a role."""
    role: UserRole = Field(..., description="One of admin, hr, manager, employee")
    permission_id: int = Field(..., description="Permission ID")


class RolePermissionResponse(CamelModel):
    """Schema for role binding response."""
    id: int
    role: UserRole
    permission_id: int
    created_at: datetime


class RolePermissionWithPermission(RolePermissionResponse):
    """Schema for role binding with the bound permission."""
    permission: PermissionWithResource


class AssignPermissionToUser(CamelModel):
    """Schema for creating or replacing a user override."""
    user_id: int = Field(..., description="User ID")
    permission_id: int = Field(..., description="Permission ID")
    granted: bool = Field(True, description="True force-allows, False force-denies")
    expires_at: Optional[datetime] = Field(None, description="Expiry (null means never expires)")


class UserPermissionResponse(CamelModel):
    """Schema for user override response."""
    id: int
    user_id: int
    permission_id: int
    granted: bool
    granted_by: Optional[int] = None
    granted_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None


class UserPermissionWithPermission(UserPermissionResponse):
    """Schema for user override with the overridden permission."""
    permission: PermissionWithResource


# ============================================================================
# Permission Check Schemas
# ============================================================================

class PermissionCheck(CamelModel):
    """A single (resource, action) question."""
    resource: str = Field(..., min_length=1, description="Resource name")
    action: str = Field(..., min_length=1, description="Action")


class PermissionCheckRequest(PermissionCheck):
    """Schema for checking a permission for an arbitrary user."""
    user_id: int = Field(..., description="Target user ID")


class PermissionCheckResponse(CamelModel):
    """Schema for permission check response."""
    has_permission: bool


class BatchPermissionCheckRequest(CamelModel):
    """Schema for checking several permissions at once."""
    checks: List[PermissionCheck] = Field(..., max_length=100)


class BatchPermissionCheckResponse(CamelModel):
    """Results in the same order as the requested checks."""
    results: List[bool]


class EffectivePermission(CamelModel):
    """One allowed (resource, action) pair and where it comes from."""
    resource: str
    resource_display_name: str
    action: PermissionAction
    description: str
    source: Literal["role", "user"]
    expires_at: Optional[datetime] = None


class EffectivePermissionsResponse(CamelModel):
    """All permissions a user currently holds."""
    user_id: int
    role: UserRole
    permissions: List[EffectivePermission] = []


# ============================================================================
# Audit Log Schemas
# ============================================================================

class AuditLogResponse(CamelModel):
    """Schema for audit log response."""
    id: int
    user_id: Optional[int]
    action: str
    resource_type: str
    resource_id: Optional[int]
    details: Optional[Dict[str, Any]]
    ip_address: Optional[str]
    user_agent: Optional[str]
    created_at: datetime


class AuditLogListResponse(CamelModel):
    """Schema for paginated audit log list."""
    items: List[AuditLogResponse]
    total: int
    page: int
    page_size: int
    pages: int
