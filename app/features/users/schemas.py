"""
Pydantic schemas for user-related responses.
"""
from datetime import datetime
from pydantic import BaseModel, EmailStr

from app.features.users.models import UserRole


class UserPublic(BaseModel):
    """Public user information (limited fields)."""
    id: int
    first_name: str
    last_name: str
    job_title: str | None = None
    department: str | None = None

    model_config = {"from_attributes": True}


class UserResponse(UserPublic):
    """Schema for user responses."""
    email: EmailStr
    role: UserRole
    is_active: bool
    last_login_at: datetime | None = None
    created_at: datetime
    updated_at: datetime
