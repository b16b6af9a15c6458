"""
Pydantic schemas for user-related responses.
"""
from datetime import datetime
from pydantic import BaseModel


class RoleSummary(BaseModel):
    """Role as shown on a user."""
    id: str
    name: str
    code: str
    is_active: bool

    model_config = {"from_attributes": True}


class UserResponse(BaseModel):
    """Schema for user responses."""
    id: str
    email: str
    name: str
    is_active: bool
    is_admin: bool
    last_login_at: datetime | None = None
    created_at: datetime
    updated_at: datetime

    roles: list[RoleSummary] = []

    model_config = {"from_attributes": True}


class UserPublic(BaseModel):
    """Public user information (limited fields)."""
    id: str
    name: str
    is_active: bool

    model_config = {"from_attributes": True}
