"""
Pydantic schemas for permission management.

Request and response models for permissions, roles, assignments, checks and audit logs.
"""
from datetime import datetime
from typing import Dict, Any, List, Optional
from pydantic import BaseModel, Field, ConfigDict, field_validator


def _is_name(v: str) -> bool:
    return v.replace('_', '').isalnum()


# ============================================================================
# Permission Schemas
# ============================================================================

class PermissionBase(BaseModel):
    """Base permission schema."""
    name: str = Field(..., min_length=1, max_length=100, description="Display name")
    resource: str = Field(..., min_length=1, max_length=100, description="Resource type (e.g., 'Product', 'Blog')")
    action: str = Field(..., min_length=1, max_length=50, description="Action (e.g., 'read', 'publish')")
    description: Optional[str] = Field(None, max_length=1000, description="Permission description")
    category: str = Field("content", min_length=1, max_length=50, description="Grouping in the admin UI")


class PermissionCreate(PermissionBase):
    """Schema for creating a new permission. The identifier is derived, never sent."""

    @field_validator('resource')
    @classmethod
    def resource_is_name(cls, v: str) -> str:
        """Resources are list names such as 'Product' or 'SeoSetting'."""
        if not _is_name(v):
            raise ValueError('Resource must contain only alphanumeric characters and underscores')
        return v

    @field_validator('action')
    @classmethod
    def action_lowercase(cls, v: str) -> str:
        """Ensure action is a lowercase name."""
        if not _is_name(v):
            raise ValueError('Action must contain only alphanumeric characters and underscores')
        return v.lower()


class PermissionUpdate(BaseModel):
    """Schema for updating a permission."""
    name: Optional[str] = Field(None, min_length=1, max_length=100)
    description: Optional[str] = Field(None, max_length=1000)
    category: Optional[str] = Field(None, min_length=1, max_length=50)


class PermissionResponse(PermissionBase):
    """Schema for permission response."""
    id: str
    identifier: str
    is_system: bool
    created_at: datetime
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)


# ============================================================================
# Role Schemas
# ============================================================================

class RoleBase(BaseModel):
    """Base role schema."""
    name: str = Field(..., min_length=1, max_length=100, description="Unique role name")
    description: Optional[str] = Field(None, max_length=1000, description="Role description")
    priority: int = Field(0, ge=0, description="Display priority, informational only")


class RoleCreate(RoleBase):
    """Schema for creating a new role."""
    code: str = Field(..., min_length=1, max_length=50, description="Unique role code")
    parent_role_id: Optional[str] = Field(None, description="Role to inherit permissions from")
    is_active: bool = True

    @field_validator('code')
    @classmethod
    def code_alphanumeric_underscore(cls, v: str) -> str:
        """Validate role code format."""
        if not v.replace('_', '').replace('-', '').isalnum():
            raise ValueError('Role code must contain only alphanumeric characters, underscores, and hyphens')
        return v


class RoleUpdate(BaseModel):
    """Schema for updating a role."""
    name: Optional[str] = Field(None, min_length=1, max_length=100)
    description: Optional[str] = Field(None, max_length=1000)
    priority: Optional[int] = Field(None, ge=0)
    parent_role_id: Optional[str] = None
    is_active: Optional[bool] = None


class RoleResponse(RoleBase):
    """Schema for role response."""
    id: str
    code: str
    parent_role_id: Optional[str]
    is_active: bool
    is_system: bool
    created_at: datetime
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)


class RoleWithPermissions(RoleResponse):
    """Schema for role with permissions."""
    permissions: List[PermissionResponse] = []

    model_config = ConfigDict(from_attributes=True)


# ============================================================================
# Assignment Schemas
# ============================================================================

class AssignRoleToUser(BaseModel):
    """Schema for assigning a role to a user."""
    role_id: str = Field(..., description="Role ID")


class AssignPermission(BaseModel):
    """Schema for granting a permission to a role or directly to a user."""
    permission_id: str = Field(..., description="Permission ID")


# ============================================================================
# Permission Check Schemas
# ============================================================================

class PermissionCheckRequest(BaseModel):
    """Schema for checking if the current user has a permission."""
    resource: str = Field(..., min_length=1, description="Resource type")
    action: str = Field(..., min_length=1, description="Action")


class PermissionCheckResponse(BaseModel):
    """Schema for permission check response."""
    has_permission: bool
    identifier: str


class UserPermissionsResponse(BaseModel):
    """Effective permissions of a user."""
    user_id: str
    permissions: List[str] = []  # Sorted identifiers, or ["*"] for superadmins
    readable_resources: List[str] = []


class ListAccessResponse(BaseModel):
    """Operations the caller may perform on one list."""
    list_name: str
    query: bool
    create: bool
    update: bool
    delete: bool


# ============================================================================
# Cache Schemas
# ============================================================================

class CacheStatsResponse(BaseModel):
    total_entries: int
    valid_entries: int
    expired_entries: int
    ttl_seconds: float
    cleanup_interval_seconds: float
    hits: int
    misses: int


class CacheClearResponse(BaseModel):
    cleared: int


# ============================================================================
# Audit Log Schemas
# ============================================================================

class AuditLogResponse(BaseModel):
    """Schema for audit log response."""
    id: str
    user_id: Optional[str]
    action: str
    resource_type: str
    resource_id: Optional[str]
    details: Optional[Dict[str, Any]]
    ip_address: Optional[str]
    user_agent: Optional[str]
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class AuditLogListResponse(BaseModel):
    """Schema for paginated audit log list."""
    items: List[AuditLogResponse]
    total: int
    page: int
    page_size: int
    pages: int
