"""
Pydantic schemas for permission management.

Request and response models for user overrides, project overrides,
permission checks and audit logs.
"""
from datetime import datetime
from typing import Dict, Any, List, Optional
from pydantic import BaseModel, Field, ConfigDict


# ============================================================================
# User Override Schemas
# ============================================================================

class PermissionList(BaseModel):
    """A list of permission tokens (set effective / deny / allow)."""
    permissions: List[str] = Field(..., description="Tokens of the form 'resource:action'")


class CustomPermissions(BaseModel):
    """A user's allow/deny overrides."""
    allowed: List[str] = []
    denied: List[str] = []


class CustomPermissionsUpdate(BaseModel):
    """Replace either override list; omitted lists are kept."""
    allowed: Optional[List[str]] = None
    denied: Optional[List[str]] = None


class Restrictions(BaseModel):
    """A user's project access restrictions."""
    max_projects: Optional[int] = None
    allowed_projects: List[str] = []
    denied_projects: List[str] = []


class RestrictionsUpdate(BaseModel):
    """Schema for updating project access restrictions."""
    max_projects: Optional[int] = Field(None, ge=0)
    allowed_projects: Optional[List[str]] = None
    denied_projects: Optional[List[str]] = None


class UserPermissionsResponse(BaseModel):
    """Resolved global permissions of one user."""
    user_id: str
    name: str
    email: str
    role: str
    level: int
    role_permissions: List[str] = []
    custom_permissions: CustomPermissions
    effective_permissions: List[str] = []
    restrictions: Restrictions


# ============================================================================
# Project Override Schemas
# ============================================================================

class ProjectOverrideUpdate(BaseModel):
    """Create or replace a (user, project) override."""
    allowed: List[str] = []
    denied: List[str] = []
    restrictions: Dict[str, bool] = {}
    expires_at: Optional[datetime] = None
    is_active: bool = True


class ProjectOverrideResponse(BaseModel):
    """Stored (user, project) override row."""
    id: str
    user_id: str
    project_id: str
    allowed: List[str]
    denied: List[str]
    restrictions: Dict[str, bool]
    assigned_by_id: Optional[str]
    assigned_at: datetime
    expires_at: Optional[datetime]
    is_active: bool
    
    model_config = ConfigDict(from_attributes=True)


class ProjectPermissionsResponse(BaseModel):
    """Resolved permissions of one user inside one project."""
    user_id: str
    project_id: str
    permissions: List[str]
    restrictions: Dict[str, bool]
    has_override: bool
    project_access: bool
    override: Optional[ProjectOverrideResponse] = None


# ============================================================================
# Permission Check Schemas
# ============================================================================

class PermissionCheckRequest(BaseModel):
    """Schema for checking if the caller has a permission."""
    permission: str = Field(..., min_length=1, description="Permission token")
    project_id: Optional[str] = Field(None, description="Evaluate inside this project")


class PermissionCheckResponse(BaseModel):
    """Schema for permission check response."""
    permission: str
    project_id: Optional[str] = None
    has_permission: bool
    reason: Optional[str] = None


# ============================================================================
# Clean Slate Schemas
# ============================================================================

class CleanSummaryResponse(BaseModel):
    user_id: str
    email: str
    role: str
    before: Dict[str, int]
    after: Dict[str, int]


class CleanAllResponse(BaseModel):
    cleaned: int
    users: List[CleanSummaryResponse] = []


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
    project_id: Optional[str]
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
