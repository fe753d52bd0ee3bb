"""
Pydantic schemas for roles.
"""
from datetime import datetime
from typing import Any, Dict, List, Optional
from pydantic import BaseModel, Field, ConfigDict, field_validator


class RoleBase(BaseModel):
    """Base role schema."""
    name: str = Field(..., min_length=1, max_length=50, description="Unique role name")
    description: Optional[str] = Field(None, max_length=1000, description="Role description")


class RoleCreate(RoleBase):
    """Schema for creating a new role."""
    level: Optional[int] = Field(None, ge=1, le=10, description="1 = highest authority; defaults to 3")
    permissions: List[str] = []
    
    @field_validator('name')
    @classmethod
    def name_format(cls, v: str) -> str:
        """Validate role name format."""
        value = v.strip().lower()
        if not value.replace('_', '').replace('-', '').isalnum():
            raise ValueError('Role name must contain only alphanumeric characters, underscores, and hyphens')
        return value


class RoleUpdate(BaseModel):
    """Schema for editing a role. Omitted fields are kept."""
    name: Optional[str] = Field(None, min_length=1, max_length=50)
    level: Optional[int] = Field(None, ge=1, le=10)
    permissions: Optional[List[str]] = None
    description: Optional[str] = Field(None, max_length=1000)


class RoleResponse(RoleBase):
    """Schema for role response."""
    id: str
    level: int
    permissions: List[str] = []
    created_at: datetime
    updated_at: datetime
    
    model_config = ConfigDict(from_attributes=True)


class RoleWithCount(RoleResponse):
    user_count: int = 0


class RoleUserSummary(BaseModel):
    """A user on a role with their resolved permissions."""
    id: str
    name: str
    email: str
    level: int
    is_active: bool
    custom_allowed: List[str] = []
    custom_denied: List[str] = []
    effective_permissions: List[str] = []


class RoleDetails(BaseModel):
    role: RoleResponse
    user_count: int
    users: List[RoleUserSummary] = []


class CascadeReportResponse(BaseModel):
    """Outcome of a role cascade."""
    role_id: str
    affected: int
    updated: List[str] = []
    failed: Dict[str, str] = {}
    removed_links: List[Dict[str, Any]] = []
    
    model_config = ConfigDict(from_attributes=True)


class RoleUpdateResponse(BaseModel):
    role: RoleResponse
    cascades: Dict[str, CascadeReportResponse] = {}
