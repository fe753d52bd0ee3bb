"""
Pydantic schemas for user-related requests and responses.
"""
from datetime import datetime
from pydantic import BaseModel, EmailStr, Field


class UserBase(BaseModel):
    """Base user schema with common fields."""
    email: EmailStr
    name: str = Field(..., min_length=1, max_length=255)


class UserCreate(UserBase):
    """Schema for creating a new user on a role."""
    role: str = Field(..., min_length=1, max_length=50, description="Role name")
    mobile: str | None = Field(None, max_length=20)
    company_name: str | None = Field(None, max_length=255)


class RoleAssignment(BaseModel):
    """Schema for moving a user onto another role."""
    role: str = Field(..., min_length=1, max_length=50, description="Role name")


class UserResponse(UserBase):
    """Schema for user responses."""
    id: str
    mobile: str | None = None
    company_name: str | None = None
    role: str
    role_id: str | None = None
    level: int
    custom_allowed: list[str] = []
    custom_denied: list[str] = []
    max_projects: int | None = None
    allowed_projects: list[str] = []
    denied_projects: list[str] = []
    is_active: bool
    last_login_at: datetime | None = None
    created_at: datetime
    updated_at: datetime
    
    model_config = {"from_attributes": True}


class UserPublic(BaseModel):
    """Public user information (limited fields)."""
    id: str
    name: str
    role: str
    level: int
    
    model_config = {"from_attributes": True}
