"""
Pydantic schemas for projects.
"""
from datetime import datetime
from pydantic import BaseModel, Field


class ProjectCreate(BaseModel):
    """Schema for creating a project; the caller becomes its owner."""
    name: str = Field(..., min_length=1, max_length=255)
    location: str = Field(..., min_length=1, max_length=255)
    developer: str = Field(..., min_length=1, max_length=255)
    logo_url: str | None = Field(None, max_length=500)


class ProjectMemberAdd(BaseModel):
    user_id: str = Field(..., min_length=1)


class ProjectResponse(BaseModel):
    id: str
    name: str
    location: str
    developer: str
    logo_url: str | None = None
    owner_id: str
    member_ids: list[str] = []
    manager_ids: list[str] = []
    created_at: datetime
    updated_at: datetime
    
    model_config = {"from_attributes": True}
