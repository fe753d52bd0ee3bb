"""
Pydantic schemas for the reporting graph.
"""
from datetime import datetime
from pydantic import BaseModel, Field

from crm.features.reporting.models import TeamType
from crm.features.users.schemas import UserPublic


class ReportingLinkCreate(BaseModel):
    reports_to_id: str = Field(..., min_length=1)
    team_type: TeamType = TeamType.GLOBAL
    project_id: str | None = None
    context: str = Field("", max_length=255)


class ReportingLinkResponse(BaseModel):
    id: str
    user_id: str
    reports_to_id: str
    team_type: TeamType
    project_id: str | None = None
    context: str
    path: str
    ancestor_ids: list[str] = []
    created_at: datetime
    
    model_config = {"from_attributes": True}


class UserReportingResponse(BaseModel):
    """A user's position in the reporting graph."""
    user_id: str
    level: int
    reports_to: list[ReportingLinkResponse] = []
    superiors: list[UserPublic] = []
    subordinates: list[UserPublic] = []
