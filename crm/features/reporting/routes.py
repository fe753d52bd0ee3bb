"""
Reporting graph routes.
"""
from typing import Annotated
from fastapi import APIRouter, Depends, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from crm.core.database.engine import get_db
from crm.core.exceptions import NotFoundError
from crm.features.permissions.dependencies import (
    create_audit_log,
    require_manageable_target,
    require_permission,
)
from crm.features.reporting import hierarchy
from crm.features.reporting.models import ReportingLink
from crm.features.reporting.schemas import (
    ReportingLinkCreate,
    ReportingLinkResponse,
    UserReportingResponse,
)
from crm.features.users.models import User


router = APIRouter(tags=["reporting"])


@router.get("/{user_id}", response_model=UserReportingResponse)
async def get_user_reporting(
    user_id: str,
    db: Annotated[AsyncSession, Depends(get_db)],
    current_user: Annotated[User, Depends(require_permission("reporting:read"))],
):
    """A user's reporting links, superiors and subordinates."""
    user = await db.get(User, user_id)
    if user is None:
        raise NotFoundError("User not found", details={"user_id": user_id})
    return UserReportingResponse(
        user_id=user.id,
        level=user.level,
        reports_to=[ReportingLinkResponse.model_validate(link) for link in await hierarchy.links_of(db, user.id)],
        superiors=await hierarchy.superiors_of(db, user),
        subordinates=await hierarchy.subordinates_of(db, user),
    )


@router.post("/{user_id}/links", response_model=ReportingLinkResponse, status_code=status.HTTP_201_CREATED)
async def add_link(
    body: ReportingLinkCreate,
    request: Request,
    db: Annotated[AsyncSession, Depends(get_db)],
    current_user: Annotated[User, Depends(require_permission("reporting:manage"))],
    target: Annotated[User, Depends(require_manageable_target())],
):
    """Make the user report to another user."""
    superior = await db.get(User, body.reports_to_id)
    if superior is None:
        raise NotFoundError("Superior not found", details={"user_id": body.reports_to_id})
    link = await hierarchy.add_reporting_link(
        db,
        target,
        superior,
        team_type=body.team_type,
        project_id=body.project_id,
        context=body.context,
    )
    await create_audit_log(
        db,
        user_id=current_user.id,
        action="add_link",
        resource_type="reporting",
        resource_id=target.id,
        project_id=body.project_id,
        details={"reports_to_id": superior.id, "team_type": body.team_type.value},
        request=request,
    )
    return link


@router.delete("/{user_id}/links/{link_id}", status_code=status.HTTP_204_NO_CONTENT)
async def remove_link(
    link_id: str,
    request: Request,
    db: Annotated[AsyncSession, Depends(get_db)],
    current_user: Annotated[User, Depends(require_permission("reporting:manage"))],
    target: Annotated[User, Depends(require_manageable_target())],
):
    """Remove one of the user's reporting links."""
    link = await db.get(ReportingLink, link_id)
    if link is None or link.user_id != target.id:
        raise NotFoundError("Reporting link not found", details={"link_id": link_id})
    reports_to_id = link.reports_to_id
    await hierarchy.remove_reporting_link(db, link, reason=f"removed by {current_user.id}")
    await create_audit_log(
        db,
        user_id=current_user.id,
        action="remove_link",
        resource_type="reporting",
        resource_id=target.id,
        details={"reports_to_id": reports_to_id},
        request=request,
    )
