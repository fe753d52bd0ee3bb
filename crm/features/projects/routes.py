"""
Project routes: creation, membership and managers.
"""
from typing import Annotated
from fastapi import APIRouter, Depends, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from crm.core.database.engine import get_db
from crm.core.exceptions import NotFoundError
from crm.features.permissions.dependencies import (
    create_audit_log,
    require_permission,
    require_project_membership,
)
from crm.features.projects import service
from crm.features.projects.models import Project
from crm.features.projects.schemas import ProjectCreate, ProjectMemberAdd, ProjectResponse
from crm.features.users.models import User


router = APIRouter(tags=["projects"])


async def _load_user(db: AsyncSession, user_id: str) -> User:
    user = await db.get(User, user_id)
    if user is None:
        raise NotFoundError("User not found", details={"user_id": user_id})
    return user


@router.post("", response_model=ProjectResponse, status_code=status.HTTP_201_CREATED)
async def create_project(
    body: ProjectCreate,
    request: Request,
    db: Annotated[AsyncSession, Depends(get_db)],
    current_user: Annotated[User, Depends(require_permission("projects:create"))],
):
    """Create a project owned by the caller."""
    project = await service.create_project(
        db,
        owner=current_user,
        name=body.name,
        location=body.location,
        developer=body.developer,
        logo_url=body.logo_url,
    )
    await create_audit_log(
        db,
        user_id=current_user.id,
        action="create",
        resource_type="project",
        resource_id=project.id,
        project_id=project.id,
        request=request,
    )
    return project


@router.get("/{project_id}", response_model=ProjectResponse)
async def get_project(
    project: Annotated[Project, Depends(require_project_membership())],
):
    """Get a project (members only)."""
    return project


@router.post("/{project_id}/members", response_model=ProjectResponse)
async def add_project_member(
    body: ProjectMemberAdd,
    request: Request,
    db: Annotated[AsyncSession, Depends(get_db)],
    project: Annotated[Project, Depends(require_project_membership())],
    current_user: Annotated[User, Depends(require_permission("projects:update", project_scoped=True))],
):
    """Add a member to the project."""
    user = await _load_user(db, body.user_id)
    await service.add_member(db, project, user)
    await create_audit_log(
        db,
        user_id=current_user.id,
        action="add_member",
        resource_type="project",
        resource_id=user.id,
        project_id=project.id,
        request=request,
    )
    return project


@router.delete("/{project_id}/members/{user_id}", response_model=ProjectResponse)
async def remove_project_member(
    user_id: str,
    request: Request,
    db: Annotated[AsyncSession, Depends(get_db)],
    project: Annotated[Project, Depends(require_project_membership())],
    current_user: Annotated[User, Depends(require_permission("projects:update", project_scoped=True))],
):
    """Remove a member; the owner cannot be removed."""
    user = await _load_user(db, user_id)
    await service.remove_member(db, project, user)
    await create_audit_log(
        db,
        user_id=current_user.id,
        action="remove_member",
        resource_type="project",
        resource_id=user.id,
        project_id=project.id,
        request=request,
    )
    return project


@router.post("/{project_id}/managers", response_model=ProjectResponse)
async def add_project_manager(
    body: ProjectMemberAdd,
    request: Request,
    db: Annotated[AsyncSession, Depends(get_db)],
    project: Annotated[Project, Depends(require_project_membership())],
    current_user: Annotated[User, Depends(require_permission("projects:update", project_scoped=True))],
):
    """Make a user a manager (and member) of the project."""
    user = await _load_user(db, body.user_id)
    await service.add_manager(db, project, user)
    await create_audit_log(
        db,
        user_id=current_user.id,
        action="add_manager",
        resource_type="project",
        resource_id=user.id,
        project_id=project.id,
        request=request,
    )
    return project


@router.delete("/{project_id}/managers/{user_id}", response_model=ProjectResponse)
async def remove_project_manager(
    user_id: str,
    request: Request,
    db: Annotated[AsyncSession, Depends(get_db)],
    project: Annotated[Project, Depends(require_project_membership())],
    current_user: Annotated[User, Depends(require_permission("projects:update", project_scoped=True))],
):
    """Remove a manager; they stay a member."""
    user = await _load_user(db, user_id)
    await service.remove_manager(db, project, user)
    await create_audit_log(
        db,
        user_id=current_user.id,
        action="remove_manager",
        resource_type="project",
        resource_id=user.id,
        project_id=project.id,
        request=request,
    )
    return project
