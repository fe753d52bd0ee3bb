"""
Project membership rules the permission engine relies on.

- the owner is always a member and can never be removed
- managers are members too
- a user's ``max_projects`` caps how many projects they can belong to
- ``allowed_projects`` / ``denied_projects`` gate who can be added
"""
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from crm.core.exceptions import ForbiddenError, ForbiddenOperationError, NotFoundError
from crm.features.permissions.resolver import can_access_project
from crm.features.projects.models import Project, project_members
from crm.features.users.models import User
from crm.utils import get_logger


log = get_logger(__name__)


async def get_project(db: AsyncSession, project_id: str) -> Project:
    project = await db.get(Project, project_id)
    if project is None:
        raise NotFoundError("Project not found", details={"project_id": project_id})
    return project


async def project_count(db: AsyncSession, user: User) -> int:
    """Number of projects the user is a member of."""
    stmt = select(func.count()).select_from(project_members).where(project_members.c.user_id == user.id)
    result = await db.execute(stmt)
    return int(result.scalar_one())


async def _ensure_can_join(db: AsyncSession, project_id: str, user: User) -> None:
    if not can_access_project(user, project_id):
        raise ForbiddenError(f"User {user.id} is not allowed on project {project_id}")
    if user.max_projects is not None and await project_count(db, user) >= user.max_projects:
        raise ForbiddenError(
            f"User {user.id} already belongs to the maximum of {user.max_projects} projects"
        )


async def create_project(
    db: AsyncSession,
    owner: User,
    name: str,
    location: str,
    developer: str,
    logo_url: str | None = None,
) -> Project:
    """Create a project owned by (and with as first member) ``owner``."""
    project = Project(name=name, location=location, developer=developer, logo_url=logo_url, owner_id=owner.id)
    if owner.max_projects is not None and await project_count(db, owner) >= owner.max_projects:
        raise ForbiddenError(f"User {owner.id} already belongs to the maximum of {owner.max_projects} projects")
    project.owner = owner
    project.members = [owner]
    project.managers = []
    db.add(project)
    await db.flush()

    log.info(f"Created project {project.id} owned by {owner.id}")
    return project


async def add_member(db: AsyncSession, project: Project, user: User) -> Project:
    if user.id in project.member_ids:
        return project
    await _ensure_can_join(db, project.id, user)
    project.members = project.members + [user]
    await db.flush()
    log.info(f"Added user {user.id} to project {project.id}")
    return project


async def remove_member(db: AsyncSession, project: Project, user: User) -> Project:
    if user.id == project.owner_id:
        raise ForbiddenOperationError("Cannot remove the project owner")
    if user.id not in project.member_ids:
        raise NotFoundError("User is not a member of this project", details={"user_id": user.id})
    project.members = [m for m in project.members if m.id != user.id]
    project.managers = [m for m in project.managers if m.id != user.id]
    await db.flush()
    log.info(f"Removed user {user.id} from project {project.id}")
    return project


async def add_manager(db: AsyncSession, project: Project, user: User) -> Project:
    if user.id in project.manager_ids:
        return project
    await add_member(db, project, user)
    project.managers = project.managers + [user]
    await db.flush()
    log.info(f"User {user.id} now manages project {project.id}")
    return project


async def remove_manager(db: AsyncSession, project: Project, user: User) -> Project:
    if user.id not in project.manager_ids:
        raise NotFoundError("User is not a manager of this project", details={"user_id": user.id})
    project.managers = [m for m in project.managers if m.id != user.id]
    await db.flush()
    log.info(f"User {user.id} no longer manages project {project.id}")
    return project
