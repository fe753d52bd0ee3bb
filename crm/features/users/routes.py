"""
User feature routes.
"""
from typing import Annotated, List
from fastapi import APIRouter, Depends, Request
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from crm.core.database.engine import get_db
from crm.core.exceptions import NotFoundError
from crm.features.permissions.cascade import reassign_role
from crm.features.permissions.dependencies import (
    create_audit_log,
    require_manageable_target,
    require_permission,
)
from crm.features.reporting.hierarchy import ensure_can_assign_role
from crm.features.roles.service import get_role_by_name
from crm.features.users.dependencies import get_current_user
from crm.features.users.models import User
from crm.features.users.schemas import RoleAssignment, UserCreate, UserResponse
from crm.features.users.service import create_user as create_user_record


router = APIRouter(tags=["users"])


async def _role_named(db: AsyncSession, name: str):
    role = await get_role_by_name(db, name)
    if role is None:
        raise NotFoundError("Role not found", details={"role": name})
    return role


@router.get("/me", response_model=UserResponse)
async def get_current_user_profile(
    user: Annotated[User, Depends(get_current_user)]
):
    """Get current authenticated user's profile."""
    return user


@router.get("", response_model=List[UserResponse])
async def list_users(
    db: Annotated[AsyncSession, Depends(get_db)],
    current_user: Annotated[User, Depends(require_permission("users:read"))],
    skip: int = 0,
    limit: int = 100,
    role: str | None = None,
    include_inactive: bool = False,
):
    """List users, highest authority first."""
    stmt = select(User).order_by(User.level, User.name, User.id)
    if role:
        stmt = stmt.where(User.role == role.strip().lower())
    if not include_inactive:
        stmt = stmt.where(User.is_active == True)  # noqa: E712
    result = await db.execute(stmt.offset(skip).limit(limit))
    return result.scalars().all()


@router.get("/{user_id}", response_model=UserResponse)
async def get_user_by_id(
    user_id: str,
    db: Annotated[AsyncSession, Depends(get_db)],
    current_user: Annotated[User, Depends(require_permission("users:read"))],
):
    """Get a user by ID."""
    user = await db.get(User, user_id)
    if user is None:
        raise NotFoundError("User not found", details={"user_id": user_id})
    return user


@router.post("", response_model=UserResponse, status_code=201)
async def create_user(
    body: UserCreate,
    request: Request,
    db: Annotated[AsyncSession, Depends(get_db)],
    current_user: Annotated[User, Depends(require_permission("users:create"))],
):
    """Create a user on a role the caller is allowed to assign."""
    role = await _role_named(db, body.role)
    ensure_can_assign_role(current_user, role)
    user = await create_user_record(
        db,
        email=body.email,
        name=body.name,
        role=role,
        mobile=body.mobile,
        company_name=body.company_name,
    )
    await create_audit_log(
        db,
        user_id=current_user.id,
        action="create",
        resource_type="user",
        resource_id=user.id,
        details={"email": user.email, "role": role.name},
        request=request,
    )
    return user


@router.put("/{user_id}/role", response_model=UserResponse)
async def assign_role(
    body: RoleAssignment,
    request: Request,
    db: Annotated[AsyncSession, Depends(get_db)],
    current_user: Annotated[User, Depends(require_permission("users:update"))],
    target: Annotated[User, Depends(require_manageable_target())],
):
    """Move a user onto another role (clears their custom overrides)."""
    role = await _role_named(db, body.role)
    previous = target.role
    await reassign_role(db, target, role, actor=current_user)
    await create_audit_log(
        db,
        user_id=current_user.id,
        action="assign_role",
        resource_type="user",
        resource_id=target.id,
        details={"from": previous, "to": role.name},
        request=request,
    )
    return target


@router.post("/{user_id}/deactivate", response_model=UserResponse)
async def deactivate_user(
    request: Request,
    db: Annotated[AsyncSession, Depends(get_db)],
    current_user: Annotated[User, Depends(require_permission("users:update"))],
    target: Annotated[User, Depends(require_manageable_target())],
):
    """Deactivate a user account."""
    target.is_active = False
    await db.flush()
    await create_audit_log(
        db,
        user_id=current_user.id,
        action="deactivate",
        resource_type="user",
        resource_id=target.id,
        request=request,
    )
    return target
