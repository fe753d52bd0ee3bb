"""
Role management API routes.

Role edits cascade to every user on the role; see
``crm.features.permissions.cascade``.
"""
from typing import List
from fastapi import APIRouter, Depends, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from crm.core import config
from crm.core.database.engine import get_db
from crm.features.permissions.cache import RoleCache, get_role_cache
from crm.features.permissions.cascade import users_of_role
from crm.features.permissions.dependencies import create_audit_log, require_permission
from crm.features.permissions.resolver import combine_permissions
from crm.features.permissions.tokens import sorted_tokens
from crm.features.reporting.hierarchy import assignable_roles, ensure_can_assign_role, ensure_can_manage_level
from crm.features.roles.schemas import (
    CascadeReportResponse,
    RoleCreate,
    RoleDetails,
    RoleResponse,
    RoleUpdate,
    RoleUpdateResponse,
    RoleUserSummary,
    RoleWithCount,
)
from crm.features.roles.service import (
    create_role as create_role_record,
    delete_role as delete_role_record,
    get_role,
    list_roles_with_counts,
    update_role as update_role_record,
)
from crm.features.users.dependencies import get_current_user
from crm.features.users.models import User
from crm.utils import get_logger


log = get_logger(__name__)
router = APIRouter()


@router.get("", response_model=List[RoleWithCount])
async def list_roles(
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(require_permission("roles:read"))
):
    """List roles with the number of users on each."""
    rows = await list_roles_with_counts(db)
    return [
        RoleWithCount(**RoleResponse.model_validate(role).model_dump(), user_count=count)
        for role, count in rows
    ]


@router.get("/assignable", response_model=List[RoleResponse])
async def list_assignable_roles(
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user)
):
    """Roles the caller may assign to other users."""
    return await assignable_roles(db, current_user)


@router.get("/{role_id}", response_model=RoleDetails)
async def get_role_details(
    role_id: str,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(require_permission("roles:read"))
):
    """Get a role with its users and their effective permissions."""
    role = await get_role(db, role_id)
    users = await users_of_role(db, role)
    return RoleDetails(
        role=RoleResponse.model_validate(role),
        user_count=len(users),
        users=[
            RoleUserSummary(
                id=user.id,
                name=user.name,
                email=user.email,
                level=user.level,
                is_active=user.is_active,
                custom_allowed=list(user.custom_allowed or []),
                custom_denied=list(user.custom_denied or []),
                effective_permissions=sorted_tokens(
                    combine_permissions(role.permissions, user.custom_allowed, user.custom_denied)
                ),
            )
            for user in users
        ],
    )


@router.post("", response_model=RoleResponse, status_code=status.HTTP_201_CREATED)
async def create_role(
    body: RoleCreate,
    request: Request,
    db: AsyncSession = Depends(get_db),
    cache: RoleCache = Depends(get_role_cache),
    current_user: User = Depends(require_permission("roles:manage"))
):
    """Create a new role."""
    ensure_can_manage_level(current_user, body.level or config.DEFAULT_ROLE_LEVEL, body.name)
    role = await create_role_record(
        db,
        name=body.name,
        permissions=body.permissions,
        level=body.level,
        description=body.description,
        cache=cache,
    )
    await create_audit_log(
        db,
        user_id=current_user.id,
        action="create",
        resource_type="role",
        resource_id=role.id,
        details=body.model_dump(),
        request=request,
    )
    return role


@router.put("/{role_id}", response_model=RoleUpdateResponse)
async def update_role(
    role_id: str,
    body: RoleUpdate,
    request: Request,
    db: AsyncSession = Depends(get_db),
    cache: RoleCache = Depends(get_role_cache),
    current_user: User = Depends(require_permission("roles:manage"))
):
    """Edit a role's name, level, permissions or description and cascade to its users."""
    role = await get_role(db, role_id)
    ensure_can_assign_role(current_user, role)
    if body.level is not None:
        ensure_can_manage_level(current_user, body.level, role.name)

    result = await update_role_record(
        db,
        role,
        name=body.name,
        level=body.level,
        permissions=body.permissions,
        description=body.description,
        cache=cache,
    )
    cascades = {
        kind: CascadeReportResponse.model_validate(report)
        for kind, report in result.cascades.items()
    }
    await create_audit_log(
        db,
        user_id=current_user.id,
        action="update",
        resource_type="role",
        resource_id=role.id,
        details={
            "changes": body.model_dump(exclude_none=True),
            "cascades": {kind: report.model_dump() for kind, report in cascades.items()},
        },
        request=request,
    )
    await db.refresh(role)
    return RoleUpdateResponse(role=RoleResponse.model_validate(role), cascades=cascades)


@router.delete("/{role_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_role(
    role_id: str,
    request: Request,
    db: AsyncSession = Depends(get_db),
    cache: RoleCache = Depends(get_role_cache),
    current_user: User = Depends(require_permission("roles:manage"))
):
    """Delete a role no user references."""
    role = await get_role(db, role_id)
    ensure_can_assign_role(current_user, role)
    name = role.name
    await delete_role_record(db, role, cache=cache)
    await create_audit_log(
        db,
        user_id=current_user.id,
        action="delete",
        resource_type="role",
        resource_id=role_id,
        details={"name": name},
        request=request,
    )
