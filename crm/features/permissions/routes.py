"""
Permission management API routes.

Provides endpoints for reading resolved permissions, editing per-user and
per-project overrides, project access restrictions, and the audit log.
"""
from typing import List, Optional
from fastapi import APIRouter, Depends, Request, status
from sqlalchemy import select, func
from sqlalchemy.ext.asyncio import AsyncSession

from crm.core.database.engine import get_db
from crm.core.exceptions import NotFoundError
from crm.features.permissions.cache import RoleCache, get_role_cache
from crm.features.permissions.dependencies import (
    create_audit_log,
    get_current_superadmin,
    require_manageable_target,
    require_permission,
)
from crm.features.permissions.models import AuditLog
from crm.features.permissions.overrides import (
    allow_permissions,
    clean_all_user_permissions,
    clean_user_permissions,
    deny_permissions,
    remove_project_override,
    set_custom_permissions,
    set_effective_permissions,
    set_project_override,
    update_restrictions,
)
from crm.features.permissions.resolver import (
    can_access_project,
    effective_permissions,
    effective_project_permissions,
    get_project_override,
    has_permission,
    has_project_permission,
    is_unconditional_admin,
    role_permissions_for,
)
from crm.features.permissions.schemas import (
    AuditLogListResponse,
    AuditLogResponse,
    CleanAllResponse,
    CleanSummaryResponse,
    CustomPermissions,
    CustomPermissionsUpdate,
    PermissionCheckRequest,
    PermissionCheckResponse,
    PermissionList,
    ProjectOverrideResponse,
    ProjectOverrideUpdate,
    ProjectPermissionsResponse,
    Restrictions,
    RestrictionsUpdate,
    UserPermissionsResponse,
)
from crm.features.permissions.tokens import normalize_permission, sorted_tokens
from crm.features.projects.service import get_project
from crm.features.users.dependencies import get_current_user
from crm.features.users.models import User
from crm.utils import get_logger


log = get_logger(__name__)
router = APIRouter()


async def build_user_permissions(db: AsyncSession, cache: RoleCache, user: User) -> UserPermissionsResponse:
    """Resolved view of one user's global permissions."""
    role_permissions = await role_permissions_for(db, cache, user)
    effective = await effective_permissions(db, cache, user)
    return UserPermissionsResponse(
        user_id=user.id,
        name=user.name,
        email=user.email,
        role=user.role,
        level=user.level,
        role_permissions=sorted_tokens(role_permissions),
        custom_permissions=CustomPermissions(
            allowed=list(user.custom_allowed or []),
            denied=list(user.custom_denied or []),
        ),
        effective_permissions=sorted_tokens(effective),
        restrictions=Restrictions(
            max_projects=user.max_projects,
            allowed_projects=list(user.allowed_projects or []),
            denied_projects=list(user.denied_projects or []),
        ),
    )


async def _load_user(db: AsyncSession, user_id: str) -> User:
    user = await db.get(User, user_id)
    if user is None:
        raise NotFoundError("User not found", details={"user_id": user_id})
    return user


# ============================================================================
# Read Routes
# ============================================================================

@router.get("/me", response_model=UserPermissionsResponse)
async def get_my_permissions(
    db: AsyncSession = Depends(get_db),
    cache: RoleCache = Depends(get_role_cache),
    current_user: User = Depends(get_current_user)
):
    """Get the caller's resolved permissions."""
    return await build_user_permissions(db, cache, current_user)


@router.get("/users", response_model=List[UserPermissionsResponse])
async def list_users_permissions(
    skip: int = 0,
    limit: int = 100,
    role: Optional[str] = None,
    db: AsyncSession = Depends(get_db),
    cache: RoleCache = Depends(get_role_cache),
    current_user: User = Depends(require_permission("users:read"))
):
    """Resolved permissions of every user, highest authority first."""
    stmt = select(User).order_by(User.level, User.name, User.id)
    if role:
        stmt = stmt.where(User.role == role.strip().lower())
    result = await db.execute(stmt.offset(skip).limit(limit))
    return [await build_user_permissions(db, cache, user) for user in result.scalars().all()]


@router.get("/users/{user_id}", response_model=UserPermissionsResponse)
async def get_user_permissions(
    user_id: str,
    db: AsyncSession = Depends(get_db),
    cache: RoleCache = Depends(get_role_cache),
    current_user: User = Depends(require_permission("users:read"))
):
    """Get one user's resolved permissions."""
    user = await _load_user(db, user_id)
    return await build_user_permissions(db, cache, user)


@router.post("/check", response_model=PermissionCheckResponse)
async def check_permission(
    check: PermissionCheckRequest,
    db: AsyncSession = Depends(get_db),
    cache: RoleCache = Depends(get_role_cache),
    current_user: User = Depends(get_current_user)
):
    """Check whether the caller holds a permission, optionally inside a project."""
    permission = normalize_permission(check.permission)

    if is_unconditional_admin(current_user):
        return PermissionCheckResponse(
            permission=permission, project_id=check.project_id, has_permission=True, reason="superadmin"
        )

    if check.project_id:
        if not can_access_project(current_user, check.project_id):
            return PermissionCheckResponse(
                permission=permission,
                project_id=check.project_id,
                has_permission=False,
                reason="project access restricted",
            )
        granted = await has_project_permission(db, cache, current_user, check.project_id, permission)
    else:
        granted = await has_permission(db, cache, current_user, permission)

    return PermissionCheckResponse(
        permission=permission,
        project_id=check.project_id,
        has_permission=granted,
        reason=None if granted else "not granted",
    )


# ============================================================================
# User Override Routes
# ============================================================================

@router.put("/users/{user_id}/effective", response_model=UserPermissionsResponse)
async def set_user_effective_permissions(
    body: PermissionList,
    request: Request,
    db: AsyncSession = Depends(get_db),
    cache: RoleCache = Depends(get_role_cache),
    current_user: User = Depends(require_permission("users:update")),
    target: User = Depends(require_manageable_target())
):
    """Make the given list the user's effective permissions (stored as a minimal diff)."""
    await set_effective_permissions(db, cache, target, body.permissions)
    await create_audit_log(
        db,
        user_id=current_user.id,
        action="set_effective",
        resource_type="user_permissions",
        resource_id=target.id,
        details={"allowed": target.custom_allowed, "denied": target.custom_denied},
        request=request,
    )
    return await build_user_permissions(db, cache, target)


@router.put("/users/{user_id}/custom", response_model=UserPermissionsResponse)
async def set_user_custom_permissions(
    body: CustomPermissionsUpdate,
    request: Request,
    db: AsyncSession = Depends(get_db),
    cache: RoleCache = Depends(get_role_cache),
    current_user: User = Depends(require_permission("users:update")),
    target: User = Depends(require_manageable_target())
):
    """Replace the user's allowed and/or denied lists as given."""
    await set_custom_permissions(db, cache, target, allowed=body.allowed, denied=body.denied)
    await create_audit_log(
        db,
        user_id=current_user.id,
        action="set_custom",
        resource_type="user_permissions",
        resource_id=target.id,
        details=body.model_dump(),
        request=request,
    )
    return await build_user_permissions(db, cache, target)


@router.post("/users/{user_id}/deny", response_model=UserPermissionsResponse)
async def deny_user_permissions(
    body: PermissionList,
    request: Request,
    db: AsyncSession = Depends(get_db),
    cache: RoleCache = Depends(get_role_cache),
    current_user: User = Depends(require_permission("users:update")),
    target: User = Depends(require_manageable_target())
):
    """Deny permissions to a user."""
    await deny_permissions(db, cache, target, body.permissions)
    await create_audit_log(
        db,
        user_id=current_user.id,
        action="deny",
        resource_type="user_permissions",
        resource_id=target.id,
        details={"permissions": body.permissions},
        request=request,
    )
    return await build_user_permissions(db, cache, target)


@router.post("/users/{user_id}/allow", response_model=UserPermissionsResponse)
async def allow_user_permissions(
    body: PermissionList,
    request: Request,
    db: AsyncSession = Depends(get_db),
    cache: RoleCache = Depends(get_role_cache),
    current_user: User = Depends(require_permission("users:update")),
    target: User = Depends(require_manageable_target())
):
    """Allow permissions to a user (lifting denials)."""
    await allow_permissions(db, cache, target, body.permissions)
    await create_audit_log(
        db,
        user_id=current_user.id,
        action="allow",
        resource_type="user_permissions",
        resource_id=target.id,
        details={"permissions": body.permissions},
        request=request,
    )
    return await build_user_permissions(db, cache, target)


@router.post("/users/{user_id}/clean", response_model=CleanSummaryResponse)
async def clean_user(
    request: Request,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(require_permission("users:update")),
    target: User = Depends(require_manageable_target())
):
    """Reset a user's overrides to a clean slate."""
    summary = await clean_user_permissions(db, target)
    await create_audit_log(
        db,
        user_id=current_user.id,
        action="clean",
        resource_type="user_permissions",
        resource_id=target.id,
        details={"before": summary.before},
        request=request,
    )
    return CleanSummaryResponse(**summary.__dict__)


@router.post("/clean-all", response_model=CleanAllResponse)
async def clean_all_users(
    request: Request,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_superadmin)
):
    """Reset the overrides of every non-superadmin user (superadmin only)."""
    summaries = await clean_all_user_permissions(db)
    await create_audit_log(
        db,
        user_id=current_user.id,
        action="clean_all",
        resource_type="user_permissions",
        details={"cleaned": len(summaries)},
        request=request,
    )
    return CleanAllResponse(
        cleaned=len(summaries),
        users=[CleanSummaryResponse(**summary.__dict__) for summary in summaries],
    )


@router.put("/users/{user_id}/restrictions", response_model=UserPermissionsResponse)
async def update_user_restrictions(
    body: RestrictionsUpdate,
    request: Request,
    db: AsyncSession = Depends(get_db),
    cache: RoleCache = Depends(get_role_cache),
    current_user: User = Depends(require_permission("users:update")),
    target: User = Depends(require_manageable_target())
):
    """Update a user's project access restrictions."""
    await update_restrictions(
        db,
        target,
        max_projects=body.max_projects,
        allowed_projects=body.allowed_projects,
        denied_projects=body.denied_projects,
    )
    await create_audit_log(
        db,
        user_id=current_user.id,
        action="update_restrictions",
        resource_type="user_restrictions",
        resource_id=target.id,
        details=body.model_dump(),
        request=request,
    )
    return await build_user_permissions(db, cache, target)


# ============================================================================
# Project Override Routes
# ============================================================================

@router.get("/users/{user_id}/projects/{project_id}", response_model=ProjectPermissionsResponse)
async def get_user_project_permissions(
    user_id: str,
    project_id: str,
    db: AsyncSession = Depends(get_db),
    cache: RoleCache = Depends(get_role_cache),
    current_user: User = Depends(require_permission("users:read"))
):
    """Resolved permissions of a user inside a project."""
    user = await _load_user(db, user_id)
    project = await get_project(db, project_id)
    resolved = await effective_project_permissions(db, cache, user, project.id)
    row = await get_project_override(db, user.id, project.id)
    return ProjectPermissionsResponse(
        user_id=user.id,
        project_id=project.id,
        permissions=sorted_tokens(resolved.permissions),
        restrictions=resolved.restrictions,
        has_override=resolved.has_override,
        project_access=resolved.project_access,
        override=ProjectOverrideResponse.model_validate(row) if row else None,
    )


@router.put("/users/{user_id}/projects/{project_id}", response_model=ProjectOverrideResponse)
async def set_user_project_permissions(
    project_id: str,
    body: ProjectOverrideUpdate,
    request: Request,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(require_permission("users:update")),
    target: User = Depends(require_manageable_target())
):
    """Create or replace a user's override inside a project."""
    project = await get_project(db, project_id)
    row = await set_project_override(
        db,
        target,
        project,
        allowed=body.allowed,
        denied=body.denied,
        restrictions=body.restrictions,
        assigned_by=current_user,
        expires_at=body.expires_at,
        is_active=body.is_active,
    )
    await create_audit_log(
        db,
        user_id=current_user.id,
        action="set_project_permissions",
        resource_type="user_project_permissions",
        resource_id=target.id,
        project_id=project.id,
        details=body.model_dump(mode="json"),
        request=request,
    )
    return row


@router.delete("/users/{user_id}/projects/{project_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_user_project_permissions(
    project_id: str,
    request: Request,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(require_permission("users:update")),
    target: User = Depends(require_manageable_target())
):
    """Remove a user's override inside a project."""
    project = await get_project(db, project_id)
    if not await remove_project_override(db, target, project):
        raise NotFoundError("No project permissions for this user", details={"project_id": project.id})
    await create_audit_log(
        db,
        user_id=current_user.id,
        action="delete_project_permissions",
        resource_type="user_project_permissions",
        resource_id=target.id,
        project_id=project.id,
        request=request,
    )


# ============================================================================
# Audit Log Routes
# ============================================================================

@router.get("/audit-logs", response_model=AuditLogListResponse)
async def list_audit_logs(
    skip: int = 0,
    limit: int = 50,
    project_id: Optional[str] = None,
    user_id: Optional[str] = None,
    action: Optional[str] = None,
    resource_type: Optional[str] = None,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_superadmin)
):
    """List audit logs with optional filtering (superadmin only)."""
    stmt = select(AuditLog)

    if project_id:
        stmt = stmt.where(AuditLog.project_id == project_id)
    if user_id:
        stmt = stmt.where(AuditLog.user_id == user_id)
    if action:
        stmt = stmt.where(AuditLog.action == action)
    if resource_type:
        stmt = stmt.where(AuditLog.resource_type == resource_type)

    count_stmt = select(func.count()).select_from(stmt.subquery())
    total_result = await db.execute(count_stmt)
    total = total_result.scalar() or 0

    stmt = stmt.order_by(AuditLog.created_at.desc(), AuditLog.id.desc()).offset(skip).limit(limit)
    result = await db.execute(stmt)
    logs = result.scalars().all()

    pages = (total + limit - 1) // limit if limit > 0 else 0
    page = (skip // limit) + 1 if limit > 0 else 1

    return AuditLogListResponse(
        items=[AuditLogResponse.model_validate(entry) for entry in logs],
        total=total,
        page=page,
        page_size=limit,
        pages=pages
    )
