"""
Authorization dependencies for route protection.

Implements:
- Permission checks (global and project-scoped) with the superadmin short-circuit
- Project membership and project restriction-flag checks
- Rank checks against a target user
- Audit logging helper
"""
from typing import Any, Dict, Optional
from fastapi import Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from crm.core.database.engine import get_db
from crm.core.exceptions import ForbiddenError, NotFoundError, ValidationError
from crm.features.permissions.cache import RoleCache, get_role_cache
from crm.features.permissions.models import AuditLog, DEFAULT_RESTRICTIONS
from crm.features.permissions.resolver import (
    can_access_project,
    effective_project_permissions,
    has_permission,
    has_project_permission,
    is_unconditional_admin,
)
from crm.features.permissions.tokens import normalize_permission
from crm.features.projects.models import Project
from crm.features.reporting.hierarchy import ensure_can_manage_user
from crm.features.users.dependencies import get_current_user
from crm.features.users.models import User
from crm.utils import get_logger


log = get_logger(__name__)


def _project_id_from(request: Request) -> str:
    project_id = request.path_params.get("project_id") or request.query_params.get("project_id")
    if not project_id:
        raise ValidationError("Project id is required for a project-scoped check")
    return project_id


async def _load_project(db: AsyncSession, project_id: str) -> Project:
    project = await db.get(Project, project_id)
    if project is None:
        raise NotFoundError("Project not found", details={"project_id": project_id})
    return project


# ============================================================================
# FastAPI Dependencies
# ============================================================================

def require_permission(token: str, project_scoped: bool = False):
    """
    FastAPI dependency to require a permission token.

    Usage:
        @router.get("/leads")
        async def list_leads(user: User = Depends(require_permission("leads:read"))):
            ...

        @router.patch("/projects/{project_id}/leads")
        async def edit_leads(
            user: User = Depends(require_permission("leads:update", project_scoped=True))
        ):
            ...

    Superadmins pass unconditionally. Project-scoped checks read
    ``project_id`` from the path (or query), apply the user's project access
    lists and then the project override.

    Raises:
        ForbiddenError: the user lacks the permission
    """
    permission = normalize_permission(token)

    async def permission_dependency(
        request: Request,
        db: AsyncSession = Depends(get_db),
        cache: RoleCache = Depends(get_role_cache),
        current_user: User = Depends(get_current_user)
    ) -> User:
        if is_unconditional_admin(current_user):
            log.debug(f"User {current_user.id} is superadmin - granted {permission}")
            return current_user

        if project_scoped:
            project_id = _project_id_from(request)
            if not can_access_project(current_user, project_id):
                raise ForbiddenError(f"Access to project {project_id} is restricted")
            granted = await has_project_permission(db, cache, current_user, project_id, permission)
        else:
            granted = await has_permission(db, cache, current_user, permission)

        if not granted:
            raise ForbiddenError(f"Permission denied: {permission}")
        return current_user

    return permission_dependency


def require_project_membership():
    """
    FastAPI dependency requiring the caller to be owner or member of the path's project.

    Returns the loaded project.
    """
    async def membership_dependency(
        project_id: str,
        db: AsyncSession = Depends(get_db),
        current_user: User = Depends(get_current_user)
    ) -> Project:
        project = await _load_project(db, project_id)
        if is_unconditional_admin(current_user) or project.owner_id == current_user.id:
            return project
        if current_user.id in project.member_ids:
            return project
        raise ForbiddenError("You are not a member of this project")

    return membership_dependency


def require_manageable_target():
    """
    FastAPI dependency requiring the caller to outrank the path's ``user_id``.

    Returns the target user.
    """
    async def target_dependency(
        user_id: str,
        db: AsyncSession = Depends(get_db),
        current_user: User = Depends(get_current_user)
    ) -> User:
        target = await db.get(User, user_id)
        if target is None:
            raise NotFoundError("User not found", details={"user_id": user_id})
        ensure_can_manage_user(current_user, target)
        return target

    return target_dependency


def require_project_action(flag: str):
    """
    FastAPI dependency requiring a project restriction flag (e.g. ``can_export_data``).

    Without an override row the default flags apply.
    """
    if flag not in DEFAULT_RESTRICTIONS:
        raise ValueError(f"Unknown restriction flag: {flag}")

    async def action_dependency(
        project_id: str,
        db: AsyncSession = Depends(get_db),
        cache: RoleCache = Depends(get_role_cache),
        current_user: User = Depends(get_current_user)
    ) -> User:
        if is_unconditional_admin(current_user):
            return current_user

        resolved = await effective_project_permissions(db, cache, current_user, project_id)
        if not resolved.project_access:
            raise ForbiddenError(f"Access to project {project_id} is restricted")
        if not resolved.restrictions.get(flag, False):
            raise ForbiddenError(f"Action not allowed in this project: {flag}")
        return current_user

    return action_dependency


async def get_current_superadmin(
    current_user: User = Depends(get_current_user)
) -> User:
    """Require superadmin privileges."""
    if not is_unconditional_admin(current_user):
        raise ForbiddenError("Superadmin privileges required")
    return current_user


# ============================================================================
# Audit Logging
# ============================================================================

async def create_audit_log(
    db: AsyncSession,
    user_id: Optional[str],
    action: str,
    resource_type: str,
    resource_id: Optional[str] = None,
    project_id: Optional[str] = None,
    details: Optional[Dict[str, Any]] = None,
    request: Optional[Request] = None
) -> AuditLog:
    """
    Create an audit log entry.

    Args:
        db: Database session
        user_id: User performing the action
        action: Action performed (e.g., "create", "update", "deny", "cascade")
        resource_type: Type of resource (e.g., "role", "user_permissions")
        resource_id: ID of the resource
        project_id: Project context
        details: Additional details
        request: Incoming request, for client IP and user agent

    Returns:
        Created AuditLog object
    """
    audit_log = AuditLog(
        user_id=user_id,
        action=action,
        resource_type=resource_type,
        resource_id=resource_id,
        project_id=project_id,
        details=details,
        ip_address=request.client.host if request is not None and request.client else None,
        user_agent=request.headers.get("user-agent", "")[:255] or None if request is not None else None
    )

    db.add(audit_log)
    await db.flush()

    log.info(
        f"Audit: user={user_id} action={action} resource={resource_type}:{resource_id} project={project_id}"
    )

    return audit_log
