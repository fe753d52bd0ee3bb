"""
Permission resolution.

Effective permissions of a user:

    (role.permissions ∪ user.custom_allowed) \\ user.custom_denied

and inside a project, with an in-force ``UserProjectPermission`` row:

    (global ∪ row.allowed) \\ row.denied

Denied always wins. Superadmin goes through the same formula; only the
authorization dependencies short-circuit it (``is_unconditional_admin``).
"""
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, Iterable, Optional, Set

from sqlalchemy import select, and_
from sqlalchemy.ext.asyncio import AsyncSession

from crm.core import config
from crm.features.permissions.cache import RoleCache, RoleSnapshot
from crm.features.permissions.models import DEFAULT_RESTRICTIONS, UserProjectPermission
from crm.features.permissions.tokens import normalize_permission, normalize_permissions
from crm.features.users.models import User
from crm.utils import get_logger


log = get_logger(__name__)


@dataclass
class ProjectPermissionSet:
    """Resolved permissions of one user inside one project."""
    permissions: Set[str]
    restrictions: Dict[str, bool] = field(default_factory=lambda: dict(DEFAULT_RESTRICTIONS))
    has_override: bool = False
    project_access: bool = True


# ============================================================================
# Pure helpers
# ============================================================================

def combine_permissions(
    base: Iterable[str] | None,
    allowed: Iterable[str] | None,
    denied: Iterable[str] | None,
) -> Set[str]:
    """``(base ∪ allowed) \\ denied`` over normalized tokens."""
    granted = set(normalize_permissions(base)) | set(normalize_permissions(allowed))
    return granted - set(normalize_permissions(denied))


def is_unconditional_admin(user: User) -> bool:
    """
    Superadmin short-circuit used by the authorization dependencies only.

    Permission *resolution* never consults this: a superadmin's explicit
    denials still show up in ``effective_permissions``.
    """
    return user.role == config.SUPERADMIN_ROLE or user.level == 1


def can_access_project(user: User, project_id: str) -> bool:
    """Apply the user's allowed/denied project lists."""
    if is_unconditional_admin(user):
        return True
    if project_id in (user.denied_projects or []):
        return False
    allowed = user.allowed_projects or []
    if allowed and project_id not in allowed:
        return False
    return True


# ============================================================================
# Role-backed resolution
# ============================================================================

async def get_role_for_user(db: AsyncSession, cache: RoleCache, user: User) -> Optional[RoleSnapshot]:
    """
    Look up the user's role by its denormalized name.

    A missing role is logged and returned as None so permission checks stay
    total; a timeout raises ``LookupTimeoutError``.
    """
    role = await cache.get(db, user.role)
    if role is None:
        log.warning(f"User {user.id} references missing role {user.role!r}; using empty base permissions")
    return role


async def role_permissions_for(db: AsyncSession, cache: RoleCache, user: User) -> Set[str]:
    """Base permission set of the user's role (empty when the role is missing)."""
    role = await get_role_for_user(db, cache, user)
    return set(role.permissions) if role else set()


async def effective_permissions(db: AsyncSession, cache: RoleCache, user: User) -> Set[str]:
    """Global effective permission set of a user."""
    base = await role_permissions_for(db, cache, user)
    return combine_permissions(base, user.custom_allowed, user.custom_denied)


async def has_permission(db: AsyncSession, cache: RoleCache, user: User, token: str) -> bool:
    """
    Check one token without materializing the effective set.

    Denial is evaluated first and wins over both custom grants and the role.
    """
    permission = normalize_permission(token)
    if not permission:
        return False

    if permission in normalize_permissions(user.custom_denied):
        log.debug(f"User {user.id} denied {permission}: explicit denial")
        return False

    if permission in normalize_permissions(user.custom_allowed):
        log.debug(f"User {user.id} granted {permission}: custom allowance")
        return True

    role = await get_role_for_user(db, cache, user)
    granted = role is not None and permission in role.permissions
    log.debug(f"User {user.id} {'granted' if granted else 'denied'} {permission} via role {user.role!r}")
    return granted


# ============================================================================
# Project overlay
# ============================================================================

async def get_project_override(
    db: AsyncSession,
    user_id: str,
    project_id: str,
) -> Optional[UserProjectPermission]:
    """Return the in-force override row for (user, project), or None."""
    stmt = select(UserProjectPermission).where(
        and_(
            UserProjectPermission.user_id == user_id,
            UserProjectPermission.project_id == project_id,
            UserProjectPermission.is_active == True,  # noqa: E712
        )
    )
    result = await db.execute(stmt)
    row = result.scalars().first()
    if row is None or not row.is_in_force(datetime.now(timezone.utc)):
        return None
    return row


async def effective_project_permissions(
    db: AsyncSession,
    cache: RoleCache,
    user: User,
    project_id: str,
) -> ProjectPermissionSet:
    """Global effective permissions refined by the user's project override."""
    global_permissions = await effective_permissions(db, cache, user)
    access = can_access_project(user, project_id)

    row = await get_project_override(db, user.id, project_id)
    if row is None:
        return ProjectPermissionSet(
            permissions=global_permissions,
            project_access=access,
        )

    return ProjectPermissionSet(
        permissions=combine_permissions(global_permissions, row.allowed, row.denied),
        restrictions=row.effective_restrictions(),
        has_override=True,
        project_access=access,
    )


async def has_project_permission(
    db: AsyncSession,
    cache: RoleCache,
    user: User,
    project_id: str,
    token: str,
) -> bool:
    """Project-aware variant of ``has_permission``."""
    permission = normalize_permission(token)
    if not permission:
        return False

    row = await get_project_override(db, user.id, project_id)
    if row is not None:
        if permission in normalize_permissions(row.denied):
            log.debug(f"User {user.id} denied {permission} in project {project_id}: project denial")
            return False
        if permission in normalize_permissions(row.allowed):
            log.debug(f"User {user.id} granted {permission} in project {project_id}: project allowance")
            return True

    return await has_permission(db, cache, user, permission)
