"""
Allow/deny update protocol.

User overrides are stored as a *minimal diff* against the role:
``custom_allowed`` only holds tokens the role does not grant and
``custom_denied`` only matters for tokens the role (or an allowance) would
otherwise grant. Every writer here normalizes and deduplicates, then
reassigns the JSON columns with fresh lists.

Superadmin users are managed through the role record only, so every mutator
rejects them.
"""
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Set

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from crm.core.exceptions import ForbiddenOperationError, ValidationError
from crm.features.permissions.cache import RoleCache
from crm.features.permissions.models import DEFAULT_RESTRICTIONS, UserProjectPermission
from crm.features.permissions.resolver import (
    combine_permissions,
    effective_permissions,
    is_unconditional_admin,
    role_permissions_for,
)
from crm.features.permissions.tokens import is_valid_token, normalize_permissions, sorted_tokens
from crm.features.projects.models import Project
from crm.features.users.models import User
from crm.utils import get_logger


log = get_logger(__name__)


@dataclass
class CleanSummary:
    """Before/after override counts of one user touched by a clean-slate pass."""
    user_id: str
    email: str
    role: str
    before: Dict[str, int]
    after: Dict[str, int] = field(default_factory=lambda: {"allowed": 0, "denied": 0})


# ============================================================================
# Validation helpers
# ============================================================================

def validated_tokens(tokens: Iterable[Any] | None) -> List[str]:
    """
    Normalize tokens and reject anything that is not ``resource:action``.

    Raises:
        ValidationError: with the offending tokens in ``details``
    """
    if tokens is not None and not isinstance(tokens, (list, tuple, set, frozenset)):
        raise ValidationError("Permissions must be a list of strings")
    normalized = normalize_permissions(tokens)
    invalid = [token for token in normalized if not is_valid_token(token)]
    if invalid:
        raise ValidationError("Invalid permission tokens", details={"invalid": invalid})
    return normalized


def ensure_not_superadmin(user: User) -> None:
    """Superadmin (or any level 1) overrides are never edited directly."""
    if is_unconditional_admin(user):
        raise ForbiddenOperationError(
            "Cannot modify superadmin custom permissions; edit the superadmin role instead"
        )


def _store(user: User, allowed: Iterable[str], denied: Iterable[str]) -> None:
    user.custom_allowed = sorted_tokens(allowed)
    user.custom_denied = sorted_tokens(denied)


# ============================================================================
# Global overrides
# ============================================================================

async def set_effective_permissions(
    db: AsyncSession,
    cache: RoleCache,
    user: User,
    desired: Iterable[str],
) -> Set[str]:
    """
    Persist the minimal diff that makes ``desired`` the user's effective set.

    ``denied = role \\ desired`` and ``allowed = desired \\ role``.

    Returns:
        The user's new effective permission set (equal to ``desired``)
    """
    ensure_not_superadmin(user)
    wanted = set(validated_tokens(desired))
    role_permissions = await role_permissions_for(db, cache, user)

    _store(user, wanted - role_permissions, role_permissions - wanted)
    await db.flush()

    log.info(
        f"Set effective permissions of user {user.id}: "
        f"allowed={user.custom_allowed} denied={user.custom_denied}"
    )
    return await effective_permissions(db, cache, user)


async def deny_permissions(
    db: AsyncSession,
    cache: RoleCache,
    user: User,
    tokens: Iterable[str],
) -> Set[str]:
    """Add ``tokens`` to the user's denials, dropping them from the allowances."""
    ensure_not_superadmin(user)
    revoked = set(validated_tokens(tokens))
    if not revoked:
        raise ValidationError("No permissions given to deny")

    allowed = set(normalize_permissions(user.custom_allowed)) - revoked
    denied = set(normalize_permissions(user.custom_denied)) | revoked
    _store(user, allowed, denied)
    await db.flush()

    log.info(f"Denied {sorted_tokens(revoked)} for user {user.id}")
    return await effective_permissions(db, cache, user)


async def allow_permissions(
    db: AsyncSession,
    cache: RoleCache,
    user: User,
    tokens: Iterable[str],
) -> Set[str]:
    """
    Lift denials for ``tokens`` and grant the ones the role does not already have.

    Tokens the role grants are not copied into ``custom_allowed``.
    """
    ensure_not_superadmin(user)
    granted = set(validated_tokens(tokens))
    if not granted:
        raise ValidationError("No permissions given to allow")

    role_permissions = await role_permissions_for(db, cache, user)
    allowed = set(normalize_permissions(user.custom_allowed)) | (granted - role_permissions)
    denied = set(normalize_permissions(user.custom_denied)) - granted
    _store(user, allowed, denied)
    await db.flush()

    log.info(f"Allowed {sorted_tokens(granted)} for user {user.id}")
    return await effective_permissions(db, cache, user)


async def set_custom_permissions(
    db: AsyncSession,
    cache: RoleCache,
    user: User,
    allowed: Optional[Iterable[str]] = None,
    denied: Optional[Iterable[str]] = None,
) -> Set[str]:
    """
    Replace either override list as given (legacy admin edit).

    A list left as None is kept. No minimal-diff rewrite happens here; the
    resolver tolerates overlap with the role.
    """
    ensure_not_superadmin(user)
    if allowed is None and denied is None:
        raise ValidationError("Provide allowed and/or denied permissions")

    new_allowed = validated_tokens(allowed) if allowed is not None else user.custom_allowed
    new_denied = validated_tokens(denied) if denied is not None else user.custom_denied
    _store(user, normalize_permissions(new_allowed), normalize_permissions(new_denied))
    await db.flush()

    log.info(f"Replaced custom permissions of user {user.id}")
    return await effective_permissions(db, cache, user)


async def clean_user_permissions(db: AsyncSession, user: User) -> CleanSummary:
    """Reset a user's overrides so the role alone decides."""
    ensure_not_superadmin(user)
    summary = CleanSummary(
        user_id=user.id,
        email=user.email,
        role=user.role,
        before={"allowed": len(user.custom_allowed or []), "denied": len(user.custom_denied or [])},
    )
    _store(user, [], [])
    await db.flush()

    log.info(f"Cleaned custom permissions of user {user.id} (before: {summary.before})")
    return summary


async def clean_all_user_permissions(db: AsyncSession) -> List[CleanSummary]:
    """
    Clean-slate every non-superadmin user that carries overrides.

    Returns:
        One summary per user that was changed
    """
    result = await db.execute(select(User).order_by(User.id))
    summaries: List[CleanSummary] = []

    for user in result.scalars().all():
        if is_unconditional_admin(user):
            continue
        if not user.custom_allowed and not user.custom_denied:
            continue
        summaries.append(await clean_user_permissions(db, user))

    log.info(f"Clean-slate pass reset overrides of {len(summaries)} users")
    return summaries


# ============================================================================
# Project access restrictions
# ============================================================================

def _project_ids(values: Iterable[Any] | None) -> List[str]:
    ids: List[str] = []
    for value in values or []:
        if not isinstance(value, str) or not value.strip():
            raise ValidationError("Project ids must be non-empty strings")
        if value.strip() not in ids:
            ids.append(value.strip())
    return ids


async def update_restrictions(
    db: AsyncSession,
    user: User,
    max_projects: Optional[int] = None,
    allowed_projects: Optional[Iterable[str]] = None,
    denied_projects: Optional[Iterable[str]] = None,
) -> User:
    """
    Update a user's project access restrictions.

    Arguments left as None keep their current value. A project cannot be
    both allowed and denied.
    """
    ensure_not_superadmin(user)
    if max_projects is not None and max_projects < 0:
        raise ValidationError("max_projects must be zero or greater")

    allowed = _project_ids(allowed_projects) if allowed_projects is not None else list(user.allowed_projects or [])
    denied = _project_ids(denied_projects) if denied_projects is not None else list(user.denied_projects or [])
    overlap = sorted(set(allowed) & set(denied))
    if overlap:
        raise ValidationError("Projects cannot be both allowed and denied", details={"projects": overlap})

    if max_projects is not None:
        user.max_projects = max_projects
    user.allowed_projects = allowed
    user.denied_projects = denied
    await db.flush()

    log.info(f"Updated project restrictions of user {user.id}")
    return user


# ============================================================================
# Project overrides
# ============================================================================

def validated_restrictions(restrictions: Optional[Dict[str, Any]]) -> Dict[str, bool]:
    """Keep only known restriction flags; unknown keys are rejected."""
    if not restrictions:
        return {}
    unknown = sorted(set(restrictions) - set(DEFAULT_RESTRICTIONS))
    if unknown:
        raise ValidationError("Unknown restriction flags", details={"unknown": unknown})
    return {key: bool(value) for key, value in restrictions.items()}


async def set_project_override(
    db: AsyncSession,
    user: User,
    project: Project,
    allowed: Optional[Iterable[str]] = None,
    denied: Optional[Iterable[str]] = None,
    restrictions: Optional[Dict[str, Any]] = None,
    assigned_by: Optional[User] = None,
    expires_at: Optional[datetime] = None,
    is_active: bool = True,
) -> UserProjectPermission:
    """
    Create or replace the (user, project) override row.

    Lists and flags not given are reset to empty, so the call is an upsert of
    the whole row.
    """
    ensure_not_superadmin(user)
    allowed_tokens = validated_tokens(allowed)
    denied_tokens = validated_tokens(denied)
    flags = validated_restrictions(restrictions)

    stmt = select(UserProjectPermission).where(
        UserProjectPermission.user_id == user.id,
        UserProjectPermission.project_id == project.id,
    )
    result = await db.execute(stmt)
    row = result.scalars().first()
    if row is None:
        row = UserProjectPermission(user_id=user.id, project_id=project.id)
        db.add(row)

    row.allowed = sorted_tokens(allowed_tokens)
    row.denied = sorted_tokens(denied_tokens)
    row.restrictions = flags
    row.assigned_by_id = assigned_by.id if assigned_by else None
    row.assigned_at = datetime.now(timezone.utc)
    row.expires_at = expires_at
    row.is_active = is_active
    await db.flush()

    log.info(f"Set project override for user {user.id} in project {project.id}")
    return row


async def remove_project_override(db: AsyncSession, user: User, project: Project) -> bool:
    """
    Delete the (user, project) override row.

    Returns:
        Whether a row existed
    """
    stmt = select(UserProjectPermission).where(
        UserProjectPermission.user_id == user.id,
        UserProjectPermission.project_id == project.id,
    )
    result = await db.execute(stmt)
    row = result.scalars().first()
    if row is None:
        return False

    await db.delete(row)
    await db.flush()
    log.info(f"Removed project override for user {user.id} in project {project.id}")
    return True


# ============================================================================
# Reconciliation
# ============================================================================

async def reconcile_user_overrides(db: AsyncSession, cache: RoleCache, user: User) -> bool:
    """
    Rewrite a user's overrides as the minimal diff of their current effective set.

    Drops allowances the role already grants and denials of tokens nobody
    grants. The effective set is unchanged. Superadmin users are skipped.

    Returns:
        Whether anything changed
    """
    if is_unconditional_admin(user):
        return False

    role_permissions = await role_permissions_for(db, cache, user)
    effective = combine_permissions(role_permissions, user.custom_allowed, user.custom_denied)
    allowed = sorted_tokens(effective - role_permissions)
    denied = sorted_tokens(role_permissions - effective)
    if allowed == list(user.custom_allowed or []) and denied == list(user.custom_denied or []):
        return False

    user.custom_allowed = allowed
    user.custom_denied = denied
    await db.flush()
    log.info(f"Reconciled overrides of user {user.id}: allowed={allowed} denied={denied}")
    return True
