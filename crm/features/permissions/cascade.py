"""
Role mutation propagation.

When a role's permissions, level or name change, every user referencing the
role is brought back in line. Users are processed one at a time, each inside
its own SAVEPOINT: a failing user is logged and reported, the rest of the
batch still goes through. Re-running a cascade with the same input leaves the
same end state.

``reassign_role`` is the only place that moves a single user to another role;
it writes ``role``, ``role_id`` and ``level`` together.
"""
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy import or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from crm.core import config
from crm.core.exceptions import ForbiddenOperationError, ValidationError
from crm.features.permissions.cache import RoleCache
from crm.features.permissions.overrides import validated_tokens
from crm.features.permissions.resolver import combine_permissions
from crm.features.permissions.tokens import normalize_permissions, sorted_tokens
from crm.features.reporting.hierarchy import (
    descendant_links_of,
    ensure_can_assign_role,
    ensure_superadmin_oversight,
    find_superadmin,
    links_of,
    remove_reporting_link,
    validate_level,
    validate_level_change,
)
from crm.features.roles.models import Role
from crm.features.users.models import User
from crm.utils import get_logger


log = get_logger(__name__)


@dataclass
class CascadeReport:
    """Outcome of one cascade run."""
    role_id: str
    affected: int = 0
    updated: List[str] = field(default_factory=list)
    failed: Dict[str, str] = field(default_factory=dict)
    removed_links: List[Dict[str, Any]] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.failed


async def users_of_role(db: AsyncSession, role: Role) -> List[User]:
    """Users referencing ``role`` by id, or by name for rows without a role id."""
    stmt = (
        select(User)
        .where(or_(User.role_id == role.id, (User.role_id.is_(None)) & (User.role == role.name)))
        .order_by(User.id)
    )
    result = await db.execute(stmt)
    return list(result.scalars().all())


# ============================================================================
# Permission cascade
# ============================================================================

async def cascade_role_permissions(
    db: AsyncSession,
    role: Role,
    new_permissions: Iterable[str],
    cache: Optional[RoleCache] = None,
) -> CascadeReport:
    """
    Replace the role's permissions while preserving each user's effective set.

    Each user's effective set ``E`` is captured against the role's *current*
    permissions, then the overrides become ``allowed = E \\ R'`` and
    ``denied = R' \\ E``.
    """
    new_set = set(validated_tokens(new_permissions))
    old_set = set(normalize_permissions(role.permissions))
    users = await users_of_role(db, role)

    snapshots = {
        user.id: combine_permissions(old_set, user.custom_allowed, user.custom_denied)
        for user in users
    }

    role.permissions = sorted_tokens(new_set)
    await db.flush()
    if cache is not None:
        cache.invalidate_on_commit(db, role.name)

    report = CascadeReport(role_id=role.id, affected=len(users))
    for user in users:
        user_id = user.id
        current = snapshots[user_id]
        try:
            async with db.begin_nested():
                user.custom_allowed = sorted_tokens(current - new_set)
                user.custom_denied = sorted_tokens(new_set - current)
            report.updated.append(user_id)
        except Exception as e:
            log.error(f"Permission cascade failed for user {user_id} on role {role.name!r}: {e}")
            report.failed[user_id] = str(e)

    log.info(
        f"Permission cascade for role {role.name!r}: "
        f"{len(report.updated)}/{report.affected} users updated, {len(report.failed)} failed"
    )
    return report


# ============================================================================
# Level cascade
# ============================================================================

async def _reconcile_hierarchy(
    db: AsyncSession,
    user: User,
    new_level: int,
    superadmin: Optional[User],
    report: CascadeReport,
) -> None:
    for link in await links_of(db, user.id):
        superior = await db.get(User, link.reports_to_id)
        if superior is not None and superior.level >= new_level:
            log.warning(
                f"Removing link {user.id} -> {superior.id}: superior level {superior.level} "
                f"no longer outranks level {new_level}"
            )
            report.removed_links.append(
                {"user_id": user.id, "reports_to_id": superior.id, "reason": "superior_rank"}
            )
            await remove_reporting_link(db, link, reason="superior rank conflict")

    # A removal rewrites the ancestor rows below it; re-read the subtree each time
    while True:
        conflict = None
        for link in await descendant_links_of(db, user.id):
            subordinate = await db.get(User, link.user_id)
            if subordinate is not None and subordinate.level <= new_level:
                conflict = link, subordinate
                break
        if conflict is None:
            break
        link, subordinate = conflict
        log.warning(
            f"Removing link {subordinate.id} -> {link.reports_to_id}: subordinate level "
            f"{subordinate.level} is not below level {new_level} of {user.id}"
        )
        report.removed_links.append(
            {"user_id": subordinate.id, "reports_to_id": link.reports_to_id, "reason": "subordinate_rank"}
        )
        await remove_reporting_link(db, link, reason="subordinate rank conflict")

    if new_level > 1:
        await ensure_superadmin_oversight(db, user, superadmin)


async def cascade_role_level(
    db: AsyncSession,
    role: Role,
    new_level: int,
    cache: Optional[RoleCache] = None,
) -> CascadeReport:
    """
    Move a role to ``new_level`` and repair the reporting graph.

    Every user's denormalized level is written first, so the reconciliation
    pass compares against the final levels of all users on the role.
    Conflicting links are removed (and logged) instead of blocking the change.
    """
    validate_level(new_level)
    users = await users_of_role(db, role)

    role.level = new_level
    await db.flush()
    if cache is not None:
        cache.invalidate_on_commit(db, role.name)

    report = CascadeReport(role_id=role.id, affected=len(users))
    pending: List[User] = []
    for user in users:
        user_id = user.id
        try:
            async with db.begin_nested():
                user.level = new_level
            pending.append(user)
        except Exception as e:
            log.error(f"Level cascade failed for user {user_id} on role {role.name!r}: {e}")
            report.failed[user_id] = str(e)

    superadmin = await find_superadmin(db)
    for user in pending:
        user_id = user.id
        try:
            async with db.begin_nested():
                await _reconcile_hierarchy(db, user, new_level, superadmin, report)
            report.updated.append(user_id)
        except Exception as e:
            log.error(f"Hierarchy reconciliation failed for user {user_id} on role {role.name!r}: {e}")
            report.failed[user_id] = str(e)

    log.info(
        f"Level cascade for role {role.name!r} to {new_level}: {len(report.updated)}/{report.affected} "
        f"users updated, {len(report.removed_links)} links removed, {len(report.failed)} failed"
    )
    return report


# ============================================================================
# Name cascade
# ============================================================================

async def cascade_role_name(
    db: AsyncSession,
    role: Role,
    new_name: str,
    cache: Optional[RoleCache] = None,
) -> CascadeReport:
    """Rename a role and keep every user's denormalized ``role`` in sync."""
    name = (new_name or "").strip().lower()
    if not name:
        raise ValidationError("Role name is required")

    old_name = role.name
    users = await users_of_role(db, role)

    role.name = name
    await db.flush()
    if cache is not None:
        cache.invalidate_on_commit(db, old_name)
        cache.invalidate_on_commit(db, name)

    report = CascadeReport(role_id=role.id, affected=len(users))
    for user in users:
        user_id = user.id
        try:
            async with db.begin_nested():
                user.role = name
                user.role_id = role.id
            report.updated.append(user_id)
        except Exception as e:
            log.error(f"Rename cascade failed for user {user_id} on role {old_name!r}: {e}")
            report.failed[user_id] = str(e)

    log.info(f"Renamed role {old_name!r} to {name!r}; {len(report.updated)} users updated")
    return report


# ============================================================================
# Single-user role assignment
# ============================================================================

async def reassign_role(
    db: AsyncSession,
    user: User,
    role: Role,
    actor: Optional[User] = None,
) -> User:
    """
    Move ``user`` onto ``role``.

    Sets ``role``, ``role_id`` and ``level`` together, clears custom
    overrides (they were a diff against the old role) and makes sure the
    superadmin oversight link exists.

    Raises:
        ForbiddenError: the actor may not assign this role
        ForbiddenOperationError: the user is the superadmin
        RankConflictError: the new level conflicts with the reporting graph
    """
    if actor is not None:
        ensure_can_assign_role(actor, role)
    if user.role == config.SUPERADMIN_ROLE and role.name != config.SUPERADMIN_ROLE:
        raise ForbiddenOperationError("Cannot change the role of a superadmin user")

    if role.level != user.level:
        await validate_level_change(db, user, role.level, actor)

    previous = user.role
    user.role = role.name
    user.role_id = role.id
    user.level = role.level
    user.custom_allowed = []
    user.custom_denied = []
    await db.flush()

    await ensure_superadmin_oversight(db, user)
    log.info(f"User {user.id} reassigned from role {previous!r} to {role.name!r} (level {role.level})")
    return user
