"""
Hierarchy validation over the reporting graph.

Rank rule: a user's level is strictly greater (lower rank) than every
superior's level and strictly smaller than every subordinate's level.
Subordinates are found through the materialized ancestor table, never by
matching path strings. A link's ancestor rows hold every user reachable
upwards from its superior, through all of the superior's links, at their
shortest distance. Adding or removing a link rewrites the rows of every link
below it, so the table always matches the live graph.
"""
from typing import Dict, List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from crm.core import config
from crm.core.exceptions import ForbiddenError, RankConflictError, ValidationError
from crm.features.reporting.models import ReportingLink, ReportingLinkAncestor, TeamType
from crm.features.roles.models import Role
from crm.features.users.models import User
from crm.utils import get_logger


log = get_logger(__name__)


SUPERADMIN_OVERSIGHT_CONTEXT = "Superadmin oversight"


# ============================================================================
# Graph queries
# ============================================================================

async def find_superadmin(db: AsyncSession) -> Optional[User]:
    """The oldest active superadmin user, if one exists."""
    stmt = (
        select(User)
        .where(User.role == config.SUPERADMIN_ROLE, User.is_active == True)  # noqa: E712
        .order_by(User.created_at, User.id)
        .limit(1)
    )
    result = await db.execute(stmt)
    return result.scalars().first()


async def links_of(db: AsyncSession, user_id: str) -> List[ReportingLink]:
    """Reporting links owned by ``user_id`` (who they report to), oldest first."""
    stmt = (
        select(ReportingLink)
        .where(ReportingLink.user_id == user_id)
        .order_by(ReportingLink.created_at, ReportingLink.id)
    )
    result = await db.execute(stmt)
    return list(result.scalars().all())


async def descendant_links_of(db: AsyncSession, user_id: str) -> List[ReportingLink]:
    """Links that have ``user_id`` anywhere in their ancestor list."""
    stmt = (
        select(ReportingLink)
        .join(ReportingLinkAncestor, ReportingLinkAncestor.link_id == ReportingLink.id)
        .where(ReportingLinkAncestor.ancestor_id == user_id)
        .order_by(ReportingLink.created_at, ReportingLink.id)
    )
    result = await db.execute(stmt)
    return list(result.scalars().unique().all())


async def superiors_of(db: AsyncSession, user: User) -> List[User]:
    """Users this user directly reports to."""
    stmt = (
        select(User)
        .join(ReportingLink, ReportingLink.reports_to_id == User.id)
        .where(ReportingLink.user_id == user.id)
        .order_by(User.level, User.id)
    )
    result = await db.execute(stmt)
    return list(result.scalars().unique().all())


async def subordinates_of(db: AsyncSession, user: User) -> List[User]:
    """Users whose reporting chain contains this user at any depth."""
    subordinate_ids = (
        select(ReportingLink.user_id)
        .join(ReportingLinkAncestor, ReportingLinkAncestor.link_id == ReportingLink.id)
        .where(ReportingLinkAncestor.ancestor_id == user.id)
    )
    stmt = select(User).where(User.id.in_(subordinate_ids)).order_by(User.level, User.id)
    result = await db.execute(stmt)
    return list(result.scalars().all())


def _merge_depths(target: Dict[str, int], source: Dict[str, int], offset: int = 0) -> None:
    for ancestor_id, depth in source.items():
        if ancestor_id not in target or depth + offset < target[ancestor_id]:
            target[ancestor_id] = depth + offset


def _stored_depths(link: ReportingLink) -> Dict[str, int]:
    return {a.ancestor_id: a.depth for a in link.ancestors}


def _chain(superior_id: str, superior_ancestors: Dict[str, int]) -> Dict[str, int]:
    chain = {superior_id: 0}
    _merge_depths(chain, superior_ancestors, 1)
    return chain


async def ancestor_depths(db: AsyncSession, user_id: str) -> Dict[str, int]:
    """Every ancestor of the user across all of their links, with its distance (0 = direct superior)."""
    depths: Dict[str, int] = {}
    for link in await links_of(db, user_id):
        _merge_depths(depths, _stored_depths(link))
    return depths


async def all_ancestors(db: AsyncSession, user_id: str) -> set[str]:
    return set(await ancestor_depths(db, user_id))


# ============================================================================
# Validation
# ============================================================================

def validate_level(level: int) -> None:
    if not isinstance(level, int) or isinstance(level, bool):
        raise ValidationError("Level must be an integer")
    if not config.MIN_ROLE_LEVEL <= level <= config.MAX_ROLE_LEVEL:
        raise ValidationError(
            f"Level must be between {config.MIN_ROLE_LEVEL} and {config.MAX_ROLE_LEVEL}",
            details={"level": level},
        )


async def validate_level_change(
    db: AsyncSession,
    user: User,
    proposed_level: int,
    actor: Optional[User] = None,
) -> None:
    """
    Check that ``proposed_level`` keeps the user strictly between superiors and subordinates.

    Skipped entirely when the acting administrator is level 1.

    Raises:
        ValidationError: level out of range
        RankConflictError: a superior has ``level >= proposed_level`` or a
            subordinate has ``level <= proposed_level``
    """
    validate_level(proposed_level)
    if actor is not None and actor.level == 1:
        log.debug(f"Level change of user {user.id} to {proposed_level} not validated: actor {actor.id} is level 1")
        return

    superiors = await superiors_of(db, user)
    conflicting_superiors = [s for s in superiors if s.level >= proposed_level]
    if conflicting_superiors:
        raise RankConflictError(
            f"Level {proposed_level} would tie or outrank a superior",
            details={"superiors": [{"id": s.id, "level": s.level} for s in conflicting_superiors]},
        )

    subordinates = await subordinates_of(db, user)
    conflicting_subordinates = [d for d in subordinates if d.level <= proposed_level]
    if conflicting_subordinates:
        raise RankConflictError(
            f"Level {proposed_level} would no longer outrank a subordinate",
            details={"subordinates": [{"id": d.id, "level": d.level} for d in conflicting_subordinates]},
        )


# ============================================================================
# Graph mutation
# ============================================================================

async def _create_link(
    db: AsyncSession,
    user: User,
    superior: User,
    team_type: TeamType,
    project_id: Optional[str],
    context: str,
) -> ReportingLink:
    chain = _chain(superior.id, await ancestor_depths(db, superior.id))
    link = ReportingLink(
        user_id=user.id,
        reports_to_id=superior.id,
        team_type=team_type,
        project_id=project_id,
        context=context,
    )
    link.ancestors = [
        ReportingLinkAncestor(ancestor_id=ancestor_id, depth=depth)
        for ancestor_id, depth in chain.items()
    ]
    db.add(link)
    await db.flush()
    await rebuild_descendant_ancestors(db, user.id)
    return link


def _apply_chain(link: ReportingLink, chain: Dict[str, int]) -> bool:
    """Make the link's ancestor rows equal ``chain``; True when a row changed."""
    changed = False
    existing = {}
    for row in list(link.ancestors):
        if row.ancestor_id not in chain:
            link.ancestors.remove(row)
            changed = True
            continue
        existing[row.ancestor_id] = row
        if row.depth != chain[row.ancestor_id]:
            row.depth = chain[row.ancestor_id]
            changed = True
    for ancestor_id, depth in chain.items():
        if ancestor_id not in existing:
            link.ancestors.append(ReportingLinkAncestor(ancestor_id=ancestor_id, depth=depth))
            changed = True
    return changed


async def rebuild_descendant_ancestors(db: AsyncSession, user_id: str) -> int:
    """
    Recompute the ancestor rows of every link below ``user_id``.

    Called after one of the user's own links was added or removed. Links
    outside that subtree are already correct and are read as stored; links
    inside it are recomputed from their superior, top-down.

    Returns:
        Number of links whose rows changed
    """
    affected = {link.id: link for link in await descendant_links_of(db, user_id)}
    if not affected:
        return 0

    user_depths: Dict[str, Dict[str, int]] = {}
    link_chains: Dict[str, Dict[str, int]] = {}

    async def depths_of(uid: str) -> Dict[str, int]:
        if uid not in user_depths:
            depths: Dict[str, int] = {}
            for link in await links_of(db, uid):
                _merge_depths(depths, await chain_of(link) if link.id in affected else _stored_depths(link))
            user_depths[uid] = depths
        return user_depths[uid]

    async def chain_of(link: ReportingLink) -> Dict[str, int]:
        if link.id not in link_chains:
            link_chains[link.id] = _chain(link.reports_to_id, await depths_of(link.reports_to_id))
        return link_chains[link.id]

    changed = 0
    for link in affected.values():
        if _apply_chain(link, await chain_of(link)):
            changed += 1
    await db.flush()
    log.debug(f"Rebuilt ancestors below user {user_id}: {changed}/{len(affected)} links changed")
    return changed


async def add_reporting_link(
    db: AsyncSession,
    user: User,
    superior: User,
    team_type: TeamType = TeamType.GLOBAL,
    project_id: Optional[str] = None,
    context: str = "",
) -> ReportingLink:
    """
    Record that ``user`` reports to ``superior``.

    Raises:
        ValidationError: self-report, cycle, duplicate link or missing project id
        RankConflictError: the superior does not outrank the user
    """
    if user.id == superior.id:
        raise ValidationError("User cannot report to themselves")
    if team_type == TeamType.PROJECT and not project_id:
        raise ValidationError("Project id required for project team type")
    if superior.level >= user.level:
        raise RankConflictError(
            f"Superior level must be lower than {user.level}",
            details={"superior": superior.id, "superior_level": superior.level},
        )
    if user.id in await all_ancestors(db, superior.id):
        raise ValidationError("Cycle detected in hierarchy", details={"user": user.id, "superior": superior.id})

    for link in await links_of(db, user.id):
        if link.reports_to_id == superior.id and link.team_type == team_type and link.project_id == project_id:
            raise ValidationError("Reporting link already exists", details={"link": link.id})

    link = await _create_link(db, user, superior, team_type, project_id, context)
    log.info(f"User {user.id} now reports to {superior.id} ({team_type.value})")
    await ensure_superadmin_oversight(db, user)
    return link


async def remove_reporting_link(db: AsyncSession, link: ReportingLink, reason: str = "") -> None:
    """Delete one link together with its ancestor rows, then repair the links below it."""
    await db.delete(link)
    await db.flush()
    suffix = f": {reason}" if reason else ""
    log.info(f"Removed reporting link {link.user_id} -> {link.reports_to_id}{suffix}")
    await rebuild_descendant_ancestors(db, link.user_id)


async def ensure_superadmin_oversight(
    db: AsyncSession,
    user: User,
    superadmin: Optional[User] = None,
) -> Optional[ReportingLink]:
    """
    Make sure a user below level 1 reports to the superadmin.

    Returns:
        The existing or newly created oversight link, or None when not
        applicable (level 1 user, or no superadmin exists yet)
    """
    if user.level <= 1 or user.role == config.SUPERADMIN_ROLE:
        return None

    superadmin = superadmin or await find_superadmin(db)
    if superadmin is None or superadmin.id == user.id:
        log.debug(f"No superadmin available for oversight of user {user.id}")
        return None

    for link in await links_of(db, user.id):
        if link.reports_to_id == superadmin.id:
            return link

    link = await _create_link(db, user, superadmin, TeamType.SUPERADMIN, None, SUPERADMIN_OVERSIGHT_CONTEXT)
    log.info(f"Added superadmin oversight link for user {user.id}")
    return link


# ============================================================================
# Role assignment rules
# ============================================================================

def ensure_can_manage_level(actor: User, level: int, name: str = "") -> None:
    """Non level-1 actors may only touch roles strictly below their own level."""
    if actor.level == 1:
        return
    if level <= actor.level:
        label = f"role '{name}' (level {level})" if name else f"level {level}"
        raise ForbiddenError(
            f"You can only manage roles at level {actor.level + 1} or higher. Cannot manage {label}"
        )


def ensure_can_assign_role(actor: User, role: Role) -> None:
    ensure_can_manage_level(actor, role.level, role.name)


def ensure_can_manage_user(actor: User, target: User) -> None:
    """Actors manage only users they strictly outrank; level 1 manages everyone."""
    if actor.level == 1 or actor.role == config.SUPERADMIN_ROLE:
        return
    if target.role == config.SUPERADMIN_ROLE:
        raise ForbiddenError("Cannot manage superadmin users")
    if target.level <= actor.level:
        raise ForbiddenError(
            f"You can only manage users at level {actor.level + 1} or higher. "
            f"Cannot manage user '{target.name}' (level {target.level})"
        )


async def assignable_roles(db: AsyncSession, actor: User) -> List[Role]:
    """Roles the actor may assign, ordered by level then name."""
    stmt = select(Role).order_by(Role.level, Role.name)
    if actor.level != 1:
        stmt = stmt.where(Role.level > actor.level)
    result = await db.execute(stmt)
    return list(result.scalars().all())
