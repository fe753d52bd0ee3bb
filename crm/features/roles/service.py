"""
Role store write paths.

Every write queues a role cache invalidation that applies on commit; edits
fan out to users through the cascade updater. The superadmin role is pinned
to level 1 and can neither be renamed nor deleted.
"""
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Tuple

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from crm.core import config
from crm.core.exceptions import ForbiddenOperationError, NotFoundError, ValidationError
from crm.features.permissions.cache import RoleCache
from crm.features.permissions.cascade import (
    CascadeReport,
    cascade_role_level,
    cascade_role_name,
    cascade_role_permissions,
    users_of_role,
)
from crm.features.permissions.overrides import validated_tokens
from crm.features.permissions.tokens import normalize_permissions, sorted_tokens
from crm.features.reporting.hierarchy import validate_level
from crm.features.roles.models import Role
from crm.features.users.models import User
from crm.utils import get_logger


log = get_logger(__name__)


@dataclass
class RoleUpdateResult:
    role: Role
    cascades: Dict[str, CascadeReport] = field(default_factory=dict)


def normalize_role_name(name: Optional[str]) -> str:
    value = (name or "").strip().lower()
    if not value:
        raise ValidationError("Role name is required")
    if len(value) > 50:
        raise ValidationError("Role name must be at most 50 characters")
    return value


def _check_level_for(name: str, level: int) -> None:
    validate_level(level)
    if name == config.SUPERADMIN_ROLE and level != 1:
        raise ForbiddenOperationError("The superadmin role must stay at level 1")
    if name != config.SUPERADMIN_ROLE and level == 1:
        raise ValidationError("Level 1 is reserved for the superadmin role")


# ============================================================================
# Reads
# ============================================================================

async def get_role(db: AsyncSession, role_id: str) -> Role:
    role = await db.get(Role, role_id)
    if role is None:
        raise NotFoundError("Role not found", details={"role_id": role_id})
    return role


async def get_role_by_name(db: AsyncSession, name: str) -> Optional[Role]:
    result = await db.execute(select(Role).where(Role.name == (name or "").strip().lower()))
    return result.scalars().first()


async def list_roles_with_counts(db: AsyncSession) -> List[Tuple[Role, int]]:
    """Every role with the number of users on it, highest authority first."""
    counts = (
        select(User.role_id, func.count(User.id).label("user_count"))
        .group_by(User.role_id)
        .subquery()
    )
    stmt = (
        select(Role, func.coalesce(counts.c.user_count, 0))
        .outerjoin(counts, counts.c.role_id == Role.id)
        .order_by(Role.level, Role.name)
    )
    result = await db.execute(stmt)
    return [(role, int(count)) for role, count in result.all()]


# ============================================================================
# Writes
# ============================================================================

async def create_role(
    db: AsyncSession,
    name: str,
    permissions: Iterable[str] | None = None,
    level: Optional[int] = None,
    description: Optional[str] = None,
    cache: Optional[RoleCache] = None,
) -> Role:
    """
    Create a role.

    Raises:
        ValidationError: bad name, level or tokens, or the name is taken
    """
    role_name = normalize_role_name(name)
    role_level = config.DEFAULT_ROLE_LEVEL if level is None else level
    _check_level_for(role_name, role_level)
    tokens = validated_tokens(permissions)

    if await get_role_by_name(db, role_name) is not None:
        raise ValidationError("Role already exists", details={"name": role_name})

    role = Role(
        name=role_name,
        level=role_level,
        description=description,
        permissions=sorted_tokens(tokens),
    )
    db.add(role)
    await db.flush()

    if cache is not None:
        cache.invalidate_on_commit(db, role_name)
    log.info(f"Created role {role_name!r} at level {role_level} with {len(tokens)} permissions")
    return role


async def update_role(
    db: AsyncSession,
    role: Role,
    name: Optional[str] = None,
    level: Optional[int] = None,
    permissions: Iterable[str] | None = None,
    description: Optional[str] = None,
    cache: Optional[RoleCache] = None,
) -> RoleUpdateResult:
    """
    Edit a role and cascade the change to its users.

    All input is validated before anything is written. Cascades run in the
    order permissions, level, name.
    """
    new_name = normalize_role_name(name) if name is not None else role.name
    is_superadmin = role.name == config.SUPERADMIN_ROLE

    if is_superadmin and new_name != role.name:
        raise ForbiddenOperationError("The superadmin role cannot be renamed")
    if is_superadmin and level is not None and level != role.level:
        raise ForbiddenOperationError("The superadmin role cannot change level")
    if new_name != role.name:
        if new_name == config.SUPERADMIN_ROLE:
            raise ValidationError("Role name 'superadmin' is reserved")
        if await get_role_by_name(db, new_name) is not None:
            raise ValidationError("Role already exists", details={"name": new_name})
    if level is not None:
        _check_level_for(new_name, level)
    tokens = validated_tokens(permissions) if permissions is not None else None

    result = RoleUpdateResult(role=role)

    if tokens is not None and set(tokens) != set(normalize_permissions(role.permissions)):
        result.cascades["permissions"] = await cascade_role_permissions(db, role, tokens, cache=cache)
    if level is not None and level != role.level:
        result.cascades["level"] = await cascade_role_level(db, role, level, cache=cache)
    if new_name != role.name:
        result.cascades["name"] = await cascade_role_name(db, role, new_name, cache=cache)
    if description is not None:
        role.description = description
        await db.flush()

    if cache is not None:
        cache.invalidate_on_commit(db, role.name)
    log.info(f"Updated role {role.name!r} ({', '.join(result.cascades) or 'no cascades'})")
    return result


async def delete_role(db: AsyncSession, role: Role, cache: Optional[RoleCache] = None) -> None:
    """
    Delete a role nobody uses.

    Raises:
        ForbiddenOperationError: the role is superadmin
        ValidationError: users still reference the role
    """
    if role.name == config.SUPERADMIN_ROLE or role.level == 1:
        raise ForbiddenOperationError("The superadmin role cannot be deleted")

    users = await users_of_role(db, role)
    if users:
        raise ValidationError(
            f"Cannot delete role: {len(users)} user(s) still assigned to it",
            details={"user_count": len(users)},
        )

    name = role.name
    await db.delete(role)
    await db.flush()

    if cache is not None:
        cache.invalidate_on_commit(db, name)
    log.info(f"Deleted role {name!r}")
