"""
User creation on a role.
"""
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from crm.core.exceptions import ValidationError
from crm.features.reporting.hierarchy import ensure_superadmin_oversight
from crm.features.roles.models import Role
from crm.features.users.models import User
from crm.utils import get_logger


log = get_logger(__name__)


async def get_user_by_email(db: AsyncSession, email: str) -> Optional[User]:
    result = await db.execute(select(User).where(User.email == email.strip().lower()))
    return result.scalars().first()


async def create_user(
    db: AsyncSession,
    email: str,
    name: str,
    role: Role,
    mobile: Optional[str] = None,
    company_name: Optional[str] = None,
) -> User:
    """
    Create a user on ``role`` with empty overrides.

    The user's denormalized role fields are copied from the role, and a
    superadmin oversight link is added for anyone below level 1.

    Raises:
        ValidationError: the email is already registered
    """
    normalized_email = email.strip().lower()
    if await get_user_by_email(db, normalized_email) is not None:
        raise ValidationError("Email already registered", details={"email": normalized_email})

    user = User(
        email=normalized_email,
        name=name.strip(),
        mobile=mobile,
        company_name=company_name,
        role=role.name,
        role_id=role.id,
        level=role.level,
        custom_allowed=[],
        custom_denied=[],
        allowed_projects=[],
        denied_projects=[],
    )
    db.add(user)
    await db.flush()

    await ensure_superadmin_oversight(db, user)
    log.info(f"Created user {user.id} on role {role.name!r}")
    return user
