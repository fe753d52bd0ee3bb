"""
Seed script to create the built-in roles and the superadmin user.

Existing roles are left untouched, so the script can be re-run safely.

Usage:
    python -m scripts.seed_roles
"""
import asyncio
from typing import List

from sqlalchemy.ext.asyncio import AsyncSession

from crm.core import config
from crm.core.database.engine import get_db, init_db
from crm.features.roles.defaults import DEFAULT_ROLES
from crm.features.roles.models import Role
from crm.features.roles.service import create_role, get_role_by_name
from crm.features.users.models import User
from crm.features.users.service import create_user, get_user_by_email
from crm.utils import get_logger


log = get_logger(__name__)


async def seed_roles(db: AsyncSession) -> List[Role]:
    """Create every missing built-in role."""
    created: List[Role] = []
    for name, role_config in DEFAULT_ROLES.items():
        if await get_role_by_name(db, name) is not None:
            log.info(f"Role {name!r} already exists, skipping")
            continue
        role = await create_role(
            db,
            name=name,
            permissions=role_config["permissions"],
            level=role_config["level"],
            description=role_config["description"],
        )
        created.append(role)
        log.info(f"Created role {name!r} (level {role.level})")
    return created


async def bootstrap_superadmin(db: AsyncSession) -> User:
    """Create the superadmin user from SUPERADMIN_EMAIL / SUPERADMIN_NAME if missing."""
    existing = await get_user_by_email(db, config.SUPERADMIN_EMAIL)
    if existing is not None:
        log.info(f"Superadmin {existing.email} already exists")
        return existing

    role = await get_role_by_name(db, config.SUPERADMIN_ROLE)
    if role is None:
        raise RuntimeError("Superadmin role missing; seed roles first")
    user = await create_user(db, email=config.SUPERADMIN_EMAIL, name=config.SUPERADMIN_NAME, role=role)
    log.info(f"Created superadmin {user.email}")
    return user


async def main():
    """Main function to seed roles and the superadmin."""
    log.info("Starting role seeding...")
    
    log.info("Initializing database tables...")
    await init_db()
    
    async for db in get_db():
        try:
            created = await seed_roles(db)
            await bootstrap_superadmin(db)
            await db.commit()
            
            log.info(f"Role seeding completed: {len(created)} role(s) created")
            for name, role_config in DEFAULT_ROLES.items():
                log.info(f"  - {name} (level {role_config['level']}): {role_config['description']}")
            
        except Exception as e:
            log.error(f"Error seeding roles: {e}", exc_info=True)
            await db.rollback()
            raise
        
        break  # Only use first session


if __name__ == "__main__":
    asyncio.run(main())
