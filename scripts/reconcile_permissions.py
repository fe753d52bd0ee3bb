"""
Rewrite every user's custom permissions as a minimal diff against their role.

Safe to run any number of times: effective permissions never change, and a
second run finds nothing to do.

Usage:
    python -m scripts.reconcile_permissions
"""
import asyncio

from sqlalchemy import select

from crm.core.database.engine import get_db, init_db
from crm.features.permissions.cache import RoleCache
from crm.features.permissions.overrides import reconcile_user_overrides
from crm.features.users.models import User
from crm.utils import get_logger


log = get_logger(__name__)


async def main():
    log.info("Starting permission reconciliation...")
    await init_db()
    cache = RoleCache()
    
    async for db in get_db():
        try:
            result = await db.execute(select(User).order_by(User.id))
            users = result.scalars().all()
            changed = 0
            for user in users:
                if await reconcile_user_overrides(db, cache, user):
                    changed += 1
            await db.commit()
            log.info(f"Reconciliation completed: {changed}/{len(users)} user(s) rewritten")
            
        except Exception as e:
            log.error(f"Error reconciling permissions: {e}", exc_info=True)
            await db.rollback()
            raise
        
        break  # Only use first session


if __name__ == "__main__":
    asyncio.run(main())
