"""
Seed script to populate default permissions and system roles.

Run this script after database initialization to create:
- Default permission catalog
- Default system roles (Super Admin, System Administrator, ...)
- Initial role-permission assignments

Safe to run repeatedly; existing rows are left untouched.

Usage:
    python -m scripts.seed_permissions
"""
import asyncio

from app.core.database.engine import AsyncSessionLocal, init_db
from app.features.permissions.catalog import seed_catalog
from app.utils import get_logger


log = get_logger(__name__)


async def main():
    """Main seeding function."""
    log.info("Starting permission seeding...")

    await init_db()

    async with AsyncSessionLocal() as db:
        try:
            permissions_map, roles_map = await seed_catalog(db)
        except Exception as e:
            log.error(f"Error during seeding: {e}")
            await db.rollback()
            raise

    log.info("Seeding completed successfully!")
    log.info(f"Catalog: {len(permissions_map)} permissions, {len(roles_map)} system roles")


if __name__ == "__main__":
    asyncio.run(main())
