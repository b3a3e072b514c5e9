"""
Seed script to populate default modules, permissions and system roles.

Run this script after database initialization to create:
- Default modules (user_management, hr, inventory, pos, finance)
- The user_management permission grid
- System roles (super_admin, user_admin, viewer) with their grants

It then gives super_admin to the earliest principal if nobody holds it.
The application does the same at startup; this script is for seeding a
database without starting the server.

Usage:
    python -m scripts.seed_permissions
"""
import asyncio

from app.core.database.engine import get_db, init_db
from app.features.permissions.bootstrap import DEFAULT_ROLES, ensure_initial_admin, seed_defaults
from app.utils import get_logger


log = get_logger(__name__)


async def main():
    """Main function to seed modules, permissions and roles."""
    log.info("Starting permission seeding...")

    # Initialize database tables first
    log.info("Initializing database tables...")
    await init_db()

    # Get database session
    async for db in get_db():
        await seed_defaults(db)
        elevated = await ensure_initial_admin(db)

        log.info("Permission seeding completed successfully!")
        log.info("System roles:")
        for name, _display, description, module, _priority, _grants in DEFAULT_ROLES:
            log.info("  - %s (%s): %s", name, module or "global", description)
        if elevated:
            log.info("Assigned super_admin to principal %s", elevated)

        break  # Only use first session


if __name__ == "__main__":
    asyncio.run(main())
