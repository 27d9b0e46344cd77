"""
Script to create all database tables.

This script creates all tables defined in the models.
Run this after starting PostgreSQL with Docker.
"""
import asyncio
import sys

from ezsign.config import settings
from ezsign.database import create_engine
from ezsign.models.base import Base
# Import all models to register them with Base
from ezsign.models import dead_letter, document, reminder, webhook  # noqa: F401


async def create_all_tables(engine):
    """Create all tables in the database."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    print("All tables created successfully!")


async def drop_all_tables(engine):
    """Drop all tables in the database (for testing)."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    print("All tables dropped!")


async def main():
    """Main entry point. Pass --drop to drop everything first."""
    engine = create_engine(settings.DATABASE_URL)
    try:
        if "--drop" in sys.argv[1:]:
            await drop_all_tables(engine)
        print("Creating database tables...")
        await create_all_tables(engine)
    finally:
        await engine.dispose()
    print("Done!")


if __name__ == "__main__":
    asyncio.run(main())
