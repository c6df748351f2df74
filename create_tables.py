"""
Script to create all database tables.

This script creates all tables defined in the models.
Run this after starting PostgreSQL with Docker.
"""
import asyncio
import structlog
from relay.database import engine
from relay.logging_config import configure_logging
from relay.models import Base

logger = structlog.get_logger()


async def create_all_tables():
    """Create all tables in the database."""
    async with engine.begin() as conn:
        # relay.models registers every mapped class with Base
        await conn.run_sync(Base.metadata.create_all)
    logger.info("tables_created", tables=sorted(Base.metadata.tables))


async def drop_all_tables():
    """Drop all tables in the database (for testing)."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    logger.info("tables_dropped")


async def main():
    """Main entry point."""
    configure_logging()
    await create_all_tables()
    await engine.dispose()


if __name__ == "__main__":
    asyncio.run(main())
