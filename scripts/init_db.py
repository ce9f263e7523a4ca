import asyncio
import logging
import sys
import os

# Add current directory to path to allow imports from core, models, etc.
sys.path.append(os.getcwd())

from sqlalchemy import text
from sqlalchemy.ext.asyncio import create_async_engine
from core.config import settings
from core.logging import setup_logging
from models.base import Base
# Import all models to ensure they are registered
from models.country import Country, CountryRebuild
from models.staging import ImportRow
from models.boundary_run import BoundaryRun, BoundaryFailure

setup_logging()
logger = logging.getLogger(__name__)


async def init_database():
    logger.info("Connecting to database...")
    engine = create_async_engine(settings.DATABASE_URL, echo=False)

    async with engine.begin() as conn:
        logger.info("Enabling PostGIS...")
        await conn.execute(text("CREATE EXTENSION IF NOT EXISTS postgis"))

        logger.info("Creating tables...")
        # Create all tables defined in models
        await conn.run_sync(Base.metadata.create_all)
        logger.info("Tables created successfully.")

    await engine.dispose()


if __name__ == "__main__":
    asyncio.run(init_database())
