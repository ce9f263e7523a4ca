"""
Promote countries_new to countries after a rebuild run
"""

import asyncio
import sys
import os
import logging

# Add current directory to path to allow imports from core, models, etc.
sys.path.append(os.getcwd())

from boundaries.loaders.upsert_writer import swap_rebuild_table
from core.database import async_session_maker, engine
from core.exceptions import UpsertError
from core.logging import setup_logging

setup_logging()
logger = logging.getLogger(__name__)


async def swap() -> int:
    try:
        async with async_session_maker() as session:
            await swap_rebuild_table(session)
    except UpsertError as e:
        logger.error(f"Table swap failed: {e}")
        return 1
    finally:
        await engine.dispose()
    return 0


if __name__ == "__main__":
    sys.exit(asyncio.run(swap()))
