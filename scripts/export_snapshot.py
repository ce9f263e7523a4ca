"""
Export the target table to the countries/maritimes snapshot files
"""

import argparse
import asyncio
import sys
import os
import logging

# Add current directory to path to allow imports from core, models, etc.
sys.path.append(os.getcwd())

from boundaries.loaders.snapshot import SnapshotStore
from core.config import settings
from core.database import async_session_maker, engine
from core.exceptions import ETLException
from core.logging import setup_logging
from models.base import BoundaryKind

setup_logging()
logger = logging.getLogger(__name__)


async def export_snapshots(table_name: str, output_dir: str) -> int:
    store = SnapshotStore(output_dir)
    try:
        async with async_session_maker() as session:
            for kind in (BoundaryKind.COUNTRY, BoundaryKind.MARITIME):
                await store.export(session, kind, table_name)
    except ETLException as e:
        logger.error(f"Snapshot export failed: {e}")
        return 1
    finally:
        await engine.dispose()
    return 0


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Write countries.geojson.gz and maritimes.geojson.gz")
    parser.add_argument("--table", default=settings.TARGET_TABLE)
    parser.add_argument("--output-dir", default=settings.SNAPSHOT_DIR)
    args = parser.parse_args()
    sys.exit(asyncio.run(export_snapshots(args.table, args.output_dir)))
