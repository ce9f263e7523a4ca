"""
Script to run the boundary update for countries and/or maritimes
"""

import argparse
import asyncio
import sys
import os
import logging

# Add current directory to path to allow imports from core, models, etc.
sys.path.append(os.getcwd())

from boundaries.runner import run_update
from core.database import engine
from core.exceptions import ETLException
from core.logging import setup_logging
from models.base import BoundaryKind

setup_logging()
logger = logging.getLogger(__name__)

KIND_ARGS = {
    "countries": BoundaryKind.COUNTRY,
    "maritimes": BoundaryKind.MARITIME,
}


def kind_arg(value: str) -> str:
    if value not in KIND_ARGS:
        raise argparse.ArgumentTypeError(f"expected one of {sorted(KIND_ARGS)}, got {value!r}")
    return value


def parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Update country and maritime boundaries from Overpass")
    parser.add_argument(
        "kinds",
        nargs="*",
        type=kind_arg,
        help="Boundary kinds to update (default: both)"
    )
    parser.add_argument("--force-refresh", action="store_true", help="Ignore the snapshot and download everything")
    parser.add_argument("--download-only", action="store_true", help="Save converted GeoJSON without touching the database")
    parser.add_argument("--strict", action="store_true", help="Abort on the first failed boundary")
    parser.add_argument("--workers", type=int, default=None, help="Number of parallel workers")
    parser.add_argument("--target-table", choices=["countries", "countries_new"], default=None)
    return parser.parse_args(argv)


async def main(argv=None) -> int:
    args = parse_args(argv)
    kinds = [KIND_ARGS[k] for k in (args.kinds or ["countries", "maritimes"])]

    options = {
        "force_refresh": args.force_refresh or None,
        "download_only": args.download_only or None,
        "continue_on_error": False if args.strict else None,
        "max_workers": args.workers,
        "target_table": args.target_table,
    }

    try:
        results = await run_update(kinds, **options)
    except ETLException as e:
        logger.error(f"Boundary update failed: {e}")
        return 1
    finally:
        await engine.dispose()

    for result in results:
        logger.info(
            f"{result['kind']}: {result['status']} "
            f"(inserted={result['inserted']}, updated={result['updated']}, failed={result['failed']})"
        )
    return 0 if all(r["status"] != "failed" for r in results) else 1


if __name__ == "__main__":
    sys.exit(asyncio.run(main()))
