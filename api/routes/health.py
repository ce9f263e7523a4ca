"""
Health check endpoint with database and last-run status
"""

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy import select, text
from api.dependencies import get_db
from schemas.api import HealthCheckResponse, LastRunInfo
from models.base import BoundaryKind
from models.boundary_run import BoundaryRun
from datetime import datetime
import logging

logger = logging.getLogger(__name__)
router = APIRouter(tags=["Health"])


@router.get("/health", response_model=HealthCheckResponse)
async def health_check(db: AsyncSession = Depends(get_db)):
    """
    Health check endpoint.

    Returns:
    - Database connectivity status
    - Most recent run per boundary kind
    """

    # Check database connectivity
    db_connected = False

    try:
        await db.execute(text("SELECT 1"))
        db_connected = True
    except (SQLAlchemyError, OSError) as e:
        logger.error(f"Database connection failed: {str(e)}")

    last_runs = []

    if db_connected:
        try:
            for kind in BoundaryKind:
                result = await db.execute(
                    select(BoundaryRun)
                    .where(BoundaryRun.kind == kind)
                    .order_by(BoundaryRun.started_at.desc())
                    .limit(1)
                )
                run = result.scalars().first()
                if run is None:
                    continue
                last_runs.append(LastRunInfo(
                    kind=run.kind,
                    run_id=str(run.run_id),
                    status=run.status,
                    started_at=run.started_at,
                    completed_at=run.completed_at,
                    boundaries_failed=run.boundaries_failed or 0
                ))
        except SQLAlchemyError as e:
            logger.error(f"Failed to fetch last runs: {str(e)}")

    return HealthCheckResponse(
        timestamp=datetime.utcnow(),
        database_connected=db_connected,
        last_runs=last_runs
    )
