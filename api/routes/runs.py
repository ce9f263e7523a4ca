"""
Boundary update run history endpoints
"""

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select
from api.dependencies import get_db
from schemas.api import RunListResponse, RunSummary, RunFailuresResponse, FailureResponse
from models.base import BoundaryKind
from models.boundary_run import BoundaryRun, BoundaryFailure
from typing import Optional
import uuid
import logging

logger = logging.getLogger(__name__)
router = APIRouter(tags=["Runs"])


@router.get("/runs", response_model=RunListResponse)
async def list_runs(
    limit: int = Query(10, ge=1, le=100, description="Number of recent runs to return"),
    kind: Optional[BoundaryKind] = Query(None, description="Filter by boundary kind"),
    db: AsyncSession = Depends(get_db)
):
    """Most recent runs first"""
    query = select(BoundaryRun).order_by(BoundaryRun.started_at.desc()).limit(limit)
    if kind is not None:
        query = query.where(BoundaryRun.kind == kind)

    result = await db.execute(query)
    runs = result.scalars().all()
    return RunListResponse(runs=[RunSummary.from_orm(run) for run in runs])


@router.get("/runs/{run_id}/failures", response_model=RunFailuresResponse)
async def list_run_failures(run_id: uuid.UUID, db: AsyncSession = Depends(get_db)):
    """Persisted failure ledger of one run"""
    run = (await db.execute(
        select(BoundaryRun).where(BoundaryRun.run_id == run_id)
    )).scalars().first()
    if run is None:
        raise HTTPException(status_code=404, detail=f"Run {run_id} not found")

    result = await db.execute(
        select(BoundaryFailure)
        .where(BoundaryFailure.run_pk == run.id)
        .order_by(BoundaryFailure.created_at)
    )
    failures = [FailureResponse.model_validate(f) for f in result.scalars().all()]
    return RunFailuresResponse(run_id=str(run.run_id), failures=failures)
