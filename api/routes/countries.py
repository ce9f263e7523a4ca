"""
Country boundary retrieval endpoints
"""

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, func, cast
from geoalchemy2 import Geography
from api.dependencies import get_db
from schemas.api import CountryListResponse, CountrySummary, CountryDetail, PaginationMetadata
from models.country import Country
from typing import Optional
import json
import math
import time
import uuid
import logging

logger = logging.getLogger(__name__)
router = APIRouter(tags=["Countries"])

SUMMARY_COLUMNS = (
    Country.country_id,
    Country.country_name,
    Country.country_name_es,
    Country.country_name_en,
    Country.is_maritime,
    Country.updated,
    Country.update_failed,
    Country.last_update_attempt,
)


@router.get("/countries", response_model=CountryListResponse)
async def list_countries(
    request: Request,
    page: int = Query(1, ge=1, description="Page number"),
    page_size: int = Query(50, ge=1, le=500, description="Items per page"),
    is_maritime: Optional[bool] = Query(None, description="Filter maritime or land boundaries"),
    update_failed: Optional[bool] = Query(None, description="Filter by last update outcome"),
    search: Optional[str] = Query(None, description="Search in the localized names"),
    db: AsyncSession = Depends(get_db)
):
    """
    Paginated list of stored boundaries, without geometry.
    """
    start_time = time.time()
    request_id = getattr(request.state, "request_id", f"req_{uuid.uuid4().hex[:12]}")

    logger.info(
        f"[{request_id}] GET /countries - page={page}, page_size={page_size}, "
        f"is_maritime={is_maritime}, search={search}"
    )

    filters = []
    if is_maritime is not None:
        filters.append(Country.is_maritime.is_(is_maritime))
    if update_failed is not None:
        filters.append(Country.update_failed.is_(update_failed))
    if search:
        filters.append(
            Country.country_name.ilike(f"%{search}%")
            | Country.country_name_es.ilike(f"%{search}%")
            | Country.country_name_en.ilike(f"%{search}%")
        )

    count_query = select(func.count()).select_from(Country)
    query = select(*SUMMARY_COLUMNS)
    if filters:
        count_query = count_query.where(*filters)
        query = query.where(*filters)

    total_items = (await db.execute(count_query)).scalar()
    total_pages = math.ceil(total_items / page_size) if total_items > 0 else 0

    query = query.order_by(Country.country_id).offset((page - 1) * page_size).limit(page_size)
    rows = (await db.execute(query)).all()

    items = [CountrySummary(**row._mapping) for row in rows]

    api_latency_ms = (time.time() - start_time) * 1000
    logger.info(f"[{request_id}] Returned {len(items)} countries ({api_latency_ms:.2f}ms)")

    return CountryListResponse(
        items=items,
        pagination=PaginationMetadata(
            current_page=page,
            page_size=page_size,
            total_items=total_items,
            total_pages=total_pages,
            has_next=page < total_pages,
            has_previous=page > 1
        ),
        filters_applied={k: v for k, v in {
            "is_maritime": is_maritime,
            "update_failed": update_failed,
            "search": search
        }.items() if v is not None}
    )


@router.get("/countries/{country_id}", response_model=CountryDetail)
async def get_country(country_id: int, db: AsyncSession = Depends(get_db)):
    """One boundary with its geometry as GeoJSON"""
    result = await db.execute(
        select(
            *SUMMARY_COLUMNS,
            func.ST_AsGeoJSON(Country.geom).label("geometry"),
            func.ST_Area(cast(Country.geom, Geography)).label("area_m2"),
        ).where(Country.country_id == country_id)
    )
    row = result.first()
    if row is None:
        raise HTTPException(status_code=404, detail=f"Country {country_id} not found")

    data = dict(row._mapping)
    data["geometry"] = json.loads(data["geometry"]) if data["geometry"] else None
    return CountryDetail(**data)
