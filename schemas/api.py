"""
Pydantic schemas for API request/response models
"""

from pydantic import BaseModel, Field, validator
from typing import Optional, List, Dict, Any
from datetime import datetime
from models.base import BoundaryKind, RunStatus


# ============================================================================
# Health Check Schemas
# ============================================================================

class LastRunInfo(BaseModel):
    """Most recent run of one boundary kind"""
    kind: BoundaryKind
    run_id: str
    status: RunStatus
    started_at: datetime
    completed_at: Optional[datetime] = None
    boundaries_failed: int = 0

    class Config:
        use_enum_values = True


class HealthCheckResponse(BaseModel):
    """Health check response model"""
    timestamp: datetime = Field(default_factory=datetime.utcnow)
    database_connected: bool
    last_runs: List[LastRunInfo] = Field(default_factory=list)

    # Declared last so the validator sees the fields above
    status: str = Field("healthy", description="Overall system status: healthy, degraded, unhealthy")

    @validator("status", pre=True, always=True)
    def determine_status(cls, v, values):
        """Determine overall health status"""
        if not values.get("database_connected", False):
            return "unhealthy"

        runs = values.get("last_runs") or []
        statuses = [r.status for r in runs]

        if not statuses:
            return "healthy"  # No update has run yet
        if all(s == RunStatus.FAILED.value for s in statuses):
            return "unhealthy"
        if any(s in (RunStatus.FAILED.value, RunStatus.PARTIAL.value) for s in statuses):
            return "degraded"
        return "healthy"

    class Config:
        json_schema_extra = {
            "example": {
                "status": "healthy",
                "timestamp": "2024-01-15T10:30:00Z",
                "database_connected": True,
                "last_runs": [
                    {
                        "kind": "country",
                        "run_id": "550e8400-e29b-41d4-a716-446655440000",
                        "status": "success",
                        "started_at": "2024-01-01T03:00:00Z",
                        "completed_at": "2024-01-01T04:12:00Z",
                        "boundaries_failed": 0
                    }
                ]
            }
        }


# ============================================================================
# Country Schemas
# ============================================================================

class CountrySummary(BaseModel):
    """Country row without geometry"""
    country_id: int
    country_name: str
    country_name_es: Optional[str] = None
    country_name_en: Optional[str] = None
    is_maritime: bool
    updated: Optional[bool] = None
    update_failed: bool = False
    last_update_attempt: Optional[datetime] = None

    class Config:
        from_attributes = True


class CountryDetail(CountrySummary):
    """Country row with its merged geometry as GeoJSON"""
    area_m2: Optional[float] = None
    geometry: Optional[Dict[str, Any]] = None


class PaginationMetadata(BaseModel):
    """Pagination metadata"""
    total_items: int
    total_pages: int
    current_page: int
    page_size: int
    has_next: bool
    has_previous: bool


class CountryListResponse(BaseModel):
    """Paginated country list"""
    items: List[CountrySummary]
    pagination: PaginationMetadata
    filters_applied: Dict[str, Any] = Field(default_factory=dict)


# ============================================================================
# Run Schemas
# ============================================================================

class RunSummary(BaseModel):
    run_id: str
    kind: BoundaryKind
    status: RunStatus
    target_table: str
    started_at: datetime
    completed_at: Optional[datetime] = None
    duration_seconds: Optional[float] = None
    reconciliation: Optional[str] = None
    boundaries_discovered: int = 0
    boundaries_from_snapshot: int = 0
    boundaries_downloaded: int = 0
    boundaries_inserted: int = 0
    boundaries_updated: int = 0
    boundaries_skipped: int = 0
    boundaries_failed: int = 0
    error_message: Optional[str] = None

    @classmethod
    def from_orm(cls, run):
        """Custom from_orm to explicitly convert UUID to string"""
        return cls(
            run_id=str(run.run_id),
            kind=run.kind,
            status=run.status,
            target_table=run.target_table,
            started_at=run.started_at,
            completed_at=run.completed_at,
            duration_seconds=run.duration_seconds,
            reconciliation=run.reconciliation,
            boundaries_discovered=run.boundaries_discovered or 0,
            boundaries_from_snapshot=run.boundaries_from_snapshot or 0,
            boundaries_downloaded=run.boundaries_downloaded or 0,
            boundaries_inserted=run.boundaries_inserted or 0,
            boundaries_updated=run.boundaries_updated or 0,
            boundaries_skipped=run.boundaries_skipped or 0,
            boundaries_failed=run.boundaries_failed or 0,
            error_message=run.error_message,
        )

    class Config:
        use_enum_values = True


class RunListResponse(BaseModel):
    runs: List[RunSummary]


class FailureResponse(BaseModel):
    """One persisted failure ledger entry"""
    boundary_id: int
    kind: BoundaryKind
    stage: str
    reason: str
    error_type: Optional[str] = None
    hard: bool = False
    worker_id: Optional[int] = None
    elapsed_seconds: Optional[float] = None
    created_at: datetime

    class Config:
        from_attributes = True
        use_enum_values = True


class RunFailuresResponse(BaseModel):
    run_id: str
    failures: List[FailureResponse]


# ============================================================================
# Error Response Schema
# ============================================================================

class ErrorResponse(BaseModel):
    """Standard error response"""
    error: str
    detail: Optional[str] = None
    timestamp: datetime = Field(default_factory=datetime.utcnow)
