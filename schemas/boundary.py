"""
Pydantic schemas for values flowing through the boundary pipeline
"""

from pydantic import BaseModel, Field, validator
from typing import Optional, List, Dict, Any
from datetime import datetime
import enum
from models.base import BoundaryKind, BoundaryStage

NAME_MAX_LENGTH = 100
NO_ENGLISH_NAME = "No English name"


# ============================================================================
# Enums
# ============================================================================

class ColumnMode(str, enum.Enum):
    """Which feature properties the staging import keeps"""
    GEOMETRY_ONLY = "geometry_only"
    ALL_COLUMNS = "all_columns"


class TransferMode(str, enum.Enum):
    """How features travel into the staging table"""
    BULK = "bulk"
    ROW_BY_ROW = "row_by_row"


class RepairStrategyName(str, enum.Enum):
    """Merge strategies, in the order the repair chain tries them"""
    UNION = "union"
    UNARY_UNION = "unary_union"
    BUFFER = "buffer"


class ContainmentStatus(str, enum.Enum):
    PASSED = "passed"
    PASSED_INTERSECTS = "passed_intersects"  # lower confidence
    SKIPPED = "skipped"
    FAILED = "failed"


class UpsertOutcome(str, enum.Enum):
    INSERTED = "inserted"
    UPDATED = "updated"
    SKIPPED = "skipped"


# ============================================================================
# Overrides
# ============================================================================

class BoundaryOverride(BaseModel):
    """
    Per-boundary handling for known pathological inputs.

    Every field is optional; unset fields keep the pipeline defaults.
    """
    column_mode: Optional[ColumnMode] = None
    transfer_mode: Optional[TransferMode] = None
    start_strategy: Optional[RepairStrategyName] = None
    strip_tags: List[str] = Field(default_factory=list)
    note: Optional[str] = None

    @validator("strip_tags", pre=True)
    def clean_strip_tags(cls, v):
        """Accept a single prefix or a list of prefixes"""
        if v is None:
            return []
        if isinstance(v, str):
            v = [v]
        return [str(t).strip() for t in v if str(t).strip()]


class OverrideTable(BaseModel):
    """Declarative override table loaded once at startup"""
    boundaries: Dict[int, BoundaryOverride] = Field(default_factory=dict)
    extra_country_ids: List[int] = Field(default_factory=list)

    def for_boundary(self, boundary_id: int) -> BoundaryOverride:
        return self.boundaries.get(boundary_id) or BoundaryOverride()


# ============================================================================
# Country Record
# ============================================================================

class CountryRecord(BaseModel):
    """
    A validated boundary ready for the Upsert Writer.

    The writer refuses records whose containment status is unset.
    """
    country_id: int = Field(..., gt=0)
    country_name: str = Field(..., min_length=1)
    country_name_es: Optional[str] = None
    country_name_en: Optional[str] = None

    geometry_ewkb: bytes
    area_m2: Optional[float] = Field(None, ge=0)

    is_maritime: bool = False
    containment: Optional[ContainmentStatus] = None
    repair_strategy: Optional[str] = None
    source: str = "overpass"

    @validator("country_name", "country_name_es", "country_name_en")
    def trim_name(cls, v):
        """Names are stored in VARCHAR(100) columns"""
        if v is None:
            return v
        v = v.strip()
        return v[:NAME_MAX_LENGTH] if v else None

    @validator("country_name")
    def default_country_name(cls, v, values):
        """A blank primary name falls back to the boundary id"""
        if v:
            return v
        if values.get("country_id") is None:
            raise ValueError("country_name is blank and there is no country_id to fall back to")
        return str(values["country_id"])

    @validator("country_name_es", always=True)
    def default_spanish_name(cls, v, values):
        return v or values.get("country_name")

    @validator("country_name_en", always=True)
    def default_english_name(cls, v):
        return v or NO_ENGLISH_NAME

    @staticmethod
    def names_from_tags(tags: Dict[str, Any]) -> Dict[str, Optional[str]]:
        """
        Pick localized names from OSM tags.

        The primary name is the first present of name, name:es, name:en.
        """
        def tag(key):
            value = tags.get(key)
            if isinstance(value, str):
                value = value.strip()
            return value or None

        return {
            "country_name": tag("name") or tag("name:es") or tag("name:en"),
            "country_name_es": tag("name:es"),
            "country_name_en": tag("name:en"),
        }


# ============================================================================
# Run Bookkeeping
# ============================================================================

class FailureRecord(BaseModel):
    """One failure ledger entry"""
    boundary_id: int
    kind: BoundaryKind
    stage: BoundaryStage
    reason: str
    error_type: Optional[str] = None
    hard: bool = False
    worker_id: Optional[int] = None
    elapsed_seconds: Optional[float] = None
    details: Dict[str, Any] = Field(default_factory=dict)
    recorded_at: datetime = Field(default_factory=datetime.utcnow)


class BoundaryOutcome(BaseModel):
    """Result of running one boundary through the pipeline"""
    boundary_id: int
    kind: BoundaryKind
    stage: BoundaryStage = BoundaryStage.PENDING
    outcome: Optional[UpsertOutcome] = None
    geometry_replaced: bool = False
    repair_strategy: Optional[str] = None
    containment: Optional[ContainmentStatus] = None
    geojson_path: Optional[str] = None
    elapsed_seconds: float = 0.0


class JobStatus(BaseModel):
    """Per-worker outcome, consumed by the orchestrator after join"""
    worker_id: int
    success: bool
    log_path: Optional[str] = None
    boundary_ids: List[int] = Field(default_factory=list)
    outcomes: List[BoundaryOutcome] = Field(default_factory=list)
    failures: List[FailureRecord] = Field(default_factory=list)
    error: Optional[str] = None

    @property
    def upserted(self) -> int:
        return sum(1 for o in self.outcomes if o.stage == BoundaryStage.UPSERTED)
