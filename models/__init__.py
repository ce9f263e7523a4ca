"""
SQLAlchemy ORM models for database tables.

Models:
    base: Base declarative class and shared enums (BoundaryKind, RunStatus, BoundaryStage)
    country: Live and rebuild target tables with the merged boundary geometry
    staging: Scratch `import` table used by one boundary at a time
    boundary_run: Run tracking and the persisted failure ledger

Database Schema:
    Geometry columns use geoalchemy2 (PostGIS, SRID 4326); run metadata
    uses PostgreSQL JSONB.

Usage:
    from models.country import Country, TARGET_MODELS
    from models.boundary_run import BoundaryRun, BoundaryFailure
    from models.base import BoundaryKind, RunStatus
"""

from models.base import Base, BoundaryKind, RunStatus, BoundaryStage
from models.country import Country, CountryRebuild, TARGET_MODELS
from models.staging import ImportRow
from models.boundary_run import BoundaryRun, BoundaryFailure

__all__ = [
    "Base",
    "BoundaryKind",
    "RunStatus",
    "BoundaryStage",
    "Country",
    "CountryRebuild",
    "TARGET_MODELS",
    "ImportRow",
    "BoundaryRun",
    "BoundaryFailure",
]
