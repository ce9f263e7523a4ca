from sqlalchemy import Column, Integer, String, Boolean, DateTime, Index
from geoalchemy2 import Geometry
from models.base import Base

LIVE_TABLE = "countries"
REBUILD_TABLE = "countries_new"


class CountryColumns:
    """
    Columns shared by the live and the rebuild target tables.

    Lifecycle:
    - Created on the first successful upsert of a boundary
    - Updated by later successful runs (geometry only when the area policy allows)
    - Never deleted by the pipeline
    """

    country_id = Column(Integer, primary_key=True, autoincrement=False)  # OSM relation id

    # Localized names
    country_name = Column(String(100), nullable=False)
    country_name_es = Column(String(100), nullable=True)
    country_name_en = Column(String(100), nullable=True)

    # Merged polygonal geometry
    geom = Column(Geometry(geometry_type="GEOMETRY", srid=4326), nullable=False)

    # Update bookkeeping
    updated = Column(Boolean, nullable=True)
    last_update_attempt = Column(DateTime(timezone=True), nullable=True)
    update_failed = Column(Boolean, nullable=False, default=False)

    # Sticky: once sourced as maritime, never cleared by a country upsert
    is_maritime = Column(Boolean, nullable=False, default=False)


class Country(CountryColumns, Base):
    """Live table read by the note-geocoding service."""
    __tablename__ = LIVE_TABLE

    __table_args__ = (
        Index("idx_countries_is_maritime", "is_maritime"),
    )


class CountryRebuild(CountryColumns, Base):
    """Rebuild table swapped in place of the live one once complete."""
    __tablename__ = REBUILD_TABLE

    __table_args__ = (
        Index("idx_countries_new_is_maritime", "is_maritime"),
    )


TARGET_MODELS = {
    LIVE_TABLE: Country,
    REBUILD_TABLE: CountryRebuild,
}
