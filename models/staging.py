from sqlalchemy import Column, Integer, String
from sqlalchemy.dialects.postgresql import JSONB
from geoalchemy2 import Geometry
from models.base import Base

STAGING_TABLE = "import"


class ImportRow(Base):
    """
    Scratch table holding the features of exactly one boundary.

    Owned by whichever worker holds the staging lock and truncated before
    every import. In geometry-only mode only `geometry` is filled.
    """
    __tablename__ = STAGING_TABLE

    ogc_fid = Column(Integer, primary_key=True, autoincrement=True)
    geometry = Column(Geometry(geometry_type="GEOMETRY", srid=4326), nullable=True)

    # Filled in all-columns mode
    name = Column(String, nullable=True)
    name_es = Column(String, nullable=True)
    name_en = Column(String, nullable=True)
    admin_level = Column(String(10), nullable=True)
    tags = Column(JSONB, nullable=True)
