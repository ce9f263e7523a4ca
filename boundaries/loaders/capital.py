"""
Anti-contamination check: the boundary's capital must lie inside its own
merged geometry.

A boundary whose polygon set was swapped for a neighbour's still merges
cleanly, so containment of a known interior point is the only signal.
"""

from typing import Any, Dict, NamedTuple, Optional

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from schemas.boundary import ContainmentStatus
import logging

logger = logging.getLogger(__name__)

CAPITAL_TAG_VALUES = ("yes", "2")

CONTAINMENT_SQL = text("""
    SELECT ST_Contains(g.geom, p.pt) AS contains,
           ST_Intersects(g.geom, p.pt) AS intersects
    FROM (SELECT ST_GeomFromEWKB(:geom) AS geom) AS g,
         (SELECT ST_SetSRID(ST_MakePoint(:lon, :lat), 4326) AS pt) AS p
""")


class CapitalPoint(NamedTuple):
    lon: float
    lat: float
    source: str  # admin_centre / capital / label
    node: Optional[str] = None


def _point_of(feature: Dict[str, Any]) -> Optional[tuple]:
    geometry = feature.get("geometry") or {}
    if geometry.get("type") != "Point":
        return None
    coordinates = geometry.get("coordinates") or []
    if len(coordinates) < 2:
        return None
    return float(coordinates[0]), float(coordinates[1])


def resolve_capital(collection: Dict[str, Any], boundary_id: int) -> Optional[CapitalPoint]:
    """
    Pick the reference point from the converted features.

    Priority: the relation's admin_centre member, then any node tagged as a
    capital, then the relation's label member.
    """
    admin_centre = capital = label = None

    for feature in collection.get("features") or []:
        point = _point_of(feature)
        if point is None:
            continue
        properties = feature.get("properties") or {}
        role = properties.get("@role")
        relation = properties.get("@relation")
        node = properties.get("@id")

        if role == "admin_centre" and relation == boundary_id and admin_centre is None:
            admin_centre = CapitalPoint(point[0], point[1], "admin_centre", node)
        elif str(properties.get("capital", "")).lower() in CAPITAL_TAG_VALUES and capital is None:
            capital = CapitalPoint(point[0], point[1], "capital", node)
        elif role == "label" and relation == boundary_id and label is None:
            label = CapitalPoint(point[0], point[1], "label", node)

    return admin_centre or capital or label


class CapitalValidator:
    """Run the containment check against the exact merged geometry"""

    async def validate(
        self,
        session: AsyncSession,
        boundary_id: int,
        merged_ewkb: bytes,
        collection: Dict[str, Any]
    ) -> ContainmentStatus:
        capital = resolve_capital(collection, boundary_id)
        if capital is None:
            logger.warning(f"No capital or label point for {boundary_id}, containment check skipped")
            return ContainmentStatus.SKIPPED

        row = (await session.execute(
            CONTAINMENT_SQL,
            {"geom": merged_ewkb, "lon": capital.lon, "lat": capital.lat}
        )).one()

        if row.contains:
            logger.info(f"Capital check passed for {boundary_id} ({capital.source} {capital.node})")
            return ContainmentStatus.PASSED

        if row.intersects:
            logger.warning(
                f"Capital of {boundary_id} only intersects the merged geometry "
                f"({capital.source} {capital.node} at {capital.lon},{capital.lat}), accepting with lower confidence"
            )
            return ContainmentStatus.PASSED_INTERSECTS

        logger.critical(
            f"Capital of {boundary_id} lies outside its merged geometry "
            f"({capital.source} {capital.node} at {capital.lon},{capital.lat})"
        )
        return ContainmentStatus.FAILED
