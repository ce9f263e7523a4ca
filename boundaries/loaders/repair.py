"""
Merge the staged polygon rows into one geometry.

Strategies run in a fixed order and the chain stops at the first one that
yields a non-empty polygonal result:

1. union       - ST_MakeValid each row, then ST_Union
2. unary_union - ST_Collect the valid rows, then ST_UnaryUnion
3. buffer      - buffer each valid row by epsilon degrees, then ST_Union

A loosened containment check (intersection instead of containment) is the
last acceptance step; it lives in the capital validator.
"""

from typing import List, NamedTuple, Optional

from sqlalchemy import text
from sqlalchemy.exc import InterfaceError, OperationalError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from schemas.boundary import RepairStrategyName
import logging

logger = logging.getLogger(__name__)

STRATEGY_ORDER = [
    RepairStrategyName.UNION,
    RepairStrategyName.UNARY_UNION,
    RepairStrategyName.BUFFER,
]

STRATEGY_EXPRESSIONS = {
    RepairStrategyName.UNION: "ST_Union(ST_MakeValid(geometry))",
    RepairStrategyName.UNARY_UNION: "ST_UnaryUnion(ST_Collect(ST_MakeValid(geometry)))",
    RepairStrategyName.BUFFER: "ST_Union(ST_Buffer(ST_MakeValid(geometry), :epsilon))",
}

MERGE_SQL_TEMPLATE = """
    WITH merged AS (
        SELECT ST_SetSRID(ST_Multi(ST_CollectionExtract({expression}, 3)), 4326) AS geom
        FROM import
        WHERE geometry IS NOT NULL
          AND ST_GeometryType(geometry) IN ('ST_Polygon', 'ST_MultiPolygon')
    )
    SELECT ST_AsEWKB(geom) AS ewkb,
           ST_Area(geom::geography) AS area_m2
    FROM merged
    WHERE geom IS NOT NULL AND NOT ST_IsEmpty(geom)
"""


class MergeResult(NamedTuple):
    strategy: RepairStrategyName
    ewkb: bytes
    area_m2: float


def strategy_chain(start: Optional[RepairStrategyName] = None) -> List[RepairStrategyName]:
    """Strategies to try, starting at `start` when an override pins one"""
    if start is None:
        return list(STRATEGY_ORDER)
    return STRATEGY_ORDER[STRATEGY_ORDER.index(start):]


class GeometryRepairEngine:
    """
    Attributes:
        epsilon: Buffer distance in degrees for the buffer strategy
    """

    def __init__(self, epsilon: float = 0.0001):
        self.epsilon = epsilon

    async def merge(
        self,
        session: AsyncSession,
        boundary_id: int,
        start_strategy: Optional[RepairStrategyName] = None
    ) -> Optional[MergeResult]:
        """
        Try each strategy in order inside its own savepoint.

        Returns:
            MergeResult of the first successful strategy, or None when every
            strategy failed or produced an empty geometry
        """
        chain = strategy_chain(start_strategy)
        if start_strategy is not None:
            logger.info(f"Repair of {boundary_id} starts at strategy {start_strategy.value}")

        for strategy in chain:
            statement = text(MERGE_SQL_TEMPLATE.format(expression=STRATEGY_EXPRESSIONS[strategy]))
            params = {"epsilon": self.epsilon} if strategy == RepairStrategyName.BUFFER else {}

            try:
                async with session.begin_nested():
                    row = (await session.execute(statement, params)).first()
            except (OperationalError, InterfaceError):
                raise
            except SQLAlchemyError as e:
                logger.warning(f"Strategy {strategy.value} failed for {boundary_id}: {e}")
                continue

            if row is None or row.ewkb is None:
                logger.warning(f"Strategy {strategy.value} produced an empty geometry for {boundary_id}")
                continue

            area = float(row.area_m2 or 0.0)
            logger.info(f"Merged {boundary_id} with strategy {strategy.value} ({area:,.0f} m2)")
            return MergeResult(strategy, bytes(row.ewkb), area)

        logger.error(f"No repair strategy produced a geometry for {boundary_id} (tried {[s.value for s in chain]})")
        return None
