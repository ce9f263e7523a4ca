"""
Write validated boundaries into the target table with upsert logic.

Ensures:
- A geometry never shrinks below the retention ratio of the stored one
- Brand new rows only above the minimum-area floor
- `is_maritime` is sticky once set
- Nothing is written without a containment decision
"""

from typing import List, NamedTuple, Optional, Tuple

from sqlalchemy import func, or_, select, text, update, cast
from sqlalchemy.dialects.postgresql import insert
from sqlalchemy.exc import InterfaceError, OperationalError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from geoalchemy2 import Geography

from models.country import LIVE_TABLE, REBUILD_TABLE, TARGET_MODELS
from schemas.boundary import ContainmentStatus, CountryRecord, UpsertOutcome
from core.database import table_exists
from core.exceptions import UpsertError
import logging

logger = logging.getLogger(__name__)

SNAPSHOT_SOURCE = "snapshot"


class GeometryDecision(NamedTuple):
    outcome: UpsertOutcome
    replace_geometry: bool
    reason: str


def decide_geometry(
    new_area: Optional[float],
    existing_area: Optional[float],
    exists: bool,
    min_area: float = 1000.0,
    retention_ratio: float = 0.5,
    source: str = "overpass"
) -> GeometryDecision:
    """
    Area policy for one record.

    Args:
        new_area: Geography area of the merged geometry in m2
        existing_area: Stored area, None when the row or its geometry is missing
        exists: Whether a row with this id is already stored
    """
    new_area = new_area or 0.0

    if source == SNAPSHOT_SOURCE:
        # Snapshot geometries are the trusted backup; restore them as-is
        if exists:
            return GeometryDecision(UpsertOutcome.UPDATED, True, "restored from snapshot")
        return GeometryDecision(UpsertOutcome.INSERTED, True, "restored from snapshot")

    if not exists:
        if new_area > min_area:
            return GeometryDecision(UpsertOutcome.INSERTED, True, "new boundary")
        return GeometryDecision(
            UpsertOutcome.SKIPPED, False,
            f"area {new_area:,.0f} m2 below minimum {min_area:,.0f} m2"
        )

    if existing_area is None:
        return GeometryDecision(UpsertOutcome.UPDATED, True, "no stored area")

    if new_area > retention_ratio * existing_area:
        return GeometryDecision(UpsertOutcome.UPDATED, True, "area within retention ratio")

    return GeometryDecision(
        UpsertOutcome.UPDATED, False,
        f"new area {new_area:,.0f} m2 is not above {retention_ratio} x stored {existing_area:,.0f} m2, "
        f"keeping stored geometry"
    )


def build_upsert_statement(model, record: CountryRecord, replace_geometry: bool):
    """
    INSERT ... ON CONFLICT (country_id) DO UPDATE.

    Names are always refreshed; the geometry only when `replace_geometry`.
    """
    values = {
        "country_id": record.country_id,
        "country_name": record.country_name,
        "country_name_es": record.country_name_es,
        "country_name_en": record.country_name_en,
        "geom": func.ST_SetSRID(func.ST_GeomFromEWKB(record.geometry_ewkb), 4326),
        "is_maritime": record.is_maritime,
        "updated": True,
        "update_failed": False,
        "last_update_attempt": func.now(),
    }

    stmt = insert(model).values(**values)

    set_ = {
        "country_name": stmt.excluded.country_name,
        "country_name_es": stmt.excluded.country_name_es,
        "country_name_en": stmt.excluded.country_name_en,
        "is_maritime": or_(model.is_maritime, stmt.excluded.is_maritime),
        "updated": True,
        "update_failed": False,
        "last_update_attempt": func.now(),
    }
    if replace_geometry:
        set_["geom"] = stmt.excluded.geom

    return stmt.on_conflict_do_update(index_elements=["country_id"], set_=set_)


class UpsertWriter:
    """
    Commit CountryRecords to the configured target table.

    The caller owns the transaction; this writer never commits.
    """

    def __init__(
        self,
        table_name: str = LIVE_TABLE,
        min_area: float = 1000.0,
        retention_ratio: float = 0.5
    ):
        if table_name not in TARGET_MODELS:
            raise ValueError(f"Unknown target table {table_name}")
        self.table_name = table_name
        self.model = TARGET_MODELS[table_name]
        self.min_area = min_area
        self.retention_ratio = retention_ratio

    async def stored_area(self, session: AsyncSession, country_id: int) -> Tuple[bool, Optional[float]]:
        """(row exists, geography area of the stored geometry or None)"""
        result = await session.execute(
            select(func.ST_Area(cast(self.model.geom, Geography)))
            .where(self.model.country_id == country_id)
        )
        row = result.first()
        if row is None:
            return False, None
        return True, (float(row[0]) if row[0] is not None else None)

    async def commit(self, session: AsyncSession, record: CountryRecord) -> Tuple[UpsertOutcome, bool]:
        """
        Upsert one record.

        Returns:
            (outcome, geometry_replaced)

        Raises:
            UpsertError: Missing or failed containment, or the statement failed
        """
        if record.containment is None or record.containment == ContainmentStatus.FAILED:
            raise UpsertError(
                "Refusing to write a boundary without a passing containment check",
                context={
                    "table_name": self.table_name,
                    "containment": record.containment.value if record.containment else None
                },
                boundary_id=record.country_id
            )

        try:
            exists, existing_area = await self.stored_area(session, record.country_id)
            decision = decide_geometry(
                record.area_m2,
                existing_area,
                exists,
                min_area=self.min_area,
                retention_ratio=self.retention_ratio,
                source=record.source
            )

            if decision.outcome == UpsertOutcome.SKIPPED:
                logger.warning(f"Skipping {record.country_id}: {decision.reason}")
                return decision.outcome, False

            await session.execute(build_upsert_statement(self.model, record, decision.replace_geometry))

        except (OperationalError, InterfaceError):
            raise
        except SQLAlchemyError as e:
            raise UpsertError(
                "Upsert into target table failed",
                context={"table_name": self.table_name, "operation": "INSERT ON CONFLICT"},
                original_exception=e,
                boundary_id=record.country_id
            )

        if decision.replace_geometry:
            logger.info(f"{decision.outcome.value.capitalize()} {record.country_id} ({record.country_name}): {decision.reason}")
        else:
            logger.warning(f"Refreshed names only for {record.country_id} ({record.country_name}): {decision.reason}")
        return decision.outcome, decision.replace_geometry

    async def mark_failed(self, session: AsyncSession, country_id: int):
        """Flag an existing row after a failed update attempt"""
        await session.execute(
            update(self.model)
            .where(self.model.country_id == country_id)
            .values(update_failed=True, last_update_attempt=func.now())
        )

    async def reset_updated(self, session: AsyncSession, is_maritime: bool) -> int:
        """
        Clear `updated` on every row of one kind before a run writes.

        Every successful upsert sets it again, so whatever is still false
        afterwards was not refreshed by the run.
        """
        result = await session.execute(
            update(self.model)
            .where(self.model.is_maritime == is_maritime)
            .values(updated=False)
        )
        return result.rowcount or 0

    async def flag_untouched(self, session: AsyncSession, is_maritime: bool) -> List[int]:
        """
        Flag the rows of one kind that the run did not refresh.

        Returns:
            Ids newly flagged as update_failed
        """
        result = await session.execute(
            update(self.model)
            .where(self.model.is_maritime == is_maritime)
            .where(self.model.updated.is_(False))
            .values(update_failed=True, last_update_attempt=func.now())
            .returning(self.model.country_id)
        )
        ids = sorted(row.country_id for row in result)
        if ids:
            logger.warning(f"{len(ids)} rows of {self.table_name} were not refreshed: {ids[:20]}")
        return ids


async def maintain_table(session: AsyncSession, table_name: str):
    """Refresh planner statistics and rebuild the spatial index after a load"""
    logger.info(f"Analyzing {table_name} and rebuilding its spatial index")
    await session.execute(text(f"ANALYZE {table_name}"))
    spatial_index = f"idx_{table_name}_geom"
    if await table_exists(session, spatial_index):
        await session.execute(text(f"REINDEX INDEX {spatial_index}"))
    else:
        logger.warning(f"Spatial index {spatial_index} not found, skipping reindex")


def _index_names(table: str) -> list:
    """Index names owned by a target table (primary key, spatial, maritime flag)"""
    return [f"{table}_pkey", f"idx_{table}_geom", f"idx_{table}_is_maritime"]


async def _rename_table(session: AsyncSession, old: str, new: str):
    await session.execute(text(f"ALTER TABLE {old} RENAME TO {new}"))
    # Index names are schema-wide; carry them along so the next rebuild can reuse its names
    for old_index, new_index in zip(_index_names(old), _index_names(new)):
        await session.execute(text(f"ALTER INDEX IF EXISTS {old_index} RENAME TO {new_index}"))


async def swap_rebuild_table(session: AsyncSession):
    """
    Promote the rebuild table to live.

    The previous live table is kept as countries_old until the next swap.
    """
    backup_table = f"{LIVE_TABLE}_old"

    if not await table_exists(session, REBUILD_TABLE):
        raise UpsertError(
            f"Rebuild table {REBUILD_TABLE} does not exist",
            context={"table_name": REBUILD_TABLE, "operation": "SWAP"}
        )

    count = (await session.execute(text(f"SELECT COUNT(*) FROM {REBUILD_TABLE}"))).scalar()
    if not count:
        raise UpsertError(
            f"Rebuild table {REBUILD_TABLE} is empty, refusing to swap",
            context={"table_name": REBUILD_TABLE, "operation": "SWAP"}
        )

    logger.info(f"Swapping {REBUILD_TABLE} ({count} rows) into {LIVE_TABLE}")
    await session.execute(text(f"DROP TABLE IF EXISTS {backup_table}"))
    if await table_exists(session, LIVE_TABLE):
        await _rename_table(session, LIVE_TABLE, backup_table)
    await _rename_table(session, REBUILD_TABLE, LIVE_TABLE)
    await session.execute(text(
        f"CREATE INDEX IF NOT EXISTS idx_{LIVE_TABLE}_geom ON {LIVE_TABLE} USING GIST (geom)"
    ))
    await maintain_table(session, LIVE_TABLE)
    await session.commit()
    logger.info(f"Table swap complete, previous table kept as {backup_table}")
