"""
Load a feature collection into the shared `import` scratch table.

The table holds exactly one boundary at a time: it is truncated before
every import and only touched inside the staging critical section.
"""

import asyncio
import json
from contextlib import asynccontextmanager
from typing import Any, Awaitable, Callable, Dict, List, NamedTuple, Optional

from sqlalchemy import text
from sqlalchemy.exc import InterfaceError, OperationalError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from schemas.boundary import BoundaryOverride, ColumnMode, TransferMode
from core.exceptions import ImportFailure, StagingLockError
import logging

logger = logging.getLogger(__name__)

TRUNCATE_SQL = text("TRUNCATE TABLE import RESTART IDENTITY")

BULK_GEOMETRY_SQL = text("""
    INSERT INTO import (geometry)
    SELECT ST_SetSRID(ST_GeomFromGeoJSON(feature->>'geometry'), 4326)
    FROM jsonb_array_elements(CAST(:features AS jsonb)) AS feature
""")

BULK_ALL_COLUMNS_SQL = text("""
    INSERT INTO import (geometry, name, name_es, name_en, admin_level, tags)
    SELECT ST_SetSRID(ST_GeomFromGeoJSON(feature->>'geometry'), 4326),
           feature->'properties'->>'name',
           feature->'properties'->>'name:es',
           feature->'properties'->>'name:en',
           feature->'properties'->>'admin_level',
           feature->'properties'
    FROM jsonb_array_elements(CAST(:features AS jsonb)) AS feature
""")

ROW_GEOMETRY_SQL = text("""
    INSERT INTO import (geometry)
    VALUES (ST_SetSRID(ST_GeomFromGeoJSON(CAST(:geometry AS text)), 4326))
""")

ROW_ALL_COLUMNS_SQL = text("""
    INSERT INTO import (geometry, name, name_es, name_en, admin_level, tags)
    VALUES (
        ST_SetSRID(ST_GeomFromGeoJSON(CAST(:geometry AS text)), 4326),
        :name, :name_es, :name_en, :admin_level,
        CAST(:tags AS jsonb)
    )
""")

COUNT_SQL = text("""
    SELECT COUNT(*) AS row_count,
           COUNT(*) FILTER (
               WHERE ST_GeometryType(geometry) IN ('ST_Polygon', 'ST_MultiPolygon')
           ) AS polygon_row_count
    FROM import
""")

MISSING_FIELD_MARKERS = ("not found", "does not exist", "undefinedcolumn")
ROW_TOO_LARGE_MARKERS = ("too big", "too large", "exceeds", "out of memory")


class ImportCounts(NamedTuple):
    row_count: int
    polygon_row_count: int


def classify_import_error(error: Exception) -> Optional[str]:
    """Map a database error to the fallback it calls for, if any"""
    message = str(getattr(error, "orig", None) or error).lower()
    if any(marker in message for marker in MISSING_FIELD_MARKERS):
        return "missing_field"
    if any(marker in message for marker in ROW_TOO_LARGE_MARKERS):
        return "row_too_large"
    return None


def strip_tag_families(properties: Dict[str, Any], families: List[str]) -> Dict[str, Any]:
    """Drop `family` and every `family:*` key"""
    if not families:
        return properties
    return {
        key: value for key, value in properties.items()
        if not any(key == family or key.startswith(f"{family}:") for family in families)
    }


class StagingLock:
    """
    Mutual exclusion around import -> merge -> validate -> commit.

    Workers of this process queue on an asyncio lock. The transaction then
    takes a PostgreSQL advisory lock (acquire-or-fail) so a second process
    cannot use the scratch table at the same time; it is released by the
    commit or rollback that ends the critical section.
    """

    def __init__(
        self,
        key: int,
        attempts: int = 3,
        delay: float = 2.0,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep
    ):
        self.key = key
        self.attempts = attempts
        self.delay = delay
        self._lock = asyncio.Lock()
        self._sleep = sleep

    @asynccontextmanager
    async def hold(self, session: AsyncSession, boundary_id: int):
        async with self._lock:
            for attempt in range(1, self.attempts + 1):
                result = await session.execute(
                    text("SELECT pg_try_advisory_xact_lock(:key)"),
                    {"key": self.key}
                )
                if result.scalar():
                    break
                logger.warning(
                    f"Staging table busy in another process (attempt {attempt}/{self.attempts}) "
                    f"for {boundary_id}"
                )
                if attempt < self.attempts:
                    await self._sleep(self.delay)
            else:
                raise StagingLockError(
                    "Could not acquire the staging table lock",
                    context={"lock_key": self.key, "attempts": self.attempts},
                    boundary_id=boundary_id
                )

            logger.debug(f"Staging lock acquired for {boundary_id}")
            yield


class StagingImporter:
    """
    Import features into the scratch table with per-boundary overrides.

    Defaults to geometry-only columns and a single bulk statement. A
    "field not found" error retries with all columns, a "row too large"
    error retries row by row; each fallback is used at most once.
    """

    async def import_features(
        self,
        session: AsyncSession,
        boundary_id: int,
        collection: Dict[str, Any],
        override: Optional[BoundaryOverride] = None
    ) -> ImportCounts:
        override = override or BoundaryOverride()
        column_mode = override.column_mode or ColumnMode.GEOMETRY_ONLY
        transfer_mode = override.transfer_mode or TransferMode.BULK

        features = []
        for feature in collection.get("features") or []:
            features.append({
                "geometry": feature.get("geometry"),
                "properties": strip_tag_families(feature.get("properties") or {}, override.strip_tags),
            })

        if override.strip_tags:
            logger.info(f"Stripped tag families {override.strip_tags} from {boundary_id}")

        while True:
            # Residue from the previous boundary must never reach this one
            await session.execute(TRUNCATE_SQL)

            try:
                async with session.begin_nested():
                    await self._insert(session, features, column_mode, transfer_mode)
                break

            except (OperationalError, InterfaceError):
                raise

            except SQLAlchemyError as e:
                fallback = classify_import_error(e)

                if fallback == "missing_field" and column_mode != ColumnMode.ALL_COLUMNS:
                    logger.warning(f"Import of {boundary_id} hit a missing field, retrying with all columns")
                    column_mode = ColumnMode.ALL_COLUMNS
                    continue

                if fallback == "row_too_large" and transfer_mode != TransferMode.ROW_BY_ROW:
                    logger.warning(f"Import of {boundary_id} hit an oversized row, retrying row by row")
                    transfer_mode = TransferMode.ROW_BY_ROW
                    continue

                raise ImportFailure(
                    "Staging import failed",
                    context={
                        "column_mode": column_mode.value,
                        "transfer_mode": transfer_mode.value,
                        "features": len(features)
                    },
                    original_exception=e,
                    boundary_id=boundary_id
                )

        row = (await session.execute(COUNT_SQL)).one()
        counts = ImportCounts(int(row.row_count), int(row.polygon_row_count))

        if counts.row_count == 0 or counts.polygon_row_count == 0:
            raise ImportFailure(
                "Staging import produced no usable rows",
                context={
                    "row_count": counts.row_count,
                    "polygon_row_count": counts.polygon_row_count,
                    "column_mode": column_mode.value,
                    "transfer_mode": transfer_mode.value
                },
                boundary_id=boundary_id
            )

        logger.info(
            f"Imported {boundary_id}: {counts.row_count} rows, {counts.polygon_row_count} polygonal "
            f"({column_mode.value}, {transfer_mode.value})"
        )
        return counts

    async def _insert(
        self,
        session: AsyncSession,
        features: List[Dict[str, Any]],
        column_mode: ColumnMode,
        transfer_mode: TransferMode
    ):
        all_columns = column_mode == ColumnMode.ALL_COLUMNS

        if transfer_mode == TransferMode.BULK:
            statement = BULK_ALL_COLUMNS_SQL if all_columns else BULK_GEOMETRY_SQL
            await session.execute(statement, {"features": json.dumps(features)})
            return

        for feature in features:
            params = {"geometry": json.dumps(feature["geometry"]) if feature["geometry"] else None}
            if all_columns:
                properties = feature["properties"]
                params.update({
                    "name": properties.get("name"),
                    "name_es": properties.get("name:es"),
                    "name_en": properties.get("name:en"),
                    "admin_level": properties.get("admin_level"),
                    "tags": json.dumps(properties),
                })
                await session.execute(ROW_ALL_COLUMNS_SQL, params)
            else:
                await session.execute(ROW_GEOMETRY_SQL, params)
