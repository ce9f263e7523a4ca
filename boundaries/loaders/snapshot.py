"""
Cached boundary snapshot: a gzipped GeoJSON export of the target table.

Runs reconcile the authoritative id list against it and restore the
boundaries it already holds instead of downloading them again.
"""

import asyncio
import gzip
import json
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

import httpx
import shapely
from shapely.errors import GEOSException
from shapely.geometry import shape
from pydantic import ValidationError
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from boundaries.loaders.upsert_writer import SNAPSHOT_SOURCE, UpsertWriter
from models.base import BoundaryKind
from schemas.boundary import ContainmentStatus, CountryRecord, UpsertOutcome
from core.exceptions import SnapshotError
import logging

logger = logging.getLogger(__name__)

SNAPSHOT_NAMES = {
    BoundaryKind.COUNTRY: "countries",
    BoundaryKind.MARITIME: "maritimes",
}

EXPORT_SQL = """
    SELECT country_id, country_name, country_name_es, country_name_en,
           ST_AsGeoJSON(geom) AS geometry
    FROM {table}
    WHERE is_maritime = :is_maritime AND geom IS NOT NULL
    ORDER BY country_id
"""


def read_snapshot(path: Path) -> List[Dict[str, Any]]:
    """Read the features of a `.geojson` or `.geojson.gz` file"""
    try:
        if path.suffix == ".gz":
            with gzip.open(path, "rt", encoding="utf-8") as f:
                document = json.load(f)
        else:
            with open(path, "r", encoding="utf-8") as f:
                document = json.load(f)
    except (OSError, EOFError, json.JSONDecodeError) as e:
        raise SnapshotError(
            "Snapshot file could not be read",
            context={"path": str(path)},
            original_exception=e
        )

    features = document.get("features") if isinstance(document, dict) else None
    if not isinstance(features, list):
        raise SnapshotError("Snapshot file has no feature list", context={"path": str(path)})
    return features


def feature_id(feature: Dict[str, Any]) -> Optional[int]:
    """`properties.country_id` as an int, None when missing or not numeric"""
    value = (feature.get("properties") or {}).get("country_id")
    if value is None:
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        logger.warning(f"Ignoring snapshot feature with invalid country_id {value!r}")
        return None


def snapshot_ids(features: Iterable[Dict[str, Any]]) -> List[int]:
    """Boundary ids held by the snapshot, from `properties.country_id`"""
    ids = []
    for feature in features:
        country_id = feature_id(feature)
        if country_id is not None:
            ids.append(country_id)
    return ids


def feature_to_record(feature: Dict[str, Any], is_maritime: bool) -> CountryRecord:
    properties = feature.get("properties") or {}
    try:
        geometry = shape(feature["geometry"])
    except (KeyError, TypeError, ValueError, AttributeError, GEOSException) as e:
        raise SnapshotError(
            "Snapshot feature has an unreadable geometry",
            context={"country_id": properties.get("country_id")},
            original_exception=e
        )

    ewkb = shapely.to_wkb(shapely.set_srid(geometry, 4326), include_srid=True)

    try:
        return CountryRecord(
            country_id=int(properties["country_id"]),
            country_name=properties.get("country_name") or properties.get("country_name_en") or str(properties["country_id"]),
            country_name_es=properties.get("country_name_es"),
            country_name_en=properties.get("country_name_en"),
            geometry_ewkb=ewkb,
            is_maritime=is_maritime,
            # Snapshot rows were containment-checked when they were first written
            containment=ContainmentStatus.SKIPPED,
            source=SNAPSHOT_SOURCE,
        )
    except (ValidationError, KeyError, TypeError, ValueError) as e:
        raise SnapshotError(
            "Snapshot feature has invalid attributes",
            context={"country_id": properties.get("country_id")},
            original_exception=e
        )


class SnapshotStore:
    """
    Resolve, read, restore and export boundary snapshots.

    Attributes:
        snapshot_dir: Directory holding countries/maritimes snapshots
        base_url: Remote directory to download a missing `.geojson.gz` from
    """

    def __init__(
        self,
        snapshot_dir: str,
        base_url: Optional[str] = None,
        http_client: Optional[httpx.AsyncClient] = None
    ):
        self.snapshot_dir = Path(snapshot_dir)
        self.base_url = base_url.rstrip("/") if base_url else None
        self.http = http_client
        self._features: Dict[BoundaryKind, List[Dict[str, Any]]] = {}

    def local_path(self, kind: BoundaryKind) -> Optional[Path]:
        name = SNAPSHOT_NAMES[kind]
        for candidate in (self.snapshot_dir / f"{name}.geojson", self.snapshot_dir / f"{name}.geojson.gz"):
            if candidate.is_file():
                return candidate
        return None

    async def resolve(self, kind: BoundaryKind) -> Optional[Path]:
        """
        Local file first; otherwise download the compressed artifact.

        Returns:
            Path to the snapshot, or None when no snapshot is configured

        Raises:
            SnapshotError: The download failed
        """
        path = self.local_path(kind)
        if path is not None:
            logger.info(f"Using local {kind.value} snapshot {path}")
            return path

        if not self.base_url or self.http is None:
            logger.info(f"No {kind.value} snapshot in {self.snapshot_dir} and no download location configured")
            return None

        name = f"{SNAPSHOT_NAMES[kind]}.geojson.gz"
        url = f"{self.base_url}/{name}"
        logger.info(f"Downloading {kind.value} snapshot from {url}")

        try:
            response = await self.http.get(url, timeout=300.0, follow_redirects=True)
            response.raise_for_status()
        except httpx.HTTPError as e:
            raise SnapshotError(
                "Snapshot download failed",
                context={"url": url},
                original_exception=e
            )

        self.snapshot_dir.mkdir(parents=True, exist_ok=True)
        path = self.snapshot_dir / name
        path.write_bytes(response.content)
        logger.info(f"Saved {kind.value} snapshot to {path} ({len(response.content)} bytes)")
        return path

    async def load(self, kind: BoundaryKind) -> Optional[List[Dict[str, Any]]]:
        """Features of the snapshot for `kind`, or None when there is none"""
        if kind in self._features:
            return self._features[kind]

        path = await self.resolve(kind)
        if path is None:
            return None

        features = await asyncio.to_thread(read_snapshot, path)
        logger.info(f"Loaded {len(features)} features from {kind.value} snapshot")
        self._features[kind] = features
        return features

    async def ids(self, kind: BoundaryKind) -> Optional[List[int]]:
        features = await self.load(kind)
        if features is None:
            return None
        return snapshot_ids(features)

    async def import_subset(
        self,
        session: AsyncSession,
        kind: BoundaryKind,
        boundary_ids: Iterable[int],
        writer: UpsertWriter
    ) -> Dict[str, int]:
        """
        Restore the given ids from the snapshot through the upsert writer.

        Commits once at the end.
        """
        wanted = set(boundary_ids)
        features = await self.load(kind) or []
        counts = {"inserted": 0, "updated": 0, "skipped": 0}

        for feature in features:
            country_id = feature_id(feature)
            if country_id is None or country_id not in wanted:
                continue

            record = feature_to_record(feature, is_maritime=(kind == BoundaryKind.MARITIME))
            outcome, _ = await writer.commit(session, record)
            counts[outcome.value] += 1
            wanted.discard(record.country_id)

        await session.commit()

        if wanted:
            logger.warning(f"{len(wanted)} {kind.value} ids were not found in the snapshot: {sorted(wanted)[:20]}")
        logger.info(
            f"Restored {counts[UpsertOutcome.INSERTED.value] + counts[UpsertOutcome.UPDATED.value]} "
            f"{kind.value} boundaries from snapshot"
        )
        return counts

    async def export(
        self,
        session: AsyncSession,
        kind: BoundaryKind,
        table_name: str,
        path: Optional[str] = None
    ) -> int:
        """Write one kind of the target table to a gzipped feature collection"""
        target = Path(path) if path else self.snapshot_dir / f"{SNAPSHOT_NAMES[kind]}.geojson.gz"

        result = await session.execute(
            text(EXPORT_SQL.format(table=table_name)),
            {"is_maritime": kind == BoundaryKind.MARITIME}
        )

        features = []
        for row in result:
            features.append({
                "type": "Feature",
                "properties": {
                    "country_id": row.country_id,
                    "country_name": row.country_name,
                    "country_name_es": row.country_name_es,
                    "country_name_en": row.country_name_en,
                },
                "geometry": json.loads(row.geometry),
            })

        if not features:
            raise SnapshotError(
                f"No {kind.value} boundaries to export",
                context={"table_name": table_name}
            )

        target.parent.mkdir(parents=True, exist_ok=True)
        await asyncio.to_thread(_write_gzip_json, target, {"type": "FeatureCollection", "features": features})
        logger.info(f"Exported {len(features)} {kind.value} boundaries to {target}")
        return len(features)


def _write_gzip_json(path: Path, document: Dict[str, Any]):
    with gzip.open(path, "wt", encoding="utf-8") as f:
        json.dump(document, f)
