"""
Unit tests for the snapshot store
"""

import gzip
import json
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest
import shapely

from boundaries.loaders.snapshot import (
    SnapshotStore,
    feature_to_record,
    read_snapshot,
    snapshot_ids,
)
from core.exceptions import SnapshotError
from models.base import BoundaryKind
from schemas.boundary import ContainmentStatus, UpsertOutcome
from tests.helpers import make_mock_session, make_result

SQUARE = {"type": "Polygon", "coordinates": [[[0, 0], [0, 1], [1, 1], [1, 0], [0, 0]]]}


def snapshot_feature(country_id, name="Testland"):
    return {
        "type": "Feature",
        "properties": {"country_id": country_id, "country_name": name, "country_name_es": name},
        "geometry": SQUARE,
    }


def write_snapshot(path, features, compress=True):
    document = {"type": "FeatureCollection", "features": features}
    if compress:
        with gzip.open(path, "wt", encoding="utf-8") as f:
            json.dump(document, f)
    else:
        path.write_text(json.dumps(document), encoding="utf-8")


class TestReading:

    def test_read_gzip(self, tmp_path):
        path = tmp_path / "countries.geojson.gz"
        write_snapshot(path, [snapshot_feature(1), snapshot_feature(2)])

        assert len(read_snapshot(path)) == 2

    def test_read_plain(self, tmp_path):
        path = tmp_path / "countries.geojson"
        write_snapshot(path, [snapshot_feature(1)], compress=False)

        assert snapshot_ids(read_snapshot(path)) == [1]

    def test_corrupt_file(self, tmp_path):
        path = tmp_path / "countries.geojson.gz"
        path.write_bytes(b"not gzip at all")

        with pytest.raises(SnapshotError):
            read_snapshot(path)

    def test_missing_feature_list(self, tmp_path):
        path = tmp_path / "countries.geojson"
        path.write_text('{"type": "FeatureCollection"}', encoding="utf-8")

        with pytest.raises(SnapshotError):
            read_snapshot(path)

    def test_snapshot_ids_skip_invalid(self):
        features = [snapshot_feature(1), snapshot_feature("abc"), {"properties": {}}, snapshot_feature("7")]

        assert snapshot_ids(features) == [1, 7]

    def test_feature_to_record(self):
        record = feature_to_record(snapshot_feature(5), is_maritime=True)

        assert record.country_id == 5
        assert record.is_maritime is True
        assert record.containment == ContainmentStatus.SKIPPED
        assert record.source == "snapshot"
        geometry = shapely.from_wkb(record.geometry_ewkb)
        assert shapely.get_srid(geometry) == 4326
        assert geometry.area == pytest.approx(1.0)

    def test_feature_without_geometry(self):
        feature = snapshot_feature(5)
        del feature["geometry"]

        with pytest.raises(SnapshotError):
            feature_to_record(feature, is_maritime=False)


    def test_invalid_attributes_raise_snapshot_error(self):
        with pytest.raises(SnapshotError) as exc_info:
            feature_to_record(snapshot_feature(0), is_maritime=False)

        assert exc_info.value.context["country_id"] == 0

    def test_non_numeric_id_raises_snapshot_error(self):
        with pytest.raises(SnapshotError):
            feature_to_record(snapshot_feature("abc"), is_maritime=False)


class TestSnapshotStore:
    """Test resolution, restore and export"""

    @pytest.mark.asyncio
    async def test_local_file_preferred(self, tmp_path):
        write_snapshot(tmp_path / "maritimes.geojson.gz", [snapshot_feature(9)])
        http = MagicMock()
        store = SnapshotStore(str(tmp_path), "https://data.example/data", http)

        assert await store.ids(BoundaryKind.MARITIME) == [9]
        http.get.assert_not_called()

    @pytest.mark.asyncio
    async def test_not_configured(self, tmp_path):
        store = SnapshotStore(str(tmp_path))

        assert await store.resolve(BoundaryKind.COUNTRY) is None
        assert await store.ids(BoundaryKind.COUNTRY) is None

    @pytest.mark.asyncio
    async def test_downloaded_when_missing(self, tmp_path):
        payload = gzip.compress(json.dumps({"type": "FeatureCollection", "features": [snapshot_feature(3)]}).encode())
        requested = []

        def handler(request):
            requested.append(str(request.url))
            return httpx.Response(200, content=payload)

        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as http:
            store = SnapshotStore(str(tmp_path / "data"), "https://data.example/data/", http)
            ids = await store.ids(BoundaryKind.COUNTRY)

        assert ids == [3]
        assert requested == ["https://data.example/data/countries.geojson.gz"]
        assert (tmp_path / "data" / "countries.geojson.gz").is_file()

    @pytest.mark.asyncio
    async def test_download_failure(self, tmp_path):
        async with httpx.AsyncClient(transport=httpx.MockTransport(lambda request: httpx.Response(404))) as http:
            store = SnapshotStore(str(tmp_path), "https://data.example/data", http)

            with pytest.raises(SnapshotError):
                await store.resolve(BoundaryKind.COUNTRY)

    @pytest.mark.asyncio
    async def test_import_subset(self, tmp_path):
        write_snapshot(tmp_path / "countries.geojson.gz", [snapshot_feature(i) for i in (1, 2, 3)])
        store = SnapshotStore(str(tmp_path))
        session = make_mock_session()
        writer = MagicMock()
        writer.commit = AsyncMock(side_effect=[(UpsertOutcome.INSERTED, True), (UpsertOutcome.UPDATED, True)])

        counts = await store.import_subset(session, BoundaryKind.COUNTRY, [1, 3, 99], writer)

        assert counts == {"inserted": 1, "updated": 1, "skipped": 0}
        restored = [call.args[1].country_id for call in writer.commit.await_args_list]
        assert restored == [1, 3]
        session.commit.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_import_subset_skips_non_numeric_ids(self, tmp_path):
        features = [snapshot_feature("abc"), snapshot_feature(2), {"type": "Feature", "properties": {"country_id": None}}]
        write_snapshot(tmp_path / "countries.geojson.gz", features)
        store = SnapshotStore(str(tmp_path))
        session = make_mock_session()
        writer = MagicMock()
        writer.commit = AsyncMock(return_value=(UpsertOutcome.UPDATED, True))

        counts = await store.import_subset(session, BoundaryKind.COUNTRY, [2], writer)

        assert counts == {"inserted": 0, "updated": 1, "skipped": 0}
        assert writer.commit.await_args.args[1].country_id == 2

    @pytest.mark.asyncio
    async def test_import_subset_invalid_feature(self, tmp_path):
        write_snapshot(tmp_path / "countries.geojson.gz", [snapshot_feature(-3)])
        store = SnapshotStore(str(tmp_path))
        writer = MagicMock()
        writer.commit = AsyncMock()

        with pytest.raises(SnapshotError):
            await store.import_subset(make_mock_session(), BoundaryKind.COUNTRY, [-3], writer)

        writer.commit.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_export(self, tmp_path):
        rows = [
            SimpleNamespace(
                country_id=1, country_name="Testland", country_name_es="Tierra de Prueba",
                country_name_en="Testland", geometry=json.dumps(SQUARE)
            )
        ]
        session = make_mock_session()
        session.execute.side_effect = [make_result(rows=rows)]
        store = SnapshotStore(str(tmp_path))

        count = await store.export(session, BoundaryKind.COUNTRY, "countries")

        assert count == 1
        features = read_snapshot(tmp_path / "countries.geojson.gz")
        assert features[0]["properties"]["country_name_es"] == "Tierra de Prueba"
        assert session.execute.await_args.args[1] == {"is_maritime": False}

    @pytest.mark.asyncio
    async def test_export_empty(self, tmp_path):
        session = make_mock_session()
        session.execute.side_effect = [make_result(rows=[])]

        with pytest.raises(SnapshotError):
            await SnapshotStore(str(tmp_path)).export(session, BoundaryKind.MARITIME, "countries")
