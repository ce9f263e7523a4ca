"""
Unit tests for the per-boundary state machine
"""

import json
from unittest.mock import AsyncMock, MagicMock

import pytest
from sqlalchemy.exc import OperationalError

from boundaries.context import PipelineContext
from boundaries.extractors.overpass_client import DownloadResult
from boundaries.loaders.repair import MergeResult
from boundaries.pipeline import BoundaryPipeline, find_relation
from core.exceptions import (
    BoundaryError,
    ContaminationFailure,
    DatabaseConnectionError,
    DownloadError,
    GeometryFailure,
    MalformedResponseError,
)
from models.base import BoundaryKind, BoundaryStage
from schemas.boundary import (
    BoundaryOverride,
    ContainmentStatus,
    OverrideTable,
    RepairStrategyName,
    UpsertOutcome,
)
from tests.helpers import SleepRecorder

MERGED = MergeResult(RepairStrategyName.UNION, b"\x01\x06\x00\x00\x20", 12345678.0)


def fake_client(document):
    client = MagicMock()
    client.download = AsyncMock(return_value=DownloadResult(json.dumps(document), document, "https://x", 1))
    return client


def build_pipeline(context, client, sleeps=None, **components):
    importer = MagicMock()
    importer.import_features = AsyncMock()
    repair = MagicMock()
    repair.merge = AsyncMock(return_value=MERGED)
    capital = MagicMock()
    capital.validate = AsyncMock(return_value=ContainmentStatus.PASSED)
    writer = MagicMock()
    writer.commit = AsyncMock(return_value=(UpsertOutcome.INSERTED, True))

    parts = {"importer": importer, "repair": repair, "capital": capital, "writer": writer}
    parts.update(components)
    return BoundaryPipeline(context, client, sleep=sleeps or SleepRecorder(), **parts)


@pytest.fixture
def context(test_settings, session_factory):
    return PipelineContext(test_settings, session_factory)


class TestFindRelation:

    def test_found(self, overpass_document):
        assert find_relation(overpass_document, 100)["tags"]["name"] == "Testland"

    def test_other_relation(self, overpass_document):
        assert find_relation(overpass_document, 101) is None


class TestBoundaryPipeline:
    """Test stage transitions and failure mapping"""

    @pytest.mark.asyncio
    async def test_happy_path(self, context, overpass_document, mock_session):
        pipeline = build_pipeline(context, fake_client(overpass_document))

        outcome = await pipeline.process(100, BoundaryKind.COUNTRY)

        assert outcome.stage == BoundaryStage.UPSERTED
        assert outcome.outcome == UpsertOutcome.INSERTED
        assert outcome.repair_strategy == "union"
        assert outcome.containment == ContainmentStatus.PASSED
        mock_session.commit.assert_awaited_once()

        record = pipeline.writer.commit.await_args.args[1]
        assert record.country_id == 100
        assert record.country_name == "Testland"
        assert record.country_name_es == "Tierra de Prueba"
        assert record.is_maritime is False
        assert record.area_m2 == MERGED.area_m2

    @pytest.mark.asyncio
    async def test_maritime_flag(self, context, overpass_document):
        pipeline = build_pipeline(context, fake_client(overpass_document))

        await pipeline.process(100, BoundaryKind.MARITIME)

        record = pipeline.writer.commit.await_args.args[1]
        assert record.is_maritime is True

    @pytest.mark.asyncio
    async def test_override_reaches_stages(self, test_settings, session_factory, overpass_document):
        override = BoundaryOverride(start_strategy=RepairStrategyName.BUFFER, strip_tags=["note"])
        context = PipelineContext(
            test_settings, session_factory, overrides=OverrideTable(boundaries={100: override})
        )
        pipeline = build_pipeline(context, fake_client(overpass_document))

        await pipeline.process(100, BoundaryKind.COUNTRY)

        assert pipeline.importer.import_features.await_args.args[3] == override
        assert pipeline.repair.merge.await_args.args[2] == RepairStrategyName.BUFFER

    @pytest.mark.asyncio
    async def test_missing_relation(self, context, overpass_document):
        overpass_document["elements"] = [e for e in overpass_document["elements"] if e["type"] != "relation"]
        pipeline = build_pipeline(context, fake_client(overpass_document))

        with pytest.raises(MalformedResponseError) as exc_info:
            await pipeline.process(100, BoundaryKind.COUNTRY)

        assert exc_info.value.stage == "validating"
        assert exc_info.value.boundary_id == 100

    @pytest.mark.asyncio
    async def test_no_geometry(self, context, overpass_document, mock_session):
        repair = MagicMock()
        repair.merge = AsyncMock(return_value=None)
        pipeline = build_pipeline(context, fake_client(overpass_document), repair=repair)

        with pytest.raises(GeometryFailure) as exc_info:
            await pipeline.process(100, BoundaryKind.COUNTRY)

        assert exc_info.value.stage == "repairing"
        mock_session.rollback.assert_awaited_once()
        mock_session.commit.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_contamination_never_reaches_writer(self, context, overpass_document, mock_session):
        capital = MagicMock()
        capital.validate = AsyncMock(return_value=ContainmentStatus.FAILED)
        pipeline = build_pipeline(context, fake_client(overpass_document), capital=capital)

        with pytest.raises(ContaminationFailure) as exc_info:
            await pipeline.process(100, BoundaryKind.COUNTRY)

        assert exc_info.value.stage == "capital_checking"
        pipeline.writer.commit.assert_not_awaited()
        mock_session.rollback.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_download_retried(self, context, overpass_document):
        context.settings.DOWNLOAD_MAX_ATTEMPTS = 3
        context.settings.DOWNLOAD_RETRY_DELAY_SECONDS = 10.0
        context.settings.DOWNLOAD_MAX_RETRY_DELAY_SECONDS = 15.0
        client = fake_client(overpass_document)
        client.download.side_effect = [
            DownloadError("all endpoints failed"),
            DownloadError("all endpoints failed"),
            DownloadResult("{}", overpass_document, "https://x", 1),
        ]
        sleeps = SleepRecorder()
        pipeline = build_pipeline(context, client, sleeps=sleeps)

        outcome = await pipeline.process(100, BoundaryKind.COUNTRY)

        assert outcome.stage == BoundaryStage.UPSERTED
        assert sleeps.calls == [10.0, 15.0]

    @pytest.mark.asyncio
    async def test_download_exhausted(self, context, overpass_document):
        client = fake_client(overpass_document)
        client.download.side_effect = DownloadError("all endpoints failed")
        pipeline = build_pipeline(context, client)

        with pytest.raises(DownloadError) as exc_info:
            await pipeline.process(100, BoundaryKind.COUNTRY)

        assert exc_info.value.boundary_id == 100
        assert exc_info.value.context["download_attempts"] == 1

    @pytest.mark.asyncio
    async def test_lost_connection_is_system_failure(self, context, overpass_document):
        importer = MagicMock()
        importer.import_features = AsyncMock(
            side_effect=OperationalError("TRUNCATE", {}, Exception("server closed the connection"))
        )
        pipeline = build_pipeline(context, fake_client(overpass_document), importer=importer)

        with pytest.raises(DatabaseConnectionError):
            await pipeline.process(100, BoundaryKind.COUNTRY)

    @pytest.mark.asyncio
    async def test_unexpected_error_keeps_stage(self, context, overpass_document):
        capital = MagicMock()
        capital.validate = AsyncMock(side_effect=ValueError("bad coordinates"))
        pipeline = build_pipeline(context, fake_client(overpass_document), capital=capital)

        with pytest.raises(BoundaryError) as exc_info:
            await pipeline.process(100, BoundaryKind.COUNTRY)

        assert exc_info.value.message == "Unexpected error"
        assert exc_info.value.stage == "capital_checking"

    @pytest.mark.asyncio
    async def test_download_only_saves_geojson(self, test_settings, session_factory, overpass_document):
        context = PipelineContext(test_settings, session_factory, download_only=True)
        pipeline = build_pipeline(context, fake_client(overpass_document))

        outcome = await pipeline.process(100, BoundaryKind.COUNTRY)

        assert outcome.stage == BoundaryStage.SAVED
        with open(outcome.geojson_path, encoding="utf-8") as f:
            saved = json.load(f)
        assert saved["type"] == "FeatureCollection"
        assert session_factory.opened == 0
        pipeline.importer.import_features.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_unnamed_relation_uses_id(self, context, overpass_document):
        relation = find_relation(overpass_document, 100)
        relation["tags"] = {"type": "boundary", "boundary": "administrative"}
        pipeline = build_pipeline(context, fake_client(overpass_document))

        await pipeline.process(100, BoundaryKind.COUNTRY)

        record = pipeline.writer.commit.await_args.args[1]
        assert record.country_name == "100"
        assert record.country_name_en == "No English name"
