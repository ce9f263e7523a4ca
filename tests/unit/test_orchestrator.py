"""
Unit tests for the parallel orchestrator
"""

import json
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock

import pytest
from sqlalchemy.exc import ProgrammingError

from boundaries.context import PipelineContext
from boundaries.orchestrator import ParallelOrchestrator, failure_stage, partition
from core.exceptions import (
    ContaminationFailure,
    DatabaseConnectionError,
    ImportFailure,
    PipelineAbortedError,
    SystemFailure,
)
from models.base import BoundaryKind, BoundaryStage
from schemas.boundary import BoundaryOutcome


def fake_pipeline(failures=None):
    """Pipeline whose process() fails the ids mapped in `failures`"""
    failures = failures or {}
    processed = []

    async def process(boundary_id, kind):
        processed.append(boundary_id)
        if boundary_id in failures:
            raise failures[boundary_id]
        return BoundaryOutcome(boundary_id=boundary_id, kind=kind, stage=BoundaryStage.UPSERTED)

    pipeline = MagicMock()
    pipeline.process = AsyncMock(side_effect=process)
    pipeline.processed = processed
    return pipeline


def fake_writer():
    writer = MagicMock()
    writer.table_name = "countries"
    writer.mark_failed = AsyncMock()
    return writer


def build(context, failures=None):
    pipeline = fake_pipeline(failures)
    writer = fake_writer()
    return ParallelOrchestrator(context, pipeline, writer=writer), pipeline, writer


class TestPartition:

    def test_even_split(self):
        chunks = partition(list(range(10)), 4)

        assert chunks == [[0, 1, 2], [3, 4, 5], [6, 7, 8], [9]]

    def test_fewer_ids_than_workers(self):
        assert partition([1, 2, 3], 4) == [[1], [2], [3]]

    def test_empty(self):
        assert partition([], 4) == []

    def test_every_id_once(self):
        ids = list(range(257))
        chunks = partition(ids, 8)

        assert len(chunks) <= 8
        assert [i for chunk in chunks for i in chunk] == ids


class TestFailureStage:

    def test_known_stage(self):
        assert failure_stage(ImportFailure("x")) == BoundaryStage.IMPORTING

    def test_unknown_stage(self):
        assert failure_stage(ImportFailure("x", stage="somewhere")) == BoundaryStage.FAILED


class TestParallelOrchestrator:
    """Test worker aggregation under both error policies"""

    @pytest.mark.asyncio
    async def test_all_succeed(self, test_settings, session_factory):
        context = PipelineContext(test_settings, session_factory, max_workers=2)
        orchestrator, pipeline, writer = build(context)

        statuses = await orchestrator.run([1, 2, 3, 4], BoundaryKind.COUNTRY)

        assert [s.worker_id for s in statuses] == [1, 2]
        assert all(s.success for s in statuses)
        assert sum(s.upserted for s in statuses) == 4
        assert sorted(pipeline.processed) == [1, 2, 3, 4]
        writer.mark_failed.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_partial_failure_is_recorded(self, test_settings, session_factory):
        context = PipelineContext(test_settings, session_factory, max_workers=2, continue_on_error=True)
        context.new_ledger(BoundaryKind.COUNTRY)
        orchestrator, pipeline, writer = build(context, {3: ImportFailure("no rows", boundary_id=3)})

        statuses = await orchestrator.run([1, 2, 3, 4], BoundaryKind.COUNTRY)

        assert sorted(pipeline.processed) == [1, 2, 3, 4]
        assert context.ledger.boundary_ids == [3]
        failure = context.ledger.records[0]
        assert failure.stage == BoundaryStage.IMPORTING
        assert failure.hard is False
        assert failure.error_type == "ImportFailure"
        assert [s.success for s in statuses].count(False) == 1
        writer.mark_failed.assert_awaited_once()
        assert writer.mark_failed.await_args.args[1] == 3

        lines = Path(context.ledger.path).read_text(encoding="utf-8").splitlines()
        assert json.loads(lines[0])["boundary_id"] == 3

    @pytest.mark.asyncio
    async def test_strict_mode_aborts_after_join(self, test_settings, session_factory):
        context = PipelineContext(test_settings, session_factory, max_workers=1, continue_on_error=False)
        orchestrator, pipeline, writer = build(
            context, {3: ContaminationFailure("capital outside", boundary_id=3)}
        )

        with pytest.raises(PipelineAbortedError) as exc_info:
            await orchestrator.run([1, 3, 4], BoundaryKind.COUNTRY)

        assert exc_info.value.boundary_id == 3
        assert exc_info.value.stage == "capital_checking"
        # The worker stops at its first failure
        assert pipeline.processed == [1, 3]
        assert context.ledger.records[0].hard is True

    @pytest.mark.asyncio
    async def test_system_failure_propagates(self, test_settings, session_factory):
        context = PipelineContext(test_settings, session_factory, max_workers=2)
        orchestrator, _, _ = build(context, {2: DatabaseConnectionError("connection lost")})

        with pytest.raises(DatabaseConnectionError):
            await orchestrator.run([1, 2, 3, 4], BoundaryKind.COUNTRY)

    @pytest.mark.asyncio
    async def test_unexpected_crash_becomes_system_failure(self, test_settings, session_factory):
        context = PipelineContext(test_settings, session_factory, max_workers=1)
        orchestrator, _, _ = build(context, {1: RuntimeError("worker bug")})

        with pytest.raises(SystemFailure):
            await orchestrator.run([1], BoundaryKind.COUNTRY)

    @pytest.mark.asyncio
    async def test_mark_failed_skipped_in_download_only(self, test_settings, session_factory):
        context = PipelineContext(test_settings, session_factory, download_only=True)
        orchestrator, _, writer = build(context, {1: ImportFailure("x", boundary_id=1)})

        await orchestrator.run([1], BoundaryKind.COUNTRY)

        writer.mark_failed.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_mark_failed_error_is_not_fatal(self, test_settings, session_factory):
        context = PipelineContext(test_settings, session_factory, max_workers=1)
        orchestrator, pipeline, writer = build(
            context, {1: ImportFailure("x", boundary_id=1)}
        )
        writer.mark_failed.side_effect = ProgrammingError("UPDATE", {}, Exception("relation missing"))

        statuses = await orchestrator.run([1, 2], BoundaryKind.COUNTRY)

        assert pipeline.processed == [1, 2]
        assert statuses[0].upserted == 1

    @pytest.mark.asyncio
    async def test_worker_log_file(self, test_settings, session_factory):
        context = PipelineContext(test_settings, session_factory, max_workers=1)
        orchestrator, _, _ = build(context, {7: ImportFailure("no rows", boundary_id=7)})

        statuses = await orchestrator.run([7], BoundaryKind.MARITIME)

        log_path = Path(statuses[0].log_path)
        assert log_path.name == "worker_1.log"
        assert "Boundary 7 (maritime) failed at importing" in log_path.read_text(encoding="utf-8")

    @pytest.mark.asyncio
    async def test_no_ids(self, test_settings, session_factory):
        context = PipelineContext(test_settings, session_factory)
        orchestrator, _, _ = build(context)

        assert await orchestrator.run([], BoundaryKind.COUNTRY) == []
