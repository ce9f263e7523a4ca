"""
Unit tests for the failure ledger
"""

import json
import logging

import pytest

from boundaries.context import PipelineContext
from boundaries.ledger import FailureLedger
from models.base import BoundaryKind, BoundaryStage
from models.boundary_run import BoundaryFailure
from schemas.boundary import FailureRecord
from tests.helpers import make_mock_session


def failure(boundary_id, stage=BoundaryStage.IMPORTING):
    return FailureRecord(
        boundary_id=boundary_id,
        kind=BoundaryKind.COUNTRY,
        stage=stage,
        reason="failed",
        details={"error_type": "ImportFailure"},
    )


class TestFailureLedger:

    @pytest.mark.asyncio
    async def test_records_are_mirrored_to_file(self, tmp_path):
        path = tmp_path / "work" / "failed.jsonl"
        ledger = FailureLedger(str(path))

        await ledger.record(failure(1))
        await ledger.record(failure(2))

        assert len(ledger) == 2
        assert ledger.boundary_ids == [1, 2]
        lines = [json.loads(line) for line in path.read_text(encoding="utf-8").splitlines()]
        assert [line["boundary_id"] for line in lines] == [1, 2]
        assert lines[0]["stage"] == "importing"

    @pytest.mark.asyncio
    async def test_contamination_logged_critical(self, caplog):
        ledger = FailureLedger()

        with caplog.at_level(logging.ERROR, logger="boundaries.ledger"):
            await ledger.record(failure(5, BoundaryStage.CAPITAL_CHECKING))

        assert caplog.records[-1].levelno == logging.CRITICAL

    @pytest.mark.asyncio
    async def test_persist_adds_rows(self):
        ledger = FailureLedger()
        await ledger.record(failure(1))
        session = make_mock_session()

        count = await ledger.persist(session, run_pk=42)

        assert count == 1
        row = session.add.call_args.args[0]
        assert isinstance(row, BoundaryFailure)
        assert row.run_pk == 42
        assert row.stage == "importing"
        session.commit.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_new_ledger_starts_with_empty_file(self, tmp_path):
        path = tmp_path / "failed.jsonl"
        previous = FailureLedger(str(path))
        await previous.record(failure(1))

        ledger = FailureLedger(str(path))
        await ledger.record(failure(2))

        lines = [json.loads(line) for line in path.read_text(encoding="utf-8").splitlines()]
        assert [line["boundary_id"] for line in lines] == [2]

    def test_context_keeps_one_file_per_kind(self, test_settings, session_factory):
        context = PipelineContext(test_settings, session_factory)

        countries = context.new_ledger(BoundaryKind.COUNTRY)
        maritimes = context.new_ledger(BoundaryKind.MARITIME)

        assert countries.path != maritimes.path
        assert context.ledger is maritimes
        assert maritimes.path.name == "failed_maritime_boundaries.jsonl"
