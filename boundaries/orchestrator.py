"""
Parallel orchestrator: partition boundary ids over N workers and
aggregate their JobStatus after all of them joined.
"""

import asyncio
import time
from typing import List, Optional

from sqlalchemy.exc import InterfaceError, OperationalError, SQLAlchemyError

from boundaries.context import PipelineContext
from boundaries.pipeline import BoundaryPipeline
from boundaries.loaders.upsert_writer import UpsertWriter
from models.base import BoundaryKind, BoundaryStage
from schemas.boundary import FailureRecord, JobStatus
from core.exceptions import (
    BoundaryError,
    PipelineAbortedError,
    DatabaseConnectionError,
    SystemFailure,
)
from core.logging import attach_worker_log, current_worker, detach_worker_log
import logging

logger = logging.getLogger(__name__)


def partition(ids: List[int], workers: int) -> List[List[int]]:
    """
    Split ids into at most `workers` contiguous chunks.

    Chunk size is len // workers + 1, so the last chunks may be shorter or
    absent for small inputs.
    """
    if not ids:
        return []
    workers = max(1, workers)
    size = len(ids) // workers + 1
    return [ids[i:i + size] for i in range(0, len(ids), size)]


def failure_stage(error: BoundaryError) -> BoundaryStage:
    try:
        return BoundaryStage(error.stage)
    except ValueError:
        return BoundaryStage.FAILED


class ParallelOrchestrator:
    """
    One asyncio task per chunk, each running boundaries sequentially.

    Under continue-on-error every boundary failure becomes a ledger entry.
    Otherwise a worker stops at its first failure and the run is aborted
    once all workers have joined.
    """

    def __init__(
        self,
        context: PipelineContext,
        pipeline: BoundaryPipeline,
        writer: Optional[UpsertWriter] = None
    ):
        self.ctx = context
        self.pipeline = pipeline
        self.writer = writer or pipeline.writer

    async def run(self, ids: List[int], kind: BoundaryKind) -> List[JobStatus]:
        """
        Raises:
            SystemFailure: A worker hit a run-scoped failure
            PipelineAbortedError: continue-on-error is off and a boundary failed
        """
        chunks = partition(ids, self.ctx.max_workers)
        if not chunks:
            logger.info(f"No {kind.value} boundaries to process")
            return []

        logger.info(
            f"Processing {len(ids)} {kind.value} boundaries with {len(chunks)} workers "
            f"(continue_on_error={self.ctx.continue_on_error})"
        )

        tasks = []
        for worker_id, chunk in enumerate(chunks, start=1):
            if worker_id > 1 and self.ctx.settings.WORKER_STAGGER_SECONDS > 0:
                await asyncio.sleep(self.ctx.settings.WORKER_STAGGER_SECONDS)
            tasks.append(asyncio.create_task(self._worker(worker_id, chunk, kind)))

        results = await asyncio.gather(*tasks, return_exceptions=True)

        statuses: List[JobStatus] = []
        system_failure: Optional[BaseException] = None

        for worker_id, result in enumerate(results, start=1):
            if isinstance(result, JobStatus):
                statuses.append(result)
                continue

            # Workers only leak run-scoped or unexpected errors
            logger.error(f"Worker {worker_id} crashed: {result}")
            statuses.append(JobStatus(
                worker_id=worker_id,
                success=False,
                boundary_ids=chunks[worker_id - 1],
                error=str(result)
            ))
            if system_failure is None:
                system_failure = result

        if system_failure is not None:
            if isinstance(system_failure, SystemFailure):
                raise system_failure
            raise SystemFailure(
                "Worker crashed with an unexpected error",
                original_exception=system_failure if isinstance(system_failure, Exception) else None
            )

        upserted = sum(s.upserted for s in statuses)
        failed = sum(len(s.failures) for s in statuses)
        logger.info(f"All {len(statuses)} workers joined: {upserted} upserted, {failed} failed")

        if not self.ctx.continue_on_error:
            for status in statuses:
                if status.failures:
                    first = status.failures[0]
                    raise PipelineAbortedError(
                        f"Boundary {first.boundary_id} failed at {first.stage.value}: {first.reason}",
                        boundary_id=first.boundary_id,
                        stage=first.stage.value,
                        elapsed_seconds=first.elapsed_seconds or 0.0,
                        context={"worker_id": status.worker_id}
                    )

        return statuses

    async def _worker(self, worker_id: int, chunk: List[int], kind: BoundaryKind) -> JobStatus:
        token = current_worker.set(worker_id)
        handler, log_path = attach_worker_log(worker_id, str(self.ctx.log_dir))
        status = JobStatus(worker_id=worker_id, success=True, log_path=log_path, boundary_ids=list(chunk))

        try:
            logger.info(f"Worker {worker_id} starting with {len(chunk)} boundaries")

            for boundary_id in chunk:
                started = time.monotonic()
                try:
                    outcome = await self.pipeline.process(boundary_id, kind)
                    status.outcomes.append(outcome)

                except BoundaryError as e:
                    failure = FailureRecord(
                        boundary_id=boundary_id,
                        kind=kind,
                        stage=failure_stage(e),
                        reason=e.message,
                        error_type=type(e).__name__,
                        hard=not self.ctx.continue_on_error,
                        worker_id=worker_id,
                        elapsed_seconds=round(time.monotonic() - started, 2),
                        details=e.to_dict()
                    )
                    status.failures.append(failure)
                    status.success = False
                    await self.ctx.ledger.record(failure)
                    await self._mark_failed(boundary_id)

                    if not self.ctx.continue_on_error:
                        logger.error(f"Worker {worker_id} stopping after failure of {boundary_id}")
                        break

            logger.info(
                f"Worker {worker_id} finished: {status.upserted} upserted, "
                f"{len(status.outcomes) - status.upserted} saved/other, {len(status.failures)} failed"
            )
            return status

        finally:
            detach_worker_log(handler)
            current_worker.reset(token)

    async def _mark_failed(self, boundary_id: int):
        if self.ctx.download_only:
            return
        try:
            async with self.ctx.session_factory() as session:
                await self.writer.mark_failed(session, boundary_id)
                await session.commit()
        except (OperationalError, InterfaceError) as e:
            raise DatabaseConnectionError(
                "Lost connection to the database",
                context={"boundary_id": boundary_id, "operation": "mark_failed"},
                original_exception=e
            )
        except SQLAlchemyError as e:
            logger.error(f"Could not flag {boundary_id} as failed in {self.writer.table_name}: {e}")
