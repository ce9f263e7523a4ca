# ============================================================================
# File: boundaries/runner.py
# Description: Boundary update run lifecycle for one boundary kind
# ============================================================================
"""
Boundary Update Runner - orchestrates one update run per boundary kind.

Run phases:
1. Preflight - database reachable, target table present, enough disk
2. Discovery - authoritative id list from Overpass
3. Reconciliation - restore what the snapshot holds, download the rest
4. Orchestration - per-boundary pipelines over N workers
5. Finalize - run row, persisted failure ledger, failed-boundaries summary
"""

import shutil
import time
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

import httpx
from sqlalchemy import select, text
from sqlalchemy.exc import SQLAlchemyError

from boundaries.context import PipelineContext
from boundaries.extractors.discovery import BoundaryDiscovery
from boundaries.extractors.overpass_client import OverpassClient
from boundaries.loaders.snapshot import SnapshotStore
from boundaries.ledger import FailureLedger
from boundaries.loaders.upsert_writer import maintain_table, swap_rebuild_table
from boundaries.orchestrator import ParallelOrchestrator
from boundaries.overrides import load_overrides
from boundaries.pipeline import BoundaryPipeline
from boundaries.reconciliation import ReconciliationDecision, reconcile
from models.base import BoundaryKind, BoundaryStage, RunStatus
from models.boundary_run import BoundaryRun
from models.country import REBUILD_TABLE, TARGET_MODELS
from schemas.boundary import JobStatus, UpsertOutcome
from core.config import Settings, settings as default_settings
from core.database import async_session_maker, check_connection, require_table
from core.exceptions import (
    DownloadError,
    ETLException,
    InsufficientDiskSpaceError,
    PipelineAbortedError,
    RunLockError,
    SnapshotError,
    SystemFailure,
)
import logging

logger = logging.getLogger(__name__)

GB = 1024 ** 3


def required_free_gb(settings: Settings, kind: BoundaryKind) -> float:
    if kind == BoundaryKind.COUNTRY:
        return settings.COUNTRIES_MIN_FREE_GB
    return settings.MARITIMES_MIN_FREE_GB


def check_disk_space(path: str, required_gb: float):
    """Raise InsufficientDiskSpaceError when `path` has less than `required_gb` free"""
    available_gb = shutil.disk_usage(path).free / GB
    if available_gb < required_gb:
        raise InsufficientDiskSpaceError(
            f"Not enough free disk space in {path}",
            context={
                "path": path,
                "required_gb": required_gb,
                "available_gb": round(available_gb, 2)
            }
        )
    logger.info(f"Disk space OK in {path}: {available_gb:.1f} GB free, {required_gb} GB required")


def run_status(failed: int, succeeded: int) -> RunStatus:
    if failed == 0:
        return RunStatus.SUCCESS
    if succeeded > 0:
        return RunStatus.PARTIAL
    return RunStatus.FAILED


class BoundaryUpdateRunner:
    """
    Responsibilities:
    - Fail fast on run-scoped problems (SystemFailure)
    - Keep re-runs cheap by restoring from the snapshot
    - Record accurate run metrics and the failure ledger
    """

    def __init__(
        self,
        context: PipelineContext,
        client: OverpassClient,
        snapshot: Optional[SnapshotStore] = None,
        discovery: Optional[BoundaryDiscovery] = None,
        pipeline: Optional[BoundaryPipeline] = None,
        orchestrator: Optional[ParallelOrchestrator] = None
    ):
        self.ctx = context
        self.client = client
        self.snapshot = snapshot or SnapshotStore(context.settings.SNAPSHOT_DIR)
        self.discovery = discovery or BoundaryDiscovery(client, context.overrides.extra_country_ids)
        self.pipeline = pipeline or BoundaryPipeline(context, client)
        self.orchestrator = orchestrator or ParallelOrchestrator(context, self.pipeline)

    async def run(self, kind: BoundaryKind) -> Dict[str, Any]:
        """
        Run a full update for one boundary kind.

        Returns:
            Dictionary with run statistics:
            - status: "success", "partial" or "failed"
            - discovered / from_snapshot / downloaded
            - inserted / updated / skipped / failed
            - failed_boundaries: ids that did not reach the upserted state
            - not_refreshed: stored ids the run flagged as update_failed

        Raises:
            SystemFailure: Preflight failed, another run holds the run lock,
                or the database went away
            DownloadError: Discovery returned nothing
            PipelineAbortedError: continue-on-error is off and a boundary failed
        """
        # --------------------------------------------------
        # PHASE 1: PREFLIGHT
        # --------------------------------------------------
        await self._preflight(kind)

        if self.ctx.download_only:
            return await self._run_phases(kind)

        async with self._run_lock(kind):
            return await self._run_phases(kind)

    async def _run_phases(self, kind: BoundaryKind) -> Dict[str, Any]:
        started = time.monotonic()
        ledger = self.ctx.new_ledger(kind)
        stats: Dict[str, Any] = {
            "kind": kind.value,
            "status": RunStatus.RUNNING.value,
            "discovered": 0,
            "from_snapshot": 0,
            "downloaded": 0,
            "inserted": 0,
            "updated": 0,
            "skipped": 0,
            "saved": 0,
            "failed": 0,
            "reconciliation": None,
            "failed_boundaries": [],
            "not_refreshed": [],
        }
        run_pk = await self._start_run(kind)

        try:
            # --------------------------------------------------
            # PHASE 2: DISCOVERY
            # --------------------------------------------------
            ids = await self.discovery.fetch_ids(kind)
            stats["discovered"] = len(ids)
            await self._reset_updated(kind)

            # --------------------------------------------------
            # PHASE 3: RECONCILIATION
            # --------------------------------------------------
            to_download = await self._reconcile(kind, ids, stats)
            stats["downloaded"] = len(to_download)

            # --------------------------------------------------
            # PHASE 4: ORCHESTRATION
            # --------------------------------------------------
            statuses = await self.orchestrator.run(to_download, kind)
            self._tally(statuses, stats)

        except PipelineAbortedError as e:
            # Boundaries the stopped workers never reached are flagged too
            stats["not_refreshed"] = await self._flag_untouched(kind)
            await self._fail_run(run_pk, stats, ledger, started, e)
            raise

        except (SystemFailure, DownloadError) as e:
            await self._fail_run(run_pk, stats, ledger, started, e)
            raise

        except Exception as e:
            logger.exception(f"{kind.value} update failed with an unexpected error")
            await self._fail_run(run_pk, stats, ledger, started, e)
            raise

        # --------------------------------------------------
        # PHASE 5: FINALIZE
        # --------------------------------------------------
        stats["not_refreshed"] = await self._flag_untouched(kind)
        succeeded = stats["inserted"] + stats["updated"] + stats["saved"] + stats["from_snapshot"]
        stats["status"] = run_status(stats["failed"], succeeded).value
        await self._finish_run(run_pk, stats, started)
        await self._log_failed_summary(kind)
        if stats["status"] != RunStatus.FAILED.value:
            await self._maintain()

        logger.info(
            f"{kind.value} update completed: {stats['status']} - discovered {stats['discovered']}, "
            f"snapshot {stats['from_snapshot']}, downloaded {stats['downloaded']}, "
            f"inserted {stats['inserted']}, updated {stats['updated']}, failed {stats['failed']}, "
            f"not refreshed {len(stats['not_refreshed'])}"
        )
        return stats

    async def _fail_run(
        self,
        run_pk: Optional[int],
        stats: Dict[str, Any],
        ledger: FailureLedger,
        started: float,
        error: Exception
    ):
        message = error.message if isinstance(error, ETLException) else str(error)
        logger.error(f"{stats['kind']} update failed: {message}")
        stats["status"] = RunStatus.FAILED.value
        stats["failed"] = len(ledger)
        stats["failed_boundaries"] = ledger.boundary_ids
        await self._finish_run(run_pk, stats, started, error=error)

    @asynccontextmanager
    async def _run_lock(self, kind: BoundaryKind):
        """
        Session-level advisory lock held for the whole run.

        A second process (CLI or scheduler) fails fast instead of racing on
        the target table. The lock also goes away when the connection closes.
        """
        key = self.ctx.settings.RUN_LOCK_KEY
        async with self.ctx.session_factory() as session:
            result = await session.execute(text("SELECT pg_try_advisory_lock(:key)"), {"key": key})
            if not result.scalar():
                raise RunLockError(
                    "Another boundary update is already running",
                    context={"lock_key": key, "kind": kind.value}
                )
            # The lock outlives the transaction, no need to keep one open
            await session.commit()
            logger.debug(f"Run lock {key} acquired for {kind.value}")

            try:
                yield
            finally:
                try:
                    await session.execute(text("SELECT pg_advisory_unlock(:key)"), {"key": key})
                    await session.commit()
                except SQLAlchemyError as e:
                    logger.warning(f"Could not release run lock {key}, it is dropped with the connection: {e}")

    async def _reset_updated(self, kind: BoundaryKind):
        if self.ctx.download_only:
            return
        async with self.ctx.session_factory() as session:
            count = await self.pipeline.writer.reset_updated(session, kind == BoundaryKind.MARITIME)
            await session.commit()
        logger.info(f"Cleared the updated flag on {count} stored {kind.value} rows")

    async def _flag_untouched(self, kind: BoundaryKind) -> List[int]:
        if self.ctx.download_only:
            return []
        async with self.ctx.session_factory() as session:
            ids = await self.pipeline.writer.flag_untouched(session, kind == BoundaryKind.MARITIME)
            await session.commit()
        return ids

    async def _maintain(self):
        if self.ctx.download_only:
            return
        try:
            async with self.ctx.session_factory() as session:
                await maintain_table(session, self.ctx.target_table)
                await session.commit()
        except SQLAlchemyError as e:
            logger.warning(f"Maintenance of {self.ctx.target_table} failed, continuing: {e}")

    async def _preflight(self, kind: BoundaryKind):
        self.ctx.work_dir.mkdir(parents=True, exist_ok=True)
        check_disk_space(str(self.ctx.work_dir), required_free_gb(self.ctx.settings, kind))

        if self.ctx.download_only:
            logger.info("Download-only mode, skipping database checks")
            return

        async with self.ctx.session_factory() as session:
            await check_connection(session)
            await require_table(session, self.ctx.target_table)

    async def _reconcile(self, kind: BoundaryKind, ids: List[int], stats: Dict[str, Any]) -> List[int]:
        snapshot_ids = None
        if self.ctx.force_refresh or self.ctx.download_only:
            logger.info("Snapshot bypassed (force refresh or download-only)")
        else:
            try:
                snapshot_ids = await self.snapshot.ids(kind)
            except SnapshotError as e:
                logger.warning(f"Snapshot unavailable, downloading everything: {e}")

        result = reconcile(ids, snapshot_ids, force_refresh=self.ctx.force_refresh)
        stats["reconciliation"] = result.decision.value

        if not result.existing:
            return result.missing

        writer = self.pipeline.writer
        try:
            async with self.ctx.session_factory() as session:
                counts = await self.snapshot.import_subset(session, kind, result.existing, writer)
        except SystemFailure:
            raise
        except ETLException as e:
            logger.error(f"Snapshot import failed, downloading those boundaries instead: {e}")
            return result.existing + result.missing

        stats["from_snapshot"] = counts[UpsertOutcome.INSERTED.value] + counts[UpsertOutcome.UPDATED.value]
        if result.decision == ReconciliationDecision.REUSE_ALL:
            logger.info(f"Every {kind.value} boundary restored from snapshot, nothing to download")
        return result.missing

    def _tally(self, statuses: List[JobStatus], stats: Dict[str, Any]):
        for status in statuses:
            for outcome in status.outcomes:
                if outcome.stage == BoundaryStage.SAVED:
                    stats["saved"] += 1
                elif outcome.outcome is not None:
                    stats[outcome.outcome.value] += 1
            stats["failed"] += len(status.failures)
            stats["failed_boundaries"].extend(f.boundary_id for f in status.failures)
        stats["workers"] = [
            {"worker_id": s.worker_id, "success": s.success, "log_path": s.log_path, "error": s.error}
            for s in statuses
        ]

    async def _start_run(self, kind: BoundaryKind) -> Optional[int]:
        if self.ctx.download_only:
            return None
        async with self.ctx.session_factory() as session:
            run = BoundaryRun(
                kind=kind,
                status=RunStatus.RUNNING,
                target_table=self.ctx.target_table,
                started_at=datetime.utcnow(),
                run_metadata={
                    "continue_on_error": self.ctx.continue_on_error,
                    "force_refresh": self.ctx.force_refresh,
                    "max_workers": self.ctx.max_workers,
                }
            )
            session.add(run)
            await session.commit()
            logger.info(f"Started {kind.value} run {run.run_id}")
            return run.id

    async def _finish_run(
        self,
        run_pk: Optional[int],
        stats: Dict[str, Any],
        started: float,
        error: Optional[Exception] = None
    ):
        stats["duration_seconds"] = round(time.monotonic() - started, 2)
        if run_pk is None:
            return

        async with self.ctx.session_factory() as session:
            run = await session.get(BoundaryRun, run_pk)
            run.status = RunStatus(stats["status"])
            run.completed_at = datetime.utcnow()
            run.duration_seconds = stats["duration_seconds"]
            run.boundaries_discovered = stats["discovered"]
            run.boundaries_from_snapshot = stats["from_snapshot"]
            run.boundaries_downloaded = stats["downloaded"]
            run.boundaries_inserted = stats["inserted"]
            run.boundaries_updated = stats["updated"]
            run.boundaries_skipped = stats["skipped"]
            run.boundaries_failed = stats["failed"]
            run.reconciliation = stats["reconciliation"]
            if isinstance(error, ETLException):
                run.error_message = error.message
                run.error_details = error.to_dict()
            elif error is not None:
                run.error_message = f"{type(error).__name__}: {error}"
                run.error_details = {"error_type": type(error).__name__, "message": str(error)}
            elif stats["failed"]:
                run.error_message = f"{stats['failed']} boundaries failed"
            run.run_metadata = {
                **(run.run_metadata or {}),
                "workers": stats.get("workers", []),
                "not_refreshed": stats.get("not_refreshed", []),
            }

            await self.ctx.ledger.persist(session, run_pk)
            await session.commit()
            stats["run_id"] = str(run.run_id)

    async def _log_failed_summary(self, kind: BoundaryKind):
        records = self.ctx.ledger.records
        if not records:
            return

        names: Dict[int, str] = {}
        if not self.ctx.download_only:
            model = TARGET_MODELS[self.ctx.target_table]
            async with self.ctx.session_factory() as session:
                result = await session.execute(
                    select(model.country_id, model.country_name)
                    .where(model.country_id.in_([r.boundary_id for r in records]))
                )
                names = {row.country_id: row.country_name for row in result}

        logger.warning(f"{len(records)} {kind.value} boundaries failed:")
        for record in records:
            name = names.get(record.boundary_id, "unknown name")
            logger.warning(
                f"  {record.boundary_id} ({name}) at {record.stage.value}: {record.reason}"
            )


async def run_update(
    kinds: Iterable[BoundaryKind] = (BoundaryKind.COUNTRY, BoundaryKind.MARITIME),
    settings: Optional[Settings] = None,
    session_factory=None,
    **overrides: Any
) -> List[Dict[str, Any]]:
    """
    Run countries then maritimes with one shared context.

    Keyword overrides (continue_on_error, force_refresh, download_only,
    max_workers, target_table) take precedence over settings.
    """
    settings = settings or default_settings
    context = PipelineContext(
        settings,
        session_factory or async_session_maker,
        overrides=load_overrides(settings.OVERRIDES_FILE),
        **overrides
    )

    order = [k for k in (BoundaryKind.COUNTRY, BoundaryKind.MARITIME) if k in set(kinds)]
    results = []

    async with httpx.AsyncClient() as http_client:
        client = OverpassClient.from_settings(http_client, context.slots, settings)
        snapshot = SnapshotStore(settings.SNAPSHOT_DIR, settings.SNAPSHOT_BASE_URL, http_client)
        runner = BoundaryUpdateRunner(context, client, snapshot=snapshot)

        for kind in order:
            results.append(await runner.run(kind))

    if context.target_table == REBUILD_TABLE and not context.download_only:
        if any(r["status"] == RunStatus.FAILED.value for r in results):
            logger.error(f"Not swapping {REBUILD_TABLE} into place after a failed run")
            return results
        async with context.session_factory() as session:
            await swap_rebuild_table(session)

    return results
