"""
Per-boundary state machine.

Pending -> Downloading -> Validating -> Converting -> Importing ->
Repairing -> CapitalChecking -> Upserting -> Upserted

Any stage may end in a BoundaryError carrying the stage it failed in; the
orchestrator decides whether that is recorded or aborts the run.
"""

import asyncio
import json
import time
from typing import Any, Awaitable, Callable, Dict, Optional

from sqlalchemy.exc import InterfaceError, OperationalError, SQLAlchemyError

from boundaries.context import PipelineContext
from boundaries.extractors.discovery import boundary_query
from boundaries.extractors.overpass_client import OverpassClient
from boundaries.loaders.capital import CapitalValidator
from boundaries.loaders.repair import GeometryRepairEngine
from boundaries.loaders.staging_importer import StagingImporter
from boundaries.loaders.upsert_writer import UpsertWriter
from boundaries.transformers.converter import ConversionStage
from models.base import BoundaryKind, BoundaryStage
from schemas.boundary import BoundaryOutcome, ContainmentStatus, CountryRecord
from core.exceptions import (
    BoundaryError,
    ContaminationFailure,
    DatabaseConnectionError,
    DownloadError,
    GeometryFailure,
    MalformedResponseError,
    SystemFailure,
)
import logging

logger = logging.getLogger(__name__)


def find_relation(document: Dict[str, Any], boundary_id: int) -> Optional[Dict[str, Any]]:
    for element in document.get("elements") or []:
        if element.get("type") == "relation" and element.get("id") == boundary_id:
            return element
    return None


class BoundaryPipeline:
    """
    Run one boundary from download to commit.

    The staging critical section (import, merge, capital check, upsert and
    commit) runs in a single transaction while holding the staging lock.
    """

    def __init__(
        self,
        context: PipelineContext,
        client: OverpassClient,
        conversion: Optional[ConversionStage] = None,
        importer: Optional[StagingImporter] = None,
        repair: Optional[GeometryRepairEngine] = None,
        capital: Optional[CapitalValidator] = None,
        writer: Optional[UpsertWriter] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep
    ):
        settings = context.settings
        self.ctx = context
        self.client = client
        self.conversion = conversion or ConversionStage(
            max_retries=settings.CONVERSION_MAX_RETRIES,
            retry_delay=settings.CONVERSION_RETRY_DELAY_SECONDS,
            max_delay=settings.CONVERSION_MAX_DELAY_SECONDS,
            sleep=sleep
        )
        self.importer = importer or StagingImporter()
        self.repair = repair or GeometryRepairEngine(epsilon=settings.REPAIR_BUFFER_DEGREES)
        self.capital = capital or CapitalValidator()
        self.writer = writer or UpsertWriter(
            context.target_table,
            min_area=settings.MIN_NEW_AREA_M2,
            retention_ratio=settings.AREA_RETENTION_RATIO
        )
        self._sleep = sleep

    def _enter(self, outcome: BoundaryOutcome, stage: BoundaryStage):
        logger.debug(f"Boundary {outcome.boundary_id}: {outcome.stage.value} -> {stage.value}")
        outcome.stage = stage

    async def process(self, boundary_id: int, kind: BoundaryKind) -> BoundaryOutcome:
        """
        Returns:
            BoundaryOutcome in stage UPSERTED (or SAVED in download-only mode)

        Raises:
            BoundaryError: The boundary failed; `stage` tells where
            SystemFailure: The database became unreachable
        """
        started = time.monotonic()
        outcome = BoundaryOutcome(boundary_id=boundary_id, kind=kind)
        logger.info(f"Processing {kind.value} boundary {boundary_id}")

        try:
            await self._run(boundary_id, kind, outcome)

        except SystemFailure:
            raise

        except BoundaryError as e:
            if e.boundary_id is None:
                e.boundary_id = boundary_id
                e.context.setdefault("boundary_id", boundary_id)
            raise

        except (OperationalError, InterfaceError) as e:
            raise DatabaseConnectionError(
                "Lost connection to the database",
                context={"boundary_id": boundary_id, "stage": outcome.stage.value},
                original_exception=e
            )

        except SQLAlchemyError as e:
            raise BoundaryError(
                "Database error",
                context={"operation": outcome.stage.value},
                original_exception=e,
                boundary_id=boundary_id,
                stage=outcome.stage.value
            )

        except Exception as e:
            logger.exception(f"Unexpected error processing {boundary_id} at {outcome.stage.value}")
            raise BoundaryError(
                "Unexpected error",
                original_exception=e,
                boundary_id=boundary_id,
                stage=outcome.stage.value
            )

        outcome.elapsed_seconds = round(time.monotonic() - started, 2)
        logger.info(
            f"Boundary {boundary_id} {outcome.stage.value} in {outcome.elapsed_seconds}s"
            + (f" ({outcome.outcome.value})" if outcome.outcome else "")
        )
        return outcome

    async def _run(self, boundary_id: int, kind: BoundaryKind, outcome: BoundaryOutcome):
        # --------------------------------------------------
        # DOWNLOAD + VALIDATE
        # --------------------------------------------------
        self._enter(outcome, BoundaryStage.DOWNLOADING)
        document = await self._download(boundary_id)

        self._enter(outcome, BoundaryStage.VALIDATING)
        relation = find_relation(document, boundary_id)
        if relation is None:
            raise MalformedResponseError(
                "Response does not contain the requested relation",
                context={"elements": len(document.get("elements") or [])},
            )

        names = CountryRecord.names_from_tags(relation.get("tags") or {})
        if not names["country_name"]:
            logger.warning(f"Relation {boundary_id} has no name tags, using its id")
            names["country_name"] = str(boundary_id)

        # --------------------------------------------------
        # CONVERT
        # --------------------------------------------------
        self._enter(outcome, BoundaryStage.CONVERTING)
        collection = await self.conversion.run(boundary_id, document)

        if self.ctx.download_only:
            outcome.geojson_path = await asyncio.to_thread(self._save_geojson, boundary_id, collection)
            self._enter(outcome, BoundaryStage.SAVED)
            return

        override = self.ctx.overrides.for_boundary(boundary_id)

        # --------------------------------------------------
        # STAGING CRITICAL SECTION
        # --------------------------------------------------
        async with self.ctx.session_factory() as session:
            async with self.ctx.staging_lock.hold(session, boundary_id):
                try:
                    self._enter(outcome, BoundaryStage.IMPORTING)
                    await self.importer.import_features(session, boundary_id, collection, override)

                    self._enter(outcome, BoundaryStage.REPAIRING)
                    merged = await self.repair.merge(session, boundary_id, override.start_strategy)
                    if merged is None:
                        raise GeometryFailure(
                            "No repair strategy produced a non-empty geometry",
                            boundary_id=boundary_id
                        )
                    outcome.repair_strategy = merged.strategy.value

                    self._enter(outcome, BoundaryStage.CAPITAL_CHECKING)
                    containment = await self.capital.validate(session, boundary_id, merged.ewkb, collection)
                    outcome.containment = containment
                    if containment == ContainmentStatus.FAILED:
                        raise ContaminationFailure(
                            "Capital lies outside the merged geometry",
                            context={"repair_strategy": merged.strategy.value},
                            boundary_id=boundary_id
                        )

                    self._enter(outcome, BoundaryStage.UPSERTING)
                    record = CountryRecord(
                        country_id=boundary_id,
                        geometry_ewkb=merged.ewkb,
                        area_m2=merged.area_m2,
                        is_maritime=(kind == BoundaryKind.MARITIME),
                        containment=containment,
                        repair_strategy=merged.strategy.value,
                        **names
                    )
                    outcome.outcome, outcome.geometry_replaced = await self.writer.commit(session, record)
                    await session.commit()

                except Exception:
                    await session.rollback()
                    raise

        self._enter(outcome, BoundaryStage.UPSERTED)

    async def _download(self, boundary_id: int) -> Dict[str, Any]:
        """Whole-download retries around the client's own endpoint failover"""
        settings = self.ctx.settings
        attempts = max(1, settings.DOWNLOAD_MAX_ATTEMPTS)

        for attempt in range(1, attempts + 1):
            try:
                result = await self.client.download(boundary_query(boundary_id), required_key="elements")
                return result.document

            except DownloadError as e:
                if attempt >= attempts:
                    e.context["download_attempts"] = attempts
                    raise
                delay = min(
                    settings.DOWNLOAD_RETRY_DELAY_SECONDS * attempt,
                    settings.DOWNLOAD_MAX_RETRY_DELAY_SECONDS
                )
                logger.warning(
                    f"Download of {boundary_id} failed (attempt {attempt}/{attempts}): {e.message}. "
                    f"Retrying in {delay:.0f}s"
                )
                await self._sleep(delay)

    def _save_geojson(self, boundary_id: int, collection: Dict[str, Any]) -> str:
        directory = self.ctx.geojson_dir
        directory.mkdir(parents=True, exist_ok=True)
        path = directory / f"{boundary_id}.geojson"
        with open(path, "w", encoding="utf-8") as f:
            json.dump(collection, f)
        logger.info(f"Saved {boundary_id} to {path}")
        return str(path)
