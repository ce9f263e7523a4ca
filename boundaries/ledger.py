"""
Shared failure ledger for one run.

Workers append to it as boundaries fail; the runner persists it and uses
it for the post-run summary.
"""

import asyncio
import json
from pathlib import Path
from typing import List, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from models.base import BoundaryStage
from models.boundary_run import BoundaryFailure
from schemas.boundary import FailureRecord
import logging

logger = logging.getLogger(__name__)


class FailureLedger:
    """
    In-memory list of FailureRecords mirrored to a JSON-lines file.

    Attributes:
        path: JSON-lines file appended to on every record (optional)
    """

    def __init__(self, path: Optional[str] = None):
        self.path = Path(path) if path else None
        if self.path is not None and self.path.exists():
            # Each run and kind starts from an empty file
            self.path.unlink()
        self._records: List[FailureRecord] = []
        self._lock = asyncio.Lock()

    async def record(self, failure: FailureRecord):
        async with self._lock:
            self._records.append(failure)
            if self.path is not None:
                self.path.parent.mkdir(parents=True, exist_ok=True)
                with open(self.path, "a", encoding="utf-8") as f:
                    f.write(failure.model_dump_json() + "\n")

        message = (
            f"Boundary {failure.boundary_id} ({failure.kind.value}) failed at {failure.stage.value}: "
            f"{failure.reason}"
        )
        if failure.stage == BoundaryStage.CAPITAL_CHECKING:
            logger.critical(message)
        else:
            logger.error(message)

    @property
    def records(self) -> List[FailureRecord]:
        return list(self._records)

    @property
    def boundary_ids(self) -> List[int]:
        return [r.boundary_id for r in self._records]

    def __len__(self) -> int:
        return len(self._records)

    async def persist(self, session: AsyncSession, run_pk: int) -> int:
        """Add one BoundaryFailure row per record; the caller commits"""
        for failure in self._records:
            session.add(BoundaryFailure(
                run_pk=run_pk,
                boundary_id=failure.boundary_id,
                kind=failure.kind,
                stage=failure.stage.value,
                reason=failure.reason,
                error_type=failure.error_type,
                hard=failure.hard,
                worker_id=failure.worker_id,
                elapsed_seconds=failure.elapsed_seconds,
                error_details=json.loads(json.dumps(failure.details, default=str)),
                created_at=failure.recorded_at,
            ))
        return len(self._records)
