"""
Explicit pipeline context shared by every worker of a run
"""

from pathlib import Path
from typing import Optional

from sqlalchemy.ext.asyncio import async_sessionmaker

from boundaries.extractors.overpass_client import DownloadSlots
from boundaries.ledger import FailureLedger
from boundaries.loaders.staging_importer import StagingLock
from models.base import BoundaryKind
from core.config import Settings
from schemas.boundary import OverrideTable


class PipelineContext:
    """
    Run-wide configuration and shared resources.

    One context is built per run; nothing in the pipeline reads module
    level state except through it.
    """

    def __init__(
        self,
        settings: Settings,
        session_factory: async_sessionmaker,
        overrides: Optional[OverrideTable] = None,
        continue_on_error: Optional[bool] = None,
        force_refresh: Optional[bool] = None,
        download_only: Optional[bool] = None,
        max_workers: Optional[int] = None,
        target_table: Optional[str] = None,
        work_dir: Optional[str] = None
    ):
        self.settings = settings
        self.session_factory = session_factory
        self.overrides = overrides or OverrideTable()

        self.continue_on_error = settings.CONTINUE_ON_ERROR if continue_on_error is None else continue_on_error
        self.force_refresh = settings.FORCE_REFRESH if force_refresh is None else force_refresh
        self.download_only = settings.DOWNLOAD_ONLY if download_only is None else download_only
        self.max_workers = max(1, max_workers or settings.MAX_THREADS)
        self.target_table = target_table or settings.TARGET_TABLE
        self.work_dir = Path(work_dir or settings.WORK_DIR)

        self.slots = DownloadSlots(
            settings.RATE_LIMIT,
            attempts=settings.SLOT_ACQUIRE_ATTEMPTS,
            interval=settings.SLOT_ACQUIRE_INTERVAL_SECONDS
        )
        self.staging_lock = StagingLock(
            settings.STAGING_LOCK_KEY,
            attempts=settings.STAGING_LOCK_ATTEMPTS,
            delay=settings.STAGING_LOCK_DELAY_SECONDS
        )
        self.ledger = FailureLedger()

    @property
    def log_dir(self) -> Path:
        return self.work_dir / "logs"

    @property
    def geojson_dir(self) -> Path:
        return self.work_dir / "geojson"

    def ledger_path(self, kind: BoundaryKind) -> Path:
        return self.work_dir / f"failed_{kind.value}_boundaries.jsonl"

    def new_ledger(self, kind: BoundaryKind) -> FailureLedger:
        """Start a fresh ledger (and ledger file) for the next boundary kind"""
        self.ledger = FailureLedger(str(self.ledger_path(kind)))
        return self.ledger
