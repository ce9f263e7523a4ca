"""
Logging configuration
"""

import logging
import sys
from contextvars import ContextVar
from pathlib import Path
from typing import Optional

from core.config import settings

LOG_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

# Set by each orchestrator worker task; copied into child tasks and threads
current_worker: ContextVar[Optional[int]] = ContextVar("current_worker", default=None)


def setup_logging():
    """Configure application logging"""

    # Get log level from settings
    log_level = getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO)

    # Configure root logger
    logging.basicConfig(
        level=log_level,
        format=LOG_FORMAT,
        datefmt=DATE_FORMAT,
        handlers=[
            logging.StreamHandler(sys.stdout)
        ]
    )

    # Set SQLAlchemy and httpx logging to WARNING to reduce noise
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy.pool").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("apscheduler").setLevel(logging.WARNING)

    logger = logging.getLogger(__name__)
    logger.info(f"Logging configured at {settings.LOG_LEVEL} level")


class WorkerFilter(logging.Filter):
    """Only pass records emitted while the given worker was active."""

    def __init__(self, worker_id: int):
        super().__init__()
        self.worker_id = worker_id

    def filter(self, record: logging.LogRecord) -> bool:
        return current_worker.get() == self.worker_id


def attach_worker_log(worker_id: int, log_dir: str) -> tuple:
    """
    Attach a per-worker file handler to the root logger.

    Returns:
        (handler, log_path) so the caller can detach the handler when done
    """
    path = Path(log_dir)
    path.mkdir(parents=True, exist_ok=True)
    log_path = path / f"worker_{worker_id}.log"

    handler = logging.FileHandler(log_path, encoding="utf-8")
    handler.setFormatter(logging.Formatter(LOG_FORMAT, datefmt=DATE_FORMAT))
    handler.addFilter(WorkerFilter(worker_id))
    logging.getLogger().addHandler(handler)

    return handler, str(log_path)


def detach_worker_log(handler: Optional[logging.Handler]):
    if handler is None:
        return
    logging.getLogger().removeHandler(handler)
    handler.close()

