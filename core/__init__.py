"""
Core utilities and configuration for the boundary sync service.

This package provides foundational components used throughout the pipeline:

Modules:
    config: Application configuration and environment variable management
    database: Database connection, session management and preflight checks
    exceptions: Custom exception hierarchy for error handling
    logging: Logging configuration and per-worker log files

Usage:
    from core.config import settings
    from core.database import async_session_maker, check_connection
    from core.exceptions import DownloadError, ImportFailure
    from core.logging import setup_logging

Example:
    # Initialize logging
    setup_logging()

    # Get database session
    async with async_session_maker() as session:
        await check_connection(session)
"""

__all__ = [
    "settings",
    "async_session_maker",
    "setup_logging",
    # Exceptions
    "ETLException",
    "BoundaryError",
    "DownloadError",
    "NetworkError",
    "RateLimitError",
    "MalformedResponseError",
    "ConversionFailure",
    "ImportFailure",
    "StagingLockError",
    "GeometryFailure",
    "ContaminationFailure",
    "UpsertError",
    "SystemFailure",
    "InsufficientDiskSpaceError",
    "DatabaseConnectionError",
    "MissingTableError",
    "RunLockError",
    "SnapshotError",
    "OverrideConfigError",
    "PipelineAbortedError",
    "RetryableError",
    "NonRetryableError",
]
