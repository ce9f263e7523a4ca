"""
Custom exceptions for the boundary pipeline with structured error context.

This module provides the exception hierarchy used throughout the boundary
ingestion pipeline. Each exception includes context information for
debugging and for the failure ledger.

Exception Hierarchy:
    ETLException (base)
    ├── BoundaryError (boundary-scoped, carries the failing stage)
    │   ├── DownloadError
    │   │   ├── NetworkError
    │   │   ├── RateLimitError
    │   │   └── MalformedResponseError
    │   ├── ConversionFailure
    │   ├── ImportFailure
    │   │   └── StagingLockError
    │   ├── GeometryFailure
    │   ├── ContaminationFailure
    │   └── UpsertError
    ├── SystemFailure (run-scoped, always fatal)
    │   ├── InsufficientDiskSpaceError
    │   ├── DatabaseConnectionError
    │   └── MissingTableError
    ├── SnapshotError
    ├── OverrideConfigError
    ├── PipelineAbortedError
    └── RetryableError / NonRetryableError (mixins)
"""

from typing import Optional, Dict, Any
from datetime import datetime


class ETLException(Exception):
    """
    Base exception for all pipeline errors.

    Attributes:
        message: Human-readable error message
        context: Additional context information (boundary_id, endpoint, etc.)
        original_exception: The original exception that was caught (if any)
    """

    def __init__(
        self,
        message: str,
        context: Optional[Dict[str, Any]] = None,
        original_exception: Optional[Exception] = None
    ):
        self.message = message
        self.context = context or {}
        self.original_exception = original_exception
        self.timestamp = datetime.utcnow()

        # Add timestamp to context
        self.context["error_timestamp"] = self.timestamp.isoformat()

        # Chain original exception if provided
        super().__init__(message)
        if original_exception:
            self.__cause__ = original_exception

    def __str__(self) -> str:
        """Format error message with context."""
        base_msg = f"{self.__class__.__name__}: {self.message}"

        if self.context:
            context_str = ", ".join(f"{k}={v}" for k, v in self.context.items())
            base_msg += f" | Context: {context_str}"

        if self.original_exception:
            base_msg += f" | Caused by: {type(self.original_exception).__name__}: {str(self.original_exception)}"

        return base_msg

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary for logging/storage."""
        return {
            "error_type": self.__class__.__name__,
            "message": self.message,
            "context": self.context,
            "timestamp": self.timestamp.isoformat(),
            "original_error": str(self.original_exception) if self.original_exception else None
        }


# ============================================================================
# Retry Strategy Mixins
# ============================================================================

class RetryableError(ETLException):
    """
    Mixin for errors that should trigger retry logic.

    Use this for transient errors like:
    - Network timeouts
    - Rate limiting (HTTP 429)
    - Overpass busy / gateway timeouts (HTTP 503, 504)
    """
    pass


class NonRetryableError(ETLException):
    """
    Mixin for errors that should NOT trigger retry logic.

    Use this for permanent errors like:
    - Capital point outside the merged geometry
    - Missing target table
    - Invalid override configuration
    """
    pass


# ============================================================================
# Boundary-Scoped Errors
# ============================================================================

class BoundaryError(ETLException):
    """
    Base exception for failures that only affect a single boundary.

    Under continue-on-error these become failure ledger entries; otherwise
    the first one aborts the run.
    """

    stage = "pending"

    def __init__(
        self,
        message: str,
        context: Optional[Dict[str, Any]] = None,
        original_exception: Optional[Exception] = None,
        boundary_id: Optional[int] = None,
        stage: Optional[str] = None
    ):
        super().__init__(message, context, original_exception)
        self.boundary_id = boundary_id
        if stage is not None:
            self.stage = stage
        if boundary_id is not None:
            self.context.setdefault("boundary_id", boundary_id)


class DownloadError(BoundaryError):
    """
    Raised when every endpoint exhausted its retry budget.

    Context should include:
        - endpoints: Endpoints that were tried
        - attempts: Total attempts made
        - last_error: Reason of the last failed attempt
    """
    stage = "downloading"


class NetworkError(RetryableError, DownloadError):
    """Network-related errors (unreachable, timeout, HTTP 5xx)."""
    pass


class RateLimitError(RetryableError, DownloadError):
    """Rate limiting errors (HTTP 429) that should be retried with backoff."""

    def __init__(
        self,
        message: str,
        context: Optional[Dict[str, Any]] = None,
        original_exception: Optional[Exception] = None,
        retry_after: Optional[float] = None
    ):
        super().__init__(message, context, original_exception)
        self.retry_after = retry_after  # Seconds to wait before retry
        if retry_after:
            self.context["retry_after"] = retry_after


class MalformedResponseError(RetryableError, DownloadError):
    """
    HTTP 200 whose body is an HTML page, an error-coded text or lacks the
    required key. Treated as a download failure for retry purposes.
    """
    stage = "validating"


class ConversionFailure(BoundaryError):
    """
    Exception raised when the raw response cannot be turned into a usable
    feature collection.

    Context should include:
        - attempts: Conversion attempts made
        - polygon_features: Number of polygonal features produced
    """
    stage = "converting"


class ImportFailure(BoundaryError):
    """
    Exception raised when the staging import fails or yields nothing usable.

    Context should include:
        - column_mode: Column policy of the last attempt
        - transfer_mode: Transfer mode of the last attempt
        - row_count / polygon_row_count: Staging counts after import
    """
    stage = "importing"


class StagingLockError(ImportFailure):
    """Another worker kept the staging critical section for too long."""
    pass


class GeometryFailure(BoundaryError):
    """Every repair strategy returned an empty or null geometry."""
    stage = "repairing"


class ContaminationFailure(NonRetryableError, BoundaryError):
    """
    The boundary's capital point lies outside its merged geometry.

    This usually means one boundary's polygon set was replaced by another's.
    """
    stage = "capital_checking"


class UpsertError(BoundaryError):
    """
    Exception raised when the upsert into the target table fails.

    Context should include:
        - table_name: Target table
        - operation: Statement that failed
    """
    stage = "upserting"


# ============================================================================
# Run-Scoped Errors
# ============================================================================

class SystemFailure(NonRetryableError):
    """Failures that make the whole run pointless. Never boundary-scoped."""
    pass


class InsufficientDiskSpaceError(SystemFailure):
    """
    Context should include:
        - path: Directory checked
        - required_gb / available_gb
    """
    pass


class DatabaseConnectionError(SystemFailure):
    """The spatial store is unreachable or the connection was lost."""
    pass


class MissingTableError(SystemFailure):
    """The configured target table does not exist."""
    pass


class RunLockError(SystemFailure):
    """Another update run already holds the run lock."""
    pass


# ============================================================================
# Other Errors
# ============================================================================

class SnapshotError(ETLException):
    """The cached snapshot could not be resolved, downloaded or parsed."""
    pass


class OverrideConfigError(NonRetryableError):
    """The per-boundary override file is unreadable or invalid."""
    pass


class PipelineAbortedError(ETLException):
    """
    Raised after all workers joined when continue-on-error is off and a
    boundary failed.
    """

    def __init__(
        self,
        message: str,
        boundary_id: Optional[int],
        stage: str,
        elapsed_seconds: float,
        context: Optional[Dict[str, Any]] = None,
        original_exception: Optional[Exception] = None
    ):
        context = dict(context or {})
        context.update({
            "boundary_id": boundary_id,
            "stage": stage,
            "elapsed_seconds": round(elapsed_seconds, 2),
        })
        super().__init__(message, context, original_exception)
        self.boundary_id = boundary_id
        self.stage = stage
        self.elapsed_seconds = elapsed_seconds
