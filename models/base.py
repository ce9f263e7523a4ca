from sqlalchemy.orm import declarative_base
import enum

Base = declarative_base()


# ============================================================================
# ENUMS
# ============================================================================

class BoundaryKind(str, enum.Enum):
    """Where a boundary id was discovered"""
    COUNTRY = "country"
    MARITIME = "maritime"


class RunStatus(str, enum.Enum):
    """Boundary update run status"""
    PENDING = "pending"
    RUNNING = "running"
    SUCCESS = "success"
    FAILED = "failed"
    PARTIAL = "partial"


class BoundaryStage(str, enum.Enum):
    """Per-boundary pipeline state"""
    PENDING = "pending"
    DOWNLOADING = "downloading"
    VALIDATING = "validating"
    CONVERTING = "converting"
    IMPORTING = "importing"
    REPAIRING = "repairing"
    CAPITAL_CHECKING = "capital_checking"
    UPSERTING = "upserting"
    UPSERTED = "upserted"
    SAVED = "saved"  # download-only terminal state
    FAILED = "failed"
