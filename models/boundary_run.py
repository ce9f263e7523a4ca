from sqlalchemy import Column, BigInteger, String, Enum, DateTime, Float, Integer, Text, Boolean, ForeignKey, Index
from sqlalchemy.dialects.postgresql import UUID, JSONB
from sqlalchemy.orm import relationship
from datetime import datetime
import uuid
from models.base import Base, BoundaryKind, RunStatus


class BoundaryRun(Base):
    """
    Tracks metadata for each boundary update run (one per boundary kind).

    Purpose:
    - Audit trail of all runs
    - Reconciliation decision and snapshot usage
    - Error tracking for post-run reporting
    """
    __tablename__ = "boundary_runs"

    id = Column(BigInteger, primary_key=True, autoincrement=True)
    run_id = Column(UUID(as_uuid=True), default=uuid.uuid4, unique=True, nullable=False, index=True)

    kind = Column(Enum(BoundaryKind), nullable=False, index=True)
    status = Column(Enum(RunStatus), default=RunStatus.PENDING, nullable=False, index=True)
    target_table = Column(String(63), nullable=False)

    # Timestamps
    started_at = Column(DateTime, nullable=False, default=datetime.utcnow, index=True)
    completed_at = Column(DateTime, nullable=True)
    duration_seconds = Column(Float, nullable=True)

    # Statistics
    boundaries_discovered = Column(Integer, default=0)
    boundaries_from_snapshot = Column(Integer, default=0)
    boundaries_downloaded = Column(Integer, default=0)
    boundaries_inserted = Column(Integer, default=0)
    boundaries_updated = Column(Integer, default=0)
    boundaries_skipped = Column(Integer, default=0)
    boundaries_failed = Column(Integer, default=0)

    reconciliation = Column(String(20), nullable=True)  # reuse_all / reuse_subset / download_all

    # Error tracking
    error_message = Column(Text, nullable=True)
    error_details = Column(JSONB, nullable=True)

    # Worker outcomes and configuration snapshot
    run_metadata = Column("metadata", JSONB, nullable=True)

    failures = relationship("BoundaryFailure", back_populates="run", cascade="all, delete-orphan")

    __table_args__ = (
        Index("idx_boundary_run_kind_started", "kind", "started_at"),
    )


class BoundaryFailure(Base):
    """
    Persisted failure ledger entry.

    One row per boundary that did not reach the upserted state in a run.
    """
    __tablename__ = "boundary_failures"

    id = Column(BigInteger, primary_key=True, autoincrement=True)
    run_pk = Column(BigInteger, ForeignKey("boundary_runs.id", ondelete="CASCADE"), nullable=False, index=True)

    boundary_id = Column(BigInteger, nullable=False, index=True)
    kind = Column(Enum(BoundaryKind), nullable=False)
    stage = Column(String(30), nullable=False)
    reason = Column(Text, nullable=False)
    error_type = Column(String(100), nullable=True)
    hard = Column(Boolean, nullable=False, default=False)
    worker_id = Column(Integer, nullable=True)
    elapsed_seconds = Column(Float, nullable=True)
    error_details = Column(JSONB, nullable=True)

    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    run = relationship("BoundaryRun", back_populates="failures")
