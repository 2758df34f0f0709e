"""Sweep record model."""

from sqlalchemy import Column, DateTime, Index, Integer, JSON

from ..core.timeutil import utc_now
from ..database import Base


class SweepRecord(Base):
    """One row per sweeper run. Append-only, read for health reporting."""

    __tablename__ = "sweep_records"
    __table_args__ = (
        Index("ix_sweep_records_started_at", "started_at"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    started_at = Column(DateTime(timezone=True), nullable=False, default=utc_now)

    jobs_inspected = Column(Integer, nullable=False, default=0)
    stale_found = Column(Integer, nullable=False, default=0)
    jobs_reset = Column(Integer, nullable=False, default=0)   # back to pending
    jobs_failed = Column(Integer, nullable=False, default=0)  # moved to error (retries exhausted)

    # [{"job_id": ..., "error": ...}] for per-job failures inside the sweep
    errors = Column(JSON, nullable=False, default=list)
    duration_ms = Column(Integer, nullable=False, default=0)
