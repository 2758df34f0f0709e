"""Job run model: one append-only row per processing attempt."""

from enum import Enum

from sqlalchemy import CheckConstraint, Column, DateTime, ForeignKey, Index, Integer, JSON, String

from ..core.timeutil import utc_now
from ..database import Base


class RunOutcome(str, Enum):
    """How a single attempt ended."""
    COMPLETED = "completed"
    DUPLICATE = "duplicate"      # completed without publishing (prior publication reused)
    RETRYING = "retrying"        # failed, job went back to pending
    FAILED = "failed"            # failed, job went to error
    STALE_CLAIM = "stale_claim"  # reclaimed by the sweeper


# Outcomes that count against the failure rate.
FAILURE_OUTCOMES = (RunOutcome.RETRYING.value, RunOutcome.FAILED.value, RunOutcome.STALE_CLAIM.value)


class JobRun(Base):
    """
    Audit record of one attempt at a job.

    Written once when the attempt ends, never updated. The failure-rate
    monitor aggregates these rows.
    """

    __tablename__ = "job_runs"
    __table_args__ = (
        CheckConstraint(
            "outcome IN ('completed', 'duplicate', 'retrying', 'failed', 'stale_claim')",
            name="ck_job_runs_outcome_valid",
        ),
        CheckConstraint("attempt >= 1", name="ck_job_runs_attempt_positive"),
        CheckConstraint(
            "(generation_ms IS NULL OR generation_ms >= 0) AND "
            "(publish_ms IS NULL OR publish_ms >= 0) AND "
            "(total_ms IS NULL OR total_ms >= 0)",
            name="ck_job_runs_duration_positive",
        ),
        Index("ix_job_runs_job_id", "job_id"),
        Index("ix_job_runs_outcome_created_at", "outcome", "created_at"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    job_id = Column(String(50), ForeignKey("content_jobs.id"), nullable=False)

    # 1-based: retry_count at claim time + 1
    attempt = Column(Integer, nullable=False)
    outcome = Column(String(20), nullable=False)

    started_at = Column(DateTime(timezone=True), nullable=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)

    # Per-phase timings in milliseconds
    generation_ms = Column(Integer, nullable=True)
    publish_ms = Column(Integer, nullable=True)
    total_ms = Column(Integer, nullable=True)

    # {"kind", "message", "retryable", "status_code"} for failed attempts;
    # {"duplicate_of_job_id", "similarity"} for duplicates
    error_details = Column(JSON, nullable=True)

    created_at = Column(DateTime(timezone=True), nullable=False, default=utc_now)
