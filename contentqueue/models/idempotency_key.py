"""Idempotency key model."""

from sqlalchemy import Column, DateTime, ForeignKey, Index, String, Text

from ..core.timeutil import utc_now
from ..database import Base


class IdempotencyKey(Base):
    """
    Per-job guard against repeating a publish after a crash.

    Created (upserted) when a job is claimed. The publish step records the
    external ref here before the job's completed transition commits, so a
    re-claimed job can finish without generating or publishing again.
    Expired keys are deleted lazily by the sweeper loop.
    """

    __tablename__ = "idempotency_keys"
    __table_args__ = (
        Index("ix_idempotency_keys_job_id", "job_id"),
        Index("ix_idempotency_keys_expires_at", "expires_at"),
        Index("ix_idempotency_keys_topic_hash", "topic_hash"),
        Index("ix_idempotency_keys_content_hash", "content_hash"),
    )

    # "{job_id}:{topic_hash}"
    key = Column(String(200), primary_key=True)
    job_id = Column(String(50), ForeignKey("content_jobs.id"), nullable=False)

    topic_hash = Column(String(64), nullable=False)
    content_hash = Column(String(64), nullable=True)
    published_ref = Column(String(100), nullable=True)
    # What went out with published_ref; a re-claimed job completes from these.
    published_title = Column(Text, nullable=True)
    published_content = Column(Text, nullable=True)

    expires_at = Column(DateTime(timezone=True), nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utc_now)
