"""Admin override audit log."""

from sqlalchemy import CheckConstraint, Column, DateTime, ForeignKey, Index, Integer, String, Text

from ..core.timeutil import utc_now
from ..database import Base


class AdminOverrideLog(Base):
    """Immutable record of a manual error -> pending reset.

    Written in the same transaction as the status change, never modified.
    """

    __tablename__ = "admin_override_log"
    __table_args__ = (
        CheckConstraint(
            "LENGTH(reason) >= 10 AND LENGTH(reason) <= 500",
            name="ck_admin_override_log_reason_length",
        ),
        Index("ix_admin_override_log_job_id", "job_id"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    job_id = Column(String(50), ForeignKey("content_jobs.id"), nullable=False)
    actor_id = Column(String(100), nullable=False)
    reason = Column(Text, nullable=False)

    previous_status = Column(String(20), nullable=False)
    new_status = Column(String(20), nullable=False)
    previous_retry_count = Column(Integer, nullable=False)
    new_retry_count = Column(Integer, nullable=False)

    created_at = Column(DateTime(timezone=True), nullable=False, default=utc_now)
