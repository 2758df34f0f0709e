"""Admin override: move an errored job back to pending, with an audit row.

The audit entry is written in the same transaction as the status change,
so there is never a reset without a record of who did it and why.
"""

import logging
from datetime import datetime
from typing import List, Optional

from sqlalchemy.orm import Session

from ..core.timeutil import utc_now
from ..exceptions import InvalidTransitionError, StaleTransitionError, ValidationError
from ..models import AdminOverrideLog, Job, JobStatus
from ..repositories import JobRepository
from .claim_engine import can_transition

logger = logging.getLogger(__name__)

REASON_MIN_LENGTH = 10
REASON_MAX_LENGTH = 500


class AdminService:

    def __init__(self, db: Session):
        self.db = db
        self.jobs = JobRepository(db)

    def force_pending(self, job_id: str, reason: str, actor_id: str,
                      reset_retries: bool = True, now: Optional[datetime] = None) -> Job:
        """
        Re-queue a job that ended in error.

        Args:
            reason: Why the job is being retried (10-500 characters).
            actor_id: Who is doing it.
            reset_retries: Start the retry budget over at 0.

        Raises:
            ValidationError: reason or actor_id is unusable.
            InvalidTransitionError: the job is not in error.
            StaleTransitionError: the job changed while the override ran.
        """
        reason = (reason or "").strip()
        if not REASON_MIN_LENGTH <= len(reason) <= REASON_MAX_LENGTH:
            raise ValidationError(
                f"Reason must be between {REASON_MIN_LENGTH} and {REASON_MAX_LENGTH} characters",
                field="reason",
            )
        if not (actor_id or "").strip():
            raise ValidationError("actor_id is required", field="actor_id")

        job = self.jobs.get_by_id(job_id)
        current = JobStatus(job.status)
        if current != JobStatus.ERROR or not can_transition(current, JobStatus.PENDING):
            raise InvalidTransitionError(job_id, current.value, JobStatus.PENDING.value)

        now = now or utc_now()
        previous_retry_count = job.retry_count
        new_retry_count = 0 if reset_retries else previous_retry_count

        try:
            won = self.jobs.update_for_transition(
                job_id,
                JobStatus.ERROR,
                {
                    "status": JobStatus.PENDING.value,
                    "retry_count": new_retry_count,
                    "next_attempt_at": None,
                    "updated_at": now,
                },
            )
            if not won:
                raise StaleTransitionError(job_id, JobStatus.ERROR.value)

            self.db.add(AdminOverrideLog(
                job_id=job_id,
                actor_id=actor_id,
                reason=reason,
                previous_status=current.value,
                new_status=JobStatus.PENDING.value,
                previous_retry_count=previous_retry_count,
                new_retry_count=new_retry_count,
                created_at=now,
            ))
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

        logger.warning(
            f"Admin override: job {job_id} error -> pending by {actor_id}",
            extra={"reason": reason, "previous_retry_count": previous_retry_count},
        )
        return self.jobs.get_by_id(job_id)

    def get_override_history(self, job_id: str) -> List[AdminOverrideLog]:
        """Overrides applied to a job, oldest first."""
        return (
            self.db.query(AdminOverrideLog)
            .filter(AdminOverrideLog.job_id == job_id)
            .order_by(AdminOverrideLog.created_at.asc(), AdminOverrideLog.id.asc())
            .all()
        )
