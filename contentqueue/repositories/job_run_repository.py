"""Job run repository: append-only attempt history and aggregates."""

from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import func

from ..core.timeutil import as_utc, utc_now
from ..models import JobRun, RunOutcome
from ..models.job_run import FAILURE_OUTCOMES
from ..schemas.monitoring import RunStats

_SUCCESS_OUTCOMES = (RunOutcome.COMPLETED.value, RunOutcome.DUPLICATE.value)


class JobRunRepository:
    """Writes one JobRun per finished attempt; never updates them."""

    def __init__(self, db):
        self.db = db

    def append(
        self,
        job_id: str,
        attempt: int,
        outcome: RunOutcome,
        started_at: Optional[datetime] = None,
        completed_at: Optional[datetime] = None,
        generation_ms: Optional[int] = None,
        publish_ms: Optional[int] = None,
        error_details: Optional[Dict[str, Any]] = None,
    ) -> JobRun:
        """Add a run to the current transaction. The caller commits."""
        completed_at = as_utc(completed_at) or utc_now()
        started_at = as_utc(started_at)
        total_ms = None
        if started_at is not None:
            total_ms = max(0, int((completed_at - started_at).total_seconds() * 1000))

        run = JobRun(
            job_id=job_id,
            attempt=attempt,
            outcome=outcome.value,
            started_at=started_at,
            completed_at=completed_at,
            generation_ms=generation_ms,
            publish_ms=publish_ms,
            total_ms=total_ms,
            error_details=error_details,
            created_at=completed_at,
        )
        self.db.add(run)
        self.db.flush()
        return run

    def list_for_job(self, job_id: str) -> List[JobRun]:
        """Attempt history for one job, oldest first."""
        return (
            self.db.query(JobRun)
            .filter(JobRun.job_id == job_id)
            .order_by(JobRun.created_at.asc(), JobRun.id.asc())
            .all()
        )

    def outcome_counts_since(self, since: datetime) -> Dict[str, int]:
        """Number of runs per outcome created at or after ``since``."""
        rows = (
            self.db.query(JobRun.outcome, func.count(JobRun.id))
            .filter(JobRun.created_at >= since)
            .group_by(JobRun.outcome)
            .all()
        )
        return {outcome: count for outcome, count in rows}

    def stats(self, since: datetime) -> RunStats:
        """Success/failure counts and average attempt duration since ``since``."""
        counts = self.outcome_counts_since(since)
        average = (
            self.db.query(func.avg(JobRun.total_ms))
            .filter(JobRun.created_at >= since, JobRun.total_ms.isnot(None))
            .scalar()
        )
        return RunStats(
            total=sum(counts.values()),
            succeeded=sum(counts.get(o, 0) for o in _SUCCESS_OUTCOMES),
            failed=sum(counts.get(o, 0) for o in FAILURE_OUTCOMES),
            average_total_ms=float(average) if average is not None else None,
        )
