"""Job repository for queue database operations.

Every status change goes through update_for_transition(), a single
conditional UPDATE filtered on the status (and, where it matters, the
claimed_at) the caller observed. A zero rowcount means another worker or
the sweeper got there first; callers decide whether that is an error.

Reads use populate_existing so a session that already holds a Job sees the
row as it is now, not as it was before a conditional UPDATE.
"""

from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy import update

from ..core.timeutil import utc_now
from ..exceptions import JobNotFoundError
from ..models import Job, JobStatus
from ..schemas.job import JobCreate
from .base import BaseRepository


class JobRepository(BaseRepository[Job]):
    """Repository for content job reads and conditional writes."""

    model_class = Job
    not_found_error = JobNotFoundError

    def create(self, job_id: str, job: JobCreate, now: Optional[datetime] = None) -> Job:
        """Insert a new pending job."""
        now = now or utc_now()
        db_job = Job(
            id=job_id,
            topic=job.topic,
            prompt_template=job.prompt_template,
            model=job.model,
            tags=list(job.tags),
            categories=list(job.categories),
            status=JobStatus.PENDING.value,
            retry_count=0,
            created_at=now,
            updated_at=now,
        )
        self.db.add(db_job)
        self.db.flush()
        self.db.refresh(db_job)
        return db_job

    def list_by_status(self, status: JobStatus, limit: int = 100, offset: int = 0) -> List[Job]:
        """Jobs in one status, in queue order (oldest first)."""
        return (
            self._base_query()
            .filter(Job.status == status.value)
            .order_by(Job.created_at.asc(), Job.id.asc())
            .offset(offset)
            .limit(limit)
            .all()
        )

    def list_recent(self, status: Optional[JobStatus] = None, skip: int = 0, limit: int = 50) -> List[Job]:
        """Jobs newest first, optionally filtered by status."""
        query = self._base_query()
        if status is not None:
            query = query.filter(Job.status == status.value)
        return (
            query.order_by(Job.created_at.desc(), Job.id.desc())
            .offset(skip)
            .limit(limit)
            .all()
        )

    def select_claimable_id(self, max_retries: int, skip_locked: bool) -> Optional[str]:
        """Return the id of the oldest claimable pending job, or None.

        With ``skip_locked`` (PostgreSQL) the row is locked FOR UPDATE SKIP
        LOCKED until the surrounding transaction ends, so concurrent
        claimers each see a different candidate.
        """
        query = (
            self.db.query(Job.id)
            .filter(Job.status == JobStatus.PENDING.value, Job.retry_count < max_retries)
            .order_by(Job.created_at.asc(), Job.id.asc())
            .limit(1)
        )
        if skip_locked:
            query = query.with_for_update(skip_locked=True)
        row = query.first()
        return row[0] if row else None

    def update_for_transition(
        self,
        job_id: str,
        expected_status: JobStatus,
        values: Dict[str, Any],
        expected_claimed_at: Optional[datetime] = None,
        criteria: Iterable[Any] = (),
    ) -> bool:
        """Compare-and-set a job row.

        Applies ``values`` only if the row is still in ``expected_status``
        (and still carries ``expected_claimed_at``, when given). Always
        stamps updated_at.

        Returns:
            True if exactly one row changed.
        """
        stmt = update(Job).where(Job.id == job_id, Job.status == expected_status.value)
        if expected_claimed_at is not None:
            stmt = stmt.where(Job.claimed_at == expected_claimed_at)
        for criterion in criteria:
            stmt = stmt.where(criterion)

        values = dict(values)
        values.setdefault("updated_at", utc_now())
        result = self.db.execute(
            stmt.values(**values).execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    def find_stale(self, cutoff: datetime, limit: Optional[int] = None) -> List[Job]:
        """Processing jobs claimed before ``cutoff``, oldest claim first."""
        query = (
            self._base_query()
            .filter(Job.status == JobStatus.PROCESSING.value, Job.claimed_at < cutoff)
            .order_by(Job.claimed_at.asc())
        )
        if limit is not None:
            query = query.limit(limit)
        return query.all()

    def count_by_status(self, status: JobStatus) -> int:
        return self.db.query(Job).filter(Job.status == status.value).count()

    def list_completed_since(
        self,
        since: datetime,
        exclude_id: Optional[str] = None,
        limit: int = 50,
    ) -> List[Job]:
        """Most recent jobs that own a publication, completed at or after ``since``.

        Jobs that completed as duplicates are skipped so a match always
        points at the original publication.
        """
        query = self._base_query().filter(
            Job.status == JobStatus.COMPLETED.value,
            Job.completed_at >= since,
            Job.duplicate_of_job_id.is_(None),
        )
        if exclude_id:
            query = query.filter(Job.id != exclude_id)
        return query.order_by(Job.completed_at.desc()).limit(limit).all()

    def published_ref_owner(self, published_ref: str, exclude_id: Optional[str] = None) -> Optional[Job]:
        """The job that owns ``published_ref`` as its own publication, if any."""
        query = self._base_query().filter(
            Job.published_ref == published_ref,
            Job.duplicate_of_job_id.is_(None),
        )
        if exclude_id:
            query = query.filter(Job.id != exclude_id)
        return query.first()
