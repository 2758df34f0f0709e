"""Service for enqueueing and inspecting content jobs."""

import logging
import uuid
from typing import List, Optional

import pydantic
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..core.timeutil import as_utc
from ..exceptions import DatabaseError, ValidationError
from ..models import Job, JobRun, JobStatus
from ..models.job import RETRY_COUNT_CEILING
from ..repositories import JobRepository, JobRunRepository
from ..schemas.job import IntegrityReport, JobCreate, JobPage, JobResponse

logger = logging.getLogger(__name__)

MAX_PAGE_SIZE = 100


class JobService:
    """
    Entry points used by whatever surface enqueues and inspects jobs.

    Status changes are not made here; they belong to the claim engine,
    the sweeper, and the admin override.
    """

    def __init__(self, db: Session):
        self.db = db
        self.jobs = JobRepository(db)
        self.runs = JobRunRepository(db)

    def enqueue(
        self,
        topic: str,
        prompt_template: Optional[str] = None,
        model: Optional[str] = None,
        tags: Optional[List[str]] = None,
        categories: Optional[List[str]] = None,
    ) -> str:
        """
        Validate input and create a pending job.

        Returns:
            The new job's id.

        Raises:
            ValidationError: Input is rejected; no row is written.
        """
        payload = {"topic": topic, "prompt_template": prompt_template,
                   "tags": tags or [], "categories": categories or []}
        if model is not None:
            payload["model"] = model
        try:
            data = JobCreate(**payload)
        except pydantic.ValidationError as e:
            first = e.errors()[0]
            field = ".".join(str(p) for p in first.get("loc", ()))
            raise ValidationError(first.get("msg", str(e)), field=field or None) from e

        job_id = str(uuid.uuid4())
        try:
            self.jobs.create(job_id, data)
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            raise DatabaseError("Failed to enqueue job", e) from e

        logger.info(f"Enqueued job {job_id}: {data.topic[:80]}")
        return job_id

    def get_job(self, job_id: str) -> Job:
        """Raises JobNotFoundError if the job does not exist."""
        return self.jobs.get_by_id(job_id)

    def list_jobs(self, status: Optional[JobStatus] = None, page: int = 1,
                  page_size: int = 20) -> JobPage:
        """A page of jobs, newest first."""
        if page < 1:
            raise ValidationError("page must be >= 1", field="page")
        if not 1 <= page_size <= MAX_PAGE_SIZE:
            raise ValidationError(f"page_size must be between 1 and {MAX_PAGE_SIZE}", field="page_size")

        if isinstance(status, str):
            try:
                status = JobStatus(status)
            except ValueError as e:
                raise ValidationError(f"Unknown status '{status}'", field="status") from e

        jobs = self.jobs.list_recent(status, skip=(page - 1) * page_size, limit=page_size)
        return JobPage(
            items=[JobResponse.model_validate(job) for job in jobs],
            page=page,
            page_size=page_size,
            status=status.value if status else None,
        )

    def get_job_run_history(self, job_id: str) -> List[JobRun]:
        """All attempts for a job, oldest first. Raises JobNotFoundError."""
        self.jobs.get_by_id(job_id)
        return self.runs.list_for_job(job_id)

    def validate_integrity(self, job_id: str) -> IntegrityReport:
        """Check a stored job against the lifecycle invariants.

        The table constraints make most of these impossible to violate;
        this reports on rows written before a constraint existed or by
        out-of-band edits.
        """
        job = self.jobs.get_by_id(job_id)
        violations: List[str] = []

        try:
            status = JobStatus(job.status)
        except ValueError:
            violations.append(f"unknown status '{job.status}'")
            return IntegrityReport(job_id=job_id, is_valid=False, violations=violations)

        if (status == JobStatus.PROCESSING) != (job.claimed_at is not None):
            violations.append("claimed_at must be set if and only if status is processing")
        if status == JobStatus.COMPLETED:
            for field in ("generated_title", "generated_content", "published_ref"):
                if not getattr(job, field):
                    violations.append(f"completed job has no {field}")
            if job.completed_at is None:
                violations.append("completed job has no completed_at")
        if status == JobStatus.ERROR and not (job.last_error or "").strip():
            violations.append("error job has no last_error")
        if not 0 <= job.retry_count <= RETRY_COUNT_CEILING:
            violations.append(f"retry_count {job.retry_count} outside 0..{RETRY_COUNT_CEILING}")
        if job.published_ref and not job.is_duplicate:
            owner = self.jobs.published_ref_owner(job.published_ref, exclude_id=job.id)
            if owner is not None:
                violations.append(f"published_ref also owned by job {owner.id}")
        created, updated = as_utc(job.created_at), as_utc(job.updated_at)
        if created and updated and updated < created:
            violations.append("updated_at is earlier than created_at")

        return IntegrityReport(job_id=job_id, is_valid=not violations, violations=violations)
