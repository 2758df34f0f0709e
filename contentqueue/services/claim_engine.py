"""Claim engine: the only writer of job status for workers and the sweeper.

Every transition is one transaction: a compare-and-set UPDATE on the job
row plus the JobRun that records the attempt. No lock is held across an
external call; a worker owns a job only through its claimed_at value.
"""

import logging
from datetime import datetime
from typing import Any, Dict, Optional

import sqlalchemy.exc
from sqlalchemy.orm import Session

from ..core.config import Settings
from ..core.timeutil import as_utc, utc_now
from ..database import is_postgresql
from ..exceptions import (
    ConsistencyError, InvalidTransitionError, StaleTransitionError, ValidationError,
)
from ..models import Job, JobStatus, RunOutcome
from ..repositories import JobRepository, JobRunRepository
from .idempotency_guard import DuplicateMatch
from .retry_policy import Failure, FailureKind, RetryDecision, RetryPolicy

logger = logging.getLogger(__name__)

ALLOWED_TRANSITIONS = {
    JobStatus.PENDING: frozenset({JobStatus.PROCESSING}),
    JobStatus.PROCESSING: frozenset({JobStatus.COMPLETED, JobStatus.PENDING, JobStatus.ERROR}),
    JobStatus.COMPLETED: frozenset(),
    # Only through AdminService.force_pending.
    JobStatus.ERROR: frozenset({JobStatus.PENDING}),
}

# Re-selects after losing a race for a row before giving up for this poll.
MAX_CLAIM_ATTEMPTS = 5

GENERATED_TITLE_MAX_LENGTH = 200


def can_transition(from_status: JobStatus, to_status: JobStatus) -> bool:
    return to_status in ALLOWED_TRANSITIONS.get(from_status, frozenset())


class ClaimEngine:
    """
    Claims jobs and applies their outcomes.

    Args:
        db: Session used for every read and write. The engine commits.
        settings: Queue tuning (retry bound).
        policy: Retry policy; built from settings when omitted.
    """

    def __init__(self, db: Session, settings: Optional[Settings] = None,
                 policy: Optional[RetryPolicy] = None):
        self.db = db
        self.settings = settings or Settings()
        self.policy = policy or RetryPolicy.from_settings(self.settings)
        self.jobs = JobRepository(db)
        self.runs = JobRunRepository(db)

    # ------------------------------------------------------------------
    # Claiming
    # ------------------------------------------------------------------

    def claim_next(self, now: Optional[datetime] = None) -> Optional[Job]:
        """
        Atomically claim the oldest eligible pending job.

        On PostgreSQL the candidate row is locked with SKIP LOCKED, so
        concurrent claimers never wait on each other. On every backend the
        conditional UPDATE decides the winner; a claimer that loses the row
        re-selects, a bounded number of times.

        Without SKIP LOCKED (SQLite), every claimer selects the same oldest
        row, so under heavy contention a claimer can lose MAX_CLAIM_ATTEMPTS
        races in a row and return None while eligible jobs remain. It simply
        tries again on its next poll.

        Returns:
            The claimed job, or None if no job is eligible or every attempt
            lost its race.
        """
        skip_locked = is_postgresql(self.db.get_bind())
        max_retries = self.policy.max_retries

        for _ in range(MAX_CLAIM_ATTEMPTS):
            try:
                job_id = self.jobs.select_claimable_id(max_retries, skip_locked=skip_locked)
                if job_id is None:
                    self.db.rollback()
                    return None

                claimed_at = now or utc_now()
                won = self.jobs.update_for_transition(
                    job_id,
                    JobStatus.PENDING,
                    {"status": JobStatus.PROCESSING.value, "claimed_at": claimed_at},
                    criteria=(Job.retry_count < max_retries,),
                )
                if not won:
                    self.db.rollback()
                    logger.debug(f"Lost claim race for job {job_id}, re-selecting")
                    continue

                self.db.commit()
            except Exception:
                self.db.rollback()
                raise

            job = self.jobs.get_by_id(job_id)
            logger.info(f"Claimed job {job.id} (attempt {job.retry_count + 1})")
            return job

        logger.info(
            f"No job claimed after {MAX_CLAIM_ATTEMPTS} contended attempts; eligible jobs may remain",
            extra={"skip_locked": skip_locked},
        )
        return None

    # ------------------------------------------------------------------
    # Outcomes
    # ------------------------------------------------------------------

    def complete(
        self,
        job_id: str,
        title: str,
        content: str,
        published_ref: str,
        fingerprint: Optional[Dict[str, Any]] = None,
        duplicate_of_job_id: Optional[str] = None,
        claimed_at: Optional[datetime] = None,
        generation_ms: Optional[int] = None,
        publish_ms: Optional[int] = None,
        run_details: Optional[Dict[str, Any]] = None,
        now: Optional[datetime] = None,
    ) -> Job:
        """
        Transition processing -> completed and record the attempt.

        Args:
            claimed_at: The claim this worker holds. When given, a job that
                was reclaimed in the meantime raises StaleTransitionError.
            duplicate_of_job_id: Set when the job reuses another job's
                publication; the ref is then expected to be shared.

        Raises:
            ValidationError: title, content or published_ref is empty.
            ConsistencyError: published_ref already belongs to another job.
            InvalidTransitionError / StaleTransitionError
        """
        for name, value in (("title", title), ("content", content), ("published_ref", published_ref)):
            if not value or not str(value).strip():
                raise ValidationError(f"Cannot complete job {job_id}: {name} is empty", field=name)

        now = now or utc_now()
        job = self._load_processing(job_id, JobStatus.COMPLETED, claimed_at)

        if duplicate_of_job_id is None:
            owner = self.jobs.published_ref_owner(published_ref, exclude_id=job_id)
            if owner is not None:
                raise self._ref_conflict(job_id, owner.id, published_ref)

        values = {
            "status": JobStatus.COMPLETED.value,
            "claimed_at": None,
            "last_error": None,
            "next_attempt_at": None,
            "generated_title": title.strip()[:GENERATED_TITLE_MAX_LENGTH],
            "generated_content": content,
            "published_ref": published_ref,
            "duplicate_of_job_id": duplicate_of_job_id,
            "content_fingerprint": fingerprint,
            "completed_at": now,
            "updated_at": now,
        }
        outcome = RunOutcome.DUPLICATE if duplicate_of_job_id else RunOutcome.COMPLETED

        try:
            self._apply(job, values)
            self.runs.append(
                job_id,
                attempt=job.retry_count + 1,
                outcome=outcome,
                started_at=job.claimed_at,
                completed_at=now,
                generation_ms=generation_ms,
                publish_ms=publish_ms,
                error_details=run_details,
            )
            self.db.commit()
        except sqlalchemy.exc.IntegrityError as e:
            # Unique published_ref index lost a race with another completion.
            self.db.rollback()
            raise self._ref_conflict(job_id, None, published_ref) from e
        except Exception:
            self.db.rollback()
            raise

        logger.info(
            f"Job {job_id} completed"
            + (f" as duplicate of {duplicate_of_job_id}" if duplicate_of_job_id else ""),
            extra={"published_ref": published_ref},
        )
        return self.jobs.get_by_id(job_id)

    def complete_as_duplicate(self, job_id: str, match: DuplicateMatch,
                              claimed_at: Optional[datetime] = None,
                              generation_ms: Optional[int] = None,
                              now: Optional[datetime] = None) -> Job:
        """Complete with another job's publication."""
        return self.complete(
            job_id,
            title=match.title,
            content=match.content,
            published_ref=match.published_ref,
            duplicate_of_job_id=match.job_id,
            claimed_at=claimed_at,
            generation_ms=generation_ms,
            run_details=match.to_dict(),
            now=now,
        )

    def fail(
        self,
        job_id: str,
        failure: Failure,
        claimed_at: Optional[datetime] = None,
        generation_ms: Optional[int] = None,
        publish_ms: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> RetryDecision:
        """
        Apply the retry policy to a failed attempt.

        Moves the job back to pending (retry_count + 1, advisory
        next_attempt_at) or to error, and records the attempt.

        Returns:
            The decision that was applied.
        """
        now = now or utc_now()
        job = self._load_processing(job_id, None, claimed_at)
        decision = self.policy.decide(job.retry_count, failure, now=now)

        if failure.kind == FailureKind.CONSISTENCY:
            logger.error(
                f"Consistency failure on job {job_id}: {failure.message}",
                extra={"defect": True},
            )

        values = {
            "status": decision.status.value,
            "retry_count": decision.retry_count,
            "claimed_at": None,
            "last_error": decision.last_error,
            "next_attempt_at": decision.next_attempt_at,
            "updated_at": now,
        }
        outcome = RunOutcome.RETRYING if decision.will_retry else RunOutcome.FAILED

        try:
            self._apply(job, values)
            self.runs.append(
                job_id,
                attempt=job.retry_count + 1,
                outcome=outcome,
                started_at=job.claimed_at,
                completed_at=now,
                generation_ms=generation_ms,
                publish_ms=publish_ms,
                error_details=failure.to_dict(),
            )
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

        if decision.will_retry:
            logger.info(
                f"Job {job_id} failed ({failure.kind.value}), retry {decision.retry_count} "
                f"in {decision.delay_seconds:.0f}s"
            )
        else:
            logger.warning(f"Job {job_id} moved to error: {decision.last_error}")
        return decision

    def release_stale(self, job_id: str, claimed_at: datetime, retry_count: int,
                      now: Optional[datetime] = None) -> Optional[RetryDecision]:
        """
        Reclaim an abandoned processing job, as a retryable failure.

        ``claimed_at`` and ``retry_count`` are the values the caller observed
        when it found the job. The UPDATE is filtered on that claimed_at: if
        the worker finished (or another sweep got there) in the meantime,
        nothing changes and None is returned.
        """
        now = now or utc_now()
        minutes = (now - as_utc(claimed_at)).total_seconds() / 60
        failure = Failure(
            FailureKind.TRANSIENT_NETWORK,
            f"Stale claim: processing for {minutes:.0f} minutes without an outcome",
        )
        decision = self.policy.decide(retry_count, failure, now=now)

        try:
            won = self.jobs.update_for_transition(
                job_id,
                JobStatus.PROCESSING,
                {
                    "status": decision.status.value,
                    "retry_count": decision.retry_count,
                    "claimed_at": None,
                    "last_error": decision.last_error,
                    "next_attempt_at": decision.next_attempt_at,
                    "updated_at": now,
                },
                expected_claimed_at=claimed_at,
            )
            if not won:
                self.db.rollback()
                return None

            error_details = failure.to_dict()
            error_details["kind"] = RunOutcome.STALE_CLAIM.value
            self.runs.append(
                job_id,
                attempt=retry_count + 1,
                outcome=RunOutcome.STALE_CLAIM,
                started_at=claimed_at,
                completed_at=now,
                error_details=error_details,
            )
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise
        return decision

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _load_processing(self, job_id: str, target: Optional[JobStatus],
                         claimed_at: Optional[datetime]) -> Job:
        """Load a job the caller believes it is processing."""
        job = self.jobs.get_by_id(job_id)
        current = JobStatus(job.status)

        if claimed_at is not None and (
            current != JobStatus.PROCESSING or as_utc(job.claimed_at) != as_utc(claimed_at)
        ):
            raise StaleTransitionError(job_id, JobStatus.PROCESSING.value)

        if current != JobStatus.PROCESSING or (target is not None and not can_transition(current, target)):
            raise InvalidTransitionError(
                job_id, current.value, (target or JobStatus.PENDING).value
            )
        return job

    def _apply(self, job: Job, values: Dict[str, Any]) -> None:
        won = self.jobs.update_for_transition(
            job.id, JobStatus.PROCESSING, values, expected_claimed_at=job.claimed_at,
        )
        if not won:
            raise StaleTransitionError(job.id, JobStatus.PROCESSING.value)

    @staticmethod
    def _ref_conflict(job_id: str, owner_id: Optional[str], published_ref: str) -> ConsistencyError:
        logger.error(
            "Duplicate published ref on completion",
            extra={"defect": True, "owner_job_id": owner_id, "published_ref": published_ref},
        )
        return ConsistencyError(
            f"Published ref {published_ref} is already owned by another job",
            details={"job_id": job_id, "owner_job_id": owner_id, "published_ref": published_ref},
        )
