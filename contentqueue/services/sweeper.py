"""Stale-claim sweeper.

A worker that dies mid-job leaves its row in processing forever. The
sweeper is the queue's timeout mechanism: it treats any claim older than
the staleness window as a retryable failure and releases it through the
claim engine, filtered on the claimed_at it observed.
"""

import logging
import time
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy.orm import Session

from ..core.config import Settings
from ..core.timeutil import utc_now
from ..models import JobStatus, SweepRecord
from ..repositories import JobRepository, SweepRepository
from ..schemas.monitoring import SweepHealth
from .claim_engine import ClaimEngine

logger = logging.getLogger(__name__)

# Share of sweeps with per-job errors above which health reports "degraded".
DEGRADED_ERROR_RATIO = 0.1


class Sweeper:
    """Reclaims abandoned processing jobs. Safe to run from many processes."""

    def __init__(self, db: Session, settings: Optional[Settings] = None,
                 engine: Optional[ClaimEngine] = None):
        self.db = db
        self.settings = settings or Settings()
        self.engine = engine or ClaimEngine(db, self.settings)
        self.jobs = JobRepository(db)
        self.records = SweepRepository(db)

    def sweep(self, now: Optional[datetime] = None) -> SweepRecord:
        """
        Reclaim every processing job claimed before now - staleness.

        Each job is released in its own transaction. A job that finished
        between the scan and the update is skipped silently; any other
        per-job failure is logged and recorded without stopping the sweep.

        Returns:
            The SweepRecord written for this run.
        """
        started = time.monotonic()
        now = now or utc_now()
        cutoff = now - timedelta(minutes=self.settings.stale_claim_minutes)

        inspected = self.jobs.count_by_status(JobStatus.PROCESSING)
        # Snapshot what the scan observed; a rollback inside a release would
        # otherwise reload the rows and lose the claimed_at filter.
        stale = [(job.id, job.claimed_at, job.retry_count) for job in self.jobs.find_stale(cutoff)]

        jobs_reset = 0
        jobs_failed = 0
        errors = []

        for job_id, claimed_at, retry_count in stale:
            try:
                decision = self.engine.release_stale(job_id, claimed_at, retry_count, now=now)
            except Exception as e:
                logger.error(f"Sweeper failed to release job {job_id}: {e}", exc_info=True)
                errors.append({"job_id": job_id, "error": str(e)})
                continue

            if decision is None:
                logger.debug(f"Job {job_id} changed since the scan; skipped")
            elif decision.will_retry:
                jobs_reset += 1
            else:
                jobs_failed += 1

        record = SweepRecord(
            started_at=now,
            jobs_inspected=inspected,
            stale_found=len(stale),
            jobs_reset=jobs_reset,
            jobs_failed=jobs_failed,
            errors=errors,
            duration_ms=int((time.monotonic() - started) * 1000),
        )
        try:
            self.records.add(record)
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

        if stale:
            logger.info(
                f"Sweep: {len(stale)} stale, {jobs_reset} reset, {jobs_failed} failed, "
                f"{len(errors)} error(s)"
            )
        return record

    def health(self, days: int = 7, now: Optional[datetime] = None) -> SweepHealth:
        """Summarize sweep records from the last ``days`` days."""
        now = now or utc_now()
        records = self.records.list_since(now - timedelta(days=days))
        if not records:
            return SweepHealth(
                sweeps=0, jobs_inspected=0, stale_found=0, jobs_reset=0,
                jobs_failed=0, errors=0, average_duration_ms=0.0, status="idle",
            )

        with_errors = sum(1 for r in records if r.errors)
        status = "degraded" if with_errors / len(records) > DEGRADED_ERROR_RATIO else "healthy"
        return SweepHealth(
            sweeps=len(records),
            jobs_inspected=sum(r.jobs_inspected for r in records),
            stale_found=sum(r.stale_found for r in records),
            jobs_reset=sum(r.jobs_reset for r in records),
            jobs_failed=sum(r.jobs_failed for r in records),
            errors=sum(len(r.errors or []) for r in records),
            average_duration_ms=sum(r.duration_ms for r in records) / len(records),
            last_sweep_at=records[0].started_at,
            status=status,
        )
