"""Duplicate-publication guard.

Three layers, checked by the job processor in this order:

1. ``prior_publication``: the job itself already published on an earlier
   attempt (worker crashed between publish and complete). Finish with the
   recorded ref and text instead of generating and publishing again.
2. ``find_duplicate``: another job published a similar topic, or the same
   content, within the trailing window. Complete as a duplicate of it.
3. ``assert_ref_available``: the ref the publisher returned is already owned
   by another job. This is a defect, never retried.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy.orm import Session

from ..core.config import Settings
from ..core.timeutil import utc_now
from ..exceptions import ConsistencyError
from ..models import IdempotencyKey, Job
from ..repositories import IdempotencyRepository, JobRepository
from .fingerprint import ContentFingerprint, Fingerprinter, TokenOverlapFingerprinter

logger = logging.getLogger(__name__)

# Most recent completed jobs compared against on every check.
DUPLICATE_CANDIDATE_LIMIT = 50


@dataclass
class PriorPublication:
    """What an earlier attempt of the same job published."""
    published_ref: str
    title: Optional[str] = None
    content: Optional[str] = None

    @property
    def has_text(self) -> bool:
        return bool((self.title or "").strip() and (self.content or "").strip())


@dataclass
class DuplicateMatch:
    """A completed job whose publication should be reused."""
    job_id: str
    published_ref: str
    title: str
    content: str
    similarity: float
    reason: str  # "topic_similarity" | "content_hash"

    def to_dict(self) -> dict:
        return {
            "duplicate_of_job_id": self.job_id,
            "similarity": round(self.similarity, 4),
            "reason": self.reason,
        }


class IdempotencyGuard:
    """Idempotency keys and duplicate detection for one session.

    Methods flush but never commit; the caller owns the transaction.
    """

    def __init__(self, db: Session, settings: Optional[Settings] = None,
                 fingerprinter: Optional[Fingerprinter] = None):
        self.db = db
        self.settings = settings or Settings()
        self.fingerprinter = fingerprinter or TokenOverlapFingerprinter()
        self.keys = IdempotencyRepository(db)
        self.jobs = JobRepository(db)

    def key_for(self, job: Job) -> str:
        topic_hash = self.fingerprinter.fingerprint(job.topic).topic_hash
        return f"{job.id}:{topic_hash}"

    def register_claim(self, job: Job, now: Optional[datetime] = None) -> IdempotencyKey:
        """Create or refresh the job's key. Called right after a claim."""
        now = now or utc_now()
        topic_hash = self.fingerprinter.fingerprint(job.topic).topic_hash
        return self.keys.upsert(
            key=f"{job.id}:{topic_hash}",
            job_id=job.id,
            topic_hash=topic_hash,
            expires_at=now + timedelta(hours=self.settings.idempotency_ttl_hours),
        )

    def prior_publication(self, job: Job) -> Optional[PriorPublication]:
        """Publication recorded by an earlier attempt of this same job, if any."""
        record = self.keys.get(self.key_for(job))
        if record is None or record.published_ref is None:
            return None
        return PriorPublication(record.published_ref, record.published_title, record.published_content)

    def find_duplicate(self, job: Job, content: Optional[str] = None,
                       now: Optional[datetime] = None) -> Optional[DuplicateMatch]:
        """Compare against jobs completed within the duplicate window.

        Matches when topic similarity exceeds the threshold, or when
        ``content`` hashes to the same value as a completed job's content.
        """
        now = now or utc_now()
        since = now - timedelta(days=self.settings.duplicate_window_days)
        candidates = self.jobs.list_completed_since(
            since, exclude_id=job.id, limit=DUPLICATE_CANDIDATE_LIMIT,
        )
        content_hash = self.fingerprinter.fingerprint(job.topic, content=content).content_hash if content else None

        for candidate in candidates:
            similarity = self.fingerprinter.topic_similarity(job.topic, candidate.topic)
            if similarity > self.settings.similarity_threshold:
                logger.info(
                    f"Job {job.id} duplicates {candidate.id} by topic (similarity {similarity:.2f})"
                )
                return self._match(candidate, similarity, "topic_similarity")

            if content_hash:
                stored = ContentFingerprint.from_dict(candidate.content_fingerprint)
                if stored and stored.content_hash == content_hash:
                    logger.info(f"Job {job.id} duplicates {candidate.id} by content hash")
                    return self._match(candidate, 1.0, "content_hash")

        return None

    @staticmethod
    def _match(candidate: Job, similarity: float, reason: str) -> DuplicateMatch:
        return DuplicateMatch(
            job_id=candidate.id,
            published_ref=candidate.published_ref,
            title=candidate.generated_title,
            content=candidate.generated_content,
            similarity=similarity,
            reason=reason,
        )

    def record_publication(self, job: Job, published_ref: str, title: str, content: str,
                           content_hash: Optional[str] = None) -> None:
        """Store the external ref and published text right after a successful publish."""
        key = self.key_for(job)
        if not self.keys.record_publication(key, published_ref, title, content, content_hash):
            # Key expired and was purged mid-flight; recreate it.
            self.register_claim(job)
            self.keys.record_publication(key, published_ref, title, content, content_hash)

    def assert_ref_available(self, job_id: str, published_ref: str) -> None:
        """Raise ConsistencyError if another job already owns ``published_ref``."""
        owner = self.jobs.published_ref_owner(published_ref, exclude_id=job_id)
        if owner is not None:
            logger.error(
                "Published ref already owned by another job",
                extra={"defect": True, "job_id": job_id, "owner_job_id": owner.id,
                       "published_ref": published_ref},
            )
            raise ConsistencyError(
                f"Published ref {published_ref} already belongs to job {owner.id}",
                details={"job_id": job_id, "owner_job_id": owner.id, "published_ref": published_ref},
            )

    def purge_expired(self, now: Optional[datetime] = None) -> int:
        """Delete expired keys. Returns the number removed."""
        removed = self.keys.delete_expired(now or utc_now())
        if removed:
            logger.info(f"Purged {removed} expired idempotency key(s)")
        return removed
