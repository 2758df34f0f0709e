"""Job processor: one claimed job through generate -> publish -> complete.

The duplicate guard is consulted at three points:

- first: this job already published on an earlier attempt, so finish with
  the recorded ref and text without generating or publishing;
- before generation: a similar topic was already published, so reuse it;
- after generation: the same content was already published, so reuse it.

No database transaction is open while the generator or publisher runs.
With a RateLimiter, each call first waits for room in that service's limits.
"""

import logging
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from sqlalchemy.orm import Session

from ..clients.base import ContentGenerator, GenerationResult, Publisher
from ..core.config import Settings
from ..core.logging_config import job_context
from ..exceptions import ConsistencyError, StaleTransitionError
from ..models import Job
from .claim_engine import ClaimEngine
from .fingerprint import Fingerprinter, TokenOverlapFingerprinter
from .idempotency_guard import IdempotencyGuard
from .rate_limiter import GENERATION, PUBLISHING, RateLimiter
from .retry_policy import Failure, FailureKind, RetryDecision, classify_error

logger = logging.getLogger(__name__)

DEFAULT_PROMPT_TEMPLATE = (
    "Write a comprehensive blog post about: {topic}\n\n"
    "Start with a compelling title on the first line, then the article body."
)


def build_prompt(job: Job) -> str:
    """Substitute the job's topic into its template (or the default one)."""
    template = job.prompt_template or DEFAULT_PROMPT_TEMPLATE
    if "{topic}" in template:
        return template.replace("{topic}", job.topic)
    return f"{template}\n\nTopic: {job.topic}"


@dataclass
class ProcessResult:
    """What happened to one claimed job."""
    job_id: str
    outcome: str  # completed | duplicate | retrying | failed | stale
    published_ref: Optional[str] = None
    decision: Optional[RetryDecision] = None


def _elapsed_ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)


class JobProcessor:
    """
    Runs claimed jobs against the generator and publisher.

    Args:
        db: Session shared by the claim engine and the guard.
        generator: ContentGenerator collaborator.
        publisher: Publisher collaborator.
        rate_limiter: Optional per-worker limits on generator and publisher calls.
    """

    def __init__(
        self,
        db: Session,
        generator: ContentGenerator,
        publisher: Publisher,
        settings: Optional[Settings] = None,
        fingerprinter: Optional[Fingerprinter] = None,
        engine: Optional[ClaimEngine] = None,
        rate_limiter: Optional[RateLimiter] = None,
    ):
        self.db = db
        self.settings = settings or Settings()
        self.generator = generator
        self.publisher = publisher
        self.fingerprinter = fingerprinter or TokenOverlapFingerprinter()
        self.engine = engine or ClaimEngine(db, self.settings)
        self.guard = IdempotencyGuard(db, self.settings, self.fingerprinter)
        self.rate_limiter = rate_limiter

    def run_once(self, now: Optional[datetime] = None) -> Optional[ProcessResult]:
        """Claim and process one job.

        Returns None when the queue is empty, or without claiming when a
        rate limit is exhausted, so the job stays available to other workers.
        """
        if not self._has_capacity():
            return None
        job = self.engine.claim_next(now=now)
        if job is None:
            return None
        with job_context(job.id):
            return self.process(job)

    def process(self, job: Job) -> ProcessResult:
        """Process a job this worker has just claimed."""
        claimed_at = job.claimed_at
        try:
            self.guard.register_claim(job)
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

        prior = self.guard.prior_publication(job)
        if prior is None:
            match = self.guard.find_duplicate(job)
            if match is not None:
                return self._complete_duplicate(job, match, claimed_at)
        elif prior.has_text:
            logger.info(f"Job {job.id} already published as {prior.published_ref}; completing from it")
            recorded = GenerationResult(title=prior.title, content=prior.content)
            return self._complete(job, recorded, prior.published_ref, claimed_at, None, None)

        self._acquire(GENERATION)
        started = time.monotonic()
        try:
            generated = self.generator.generate(build_prompt(job), job.model)
        except Exception as e:
            logger.warning(f"Generation failed for job {job.id}: {e}")
            return self._fail(job, classify_error(e), claimed_at, generation_ms=_elapsed_ms(started))
        generation_ms = generated.duration_ms or _elapsed_ms(started)

        if not (generated.title or "").strip() or not (generated.content or "").strip():
            failure = Failure(FailureKind.VALIDATION, "Generator returned an empty title or content")
            return self._fail(job, failure, claimed_at, generation_ms=generation_ms)

        if prior is not None:
            # No recorded text to complete from, but the ref still stands.
            logger.info(f"Job {job.id} already published as {prior.published_ref}; not publishing again")
            return self._complete(job, generated, prior.published_ref, claimed_at, generation_ms, None)

        match = self.guard.find_duplicate(job, content=generated.content)
        if match is not None:
            return self._complete_duplicate(job, match, claimed_at, generation_ms)

        self._acquire(PUBLISHING)
        started = time.monotonic()
        try:
            published = self.publisher.publish(
                generated.title, generated.content, list(job.tags or []), list(job.categories or []),
            )
        except Exception as e:
            logger.warning(f"Publish failed for job {job.id}: {e}")
            return self._fail(job, classify_error(e), claimed_at,
                              generation_ms=generation_ms, publish_ms=_elapsed_ms(started))
        publish_ms = published.duration_ms or _elapsed_ms(started)

        try:
            self.guard.assert_ref_available(job.id, published.external_ref)
            content_hash = self.fingerprinter.fingerprint(job.topic, content=generated.content).content_hash
            self.guard.record_publication(job, published.external_ref, generated.title,
                                          generated.content, content_hash)
            self.db.commit()
        except ConsistencyError as e:
            self.db.rollback()
            return self._fail(job, classify_error(e), claimed_at,
                              generation_ms=generation_ms, publish_ms=publish_ms)
        except Exception:
            self.db.rollback()
            raise

        return self._complete(job, generated, published.external_ref, claimed_at, generation_ms, publish_ms)

    # ------------------------------------------------------------------

    def _has_capacity(self) -> bool:
        if self.rate_limiter is None:
            return True
        for service in (GENERATION, PUBLISHING):
            check = self.rate_limiter.check(service)
            if not check.allowed:
                logger.info(f"Not claiming: {check.reason}, free in {check.wait_seconds:.0f}s")
                return False
        return True

    def _acquire(self, service: str) -> None:
        if self.rate_limiter is not None:
            self.rate_limiter.acquire(service)

    def _complete(self, job: Job, generated: GenerationResult, published_ref: str,
                  claimed_at, generation_ms: Optional[int], publish_ms: Optional[int]) -> ProcessResult:
        fingerprint = self.fingerprinter.fingerprint(
            job.topic, content=generated.content, title=generated.title,
        ).to_dict()
        try:
            self.engine.complete(
                job.id, generated.title, generated.content, published_ref,
                fingerprint=fingerprint, claimed_at=claimed_at,
                generation_ms=generation_ms, publish_ms=publish_ms,
            )
        except StaleTransitionError:
            # Published, but the sweeper reclaimed the job. The ref is on the
            # idempotency key, so the next attempt completes without publishing.
            logger.warning(f"Job {job.id} was reclaimed before completion")
            return ProcessResult(job.id, "stale", published_ref=published_ref)
        except ConsistencyError as e:
            return self._fail(job, classify_error(e), claimed_at,
                              generation_ms=generation_ms, publish_ms=publish_ms)
        return ProcessResult(job.id, "completed", published_ref=published_ref)

    def _complete_duplicate(self, job: Job, match, claimed_at,
                            generation_ms: Optional[int] = None) -> ProcessResult:
        try:
            self.engine.complete_as_duplicate(job.id, match, claimed_at=claimed_at,
                                              generation_ms=generation_ms)
        except StaleTransitionError:
            logger.warning(f"Job {job.id} was reclaimed before completing as duplicate")
            return ProcessResult(job.id, "stale")
        return ProcessResult(job.id, "duplicate", published_ref=match.published_ref)

    def _fail(self, job: Job, failure: Failure, claimed_at,
              generation_ms: Optional[int] = None, publish_ms: Optional[int] = None) -> ProcessResult:
        try:
            decision = self.engine.fail(job.id, failure, claimed_at=claimed_at,
                                        generation_ms=generation_ms, publish_ms=publish_ms)
        except StaleTransitionError:
            logger.warning(f"Job {job.id} was reclaimed before its failure was recorded")
            return ProcessResult(job.id, "stale")
        outcome = "retrying" if decision.will_retry else "failed"
        return ProcessResult(job.id, outcome, decision=decision)
