"""End-to-end tests for JobProcessor with fake generator and publisher."""

from datetime import timedelta

from contentqueue.clients.base import ExternalServiceError
from contentqueue.core.timeutil import utc_now
from contentqueue.models import IdempotencyKey, JobStatus
from contentqueue.services.claim_engine import ClaimEngine
from contentqueue.services.fingerprint import TokenOverlapFingerprinter
from contentqueue.services.idempotency_guard import IdempotencyGuard
from contentqueue.services.job_service import JobService
from contentqueue.services.processor import JobProcessor, build_prompt
from contentqueue.services.rate_limiter import GENERATION, PUBLISHING, RateLimit, RateLimiter
from contentqueue.services.sweeper import Sweeper


def _processor(db, settings, generator, publisher):
    return JobProcessor(db, generator, publisher, settings=settings)


class TestBuildPrompt:

    def test_topic_substituted_into_template(self, make_job):
        job = make_job(topic="Cold brew", prompt_template="Explain {topic} to a beginner")
        assert build_prompt(job) == "Explain Cold brew to a beginner"

    def test_default_template(self, make_job):
        job = make_job(topic="Cold brew")
        assert "Cold brew" in build_prompt(job)


class TestRunOnce:

    def test_empty_queue(self, db, settings, generator, publisher):
        assert _processor(db, settings, generator, publisher).run_once() is None

    def test_happy_path_publishes_once_and_completes(self, db, settings, generator, publisher):
        job_id = JobService(db).enqueue("Pour-over coffee basics", tags=["coffee"], categories=["Guides"])

        result = _processor(db, settings, generator, publisher).run_once()

        assert result.outcome == "completed"
        assert result.published_ref == "post-100"
        assert len(publisher.calls) == 1
        assert publisher.calls[0][2:] == (["coffee"], ["Guides"])

        job = JobService(db).get_job(job_id)
        assert job.status == JobStatus.COMPLETED.value
        assert job.generated_title == generator.title
        assert job.content_fingerprint["word_count"] == len(generator.content.split())
        assert job.content_fingerprint["topic_hash"]

        guard = IdempotencyGuard(db, settings)
        assert guard.prior_publication(job).published_ref == "post-100"

    def test_transient_failures_exhaust_retries(self, db, settings, generator, publisher):
        job_id = JobService(db).enqueue("Flaky provider topic")
        generator.errors = [ExternalServiceError("Request timed out", status_code=0) for _ in range(3)]
        processor = _processor(db, settings, generator, publisher)

        outcomes = [processor.run_once().outcome for _ in range(3)]

        assert outcomes == ["retrying", "retrying", "failed"]
        job = JobService(db).get_job(job_id)
        assert job.status == JobStatus.ERROR.value
        assert job.retry_count == 3
        assert publisher.calls == []
        assert processor.run_once() is None

    def test_authorization_failure_is_fatal(self, db, settings, generator, publisher):
        job_id = JobService(db).enqueue("Some topic")
        generator.errors = [ExternalServiceError("Invalid API key", status_code=401)]

        result = _processor(db, settings, generator, publisher).run_once()

        assert result.outcome == "failed"
        assert JobService(db).get_job(job_id).retry_count == 1

    def test_publish_rate_limit_is_retried(self, db, settings, generator, publisher):
        job_id = JobService(db).enqueue("Some topic")
        publisher.errors = [ExternalServiceError("Too Many Requests", status_code=429, retry_after=300)]

        result = _processor(db, settings, generator, publisher).run_once()

        assert result.outcome == "retrying"
        assert result.decision.delay_seconds == 300
        assert JobService(db).get_job(job_id).status == JobStatus.PENDING.value

    def test_empty_generation_is_a_validation_failure(self, db, settings, generator, publisher):
        JobService(db).enqueue("Some topic")
        generator.content = "   "

        result = _processor(db, settings, generator, publisher).run_once()

        assert result.outcome == "failed"
        assert publisher.calls == []


class TestDuplicateSuppression:

    def test_similar_topic_skips_generation_and_publish(self, db, settings, generator, publisher,
                                                        make_completed_job):
        original = make_completed_job("Ten best hiking trails in Colorado", "post-1")
        job_id = JobService(db).enqueue("Ten Best Hiking Trails in Colorado")

        result = _processor(db, settings, generator, publisher).run_once()

        assert result.outcome == "duplicate"
        assert generator.calls == []
        assert publisher.calls == []
        job = JobService(db).get_job(job_id)
        assert job.status == JobStatus.COMPLETED.value
        assert job.published_ref == "post-1"
        assert job.duplicate_of_job_id == original.id

    def test_same_content_skips_publish(self, db, settings, generator, publisher, make_completed_job):
        fp = TokenOverlapFingerprinter().fingerprint("x", content=generator.content)
        make_completed_job("An older unrelated subject", "post-1", content=generator.content,
                           content_fingerprint=fp.to_dict())
        JobService(db).enqueue("A brand new subject")

        result = _processor(db, settings, generator, publisher).run_once()

        assert result.outcome == "duplicate"
        assert len(generator.calls) == 1
        assert publisher.calls == []

    def test_reclaimed_job_does_not_publish_twice(self, db, settings, generator, publisher):
        job_id = JobService(db).enqueue("Crash after publish")
        now = utc_now()
        job = ClaimEngine(db, settings).claim_next(now=now - timedelta(minutes=15))
        guard = IdempotencyGuard(db, settings)
        guard.register_claim(job)
        guard.record_publication(job, "post-55", "Live title", "Live article body.")
        db.commit()
        Sweeper(db, settings).sweep(now=now)

        result = _processor(db, settings, generator, publisher).run_once()

        assert result.outcome == "completed"
        assert result.published_ref == "post-55"
        assert publisher.calls == []
        assert generator.calls == []
        job = JobService(db).get_job(job_id)
        assert job.published_ref == "post-55"
        assert (job.generated_title, job.generated_content) == ("Live title", "Live article body.")

    def test_reclaimed_job_completes_even_when_generator_is_down(self, db, settings, generator,
                                                                 publisher):
        job_id = JobService(db).enqueue("Crash after publish, provider down")
        now = utc_now()
        job = ClaimEngine(db, settings).claim_next(now=now - timedelta(minutes=15))
        guard = IdempotencyGuard(db, settings)
        guard.register_claim(job)
        guard.record_publication(job, "post-live-1", "Live title", "Live article body.")
        db.commit()
        Sweeper(db, settings).sweep(now=now)
        generator.errors = [ExternalServiceError("Request timed out") for _ in range(3)]

        result = _processor(db, settings, generator, publisher).run_once()

        assert result.outcome == "completed"
        assert result.published_ref == "post-live-1"
        assert generator.calls == []
        assert publisher.calls == []
        job = JobService(db).get_job(job_id)
        assert job.status == JobStatus.COMPLETED.value
        assert job.generated_content == "Live article body."


    def test_recorded_ref_without_text_regenerates_but_does_not_publish(self, db, settings,
                                                                        generator, publisher):
        job_id = JobService(db).enqueue("Crash after publish, text missing")
        now = utc_now()
        job = ClaimEngine(db, settings).claim_next(now=now - timedelta(minutes=15))
        guard = IdempotencyGuard(db, settings)
        guard.register_claim(job)
        guard.record_publication(job, "post-77", "Live title", "Live article body.")
        db.query(IdempotencyKey).update({"published_title": None, "published_content": None})
        db.commit()
        Sweeper(db, settings).sweep(now=now)

        result = _processor(db, settings, generator, publisher).run_once()

        assert result.published_ref == "post-77"
        assert len(generator.calls) == 1
        assert publisher.calls == []
        assert JobService(db).get_job(job_id).generated_title == generator.title

    def test_publisher_returning_an_owned_ref_is_a_defect(self, db, settings, generator, publisher,
                                                          make_completed_job):
        make_completed_job("Completely different subject", "post-100")
        job_id = JobService(db).enqueue("Fresh topic here")

        result = _processor(db, settings, generator, publisher).run_once()

        assert result.outcome == "failed"
        job = JobService(db).get_job(job_id)
        assert job.status == JobStatus.ERROR.value
        assert "consistency" in job.last_error


class TestRateLimits:

    def test_exhausted_limit_leaves_job_unclaimed(self, db, settings, generator, publisher):
        job_id = JobService(db).enqueue("Rate limited topic")
        limiter = RateLimiter({GENERATION: RateLimit(requests_per_minute=1, requests_per_hour=0)},
                              clock=lambda: 1000.0)
        limiter.record(GENERATION)
        processor = JobProcessor(db, generator, publisher, settings=settings, rate_limiter=limiter)

        assert processor.run_once() is None

        assert generator.calls == []
        assert JobService(db).get_job(job_id).status == JobStatus.PENDING.value

    def test_calls_are_counted_per_service(self, db, settings, generator, publisher):
        JobService(db).enqueue("Counted topic")
        limiter = RateLimiter.from_settings(settings)
        processor = JobProcessor(db, generator, publisher, settings=settings, rate_limiter=limiter)

        assert processor.run_once().outcome == "completed"

        assert limiter.usage(GENERATION)["last_minute"] == 1
        assert limiter.usage(PUBLISHING)["last_minute"] == 1
