"""Tests for ClaimEngine: atomic claims, transitions, and the attempt history."""

import logging
import threading
from datetime import timedelta

import pytest

from contentqueue.core.timeutil import as_utc, utc_now
from contentqueue.exceptions import (
    ConsistencyError, InvalidTransitionError, StaleTransitionError, ValidationError,
)
from contentqueue.models import JobRun, JobStatus, RunOutcome
from contentqueue.services.claim_engine import MAX_CLAIM_ATTEMPTS, ClaimEngine, can_transition
from contentqueue.services.retry_policy import Failure, FailureKind


def _transient(message="connection reset by peer"):
    return Failure(FailureKind.TRANSIENT_NETWORK, message)


class TestAllowedTransitions:

    def test_pending_only_to_processing(self):
        assert can_transition(JobStatus.PENDING, JobStatus.PROCESSING)
        assert not can_transition(JobStatus.PENDING, JobStatus.COMPLETED)
        assert not can_transition(JobStatus.PENDING, JobStatus.ERROR)

    def test_processing_outcomes(self):
        for target in (JobStatus.COMPLETED, JobStatus.PENDING, JobStatus.ERROR):
            assert can_transition(JobStatus.PROCESSING, target)

    def test_completed_is_terminal(self):
        for target in JobStatus:
            assert not can_transition(JobStatus.COMPLETED, target)

    def test_error_only_back_to_pending(self):
        assert can_transition(JobStatus.ERROR, JobStatus.PENDING)
        assert not can_transition(JobStatus.ERROR, JobStatus.PROCESSING)


class TestClaimNext:

    def test_empty_queue_returns_none(self, db, settings):
        assert ClaimEngine(db, settings).claim_next() is None

    def test_claim_sets_processing_and_claimed_at(self, db, settings, make_job):
        job = make_job()
        claimed = ClaimEngine(db, settings).claim_next()

        assert claimed.id == job.id
        assert claimed.status == JobStatus.PROCESSING.value
        assert claimed.claimed_at is not None

    def test_oldest_job_claimed_first(self, db, settings, make_job):
        now = utc_now()
        newer = make_job(topic="Second topic", created_at=now)
        older = make_job(topic="First topic", created_at=now - timedelta(minutes=1))
        engine = ClaimEngine(db, settings)

        assert engine.claim_next().id == older.id
        assert engine.claim_next().id == newer.id
        assert engine.claim_next() is None

    def test_processing_jobs_are_not_claimed_again(self, db, settings, make_job):
        make_job()
        engine = ClaimEngine(db, settings)
        assert engine.claim_next() is not None
        assert engine.claim_next() is None

    def test_pending_job_at_retry_ceiling_is_not_eligible(self, db, settings, make_job):
        make_job(retry_count=3)
        assert ClaimEngine(db, settings).claim_next() is None

    def test_gives_up_after_repeated_lost_races(self, db, settings, make_job, monkeypatch, caplog):
        job = make_job()
        engine = ClaimEngine(db, settings)
        attempts = []

        def always_lose(*args, **kwargs):
            attempts.append(args[0])
            return False

        monkeypatch.setattr(engine.jobs, "update_for_transition", always_lose)

        with caplog.at_level(logging.INFO, logger="contentqueue.services.claim_engine"):
            assert engine.claim_next() is None

        assert attempts == [job.id] * MAX_CLAIM_ATTEMPTS
        assert "eligible jobs may remain" in caplog.text

    def test_concurrent_claims_never_return_the_same_job(self, session_factory, settings, make_job):
        job_ids = {make_job(topic=f"Topic number {i}").id for i in range(20)}
        claimed = []
        errors = []
        lock = threading.Lock()

        def worker():
            session = session_factory()
            try:
                engine = ClaimEngine(session, settings)
                while True:
                    job = engine.claim_next()
                    if job is None:
                        return
                    with lock:
                        claimed.append(job.id)
            except Exception as e:  # surfaced below
                errors.append(e)
            finally:
                session.close()

        threads = [threading.Thread(target=worker) for _ in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=60)

        assert errors == []
        assert len(claimed) == len(set(claimed))
        assert set(claimed) == job_ids


class TestComplete:

    def test_complete_records_result_and_run(self, db, settings, make_job):
        make_job()
        engine = ClaimEngine(db, settings)
        job = engine.claim_next()

        done = engine.complete(job.id, "Title", "Body text", "post-1",
                               fingerprint={"topic_hash": "abc"}, claimed_at=job.claimed_at)

        assert done.status == JobStatus.COMPLETED.value
        assert done.claimed_at is None
        assert done.published_ref == "post-1"
        assert done.completed_at is not None
        assert done.content_fingerprint == {"topic_hash": "abc"}
        runs = db.query(JobRun).filter(JobRun.job_id == job.id).all()
        assert [(r.attempt, r.outcome) for r in runs] == [(1, RunOutcome.COMPLETED.value)]

    @pytest.mark.parametrize("field", ["title", "content", "published_ref"])
    def test_empty_result_rejected(self, db, settings, make_job, field):
        make_job()
        engine = ClaimEngine(db, settings)
        job = engine.claim_next()
        values = {"title": "Title", "content": "Body", "published_ref": "post-1"}
        values[field] = "  "

        with pytest.raises(ValidationError):
            engine.complete(job.id, **values)
        assert engine.jobs.get_by_id(job.id).status == JobStatus.PROCESSING.value

    def test_ref_owned_by_another_job_is_a_consistency_error(self, db, settings, make_job,
                                                              make_completed_job):
        make_completed_job("Older topic entirely", "post-1")
        make_job(topic="Something unrelated")
        engine = ClaimEngine(db, settings)
        job = engine.claim_next()

        with pytest.raises(ConsistencyError):
            engine.complete(job.id, "Title", "Body", "post-1")
        assert engine.jobs.get_by_id(job.id).status == JobStatus.PROCESSING.value

    def test_duplicate_completion_shares_the_original_ref(self, db, settings, make_job,
                                                          make_completed_job):
        original = make_completed_job("Original topic", "post-1")
        make_job(topic="Another topic")
        engine = ClaimEngine(db, settings)
        job = engine.claim_next()

        done = engine.complete(job.id, "Title", "Body", "post-1", duplicate_of_job_id=original.id)

        assert done.published_ref == "post-1"
        assert done.duplicate_of_job_id == original.id
        run = engine.runs.list_for_job(job.id)[0]
        assert run.outcome == RunOutcome.DUPLICATE.value

    def test_completing_a_pending_job_is_invalid(self, db, settings, make_job):
        job = make_job()
        with pytest.raises(InvalidTransitionError):
            ClaimEngine(db, settings).complete(job.id, "Title", "Body", "post-1")

    def test_completing_with_a_lost_claim_is_stale(self, db, settings, make_job):
        make_job()
        engine = ClaimEngine(db, settings)
        job = engine.claim_next()
        old_claim = as_utc(job.claimed_at) - timedelta(minutes=30)

        with pytest.raises(StaleTransitionError):
            engine.complete(job.id, "Title", "Body", "post-1", claimed_at=old_claim)
        assert engine.jobs.get_by_id(job.id).status == JobStatus.PROCESSING.value


class TestFail:

    def test_retryable_failure_goes_back_to_pending(self, db, settings, make_job):
        make_job()
        engine = ClaimEngine(db, settings)
        job = engine.claim_next()
        now = utc_now()

        decision = engine.fail(job.id, _transient(), now=now)

        assert decision.will_retry
        stored = engine.jobs.get_by_id(job.id)
        assert stored.status == JobStatus.PENDING.value
        assert stored.retry_count == 1
        assert stored.claimed_at is None
        assert "connection reset" in stored.last_error
        assert as_utc(stored.next_attempt_at) == now + timedelta(seconds=settings.backoff_base_seconds)
        assert engine.runs.list_for_job(job.id)[0].outcome == RunOutcome.RETRYING.value

    def test_fatal_failure_goes_straight_to_error(self, db, settings, make_job):
        make_job()
        engine = ClaimEngine(db, settings)
        job = engine.claim_next()

        decision = engine.fail(job.id, Failure(FailureKind.AUTHORIZATION, "401 Unauthorized"))

        assert not decision.will_retry
        stored = engine.jobs.get_by_id(job.id)
        assert stored.status == JobStatus.ERROR.value
        assert stored.last_error
        assert stored.next_attempt_at is None

    def test_three_transient_failures_end_in_error(self, db, settings, make_job):
        make_job()
        engine = ClaimEngine(db, settings)

        for _ in range(3):
            job = engine.claim_next()
            assert job is not None
            engine.fail(job.id, _transient())

        stored = engine.jobs.get_by_id(job.id)
        assert stored.status == JobStatus.ERROR.value
        assert stored.retry_count == 3
        assert engine.claim_next() is None
        outcomes = [r.outcome for r in engine.runs.list_for_job(job.id)]
        assert outcomes == ["retrying", "retrying", "failed"]
        assert [r.attempt for r in engine.runs.list_for_job(job.id)] == [1, 2, 3]

    def test_fail_on_pending_job_is_invalid(self, db, settings, make_job):
        job = make_job()
        with pytest.raises(InvalidTransitionError):
            ClaimEngine(db, settings).fail(job.id, _transient())
