"""Shared test fixtures for the contentqueue test suite.

Each test gets a fresh SQLite database file under tmp_path, so tests are
isolated without truncation. Set TEST_DATABASE_URL to run the suite
against PostgreSQL instead; tables are dropped and recreated per test.

Collaborators (generator, publisher, notifier) are small fakes that
record their calls and can be told to fail.
"""

import os
from datetime import datetime, timedelta
from itertools import count
from typing import Optional

os.environ["LOG_FORMAT"] = "text"

import pytest

from contentqueue import models  # noqa: F401  (registers tables on Base)
from contentqueue.clients.base import ExternalServiceError, GenerationResult, PublishResult
from contentqueue.core.config import Settings
from contentqueue.core.timeutil import utc_now
from contentqueue.database import Base, build_engine, build_session_factory, init_db
from contentqueue.models import Job, JobStatus
from contentqueue.repositories import JobRepository
from contentqueue.schemas.job import JobCreate


@pytest.fixture()
def settings(tmp_path):
    """Settings with deterministic backoff (no jitter)."""
    url = os.environ.get("TEST_DATABASE_URL") or f"sqlite:///{tmp_path / 'queue.db'}"
    return Settings(database_url=url, backoff_jitter=0.0, _env_file=None)


@pytest.fixture()
def engine(settings):
    engine = build_engine(settings.database_url, settings)
    if engine.dialect.name != "sqlite":
        Base.metadata.drop_all(bind=engine)
    init_db(engine)
    yield engine
    engine.dispose()


@pytest.fixture()
def session_factory(engine):
    """Factory for tests that need several independent sessions."""
    return build_session_factory(engine)


@pytest.fixture()
def db(session_factory):
    """Per-test database session."""
    session = session_factory()
    yield session
    session.close()


_ids = count(1)


@pytest.fixture()
def make_job(db):
    """Insert a job directly, optionally already in a later state.

    ``created_at`` controls FIFO order; extra keyword arguments are set on
    the row before it is written (they must satisfy the table constraints).
    """

    def _make(topic: str = "How to brew pour-over coffee",
              created_at: Optional[datetime] = None, **fields) -> Job:
        job = JobRepository(db).create(
            f"job-{next(_ids):04d}",
            JobCreate(topic=topic, tags=fields.pop("tags", []), categories=fields.pop("categories", [])),
            now=created_at or utc_now(),
        )
        for name, value in fields.items():
            setattr(job, name, value)
        db.commit()
        return job

    return _make


@pytest.fixture()
def make_completed_job(make_job):
    """A job that already owns a publication."""

    def _make(topic: str, published_ref: str, content: str = "Original article body.",
              completed_at: Optional[datetime] = None, **fields) -> Job:
        completed_at = completed_at or utc_now()
        return make_job(
            topic=topic,
            created_at=completed_at - timedelta(minutes=5),
            status=JobStatus.COMPLETED.value,
            generated_title=f"Title for {topic}",
            generated_content=content,
            published_ref=published_ref,
            completed_at=completed_at,
            **fields,
        )

    return _make


class FakeGenerator:
    """ContentGenerator that returns canned text or raises queued errors."""

    def __init__(self, title: str = "Brewing Better Coffee",
                 content: str = "Pour-over coffee rewards patience and a steady hand."):
        self.title = title
        self.content = content
        self.errors: list = []
        self.calls: list = []

    def generate(self, prompt: str, model: str) -> GenerationResult:
        self.calls.append((prompt, model))
        if self.errors:
            raise self.errors.pop(0)
        return GenerationResult(title=self.title, content=self.content, duration_ms=5)


class FakePublisher:
    """Publisher that hands out sequential post ids."""

    def __init__(self):
        self.errors: list = []
        self.calls: list = []
        self._next = count(100)

    def publish(self, title, content, tags, categories) -> PublishResult:
        self.calls.append((title, content, tags, categories))
        if self.errors:
            raise self.errors.pop(0)
        return PublishResult(external_ref=f"post-{next(self._next)}", duration_ms=3)


class RecordingNotifier:

    def __init__(self, fail: bool = False):
        self.fail = fail
        self.alerts: list = []

    def notify(self, alert) -> None:
        self.alerts.append(alert)
        if self.fail:
            raise ExternalServiceError("webhook down", status_code=503)


@pytest.fixture()
def generator():
    return FakeGenerator()


@pytest.fixture()
def publisher():
    return FakePublisher()


@pytest.fixture()
def notifier():
    return RecordingNotifier()
