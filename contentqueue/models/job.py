"""Content job model."""

from enum import Enum

from sqlalchemy import CheckConstraint, Column, DateTime, Index, Integer, JSON, String, Text, text

from ..core.timeutil import utc_now
from ..database import Base

# Hard ceiling for retry_count, enforced by the table itself. The configured
# Settings.max_retries may be lower, never higher.
RETRY_COUNT_CEILING = 3

TOPIC_MAX_LENGTH = 500
PROMPT_TEMPLATE_MAX_LENGTH = 10000
MAX_TAGS = 10
MAX_CATEGORIES = 5

ALLOWED_MODELS = (
    "gpt-4",
    "gpt-4-turbo",
    "gpt-4o",
    "gpt-4o-mini",
    "gpt-3.5-turbo",
    "gpt-3.5-turbo-16k",
)
DEFAULT_MODEL = "gpt-4o-mini"


class JobStatus(str, Enum):
    """Job lifecycle states.

    pending -> processing -> completed | pending (retry) | error
    error -> pending only through an audited admin override.
    """
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    ERROR = "error"


class Job(Base):
    """
    A unit of content to generate and publish.

    Mutated only by the claim engine, the sweeper, and the admin override,
    always through a conditional UPDATE (see JobRepository.update_for_transition).
    The CHECK constraints below hold the status invariants at write time so a
    direct write cannot leave a row in an impossible state.
    """

    __tablename__ = "content_jobs"
    __table_args__ = (
        CheckConstraint(
            "status IN ('pending', 'processing', 'completed', 'error')",
            name="ck_content_jobs_status_valid",
        ),
        CheckConstraint(
            "(status = 'processing' AND claimed_at IS NOT NULL) OR "
            "(status <> 'processing' AND claimed_at IS NULL)",
            name="ck_content_jobs_claimed_at_processing",
        ),
        CheckConstraint(
            "status <> 'completed' OR (generated_title IS NOT NULL "
            "AND generated_content IS NOT NULL AND published_ref IS NOT NULL)",
            name="ck_content_jobs_completed_has_result",
        ),
        CheckConstraint(
            "status <> 'error' OR (last_error IS NOT NULL AND LENGTH(TRIM(last_error)) > 0)",
            name="ck_content_jobs_error_has_message",
        ),
        CheckConstraint(
            f"retry_count >= 0 AND retry_count <= {RETRY_COUNT_CEILING}",
            name="ck_content_jobs_retry_count_range",
        ),
        CheckConstraint(
            f"LENGTH(TRIM(topic)) > 0 AND LENGTH(topic) <= {TOPIC_MAX_LENGTH}",
            name="ck_content_jobs_topic_not_empty",
        ),
        CheckConstraint(
            f"prompt_template IS NULL OR LENGTH(prompt_template) <= {PROMPT_TEMPLATE_MAX_LENGTH}",
            name="ck_content_jobs_prompt_template_length",
        ),
        Index("ix_content_jobs_status_created_at", "status", "created_at"),
        Index("ix_content_jobs_claimed_at", "claimed_at"),
        Index("ix_content_jobs_completed_at", "completed_at"),
        # One publication per ref. Jobs that completed as duplicates point at
        # the original's ref and are excluded.
        Index(
            "ux_content_jobs_published_ref",
            "published_ref",
            unique=True,
            sqlite_where=text("published_ref IS NOT NULL AND duplicate_of_job_id IS NULL"),
            postgresql_where=text("published_ref IS NOT NULL AND duplicate_of_job_id IS NULL"),
        ),
    )

    # Primary key (UUID format)
    id = Column(String(50), primary_key=True)

    # Input
    topic = Column(String(TOPIC_MAX_LENGTH), nullable=False)
    prompt_template = Column(Text, nullable=True)
    model = Column(String(50), nullable=False, default=DEFAULT_MODEL)
    tags = Column(JSON, nullable=False, default=list)
    categories = Column(JSON, nullable=False, default=list)

    # Lifecycle
    status = Column(String(20), nullable=False, default=JobStatus.PENDING.value)
    retry_count = Column(Integer, nullable=False, default=0)
    claimed_at = Column(DateTime(timezone=True), nullable=True)
    last_error = Column(Text, nullable=True)
    # Advisory: earliest time a retry should run. The claim does not enforce it.
    next_attempt_at = Column(DateTime(timezone=True), nullable=True)

    # Result
    generated_title = Column(String(200), nullable=True)
    generated_content = Column(Text, nullable=True)
    published_ref = Column(String(100), nullable=True)
    duplicate_of_job_id = Column(String(50), nullable=True)
    content_fingerprint = Column(JSON, nullable=True)

    # Timestamps (set in Python so FIFO ordering keeps sub-second precision)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utc_now)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utc_now)
    completed_at = Column(DateTime(timezone=True), nullable=True)

    @property
    def is_duplicate(self) -> bool:
        return self.duplicate_of_job_id is not None
