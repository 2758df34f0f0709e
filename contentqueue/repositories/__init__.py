"""Repositories: all SQL lives here."""

from .job_repository import JobRepository
from .job_run_repository import JobRunRepository
from .idempotency_repository import IdempotencyRepository
from .alert_repository import AlertRepository
from .sweep_repository import SweepRepository

__all__ = [
    "JobRepository",
    "JobRunRepository",
    "IdempotencyRepository",
    "AlertRepository",
    "SweepRepository",
]
