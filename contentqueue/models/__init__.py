"""Database models."""

from .job import Job, JobStatus
from .job_run import JobRun, RunOutcome
from .idempotency_key import IdempotencyKey
from .alert import AlertRule, Alert, Severity, ConditionType
from .sweep_record import SweepRecord
from .admin_override import AdminOverrideLog

__all__ = [
    "Job", "JobStatus",
    "JobRun", "RunOutcome",
    "IdempotencyKey",
    "AlertRule", "Alert", "Severity", "ConditionType",
    "SweepRecord",
    "AdminOverrideLog",
]
