"""Pydantic schemas for queue inputs and read models."""

from .job import JobCreate, JobResponse, JobRunResponse, JobPage, IntegrityReport
from .monitoring import FailureRateSummary, AlertResponse, SweepHealth, RunStats

__all__ = [
    "JobCreate", "JobResponse", "JobRunResponse", "JobPage", "IntegrityReport",
    "FailureRateSummary", "AlertResponse", "SweepHealth", "RunStats",
]
