"""Monitoring schemas: failure rate, alerts, sweeper health."""

from datetime import datetime
from typing import Dict, Optional

from pydantic import BaseModel


class FailureRateSummary(BaseModel):
    """Failure rate over a trailing window of job runs."""
    rate: float
    total: int
    failed: int
    window_seconds: int
    counts: Dict[str, int]


class AlertResponse(BaseModel):
    """Alert as handed to notification channels."""
    id: str
    rule_id: str
    severity: str
    message: str
    value: float
    threshold: float
    window_seconds: int
    total_runs: int
    failed_runs: int
    escalation_level: int
    created_at: datetime
    resolved: bool
    resolved_at: Optional[datetime] = None
    resolved_by: Optional[str] = None

    class Config:
        from_attributes = True


class SweepHealth(BaseModel):
    """Aggregate over recent sweeper runs."""
    sweeps: int
    jobs_inspected: int
    stale_found: int
    jobs_reset: int
    jobs_failed: int
    errors: int
    average_duration_ms: float
    last_sweep_at: Optional[datetime] = None
    status: str  # healthy | degraded | idle


class RunStats(BaseModel):
    """Job run statistics over a window."""
    total: int
    succeeded: int
    failed: int
    average_total_ms: Optional[float] = None
