"""Queue services: claiming, retries, duplicate guard, sweeping, monitoring."""

from .claim_engine import ALLOWED_TRANSITIONS, ClaimEngine, can_transition
from .retry_policy import Failure, FailureKind, RetryDecision, RetryPolicy, classify_error
from .fingerprint import ContentFingerprint, Fingerprinter, TokenOverlapFingerprinter
from .idempotency_guard import DuplicateMatch, IdempotencyGuard, PriorPublication
from .sweeper import Sweeper
from .failure_monitor import FailureRateMonitor
from .job_service import JobService
from .admin_service import AdminService
from .rate_limiter import RateLimit, RateLimiter
from .processor import JobProcessor, ProcessResult

__all__ = [
    "ALLOWED_TRANSITIONS", "ClaimEngine", "can_transition",
    "Failure", "FailureKind", "RetryDecision", "RetryPolicy", "classify_error",
    "ContentFingerprint", "Fingerprinter", "TokenOverlapFingerprinter",
    "DuplicateMatch", "IdempotencyGuard", "PriorPublication",
    "Sweeper",
    "FailureRateMonitor",
    "JobService",
    "AdminService",
    "RateLimit", "RateLimiter",
    "JobProcessor", "ProcessResult",
]
