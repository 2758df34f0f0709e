"""Failure classification and retry/backoff decisions.

External calls do not use exceptions for control flow past this module:
``classify_error`` turns whatever an adapter raised into a typed
``Failure``, and ``RetryPolicy.decide`` turns a Failure plus the job's
retry count into the next status.
"""

import random
import re
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Dict, Optional

import requests

from ..clients.base import ExternalServiceError
from ..core.config import Settings
from ..core.timeutil import utc_now
from ..exceptions import ConsistencyError, ValidationError
from ..models import JobStatus

# last_error is a human-readable summary, not a traceback.
MAX_ERROR_MESSAGE_LENGTH = 2000


class FailureKind(str, Enum):
    TRANSIENT_NETWORK = "transient_network"
    RATE_LIMITED = "rate_limited"
    DOWNSTREAM_UNAVAILABLE = "downstream_unavailable"
    VALIDATION = "validation"
    AUTHORIZATION = "authorization"
    CONSISTENCY = "consistency"


RETRYABLE_KINDS = frozenset({
    FailureKind.TRANSIENT_NETWORK,
    FailureKind.RATE_LIMITED,
    FailureKind.DOWNSTREAM_UNAVAILABLE,
})


@dataclass
class Failure:
    """Typed outcome of a failed external call."""
    kind: FailureKind
    message: str
    status_code: int = 0
    retry_after: Optional[float] = None

    @property
    def retryable(self) -> bool:
        return self.kind in RETRYABLE_KINDS

    def summary(self) -> str:
        """One line for Job.last_error."""
        text = f"[{self.kind.value}] {self.message}".strip()
        return text[:MAX_ERROR_MESSAGE_LENGTH]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind.value,
            "message": self.message[:MAX_ERROR_MESSAGE_LENGTH],
            "retryable": self.retryable,
            "status_code": self.status_code,
        }


# Checked in order; the first pattern that matches the message wins.
_MESSAGE_PATTERNS = (
    (re.compile(r"rate.?limit|too many requests|quota", re.I), FailureKind.RATE_LIMITED),
    (re.compile(r"unauthori[sz]ed|forbidden|invalid api key|authentication", re.I), FailureKind.AUTHORIZATION),
    (re.compile(r"timed? ?out|timeout|connection (reset|refused|aborted)|network", re.I), FailureKind.TRANSIENT_NETWORK),
    (re.compile(r"service unavailable|bad gateway|overloaded|temporarily unavailable", re.I), FailureKind.DOWNSTREAM_UNAVAILABLE),
    (re.compile(r"invalid|malformed|unprocessable|not found", re.I), FailureKind.VALIDATION),
)


def _kind_for_status(status_code: int) -> Optional[FailureKind]:
    if status_code in (0, 408):
        return FailureKind.TRANSIENT_NETWORK
    if status_code == 429:
        return FailureKind.RATE_LIMITED
    if 500 <= status_code < 600:
        return FailureKind.DOWNSTREAM_UNAVAILABLE
    if status_code in (401, 403):
        return FailureKind.AUTHORIZATION
    if status_code in (400, 404, 422):
        return FailureKind.VALIDATION
    return None


def classify_error(exc: BaseException) -> Failure:
    """Map an exception from a collaborator onto the failure taxonomy.

    Unknown errors are treated as transient so a bug in an adapter costs
    retries, not a lost job.
    """
    message = str(exc) or type(exc).__name__

    if isinstance(exc, ConsistencyError):
        return Failure(FailureKind.CONSISTENCY, message)
    if isinstance(exc, ValidationError):
        return Failure(FailureKind.VALIDATION, message)

    if isinstance(exc, ExternalServiceError):
        # status_code 0 only means "no response"; let the message refine it.
        kind = _kind_for_status(exc.status_code) if exc.status_code else None
        if kind is None:
            kind = _kind_for_message(message)
        if kind is None and exc.retryable is False:
            kind = FailureKind.VALIDATION
        return Failure(
            kind or FailureKind.TRANSIENT_NETWORK,
            message,
            status_code=exc.status_code,
            retry_after=exc.retry_after,
        )

    if isinstance(exc, requests.exceptions.HTTPError) and exc.response is not None:
        status = exc.response.status_code
        kind = _kind_for_status(status) or FailureKind.TRANSIENT_NETWORK
        return Failure(kind, message, status_code=status)

    if isinstance(exc, (requests.exceptions.Timeout, requests.exceptions.ConnectionError,
                        TimeoutError, ConnectionError)):
        return Failure(FailureKind.TRANSIENT_NETWORK, message)

    return Failure(_kind_for_message(message) or FailureKind.TRANSIENT_NETWORK, message)


def _kind_for_message(message: str) -> Optional[FailureKind]:
    for pattern, kind in _MESSAGE_PATTERNS:
        if pattern.search(message):
            return kind
    return None


@dataclass
class RetryDecision:
    """What the claim engine should write after a failed attempt."""
    status: JobStatus
    retry_count: int
    last_error: str
    delay_seconds: Optional[float] = None
    next_attempt_at: Optional[datetime] = None
    failure: Optional[Failure] = field(default=None, repr=False)

    @property
    def will_retry(self) -> bool:
        return self.status == JobStatus.PENDING


class RetryPolicy:
    """Bounded retries with capped exponential backoff.

    Args:
        max_retries: Attempts after which a job goes to error.
        base_seconds: Delay before the first retry.
        cap_seconds: Upper bound on any delay, jitter included.
        jitter: Maximum random jitter as a fraction of the delay.
        rng: Random source, injectable for tests.
    """

    def __init__(
        self,
        max_retries: int = 3,
        base_seconds: float = 60.0,
        cap_seconds: float = 3600.0,
        jitter: float = 0.1,
        rng: Optional[random.Random] = None,
    ):
        self.max_retries = max_retries
        self.base_seconds = base_seconds
        self.cap_seconds = cap_seconds
        self.jitter = jitter
        self._rng = rng or random.Random()

    @classmethod
    def from_settings(cls, settings: Settings, rng: Optional[random.Random] = None) -> "RetryPolicy":
        return cls(
            max_retries=settings.max_retries,
            base_seconds=settings.backoff_base_seconds,
            cap_seconds=settings.backoff_cap_seconds,
            jitter=settings.backoff_jitter,
            rng=rng,
        )

    def base_delay(self, attempt: int) -> float:
        """Deterministic part of the delay: min(base * 2**(attempt-1), cap)."""
        attempt = max(1, attempt)
        # Exponent capped to keep the float finite; the cap wins long before.
        return min(self.base_seconds * (2 ** min(attempt - 1, 32)), self.cap_seconds)

    def backoff_delay(self, attempt: int) -> float:
        """Delay in seconds before retry number ``attempt`` (1-based)."""
        delay = self.base_delay(attempt)
        if self.jitter > 0:
            delay += self._rng.uniform(0, delay * self.jitter)
        return min(delay, self.cap_seconds)

    def decide(self, retry_count: int, failure: Failure, now: Optional[datetime] = None) -> RetryDecision:
        """Next status for a job that failed with ``failure`` at ``retry_count``."""
        now = now or utc_now()
        next_count = min(retry_count + 1, self.max_retries)

        if failure.retryable and retry_count + 1 < self.max_retries:
            delay = self.backoff_delay(retry_count + 1)
            if failure.kind == FailureKind.RATE_LIMITED and failure.retry_after:
                delay = min(max(delay, failure.retry_after), self.cap_seconds)
            return RetryDecision(
                status=JobStatus.PENDING,
                retry_count=next_count,
                last_error=failure.summary(),
                delay_seconds=delay,
                next_attempt_at=now + timedelta(seconds=delay),
                failure=failure,
            )

        return RetryDecision(
            status=JobStatus.ERROR,
            retry_count=next_count,
            last_error=failure.summary(),
            failure=failure,
        )
