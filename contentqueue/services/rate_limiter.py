"""Request limits for the generation and publishing services.

A worker owns one RateLimiter and hands it to its JobProcessor. Counts are
kept in memory for that worker only: they start empty, slide with time,
and are cleared by reset(). Workers do not share limits.
"""

import logging
import time
from collections import deque
from dataclasses import dataclass
from typing import Callable, Deque, Dict, Optional

from ..core.config import Settings

logger = logging.getLogger(__name__)

GENERATION = "generation"
PUBLISHING = "publishing"

MINUTE_SECONDS = 60.0
HOUR_SECONDS = 3600.0


@dataclass(frozen=True)
class RateLimit:
    """Request ceilings for one service. A zero ceiling is not enforced."""
    requests_per_minute: int
    requests_per_hour: int
    burst_limit: int = 0
    burst_seconds: float = 10.0


@dataclass
class RateLimitCheck:
    allowed: bool
    wait_seconds: float = 0.0
    reason: Optional[str] = None


class RateLimiter:
    """
    Sliding-window request counter per service.

    Args:
        limits: Service name to RateLimit. Unknown services are unlimited.
        clock: Monotonic time in seconds.
        sleep: Used by acquire() to wait until a window frees up.
    """

    def __init__(self, limits: Dict[str, RateLimit],
                 clock: Callable[[], float] = time.monotonic,
                 sleep: Callable[[float], None] = time.sleep):
        self.limits = dict(limits)
        self.clock = clock
        self.sleep = sleep
        self._requests: Dict[str, Deque[float]] = {}

    @classmethod
    def from_settings(cls, settings: Settings) -> "RateLimiter":
        return cls({
            GENERATION: RateLimit(
                settings.generation_requests_per_minute,
                settings.generation_requests_per_hour,
                settings.generation_burst_limit,
                settings.generation_burst_seconds,
            ),
            PUBLISHING: RateLimit(
                settings.publish_requests_per_minute,
                settings.publish_requests_per_hour,
                settings.publish_burst_limit,
                settings.publish_burst_seconds,
            ),
        })

    def _recent(self, service: str, now: float) -> Deque[float]:
        requests = self._requests.setdefault(service, deque())
        while requests and now - requests[0] >= HOUR_SECONDS:
            requests.popleft()
        return requests

    def check(self, service: str) -> RateLimitCheck:
        """Whether one more request to ``service`` fits, and if not, how long to wait."""
        limit = self.limits.get(service)
        if limit is None:
            return RateLimitCheck(True)

        now = self.clock()
        requests = self._recent(service, now)
        windows = (
            ("burst", limit.burst_limit, limit.burst_seconds),
            ("per-minute", limit.requests_per_minute, MINUTE_SECONDS),
            ("per-hour", limit.requests_per_hour, HOUR_SECONDS),
        )
        for label, ceiling, window in windows:
            if not ceiling:
                continue
            in_window = [t for t in requests if now - t < window]
            if len(in_window) >= ceiling:
                return RateLimitCheck(
                    allowed=False,
                    wait_seconds=window - (now - in_window[0]),
                    reason=f"{service} {label} limit of {ceiling} requests reached",
                )
        return RateLimitCheck(True)

    def record(self, service: str) -> None:
        now = self.clock()
        self._recent(service, now).append(now)

    def acquire(self, service: str) -> float:
        """Wait until ``service`` has room, then count one request.

        Returns:
            Seconds spent waiting.
        """
        waited = 0.0
        check = self.check(service)
        while not check.allowed:
            logger.info(f"Waiting {check.wait_seconds:.1f}s: {check.reason}")
            self.sleep(check.wait_seconds)
            waited += check.wait_seconds
            check = self.check(service)
        self.record(service)
        return waited

    def usage(self, service: str) -> Dict[str, int]:
        """Requests counted in the last minute and hour."""
        now = self.clock()
        requests = self._recent(service, now)
        return {
            "last_minute": sum(1 for t in requests if now - t < MINUTE_SECONDS),
            "last_hour": len(requests),
        }

    def reset(self, service: Optional[str] = None) -> None:
        """Forget counted requests for one service, or for all of them."""
        if service is None:
            self._requests.clear()
        else:
            self._requests.pop(service, None)
        logger.info(f"Rate limit counters reset ({service or 'all services'})")
