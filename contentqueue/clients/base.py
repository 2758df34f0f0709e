"""Collaborator contracts: content generator, publisher, notifier.

Adapters raise ExternalServiceError for anything that went wrong on the
other side; the retry policy classifies it. The queue core never imports a
concrete adapter.
"""

from dataclasses import dataclass
from typing import List, Optional, Protocol, runtime_checkable

from ..models import Alert


class ExternalServiceError(Exception):
    """A generator or publisher call failed.

    Args:
        status_code: HTTP status of the failing call, 0 when no response arrived.
        retryable: The adapter's own opinion, None when it has none.
        retry_after: Seconds the provider asked us to wait, if it said.
    """

    def __init__(
        self,
        message: str,
        status_code: int = 0,
        retryable: Optional[bool] = None,
        retry_after: Optional[float] = None,
    ):
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.retryable = retryable
        self.retry_after = retry_after


@dataclass
class GenerationResult:
    title: str
    content: str
    duration_ms: int = 0


@dataclass
class PublishResult:
    external_ref: str
    duration_ms: int = 0


@runtime_checkable
class ContentGenerator(Protocol):
    def generate(self, prompt: str, model: str) -> GenerationResult:
        ...


@runtime_checkable
class Publisher(Protocol):
    def publish(self, title: str, content: str, tags: List[str], categories: List[str]) -> PublishResult:
        ...


@runtime_checkable
class Notifier(Protocol):
    def notify(self, alert: Alert) -> None:
        ...
