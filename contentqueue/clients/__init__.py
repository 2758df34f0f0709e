"""Collaborator contracts and their adapters."""

from .base import (
    ContentGenerator, ExternalServiceError, GenerationResult, Notifier, PublishResult, Publisher,
)

__all__ = [
    "ContentGenerator", "ExternalServiceError", "GenerationResult",
    "Notifier", "PublishResult", "Publisher",
]
