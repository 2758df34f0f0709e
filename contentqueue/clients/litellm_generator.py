"""Content generator backed by LiteLLM.

Any provider LiteLLM supports works; the job's model name is passed
through unchanged. Provider errors are re-raised as ExternalServiceError
carrying the HTTP status so the retry policy can classify them.
"""

import logging
import re
import time
from typing import Optional

from .base import ExternalServiceError, GenerationResult

logger = logging.getLogger(__name__)

SYSTEM_PROMPT = (
    "You write blog posts. Return the title on the first line, "
    "optionally wrapped in <title></title>, followed by the article body."
)

_TITLE_TAG = re.compile(r"<title>(.*?)</title>", re.I | re.S)
_HEADING_PREFIX = re.compile(r"^\s*(#+\s*|title:\s*)", re.I)


def parse_generation(text: str) -> tuple[str, str]:
    """Split raw model output into (title, content)."""
    text = (text or "").strip()
    match = _TITLE_TAG.search(text)
    if match:
        title = match.group(1).strip()
        content = _TITLE_TAG.sub("", text, count=1).strip()
        return title, content

    first, _, rest = text.partition("\n")
    title = _HEADING_PREFIX.sub("", first).strip().strip('"')
    return title, rest.strip()


class LiteLLMGenerator:
    """ContentGenerator using ``litellm.completion``."""

    def __init__(
        self,
        api_key: str = "",
        api_base: str = "",
        timeout: int = 120,
        max_tokens: int = 2048,
        temperature: float = 0.7,
    ):
        self.api_key = api_key
        self.api_base = api_base
        self.timeout = timeout
        self.max_tokens = max_tokens
        self.temperature = temperature

    @classmethod
    def from_settings(cls, settings) -> "LiteLLMGenerator":
        return cls(
            api_key=settings.generation_api_key,
            api_base=settings.generation_api_base,
            timeout=settings.generation_timeout_seconds,
        )

    def generate(self, prompt: str, model: str) -> GenerationResult:
        import litellm

        kwargs: dict = {
            "model": model,
            "messages": [
                {"role": "system", "content": SYSTEM_PROMPT},
                {"role": "user", "content": prompt},
            ],
            "max_tokens": self.max_tokens,
            "temperature": self.temperature,
            "timeout": self.timeout,
        }
        if self.api_key:
            kwargs["api_key"] = self.api_key
        if self.api_base:
            kwargs["api_base"] = self.api_base

        started = time.monotonic()
        try:
            response = litellm.completion(**kwargs)
        except Exception as e:
            raise ExternalServiceError(
                f"Generation failed: {e}",
                status_code=_status_code(e),
                retry_after=_retry_after(e),
            ) from e

        text = response.choices[0].message.content or ""
        title, content = parse_generation(text)
        duration_ms = int((time.monotonic() - started) * 1000)
        logger.debug(f"Generated {len(content.split())} words with {model} in {duration_ms}ms")
        return GenerationResult(title=title, content=content, duration_ms=duration_ms)


def _status_code(exc: Exception) -> int:
    status = getattr(exc, "status_code", None)
    try:
        return int(status) if status is not None else 0
    except (TypeError, ValueError):
        return 0


def _retry_after(exc: Exception) -> Optional[float]:
    response = getattr(exc, "response", None)
    headers = getattr(response, "headers", None) or {}
    value = headers.get("retry-after") if hasattr(headers, "get") else None
    try:
        return float(value) if value is not None else None
    except (TypeError, ValueError):
        return None
