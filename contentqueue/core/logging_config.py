"""Logging setup for workers.

``LOG_FORMAT=json`` (the default) writes one JSON object per line for log
shipping; ``text`` is for a terminal. While a worker processes a job, every
record carries the job's id (see ``job_context``), including records from
the repositories and adapters that never see the job object.
"""

import contextvars
import json
import logging
import re
import sys
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Iterator, Optional


# Set by the job processor, read by the formatter.
job_id_var: contextvars.ContextVar[str] = contextvars.ContextVar("job_id", default="")


@contextmanager
def job_context(job_id: str) -> Iterator[None]:
    """Tag every log record emitted inside the block with ``job_id``."""
    token = job_id_var.set(job_id)
    try:
        yield
    finally:
        job_id_var.reset(token)


class _JsonFormatter(logging.Formatter):
    """One JSON object per record.

    ``extra={...}`` fields land at the top level next to timestamp, level,
    logger, message and (inside ``job_context``) job_id.
    """

    _STANDARD_ATTRS = frozenset(vars(logging.LogRecord("", 0, "", 0, "", (), None))) | {"message"}

    def format(self, record: logging.LogRecord) -> str:
        entry: dict = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        job_id = job_id_var.get()
        if job_id:
            entry["job_id"] = job_id

        entry.update({
            key: value for key, value in vars(record).items()
            if key not in self._STANDARD_ATTRS and key not in entry
        })

        if record.exc_info:
            entry["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str)


# ---------------------------------------------------------------------------
# Secret redaction: provider keys and WordPress app passwords end up in
# exception messages from the HTTP clients.
# ---------------------------------------------------------------------------

_REDACTED = "***REDACTED***"

# (pattern, replacement); a replacement keeps the label and drops the value.
_SECRET_PATTERNS = [
    (re.compile(r'\b(?:sk|or)-[A-Za-z0-9_\-]{20,}'), _REDACTED),
    (re.compile(r'(?i)\b(bearer|basic)(\s+)[A-Za-z0-9._\-+/=]{16,}'), r'\1\2' + _REDACTED),
    (re.compile(r'(?i)\b(api_key|app_password|password|secret|token|authorization)([=:]\s*)[^\s,\'"]{8,}'),
     r'\1\2' + _REDACTED),
]


class _SecretFilter(logging.Filter):
    """Scrub credentials from the message and any formatted traceback."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.msg = self._redact(str(record.msg))
        if record.exc_text:
            record.exc_text = self._redact(record.exc_text)
        return True

    @staticmethod
    def _redact(text: str) -> str:
        for pattern, replacement in _SECRET_PATTERNS:
            text = pattern.sub(replacement, text)
        return text


def setup_logging(log_level: Optional[str] = None, log_format: Optional[str] = None) -> None:
    """Install a single stdout handler on the root logger.

    Args:
        log_level: DEBUG, INFO, WARNING, ERROR or CRITICAL (default INFO).
        log_format: ``"json"`` (default) or ``"text"``.
    """
    level = (log_level or "INFO").upper()
    fmt = (log_format or "json").lower()

    handler = logging.StreamHandler(sys.stdout)
    handler.addFilter(_SecretFilter())
    if fmt == "json":
        handler.setFormatter(_JsonFormatter())
    else:
        handler.setFormatter(logging.Formatter(
            fmt="%(asctime)s %(levelname)-8s %(name)s: %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        ))

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(level)

    for noisy in ("sqlalchemy.engine", "urllib3", "LiteLLM", "httpx"):
        logging.getLogger(noisy).setLevel(logging.WARNING)

    logging.getLogger(__name__).info("Logging configured", extra={"level": level, "format": fmt})
