"""Idempotency key repository."""

from datetime import datetime
from typing import Optional

from sqlalchemy import delete

from ..models import IdempotencyKey


class IdempotencyRepository:
    """Reads and writes per-job idempotency keys. The caller commits."""

    def __init__(self, db):
        self.db = db

    def get(self, key: str) -> Optional[IdempotencyKey]:
        return (
            self.db.query(IdempotencyKey)
            .populate_existing()
            .filter(IdempotencyKey.key == key)
            .first()
        )

    def upsert(self, key: str, job_id: str, topic_hash: str, expires_at: datetime) -> IdempotencyKey:
        """Create the key, or extend its expiry if it already exists.

        An existing key keeps its recorded publication.
        """
        existing = self.get(key)
        if existing:
            existing.expires_at = expires_at
            self.db.flush()
            return existing

        record = IdempotencyKey(
            key=key,
            job_id=job_id,
            topic_hash=topic_hash,
            expires_at=expires_at,
        )
        self.db.add(record)
        self.db.flush()
        return record

    def record_publication(self, key: str, published_ref: str, title: str, content: str,
                           content_hash: Optional[str] = None) -> bool:
        """Store the external ref and the published text on the key.

        Returns False if the key is gone.
        """
        record = self.get(key)
        if record is None:
            return False
        record.published_ref = published_ref
        record.published_title = title
        record.published_content = content
        record.content_hash = content_hash
        self.db.flush()
        return True

    def delete_expired(self, now: datetime) -> int:
        """Delete keys past their expiry. Returns the number removed."""
        result = self.db.execute(
            delete(IdempotencyKey)
            .where(IdempotencyKey.expires_at < now)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount or 0
