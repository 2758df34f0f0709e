"""Sweep record repository."""

from datetime import datetime
from typing import List

from ..models import SweepRecord


class SweepRepository:

    def __init__(self, db):
        self.db = db

    def add(self, record: SweepRecord) -> SweepRecord:
        self.db.add(record)
        self.db.flush()
        return record

    def list_since(self, since: datetime) -> List[SweepRecord]:
        """Sweep records started at or after ``since``, newest first."""
        return (
            self.db.query(SweepRecord)
            .filter(SweepRecord.started_at >= since)
            .order_by(SweepRecord.started_at.desc(), SweepRecord.id.desc())
            .all()
        )
