"""Alert rule and alert repository."""

from datetime import datetime
from typing import List, Optional

from sqlalchemy import update

from ..exceptions import AlertNotFoundError
from ..models import Alert, AlertRule
from .base import BaseRepository


class AlertRepository(BaseRepository[Alert]):
    """Alerts plus the rules that raise them. The caller commits."""

    model_class = Alert
    not_found_error = AlertNotFoundError

    # -- rules -------------------------------------------------------------

    def list_enabled_rules(self) -> List[AlertRule]:
        """Enabled rules, highest threshold first."""
        return (
            self.db.query(AlertRule)
            .populate_existing()
            .filter(AlertRule.enabled.is_(True))
            .order_by(AlertRule.threshold.desc())
            .all()
        )

    def get_rule(self, rule_id: str) -> Optional[AlertRule]:
        return self.db.query(AlertRule).populate_existing().filter(AlertRule.id == rule_id).first()

    def get_rule_by_name(self, name: str) -> Optional[AlertRule]:
        return self.db.query(AlertRule).filter(AlertRule.name == name).first()

    def add_rule(self, rule: AlertRule) -> AlertRule:
        return self._add(rule)

    def claim_firing(self, rule_id: str, observed_triggered_at: Optional[datetime],
                     now: datetime, escalation_level: int) -> bool:
        """Stamp a rule as fired, only if nobody fired it since we read it.

        Compare-and-set on last_triggered_at: of several monitors that saw
        the same value, exactly one gets True.
        """
        stmt = update(AlertRule).where(AlertRule.id == rule_id)
        if observed_triggered_at is None:
            stmt = stmt.where(AlertRule.last_triggered_at.is_(None))
        else:
            stmt = stmt.where(AlertRule.last_triggered_at == observed_triggered_at)
        result = self.db.execute(
            stmt.values(last_triggered_at=now, escalation_level=escalation_level)
            .execution_options(synchronize_session="fetch")
        )
        return result.rowcount == 1

    # -- alerts ------------------------------------------------------------

    def add(self, alert: Alert) -> Alert:
        return self._add(alert)

    def list_active(self, limit: int = 100) -> List[Alert]:
        """Unresolved alerts, newest first."""
        return (
            self._base_query()
            .filter(Alert.resolved.is_(False))
            .order_by(Alert.created_at.desc())
            .limit(limit)
            .all()
        )

    def count_unresolved_for_rule(self, rule_id: str, exclude_id: Optional[str] = None) -> int:
        query = self.db.query(Alert).filter(Alert.rule_id == rule_id, Alert.resolved.is_(False))
        if exclude_id:
            query = query.filter(Alert.id != exclude_id)
        return query.count()
