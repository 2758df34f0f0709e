"""Failure-rate monitor.

Reads JobRun outcomes over a trailing window and raises alerts when the
failure rate crosses a rule's threshold. Rules are checked highest
threshold first and only the first match fires, so a 35% failure rate
raises one emergency alert rather than three.
"""

import logging
import uuid
from datetime import datetime, timedelta
from typing import List, Optional

from sqlalchemy.orm import Session

from ..clients.base import Notifier
from ..core.config import Settings
from ..core.timeutil import as_utc, utc_now
from ..models import Alert, AlertRule, ConditionType, Severity
from ..models.alert import MAX_ESCALATION_LEVEL
from ..models.job_run import FAILURE_OUTCOMES
from ..repositories import AlertRepository, JobRunRepository
from ..schemas.monitoring import FailureRateSummary, RunStats

logger = logging.getLogger(__name__)

# (name, threshold, severity) seeded by ensure_default_rules().
DEFAULT_RULES = (
    ("failure-rate-warning", 0.15, Severity.WARNING),
    ("failure-rate-critical", 0.20, Severity.CRITICAL),
    ("failure-rate-emergency", 0.30, Severity.EMERGENCY),
)


class FailureRateMonitor:
    """
    Evaluates alert rules against the trailing failure rate.

    Args:
        db: Session; evaluate() and resolve_alert() commit.
        settings: Window and cooldown defaults.
        notifier: Receives each new alert. Its failures are logged, never raised.
    """

    def __init__(self, db: Session, settings: Optional[Settings] = None,
                 notifier: Optional[Notifier] = None):
        self.db = db
        self.settings = settings or Settings()
        self.notifier = notifier
        self.runs = JobRunRepository(db)
        self.alerts = AlertRepository(db)

    @property
    def default_window(self) -> timedelta:
        return timedelta(hours=self.settings.monitor_window_hours)

    def summary(self, window: Optional[timedelta] = None,
                now: Optional[datetime] = None) -> FailureRateSummary:
        """Failure rate over JobRuns created within ``window`` of ``now``.

        retrying, failed and stale_claim outcomes count as failed; the rate
        is 0.0 when there were no runs.
        """
        window = window or self.default_window
        now = now or utc_now()
        counts = self.runs.outcome_counts_since(now - window)
        total = sum(counts.values())
        failed = sum(counts.get(outcome, 0) for outcome in FAILURE_OUTCOMES)
        return FailureRateSummary(
            rate=failed / total if total else 0.0,
            total=total,
            failed=failed,
            window_seconds=int(window.total_seconds()),
            counts=counts,
        )

    def evaluate(self, now: Optional[datetime] = None) -> Optional[Alert]:
        """
        Check rules once and raise at most one alert.

        The highest-threshold enabled rule that the current rate reaches
        fires, unless it is still in cooldown. While an earlier alert from
        the same rule is unresolved, each firing raises the rule's
        escalation level (capped).

        Returns:
            The alert that was created, or None.
        """
        now = now or utc_now()
        summary = self.summary(now=now)
        if summary.total == 0:
            return None

        rules = [r for r in self.alerts.list_enabled_rules()
                 if r.condition_type == ConditionType.FAILURE_RATE.value]
        rule = next((r for r in rules if summary.rate >= r.threshold), None)
        if rule is None:
            return None

        observed = rule.last_triggered_at
        last = as_utc(observed)
        if last is not None and now - last < timedelta(seconds=rule.cooldown_seconds):
            logger.debug(f"Rule {rule.name} matched but is in cooldown")
            return None

        try:
            level = rule.escalation_level
            if self.alerts.count_unresolved_for_rule(rule.id) > 0:
                level = min(level + 1, MAX_ESCALATION_LEVEL)

            # Another monitor may have fired this rule since we read it.
            if not self.alerts.claim_firing(rule.id, observed, now, level):
                self.db.rollback()
                logger.info(f"Rule {rule.name} was fired by another monitor")
                return None

            alert = Alert(
                id=str(uuid.uuid4()),
                rule_id=rule.id,
                severity=rule.severity,
                message=(
                    f"Failure rate {summary.rate:.1%} ({summary.failed}/{summary.total} runs) "
                    f"reached {rule.severity} threshold {rule.threshold:.0%}"
                ),
                value=summary.rate,
                threshold=rule.threshold,
                window_seconds=summary.window_seconds,
                total_runs=summary.total,
                failed_runs=summary.failed,
                escalation_level=level,
                created_at=now,
                resolved=False,
            )
            self.alerts.add(alert)
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

        logger.warning(
            f"Alert raised: {alert.message}",
            extra={"alert_id": alert.id, "severity": alert.severity,
                   "escalation_level": alert.escalation_level},
        )
        self._notify(alert)
        return alert

    def _notify(self, alert: Alert) -> None:
        if self.notifier is None:
            return
        try:
            self.notifier.notify(alert)
        except Exception as e:
            logger.error(f"Notifier failed for alert {alert.id}: {e}", exc_info=True)

    def ensure_default_rules(self) -> List[AlertRule]:
        """Create the default warning/critical/emergency rules if missing."""
        created = []
        for name, threshold, severity in DEFAULT_RULES:
            if self.alerts.get_rule_by_name(name):
                continue
            created.append(self.alerts.add_rule(AlertRule(
                id=str(uuid.uuid4()),
                name=name,
                condition_type=ConditionType.FAILURE_RATE.value,
                threshold=threshold,
                severity=severity.value,
                cooldown_seconds=self.settings.alert_cooldown_seconds,
                enabled=True,
                escalation_level=0,
            )))
        if created:
            self.db.commit()
            logger.info(f"Seeded {len(created)} default alert rule(s)")
        return created

    def get_failure_rate_summary(self, window: Optional[timedelta] = None) -> FailureRateSummary:
        return self.summary(window)

    def get_run_stats(self, window: Optional[timedelta] = None,
                      now: Optional[datetime] = None) -> RunStats:
        """Attempt counts and average attempt duration over the window."""
        return self.runs.stats((now or utc_now()) - (window or self.default_window))

    def get_active_alerts(self) -> List[Alert]:
        """Unresolved alerts, newest first."""
        return self.alerts.list_active()

    def resolve_alert(self, alert_id: str, resolved_by: str, notes: Optional[str] = None,
                      now: Optional[datetime] = None) -> Alert:
        """
        Mark an alert resolved.

        When the rule has no other unresolved alerts its escalation level
        goes back to 0.

        Raises:
            AlertNotFoundError: If the alert does not exist.
        """
        alert = self.alerts.get_by_id(alert_id)
        if alert.resolved:
            return alert

        try:
            alert.resolved = True
            alert.resolved_at = now or utc_now()
            alert.resolved_by = resolved_by
            alert.resolution_notes = notes
            self.db.flush()

            if self.alerts.count_unresolved_for_rule(alert.rule_id) == 0:
                rule = self.alerts.get_rule(alert.rule_id)
                if rule is not None:
                    rule.escalation_level = 0
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

        logger.info(f"Alert {alert_id} resolved by {resolved_by}")
        return alert
