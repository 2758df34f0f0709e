"""AlertRule and Alert models.

Rules are long-lived configuration rows evaluated by the failure-rate
monitor; Alerts are immutable events recording a rule firing. Only the
resolution fields of an Alert are ever updated.
"""

from enum import Enum

from sqlalchemy import (
    Boolean, CheckConstraint, Column, DateTime, Float, ForeignKey, Index, Integer, String, Text,
)

from ..core.timeutil import utc_now
from ..database import Base

MAX_ESCALATION_LEVEL = 3


class Severity(str, Enum):
    WARNING = "warning"
    CRITICAL = "critical"
    EMERGENCY = "emergency"


class ConditionType(str, Enum):
    FAILURE_RATE = "failure_rate"


class AlertRule(Base):
    """Threshold rule over the trailing failure rate.

    escalation_level counts consecutive firings while an earlier alert from
    the same rule is still unresolved (0..3).
    """

    __tablename__ = "alert_rules"
    __table_args__ = (
        CheckConstraint("threshold >= 0 AND threshold <= 1", name="ck_alert_rules_threshold_range"),
        CheckConstraint("severity IN ('warning', 'critical', 'emergency')", name="ck_alert_rules_severity_valid"),
        CheckConstraint("cooldown_seconds >= 0", name="ck_alert_rules_cooldown_positive"),
        CheckConstraint(
            f"escalation_level >= 0 AND escalation_level <= {MAX_ESCALATION_LEVEL}",
            name="ck_alert_rules_escalation_range",
        ),
    )

    id = Column(String(50), primary_key=True)
    name = Column(String(100), nullable=False, unique=True)
    condition_type = Column(String(30), nullable=False, default=ConditionType.FAILURE_RATE.value)
    threshold = Column(Float, nullable=False)
    severity = Column(String(20), nullable=False)
    cooldown_seconds = Column(Integer, nullable=False, default=3600)
    enabled = Column(Boolean, nullable=False, default=True)

    last_triggered_at = Column(DateTime(timezone=True), nullable=True)
    escalation_level = Column(Integer, nullable=False, default=0)

    created_at = Column(DateTime(timezone=True), nullable=False, default=utc_now)


class Alert(Base):
    """Record of a rule firing. Handed to the notification channel."""

    __tablename__ = "alerts"
    __table_args__ = (
        Index("ix_alerts_resolved_created_at", "resolved", "created_at"),
        Index("ix_alerts_rule_id", "rule_id"),
    )

    id = Column(String(50), primary_key=True)
    rule_id = Column(String(50), ForeignKey("alert_rules.id"), nullable=False)

    severity = Column(String(20), nullable=False)
    message = Column(Text, nullable=False)

    # Observed failure rate and the rule threshold it crossed
    value = Column(Float, nullable=False)
    threshold = Column(Float, nullable=False)
    window_seconds = Column(Integer, nullable=False)
    total_runs = Column(Integer, nullable=False)
    failed_runs = Column(Integer, nullable=False)
    escalation_level = Column(Integer, nullable=False, default=0)

    created_at = Column(DateTime(timezone=True), nullable=False, default=utc_now)

    resolved = Column(Boolean, nullable=False, default=False)
    resolved_at = Column(DateTime(timezone=True), nullable=True)
    resolved_by = Column(String(100), nullable=True)
    resolution_notes = Column(Text, nullable=True)
