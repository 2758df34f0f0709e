"""Alert notification channels."""

import logging

import requests

from ..models import Alert
from ..schemas.monitoring import AlertResponse

logger = logging.getLogger(__name__)


class LoggingNotifier:
    """Writes alerts to the log. Used when no webhook is configured."""

    def notify(self, alert: Alert) -> None:
        level = logging.CRITICAL if alert.severity == "emergency" else logging.WARNING
        logger.log(
            level,
            f"[{alert.severity.upper()}] {alert.message}",
            extra={"alert_id": alert.id, "escalation_level": alert.escalation_level},
        )


class WebhookNotifier:
    """POSTs the alert as JSON to a webhook URL."""

    def __init__(self, url: str, timeout: int = 10):
        self.url = url
        self.timeout = timeout

    def notify(self, alert: Alert) -> None:
        payload = AlertResponse.model_validate(alert).model_dump(mode="json")
        response = requests.post(self.url, json=payload, timeout=self.timeout)
        response.raise_for_status()
        logger.debug(f"Alert {alert.id} delivered to webhook")


def build_notifier(settings):
    """Webhook notifier when ALERT_WEBHOOK_URL is set, else log-only."""
    if settings.alert_webhook_url:
        return WebhookNotifier(settings.alert_webhook_url)
    return LoggingNotifier()
