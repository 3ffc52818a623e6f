"""Outbound delivery of operational alerts.

Core code only sees ``Notifier.notify(alert) -> bool``; the backend is
picked from settings.
"""
import logging
from dataclasses import dataclass, field
from html import escape
from typing import Protocol

from app.config import settings
from app.models.alert import AlertSeverity
from app.services import email

logger = logging.getLogger(__name__)

_SEVERITY_RANK = {
    AlertSeverity.low: 0,
    AlertSeverity.medium: 1,
    AlertSeverity.high: 2,
    AlertSeverity.critical: 3,
}
_LOG_LEVELS = {
    AlertSeverity.low: logging.INFO,
    AlertSeverity.medium: logging.WARNING,
    AlertSeverity.high: logging.ERROR,
    AlertSeverity.critical: logging.CRITICAL,
}


@dataclass(frozen=True)
class AlertMessage:
    type: str
    severity: AlertSeverity
    message: str
    metadata: dict = field(default_factory=dict)
    alert_id: str | None = None


class Notifier(Protocol):
    def notify(self, alert: AlertMessage) -> bool: ...


class LogNotifier:
    def notify(self, alert: AlertMessage) -> bool:
        logger.log(
            _LOG_LEVELS[alert.severity],
            "ALERT [%s] %s: %s",
            alert.severity.value,
            alert.type,
            alert.message,
        )
        return True


class EmailNotifier:
    """Mails alerts at or above ``min_severity``; lower ones are only logged."""

    def __init__(
        self, to_email: str, min_severity: AlertSeverity = AlertSeverity.high
    ) -> None:
        self.to_email = to_email
        self.min_severity = min_severity
        self._fallback = LogNotifier()

    def notify(self, alert: AlertMessage) -> bool:
        self._fallback.notify(alert)
        if _SEVERITY_RANK[alert.severity] < _SEVERITY_RANK[self.min_severity]:
            return True
        subject = f"[billing][{alert.severity.value}] {alert.type}"
        body_html = (
            f"<p><strong>{escape(alert.type)}</strong></p>"
            f"<p>{escape(alert.message)}</p>"
        )
        return email.send_email(self.to_email, subject, body_html, alert.message)


def get_notifier() -> Notifier:
    if settings.alert_email:
        return EmailNotifier(settings.alert_email)
    return LogNotifier()
