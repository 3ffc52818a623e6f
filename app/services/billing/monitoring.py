import logging
from collections.abc import Callable
from datetime import UTC, datetime, timedelta

from sqlalchemy import func, or_, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.config import settings
from app.metrics import ALERTS_RAISED
from app.models.alert import Alert, AlertSeverity, AlertStatus
from app.models.billing import (
    Subscription,
    SubscriptionStatus,
    SyncRun,
    UsageEvent,
    WebhookEvent,
    WebhookOutcome,
)
from app.services.billing.circuit_breaker import CircuitBreaker
from app.services.common import as_utc, coerce_uuid
from app.services.notifier import AlertMessage, Notifier, get_notifier

logger = logging.getLogger(__name__)

SUBSCRIPTION_SYNC_JOB = "subscription_sync"
SYNC_STALE_AFTER = timedelta(hours=24)
CHURN_WINDOW = timedelta(days=30)
CHURN_ALERT_RATE = 0.10


def _utcnow() -> datetime:
    return datetime.now(UTC)


class Monitoring:
    def __init__(
        self,
        db: Session,
        notifier: Notifier | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.db = db
        self.notifier = notifier or get_notifier()
        self._clock = clock

    # ── Alerts ───────────────────────────────────────────

    def record_alert(
        self,
        type: str,
        severity: AlertSeverity,
        message: str,
        metadata: dict | None = None,
    ) -> Alert:
        alert = Alert(
            type=type,
            severity=severity,
            message=message,
            status=AlertStatus.active,
            metadata_=metadata or {},
        )
        self.db.add(alert)
        self.db.commit()
        self.db.refresh(alert)
        ALERTS_RAISED.labels(type, severity.value).inc()
        outbound = AlertMessage(
            type=type,
            severity=severity,
            message=message,
            metadata=metadata or {},
            alert_id=str(alert.id),
        )
        try:
            acked = self.notifier.notify(outbound)
        except Exception:
            logger.exception("Notifier failed for alert %s", alert.id)
            acked = False
        if not acked:
            logger.warning("Alert %s (%s) was not acknowledged by the notifier", alert.id, type)
        return alert

    def has_active_alert(self, type: str) -> bool:
        return (
            self.db.scalar(
                select(func.count())
                .select_from(Alert)
                .where(Alert.type == type, Alert.status == AlertStatus.active)
            )
            or 0
        ) > 0

    def raise_once(
        self,
        type: str,
        severity: AlertSeverity,
        message: str,
        metadata: dict | None = None,
    ) -> Alert | None:
        """Record an alert unless one of the same type is still active."""
        if self.has_active_alert(type):
            return None
        return self.record_alert(type, severity, message, metadata)

    def resolve_alert(self, alert_id: str) -> Alert | None:
        alert = self.db.get(Alert, coerce_uuid(alert_id))
        if alert is None:
            return None
        alert.status = AlertStatus.resolved
        alert.resolved_at = self._clock()
        self.db.commit()
        self.db.refresh(alert)
        return alert

    def active_alerts(self, limit: int = 50) -> list[Alert]:
        return list(
            self.db.scalars(
                select(Alert)
                .where(Alert.status == AlertStatus.active)
                .order_by(Alert.created_at.desc())
                .limit(limit)
            ).all()
        )

    # ── Health ───────────────────────────────────────────

    def last_sync(self, job: str = SUBSCRIPTION_SYNC_JOB) -> SyncRun | None:
        return self.db.scalars(
            select(SyncRun).where(SyncRun.job == job).order_by(SyncRun.completed_at.desc())
        ).first()

    def failed_webhooks_since(self, since: datetime) -> int:
        return (
            self.db.scalar(
                select(func.count())
                .select_from(WebhookEvent)
                .where(
                    WebhookEvent.outcome == WebhookOutcome.error,
                    WebhookEvent.received_at >= since,
                )
            )
            or 0
        )

    def usage_backlog(self) -> int:
        return (
            self.db.scalar(
                select(func.count())
                .select_from(UsageEvent)
                .where(UsageEvent.processed.is_(False))
            )
            or 0
        )

    def health_report(self) -> dict:
        now = self._clock()
        problems: list[str] = []
        breaker = CircuitBreaker(self.db).snapshot()
        if breaker.is_open:
            problems.append("Processor API circuit breaker is open")

        last_sync = self.last_sync()
        last_sync_at = as_utc(last_sync.completed_at) if last_sync else None
        if last_sync_at is None or now - last_sync_at > SYNC_STALE_AFTER:
            problems.append("Subscription sync has not completed in the last 24 hours")
        elif last_sync.status == "failed":
            problems.append("Last subscription sync failed")

        failed_webhooks = self.failed_webhooks_since(now - timedelta(hours=24))
        if failed_webhooks > settings.alert_failed_webhooks_threshold:
            problems.append(f"{failed_webhooks} webhook notifications failed in 24 hours")

        return {
            "status": "healthy" if not problems else "degraded",
            "timestamp": now.isoformat(),
            "processor": "down" if breaker.is_open else "up",
            "circuit_breaker": {
                "is_open": breaker.is_open,
                "consecutive_failures": breaker.consecutive_failures,
                "next_retry_at": (
                    breaker.next_retry_at.isoformat() if breaker.next_retry_at else None
                ),
            },
            "last_subscription_sync": {
                "status": last_sync.status if last_sync else None,
                "completed_at": last_sync_at.isoformat() if last_sync_at else None,
            },
            "failed_webhooks_24h": failed_webhooks,
            "usage_backlog": self.usage_backlog(),
            "alerts": problems,
        }

    def check_thresholds(self) -> list[Alert]:
        """Raise alerts for conditions crossing their thresholds."""
        raised: list[Alert] = []
        now = self._clock()

        def _raise(type: str, severity: AlertSeverity, message: str, metadata: dict) -> None:
            alert = self.raise_once(type, severity, message, metadata)
            if alert is not None:
                raised.append(alert)

        breaker = CircuitBreaker(self.db).snapshot()
        if breaker.is_open:
            _raise(
                "circuit_breaker_open",
                AlertSeverity.high,
                "Processor API circuit breaker is open",
                {"consecutive_failures": breaker.consecutive_failures},
            )

        last_sync = self.last_sync()
        last_sync_at = as_utc(last_sync.completed_at) if last_sync else None
        if last_sync_at is None or now - last_sync_at > SYNC_STALE_AFTER:
            _raise(
                "sync_stale",
                AlertSeverity.medium,
                "Subscription sync has not completed in the last 24 hours",
                {"last_sync_at": last_sync_at.isoformat() if last_sync_at else None},
            )

        failed_webhooks = self.failed_webhooks_since(now - timedelta(hours=24))
        if failed_webhooks > settings.alert_failed_webhooks_threshold:
            _raise(
                "webhook_failures",
                AlertSeverity.medium,
                f"{failed_webhooks} webhook notifications failed in 24 hours",
                {"count": failed_webhooks},
            )

        churn = self.churn(now)
        if churn["rate"] > CHURN_ALERT_RATE:
            _raise(
                "high_churn",
                AlertSeverity.high,
                f"Churn rate {churn['rate']:.1%} over the last 30 days",
                churn,
            )
        return raised

    # ── Dashboard ────────────────────────────────────────

    def subscription_counts(self) -> dict[str, int]:
        rows = self.db.execute(
            select(Subscription.status, func.count()).group_by(Subscription.status)
        ).all()
        counts = {status.value: 0 for status in SubscriptionStatus}
        for status, count in rows:
            counts[status.value] = count
        return counts

    def churn(self, now: datetime | None = None) -> dict:
        now = now or self._clock()
        since = now - CHURN_WINDOW
        churned = (
            self.db.scalar(
                select(func.count())
                .select_from(Subscription)
                .where(
                    Subscription.status.in_(
                        (SubscriptionStatus.canceled, SubscriptionStatus.revoked)
                    ),
                    or_(Subscription.canceled_at >= since, Subscription.ended_at >= since),
                )
            )
            or 0
        )
        active = (
            self.db.scalar(
                select(func.count())
                .select_from(Subscription)
                .where(
                    Subscription.status.in_(
                        (SubscriptionStatus.active, SubscriptionStatus.trialing)
                    )
                )
            )
            or 0
        )
        base = active + churned
        rate = churned / base if base else 0.0
        return {"churned": churned, "active": active, "rate": round(rate, 4)}

    def webhook_outcomes(self, since: datetime) -> dict[str, int]:
        rows = self.db.execute(
            select(WebhookEvent.outcome, func.count())
            .where(WebhookEvent.received_at >= since)
            .group_by(WebhookEvent.outcome)
        ).all()
        counts = {outcome.value: 0 for outcome in WebhookOutcome}
        counts["in_flight"] = 0
        for outcome, count in rows:
            counts[outcome.value if outcome else "in_flight"] = count
        return counts

    def dashboard_metrics(self) -> dict:
        """Best-effort figures; a failing section reports zeros instead of erroring."""
        now = self._clock()
        sections: dict[str, Callable[[], object]] = {
            "subscriptions": self.subscription_counts,
            "churn": lambda: self.churn(now),
            "webhooks_24h": lambda: self.webhook_outcomes(now - timedelta(hours=24)),
            "usage_backlog": self.usage_backlog,
            "active_alerts": lambda: len(self.active_alerts()),
        }
        empty: dict[str, object] = {
            "subscriptions": {},
            "churn": {"churned": 0, "active": 0, "rate": 0.0},
            "webhooks_24h": {},
            "usage_backlog": 0,
            "active_alerts": 0,
        }
        metrics: dict[str, object] = {"timestamp": now.isoformat()}
        for name, compute in sections.items():
            try:
                metrics[name] = compute()
            except SQLAlchemyError:
                logger.exception("Dashboard section %s failed, reporting empty", name)
                self.db.rollback()
                metrics[name] = empty[name]
        return metrics
