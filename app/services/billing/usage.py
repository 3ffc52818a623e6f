import logging
from collections import defaultdict
from datetime import UTC, datetime

from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.config import settings
from app.errors import BillingError, ProcessorAPIError
from app.metrics import USAGE_EVENTS_FORWARDED
from app.models.billing import MANUAL_CUSTOMER_PREFIX, Customer, UsageEvent
from app.services.billing.entitlements import limit_for, tier_for
from app.services.billing.subscriptions import subscriptions
from app.services.common import as_utc
from app.services.polar_client import PolarClient

logger = logging.getLogger(__name__)

MARK_PROCESSED = "mark_processed"
RETRY = "retry"
NO_PROCESSOR_CUSTOMER = "no_processor_customer"


def _event_payload(event: UsageEvent) -> dict:
    properties = {"type": event.event_type, "units": event.units}
    properties.update(event.metadata_ or {})
    return {
        "customer_id": event.customer_external_id,
        "event_name": event.event_name,
        "properties": properties,
        "timestamp": as_utc(event.created_at).isoformat(),
    }


class Usage:
    @staticmethod
    def record(
        db: Session,
        customer: Customer,
        event_type: str,
        event_name: str,
        units: float = 1.0,
        metadata: dict | None = None,
    ) -> UsageEvent:
        subscription = subscriptions.current_for_customer(db, customer.id)
        event = UsageEvent(
            customer_id=customer.id,
            subscription_id=subscription.id if subscription is not None else None,
            customer_external_id=customer.external_id,
            event_type=event_type,
            event_name=event_name,
            units=units,
            processed=False,
            attempts=0,
            metadata_=metadata,
        )
        db.add(event)
        db.commit()
        db.refresh(event)
        return event

    @staticmethod
    def forward_batch(
        db: Session,
        client: PolarClient,
        batch_size: int | None = None,
        policy: str | None = None,
        max_attempts: int | None = None,
        now: datetime | None = None,
    ) -> dict[str, int]:
        """Send unprocessed events to the metering endpoint, one call per customer.

        ``policy`` decides what happens to a failed group:
        ``mark_processed`` closes the events with the error recorded;
        ``retry`` leaves them queued until ``max_attempts`` is reached.
        Client errors are never retried under either policy.
        """
        batch_size = batch_size or settings.usage_batch_size
        policy = policy or settings.usage_failure_policy
        if policy not in (MARK_PROCESSED, RETRY):
            raise ValueError(f"Unknown usage failure policy: {policy}")
        max_attempts = max_attempts or settings.usage_max_attempts
        now = now or datetime.now(UTC)

        events = list(
            db.scalars(
                select(UsageEvent)
                .where(UsageEvent.processed.is_(False))
                .order_by(UsageEvent.created_at.asc())
                .limit(batch_size)
            ).all()
        )
        counts = {"processed": 0, "failed": 0, "skipped": 0, "requeued": 0, "groups": 0}
        groups: dict[str, list[UsageEvent]] = defaultdict(list)
        for event in events:
            external_id = event.customer_external_id
            if not external_id or external_id.startswith(MANUAL_CUSTOMER_PREFIX):
                event.processed = True
                event.error = NO_PROCESSOR_CUSTOMER
                counts["skipped"] += 1
                continue
            groups[external_id].append(event)
        db.commit()

        for external_id, group in groups.items():
            counts["groups"] += 1
            try:
                client.metrics.ingest_events([_event_payload(event) for event in group])
            except BillingError as exc:
                permanent = isinstance(exc, ProcessorAPIError)
                requeued = Usage._record_failure(
                    group, exc.message, policy, max_attempts, permanent
                )
                db.commit()
                counts["failed"] += len(group) - requeued
                counts["requeued"] += requeued
                USAGE_EVENTS_FORWARDED.labels("failed").inc(len(group))
                logger.error(
                    "Usage ingest failed for customer %s (%d events): %s",
                    external_id,
                    len(group),
                    exc.message,
                )
                continue
            for event in group:
                event.processed = True
                event.ingested_at = now
                event.error = None
                event.attempts = (event.attempts or 0) + 1
            db.commit()
            counts["processed"] += len(group)
            USAGE_EVENTS_FORWARDED.labels("ok").inc(len(group))
        if events:
            logger.info("Usage batch forwarded: %s", counts)
        return counts

    @staticmethod
    def _record_failure(
        group: list[UsageEvent],
        message: str,
        policy: str,
        max_attempts: int,
        permanent: bool,
    ) -> int:
        """Apply the failure policy to a group. Returns how many stay queued."""
        requeued = 0
        for event in group:
            event.attempts = (event.attempts or 0) + 1
            event.error = message
            if policy == MARK_PROCESSED or permanent:
                event.processed = True
            elif event.attempts >= max_attempts:
                event.processed = True
                event.error = f"gave up after {event.attempts} attempts: {message}"
            else:
                requeued += 1
        return requeued

    @staticmethod
    def period_usage(db: Session, customer: Customer) -> dict:
        """Units per event type in the current billing period. Empty on failure."""
        subscription = subscriptions.current_for_customer(db, customer.id)
        period_start = subscription.current_period_start if subscription else None
        period_end = subscription.current_period_end if subscription else None
        try:
            stmt = (
                select(UsageEvent.event_type, func.sum(UsageEvent.units), func.count())
                .where(UsageEvent.customer_id == customer.id)
                .group_by(UsageEvent.event_type)
            )
            if period_start is not None:
                stmt = stmt.where(UsageEvent.created_at >= period_start)
            rows = db.execute(stmt).all()
        except SQLAlchemyError:
            logger.exception("Usage summary failed for customer %s", customer.id)
            db.rollback()
            rows = []
        return {
            "period_start": period_start,
            "period_end": period_end,
            "usage": {event_type: float(units or 0) for event_type, units, _ in rows},
            "total_events": sum(count for _, _, count in rows),
        }

    @staticmethod
    def check_limit(db: Session, customer: Customer | None, event_type: str) -> dict:
        subscription = (
            subscriptions.current_for_customer(db, customer.id) if customer else None
        )
        tier = tier_for(subscription)
        limited, limit = limit_for(tier, event_type)
        used = 0.0
        if customer is not None:
            used = Usage.period_usage(db, customer)["usage"].get(event_type, 0.0)
        if not limited:
            return {
                "event_type": event_type,
                "used": used,
                "limit": None,
                "allowed": True,
                "remaining": None,
            }
        return {
            "event_type": event_type,
            "used": used,
            "limit": limit,
            "allowed": used < limit,
            "remaining": max(0.0, limit - used),
        }


usage = Usage()
