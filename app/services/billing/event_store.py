import logging
import uuid
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta

from fastapi import HTTPException
from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.config import settings
from app.models.billing import WebhookEvent, WebhookOutcome, WebhookSource
from app.services.common import (
    apply_ordering,
    apply_pagination,
    coerce_uuid,
    validate_enum,
)
from app.services.response import ListResponseMixin

logger = logging.getLogger(__name__)

_MAX_ERROR_LENGTH = 2000
_IN_FLIGHT_GRACE_SECONDS = 60


@dataclass(frozen=True)
class RecordResult:
    is_new: bool
    record_id: uuid.UUID
    attempts: int = 1


class WebhookEvents(ListResponseMixin):
    """Idempotency ledger for inbound notifications, keyed by external event id."""

    @staticmethod
    def get_by_event_id(db: Session, event_id: str) -> WebhookEvent | None:
        return db.scalars(
            select(WebhookEvent).where(WebhookEvent.event_id == event_id)
        ).first()

    @staticmethod
    def record_if_new(
        db: Session,
        event_id: str,
        event_type: str,
        source: WebhookSource,
        payload: dict,
        now: datetime | None = None,
    ) -> RecordResult:
        """Store the event unless it was seen before.

        A previously errored event is claimed again (attempts + 1) because the
        processor only redelivers after we answered with a retryable error.
        An event left in flight longer than the processing time budget plus a
        grace period belongs to a worker that died, so it is claimed again too.
        Events that succeeded, were skipped or are still being processed are
        reported as duplicates.
        """
        now = now or datetime.now(UTC)
        existing = WebhookEvents.get_by_event_id(db, event_id)
        if existing is None:
            record = WebhookEvent(
                event_id=event_id,
                event_type=event_type,
                source=source,
                payload=payload,
                attempts=1,
                received_at=now,
                last_attempt_at=now,
            )
            db.add(record)
            try:
                db.commit()
            except IntegrityError:
                # Another delivery of the same event committed first.
                db.rollback()
                existing = WebhookEvents.get_by_event_id(db, event_id)
                if existing is None:
                    raise
                logger.info(
                    "Concurrent delivery of webhook event %s collapsed",
                    event_id,
                    extra={"event_id": event_id, "event_type": event_type},
                )
                return RecordResult(False, existing.id, existing.attempts)
            return RecordResult(True, record.id, 1)

        if existing.outcome == WebhookOutcome.error:
            claimable = [WebhookEvent.outcome == WebhookOutcome.error]
        elif existing.outcome is None:
            stale_before = now - timedelta(
                seconds=settings.webhook_processing_timeout_seconds
                + _IN_FLIGHT_GRACE_SECONDS
            )
            claimable = [
                WebhookEvent.outcome.is_(None),
                func.coalesce(WebhookEvent.last_attempt_at, WebhookEvent.received_at)
                < stale_before,
            ]
        else:
            return RecordResult(False, existing.id, existing.attempts)

        claimed = db.execute(
            update(WebhookEvent)
            .where(WebhookEvent.id == existing.id, *claimable)
            .values(
                outcome=None,
                attempts=WebhookEvent.attempts + 1,
                last_attempt_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        db.commit()
        db.refresh(existing)
        if claimed.rowcount != 1:
            return RecordResult(False, existing.id, existing.attempts)
        logger.info(
            "Retrying webhook event %s (attempt %d)",
            event_id,
            existing.attempts,
            extra={"event_id": event_id, "event_type": event_type},
        )
        return RecordResult(True, existing.id, existing.attempts)

    @staticmethod
    def mark_outcome(
        db: Session,
        record_id: uuid.UUID,
        outcome: WebhookOutcome,
        error: str | None = None,
    ) -> WebhookEvent:
        """Set the outcome. The caller commits."""
        record = db.get(WebhookEvent, record_id)
        if record is None:
            raise LookupError(f"Webhook event record {record_id} not found")
        now = datetime.now(UTC)
        record.outcome = outcome
        record.error = error[:_MAX_ERROR_LENGTH] if error else None
        record.processed_at = now
        record.last_attempt_at = now
        return record

    @staticmethod
    def get(db: Session, item_id: str) -> WebhookEvent:
        item = db.get(WebhookEvent, coerce_uuid(item_id))
        if not item:
            raise HTTPException(status_code=404, detail="Webhook event not found")
        return item

    @staticmethod
    def list(
        db: Session,
        source: str | None,
        event_type: str | None,
        outcome: str | None,
        order_by: str,
        order_dir: str,
        limit: int,
        offset: int,
    ) -> tuple[list[WebhookEvent], int]:
        query = db.query(WebhookEvent)
        if source:
            query = query.filter(
                WebhookEvent.source == validate_enum(source, WebhookSource, "source")
            )
        if event_type:
            query = query.filter(WebhookEvent.event_type == event_type)
        if outcome:
            query = query.filter(
                WebhookEvent.outcome
                == validate_enum(outcome, WebhookOutcome, "outcome")
            )
        total = query.count()
        query = apply_ordering(
            query,
            order_by,
            order_dir,
            {
                "received_at": WebhookEvent.received_at,
                "created_at": WebhookEvent.created_at,
            },
        )
        items = list(apply_pagination(query, limit, offset).all())
        return items, total


webhook_events = WebhookEvents()
