import logging
from datetime import UTC, datetime

from fastapi import HTTPException
from sqlalchemy import select, update
from sqlalchemy.orm import Session

from app.models.billing import CheckoutSession, CheckoutStatus
from app.models.user import User
from app.schemas.billing import CheckoutCreate, CheckoutPayload
from app.services.common import coerce_uuid, merge_metadata
from app.services.polar_client import PolarClient

logger = logging.getLogger(__name__)

_PROCESSOR_STATUSES = {
    "succeeded": CheckoutStatus.completed,
    "completed": CheckoutStatus.completed,
    "expired": CheckoutStatus.expired,
    "canceled": CheckoutStatus.canceled,
}


class CheckoutSessions:
    @staticmethod
    def get_by_external_id(db: Session, external_id: str) -> CheckoutSession | None:
        return db.scalars(
            select(CheckoutSession).where(CheckoutSession.external_id == external_id)
        ).first()

    @staticmethod
    def get_for_user(db: Session, item_id: str, user: User) -> CheckoutSession:
        item = db.get(CheckoutSession, coerce_uuid(item_id))
        if not item or item.user_id != user.id:
            raise HTTPException(status_code=404, detail="Checkout session not found")
        return item

    @staticmethod
    def create_session(
        db: Session, client: PolarClient, user: User, payload: CheckoutCreate
    ) -> CheckoutSession:
        metadata = {**(payload.metadata_ or {}), "user_id": str(user.id)}
        created = client.checkouts.create(
            payload.product_ids,
            success_url=payload.success_url,
            customer_email=user.email,
            customer_external_id=user.external_id,
            metadata=metadata,
        )
        remote = CheckoutPayload.model_validate(created)
        session = CheckoutSession(
            user_id=user.id,
            external_id=remote.id,
            product_ids=list(payload.product_ids),
            status=CheckoutStatus.pending,
            url=remote.url,
            success_url=payload.success_url,
            client_secret=remote.client_secret,
            expires_at=remote.expires_at,
            metadata_=metadata,
        )
        db.add(session)
        db.commit()
        db.refresh(session)
        logger.info("Created CheckoutSession %s (%s)", session.id, remote.id)
        return session

    @staticmethod
    def complete(
        db: Session, payload: CheckoutPayload, now: datetime | None = None
    ) -> CheckoutSession | None:
        """Idempotent; unknown sessions are logged and ignored."""
        session = CheckoutSessions.get_by_external_id(db, payload.id)
        if session is None:
            logger.warning("Completion for unknown checkout %s ignored", payload.id)
            return None
        if "metadata_" in payload.model_fields_set:
            session.metadata_ = merge_metadata(session.metadata_, payload.metadata_)
        if session.status == CheckoutStatus.completed:
            db.flush()
            return session
        session.status = CheckoutStatus.completed
        session.completed_at = now or datetime.now(UTC)
        db.flush()
        logger.info("Completed CheckoutSession %s", session.id)
        return session

    @staticmethod
    def apply_processor_status(
        db: Session, payload: CheckoutPayload, now: datetime | None = None
    ) -> CheckoutSession | None:
        target = _PROCESSOR_STATUSES.get(payload.status or "")
        if target == CheckoutStatus.completed:
            return CheckoutSessions.complete(db, payload, now)
        session = CheckoutSessions.get_by_external_id(db, payload.id)
        if session is None:
            logger.info("Update for unknown checkout %s ignored", payload.id)
            return None
        if "metadata_" in payload.model_fields_set:
            session.metadata_ = merge_metadata(session.metadata_, payload.metadata_)
        if target is not None and session.status == CheckoutStatus.pending:
            session.status = target
            logger.info("CheckoutSession %s is now %s", session.id, target.value)
        db.flush()
        return session

    @staticmethod
    def sync_status(
        db: Session, client: PolarClient, session: CheckoutSession
    ) -> CheckoutSession:
        """Explicit pull of the processor's view of one checkout."""
        remote = CheckoutPayload.model_validate(client.checkouts.get(session.external_id))
        CheckoutSessions.apply_processor_status(db, remote)
        db.commit()
        db.refresh(session)
        return session

    @staticmethod
    def cancel(db: Session, session: CheckoutSession) -> CheckoutSession:
        if session.status != CheckoutStatus.pending:
            raise HTTPException(
                status_code=400, detail="Only pending checkout sessions can be canceled"
            )
        session.status = CheckoutStatus.canceled
        db.commit()
        db.refresh(session)
        logger.info("Canceled CheckoutSession %s", session.id)
        return session

    @staticmethod
    def expire_stale(db: Session, now: datetime | None = None) -> int:
        now = now or datetime.now(UTC)
        result = db.execute(
            update(CheckoutSession)
            .where(
                CheckoutSession.status == CheckoutStatus.pending,
                CheckoutSession.expires_at.is_not(None),
                CheckoutSession.expires_at < now,
            )
            .values(status=CheckoutStatus.expired)
            .execution_options(synchronize_session=False)
        )
        db.commit()
        if result.rowcount:
            logger.info("Expired %d stale checkout sessions", result.rowcount)
        return result.rowcount


checkout_sessions = CheckoutSessions()
