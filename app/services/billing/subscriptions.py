import logging
import uuid
from datetime import UTC, datetime, timedelta

from fastapi import HTTPException
from sqlalchemy import select
from sqlalchemy.orm import Session

from app.models.audit import AuditActorType
from app.models.billing import MANUAL_CUSTOMER_PREFIX, Customer, Subscription, SubscriptionStatus
from app.models.user import User
from app.schemas.billing import SubscriptionPayload
from app.services.audit import audit_logs
from app.services.billing.customers import customers
from app.services.billing.status import map_processor_status
from app.services.common import (
    apply_ordering,
    apply_pagination,
    coerce_uuid,
    merge_metadata,
    validate_enum,
)
from app.services.polar_client import PolarClient
from app.services.response import ListResponseMixin

logger = logging.getLogger(__name__)

_TIMESTAMP_FIELDS = (
    "current_period_start",
    "current_period_end",
    "trial_start",
    "trial_end",
    "canceled_at",
    "ended_at",
)
_ENTITLED = (SubscriptionStatus.active, SubscriptionStatus.trialing)
_CANCELABLE = (*_ENTITLED, SubscriptionStatus.past_due, SubscriptionStatus.unpaid)


def _apply(subscription: Subscription, payload: SubscriptionPayload) -> None:
    """Copy the fields the processor sent. Absent fields are left alone."""
    fields = payload.model_fields_set
    if "status" in fields:
        subscription.status = map_processor_status(payload.status)
    for name in _TIMESTAMP_FIELDS:
        if name in fields:
            setattr(subscription, name, getattr(payload, name))
    if payload.cancel_at_period_end is not None:
        subscription.cancel_at_period_end = payload.cancel_at_period_end
    if payload.product_external_id:
        subscription.product_external_id = payload.product_external_id

    incoming = dict(payload.metadata_ or {}) if "metadata_" in fields else None
    if payload.product_slug:
        incoming = {**(incoming or {}), "product_slug": payload.product_slug}
    subscription.metadata_ = merge_metadata(subscription.metadata_, incoming)


class Subscriptions(ListResponseMixin):
    @staticmethod
    def get_by_external_id(db: Session, external_id: str) -> Subscription | None:
        return db.scalars(
            select(Subscription).where(Subscription.external_id == external_id)
        ).first()

    @staticmethod
    def upsert(
        db: Session,
        payload: SubscriptionPayload,
        customer: Customer | None = None,
    ) -> Subscription:
        """Insert on first sight of the external id, patch afterwards."""
        subscription = Subscriptions.get_by_external_id(db, payload.id)
        if subscription is None:
            if customer is None:
                customer_external_id = payload.customer_external_id
                if not customer_external_id:
                    raise LookupError(
                        f"Subscription {payload.id} is unknown and carries no customer id"
                    )
                customer = customers.ensure(db, customer_external_id, payload.email)
            subscription = Subscription(
                external_id=payload.id,
                customer_id=customer.id,
                status=SubscriptionStatus.incomplete,
                cancel_at_period_end=False,
            )
            db.add(subscription)
            _apply(subscription, payload)
            db.flush()
            logger.info(
                "Created Subscription %s (%s) status=%s",
                subscription.id,
                payload.id,
                subscription.status.value,
            )
            return subscription
        _apply(subscription, payload)
        db.flush()
        logger.info(
            "Updated Subscription %s (%s) status=%s",
            subscription.id,
            payload.id,
            subscription.status.value,
        )
        return subscription

    @staticmethod
    def activate(db: Session, payload: SubscriptionPayload) -> Subscription:
        subscription = Subscriptions.upsert(db, payload)
        if "status" not in payload.model_fields_set:
            subscription.status = SubscriptionStatus.active
            db.flush()
        return subscription

    @staticmethod
    def cancel(
        db: Session, payload: SubscriptionPayload, now: datetime | None = None
    ) -> Subscription:
        """Scheduled when cancel_at_period_end is set, otherwise immediate."""
        now = now or datetime.now(UTC)
        subscription = Subscriptions.upsert(db, payload)
        if payload.cancel_at_period_end:
            subscription.cancel_at_period_end = True
            subscription.canceled_at = payload.canceled_at or subscription.canceled_at or now
            logger.info("Scheduled cancellation of Subscription %s", subscription.id)
        else:
            subscription.status = SubscriptionStatus.canceled
            subscription.canceled_at = payload.canceled_at or now
            subscription.ended_at = payload.ended_at or now
            logger.info("Canceled Subscription %s", subscription.id)
        db.flush()
        return subscription

    @staticmethod
    def revoke(
        db: Session, payload: SubscriptionPayload, now: datetime | None = None
    ) -> Subscription:
        now = now or datetime.now(UTC)
        subscription = Subscriptions.upsert(db, payload)
        subscription.status = SubscriptionStatus.revoked
        subscription.ended_at = payload.ended_at or now
        db.flush()
        logger.info("Revoked Subscription %s", subscription.id)
        return subscription

    @staticmethod
    def current_for_customer(db: Session, customer_id) -> Subscription | None:
        """Entitled subscription if any, else the most recent one."""
        base = select(Subscription).where(
            Subscription.customer_id == coerce_uuid(customer_id)
        )
        entitled = db.scalars(
            base.where(Subscription.status.in_(_ENTITLED)).order_by(
                Subscription.created_at.desc()
            )
        ).first()
        if entitled is not None:
            return entitled
        return db.scalars(base.order_by(Subscription.created_at.desc())).first()

    # ── Account actions ──────────────────────────────────

    @staticmethod
    def _processor_managed(db: Session, customer: Customer) -> Subscription:
        subscription = Subscriptions.current_for_customer(db, customer.id)
        if subscription is None:
            raise HTTPException(status_code=404, detail="No subscription for this account")
        if subscription.external_id.startswith(MANUAL_CUSTOMER_PREFIX):
            raise HTTPException(
                status_code=400,
                detail="Manually granted subscriptions are managed by an operator",
            )
        return subscription

    @staticmethod
    def request_cancel(
        db: Session,
        client: PolarClient,
        customer: Customer,
        at_period_end: bool = True,
        reason: str | None = None,
        actor_id: str | None = None,
    ) -> Subscription:
        """Cancel with the processor, then store what it answered.

        ``at_period_end`` keeps access until the period ends; otherwise the
        subscription ends now.
        """
        subscription = Subscriptions._processor_managed(db, customer)
        if subscription.status not in _CANCELABLE:
            raise HTTPException(status_code=400, detail="Subscription has already ended")
        remote = client.subscriptions.cancel(
            subscription.external_id, at_period_end=at_period_end
        )
        subscription = Subscriptions.cancel(db, SubscriptionPayload.model_validate(remote))
        if reason:
            subscription.metadata_ = merge_metadata(
                subscription.metadata_, {"cancellation_reason": reason}
            )
        audit_logs.record(
            db,
            "subscription.cancel_requested",
            "subscription",
            str(subscription.id),
            {"at_period_end": at_period_end, "reason": reason},
            actor_type=AuditActorType.user,
            actor_id=actor_id,
        )
        db.commit()
        db.refresh(subscription)
        return subscription

    @staticmethod
    def resume(
        db: Session,
        client: PolarClient,
        customer: Customer,
        actor_id: str | None = None,
    ) -> Subscription:
        """Undo a scheduled cancellation before the period ends."""
        subscription = Subscriptions._processor_managed(db, customer)
        if not subscription.cancel_at_period_end or subscription.status not in _ENTITLED:
            raise HTTPException(
                status_code=400, detail="Subscription is not scheduled for cancellation"
            )
        remote = client.subscriptions.update(
            subscription.external_id, cancel_at_period_end=False
        )
        subscription = Subscriptions.upsert(
            db, SubscriptionPayload.model_validate(remote), customer
        )
        if not subscription.cancel_at_period_end:
            subscription.canceled_at = None
        audit_logs.record(
            db,
            "subscription.resumed",
            "subscription",
            str(subscription.id),
            actor_type=AuditActorType.user,
            actor_id=actor_id,
        )
        db.commit()
        db.refresh(subscription)
        return subscription

    @staticmethod
    def change_plan(
        db: Session,
        client: PolarClient,
        customer: Customer,
        product_id: str,
        actor_id: str | None = None,
    ) -> Subscription:
        subscription = Subscriptions._processor_managed(db, customer)
        if subscription.status not in _ENTITLED:
            raise HTTPException(status_code=400, detail="Subscription is not active")
        previous = subscription.product_external_id
        if previous == product_id:
            raise HTTPException(status_code=400, detail="Subscription is already on this plan")
        remote = client.subscriptions.update(subscription.external_id, product_id=product_id)
        subscription = Subscriptions.upsert(
            db, SubscriptionPayload.model_validate(remote), customer
        )
        subscription.metadata_ = merge_metadata(
            subscription.metadata_,
            {
                "previous_product_id": previous,
                "plan_changed_at": datetime.now(UTC).isoformat(),
            },
        )
        audit_logs.record(
            db,
            "subscription.plan_changed",
            "subscription",
            str(subscription.id),
            {"from": previous, "to": product_id},
            actor_type=AuditActorType.user,
            actor_id=actor_id,
        )
        db.commit()
        db.refresh(subscription)
        logger.info(
            "Subscription %s moved from %s to %s", subscription.id, previous, product_id
        )
        return subscription

    # ── Operator actions ─────────────────────────────────

    @staticmethod
    def grant_manual(
        db: Session,
        user: User,
        product_slug: str,
        reason: str,
        period_end: datetime | None = None,
        granted_by: str | None = None,
    ) -> Subscription:
        """Grant access without the processor. Reconciliation skips these rows."""
        now = datetime.now(UTC)
        customer = customers.for_user(db, user.id)
        if customer is None:
            customer = Customer(
                user_id=user.id,
                email=user.email,
                external_id=f"{MANUAL_CUSTOMER_PREFIX}{uuid.uuid4().hex}",
                is_active=True,
                metadata_={"granted_manually": True, "reason": reason},
            )
            db.add(customer)
            db.flush()
        subscription = Subscription(
            customer_id=customer.id,
            external_id=f"{MANUAL_CUSTOMER_PREFIX}{uuid.uuid4().hex}",
            product_external_id=product_slug,
            status=SubscriptionStatus.active,
            current_period_start=now,
            current_period_end=period_end or now + timedelta(days=30),
            cancel_at_period_end=False,
            metadata_={
                "granted_manually": True,
                "granted_by": granted_by,
                "reason": reason,
                "product_slug": product_slug,
            },
        )
        db.add(subscription)
        db.flush()
        audit_logs.record(
            db,
            "subscription.granted",
            "subscription",
            str(subscription.id),
            {"product": product_slug, "reason": reason, "user_id": str(user.id)},
            actor_type=AuditActorType.user,
            actor_id=granted_by,
        )
        db.commit()
        db.refresh(subscription)
        logger.info("Granted manual Subscription %s to user %s", subscription.id, user.id)
        return subscription

    @staticmethod
    def revoke_manual(
        db: Session,
        item_id: str,
        reason: str,
        immediate: bool = False,
        revoked_by: str | None = None,
    ) -> Subscription:
        subscription = Subscriptions.get(db, item_id)
        now = datetime.now(UTC)
        if immediate:
            subscription.status = SubscriptionStatus.revoked
            subscription.ended_at = now
        else:
            subscription.cancel_at_period_end = True
            subscription.canceled_at = now
        subscription.metadata_ = merge_metadata(
            subscription.metadata_,
            {"revoked_manually": True, "revoked_by": revoked_by, "revoked_reason": reason},
        )
        audit_logs.record(
            db,
            "subscription.revoked" if immediate else "subscription.scheduled_cancel",
            "subscription",
            str(subscription.id),
            {"reason": reason, "immediate": immediate},
            actor_type=AuditActorType.user,
            actor_id=revoked_by,
        )
        db.commit()
        db.refresh(subscription)
        return subscription

    @staticmethod
    def get(db: Session, item_id: str) -> Subscription:
        item = db.get(Subscription, coerce_uuid(item_id))
        if not item:
            raise HTTPException(status_code=404, detail="Subscription not found")
        return item

    @staticmethod
    def list(
        db: Session,
        customer_id: str | None,
        status: str | None,
        order_by: str,
        order_dir: str,
        limit: int,
        offset: int,
    ) -> tuple[list[Subscription], int]:
        query = db.query(Subscription)
        if customer_id:
            query = query.filter(Subscription.customer_id == coerce_uuid(customer_id))
        if status:
            query = query.filter(
                Subscription.status
                == validate_enum(status, SubscriptionStatus, "status")
            )
        total = query.count()
        query = apply_ordering(
            query,
            order_by,
            order_dir,
            {"created_at": Subscription.created_at, "updated_at": Subscription.updated_at},
        )
        items = list(apply_pagination(query, limit, offset).all())
        return items, total


subscriptions = Subscriptions()
