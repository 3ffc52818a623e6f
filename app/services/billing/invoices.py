import logging
from datetime import UTC, datetime

from fastapi import HTTPException
from sqlalchemy import select
from sqlalchemy.orm import Session

from app.models.billing import MANUAL_CUSTOMER_PREFIX, Invoice, Order
from app.schemas.billing import InvoicePayload, OrderPayload
from app.services.billing.customers import customers
from app.services.billing.subscriptions import subscriptions
from app.services.common import (
    apply_ordering,
    apply_pagination,
    coerce_uuid,
    merge_metadata,
)
from app.services.response import ListResponseMixin

logger = logging.getLogger(__name__)

PENDING_INVOICE_STATUSES = ("pending", "open", "draft")
PAID_STATUSES = ("paid", "succeeded")

_INVOICE_FIELDS = (
    "number",
    "status",
    "currency",
    "amount_due",
    "amount_paid",
    "due_date",
    "paid_at",
    "period_start",
    "period_end",
)


class Invoices(ListResponseMixin):
    @staticmethod
    def get_by_external_id(db: Session, external_id: str) -> Invoice | None:
        return db.scalars(
            select(Invoice).where(Invoice.external_id == external_id)
        ).first()

    @staticmethod
    def upsert(db: Session, payload: InvoicePayload) -> Invoice:
        invoice = Invoices.get_by_external_id(db, payload.id)
        if invoice is None:
            customer_external_id = payload.customer_external_id
            if not customer_external_id:
                raise LookupError(
                    f"Invoice {payload.id} is unknown and carries no customer id"
                )
            customer = customers.ensure(db, customer_external_id)
            invoice = Invoice(
                external_id=payload.id,
                customer_id=customer.id,
                status="pending",
                amount_due=0,
                amount_paid=0,
            )
            db.add(invoice)
            logger.info("Creating Invoice for %s", payload.id)

        fields = payload.model_fields_set
        for name in _INVOICE_FIELDS:
            if name in fields and getattr(payload, name) is not None:
                setattr(invoice, name, getattr(payload, name))
        if "amount_due" not in fields and payload.total_amount is not None:
            invoice.amount_due = payload.total_amount
        if payload.subscription_id and invoice.subscription_id is None:
            subscription = subscriptions.get_by_external_id(db, payload.subscription_id)
            if subscription is not None:
                invoice.subscription_id = subscription.id
        if "metadata_" in fields:
            invoice.metadata_ = merge_metadata(invoice.metadata_, payload.metadata_)
        db.flush()
        return invoice

    @staticmethod
    def mark_paid(
        db: Session, payload: InvoicePayload, now: datetime | None = None
    ) -> Invoice:
        if Invoices.get_by_external_id(db, payload.id) is None:
            raise LookupError(f"Invoice {payload.id} has not been created yet")
        invoice = Invoices.upsert(db, payload)
        invoice.status = "paid"
        invoice.paid_at = payload.paid_at or invoice.paid_at or now or datetime.now(UTC)
        if payload.amount_paid is None:
            invoice.amount_paid = invoice.amount_due
        db.flush()
        logger.info("Invoice %s paid", invoice.id)
        return invoice

    @staticmethod
    def pending(db: Session, limit: int | None = None) -> list[Invoice]:
        stmt = (
            select(Invoice)
            .where(Invoice.status.in_(PENDING_INVOICE_STATUSES))
            .where(~Invoice.external_id.startswith(MANUAL_CUSTOMER_PREFIX))
            .order_by(Invoice.created_at.asc())
        )
        if limit:
            stmt = stmt.limit(limit)
        return list(db.scalars(stmt).all())

    @staticmethod
    def apply_processor_state(
        invoice: Invoice, processor_order: dict, now: datetime | None = None
    ) -> bool:
        """Copy status (and paid timestamp) from the processor. True if changed."""
        status = processor_order.get("status")
        if not status:
            return False
        if status in PAID_STATUSES:
            changed = invoice.status != "paid"
            invoice.status = "paid"
            if invoice.paid_at is None:
                invoice.paid_at = now or datetime.now(UTC)
            if not invoice.amount_paid:
                invoice.amount_paid = processor_order.get("total_amount") or invoice.amount_due
            return changed
        changed = invoice.status != status
        invoice.status = status
        return changed

    @staticmethod
    def get(db: Session, item_id: str) -> Invoice:
        item = db.get(Invoice, coerce_uuid(item_id))
        if not item:
            raise HTTPException(status_code=404, detail="Invoice not found")
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
    ) -> tuple[list[Invoice], int]:
        query = db.query(Invoice)
        if customer_id:
            query = query.filter(Invoice.customer_id == coerce_uuid(customer_id))
        if status:
            query = query.filter(Invoice.status == status)
        total = query.count()
        query = apply_ordering(
            query,
            order_by,
            order_dir,
            {"created_at": Invoice.created_at, "due_date": Invoice.due_date},
        )
        items = list(apply_pagination(query, limit, offset).all())
        return items, total


class Orders:
    @staticmethod
    def get_by_external_id(db: Session, external_id: str) -> Order | None:
        return db.scalars(select(Order).where(Order.external_id == external_id)).first()

    @staticmethod
    def upsert(db: Session, payload: OrderPayload) -> Order:
        order = Orders.get_by_external_id(db, payload.id)
        if order is None:
            customer_external_id = payload.customer_external_id
            if not customer_external_id:
                raise LookupError(f"Order {payload.id} carries no customer id")
            customer = customers.ensure(
                db, customer_external_id, (payload.customer or {}).get("email")
            )
            order = Order(external_id=payload.id, customer_id=customer.id)
            db.add(order)
        fields = payload.model_fields_set
        if payload.product_id:
            order.product_external_id = payload.product_id
        if payload.status:
            order.status = payload.status
        if payload.currency:
            order.currency = payload.currency
        if payload.total_amount is not None:
            order.total_amount = payload.total_amount
        incoming = dict(payload.metadata_ or {}) if "metadata_" in fields else None
        if payload.billing_reason:
            incoming = {**(incoming or {}), "billing_reason": payload.billing_reason}
        order.metadata_ = merge_metadata(order.metadata_, incoming)
        db.flush()
        logger.info("Recorded Order %s (%s)", order.id, payload.id)
        return order


invoices = Invoices()
orders = Orders()
