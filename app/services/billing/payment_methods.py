import logging

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from app.models.billing import PaymentMethod, PaymentMethodType
from app.schemas.billing import PaymentMethodPayload
from app.services.billing.customers import customers
from app.services.common import merge_metadata

logger = logging.getLogger(__name__)


def _method_type(raw: str | None) -> PaymentMethodType:
    try:
        return PaymentMethodType(raw or "card")
    except ValueError:
        return PaymentMethodType.other


class PaymentMethods:
    @staticmethod
    def get_by_external_id(db: Session, external_id: str) -> PaymentMethod | None:
        return db.scalars(
            select(PaymentMethod).where(PaymentMethod.external_id == external_id)
        ).first()

    @staticmethod
    def attach(db: Session, payload: PaymentMethodPayload) -> PaymentMethod:
        if not payload.customer_id:
            raise LookupError(f"Payment method {payload.id} carries no customer id")
        customer = customers.ensure(db, payload.customer_id)
        method = PaymentMethods.get_by_external_id(db, payload.id)
        if method is None:
            method = PaymentMethod(external_id=payload.id, customer_id=customer.id)
            db.add(method)
        card = payload.card or {}
        method.type = _method_type(payload.type)
        method.brand = card.get("brand", method.brand)
        method.last4 = card.get("last4", method.last4)
        method.exp_month = card.get("exp_month", method.exp_month)
        method.exp_year = card.get("exp_year", method.exp_year)
        method.is_active = True
        if "metadata_" in payload.model_fields_set:
            method.metadata_ = merge_metadata(method.metadata_, payload.metadata_)
        if payload.is_default:
            db.execute(
                update(PaymentMethod)
                .where(
                    PaymentMethod.customer_id == customer.id,
                    PaymentMethod.external_id != payload.id,
                )
                .values(is_default=False)
                .execution_options(synchronize_session=False)
            )
            method.is_default = True
        db.flush()
        logger.info("Attached PaymentMethod %s to customer %s", payload.id, customer.id)
        return method

    @staticmethod
    def detach(db: Session, payload: PaymentMethodPayload) -> PaymentMethod | None:
        method = PaymentMethods.get_by_external_id(db, payload.id)
        if method is None:
            logger.info("Detach for unknown payment method %s ignored", payload.id)
            return None
        method.is_active = False
        method.is_default = False
        db.flush()
        logger.info("Detached PaymentMethod %s", method.id)
        return method


payment_methods = PaymentMethods()
