import logging
from datetime import UTC, datetime

from fastapi import HTTPException
from sqlalchemy import func, select
from sqlalchemy.orm import Session

from app.models.billing import Customer
from app.models.user import User
from app.schemas.billing import CustomerPayload
from app.services.common import (
    apply_ordering,
    apply_pagination,
    coerce_uuid,
    merge_metadata,
)
from app.services.response import ListResponseMixin

logger = logging.getLogger(__name__)


def _user_for_email(db: Session, email: str | None) -> User | None:
    if not email:
        return None
    return db.scalars(
        select(User).where(
            func.lower(User.email) == email.lower(), User.is_active.is_(True)
        )
    ).first()


class Customers(ListResponseMixin):
    @staticmethod
    def get_by_external_id(db: Session, external_id: str) -> Customer | None:
        return db.scalars(
            select(Customer).where(Customer.external_id == external_id)
        ).first()

    @staticmethod
    def for_user(db: Session, user_id) -> Customer | None:
        return db.scalars(
            select(Customer)
            .where(Customer.user_id == coerce_uuid(user_id))
            .where(Customer.is_active.is_(True))
            .order_by(Customer.created_at.desc())
        ).first()

    @staticmethod
    def ensure(db: Session, external_id: str, email: str | None = None) -> Customer:
        """Return the customer for ``external_id``, creating a bare row if needed."""
        customer = Customers.get_by_external_id(db, external_id)
        if customer is not None:
            if email and not customer.email:
                customer.email = email
            return customer
        customer = Customer(external_id=external_id, email=email, is_active=True)
        user = _user_for_email(db, email)
        if user is not None:
            customer.user_id = user.id
        db.add(customer)
        db.flush()
        logger.info("Created Customer %s for %s", customer.id, external_id)
        return customer

    @staticmethod
    def upsert_from_processor(db: Session, payload: CustomerPayload) -> Customer:
        customer = Customers.get_by_external_id(db, payload.id)
        created = customer is None
        if customer is None:
            customer = Customer(external_id=payload.id, is_active=True)
            db.add(customer)
        fields = payload.model_fields_set
        if "email" in fields:
            customer.email = payload.email
        if "metadata_" in fields:
            customer.metadata_ = merge_metadata(customer.metadata_, payload.metadata_)
        if customer.user_id is None:
            user = _user_for_email(db, customer.email)
            if user is not None:
                customer.user_id = user.id
        customer.last_synced_at = datetime.now(UTC)
        db.flush()
        if created:
            logger.info("Created Customer %s from processor %s", customer.id, payload.id)
        else:
            logger.info("Updated Customer %s from processor %s", customer.id, payload.id)
        return customer

    @staticmethod
    def link_user(db: Session, user: User) -> Customer | None:
        """Attach an unlinked customer with the same email to ``user``."""
        if not user.email:
            return None
        customer = db.scalars(
            select(Customer).where(
                Customer.user_id.is_(None),
                func.lower(Customer.email) == user.email.lower(),
            )
        ).first()
        if customer is not None:
            customer.user_id = user.id
            db.flush()
            logger.info("Linked Customer %s to user %s", customer.id, user.id)
        return customer

    @staticmethod
    def get(db: Session, item_id: str) -> Customer:
        item = db.get(Customer, coerce_uuid(item_id))
        if not item:
            raise HTTPException(status_code=404, detail="Customer not found")
        return item

    @staticmethod
    def list(
        db: Session,
        email: str | None,
        is_active: bool | None,
        order_by: str,
        order_dir: str,
        limit: int,
        offset: int,
    ) -> tuple[list[Customer], int]:
        query = db.query(Customer)
        if email:
            query = query.filter(func.lower(Customer.email) == email.lower())
        if is_active is not None:
            query = query.filter(Customer.is_active == is_active)
        total = query.count()
        query = apply_ordering(
            query,
            order_by,
            order_dir,
            {"created_at": Customer.created_at, "email": Customer.email},
        )
        items = list(apply_pagination(query, limit, offset).all())
        return items, total


customers = Customers()
