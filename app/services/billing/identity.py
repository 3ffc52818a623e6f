import logging
from datetime import UTC, datetime

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.models.user import User
from app.schemas.billing import IdentityUserPayload
from app.services.billing.customers import customers

logger = logging.getLogger(__name__)


class Users:
    """Local accounts keyed by the identity provider's subject id."""

    @staticmethod
    def get_by_external_id(db: Session, external_id: str) -> User | None:
        return db.scalars(select(User).where(User.external_id == external_id)).first()

    @staticmethod
    def upsert_from_identity(db: Session, payload: IdentityUserPayload) -> User:
        user = Users.get_by_external_id(db, payload.id)
        created = user is None
        if user is None:
            user = User(external_id=payload.id, is_active=True)
            db.add(user)
        email = payload.primary_email
        if email:
            user.email = email
        if payload.full_name:
            user.name = payload.full_name
        user.is_active = True
        user.deleted_at = None
        db.flush()
        customers.link_user(db, user)
        if created:
            logger.info("Created User %s for subject %s", user.id, payload.id)
        else:
            logger.info("Updated User %s for subject %s", user.id, payload.id)
        return user

    @staticmethod
    def soft_delete(
        db: Session, external_id: str, now: datetime | None = None
    ) -> User | None:
        user = Users.get_by_external_id(db, external_id)
        if user is None:
            logger.info("Deletion for unknown subject %s ignored", external_id)
            return None
        user.is_active = False
        user.deleted_at = now or datetime.now(UTC)
        db.flush()
        logger.info("Deactivated User %s", user.id)
        return user

    @staticmethod
    def ensure_for_subject(db: Session, subject: str) -> User:
        """User row for an authenticated subject, created on first request."""
        user = Users.get_by_external_id(db, subject)
        if user is not None:
            return user
        user = User(external_id=subject, is_active=True)
        db.add(user)
        try:
            db.commit()
        except IntegrityError:
            db.rollback()
            user = Users.get_by_external_id(db, subject)
            if user is None:
                raise
            return user
        db.refresh(user)
        logger.info("Created User %s on first request from %s", user.id, subject)
        return user


users = Users()


def _user_upserted(db: Session, data: dict) -> None:
    users.upsert_from_identity(db, IdentityUserPayload.model_validate(data))


def _user_deleted(db: Session, data: dict) -> None:
    subject = data.get("id")
    if not subject:
        raise LookupError("user.deleted notification carries no user id")
    users.soft_delete(db, str(subject))


IDENTITY_HANDLERS = {
    "user.created": _user_upserted,
    "user.updated": _user_upserted,
    "user.deleted": _user_deleted,
}
