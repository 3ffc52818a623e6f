from fastapi import Depends, Header, HTTPException, Request
from sqlalchemy.orm import Session

from app.config import settings
from app.db import SessionLocal
from app.models.user import User
from app.services.billing.identity import users
from app.services.polar_client import PolarClient
from app.services.tokens import decode_subject, extract_bearer_token


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def get_polar_client() -> PolarClient:
    return PolarClient()


def current_subject(
    authorization: str | None = Header(default=None),
    request: Request = None,
) -> str:
    subject = decode_subject(extract_bearer_token(authorization))
    if not subject:
        raise HTTPException(status_code=401, detail="Unauthorized")
    if request is not None:
        request.state.actor_id = subject
    return subject


def current_user(
    subject: str = Depends(current_subject),
    db: Session = Depends(get_db),
) -> User:
    user = users.ensure_for_subject(db, subject)
    if not user.is_active:
        raise HTTPException(status_code=403, detail="Account is deactivated")
    return user


def _admin_subjects() -> set[str]:
    return {item.strip() for item in settings.admin_subjects.split(",") if item.strip()}


def require_admin(subject: str = Depends(current_subject)) -> str:
    if subject not in _admin_subjects():
        raise HTTPException(status_code=403, detail="Forbidden")
    return subject
