"""Inbound notification endpoints. No bearer auth: the body signature is the credential."""

from fastapi import APIRouter, Depends, Request
from sqlalchemy.orm import Session

from app.api.deps import get_db
from app.models.billing import WebhookSource
from app.services.billing import webhooks as webhook_service

router = APIRouter(prefix="/webhook", tags=["webhooks"])


@router.post("/payments")
async def payments_webhook(request: Request, db: Session = Depends(get_db)) -> dict:
    body = await request.body()
    return webhook_service.dispatch(db, body, request.headers, WebhookSource.polar)


@router.post("/identity")
async def identity_webhook(request: Request, db: Session = Depends(get_db)) -> dict:
    body = await request.body()
    return webhook_service.dispatch(db, body, request.headers, WebhookSource.identity)
