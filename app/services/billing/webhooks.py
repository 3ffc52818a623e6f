"""Inbound notification dispatch.

Every delivery goes through the same steps: verify the HMAC signature over
the raw body, parse the envelope, claim the event id in the event store,
route by type and record the outcome. The HTTP status tells the sender
whether to redeliver (5xx) or give up (4xx).
"""
import hashlib
import hmac
import json
import logging
import time
import uuid
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from datetime import UTC, datetime

from fastapi import HTTPException
from pydantic import ValidationError as PydanticValidationError
from sqlalchemy.orm import Session

from app.config import settings
from app.errors import (
    AuthenticationError,
    ConfigurationError,
    ProcessingError,
    ValidationError,
)
from app.metrics import WEBHOOK_EVENTS, WEBHOOK_PROCESSING_SECONDS
from app.models.billing import WebhookOutcome, WebhookSource
from app.schemas.billing import (
    CheckoutPayload,
    CustomerPayload,
    InvoicePayload,
    OrderPayload,
    PaymentMethodPayload,
    SubscriptionPayload,
    WebhookEnvelope,
)
from app.services.billing.checkouts import checkout_sessions
from app.services.billing.customers import customers
from app.services.billing.event_store import webhook_events
from app.services.billing.identity import IDENTITY_HANDLERS
from app.services.billing.invoices import invoices, orders
from app.services.billing.payment_methods import payment_methods
from app.services.billing.subscriptions import subscriptions

logger = logging.getLogger(__name__)

Handler = Callable[[Session, dict], object]

PAYMENT_SIGNATURE_HEADERS = (
    "x-polar-signature",
    "x-webhook-signature",
    "webhook-signature",
)
IDENTITY_SIGNATURE_HEADERS = ("x-identity-signature",)

# ── Processor handlers ───────────────────────────────────


def _customer_upserted(db: Session, data: dict) -> None:
    customers.upsert_from_processor(db, CustomerPayload.model_validate(data))


def _subscription_upserted(db: Session, data: dict) -> None:
    subscriptions.upsert(db, SubscriptionPayload.model_validate(data))


def _subscription_active(db: Session, data: dict) -> None:
    subscriptions.activate(db, SubscriptionPayload.model_validate(data))


def _subscription_canceled(db: Session, data: dict) -> None:
    subscriptions.cancel(db, SubscriptionPayload.model_validate(data))


def _subscription_revoked(db: Session, data: dict) -> None:
    subscriptions.revoke(db, SubscriptionPayload.model_validate(data))


def _checkout_created(db: Session, data: dict) -> None:
    payload = CheckoutPayload.model_validate(data)
    logger.info("Checkout %s created on the processor", payload.id)


def _checkout_updated(db: Session, data: dict) -> None:
    checkout_sessions.apply_processor_status(db, CheckoutPayload.model_validate(data))


def _order_created(db: Session, data: dict) -> None:
    orders.upsert(db, OrderPayload.model_validate(data))


def _invoice_created(db: Session, data: dict) -> None:
    invoices.upsert(db, InvoicePayload.model_validate(data))


def _invoice_paid(db: Session, data: dict) -> None:
    invoices.mark_paid(db, InvoicePayload.model_validate(data))


def _payment_method_attached(db: Session, data: dict) -> None:
    payment_methods.attach(db, PaymentMethodPayload.model_validate(data))


def _payment_method_detached(db: Session, data: dict) -> None:
    payment_methods.detach(db, PaymentMethodPayload.model_validate(data))


PAYMENT_HANDLERS: dict[str, Handler] = {
    "customer.created": _customer_upserted,
    "customer.updated": _customer_upserted,
    "subscription.created": _subscription_upserted,
    "subscription.updated": _subscription_upserted,
    "subscription.active": _subscription_active,
    "subscription.canceled": _subscription_canceled,
    "subscription.revoked": _subscription_revoked,
    "checkout.created": _checkout_created,
    "checkout.updated": _checkout_updated,
    "order.created": _order_created,
    "invoice.created": _invoice_created,
    "invoice.paid": _invoice_paid,
    "payment_method.attached": _payment_method_attached,
    "payment_method.detached": _payment_method_detached,
}


@dataclass(frozen=True)
class Channel:
    source: WebhookSource
    signature_headers: tuple[str, ...]
    handlers: Mapping[str, Handler]

    @property
    def secret(self) -> str:
        if self.source == WebhookSource.identity:
            return settings.identity_webhook_secret
        return settings.polar_webhook_secret


CHANNELS = {
    WebhookSource.polar: Channel(
        WebhookSource.polar, PAYMENT_SIGNATURE_HEADERS, PAYMENT_HANDLERS
    ),
    WebhookSource.identity: Channel(
        WebhookSource.identity, IDENTITY_SIGNATURE_HEADERS, IDENTITY_HANDLERS
    ),
}

# ── Verification & parsing ───────────────────────────────


def compute_signature(secret: str, body: bytes) -> str:
    return hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()


def verify_signature(secret: str, body: bytes, signature: str) -> bool:
    """Constant-time check of a hex HMAC-SHA256, with or without ``sha256=``."""
    provided = signature.strip()
    if provided.lower().startswith("sha256="):
        provided = provided[len("sha256="):]
    return hmac.compare_digest(
        compute_signature(secret, body).encode("ascii"),
        provided.lower().encode("utf-8", "surrogateescape"),
    )


def _signature_from(headers: Mapping[str, str], names: tuple[str, ...]) -> str | None:
    lowered = {key.lower(): value for key, value in headers.items()}
    for name in names:
        if lowered.get(name):
            return lowered[name]
    return None


def _decode(body: bytes) -> dict:
    try:
        decoded = json.loads(body)
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise ValidationError("Webhook body is not valid JSON") from exc
    if not isinstance(decoded, dict):
        raise ValidationError("Webhook body must be a JSON object")
    return decoded


def _envelope(decoded: dict) -> WebhookEnvelope:
    try:
        return WebhookEnvelope.model_validate(decoded)
    except PydanticValidationError as exc:
        raise ValidationError(
            "Webhook envelope is missing id or type",
            details=exc.errors(include_url=False, include_context=False),
        ) from exc


def parse_envelope(body: bytes) -> WebhookEnvelope:
    return _envelope(_decode(body))


# ── Dispatch ─────────────────────────────────────────────


def dispatch(
    db: Session,
    body: bytes,
    headers: Mapping[str, str],
    source: WebhookSource = WebhookSource.polar,
    clock: Callable[[], float] = time.monotonic,
) -> dict[str, str]:
    """Verify, record and apply one notification.

    Returns ``{"status": "processed" | "duplicate" | "skipped"}``. Raises
    ``AuthenticationError``/``ValidationError`` before touching the event
    store, ``ProcessingError`` when the handler failed or overran its time
    budget.
    """
    channel = CHANNELS[source]
    signature = _signature_from(headers, channel.signature_headers)
    if not signature:
        raise AuthenticationError("Missing webhook signature")
    secret = channel.secret
    if not secret:
        raise ConfigurationError(f"{source.value} webhook secret is not configured")
    if not verify_signature(secret, body, signature):
        raise AuthenticationError("Invalid webhook signature")

    payload = _decode(body)
    envelope = _envelope(payload)
    log_extra = {
        "event_id": envelope.id,
        "event_type": envelope.type,
        "source": source.value,
    }
    recorded = webhook_events.record_if_new(
        db, envelope.id, envelope.type, source, payload
    )
    if not recorded.is_new:
        WEBHOOK_EVENTS.labels(source.value, envelope.type, "duplicate").inc()
        logger.info("Duplicate webhook event %s ignored", envelope.id, extra=log_extra)
        return {"status": "duplicate"}
    return _process(db, channel, envelope, recorded.record_id, clock)


def _process(
    db: Session,
    channel: Channel,
    envelope: WebhookEnvelope,
    record_id: uuid.UUID,
    clock: Callable[[], float],
) -> dict[str, str]:
    source = channel.source.value
    log_extra = {"event_id": envelope.id, "event_type": envelope.type, "source": source}
    handler = channel.handlers.get(envelope.type)
    if handler is None:
        webhook_events.mark_outcome(db, record_id, WebhookOutcome.skipped)
        db.commit()
        WEBHOOK_EVENTS.labels(source, envelope.type, "skipped").inc()
        logger.info(
            "No handler for webhook event type %s", envelope.type, extra=log_extra
        )
        return {"status": "skipped"}

    limit = settings.webhook_processing_timeout_seconds
    started = clock()
    try:
        handler(db, envelope.data)
        elapsed = clock() - started
        if elapsed > limit:
            raise TimeoutError(
                f"Processing took {elapsed:.2f}s, limit is {limit:.2f}s"
            )
    except Exception as exc:
        db.rollback()
        message = str(exc) or exc.__class__.__name__
        webhook_events.mark_outcome(db, record_id, WebhookOutcome.error, message)
        db.commit()
        WEBHOOK_EVENTS.labels(source, envelope.type, "error").inc()
        WEBHOOK_PROCESSING_SECONDS.labels(source).observe(clock() - started)
        logger.error(
            "Webhook event %s (%s) failed: %s",
            envelope.id,
            envelope.type,
            message,
            exc_info=not isinstance(exc, TimeoutError),
            extra=log_extra,
        )
        raise ProcessingError(
            f"Failed to process {envelope.type}",
            details={"event_id": envelope.id},
        ) from exc

    webhook_events.mark_outcome(db, record_id, WebhookOutcome.success)
    db.commit()
    WEBHOOK_EVENTS.labels(source, envelope.type, "success").inc()
    WEBHOOK_PROCESSING_SECONDS.labels(source).observe(elapsed)
    logger.info("Processed webhook event %s", envelope.id, extra=log_extra)
    return {"status": "processed"}


def replay(
    db: Session, item_id: str, clock: Callable[[], float] = time.monotonic
) -> dict[str, str]:
    """Run a stored notification that failed or never finished through its handler again."""
    record = webhook_events.get(db, item_id)
    if record.outcome not in (WebhookOutcome.error, None):
        raise HTTPException(
            status_code=400,
            detail="Only failed or unfinished webhook events can be replayed",
        )
    envelope = WebhookEnvelope.model_validate(record.payload)
    record.outcome = None
    record.attempts = (record.attempts or 0) + 1
    record.last_attempt_at = datetime.now(UTC)
    db.commit()
    logger.info(
        "Replaying webhook event %s (attempt %d)",
        record.event_id,
        record.attempts,
        extra={"event_id": record.event_id, "event_type": record.event_type},
    )
    return _process(db, CHANNELS[record.source], envelope, record.id, clock)
