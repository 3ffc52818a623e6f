"""Tests for the inbound webhook endpoints."""

import json

from sqlalchemy import func, select

from app.models.billing import (
    Customer,
    Invoice,
    Subscription,
    SubscriptionStatus,
    WebhookEvent,
    WebhookOutcome,
)
from app.models.user import User


def _created(event_id="evt_1"):
    return {
        "id": event_id,
        "type": "subscription.created",
        "data": {
            "id": "sub_1",
            "customer_id": "cus_1",
            "product_id": "prod_1",
            "status": "active",
            "current_period_start": "2024-01-01T00:00:00Z",
        },
    }


def _count(db_session, model, *criteria):
    return db_session.scalar(select(func.count()).select_from(model).where(*criteria))


def _event(db_session, event_id):
    db_session.expire_all()
    return db_session.scalars(
        select(WebhookEvent).where(WebhookEvent.event_id == event_id)
    ).one()


def test_new_subscription_creates_customer_and_subscription(
    db_session, post_payment_webhook
):
    resp = post_payment_webhook(_created())
    assert resp.status_code == 200
    assert resp.json() == {"status": "processed"}

    customer = db_session.scalars(
        select(Customer).where(Customer.external_id == "cus_1")
    ).one()
    sub = db_session.scalars(
        select(Subscription).where(Subscription.external_id == "sub_1")
    ).one()
    assert sub.customer_id == customer.id
    assert sub.status == SubscriptionStatus.active
    assert sub.product_external_id == "prod_1"
    assert _event(db_session, "evt_1").outcome == WebhookOutcome.success


def test_redelivery_is_acknowledged_without_reapplying(db_session, post_payment_webhook):
    first = post_payment_webhook(_created())
    second = post_payment_webhook(_created())

    assert first.status_code == 200
    assert second.status_code == 200
    assert second.json() == {"status": "duplicate"}
    assert _count(db_session, Subscription, Subscription.external_id == "sub_1") == 1
    assert _count(db_session, WebhookEvent, WebhookEvent.event_id == "evt_1") == 1


def test_cancellation_after_creation(db_session, post_payment_webhook):
    post_payment_webhook(_created())
    resp = post_payment_webhook(
        {
            "id": "evt_2",
            "type": "subscription.canceled",
            "data": {"id": "sub_1", "canceled_at": "2024-02-01T00:00:00Z"},
        }
    )
    assert resp.status_code == 200

    db_session.expire_all()
    sub = db_session.scalars(
        select(Subscription).where(Subscription.external_id == "sub_1")
    ).one()
    assert sub.status == SubscriptionStatus.canceled
    assert sub.canceled_at is not None
    assert sub.canceled_at.year == 2024 and sub.canceled_at.month == 2


def test_scheduled_cancellation_keeps_access(db_session, post_payment_webhook):
    post_payment_webhook(_created())
    post_payment_webhook(
        {
            "id": "evt_2",
            "type": "subscription.canceled",
            "data": {"id": "sub_1", "cancel_at_period_end": True},
        }
    )
    db_session.expire_all()
    sub = db_session.scalars(
        select(Subscription).where(Subscription.external_id == "sub_1")
    ).one()
    assert sub.status == SubscriptionStatus.active
    assert sub.cancel_at_period_end is True


def test_invalid_signature_is_rejected_before_recording(client, db_session, sign_payload):
    body, headers = sign_payload(_created(), secret="wrong-secret")
    resp = client.post("/webhook/payments", content=body, headers=headers)

    assert resp.status_code == 401
    assert resp.json()["code"] == "authentication_failed"
    assert _count(db_session, WebhookEvent) == 0
    assert _count(db_session, Subscription) == 0


def test_missing_signature_is_rejected(client, db_session):
    resp = client.post("/webhook/payments", content=json.dumps(_created()))
    assert resp.status_code == 401
    assert _count(db_session, WebhookEvent) == 0


def test_sha256_prefixed_signature_is_accepted(client, sign_payload):
    body, headers = sign_payload(_created(), header="x-polar-signature")
    headers["x-polar-signature"] = f"sha256={headers['x-polar-signature']}"
    resp = client.post("/webhook/payments", content=body, headers=headers)
    assert resp.status_code == 200


def test_missing_secret_is_a_configuration_error(client, settings, monkeypatch, sign_payload):
    body, headers = sign_payload(_created())
    monkeypatch.setattr(settings, "polar_webhook_secret", "")
    resp = client.post("/webhook/payments", content=body, headers=headers)
    assert resp.status_code == 503
    assert resp.json()["code"] == "not_configured"


def test_non_ascii_signature_is_rejected_as_unauthenticated(client, db_session, sign_payload):
    body, _ = sign_payload(_created())
    resp = client.post(
        "/webhook/payments", content=body, headers={"webhook-signature": b"caf\xe9"}
    )
    assert resp.status_code == 401
    assert resp.json()["code"] == "authentication_failed"
    assert _count(db_session, WebhookEvent) == 0


def test_missing_signature_is_401_even_without_a_secret(client, settings, monkeypatch):
    monkeypatch.setattr(settings, "polar_webhook_secret", "")
    resp = client.post("/webhook/payments", content=json.dumps(_created()))
    assert resp.status_code == 401
    assert resp.json()["code"] == "authentication_failed"


def test_malformed_body_is_400(client, db_session, sign_payload):
    body, headers = sign_payload(b"{not json")
    resp = client.post("/webhook/payments", content=body, headers=headers)
    assert resp.status_code == 400
    assert resp.json()["code"] == "invalid_payload"
    assert _count(db_session, WebhookEvent) == 0


def test_envelope_without_id_is_400(db_session, post_payment_webhook):
    resp = post_payment_webhook({"type": "subscription.created", "data": {}})
    assert resp.status_code == 400
    assert _count(db_session, WebhookEvent) == 0


def test_unknown_event_type_is_skipped(db_session, post_payment_webhook):
    resp = post_payment_webhook({"id": "evt_9", "type": "benefit.granted", "data": {}})
    assert resp.status_code == 200
    assert resp.json() == {"status": "skipped"}
    assert _event(db_session, "evt_9").outcome == WebhookOutcome.skipped


def test_mutator_failure_returns_500_and_allows_redelivery(
    db_session, post_payment_webhook
):
    paid = {
        "id": "evt_paid",
        "type": "invoice.paid",
        "data": {"id": "inv_1", "customer_id": "cus_1", "amount_paid": 900},
    }
    resp = post_payment_webhook(paid)
    assert resp.status_code == 500
    assert resp.json()["code"] == "processing_failed"
    record = _event(db_session, "evt_paid")
    assert record.outcome == WebhookOutcome.error
    assert "not been created" in record.error
    assert _count(db_session, Invoice) == 0

    created = post_payment_webhook(
        {
            "id": "evt_inv",
            "type": "invoice.created",
            "data": {"id": "inv_1", "customer_id": "cus_1", "amount_due": 900},
        }
    )
    assert created.status_code == 200

    retry = post_payment_webhook(paid)
    assert retry.status_code == 200
    assert retry.json() == {"status": "processed"}
    record = _event(db_session, "evt_paid")
    assert record.outcome == WebhookOutcome.success
    assert record.attempts == 2
    invoice = db_session.scalars(select(Invoice).where(Invoice.external_id == "inv_1")).one()
    assert invoice.status == "paid"
    assert invoice.amount_paid == 900


def test_invalid_data_shape_is_a_processing_failure(db_session, post_payment_webhook):
    resp = post_payment_webhook(
        {"id": "evt_bad", "type": "subscription.updated", "data": {"status": "active"}}
    )
    assert resp.status_code == 500
    assert _event(db_session, "evt_bad").outcome == WebhookOutcome.error


def test_unknown_status_falls_back_to_revoked(db_session, post_payment_webhook):
    payload = _created()
    payload["data"]["status"] = "frozen_solid"
    assert post_payment_webhook(payload).status_code == 200
    sub = db_session.scalars(
        select(Subscription).where(Subscription.external_id == "sub_1")
    ).one()
    assert sub.status == SubscriptionStatus.revoked


def test_customer_and_order_events(db_session, post_payment_webhook):
    post_payment_webhook(
        {
            "id": "evt_c",
            "type": "customer.created",
            "data": {"id": "cus_7", "email": "buyer@example.com", "metadata": {"a": 1}},
        }
    )
    post_payment_webhook(
        {
            "id": "evt_o",
            "type": "order.created",
            "data": {
                "id": "ord_1",
                "customer_id": "cus_7",
                "product_id": "prod_1",
                "status": "paid",
                "total_amount": 1500,
                "currency": "usd",
                "billing_reason": "subscription_create",
            },
        }
    )
    customer = db_session.scalars(select(Customer).where(Customer.external_id == "cus_7")).one()
    assert customer.email == "buyer@example.com"
    assert len(customer.orders) == 1
    assert customer.orders[0].total_amount == 1500
    assert customer.orders[0].metadata_ == {"billing_reason": "subscription_create"}


def test_identity_user_lifecycle_links_customer(
    db_session, post_payment_webhook, post_identity_webhook
):
    post_payment_webhook(
        {
            "id": "evt_c",
            "type": "customer.created",
            "data": {"id": "cus_8", "email": "Person@Example.com"},
        }
    )
    created = post_identity_webhook(
        {
            "id": "msg_1",
            "type": "user.created",
            "data": {
                "id": "user_abc",
                "first_name": "Ada",
                "last_name": "Lovelace",
                "primary_email_address_id": "em_1",
                "email_addresses": [{"id": "em_1", "email_address": "person@example.com"}],
            },
        }
    )
    assert created.status_code == 200

    user = db_session.scalars(select(User).where(User.external_id == "user_abc")).one()
    assert user.name == "Ada Lovelace"
    customer = db_session.scalars(select(Customer).where(Customer.external_id == "cus_8")).one()
    assert customer.user_id == user.id

    deleted = post_identity_webhook(
        {"id": "msg_2", "type": "user.deleted", "data": {"id": "user_abc"}}
    )
    assert deleted.status_code == 200
    db_session.expire_all()
    user = db_session.scalars(select(User).where(User.external_id == "user_abc")).one()
    assert user.is_active is False
    assert user.deleted_at is not None


def test_identity_webhook_uses_its_own_secret(client, db_session, sign_payload):
    body, headers = sign_payload(
        {"id": "msg_1", "type": "user.created", "data": {"id": "user_x"}},
        header="x-identity-signature",
    )
    resp = client.post("/webhook/identity", content=body, headers=headers)
    assert resp.status_code == 401
    assert _count(db_session, User) == 0


def test_routes_are_mounted_under_api_prefix(client, sign_payload):
    body, headers = sign_payload(_created())
    resp = client.post("/api/v1/webhook/payments", content=body, headers=headers)
    assert resp.status_code == 200
