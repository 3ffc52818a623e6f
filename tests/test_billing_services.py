"""Tests for the billing domain mutators."""

import uuid
from datetime import UTC, datetime, timedelta
from unittest.mock import MagicMock

import pytest
from fastapi import HTTPException
from sqlalchemy import select

from app.models.audit import AuditLog
from app.models.billing import (
    CheckoutSession,
    CheckoutStatus,
    PaymentMethod,
    PaymentMethodType,
    SubscriptionStatus,
)
from app.schemas.billing import (
    CheckoutCreate,
    CheckoutPayload,
    CustomerPayload,
    InvoicePayload,
    PaymentMethodPayload,
    SubscriptionPayload,
)
from app.services import billing as billing_service
from app.services.billing.status import is_entitled, map_processor_status

# ── Status mapping ───────────────────────────────────────


@pytest.mark.parametrize("raw", ["active", "trialing", "past_due", "canceled", "unpaid"])
def test_known_statuses_map_to_themselves(raw):
    assert map_processor_status(raw).value == raw


@pytest.mark.parametrize("raw", [None, "", "paused", 42])
def test_unknown_statuses_map_to_revoked(raw):
    assert map_processor_status(raw) == SubscriptionStatus.revoked


def test_only_active_and_trialing_are_entitled():
    entitled = {status for status in SubscriptionStatus if is_entitled(status)}
    assert entitled == {SubscriptionStatus.active, SubscriptionStatus.trialing}


# ── Customers ────────────────────────────────────────────


def test_ensure_creates_bare_customer_once(db_session):
    first = billing_service.customers.ensure(db_session, "cus_new", "a@example.com")
    second = billing_service.customers.ensure(db_session, "cus_new")
    assert first.id == second.id
    assert second.email == "a@example.com"


def test_processor_customer_links_to_user_by_email(db_session, user):
    customer = billing_service.customers.upsert_from_processor(
        db_session, CustomerPayload(id="cus_mail", email=user.email.upper())
    )
    assert customer.user_id == user.id
    assert customer.last_synced_at is not None


def test_customer_update_merges_metadata(db_session):
    billing_service.customers.upsert_from_processor(
        db_session, CustomerPayload.model_validate({"id": "cus_m", "metadata": {"a": 1}})
    )
    customer = billing_service.customers.upsert_from_processor(
        db_session, CustomerPayload.model_validate({"id": "cus_m", "metadata": {"b": 2}})
    )
    assert customer.metadata_ == {"a": 1, "b": 2}


# ── Subscriptions ────────────────────────────────────────


def _sub_payload(**fields):
    data = {"id": "sub_1", "customer_id": "cus_1"}
    data.update(fields)
    return SubscriptionPayload.model_validate(data)


def test_upsert_is_convergent(db_session):
    payload = _sub_payload(status="active", current_period_end="2024-02-01T00:00:00Z")
    first = billing_service.subscriptions.upsert(db_session, payload)
    second = billing_service.subscriptions.upsert(db_session, payload)
    db_session.commit()
    assert first.id == second.id
    assert second.status == SubscriptionStatus.active


def test_update_touches_only_sent_fields(db_session):
    sub = billing_service.subscriptions.upsert(
        db_session,
        _sub_payload(status="trialing", trial_end="2024-01-15T00:00:00Z", product_id="prod_1"),
    )
    billing_service.subscriptions.upsert(
        db_session, SubscriptionPayload(id="sub_1", status="active")
    )
    assert sub.status == SubscriptionStatus.active
    assert sub.trial_end is not None
    assert sub.product_external_id == "prod_1"


def test_metadata_is_merged_and_product_slug_recorded(db_session):
    sub = billing_service.subscriptions.upsert(
        db_session,
        _sub_payload(
            status="active",
            metadata={"team": "blue"},
            product={"id": "prod_9", "metadata": {"slug": "premium-plus"}},
        ),
    )
    billing_service.subscriptions.upsert(
        db_session, SubscriptionPayload.model_validate({"id": "sub_1", "metadata": {"seats": 3}})
    )
    assert sub.metadata_ == {"team": "blue", "product_slug": "premium-plus", "seats": 3}
    assert sub.product_external_id == "prod_9"


def test_unknown_subscription_without_customer_fails(db_session):
    with pytest.raises(LookupError):
        billing_service.subscriptions.upsert(
            db_session, SubscriptionPayload(id="sub_orphan", status="active")
        )


def test_activate_defaults_status_to_active(db_session):
    sub = billing_service.subscriptions.activate(db_session, _sub_payload())
    assert sub.status == SubscriptionStatus.active


def test_cancel_at_period_end_is_scheduled(db_session):
    billing_service.subscriptions.upsert(db_session, _sub_payload(status="active"))
    sub = billing_service.subscriptions.cancel(
        db_session, SubscriptionPayload(id="sub_1", cancel_at_period_end=True)
    )
    assert sub.status == SubscriptionStatus.active
    assert sub.cancel_at_period_end is True
    assert sub.canceled_at is not None
    assert sub.ended_at is None


def test_immediate_cancel_ends_access(db_session):
    billing_service.subscriptions.upsert(db_session, _sub_payload(status="active"))
    now = datetime(2024, 3, 1, tzinfo=UTC)
    sub = billing_service.subscriptions.cancel(
        db_session, SubscriptionPayload(id="sub_1"), now=now
    )
    assert sub.status == SubscriptionStatus.canceled
    assert sub.canceled_at == now
    assert sub.ended_at == now


def test_revoke(db_session):
    billing_service.subscriptions.upsert(db_session, _sub_payload(status="active"))
    sub = billing_service.subscriptions.revoke(db_session, SubscriptionPayload(id="sub_1"))
    assert sub.status == SubscriptionStatus.revoked
    assert sub.ended_at is not None


def test_current_for_customer_prefers_entitled(db_session, billing_customer):
    billing_service.subscriptions.upsert(
        db_session,
        SubscriptionPayload(id="sub_old", status="active"),
        customer=billing_customer,
    )
    billing_service.subscriptions.upsert(
        db_session,
        SubscriptionPayload(id="sub_new", status="canceled"),
        customer=billing_customer,
    )
    db_session.commit()
    current = billing_service.subscriptions.current_for_customer(db_session, billing_customer.id)
    assert current.external_id == "sub_old"


def test_manual_grant_and_revoke(db_session, user):
    sub = billing_service.subscriptions.grant_manual(
        db_session, user, "premium", "support goodwill", granted_by="user_admin"
    )
    assert sub.status == SubscriptionStatus.active
    assert sub.external_id.startswith("manual_")
    assert sub.customer.is_manual

    revoked = billing_service.subscriptions.revoke_manual(
        db_session, str(sub.id), "ended", immediate=True, revoked_by="user_admin"
    )
    assert revoked.status == SubscriptionStatus.revoked
    assert revoked.metadata_["revoked_manually"] is True
    actions = set(db_session.scalars(select(AuditLog.action)).all())
    assert {"subscription.granted", "subscription.revoked"} <= actions


def test_get_subscription_not_found(db_session):
    with pytest.raises(HTTPException) as exc_info:
        billing_service.subscriptions.get(db_session, str(uuid.uuid4()))
    assert exc_info.value.status_code == 404


# ── Invoices & orders ────────────────────────────────────


def test_invoice_created_then_paid(db_session):
    billing_service.subscriptions.upsert(db_session, _sub_payload(status="active"))
    invoice = billing_service.invoices.upsert(
        db_session,
        InvoicePayload(
            id="inv_1",
            customer_id="cus_1",
            subscription_id="sub_1",
            amount_due=1200,
            status="open",
        ),
    )
    assert invoice.subscription_id is not None
    paid = billing_service.invoices.mark_paid(db_session, InvoicePayload(id="inv_1"))
    assert paid.status == "paid"
    assert paid.amount_paid == 1200
    assert paid.paid_at is not None


def test_paid_before_created_fails(db_session):
    with pytest.raises(LookupError):
        billing_service.invoices.mark_paid(
            db_session, InvoicePayload(id="inv_missing", customer_id="cus_1")
        )


def test_apply_processor_state_maps_succeeded_to_paid(db_session):
    invoice = billing_service.invoices.upsert(
        db_session, InvoicePayload(id="inv_2", customer_id="cus_1", amount_due=500)
    )
    assert billing_service.invoices.apply_processor_state(invoice, {"status": "succeeded"})
    assert invoice.status == "paid"
    assert invoice.amount_paid == 500
    assert not billing_service.invoices.apply_processor_state(invoice, {"status": "paid"})
    assert not billing_service.invoices.apply_processor_state(invoice, {})


# ── Payment methods ──────────────────────────────────────


def test_attach_sets_single_default(db_session):
    billing_service.payment_methods.attach(
        db_session,
        PaymentMethodPayload(
            id="pm_1", customer_id="cus_pm", card={"brand": "visa", "last4": "4242"}, is_default=True
        ),
    )
    second = billing_service.payment_methods.attach(
        db_session,
        PaymentMethodPayload(id="pm_2", customer_id="cus_pm", type="crypto", is_default=True),
    )
    db_session.commit()
    first = db_session.scalars(
        select(PaymentMethod).where(PaymentMethod.external_id == "pm_1")
    ).one()
    db_session.refresh(first)
    assert first.last4 == "4242"
    assert first.is_default is False
    assert second.is_default is True
    assert second.type == PaymentMethodType.other


def test_detach_unknown_is_ignored(db_session):
    assert billing_service.payment_methods.detach(
        db_session, PaymentMethodPayload(id="pm_ghost")
    ) is None


# ── Checkout sessions ────────────────────────────────────


def _polar_checkout(**fields):
    data = {
        "id": "co_1",
        "url": "https://sandbox.polar.sh/checkout/co_1",
        "client_secret": "cs_1",
        "expires_at": (datetime.now(UTC) + timedelta(hours=1)).isoformat(),
    }
    data.update(fields)
    return data


def test_create_checkout_session(db_session, user):
    client = MagicMock()
    client.checkouts.create.return_value = _polar_checkout()
    session = billing_service.checkout_sessions.create_session(
        db_session, client, user, CheckoutCreate(product_ids=["prod_1"])
    )
    assert session.status == CheckoutStatus.pending
    assert session.url.endswith("co_1")
    kwargs = client.checkouts.create.call_args.kwargs
    assert kwargs["customer_external_id"] == user.external_id
    assert kwargs["metadata"]["user_id"] == str(user.id)


def test_checkout_completion_is_idempotent(db_session, user):
    session = CheckoutSession(user_id=user.id, external_id="co_2", status=CheckoutStatus.pending)
    db_session.add(session)
    db_session.commit()

    first = billing_service.checkout_sessions.apply_processor_status(
        db_session, CheckoutPayload(id="co_2", status="succeeded")
    )
    completed_at = first.completed_at
    second = billing_service.checkout_sessions.apply_processor_status(
        db_session, CheckoutPayload(id="co_2", status="succeeded")
    )
    assert second.status == CheckoutStatus.completed
    assert second.completed_at == completed_at


def test_unknown_checkout_update_is_ignored(db_session):
    assert billing_service.checkout_sessions.apply_processor_status(
        db_session, CheckoutPayload(id="co_unknown", status="expired")
    ) is None


def test_expire_stale_sessions(db_session, user):
    past = datetime.now(UTC) - timedelta(hours=2)
    future = datetime.now(UTC) + timedelta(hours=2)
    db_session.add_all(
        [
            CheckoutSession(user_id=user.id, external_id="co_old", expires_at=past),
            CheckoutSession(user_id=user.id, external_id="co_live", expires_at=future),
        ]
    )
    db_session.commit()
    assert billing_service.checkout_sessions.expire_stale(db_session) == 1
    db_session.expire_all()
    statuses = {
        s.external_id: s.status for s in db_session.scalars(select(CheckoutSession)).all()
    }
    assert statuses == {"co_old": CheckoutStatus.expired, "co_live": CheckoutStatus.pending}


def test_cancel_requires_pending(db_session, user):
    session = CheckoutSession(
        user_id=user.id, external_id="co_done", status=CheckoutStatus.completed
    )
    db_session.add(session)
    db_session.commit()
    with pytest.raises(HTTPException) as exc_info:
        billing_service.checkout_sessions.cancel(db_session, session)
    assert exc_info.value.status_code == 400


def test_checkout_owned_by_another_user_is_hidden(db_session, user):
    session = CheckoutSession(user_id=None, external_id="co_anon")
    db_session.add(session)
    db_session.commit()
    with pytest.raises(HTTPException) as exc_info:
        billing_service.checkout_sessions.get_for_user(db_session, str(session.id), user)
    assert exc_info.value.status_code == 404
