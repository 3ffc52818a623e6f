"""Tests for the account-facing and operator billing endpoints."""

from contextlib import contextmanager
from unittest.mock import MagicMock

import pytest
from sqlalchemy import select

from app.models.audit import AuditLog
from app.models.billing import (
    Customer,
    Invoice,
    Subscription,
    SubscriptionStatus,
    WebhookEvent,
    WebhookOutcome,
)


@pytest.fixture
def polar(client):
    from app.api.deps import get_polar_client
    from app.main import app

    polar = MagicMock(name="polar_client")
    app.dependency_overrides[get_polar_client] = lambda: polar
    return polar


@pytest.fixture
def job_locks(monkeypatch):
    """Replace the Redis job lock; records the names taken, held ones are refused."""
    taken = []
    held = set()

    @contextmanager
    def _lock(job, ttl_seconds=None, client=None):
        taken.append(job)
        yield job not in held

    monkeypatch.setattr("app.api.billing.job_lock", _lock)
    return taken, held


# ── Account endpoints ────────────────────────────────────


def test_plan_requires_a_token(client):
    resp = client.get("/billing/plan")
    assert resp.status_code == 401


def test_plan_is_free_without_a_customer(client, auth_headers):
    resp = client.get("/billing/plan", headers=auth_headers)
    assert resp.status_code == 200
    body = resp.json()
    assert body["tier"] == "free"
    assert body["subscription_id"] is None
    assert body["limits"]["max_api_calls"] == 1000


def test_plan_reflects_current_subscription(client, auth_headers, billing_subscription):
    resp = client.get("/api/v1/billing/plan", headers=auth_headers)
    assert resp.status_code == 200
    body = resp.json()
    assert body["tier"] == "premium"
    assert body["status"] == "active"
    assert body["subscription_id"] == str(billing_subscription.id)


def test_subscription_is_404_without_customer(client, auth_headers):
    resp = client.get("/billing/subscription", headers=auth_headers)
    assert resp.status_code == 404
    assert resp.json()["code"] == "http_404"


def test_record_usage_needs_a_customer(client, auth_headers):
    resp = client.post(
        "/billing/usage",
        json={"event_type": "api_call", "event_name": "search"},
        headers=auth_headers,
    )
    assert resp.status_code == 404


def test_record_and_summarise_usage(client, auth_headers, billing_subscription):
    resp = client.post(
        "/billing/usage",
        json={"event_type": "api_call", "event_name": "search", "units": 4},
        headers=auth_headers,
    )
    assert resp.status_code == 201
    assert resp.json()["processed"] is False

    summary = client.get("/billing/usage", headers=auth_headers).json()
    assert summary["usage"] == {"api_call": 4.0}
    assert summary["total_events"] == 1

    limit = client.get("/billing/usage/limit/api_call", headers=auth_headers).json()
    assert limit["limit"] == 10000
    assert limit["used"] == 4.0
    assert limit["allowed"] is True


def test_usage_rejects_non_positive_units(client, auth_headers, billing_customer):
    resp = client.post(
        "/billing/usage",
        json={"event_type": "api_call", "event_name": "search", "units": 0},
        headers=auth_headers,
    )
    assert resp.status_code == 422
    assert resp.json()["code"] == "validation_error"


def test_checkout_round_trip(client, auth_headers, polar):
    polar.checkouts.create.return_value = {
        "id": "co_1",
        "status": "open",
        "url": "https://sandbox.polar.sh/checkout/co_1",
        "client_secret": "secret",
    }

    created = client.post(
        "/billing/checkout", json={"product_ids": ["prod_1"]}, headers=auth_headers
    )
    assert created.status_code == 201
    session_id = created.json()["id"]
    assert created.json()["status"] == "pending"

    fetched = client.get(f"/billing/checkout/{session_id}", headers=auth_headers)
    assert fetched.json()["external_id"] == "co_1"

    canceled = client.post(f"/billing/checkout/{session_id}/cancel", headers=auth_headers)
    assert canceled.status_code == 200
    assert canceled.json()["status"] == "canceled"


# ── Subscription changes ─────────────────────────────────


def test_cancel_at_period_end_keeps_access(
    client, auth_headers, polar, billing_subscription, db_session
):
    polar.subscriptions.cancel.return_value = {
        "id": billing_subscription.external_id,
        "status": "active",
        "cancel_at_period_end": True,
    }

    resp = client.post(
        "/billing/subscription/cancel", json={"reason": "too pricey"}, headers=auth_headers
    )

    assert resp.status_code == 200
    body = resp.json()
    assert body["status"] == "active"
    assert body["cancel_at_period_end"] is True
    assert body["canceled_at"] is not None
    assert body["metadata"]["cancellation_reason"] == "too pricey"
    polar.subscriptions.cancel.assert_called_once_with(
        billing_subscription.external_id, at_period_end=True
    )
    actions = set(db_session.scalars(select(AuditLog.action)).all())
    assert "subscription.cancel_requested" in actions


def test_immediate_cancel_ends_subscription(
    client, auth_headers, polar, billing_subscription
):
    polar.subscriptions.cancel.return_value = {
        "id": billing_subscription.external_id,
        "status": "canceled",
        "cancel_at_period_end": False,
    }

    resp = client.post(
        "/billing/subscription/cancel", json={"at_period_end": False}, headers=auth_headers
    )

    assert resp.status_code == 200
    assert resp.json()["status"] == "canceled"
    assert resp.json()["ended_at"] is not None
    polar.subscriptions.cancel.assert_called_once_with(
        billing_subscription.external_id, at_period_end=False
    )


def test_cancel_keeps_local_row_when_processor_is_down(
    client, auth_headers, polar, billing_subscription, db_session
):
    from app.errors import TransientError

    polar.subscriptions.cancel.side_effect = TransientError("processor down")

    resp = client.post("/billing/subscription/cancel", json={}, headers=auth_headers)

    assert resp.status_code == 502
    assert resp.json()["code"] == "processor_unavailable"
    db_session.expire_all()
    assert db_session.get(Subscription, billing_subscription.id).cancel_at_period_end is False


def test_resume_undoes_scheduled_cancellation(
    client, auth_headers, polar, billing_subscription, db_session
):
    billing_subscription.cancel_at_period_end = True
    db_session.commit()
    polar.subscriptions.update.return_value = {
        "id": billing_subscription.external_id,
        "status": "active",
        "cancel_at_period_end": False,
    }

    resp = client.post("/billing/subscription/resume", headers=auth_headers)

    assert resp.status_code == 200
    assert resp.json()["cancel_at_period_end"] is False
    assert resp.json()["canceled_at"] is None
    polar.subscriptions.update.assert_called_once_with(
        billing_subscription.external_id, cancel_at_period_end=False
    )


def test_resume_requires_a_scheduled_cancellation(
    client, auth_headers, polar, billing_subscription
):
    resp = client.post("/billing/subscription/resume", headers=auth_headers)
    assert resp.status_code == 400
    polar.subscriptions.update.assert_not_called()


def test_change_plan_applies_processor_answer(
    client, auth_headers, polar, billing_subscription
):
    polar.subscriptions.update.return_value = {
        "id": billing_subscription.external_id,
        "status": "active",
        "product_id": "prod_premium_plus",
    }

    resp = client.post(
        "/billing/subscription/change-plan",
        json={"product_id": "prod_premium_plus"},
        headers=auth_headers,
    )

    assert resp.status_code == 200
    body = resp.json()
    assert body["product_external_id"] == "prod_premium_plus"
    assert body["metadata"]["previous_product_id"] == "prod_premium"
    polar.subscriptions.update.assert_called_once_with(
        billing_subscription.external_id, product_id="prod_premium_plus"
    )


def test_manual_subscription_is_not_changed_by_its_holder(
    client, auth_headers, polar, billing_customer, db_session
):
    db_session.add(
        Subscription(
            customer_id=billing_customer.id,
            external_id="manual_abc",
            status=SubscriptionStatus.active,
            cancel_at_period_end=False,
        )
    )
    db_session.commit()

    resp = client.post("/billing/subscription/cancel", json={}, headers=auth_headers)

    assert resp.status_code == 400
    polar.subscriptions.cancel.assert_not_called()


def test_subscription_changes_need_a_subscription(client, auth_headers, polar, billing_customer):
    resp = client.post(
        "/billing/subscription/change-plan", json={"product_id": "prod_x"}, headers=auth_headers
    )
    assert resp.status_code == 404


def test_billing_history_lists_only_own_invoices(
    client, auth_headers, billing_customer, db_session
):
    assert client.get("/billing/history", headers=auth_headers).json()["items"] == []

    other = Customer(external_id="cus_other")
    db_session.add(other)
    db_session.commit()
    db_session.add_all(
        [
            Invoice(customer_id=billing_customer.id, external_id="inv_mine",
                    status="paid", amount_due=900),
            Invoice(customer_id=other.id, external_id="inv_theirs",
                    status="paid", amount_due=900),
        ]
    )
    db_session.commit()

    body = client.get("/billing/history", headers=auth_headers).json()

    assert body["total"] == 1
    assert [item["external_id"] for item in body["items"]] == ["inv_mine"]


def test_billing_history_is_empty_without_a_customer(client, auth_headers):
    body = client.get("/billing/history", headers=auth_headers).json()
    assert body["items"] == []
    assert body["total"] == 0


# ── Operator endpoints ───────────────────────────────────


def test_admin_routes_reject_non_admins(client, auth_headers):
    assert client.get("/billing/circuit-breaker").status_code == 401
    assert client.get("/billing/circuit-breaker", headers=auth_headers).status_code == 403


def test_circuit_breaker_read_and_reset(client, admin_headers, db_session):
    from app.services.billing.circuit_breaker import CircuitBreaker

    CircuitBreaker(db_session, threshold=1).record_failure()

    state = client.get("/billing/circuit-breaker", headers=admin_headers).json()
    assert state["is_open"] is True
    assert state["next_retry_at"] is not None

    reset = client.post("/billing/circuit-breaker/reset", headers=admin_headers).json()
    assert reset["is_open"] is False
    assert reset["consecutive_failures"] == 0


def test_run_job_by_name(client, admin_headers, polar, job_locks):
    resp = client.post("/billing/jobs/cleanup", headers=admin_headers)
    assert resp.status_code == 200
    body = resp.json()
    assert body["job"] == "cleanup"
    assert body["status"] == "completed"
    assert "webhook_events" in body["counts"]


def test_run_job_skips_while_scheduled_run_holds_the_lock(
    client, admin_headers, polar, job_locks
):
    taken, held = job_locks
    held.add("usage_forward")

    resp = client.post("/billing/jobs/usage_forward", headers=admin_headers)

    assert resp.status_code == 200
    body = resp.json()
    assert body["status"] == "skipped"
    assert body["details"] == {"reason": "locked"}
    polar.metrics.ingest_events.assert_not_called()
    assert taken == ["usage_forward"]


def test_run_reconcile_job_uses_the_entity_lock(client, admin_headers, polar, job_locks):
    taken, _ = job_locks
    client.post("/billing/jobs/reconcile", headers=admin_headers)
    client.post("/billing/jobs/reconcile_invoices", headers=admin_headers)
    assert taken == ["reconcile_subscriptions", "reconcile_invoices"]


def test_run_unknown_job_is_404(client, admin_headers, polar):
    resp = client.post("/billing/jobs/defragment", headers=admin_headers)
    assert resp.status_code == 404


def test_health_and_dashboard(client, admin_headers):
    health = client.get("/billing/health", headers=admin_headers)
    assert health.status_code == 200
    assert health.json()["status"] == "degraded"

    dashboard = client.get("/billing/dashboard", headers=admin_headers)
    assert dashboard.status_code == 200
    assert "subscriptions" in dashboard.json()


def test_alerts_list_and_resolve(client, admin_headers, db_session):
    from app.models.alert import AlertSeverity
    from app.services.billing.monitoring import Monitoring

    alert = Monitoring(db_session).record_alert("sync_stale", AlertSeverity.medium, "stale")

    listed = client.get("/billing/alerts", headers=admin_headers).json()
    assert [item["type"] for item in listed] == ["sync_stale"]

    resolved = client.post(f"/billing/alerts/{alert.id}/resolve", headers=admin_headers)
    assert resolved.json()["status"] == "resolved"
    assert client.get("/billing/alerts", headers=admin_headers).json() == []

    missing = client.post(
        "/billing/alerts/00000000-0000-0000-0000-000000000000/resolve", headers=admin_headers
    )
    assert missing.status_code == 404


def test_grant_and_revoke_manual_subscription(client, admin_headers, db_session, user):
    granted = client.post(
        "/billing/subscriptions/grant",
        json={"user_id": str(user.id), "product_slug": "premium-plus", "reason": "partner"},
        headers=admin_headers,
    )
    assert granted.status_code == 201
    body = granted.json()
    assert body["status"] == "active"
    assert body["external_id"].startswith("manual_")
    assert body["metadata"]["granted_by"] == "user_admin"

    customer = db_session.scalars(select(Customer).where(Customer.user_id == user.id)).one()
    assert customer.external_id.startswith("manual_")

    revoked = client.post(
        f"/billing/subscriptions/{body['id']}/revoke",
        json={"reason": "contract ended", "immediate": True},
        headers=admin_headers,
    )
    assert revoked.status_code == 200
    assert revoked.json()["status"] == "revoked"

    actions = set(db_session.scalars(select(AuditLog.action)).all())
    assert {"subscription.granted", "subscription.revoked"} <= actions


def test_grant_for_unknown_user_is_404(client, admin_headers):
    resp = client.post(
        "/billing/subscriptions/grant",
        json={
            "user_id": "00000000-0000-0000-0000-000000000000",
            "product_slug": "premium",
            "reason": "x",
        },
        headers=admin_headers,
    )
    assert resp.status_code == 404


def test_admin_lists(client, admin_headers, billing_subscription, db_session):
    db_session.add(
        Invoice(
            customer_id=billing_subscription.customer_id,
            external_id="inv_1",
            status="pending",
            amount_due=500,
        )
    )
    db_session.commit()

    customers = client.get("/billing/customers", headers=admin_headers).json()
    assert customers["total"] == 1

    subs = client.get(
        "/billing/subscriptions", params={"status": "active"}, headers=admin_headers
    ).json()
    assert [item["id"] for item in subs["items"]] == [str(billing_subscription.id)]

    invoices = client.get("/billing/invoices", headers=admin_headers).json()
    assert invoices["items"][0]["external_id"] == "inv_1"


def test_webhook_event_list_and_replay(
    client, admin_headers, db_session, post_payment_webhook
):
    paid = {
        "id": "evt_paid",
        "type": "invoice.paid",
        "data": {"id": "inv_2", "customer_id": "cus_2", "amount_paid": 300},
    }
    assert post_payment_webhook(paid).status_code == 500
    post_payment_webhook(
        {
            "id": "evt_created",
            "type": "invoice.created",
            "data": {"id": "inv_2", "customer_id": "cus_2", "amount_due": 300},
        }
    )

    failed = client.get(
        "/billing/webhook-events", params={"outcome": "error"}, headers=admin_headers
    ).json()
    assert failed["total"] == 1
    event_id = failed["items"][0]["id"]

    replayed = client.post(f"/billing/webhook-events/{event_id}/replay", headers=admin_headers)
    assert replayed.status_code == 200
    assert replayed.json() == {"status": "processed"}

    db_session.expire_all()
    record = db_session.scalars(
        select(WebhookEvent).where(WebhookEvent.event_id == "evt_paid")
    ).one()
    assert record.outcome == WebhookOutcome.success
    detail = client.get(f"/billing/webhook-events/{event_id}", headers=admin_headers).json()
    assert detail["outcome"] == "success"


def test_active_subscription_from_processor_is_listed(client, admin_headers, db_session):
    customer = Customer(external_id="cus_9")
    db_session.add(customer)
    db_session.commit()
    db_session.add(
        Subscription(
            customer_id=customer.id,
            external_id="sub_9",
            status=SubscriptionStatus.past_due,
            cancel_at_period_end=False,
        )
    )
    db_session.commit()

    body = client.get(
        "/billing/subscriptions", params={"status": "past_due"}, headers=admin_headers
    ).json()
    assert body["items"][0]["external_id"] == "sub_9"
