from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.orm import Session

from app.api.deps import current_user, get_db, get_polar_client, require_admin
from app.models.user import User
from app.schemas.billing import (
    AlertRead,
    CheckoutCreate,
    CheckoutSessionRead,
    CircuitBreakerRead,
    CustomerRead,
    InvoiceRead,
    JobResultRead,
    ManualGrantCreate,
    ManualRevokeCreate,
    PlanRead,
    SubscriptionCancelCreate,
    SubscriptionPlanChange,
    SubscriptionRead,
    UsageEventCreate,
    UsageEventRead,
    UsageLimitRead,
    UsageSummaryRead,
    WebhookEventRead,
)
from app.schemas.common import ListResponse
from app.services import billing as billing_service
from app.services.billing import webhooks as webhook_service
from app.services.billing.entitlements import plan_summary
from app.services.billing.locks import job_lock
from app.services.billing.reconciliation import JOB_NAMES, RECONCILE_JOB, JobResult
from app.services.polar_client import PolarClient
from app.services.response import list_response

router = APIRouter(prefix="/billing", tags=["billing"])
admin_router = APIRouter(prefix="/billing", tags=["billing-admin"])


def _customer_for(db: Session, user: User):
    customer = billing_service.customers.for_user(db, user.id)
    if customer is None:
        raise HTTPException(status_code=404, detail="No billing customer for this account")
    return customer


# ── Plan & usage ─────────────────────────────────────────


@router.get("/plan", response_model=PlanRead)
def get_plan(user: User = Depends(current_user), db: Session = Depends(get_db)):
    customer = billing_service.customers.for_user(db, user.id)
    subscription = (
        billing_service.subscriptions.current_for_customer(db, customer.id)
        if customer
        else None
    )
    return plan_summary(subscription)


@router.get("/subscription", response_model=SubscriptionRead)
def get_subscription(user: User = Depends(current_user), db: Session = Depends(get_db)):
    customer = _customer_for(db, user)
    subscription = billing_service.subscriptions.current_for_customer(db, customer.id)
    if subscription is None:
        raise HTTPException(status_code=404, detail="Subscription not found")
    return subscription


@router.post("/subscription/cancel", response_model=SubscriptionRead)
def cancel_subscription(
    payload: SubscriptionCancelCreate,
    user: User = Depends(current_user),
    db: Session = Depends(get_db),
    client: PolarClient = Depends(get_polar_client),
):
    customer = _customer_for(db, user)
    return billing_service.subscriptions.request_cancel(
        db,
        client,
        customer,
        at_period_end=payload.at_period_end,
        reason=payload.reason,
        actor_id=user.external_id,
    )


@router.post("/subscription/resume", response_model=SubscriptionRead)
def resume_subscription(
    user: User = Depends(current_user),
    db: Session = Depends(get_db),
    client: PolarClient = Depends(get_polar_client),
):
    customer = _customer_for(db, user)
    return billing_service.subscriptions.resume(
        db, client, customer, actor_id=user.external_id
    )


@router.post("/subscription/change-plan", response_model=SubscriptionRead)
def change_subscription_plan(
    payload: SubscriptionPlanChange,
    user: User = Depends(current_user),
    db: Session = Depends(get_db),
    client: PolarClient = Depends(get_polar_client),
):
    customer = _customer_for(db, user)
    return billing_service.subscriptions.change_plan(
        db, client, customer, payload.product_id, actor_id=user.external_id
    )


@router.get("/history", response_model=ListResponse[InvoiceRead])
def billing_history(
    limit: int = Query(default=10, ge=1, le=100),
    offset: int = Query(default=0, ge=0),
    user: User = Depends(current_user),
    db: Session = Depends(get_db),
):
    customer = billing_service.customers.for_user(db, user.id)
    if customer is None:
        return list_response([], limit, offset)
    return billing_service.invoices.list_response(
        db, str(customer.id), None, "created_at", "desc", limit, offset
    )


@router.get("/usage", response_model=UsageSummaryRead)
def get_usage(user: User = Depends(current_user), db: Session = Depends(get_db)):
    customer = billing_service.customers.for_user(db, user.id)
    if customer is None:
        return {"usage": {}, "total_events": 0}
    return billing_service.usage.period_usage(db, customer)


@router.post(
    "/usage", response_model=UsageEventRead, status_code=status.HTTP_201_CREATED
)
def record_usage(
    payload: UsageEventCreate,
    user: User = Depends(current_user),
    db: Session = Depends(get_db),
):
    customer = _customer_for(db, user)
    return billing_service.usage.record(
        db,
        customer,
        payload.event_type,
        payload.event_name,
        payload.units,
        payload.metadata_,
    )


@router.get("/usage/limit/{event_type}", response_model=UsageLimitRead)
def check_usage_limit(
    event_type: str, user: User = Depends(current_user), db: Session = Depends(get_db)
):
    customer = billing_service.customers.for_user(db, user.id)
    return billing_service.usage.check_limit(db, customer, event_type)


# ── Checkout ─────────────────────────────────────────────


@router.post(
    "/checkout", response_model=CheckoutSessionRead, status_code=status.HTTP_201_CREATED
)
def create_checkout(
    payload: CheckoutCreate,
    user: User = Depends(current_user),
    db: Session = Depends(get_db),
    client: PolarClient = Depends(get_polar_client),
):
    return billing_service.checkout_sessions.create_session(db, client, user, payload)


@router.get("/checkout/{item_id}", response_model=CheckoutSessionRead)
def get_checkout(
    item_id: str, user: User = Depends(current_user), db: Session = Depends(get_db)
):
    return billing_service.checkout_sessions.get_for_user(db, item_id, user)


@router.post("/checkout/{item_id}/sync", response_model=CheckoutSessionRead)
def sync_checkout(
    item_id: str,
    user: User = Depends(current_user),
    db: Session = Depends(get_db),
    client: PolarClient = Depends(get_polar_client),
):
    session = billing_service.checkout_sessions.get_for_user(db, item_id, user)
    return billing_service.checkout_sessions.sync_status(db, client, session)


@router.post("/checkout/{item_id}/cancel", response_model=CheckoutSessionRead)
def cancel_checkout(
    item_id: str, user: User = Depends(current_user), db: Session = Depends(get_db)
):
    session = billing_service.checkout_sessions.get_for_user(db, item_id, user)
    return billing_service.checkout_sessions.cancel(db, session)


# ── Operations (admin) ───────────────────────────────────


@admin_router.get("/health")
def billing_health(db: Session = Depends(get_db)) -> dict:
    return billing_service.Monitoring(db).health_report()


@admin_router.get("/dashboard")
def billing_dashboard(db: Session = Depends(get_db)) -> dict:
    return billing_service.Monitoring(db).dashboard_metrics()


@admin_router.get("/circuit-breaker", response_model=CircuitBreakerRead)
def get_circuit_breaker(db: Session = Depends(get_db)):
    return billing_service.CircuitBreaker(db).snapshot()


@admin_router.post("/circuit-breaker/reset", response_model=CircuitBreakerRead)
def reset_circuit_breaker(db: Session = Depends(get_db)):
    breaker = billing_service.CircuitBreaker(db)
    breaker.record_success()
    return breaker.snapshot()


@admin_router.post("/jobs/{job}", response_model=JobResultRead)
def run_job(
    job: str,
    db: Session = Depends(get_db),
    client: PolarClient = Depends(get_polar_client),
):
    if job not in JOB_NAMES:
        raise HTTPException(status_code=404, detail="Job not found")
    # Same lock names as the scheduled tasks.
    lock_name = f"{RECONCILE_JOB}_subscriptions" if job == RECONCILE_JOB else job
    with job_lock(lock_name) as acquired:
        if not acquired:
            return JobResult(
                job=job, status="skipped", details={"reason": "locked"}
            ).as_dict()
        return billing_service.ReconciliationEngine(db, client).run(job).as_dict()


@admin_router.get("/alerts", response_model=list[AlertRead])
def list_alerts(
    limit: int = Query(default=50, ge=1, le=200), db: Session = Depends(get_db)
):
    return billing_service.Monitoring(db).active_alerts(limit)


@admin_router.post("/alerts/{item_id}/resolve", response_model=AlertRead)
def resolve_alert(item_id: str, db: Session = Depends(get_db)):
    alert = billing_service.Monitoring(db).resolve_alert(item_id)
    if alert is None:
        raise HTTPException(status_code=404, detail="Alert not found")
    return alert


# ── Webhook events (admin) ───────────────────────────────


@admin_router.get("/webhook-events", response_model=ListResponse[WebhookEventRead])
def list_webhook_events(
    source: str | None = None,
    event_type: str | None = None,
    outcome: str | None = None,
    order_by: str = Query(default="received_at"),
    order_dir: str = Query(default="desc", pattern="^(asc|desc)$"),
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    db: Session = Depends(get_db),
):
    return billing_service.webhook_events.list_response(
        db, source, event_type, outcome, order_by, order_dir, limit, offset
    )


@admin_router.get("/webhook-events/{item_id}", response_model=WebhookEventRead)
def get_webhook_event(item_id: str, db: Session = Depends(get_db)):
    return billing_service.webhook_events.get(db, item_id)


@admin_router.post("/webhook-events/{item_id}/replay")
def replay_webhook_event(item_id: str, db: Session = Depends(get_db)) -> dict:
    return webhook_service.replay(db, item_id)


# ── Customers, subscriptions, invoices (admin) ───────────


@admin_router.get("/customers", response_model=ListResponse[CustomerRead])
def list_customers(
    email: str | None = None,
    is_active: bool | None = None,
    order_by: str = Query(default="created_at"),
    order_dir: str = Query(default="desc", pattern="^(asc|desc)$"),
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    db: Session = Depends(get_db),
):
    return billing_service.customers.list_response(
        db, email, is_active, order_by, order_dir, limit, offset
    )


@admin_router.get("/subscriptions", response_model=ListResponse[SubscriptionRead])
def list_subscriptions(
    customer_id: str | None = None,
    status: str | None = None,
    order_by: str = Query(default="created_at"),
    order_dir: str = Query(default="desc", pattern="^(asc|desc)$"),
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    db: Session = Depends(get_db),
):
    return billing_service.subscriptions.list_response(
        db, customer_id, status, order_by, order_dir, limit, offset
    )


@admin_router.post(
    "/subscriptions/grant",
    response_model=SubscriptionRead,
    status_code=status.HTTP_201_CREATED,
)
def grant_subscription(
    payload: ManualGrantCreate,
    admin: str = Depends(require_admin),
    db: Session = Depends(get_db),
):
    user = db.get(User, payload.user_id)
    if user is None:
        raise HTTPException(status_code=404, detail="User not found")
    return billing_service.subscriptions.grant_manual(
        db, user, payload.product_slug, payload.reason, payload.period_end, admin
    )


@admin_router.post("/subscriptions/{item_id}/revoke", response_model=SubscriptionRead)
def revoke_subscription(
    item_id: str,
    payload: ManualRevokeCreate,
    admin: str = Depends(require_admin),
    db: Session = Depends(get_db),
):
    return billing_service.subscriptions.revoke_manual(
        db, item_id, payload.reason, payload.immediate, admin
    )


@admin_router.get("/invoices", response_model=ListResponse[InvoiceRead])
def list_invoices(
    customer_id: str | None = None,
    status: str | None = None,
    order_by: str = Query(default="created_at"),
    order_dir: str = Query(default="desc", pattern="^(asc|desc)$"),
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    db: Session = Depends(get_db),
):
    return billing_service.invoices.list_response(
        db, customer_id, status, order_by, order_dir, limit, offset
    )
