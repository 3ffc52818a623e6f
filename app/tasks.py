"""Celery entry points for the scheduled billing jobs.

Each task takes the run-lock for its job, opens its own session and hands
off to the reconciliation engine. Results are plain dicts so they can be
stored by the result backend.
"""
from collections.abc import Callable

from app.celery_app import celery_app
from app.db import session_scope
from app.metrics import JOB_RUNS
from app.services.billing.locks import job_lock
from app.services.billing.monitoring import SUBSCRIPTION_SYNC_JOB
from app.services.billing.reconciliation import (
    CHECKOUT_EXPIRY_JOB,
    CLEANUP_JOB,
    HEALTH_CHECK_JOB,
    INVOICE_SYNC_JOB,
    RECONCILE_JOB,
    USAGE_FORWARD_JOB,
    JobResult,
    ReconciliationEngine,
)
from app.services.polar_client import PolarClient


def run_locked(job: str, action: Callable[[ReconciliationEngine], JobResult]) -> dict:
    with job_lock(job) as acquired:
        if not acquired:
            JOB_RUNS.labels(job, "skipped").inc()
            return JobResult(
                job=job, status="skipped", details={"reason": "locked"}
            ).as_dict()
        with session_scope() as db:
            engine = ReconciliationEngine(db, PolarClient())
            return action(engine).as_dict()


@celery_app.task(name="app.tasks.sync_subscriptions")
def sync_subscriptions(batch_size: int | None = None) -> dict:
    return run_locked(
        SUBSCRIPTION_SYNC_JOB, lambda engine: engine.sync_subscriptions(batch_size)
    )


@celery_app.task(name="app.tasks.sync_pending_invoices")
def sync_pending_invoices() -> dict:
    return run_locked(INVOICE_SYNC_JOB, lambda engine: engine.sync_pending_invoices())


@celery_app.task(name="app.tasks.reconcile")
def reconcile(entity: str = "subscriptions") -> dict:
    return run_locked(
        f"{RECONCILE_JOB}_{entity}", lambda engine: engine.reconcile(entity)
    )


@celery_app.task(name="app.tasks.cleanup")
def cleanup(days_to_keep: int | None = None) -> dict:
    return run_locked(CLEANUP_JOB, lambda engine: engine.cleanup(days_to_keep))


@celery_app.task(name="app.tasks.forward_usage")
def forward_usage() -> dict:
    return run_locked(USAGE_FORWARD_JOB, lambda engine: engine.forward_usage())


@celery_app.task(name="app.tasks.expire_checkouts")
def expire_checkouts() -> dict:
    return run_locked(CHECKOUT_EXPIRY_JOB, lambda engine: engine.expire_checkouts())


@celery_app.task(name="app.tasks.check_health")
def check_health() -> dict:
    return run_locked(HEALTH_CHECK_JOB, lambda engine: engine.check_health())
