"""Timer-driven jobs that keep the local mirror in step with the processor.

"Sync" overwrites local rows from the processor. "Reconcile" only compares
and records what differs in the audit log for an operator to act on.
Jobs that call the processor are gated by the circuit breaker and report
``skipped`` while it is open.
"""
import logging
import time
from collections.abc import Callable
from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime, timedelta

from sqlalchemy import delete, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.config import settings
from app.errors import BillingError, ProcessorAPIError, TransientError
from app.metrics import JOB_RUNS
from app.models.alert import AlertSeverity
from app.models.billing import (
    MANUAL_CUSTOMER_PREFIX,
    Customer,
    Invoice,
    Subscription,
    SubscriptionStatus,
    SyncRun,
    UsageEvent,
    WebhookEvent,
    WebhookOutcome,
)
from app.schemas.billing import SubscriptionPayload
from app.services.audit import audit_logs
from app.services.billing.checkouts import checkout_sessions
from app.services.billing.circuit_breaker import CircuitBreaker
from app.services.billing.invoices import PAID_STATUSES, invoices
from app.services.billing.monitoring import SUBSCRIPTION_SYNC_JOB, Monitoring
from app.services.billing.subscriptions import subscriptions
from app.services.billing.usage import usage
from app.services.notifier import Notifier
from app.services.polar_client import PolarClient

logger = logging.getLogger(__name__)

INVOICE_SYNC_JOB = "invoice_sync"
RECONCILE_JOB = "reconcile"
CLEANUP_JOB = "cleanup"
USAGE_FORWARD_JOB = "usage_forward"
CHECKOUT_EXPIRY_JOB = "checkout_expiry"
HEALTH_CHECK_JOB = "health_check"

RECONCILE_ENTITIES = ("subscriptions", "customers", "invoices")
_LIVE_STATUSES = (
    SubscriptionStatus.active,
    SubscriptionStatus.trialing,
    SubscriptionStatus.past_due,
)
_MAX_REPORTED_ERRORS = 10
_MAX_REPORTED_DISCREPANCIES = 20


def _utcnow() -> datetime:
    return datetime.now(UTC)


@dataclass
class JobResult:
    job: str
    status: str  # completed | skipped | failed
    counts: dict[str, int] = field(default_factory=dict)
    errors: list[str] = field(default_factory=list)
    details: dict | None = None

    def as_dict(self) -> dict:
        return asdict(self)


@dataclass(frozen=True)
class ReconciliationDiscrepancy:
    """A local/processor mismatch. Reported, never raised."""

    type: str
    entity: str
    local_id: str
    external_id: str
    issue: str
    local: dict | None = None
    remote: dict | None = None


class ReconciliationEngine:
    def __init__(
        self,
        db: Session,
        client: PolarClient,
        breaker: CircuitBreaker | None = None,
        notifier: Notifier | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.db = db
        self.client = client
        self.breaker = breaker or CircuitBreaker(db, clock=clock)
        self.monitoring = Monitoring(db, notifier=notifier, clock=clock)
        self._clock = clock

    # ── Helpers ──────────────────────────────────────────

    def _denied(self, job: str) -> JobResult | None:
        if self.breaker.check_allowed():
            return None
        snapshot = self.breaker.snapshot()
        logger.warning(
            "Circuit breaker open, skipping %s", job, extra={"job": job}
        )
        JOB_RUNS.labels(job, "skipped").inc()
        return JobResult(
            job=job,
            status="skipped",
            details={
                "reason": "circuit_open",
                "next_retry_at": (
                    snapshot.next_retry_at.isoformat() if snapshot.next_retry_at else None
                ),
            },
        )

    def _finish(self, result: JobResult) -> JobResult:
        JOB_RUNS.labels(result.job, result.status).inc()
        logger.info(
            "Job %s %s: %s",
            result.job,
            result.status,
            result.counts,
            extra={"job": result.job},
        )
        return result

    def _record_run(
        self, job: str, status: str, synced: int, failed: int, started: float, errors: list[str]
    ) -> None:
        run = SyncRun(
            job=job,
            status=status,
            synced=synced,
            failed=failed,
            duration_ms=int((time.monotonic() - started) * 1000),
            errors=errors[:_MAX_REPORTED_ERRORS],
            completed_at=self._clock(),
        )
        self.db.add(run)
        self.db.commit()

    def _count_failure(self, job: str, errors: list[str]) -> None:
        """Count a failed run against the breaker and raise the high alerts."""
        tripped = self.breaker.record_failure()
        self.monitoring.raise_once(
            f"{job}_failed",
            AlertSeverity.high,
            f"Job {job} failed: {errors[0] if errors else 'unknown error'}",
            {"errors": errors[:_MAX_REPORTED_ERRORS]},
        )
        if tripped:
            snapshot = self.breaker.snapshot()
            self.monitoring.raise_once(
                "circuit_breaker_open",
                AlertSeverity.high,
                "Processor API circuit breaker is open",
                {"consecutive_failures": snapshot.consecutive_failures},
            )

    def _fail_outright(self, job: str, errors: list[str], started: float) -> JobResult:
        """The whole run failed: record it, count it against the breaker and alert."""
        self.db.rollback()
        self._record_run(job, "failed", 0, 0, started, errors)
        self._count_failure(job, errors)
        logger.error("Job %s failed outright: %s", job, errors[:1], extra={"job": job})
        return self._finish(
            JobResult(job=job, status="failed", counts={"synced": 0, "failed": 0}, errors=errors)
        )

    # ── Sync ─────────────────────────────────────────────

    def sync_subscriptions(self, batch_size: int | None = None) -> JobResult:
        job = SUBSCRIPTION_SYNC_JOB
        denied = self._denied(job)
        if denied is not None:
            return denied
        batch_size = batch_size or settings.sync_batch_size
        started = time.monotonic()
        try:
            local_customers = list(
                self.db.scalars(
                    select(Customer)
                    .where(Customer.is_active.is_(True))
                    .where(~Customer.external_id.startswith(MANUAL_CUSTOMER_PREFIX))
                    .order_by(Customer.created_at.asc())
                    .limit(batch_size)
                ).all()
            )
        except SQLAlchemyError as exc:
            return self._fail_outright(job, [f"customer query failed: {exc}"], started)

        synced = failed = transient = 0
        errors: list[str] = []
        for customer in local_customers:
            try:
                remote = self.client.subscriptions.list(
                    customer_id=customer.external_id, active=True
                )
                for item in remote:
                    subscriptions.upsert(
                        self.db, SubscriptionPayload.model_validate(item), customer=customer
                    )
                    synced += 1
                customer.last_synced_at = self._clock()
                self.db.commit()
            except Exception as exc:
                self.db.rollback()
                failed += 1
                if isinstance(exc, TransientError):
                    transient += 1
                errors.append(f"{customer.external_id}: {exc}")
                logger.error(
                    "Subscription sync failed for customer %s: %s",
                    customer.external_id,
                    exc,
                    extra={"job": job},
                )

        if local_customers and transient == len(local_customers):
            return self._fail_outright(job, errors, started)

        self._record_run(
            job, "success" if failed == 0 else "partial", synced, failed, started, errors
        )
        self.breaker.record_success()
        return self._finish(
            JobResult(
                job=job,
                status="completed",
                counts={"customers": len(local_customers), "synced": synced, "failed": failed},
                errors=errors[:_MAX_REPORTED_ERRORS],
            )
        )

    def sync_pending_invoices(self, batch_size: int | None = None) -> JobResult:
        job = INVOICE_SYNC_JOB
        denied = self._denied(job)
        if denied is not None:
            return denied
        started = time.monotonic()
        pending = invoices.pending(self.db, batch_size or settings.sync_batch_size)
        updated = failed = transient = 0
        errors: list[str] = []
        for invoice in pending:
            try:
                order = self.client.orders.get(invoice.external_id)
                if invoices.apply_processor_state(invoice, order, self._clock()):
                    updated += 1
                self.db.commit()
            except BillingError as exc:
                self.db.rollback()
                failed += 1
                if isinstance(exc, TransientError):
                    transient += 1
                errors.append(f"{invoice.external_id}: {exc.message}")
                logger.error(
                    "Invoice sync failed for %s: %s",
                    invoice.external_id,
                    exc.message,
                    extra={"job": job},
                )

        if pending and transient == len(pending):
            return self._fail_outright(job, errors, started)

        self._record_run(
            job, "success" if failed == 0 else "partial", updated, failed, started, errors
        )
        self.breaker.record_success()
        return self._finish(
            JobResult(
                job=job,
                status="completed",
                counts={"pending": len(pending), "updated": updated, "failed": failed},
                errors=errors[:_MAX_REPORTED_ERRORS],
            )
        )

    # ── Reconcile ────────────────────────────────────────

    def reconcile(self, entity: str = "subscriptions") -> JobResult:
        """Compare local rows with the processor and log what differs."""
        if entity not in RECONCILE_ENTITIES:
            raise ValueError(f"Unknown reconciliation entity: {entity}")
        job = RECONCILE_JOB
        denied = self._denied(job)
        if denied is not None:
            return denied
        started = time.monotonic()

        compare = {
            "subscriptions": self._diff_subscriptions,
            "customers": self._diff_customers,
            "invoices": self._diff_invoices,
        }[entity]
        discrepancies: list[ReconciliationDiscrepancy] = []
        errors: list[str] = []
        checked = transient = 0
        for local_id, external_id, fetch, diff in compare():
            checked += 1
            try:
                remote = fetch(external_id)
            except ProcessorAPIError as exc:
                if exc.is_not_found:
                    discrepancies.append(
                        ReconciliationDiscrepancy(
                            type="not_found_in_processor",
                            entity=entity,
                            local_id=local_id,
                            external_id=external_id,
                            issue=f"{entity[:-1].capitalize()} not found in processor",
                        )
                    )
                else:
                    errors.append(f"{external_id}: {exc.message}")
                continue
            except BillingError as exc:
                if isinstance(exc, TransientError):
                    transient += 1
                errors.append(f"{external_id}: {exc.message}")
                continue
            discrepancies.extend(diff(remote))

        if checked and transient == checked:
            self._record_run(job, "failed", 0, 0, started, errors)
            self._count_failure(job, errors)
            logger.error(
                "Reconciliation of %s failed for every record", entity, extra={"job": job}
            )
            return self._finish(
                JobResult(
                    job=job,
                    status="failed",
                    counts={"checked": checked, "discrepancies": 0},
                    errors=errors[:_MAX_REPORTED_ERRORS],
                    details={"entity": entity},
                )
            )

        if discrepancies:
            audit_logs.record(
                self.db,
                "reconciliation.discrepancies",
                entity,
                metadata={
                    "check_type": entity,
                    "count": len(discrepancies),
                    "discrepancies": [asdict(item) for item in discrepancies],
                },
            )
            self.db.commit()
            logger.warning(
                "Reconciliation found %d %s discrepancies",
                len(discrepancies),
                entity,
                extra={"job": job},
            )
        self.breaker.record_success()
        return self._finish(
            JobResult(
                job=job,
                status="completed",
                counts={"checked": checked, "discrepancies": len(discrepancies)},
                errors=errors[:_MAX_REPORTED_ERRORS],
                details={
                    "entity": entity,
                    "discrepancies": [
                        asdict(item)
                        for item in discrepancies[:_MAX_REPORTED_DISCREPANCIES]
                    ],
                },
            )
        )

    def _diff_subscriptions(self):
        rows = self.db.scalars(
            select(Subscription)
            .where(Subscription.status.in_(_LIVE_STATUSES))
            .where(~Subscription.external_id.startswith(MANUAL_CUSTOMER_PREFIX))
            .order_by(Subscription.created_at.asc())
            .limit(settings.sync_batch_size)
        ).all()
        for sub in rows:

            def diff(remote: dict, sub: Subscription = sub) -> list[ReconciliationDiscrepancy]:
                found = []
                if remote.get("status") != sub.status.value:
                    found.append(
                        ReconciliationDiscrepancy(
                            type="status_mismatch",
                            entity="subscriptions",
                            local_id=str(sub.id),
                            external_id=sub.external_id,
                            issue=(
                                f"Status mismatch: local={sub.status.value}, "
                                f"processor={remote.get('status')}"
                            ),
                            local={"status": sub.status.value},
                            remote={"status": remote.get("status")},
                        )
                    )
                remote_flag = bool(remote.get("cancel_at_period_end"))
                if remote_flag != bool(sub.cancel_at_period_end):
                    found.append(
                        ReconciliationDiscrepancy(
                            type="cancellation_mismatch",
                            entity="subscriptions",
                            local_id=str(sub.id),
                            external_id=sub.external_id,
                            issue="Cancel at period end mismatch",
                            local={"cancel_at_period_end": bool(sub.cancel_at_period_end)},
                            remote={"cancel_at_period_end": remote_flag},
                        )
                    )
                return found

            yield str(sub.id), sub.external_id, self.client.subscriptions.get, diff

    def _diff_customers(self):
        rows = self.db.scalars(
            select(Customer)
            .where(~Customer.external_id.startswith(MANUAL_CUSTOMER_PREFIX))
            .order_by(Customer.created_at.asc())
            .limit(settings.sync_batch_size)
        ).all()
        for customer in rows:

            def diff(
                remote: dict, customer: Customer = customer
            ) -> list[ReconciliationDiscrepancy]:
                if remote.get("email") == customer.email:
                    return []
                return [
                    ReconciliationDiscrepancy(
                        type="email_mismatch",
                        entity="customers",
                        local_id=str(customer.id),
                        external_id=customer.external_id,
                        issue="Email mismatch",
                        local={"email": customer.email},
                        remote={"email": remote.get("email")},
                    )
                ]

            yield str(customer.id), customer.external_id, self.client.customers.get, diff

    def _diff_invoices(self):
        rows = self.db.scalars(
            select(Invoice)
            .where(~Invoice.external_id.startswith(MANUAL_CUSTOMER_PREFIX))
            .order_by(Invoice.created_at.desc())
            .limit(settings.sync_batch_size)
        ).all()
        for invoice in rows:

            def diff(
                remote: dict, invoice: Invoice = invoice
            ) -> list[ReconciliationDiscrepancy]:
                remote_status = remote.get("status")
                if remote_status in PAID_STATUSES:
                    remote_status = "paid"
                if remote_status is None or remote_status == invoice.status:
                    return []
                return [
                    ReconciliationDiscrepancy(
                        type="status_mismatch",
                        entity="invoices",
                        local_id=str(invoice.id),
                        external_id=invoice.external_id,
                        issue=(
                            f"Status mismatch: local={invoice.status}, "
                            f"processor={remote_status}"
                        ),
                        local={"status": invoice.status},
                        remote={"status": remote_status},
                    )
                ]

            yield str(invoice.id), invoice.external_id, self.client.orders.get, diff

    # ── Housekeeping ─────────────────────────────────────

    def cleanup(self, days_to_keep: int | None = None) -> JobResult:
        """Delete settled webhook and usage events past retention. Audit rows stay."""
        days_to_keep = days_to_keep or settings.retention_days
        cutoff = self._clock() - timedelta(days=days_to_keep)
        webhook_result = self.db.execute(
            delete(WebhookEvent)
            .where(
                WebhookEvent.outcome.in_((WebhookOutcome.success, WebhookOutcome.skipped)),
                WebhookEvent.received_at < cutoff,
            )
            .execution_options(synchronize_session=False)
        )
        usage_result = self.db.execute(
            delete(UsageEvent)
            .where(UsageEvent.processed.is_(True), UsageEvent.created_at < cutoff)
            .execution_options(synchronize_session=False)
        )
        self.db.commit()
        return self._finish(
            JobResult(
                job=CLEANUP_JOB,
                status="completed",
                counts={
                    "webhook_events": webhook_result.rowcount,
                    "usage_events": usage_result.rowcount,
                    "audit_logs_retained": audit_logs.count_before(self.db, cutoff),
                },
                details={"cutoff": cutoff.isoformat(), "days_to_keep": days_to_keep},
            )
        )

    def expire_checkouts(self) -> JobResult:
        expired = checkout_sessions.expire_stale(self.db, self._clock())
        return self._finish(
            JobResult(job=CHECKOUT_EXPIRY_JOB, status="completed", counts={"expired": expired})
        )

    def forward_usage(self, batch_size: int | None = None) -> JobResult:
        job = USAGE_FORWARD_JOB
        denied = self._denied(job)
        if denied is not None:
            return denied
        counts = usage.forward_batch(
            self.db, self.client, batch_size=batch_size, now=self._clock()
        )
        if counts["groups"] and not counts["processed"]:
            self._count_failure(
                job, [f"No usage group was forwarded ({counts['failed']} events failed)"]
            )
        elif counts["processed"]:
            self.breaker.record_success()
        return self._finish(JobResult(job=job, status="completed", counts=counts))

    def check_health(self) -> JobResult:
        raised = self.monitoring.check_thresholds()
        return self._finish(
            JobResult(
                job=HEALTH_CHECK_JOB,
                status="completed",
                counts={"alerts_raised": len(raised)},
                details={"alerts": [alert.type for alert in raised]},
            )
        )

    def run(self, job: str) -> JobResult:
        """Run a job by name (scheduler and admin entry point)."""
        if job.startswith(f"{RECONCILE_JOB}_"):
            return self.reconcile(job[len(RECONCILE_JOB) + 1:])
        jobs: dict[str, Callable[[], JobResult]] = {
            SUBSCRIPTION_SYNC_JOB: self.sync_subscriptions,
            INVOICE_SYNC_JOB: self.sync_pending_invoices,
            RECONCILE_JOB: self.reconcile,
            CLEANUP_JOB: self.cleanup,
            USAGE_FORWARD_JOB: self.forward_usage,
            CHECKOUT_EXPIRY_JOB: self.expire_checkouts,
            HEALTH_CHECK_JOB: self.check_health,
        }
        if job not in jobs:
            raise ValueError(f"Unknown job: {job}")
        return jobs[job]()


JOB_NAMES = (
    SUBSCRIPTION_SYNC_JOB,
    INVOICE_SYNC_JOB,
    RECONCILE_JOB,
    *(f"{RECONCILE_JOB}_{entity}" for entity in RECONCILE_ENTITIES),
    CLEANUP_JOB,
    USAGE_FORWARD_JOB,
    CHECKOUT_EXPIRY_JOB,
    HEALTH_CHECK_JOB,
)
