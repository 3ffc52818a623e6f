from app.services.billing.checkouts import CheckoutSessions, checkout_sessions
from app.services.billing.circuit_breaker import CircuitBreaker
from app.services.billing.customers import Customers, customers
from app.services.billing.event_store import WebhookEvents, webhook_events
from app.services.billing.identity import Users, users
from app.services.billing.invoices import Invoices, Orders, invoices, orders
from app.services.billing.monitoring import Monitoring
from app.services.billing.payment_methods import PaymentMethods, payment_methods
from app.services.billing.reconciliation import JobResult, ReconciliationEngine
from app.services.billing.subscriptions import Subscriptions, subscriptions
from app.services.billing.usage import Usage, usage

__all__ = [
    "CheckoutSessions",
    "CircuitBreaker",
    "Customers",
    "Invoices",
    "JobResult",
    "Monitoring",
    "Orders",
    "PaymentMethods",
    "ReconciliationEngine",
    "Subscriptions",
    "Usage",
    "Users",
    "WebhookEvents",
    "checkout_sessions",
    "customers",
    "invoices",
    "orders",
    "payment_methods",
    "subscriptions",
    "usage",
    "users",
    "webhook_events",
]
