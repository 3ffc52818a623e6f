from app.models.alert import Alert, AlertSeverity, AlertStatus  # noqa: F401
from app.models.audit import AuditActorType, AuditLog  # noqa: F401
from app.models.billing import (  # noqa: F401
    MANUAL_CUSTOMER_PREFIX,
    CheckoutSession,
    CheckoutStatus,
    CircuitBreakerState,
    Customer,
    Invoice,
    Order,
    PaymentMethod,
    PaymentMethodType,
    Subscription,
    SubscriptionStatus,
    SyncRun,
    UsageEvent,
    WebhookEvent,
    WebhookOutcome,
    WebhookSource,
)
from app.models.user import User  # noqa: F401
