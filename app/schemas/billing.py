from datetime import datetime
from typing import Literal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

# ── Inbound notifications ────────────────────────────────


class WebhookEnvelope(BaseModel):
    model_config = ConfigDict(extra="ignore")
    id: str = Field(min_length=1, max_length=255)
    type: str = Field(min_length=1, max_length=120)
    data: dict = Field(default_factory=dict)
    created_at: datetime | None = None


class ProcessorObject(BaseModel):
    """Base for objects sent by the processor.

    Unknown keys are ignored; ``model_fields_set`` tells which fields the
    processor actually sent so updates only touch those.
    """

    model_config = ConfigDict(extra="ignore", populate_by_name=True)
    id: str = Field(min_length=1, max_length=255)
    metadata_: dict | None = Field(default=None, alias="metadata")


class CustomerPayload(ProcessorObject):
    email: str | None = None
    name: str | None = None
    external_id: str | None = None


class SubscriptionPayload(ProcessorObject):
    status: str | None = None
    customer_id: str | None = None
    customer: dict | None = None
    customer_email: str | None = None
    product_id: str | None = None
    product: dict | None = None
    current_period_start: datetime | None = None
    current_period_end: datetime | None = None
    trial_start: datetime | None = None
    trial_end: datetime | None = None
    cancel_at_period_end: bool | None = None
    canceled_at: datetime | None = None
    ended_at: datetime | None = None

    @property
    def customer_external_id(self) -> str | None:
        if self.customer_id:
            return self.customer_id
        return (self.customer or {}).get("id")

    @property
    def email(self) -> str | None:
        return self.customer_email or (self.customer or {}).get("email")

    @property
    def product_external_id(self) -> str | None:
        if self.product_id:
            return self.product_id
        return (self.product or {}).get("id")

    @property
    def product_slug(self) -> str | None:
        if not self.product:
            return None
        product_metadata = self.product.get("metadata") or {}
        return product_metadata.get("slug") or self.product.get("name")


class InvoicePayload(ProcessorObject):
    customer_id: str | None = None
    customer: dict | None = None
    subscription_id: str | None = None
    number: str | None = None
    status: str | None = None
    currency: str | None = Field(default=None, max_length=3)
    amount_due: int | None = None
    amount_paid: int | None = None
    total_amount: int | None = None
    due_date: datetime | None = None
    paid_at: datetime | None = None
    period_start: datetime | None = None
    period_end: datetime | None = None

    @property
    def customer_external_id(self) -> str | None:
        if self.customer_id:
            return self.customer_id
        return (self.customer or {}).get("id")


class OrderPayload(ProcessorObject):
    customer_id: str | None = None
    customer: dict | None = None
    product_id: str | None = None
    status: str | None = None
    currency: str | None = Field(default=None, max_length=3)
    total_amount: int | None = None
    billing_reason: str | None = None

    @property
    def customer_external_id(self) -> str | None:
        if self.customer_id:
            return self.customer_id
        return (self.customer or {}).get("id")


class CheckoutPayload(ProcessorObject):
    status: str | None = None
    url: str | None = None
    client_secret: str | None = None
    success_url: str | None = None
    expires_at: datetime | None = None
    product_id: str | None = None
    products: list | None = None


class PaymentMethodPayload(ProcessorObject):
    customer_id: str | None = None
    type: str | None = None
    card: dict | None = None
    is_default: bool | None = None


class IdentityUserPayload(BaseModel):
    model_config = ConfigDict(extra="ignore")
    id: str = Field(min_length=1, max_length=255)
    email: str | None = None
    email_addresses: list[dict] = Field(default_factory=list)
    primary_email_address_id: str | None = None
    first_name: str | None = None
    last_name: str | None = None

    @property
    def primary_email(self) -> str | None:
        if self.email:
            return self.email
        for address in self.email_addresses:
            if address.get("id") == self.primary_email_address_id:
                return address.get("email_address")
        if self.email_addresses:
            return self.email_addresses[0].get("email_address")
        return None

    @property
    def full_name(self) -> str | None:
        parts = [part for part in (self.first_name, self.last_name) if part]
        return " ".join(parts) or None


# ── Customer & Subscription ──────────────────────────────


class CustomerRead(BaseModel):
    model_config = ConfigDict(from_attributes=True, populate_by_name=True)
    id: UUID
    user_id: UUID | None = None
    email: str | None = None
    external_id: str
    is_active: bool
    last_synced_at: datetime | None = None
    metadata_: dict | None = Field(default=None, serialization_alias="metadata")
    created_at: datetime
    updated_at: datetime


class SubscriptionRead(BaseModel):
    model_config = ConfigDict(from_attributes=True, populate_by_name=True)
    id: UUID
    customer_id: UUID
    external_id: str
    product_external_id: str | None = None
    status: str
    current_period_start: datetime | None = None
    current_period_end: datetime | None = None
    trial_start: datetime | None = None
    trial_end: datetime | None = None
    cancel_at_period_end: bool
    canceled_at: datetime | None = None
    ended_at: datetime | None = None
    metadata_: dict | None = Field(default=None, serialization_alias="metadata")
    created_at: datetime
    updated_at: datetime


class InvoiceRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)
    id: UUID
    customer_id: UUID
    subscription_id: UUID | None = None
    external_id: str
    number: str | None = None
    status: str
    currency: str
    amount_due: int
    amount_paid: int
    due_date: datetime | None = None
    paid_at: datetime | None = None
    created_at: datetime


# ── Subscription changes ─────────────────────────────────


class SubscriptionCancelCreate(BaseModel):
    at_period_end: bool = True
    reason: str | None = Field(default=None, max_length=500)


class SubscriptionPlanChange(BaseModel):
    product_id: str = Field(min_length=1, max_length=255)


# ── Checkout ─────────────────────────────────────────────


class CheckoutCreate(BaseModel):
    model_config = ConfigDict(populate_by_name=True)
    product_ids: list[str] = Field(min_length=1)
    success_url: str | None = Field(default=None, max_length=2048)
    metadata_: dict | None = Field(default=None, alias="metadata")


class CheckoutSessionRead(BaseModel):
    model_config = ConfigDict(from_attributes=True, populate_by_name=True)
    id: UUID
    external_id: str
    product_ids: list | None = None
    status: str
    url: str | None = None
    client_secret: str | None = None
    expires_at: datetime | None = None
    completed_at: datetime | None = None
    metadata_: dict | None = Field(default=None, serialization_alias="metadata")
    created_at: datetime


# ── Usage ────────────────────────────────────────────────


class UsageEventCreate(BaseModel):
    model_config = ConfigDict(populate_by_name=True)
    event_type: str = Field(min_length=1, max_length=80)
    event_name: str = Field(min_length=1, max_length=120)
    units: float = Field(default=1.0, gt=0)
    metadata_: dict | None = Field(default=None, alias="metadata")


class UsageEventRead(BaseModel):
    model_config = ConfigDict(from_attributes=True, populate_by_name=True)
    id: UUID
    event_type: str
    event_name: str
    units: float
    processed: bool
    created_at: datetime


class UsageSummaryRead(BaseModel):
    period_start: datetime | None = None
    period_end: datetime | None = None
    usage: dict[str, float]
    total_events: int


class UsageLimitRead(BaseModel):
    event_type: str
    used: float
    limit: int | None = None
    allowed: bool
    remaining: float | None = None


class PlanRead(BaseModel):
    tier: Literal["free", "premium", "premium_plus"]
    status: str | None = None
    subscription_id: UUID | None = None
    current_period_end: datetime | None = None
    cancel_at_period_end: bool = False
    is_trialing: bool = False
    days_left_in_trial: int | None = None
    limits: dict[str, int | None]
    features: dict[str, bool]


# ── Webhooks & operations ────────────────────────────────


class WebhookEventRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)
    id: UUID
    source: str
    event_type: str
    event_id: str
    outcome: str | None = None
    attempts: int
    error: str | None = None
    received_at: datetime
    last_attempt_at: datetime | None = None
    processed_at: datetime | None = None


class CircuitBreakerRead(BaseModel):
    name: str
    is_open: bool
    consecutive_failures: int
    next_retry_at: datetime | None = None


class JobResultRead(BaseModel):
    job: str
    status: Literal["completed", "skipped", "failed"]
    counts: dict[str, int]
    errors: list[str]
    details: dict | None = None


class AlertRead(BaseModel):
    model_config = ConfigDict(from_attributes=True, populate_by_name=True)
    id: UUID
    type: str
    severity: str
    message: str
    status: str
    metadata_: dict | None = Field(default=None, serialization_alias="metadata")
    created_at: datetime


# ── Operator actions ─────────────────────────────────────


class ManualGrantCreate(BaseModel):
    user_id: UUID
    product_slug: str = Field(min_length=1, max_length=120)
    reason: str = Field(min_length=1, max_length=500)
    period_end: datetime | None = None


class ManualRevokeCreate(BaseModel):
    reason: str = Field(min_length=1, max_length=500)
    immediate: bool = False
