"""Typed billing lifecycle events.

A verified Stripe event is normalized into exactly one of these models;
``BillingEvent`` is the union the reconciler dispatches over. Types the
reconciler does not act on become ``UnhandledEvent`` carrying the raw type.
"""

from datetime import date, datetime
from decimal import Decimal
from typing import Any, Literal

from pydantic import BaseModel, Field

from healthlog_billing.models.subscription import SubscriptionStatus
from healthlog_billing.models.tiers import BillingPeriod


class _EventBase(BaseModel):
    event_id: str


class CheckoutCompleted(_EventBase):
    kind: Literal["checkout.session.completed"] = "checkout.session.completed"
    session_id: str
    user_id: str | None = None
    customer_id: str | None = None
    subscription_id: str | None = None


class SubscriptionSnapshot(BaseModel):
    """Normalized Stripe subscription payload."""

    subscription_id: str
    customer_id: str
    status: SubscriptionStatus
    provider_status: str
    price_id: str
    billing_period: BillingPeriod
    amount: Decimal | None = None
    start_date: date | None = None
    current_period_end: datetime | None = None
    cancel_at_period_end: bool = False
    canceled_at: datetime | None = None
    trial_end: datetime | None = None
    metadata_user_id: str | None = None


class SubscriptionCreated(_EventBase):
    kind: Literal["customer.subscription.created"] = "customer.subscription.created"
    subscription: SubscriptionSnapshot


class SubscriptionUpdated(_EventBase):
    kind: Literal["customer.subscription.updated"] = "customer.subscription.updated"
    subscription: SubscriptionSnapshot


class SubscriptionDeleted(_EventBase):
    kind: Literal["customer.subscription.deleted"] = "customer.subscription.deleted"
    subscription_id: str
    customer_id: str | None = None
    canceled_at: datetime | None = None


class InvoicePaymentSucceeded(_EventBase):
    kind: Literal["invoice.payment_succeeded"] = "invoice.payment_succeeded"
    invoice_id: str
    customer_id: str
    subscription_id: str | None = None
    amount: Decimal
    paid_at: datetime | None = None


class InvoicePaymentFailed(_EventBase):
    kind: Literal["invoice.payment_failed"] = "invoice.payment_failed"
    invoice_id: str
    customer_id: str
    subscription_id: str | None = None
    amount: Decimal
    attempt_count: int = 0
    next_payment_attempt: datetime | None = None


class UnhandledEvent(_EventBase):
    kind: Literal["unhandled"] = "unhandled"
    event_type: str
    raw: dict[str, Any] = Field(default_factory=dict, repr=False)


BillingEvent = (
    CheckoutCompleted
    | SubscriptionCreated
    | SubscriptionUpdated
    | SubscriptionDeleted
    | InvoicePaymentSucceeded
    | InvoicePaymentFailed
    | UnhandledEvent
)
