"""Subscription state, history ledger and notification models."""

from datetime import UTC, date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from healthlog_billing.models.tiers import BillingPeriod, TierCode


def _utcnow() -> datetime:
    return datetime.now(UTC)


class SubscriptionStatus(str, Enum):
    """Internal subscription lifecycle status."""

    ACTIVE = "active"
    PAST_DUE = "past_due"
    CANCELLED = "cancelled"
    TRIALING = "trialing"
    EXPIRED = "expired"


class SubscriptionState(BaseModel):
    """Persisted entitlement state for a user (one row per user)."""

    user_id: str
    tier_code: TierCode = TierCode.FREE
    status: SubscriptionStatus = SubscriptionStatus.ACTIVE
    billing_period: BillingPeriod = BillingPeriod.MONTHLY
    start_date: date | None = None
    end_date: date | None = None
    cancel_at_period_end: bool = False
    external_customer_id: str | None = None
    external_subscription_id: str | None = None
    external_price_id: str | None = None

    # Contact details from the profile row, used to address notifications
    email: str | None = None
    first_name: str | None = None
    updated_at: datetime | None = None


class SubscriptionChanges(BaseModel):
    """Partial update of a SubscriptionState.

    Only fields explicitly set are written (``model_dump(exclude_unset=True)``),
    so a change set can clear a nullable field by setting it to None.
    """

    tier_code: TierCode | None = None
    status: SubscriptionStatus | None = None
    billing_period: BillingPeriod | None = None
    start_date: date | None = None
    end_date: date | None = None
    cancel_at_period_end: bool | None = None
    external_customer_id: str | None = None
    external_subscription_id: str | None = None
    external_price_id: str | None = None

    def as_fields(self) -> dict[str, Any]:
        return self.model_dump(exclude_unset=True)


class HistoryEventType(str, Enum):
    """Kinds of entitlement-affecting occurrences recorded in the ledger."""

    SUBSCRIPTION_CREATED = "subscription_created"
    SUBSCRIPTION_UPDATED = "subscription_updated"
    SUBSCRIPTION_CANCELLED = "subscription_cancelled"
    TIER_UPGRADED = "tier_upgraded"
    TIER_DOWNGRADED = "tier_downgraded"
    PAYMENT_SUCCEEDED = "payment_succeeded"
    PAYMENT_FAILED = "payment_failed"


class HistoryEvent(BaseModel):
    """Immutable audit record."""

    model_config = ConfigDict(frozen=True)

    user_id: str
    event_type: HistoryEventType
    from_tier: TierCode | None = None
    to_tier: TierCode | None = None
    amount: Decimal | None = None
    billing_period: BillingPeriod | None = None
    external_event_id: str | None = None
    external_invoice_id: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=_utcnow)


class NotificationKind(str, Enum):
    """Templated messages the reconciler can trigger."""

    WELCOME = "welcome"
    UPGRADE = "upgrade"
    DOWNGRADE = "downgrade"
    CANCELLED = "cancelled"
    PAYMENT_FAILED = "payment_failed"


class Notification(BaseModel):
    """A best-effort message to send after a webhook has been acknowledged."""

    kind: NotificationKind
    user_id: str
    recipient_email: str
    recipient_name: str = "User"
    variables: dict[str, Any] = Field(default_factory=dict)
