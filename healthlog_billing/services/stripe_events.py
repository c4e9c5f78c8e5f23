"""Normalize verified Stripe webhook events into typed billing events."""

from datetime import UTC, date, datetime
from decimal import ROUND_HALF_UP, Decimal
from typing import Any

import structlog

from healthlog_billing.errors import MalformedEventError
from healthlog_billing.models.events import (
    BillingEvent,
    CheckoutCompleted,
    InvoicePaymentFailed,
    InvoicePaymentSucceeded,
    SubscriptionCreated,
    SubscriptionDeleted,
    SubscriptionSnapshot,
    SubscriptionUpdated,
    UnhandledEvent,
)
from healthlog_billing.models.subscription import SubscriptionStatus
from healthlog_billing.models.tiers import BillingPeriod

logger = structlog.get_logger(__name__)

_STATUS_MAP: dict[str, SubscriptionStatus] = {
    "active": SubscriptionStatus.ACTIVE,
    "trialing": SubscriptionStatus.TRIALING,
    "past_due": SubscriptionStatus.PAST_DUE,
    "unpaid": SubscriptionStatus.PAST_DUE,
    "incomplete": SubscriptionStatus.PAST_DUE,
    "paused": SubscriptionStatus.PAST_DUE,
    "canceled": SubscriptionStatus.CANCELLED,
    "incomplete_expired": SubscriptionStatus.EXPIRED,
}


def minor_to_major(amount: int | None) -> Decimal | None:
    """Convert integer minor units (cents) to a major-unit Decimal."""
    if amount is None:
        return None
    return (Decimal(int(amount)) / Decimal(100)).quantize(Decimal("0.01"))


def major_to_minor(amount: Decimal | float | int) -> int:
    """Convert a major-unit amount to integer minor units, rounding half up."""
    cents = (Decimal(str(amount)) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP)
    return int(cents)


def epoch_to_datetime(timestamp: int | None) -> datetime | None:
    if not timestamp:
        return None
    return datetime.fromtimestamp(int(timestamp), tz=UTC)


def epoch_to_date(timestamp: int | None) -> date | None:
    """Calendar date of an epoch timestamp, truncated in UTC."""
    converted = epoch_to_datetime(timestamp)
    return converted.date() if converted else None


def map_status(provider_status: str) -> SubscriptionStatus:
    status = _STATUS_MAP.get(provider_status)
    if status is None:
        logger.warning("stripe_status_unknown", provider_status=provider_status)
        return SubscriptionStatus.PAST_DUE
    return status


def period_from_interval(interval: str | None) -> BillingPeriod:
    return BillingPeriod.YEARLY if interval == "year" else BillingPeriod.MONTHLY


def _id_of(value: Any) -> str | None:
    """Stripe expandable fields are either an id string or an object."""
    if value is None:
        return None
    if isinstance(value, dict):
        value = value.get("id")
    return str(value) if value else None


def _require(data: dict[str, Any], key: str, what: str) -> str:
    value = _id_of(data.get(key))
    if not value:
        raise MalformedEventError(f"{what} is missing '{key}'")
    return value


def subscription_snapshot_from_object(subscription: dict[str, Any]) -> SubscriptionSnapshot:
    items = (subscription.get("items") or {}).get("data") or []
    if not items:
        raise MalformedEventError("Stripe subscription has no items")

    first_item = items[0]
    price = first_item.get("price") or {}
    price_id = price.get("id")
    if not price_id:
        raise MalformedEventError("Stripe subscription is missing price id")

    provider_status = str(subscription.get("status", ""))
    # Newer API versions moved the billing period onto subscription items.
    period_end = subscription.get("current_period_end") or first_item.get("current_period_end")
    metadata = subscription.get("metadata") or {}

    return SubscriptionSnapshot(
        subscription_id=_require(subscription, "id", "Stripe subscription"),
        customer_id=_require(subscription, "customer", "Stripe subscription"),
        status=map_status(provider_status),
        provider_status=provider_status,
        price_id=str(price_id),
        billing_period=period_from_interval((price.get("recurring") or {}).get("interval")),
        amount=minor_to_major(price.get("unit_amount")),
        start_date=epoch_to_date(subscription.get("start_date")),
        current_period_end=epoch_to_datetime(period_end),
        cancel_at_period_end=bool(subscription.get("cancel_at_period_end")),
        canceled_at=epoch_to_datetime(subscription.get("canceled_at")),
        trial_end=epoch_to_datetime(subscription.get("trial_end")),
        metadata_user_id=metadata.get("user_id"),
    )


def _invoice_subscription_id(invoice: dict[str, Any]) -> str | None:
    subscription_id = _id_of(invoice.get("subscription"))
    if subscription_id:
        return subscription_id
    parent = invoice.get("parent") or {}
    details = parent.get("subscription_details") or {}
    return _id_of(details.get("subscription"))


def parse_event(event: dict[str, Any]) -> BillingEvent:
    """
    Convert a verified Stripe event dict into a typed BillingEvent.

    Raises:
        MalformedEventError: the event type is handled but its payload lacks
            required fields. Redelivery cannot fix this, so callers should
            acknowledge rather than fail.
    """
    event_id = str(event.get("id") or "")
    if not event_id:
        raise MalformedEventError("Stripe event has no id")
    event_type = str(event.get("type") or "")
    data_object: dict[str, Any] = (event.get("data") or {}).get("object") or {}

    if event_type == "checkout.session.completed":
        metadata = data_object.get("metadata") or {}
        return CheckoutCompleted(
            event_id=event_id,
            session_id=str(data_object.get("id", "")),
            user_id=data_object.get("client_reference_id") or metadata.get("user_id"),
            customer_id=_id_of(data_object.get("customer")),
            subscription_id=_id_of(data_object.get("subscription")),
        )

    if event_type == "customer.subscription.created":
        return SubscriptionCreated(
            event_id=event_id, subscription=subscription_snapshot_from_object(data_object)
        )

    if event_type == "customer.subscription.updated":
        return SubscriptionUpdated(
            event_id=event_id, subscription=subscription_snapshot_from_object(data_object)
        )

    if event_type == "customer.subscription.deleted":
        return SubscriptionDeleted(
            event_id=event_id,
            subscription_id=_require(data_object, "id", "Stripe subscription"),
            customer_id=_id_of(data_object.get("customer")),
            canceled_at=epoch_to_datetime(data_object.get("canceled_at")),
        )

    if event_type == "invoice.payment_succeeded":
        transitions = data_object.get("status_transitions") or {}
        return InvoicePaymentSucceeded(
            event_id=event_id,
            invoice_id=_require(data_object, "id", "Stripe invoice"),
            customer_id=_require(data_object, "customer", "Stripe invoice"),
            subscription_id=_invoice_subscription_id(data_object),
            amount=minor_to_major(data_object.get("amount_paid") or 0),
            paid_at=epoch_to_datetime(transitions.get("paid_at")),
        )

    if event_type == "invoice.payment_failed":
        return InvoicePaymentFailed(
            event_id=event_id,
            invoice_id=_require(data_object, "id", "Stripe invoice"),
            customer_id=_require(data_object, "customer", "Stripe invoice"),
            subscription_id=_invoice_subscription_id(data_object),
            amount=minor_to_major(data_object.get("amount_due") or 0),
            attempt_count=int(data_object.get("attempt_count") or 0),
            next_payment_attempt=epoch_to_datetime(data_object.get("next_payment_attempt")),
        )

    return UnhandledEvent(event_id=event_id, event_type=event_type, raw=event)
