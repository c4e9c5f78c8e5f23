"""
Webhook reconciler: turns Stripe lifecycle events into entitlement state.

Per-subscription lifecycle, encoded in ``SubscriptionState.status``:

    (none/free) -> trialing/active -> {past_due <-> active} -> cancelled -> (free)

Delivery is at-least-once and unordered. Writes are field-level upserts
(last write wins) and events are not de-duplicated: replaying an event
re-applies the same state but appends another history row and may produce
another notification.
"""

from typing import Any, Protocol, assert_never

import structlog
from pydantic import BaseModel, Field

from healthlog_billing.errors import (
    ConfigurationError,
    MalformedEventError,
    SignatureVerificationError,
    TierNotFoundError,
)
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
from healthlog_billing.models.subscription import (
    HistoryEvent,
    HistoryEventType,
    Notification,
    NotificationKind,
    SubscriptionChanges,
    SubscriptionState,
    SubscriptionStatus,
)
from healthlog_billing.models.tiers import TierCode, tier_rank
from healthlog_billing.services.entitlements import materialize
from healthlog_billing.services.history_ledger import HistoryLedger
from healthlog_billing.services.stripe_events import parse_event
from healthlog_billing.services.subscription_store import SubscriptionStore
from healthlog_billing.services.tier_catalog import TierCatalog

logger = structlog.get_logger(__name__)


class WebhookVerifier(Protocol):
    def verify_webhook_event(self, payload: bytes, signature: str | None) -> dict[str, Any]:
        """Return the decoded event or raise SignatureVerificationError."""


class WebhookResult(BaseModel):
    """HTTP outcome of a webhook delivery plus notifications to send after it."""

    status_code: int
    body: dict[str, Any]
    notifications: list[Notification] = Field(default_factory=list)


def _received(notifications: list[Notification] | None = None) -> WebhookResult:
    return WebhookResult(
        status_code=200, body={"received": True}, notifications=notifications or []
    )


def _end_date(snapshot: SubscriptionSnapshot):
    return snapshot.current_period_end.date() if snapshot.current_period_end else None


def _iso(value) -> str | None:
    return value.isoformat() if value else None


class WebhookReconciler:
    """Verifies, parses and routes billing events onto the state store and ledger."""

    def __init__(
        self,
        verifier: WebhookVerifier,
        catalog: TierCatalog,
        store: SubscriptionStore,
        ledger: HistoryLedger,
    ) -> None:
        self.verifier = verifier
        self.catalog = catalog
        self.store = store
        self.ledger = ledger

    async def handle(self, payload: bytes, signature: str | None) -> WebhookResult:
        """Process one webhook delivery.

        400 on signature failure (nothing is written), 500 on configuration or
        unexpected errors so Stripe retries, 200 otherwise, including for
        correlation misses and event types this service ignores.
        """
        try:
            raw_event = self.verifier.verify_webhook_event(payload, signature)
        except SignatureVerificationError as e:
            logger.warning("stripe_webhook_signature_invalid", error=e.message)
            return WebhookResult(status_code=400, body={"error": e.message})
        except ConfigurationError as e:
            logger.error("stripe_webhook_not_configured", error=e.message)
            return WebhookResult(
                status_code=500, body={"error": e.error_code, "message": e.message}
            )

        try:
            event = parse_event(raw_event)
        except MalformedEventError as e:
            logger.warning(
                "stripe_webhook_event_malformed",
                event_id=raw_event.get("id"),
                event_type=raw_event.get("type"),
                error=e.message,
            )
            return _received()

        with structlog.contextvars.bound_contextvars(
            stripe_event_id=event.event_id, stripe_event_kind=event.kind
        ):
            try:
                notifications = await self.route(event)
            except Exception:
                logger.exception("stripe_webhook_processing_failed")
                return WebhookResult(status_code=500, body={"error": "Webhook processing failed"})

            logger.info("stripe_webhook_processed", notifications=len(notifications))
        return _received(notifications)

    async def route(self, event: BillingEvent) -> list[Notification]:
        if isinstance(event, CheckoutCompleted):
            return await self._checkout_completed(event)
        if isinstance(event, SubscriptionCreated):
            return await self._subscription_created(event)
        if isinstance(event, SubscriptionUpdated):
            return await self._subscription_updated(event)
        if isinstance(event, SubscriptionDeleted):
            return await self._subscription_deleted(event)
        if isinstance(event, InvoicePaymentSucceeded):
            return await self._payment_succeeded(event)
        if isinstance(event, InvoicePaymentFailed):
            return await self._payment_failed(event)
        if isinstance(event, UnhandledEvent):
            logger.info("stripe_webhook_unhandled", event_type=event.event_type)
            return []
        assert_never(event)

    # ------------------------------------------------------------------
    # handlers
    # ------------------------------------------------------------------

    async def _checkout_completed(self, event: CheckoutCompleted) -> list[Notification]:
        if not event.user_id:
            logger.warning("checkout_user_missing", session_id=event.session_id)
            return []
        if not event.customer_id:
            logger.info("checkout_without_customer", session_id=event.session_id)
            return []

        await self.store.link_customer(event.user_id, event.customer_id, event.subscription_id)
        logger.info(
            "checkout_customer_linked",
            user_id=event.user_id,
            customer_id=event.customer_id,
            subscription_id=event.subscription_id,
        )
        return []

    async def _subscription_created(self, event: SubscriptionCreated) -> list[Notification]:
        snapshot = event.subscription
        state = await self.store.find_by_customer_id(snapshot.customer_id)
        if state is None and snapshot.metadata_user_id:
            # Checkout stamps user_id on the subscription; covers a created
            # event that overtakes checkout.session.completed.
            user_id = snapshot.metadata_user_id
            state = materialize(await self.store.get(user_id), user_id)
            logger.info("subscription_user_from_metadata", user_id=user_id)
        if state is None:
            logger.warning(
                "subscription_user_not_found",
                customer_id=snapshot.customer_id,
                subscription_id=snapshot.subscription_id,
            )
            return []

        tier = await self.catalog.resolve_tier_from_price_id(snapshot.price_id)
        old_tier = state.tier_code

        updated = await self.store.apply_changes(
            state.user_id,
            SubscriptionChanges(
                tier_code=tier.tier_code,
                status=snapshot.status,
                billing_period=snapshot.billing_period,
                start_date=snapshot.start_date,
                end_date=_end_date(snapshot),
                cancel_at_period_end=snapshot.cancel_at_period_end,
                external_customer_id=snapshot.customer_id,
                external_subscription_id=snapshot.subscription_id,
                external_price_id=snapshot.price_id,
            ),
        )

        await self._record(
            HistoryEvent(
                user_id=state.user_id,
                event_type=HistoryEventType.SUBSCRIPTION_CREATED,
                from_tier=old_tier,
                to_tier=tier.tier_code,
                amount=snapshot.amount,
                billing_period=snapshot.billing_period,
                external_event_id=event.event_id,
                metadata={
                    "subscription_id": snapshot.subscription_id,
                    "status": snapshot.provider_status,
                    "trial_end": _iso(snapshot.trial_end),
                    "current_period_end": _iso(snapshot.current_period_end),
                },
            )
        )
        logger.info(
            "subscription_created",
            user_id=state.user_id,
            from_tier=old_tier.value,
            to_tier=tier.tier_code.value,
        )

        kind = NotificationKind.WELCOME if old_tier == TierCode.FREE else NotificationKind.UPGRADE
        return self._notify(
            kind,
            updated,
            tier_name=tier.name,
            old_tier=old_tier.value,
            new_tier=tier.tier_code.value,
        )

    async def _subscription_updated(self, event: SubscriptionUpdated) -> list[Notification]:
        snapshot = event.subscription
        # Keyed by subscription, not customer: a customer may have had several.
        state = await self.store.find_by_subscription_id(snapshot.subscription_id)
        if state is None:
            logger.warning(
                "subscription_user_not_found", subscription_id=snapshot.subscription_id
            )
            return []

        tier = await self.catalog.resolve_tier_from_price_id(snapshot.price_id)
        old_tier = state.tier_code

        updated = await self.store.apply_changes(
            state.user_id,
            SubscriptionChanges(
                tier_code=tier.tier_code,
                status=snapshot.status,
                billing_period=snapshot.billing_period,
                end_date=_end_date(snapshot),
                cancel_at_period_end=snapshot.cancel_at_period_end,
                external_price_id=snapshot.price_id,
            ),
        )

        event_type = HistoryEventType.SUBSCRIPTION_UPDATED
        kind: NotificationKind | None = None
        if tier_rank(tier.tier_code) > tier_rank(old_tier):
            event_type = HistoryEventType.TIER_UPGRADED
            kind = NotificationKind.UPGRADE
        elif tier_rank(tier.tier_code) < tier_rank(old_tier):
            event_type = HistoryEventType.TIER_DOWNGRADED
            kind = NotificationKind.DOWNGRADE

        await self._record(
            HistoryEvent(
                user_id=state.user_id,
                event_type=event_type,
                from_tier=old_tier,
                to_tier=tier.tier_code,
                amount=snapshot.amount,
                billing_period=snapshot.billing_period,
                external_event_id=event.event_id,
                metadata={
                    "subscription_id": snapshot.subscription_id,
                    "status": snapshot.provider_status,
                    "cancel_at_period_end": snapshot.cancel_at_period_end,
                    "current_period_end": _iso(snapshot.current_period_end),
                },
            )
        )
        logger.info(
            "subscription_updated",
            user_id=state.user_id,
            transition=event_type.value,
            from_tier=old_tier.value,
            to_tier=tier.tier_code.value,
        )

        if kind is None:
            return []
        return self._notify(
            kind,
            updated,
            tier_name=tier.name,
            old_tier=old_tier.value,
            new_tier=tier.tier_code.value,
        )

    async def _subscription_deleted(self, event: SubscriptionDeleted) -> list[Notification]:
        state = await self.store.find_by_subscription_id(event.subscription_id)
        if state is None:
            logger.warning("subscription_user_not_found", subscription_id=event.subscription_id)
            return []

        old_tier = state.tier_code
        updated = await self.store.downgrade_to_free(state.user_id)

        await self._record(
            HistoryEvent(
                user_id=state.user_id,
                event_type=HistoryEventType.SUBSCRIPTION_CANCELLED,
                from_tier=old_tier,
                to_tier=TierCode.FREE,
                external_event_id=event.event_id,
                metadata={
                    "subscription_id": event.subscription_id,
                    "cancelled_at": _iso(event.canceled_at),
                },
            )
        )
        logger.info("subscription_cancelled", user_id=state.user_id, from_tier=old_tier.value)

        return self._notify(
            NotificationKind.CANCELLED, updated, tier_name=await self._tier_name(old_tier)
        )

    async def _payment_succeeded(self, event: InvoicePaymentSucceeded) -> list[Notification]:
        state = await self.store.find_by_customer_id(event.customer_id)
        if state is None:
            logger.warning("payment_user_not_found", customer_id=event.customer_id)
            return []

        await self._record(
            HistoryEvent(
                user_id=state.user_id,
                event_type=HistoryEventType.PAYMENT_SUCCEEDED,
                from_tier=state.tier_code,
                to_tier=state.tier_code,
                amount=event.amount,
                external_event_id=event.event_id,
                external_invoice_id=event.invoice_id,
                metadata={
                    "subscription_id": event.subscription_id,
                    "paid_at": _iso(event.paid_at),
                },
            )
        )
        logger.info("payment_succeeded", user_id=state.user_id, amount=str(event.amount))
        return []

    async def _payment_failed(self, event: InvoicePaymentFailed) -> list[Notification]:
        state = await self.store.find_by_customer_id(event.customer_id)
        if state is None:
            logger.warning("payment_user_not_found", customer_id=event.customer_id)
            return []

        updated = await self.store.apply_changes(
            state.user_id, SubscriptionChanges(status=SubscriptionStatus.PAST_DUE)
        )

        await self._record(
            HistoryEvent(
                user_id=state.user_id,
                event_type=HistoryEventType.PAYMENT_FAILED,
                from_tier=state.tier_code,
                to_tier=state.tier_code,
                amount=event.amount,
                external_event_id=event.event_id,
                external_invoice_id=event.invoice_id,
                metadata={
                    "subscription_id": event.subscription_id,
                    "attempt_count": event.attempt_count,
                    "next_payment_attempt": _iso(event.next_payment_attempt),
                },
            )
        )
        logger.warning(
            "payment_failed",
            user_id=state.user_id,
            amount=str(event.amount),
            attempt_count=event.attempt_count,
        )

        return self._notify(
            NotificationKind.PAYMENT_FAILED,
            updated,
            tier_name=await self._tier_name(state.tier_code),
            amount=f"{event.amount:.2f}",
            attempt_count=event.attempt_count,
            next_payment_attempt=_iso(event.next_payment_attempt),
        )

    # ------------------------------------------------------------------
    # helpers
    # ------------------------------------------------------------------

    async def _record(self, event: HistoryEvent) -> None:
        try:
            written = await self.ledger.append(event)
        except Exception as e:
            logger.error(
                "history_append_failed",
                user_id=event.user_id,
                event_type=event.event_type.value,
                error=str(e),
            )
            return
        if not written:
            logger.warning(
                "history_append_skipped", user_id=event.user_id, event_type=event.event_type.value
            )

    async def _tier_name(self, tier_code: TierCode) -> str:
        try:
            return (await self.catalog.get_tier_by_code(tier_code)).name
        except TierNotFoundError:
            return tier_code.value.capitalize()

    def _notify(
        self, kind: NotificationKind, state: SubscriptionState, **variables: Any
    ) -> list[Notification]:
        if not state.email:
            logger.info("notification_no_recipient", kind=kind.value, user_id=state.user_id)
            return []
        return [
            Notification(
                kind=kind,
                user_id=state.user_id,
                recipient_email=state.email,
                recipient_name=state.first_name or "User",
                variables=variables,
            )
        ]
