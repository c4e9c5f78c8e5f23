"""Unit tests for webhook reconciliation."""

import json
from decimal import Decimal

import pytest

from healthlog_billing.errors import ConfigurationError, SignatureVerificationError
from healthlog_billing.models.subscription import (
    HistoryEventType,
    NotificationKind,
    SubscriptionStatus,
)
from healthlog_billing.models.tiers import BillingPeriod, TierCode
from healthlog_billing.services.reconciler import WebhookReconciler

# 2026-03-01T00:00:00Z
MARCH_1 = 1772323200
APRIL_1 = MARCH_1 + 31 * 86400


class FakeVerifier:
    """Accepts the signature "valid" and decodes the payload as JSON."""

    def __init__(self, *, configured: bool = True):
        self.configured = configured

    def verify_webhook_event(self, payload, signature):
        if not self.configured:
            raise ConfigurationError("Stripe webhook secret is not configured")
        if signature != "valid":
            raise SignatureVerificationError("Webhook Error: No signatures found")
        return json.loads(payload)


class FailingLedger:
    async def append(self, _event):
        raise RuntimeError("ledger down")

    async def list_for_user(self, _user_id, limit=10):
        return []


def _payload(event_type: str, data_object: dict, event_id: str = "evt_1") -> bytes:
    return json.dumps({"id": event_id, "type": event_type, "data": {"object": data_object}}).encode()


def _subscription(
    price_id: str = "price_basic_m",
    *,
    status: str = "active",
    interval: str = "month",
    unit_amount: int = 499,
    metadata: dict | None = None,
    cancel_at_period_end: bool = False,
) -> dict:
    return {
        "id": "sub_1",
        "customer": "cus_1",
        "status": status,
        "start_date": MARCH_1,
        "current_period_end": APRIL_1,
        "cancel_at_period_end": cancel_at_period_end,
        "metadata": metadata or {},
        "items": {
            "data": [
                {
                    "price": {
                        "id": price_id,
                        "unit_amount": unit_amount,
                        "recurring": {"interval": interval},
                    }
                }
            ]
        },
    }


@pytest.fixture
def reconciler(catalog, store, ledger) -> WebhookReconciler:
    return WebhookReconciler(FakeVerifier(), catalog, store, ledger)


async def _link(store, alice, **updates):
    fields = {"external_customer_id": "cus_1", "external_subscription_id": "sub_1", **updates}
    await store.put(alice.model_copy(update=fields))


class TestVerification:
    async def test_bad_signature_returns_400_and_writes_nothing(
        self, reconciler, store, ledger, alice
    ):
        await _link(store, alice)
        before = await store.get(alice.user_id)

        result = await reconciler.handle(
            _payload("customer.subscription.deleted", {"id": "sub_1"}), "forged"
        )

        assert result.status_code == 400
        assert "error" in result.body
        assert await store.get(alice.user_id) == before
        assert ledger.events == []

    async def test_missing_secret_returns_500(self, catalog, store, ledger):
        reconciler = WebhookReconciler(FakeVerifier(configured=False), catalog, store, ledger)

        result = await reconciler.handle(b"{}", "valid")

        assert result.status_code == 500
        assert result.body["error"] == "configuration_error"

    async def test_unhandled_event_is_acknowledged(self, reconciler, ledger):
        result = await reconciler.handle(_payload("customer.created", {"id": "cus_1"}), "valid")

        assert result.status_code == 200
        assert result.body == {"received": True}
        assert ledger.events == []

    async def test_malformed_event_is_acknowledged(self, reconciler, ledger):
        result = await reconciler.handle(
            _payload("customer.subscription.created", {"id": "sub_1", "customer": "cus_1"}),
            "valid",
        )

        assert result.status_code == 200
        assert ledger.events == []


class TestCheckoutCompleted:
    async def test_links_customer_and_subscription(self, reconciler, store, alice):
        await store.put(alice)

        result = await reconciler.handle(
            _payload(
                "checkout.session.completed",
                {
                    "id": "cs_1",
                    "client_reference_id": alice.user_id,
                    "customer": "cus_1",
                    "subscription": "sub_1",
                },
            ),
            "valid",
        )

        state = await store.get(alice.user_id)
        assert result.status_code == 200
        assert state.external_customer_id == "cus_1"
        assert state.external_subscription_id == "sub_1"
        assert state.tier_code == TierCode.FREE

    async def test_without_user_id_is_ignored(self, reconciler, store):
        result = await reconciler.handle(
            _payload("checkout.session.completed", {"id": "cs_1", "customer": "cus_1"}), "valid"
        )

        assert result.status_code == 200
        assert store.states == {}


class TestSubscriptionCreated:
    async def test_grants_tier_and_records_history(self, reconciler, store, ledger, alice):
        await _link(store, alice)

        result = await reconciler.handle(
            _payload("customer.subscription.created", _subscription("price_basic_m")), "valid"
        )

        state = await store.get(alice.user_id)
        assert result.status_code == 200
        assert state.tier_code == TierCode.BASIC
        assert state.status == SubscriptionStatus.ACTIVE
        assert state.billing_period == BillingPeriod.MONTHLY
        assert state.end_date.isoformat() == "2026-04-01"
        assert state.external_price_id == "price_basic_m"

        (event,) = ledger.events
        assert event.event_type == HistoryEventType.SUBSCRIPTION_CREATED
        assert event.from_tier == TierCode.FREE
        assert event.to_tier == TierCode.BASIC
        assert event.amount == Decimal("4.99")
        assert event.external_event_id == "evt_1"
        assert event.metadata["subscription_id"] == "sub_1"

    async def test_first_paid_tier_sends_welcome(self, reconciler, store, alice):
        await _link(store, alice)

        result = await reconciler.handle(
            _payload("customer.subscription.created", _subscription("price_premium_m")), "valid"
        )

        (notification,) = result.notifications
        assert notification.kind == NotificationKind.WELCOME
        assert notification.recipient_email == "alice@example.com"
        assert notification.recipient_name == "Alice"
        assert notification.variables["tier_name"] == "Premium"

    async def test_trialing_status_and_yearly_period(self, reconciler, store, alice):
        await _link(store, alice)

        await reconciler.handle(
            _payload(
                "customer.subscription.created",
                _subscription("price_pro_y", status="trialing", interval="year"),
            ),
            "valid",
        )

        state = await store.get(alice.user_id)
        assert state.tier_code == TierCode.PROFESSIONAL
        assert state.status == SubscriptionStatus.TRIALING
        assert state.billing_period == BillingPeriod.YEARLY

    async def test_uses_metadata_user_when_customer_not_linked(self, reconciler, store, alice):
        await store.put(alice)

        await reconciler.handle(
            _payload(
                "customer.subscription.created",
                _subscription("price_basic_m", metadata={"user_id": alice.user_id}),
            ),
            "valid",
        )

        state = await store.get(alice.user_id)
        assert state.tier_code == TierCode.BASIC
        assert state.external_customer_id == "cus_1"
        assert state.external_subscription_id == "sub_1"

    async def test_unknown_customer_is_acknowledged_without_writes(self, reconciler, store, ledger):
        result = await reconciler.handle(
            _payload("customer.subscription.created", _subscription()), "valid"
        )

        assert result.status_code == 200
        assert result.notifications == []
        assert store.states == {}
        assert ledger.events == []

    async def test_unknown_price_grants_lowest_tier(self, reconciler, store, alice):
        await _link(store, alice)

        await reconciler.handle(
            _payload("customer.subscription.created", _subscription("price_retired")), "valid"
        )

        assert (await store.get(alice.user_id)).tier_code == TierCode.FREE

    async def test_replay_reapplies_same_state(self, reconciler, store, ledger, alice):
        await _link(store, alice)
        payload = _payload("customer.subscription.created", _subscription("price_basic_m"))

        await reconciler.handle(payload, "valid")
        first = await store.get(alice.user_id)
        await reconciler.handle(payload, "valid")
        second = await store.get(alice.user_id)

        assert second.model_dump(exclude={"updated_at"}) == first.model_dump(
            exclude={"updated_at"}
        )
        # No de-duplication: each delivery appends its own history row
        assert len(ledger.events) == 2

    async def test_ledger_failure_does_not_block_state_change(self, catalog, store, alice):
        reconciler = WebhookReconciler(FakeVerifier(), catalog, store, FailingLedger())
        await _link(store, alice)

        result = await reconciler.handle(
            _payload("customer.subscription.created", _subscription("price_basic_m")), "valid"
        )

        assert result.status_code == 200
        assert (await store.get(alice.user_id)).tier_code == TierCode.BASIC


class TestSubscriptionUpdated:
    async def test_upgrade(self, reconciler, store, ledger, alice):
        await _link(store, alice, tier_code=TierCode.BASIC)

        result = await reconciler.handle(
            _payload("customer.subscription.updated", _subscription("price_premium_m")), "valid"
        )

        assert (await store.get(alice.user_id)).tier_code == TierCode.PREMIUM
        assert ledger.events[0].event_type == HistoryEventType.TIER_UPGRADED
        (notification,) = result.notifications
        assert notification.kind == NotificationKind.UPGRADE
        assert notification.variables["old_tier"] == "basic"
        assert notification.variables["new_tier"] == "premium"

    async def test_downgrade(self, reconciler, store, ledger, alice):
        await _link(store, alice, tier_code=TierCode.PROFESSIONAL)

        result = await reconciler.handle(
            _payload("customer.subscription.updated", _subscription("price_basic_m")), "valid"
        )

        assert (await store.get(alice.user_id)).tier_code == TierCode.BASIC
        assert ledger.events[0].event_type == HistoryEventType.TIER_DOWNGRADED
        assert result.notifications[0].kind == NotificationKind.DOWNGRADE

    async def test_same_tier_records_update_without_notification(
        self, reconciler, store, ledger, alice
    ):
        await _link(store, alice, tier_code=TierCode.BASIC)

        result = await reconciler.handle(
            _payload(
                "customer.subscription.updated",
                _subscription("price_basic_m", cancel_at_period_end=True),
            ),
            "valid",
        )

        state = await store.get(alice.user_id)
        assert state.cancel_at_period_end is True
        assert ledger.events[0].event_type == HistoryEventType.SUBSCRIPTION_UPDATED
        assert result.notifications == []

    async def test_past_due_status(self, reconciler, store, alice):
        await _link(store, alice, tier_code=TierCode.BASIC)

        await reconciler.handle(
            _payload(
                "customer.subscription.updated", _subscription("price_basic_m", status="unpaid")
            ),
            "valid",
        )

        assert (await store.get(alice.user_id)).status == SubscriptionStatus.PAST_DUE

    async def test_unknown_subscription_is_acknowledged(self, reconciler, store, ledger, alice):
        await store.put(alice.model_copy(update={"external_customer_id": "cus_1"}))

        result = await reconciler.handle(
            _payload("customer.subscription.updated", _subscription("price_premium_m")), "valid"
        )

        assert result.status_code == 200
        assert (await store.get(alice.user_id)).tier_code == TierCode.FREE
        assert ledger.events == []


class TestSubscriptionDeleted:
    async def test_downgrades_to_free(self, reconciler, store, ledger, alice):
        await _link(store, alice, tier_code=TierCode.PREMIUM, billing_period=BillingPeriod.YEARLY)

        result = await reconciler.handle(
            _payload("customer.subscription.deleted", {"id": "sub_1", "customer": "cus_1"}),
            "valid",
        )

        state = await store.get(alice.user_id)
        assert state.tier_code == TierCode.FREE
        assert state.status == SubscriptionStatus.CANCELLED
        assert state.billing_period == BillingPeriod.MONTHLY
        assert state.cancel_at_period_end is False

        (event,) = ledger.events
        assert event.event_type == HistoryEventType.SUBSCRIPTION_CANCELLED
        assert event.from_tier == TierCode.PREMIUM
        assert event.to_tier == TierCode.FREE

        (notification,) = result.notifications
        assert notification.kind == NotificationKind.CANCELLED
        assert notification.variables["tier_name"] == "Premium"

    async def test_no_email_means_no_notification(self, reconciler, store, alice):
        await _link(store, alice, email=None, tier_code=TierCode.BASIC)

        result = await reconciler.handle(
            _payload("customer.subscription.deleted", {"id": "sub_1"}), "valid"
        )

        assert result.status_code == 200
        assert result.notifications == []


class TestInvoices:
    async def test_payment_succeeded_records_history_only(self, reconciler, store, ledger, alice):
        await _link(store, alice, tier_code=TierCode.BASIC)
        before = await store.get(alice.user_id)

        result = await reconciler.handle(
            _payload(
                "invoice.payment_succeeded",
                {"id": "in_1", "customer": "cus_1", "subscription": "sub_1", "amount_paid": 499},
            ),
            "valid",
        )

        assert result.notifications == []
        assert await store.get(alice.user_id) == before
        (event,) = ledger.events
        assert event.event_type == HistoryEventType.PAYMENT_SUCCEEDED
        assert event.amount == Decimal("4.99")
        assert event.external_invoice_id == "in_1"

    async def test_payment_failed_marks_past_due(self, reconciler, store, ledger, alice):
        await _link(store, alice, tier_code=TierCode.PREMIUM)

        result = await reconciler.handle(
            _payload(
                "invoice.payment_failed",
                {
                    "id": "in_2",
                    "customer": "cus_1",
                    "subscription": "sub_1",
                    "amount_due": 999,
                    "attempt_count": 1,
                },
            ),
            "valid",
        )

        state = await store.get(alice.user_id)
        assert state.status == SubscriptionStatus.PAST_DUE
        assert state.tier_code == TierCode.PREMIUM
        assert ledger.events[0].event_type == HistoryEventType.PAYMENT_FAILED
        (notification,) = result.notifications
        assert notification.kind == NotificationKind.PAYMENT_FAILED
        assert notification.variables["amount"] == "9.99"

    async def test_payment_for_unknown_customer_is_acknowledged(self, reconciler, ledger):
        result = await reconciler.handle(
            _payload("invoice.payment_succeeded", {"id": "in_1", "customer": "cus_x"}), "valid"
        )

        assert result.status_code == 200
        assert ledger.events == []


class TestProcessingFailure:
    async def test_store_failure_returns_500(self, catalog, ledger, alice):
        class BrokenStore:
            async def find_by_customer_id(self, _customer_id):
                raise RuntimeError("database unavailable")

        reconciler = WebhookReconciler(FakeVerifier(), catalog, BrokenStore(), ledger)

        result = await reconciler.handle(
            _payload("customer.subscription.created", _subscription()), "valid"
        )

        assert result.status_code == 500
        assert result.body == {"error": "Webhook processing failed"}
