"""Unit tests for entitlement evaluation."""

from datetime import UTC, datetime, timedelta
from itertools import product

import pytest

from healthlog_billing.constants import DEFAULT_TIERS
from healthlog_billing.models.subscription import SubscriptionState, SubscriptionStatus
from healthlog_billing.models.tiers import TierCode
from healthlog_billing.services.entitlements import (
    FALLBACK_HISTORY_DAYS,
    REASON_CHECK_FAILED,
    REASON_FEATURE_NOT_FOUND,
    REASON_NOT_AVAILABLE,
    REASON_NOT_IN_TIER,
    EntitlementEvaluator,
    EntitlementService,
    FeaturePath,
    LimitType,
    materialize,
)


@pytest.fixture
def evaluator() -> EntitlementEvaluator:
    return EntitlementEvaluator(list(DEFAULT_TIERS))


class TestCanAccess:
    def test_rank_comparison_for_every_tier_pair(self, evaluator):
        for current, required in product(TierCode, TierCode):
            assert evaluator.can_access(current, required) is (current.rank >= required.rank)

    def test_accepts_plain_strings(self, evaluator):
        assert evaluator.can_access("premium", "basic") is True
        assert evaluator.can_access("basic", "premium") is False

    def test_unknown_current_tier_ranks_as_free(self, evaluator):
        assert evaluator.can_access("platinum", "free") is True
        assert evaluator.can_access("platinum", "basic") is False
        assert evaluator.can_access(None, "basic") is False


class TestCanAccessFeature:
    def test_free_tier_has_no_reminders(self, evaluator):
        access = evaluator.can_access_feature("free", "reminders.enabled")

        assert access.allowed is False
        assert access.reason == REASON_NOT_IN_TIER
        assert access.value is False

    def test_basic_tier_has_reminders(self, evaluator):
        access = evaluator.can_access_feature("basic", "reminders.enabled")

        assert access.allowed is True
        assert access.reason is None
        assert access.value is True

    def test_numeric_value_is_returned(self, evaluator):
        access = evaluator.can_access_feature("premium", "reminders.max_per_day")

        assert access.allowed is True
        assert access.value == 10

    def test_zero_numeric_value_is_not_available(self, evaluator):
        access = evaluator.can_access_feature("free", "reminders.max_per_day")

        assert access.allowed is False
        assert access.reason == REASON_NOT_AVAILABLE

    def test_list_value_is_returned(self, evaluator):
        access = evaluator.can_access_feature("premium", "reminders.methods")

        assert access.allowed is True
        assert access.value == ["email", "sms"]

    def test_missing_insights_is_not_available(self, evaluator):
        assert evaluator.can_access_feature("free", "insights").allowed is False
        assert evaluator.can_access_feature("basic", "insights").value == "basic"

    def test_unlimited_history_is_allowed(self, evaluator):
        access = evaluator.can_access_feature("professional", FeaturePath.HISTORY_DAYS)

        assert access.allowed is True
        assert access.value is None

    def test_unknown_path(self, evaluator):
        access = evaluator.can_access_feature("professional", "teleport.enabled")

        assert access.allowed is False
        assert access.reason == REASON_FEATURE_NOT_FOUND

    def test_missing_tier_is_negative(self):
        evaluator = EntitlementEvaluator([])

        access = evaluator.can_access_feature("premium", "pdf_export")

        assert access.allowed is False
        assert access.reason is not None

    def test_exports_by_tier(self, evaluator):
        assert evaluator.can_access_feature("basic", "pdf_export").allowed is False
        assert evaluator.can_access_feature("premium", "pdf_export").allowed is True
        assert evaluator.can_access_feature("premium", "csv_export").allowed is False
        assert evaluator.can_access_feature("professional", "csv_export").allowed is True


class TestLimits:
    def test_history_days_limit(self, evaluator):
        limit = evaluator.tier_limit("basic", LimitType.HISTORY_DAYS)

        assert limit.value == 30
        assert limit.unlimited is False

    def test_professional_history_is_unlimited(self, evaluator):
        limit = evaluator.tier_limit("professional", LimitType.HISTORY_DAYS)

        assert limit.value is None
        assert limit.unlimited is True

    def test_history_limit_cutoff(self, evaluator):
        now = datetime(2026, 3, 1, tzinfo=UTC)

        limit = evaluator.history_limit("free", now=now)

        assert limit.days == 7
        assert limit.cutoff == now - timedelta(days=7)

    def test_unlimited_history_has_no_cutoff(self, evaluator):
        limit = evaluator.history_limit("professional")

        assert limit.unlimited is True
        assert limit.cutoff is None

    def test_reminder_frequency(self, evaluator):
        assert evaluator.can_use_reminder_frequency("basic", "daily") is True
        assert evaluator.can_use_reminder_frequency("basic", "weekly") is False
        assert evaluator.can_use_reminder_frequency("professional", "custom") is True
        assert evaluator.can_use_reminder_frequency("free", "daily") is False

    def test_communication_method(self, evaluator):
        assert evaluator.can_use_communication_method("basic", "sms") is False
        assert evaluator.can_use_communication_method("premium", "sms") is True
        assert evaluator.can_use_communication_method("premium", "sms", kind="reports") is False
        assert evaluator.can_use_communication_method("professional", "sms", kind="reports")


class TestHasPaidSubscription:
    def test_active_paid_tier(self):
        state = SubscriptionState(user_id="u1", tier_code=TierCode.BASIC)

        assert EntitlementEvaluator.has_paid_subscription(state) is True

    def test_free_tier(self):
        assert EntitlementEvaluator.has_paid_subscription(SubscriptionState(user_id="u1")) is False

    def test_past_due_paid_tier(self):
        state = SubscriptionState(
            user_id="u1", tier_code=TierCode.PREMIUM, status=SubscriptionStatus.PAST_DUE
        )

        assert EntitlementEvaluator.has_paid_subscription(state) is False


class TestEntitlementService:
    def test_materialize_defaults_to_free(self):
        state = materialize(None, "new-user")

        assert state.user_id == "new-user"
        assert state.tier_code == TierCode.FREE
        assert state.status == SubscriptionStatus.ACTIVE

    async def test_unknown_user_is_free(self, catalog, store):
        service = EntitlementService(catalog, store)

        access = await service.can_access_feature("nobody", "reminders.enabled")

        assert access.allowed is False
        assert await service.can_access_tier("nobody", "free") is True
        assert await service.can_access_tier("nobody", "basic") is False
        assert store.states == {}

    async def test_uses_stored_tier(self, catalog, store):
        await store.put(SubscriptionState(user_id="u1", tier_code=TierCode.PREMIUM))
        service = EntitlementService(catalog, store)

        assert (await service.can_access_feature("u1", "pdf_export")).allowed is True
        assert await service.can_access_tier("u1", "professional") is False
        assert (await service.tier_limit("u1", LimitType.REMINDERS_PER_DAY)).value == 10
        assert (await service.history_limit("u1")).days == 365
        assert await service.has_paid_subscription("u1") is True


class UnreachableStore:
    async def get(self, user_id):
        raise RuntimeError("supabase down")


class TestEntitlementServiceFailures:
    @pytest.fixture
    def service(self, catalog) -> EntitlementService:
        return EntitlementService(catalog, UnreachableStore())

    async def test_feature_check_is_negative(self, service):
        access = await service.can_access_feature("u1", "reminders.enabled")

        assert access.allowed is False
        assert access.reason == REASON_CHECK_FAILED

    async def test_history_limit_falls_back_to_seven_days(self, service):
        before = datetime.now(UTC)

        limit = await service.history_limit("u1")

        assert limit.days == FALLBACK_HISTORY_DAYS == 7
        assert limit.unlimited is False
        assert before - timedelta(days=7) <= limit.cutoff <= datetime.now(UTC) - timedelta(days=7)

    async def test_other_checks_are_negative(self, service):
        assert await service.has_paid_subscription("u1") is False
        assert await service.can_access_tier("u1", "free") is False
        assert (await service.tier_limit("u1", LimitType.REMINDERS_PER_DAY)).value is None
