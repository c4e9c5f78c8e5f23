"""Entitlement evaluation: tier comparisons and feature gates."""

from datetime import UTC, datetime, timedelta
from enum import Enum
from typing import Any

import structlog
from pydantic import BaseModel

from healthlog_billing.models.subscription import SubscriptionState, SubscriptionStatus
from healthlog_billing.models.tiers import Tier, TierCode, tier_rank
from healthlog_billing.services.subscription_store import SubscriptionStore
from healthlog_billing.services.tier_catalog import TierCatalog

logger = structlog.get_logger(__name__)


class FeaturePath(str, Enum):
    """Capability paths that can be gated."""

    HISTORY_DAYS = "history_days"
    REMINDERS_ENABLED = "reminders.enabled"
    REMINDERS_MAX_PER_DAY = "reminders.max_per_day"
    REMINDERS_METHODS = "reminders.methods"
    REMINDERS_FREQUENCIES = "reminders.frequencies"
    REPORTS_ENABLED = "reports.enabled"
    REPORTS_METHODS = "reports.methods"
    REPORTS_FREQUENCIES = "reports.frequencies"
    INSIGHTS = "insights"
    PDF_EXPORT = "pdf_export"
    CSV_EXPORT = "csv_export"


class LimitType(str, Enum):
    """Tier limits surfaced to the UI."""

    HISTORY_DAYS = "history_days"
    REMINDERS_PER_DAY = "reminders_per_day"
    REMINDER_METHODS = "reminder_methods"
    REMINDER_FREQUENCIES = "reminder_frequencies"
    REPORT_METHODS = "report_methods"
    REPORT_FREQUENCIES = "report_frequencies"


_LIMIT_PATHS: dict[LimitType, FeaturePath] = {
    LimitType.HISTORY_DAYS: FeaturePath.HISTORY_DAYS,
    LimitType.REMINDERS_PER_DAY: FeaturePath.REMINDERS_MAX_PER_DAY,
    LimitType.REMINDER_METHODS: FeaturePath.REMINDERS_METHODS,
    LimitType.REMINDER_FREQUENCIES: FeaturePath.REMINDERS_FREQUENCIES,
    LimitType.REPORT_METHODS: FeaturePath.REPORTS_METHODS,
    LimitType.REPORT_FREQUENCIES: FeaturePath.REPORTS_FREQUENCIES,
}

REASON_FEATURE_NOT_FOUND = "Feature not found"
REASON_NOT_IN_TIER = "Feature not available in current tier"
REASON_NOT_AVAILABLE = "Feature not available"
REASON_CHECK_FAILED = "Error checking access"

# Free-tier history window used when state cannot be loaded
FALLBACK_HISTORY_DAYS = 7


class FeatureAccess(BaseModel):
    """Outcome of a feature gate check."""

    allowed: bool
    reason: str | None = None
    value: Any = None


class TierLimit(BaseModel):
    """A tier limit; ``unlimited`` is only meaningful for history_days."""

    limit_type: LimitType
    value: Any = None
    unlimited: bool = False


class HistoryLimit(BaseModel):
    """How far back a user may browse their logs."""

    days: int | None
    unlimited: bool
    cutoff: datetime | None = None


def materialize(state: SubscriptionState | None, user_id: str) -> SubscriptionState:
    """The stored state, or the implicit free-tier default for a new user."""
    if state is not None:
        return state
    return SubscriptionState(user_id=user_id)


class EntitlementEvaluator:
    """Pure entitlement decisions over a snapshot of the tier catalog.

    Nothing here raises: missing tiers and unknown paths are negative answers.
    """

    def __init__(self, tiers: list[Tier]) -> None:
        self._tiers = {tier.tier_code: tier for tier in tiers}

    def tier_for(self, tier_code: str | None) -> Tier | None:
        """Tier for a code; unknown codes fall back to the free tier if present."""
        try:
            code = TierCode(tier_code)
        except ValueError:
            code = TierCode.FREE
        return self._tiers.get(code) or self._tiers.get(TierCode.FREE)

    def rank_of(self, tier_code: str | None) -> int:
        tier = self._tiers.get(tier_code)
        return tier.rank if tier else tier_rank(tier_code)

    def can_access(self, current_tier: str | None, required_tier: str | None) -> bool:
        return self.rank_of(current_tier) >= self.rank_of(required_tier)

    def can_access_feature(self, current_tier: str | None, feature_path: str) -> FeatureAccess:
        try:
            path = FeaturePath(feature_path)
        except ValueError:
            return FeatureAccess(allowed=False, reason=REASON_FEATURE_NOT_FOUND)

        tier = self.tier_for(current_tier)
        if tier is None:
            return FeatureAccess(allowed=False, reason="No subscription found")

        value: Any = tier.features
        for part in path.value.split("."):
            value = getattr(value, part)

        if path == FeaturePath.HISTORY_DAYS and value is None:
            return FeatureAccess(allowed=True, value=None)
        if isinstance(value, bool):
            return FeatureAccess(
                allowed=value, reason=None if value else REASON_NOT_IN_TIER, value=value
            )
        if value:
            return FeatureAccess(allowed=True, value=value)
        return FeatureAccess(allowed=False, reason=REASON_NOT_AVAILABLE, value=value)

    def tier_limit(self, current_tier: str | None, limit_type: LimitType) -> TierLimit:
        tier = self.tier_for(current_tier)
        if tier is None:
            return TierLimit(limit_type=limit_type)

        value: Any = tier.features
        for part in _LIMIT_PATHS[limit_type].value.split("."):
            value = getattr(value, part)

        if limit_type == LimitType.HISTORY_DAYS:
            return TierLimit(limit_type=limit_type, value=value, unlimited=value is None)
        return TierLimit(limit_type=limit_type, value=value)

    def history_limit(self, current_tier: str | None, now: datetime | None = None) -> HistoryLimit:
        limit = self.tier_limit(current_tier, LimitType.HISTORY_DAYS)
        if limit.unlimited:
            return HistoryLimit(days=None, unlimited=True)
        days = int(limit.value or 0)
        now = now or datetime.now(UTC)
        return HistoryLimit(days=days, unlimited=False, cutoff=now - timedelta(days=days))

    def can_use_reminder_frequency(self, current_tier: str | None, frequency: str) -> bool:
        limit = self.tier_limit(current_tier, LimitType.REMINDER_FREQUENCIES)
        return frequency in (limit.value or [])

    def can_use_communication_method(
        self, current_tier: str | None, method: str, kind: str = "reminders"
    ) -> bool:
        limit_type = (
            LimitType.REMINDER_METHODS if kind == "reminders" else LimitType.REPORT_METHODS
        )
        return method in (self.tier_limit(current_tier, limit_type).value or [])

    @staticmethod
    def has_paid_subscription(state: SubscriptionState) -> bool:
        return state.tier_code != TierCode.FREE and state.status == SubscriptionStatus.ACTIVE


class EntitlementService:
    """Async facade: loads state and catalog, then asks the evaluator."""

    def __init__(
        self,
        catalog: TierCatalog,
        store: SubscriptionStore,
    ) -> None:
        self.catalog = catalog
        self.store = store

    async def evaluator(self) -> EntitlementEvaluator:
        return EntitlementEvaluator(await self.catalog.list_tiers())

    async def current_subscription(self, user_id: str) -> SubscriptionState:
        return materialize(await self.store.get(user_id), user_id)

    async def can_access_feature(self, user_id: str, feature_path: str) -> FeatureAccess:
        try:
            state = await self.current_subscription(user_id)
            access = (await self.evaluator()).can_access_feature(state.tier_code, feature_path)
        except Exception:
            logger.exception("entitlement_check_failed", user_id=user_id, feature_path=feature_path)
            return FeatureAccess(allowed=False, reason=REASON_CHECK_FAILED)
        logger.debug(
            "entitlement_feature_checked",
            user_id=user_id,
            tier_code=state.tier_code.value,
            feature_path=feature_path,
            allowed=access.allowed,
        )
        return access

    async def can_access_tier(self, user_id: str, required_tier: str) -> bool:
        try:
            state = await self.current_subscription(user_id)
            return (await self.evaluator()).can_access(state.tier_code, required_tier)
        except Exception:
            logger.exception(
                "entitlement_check_failed", user_id=user_id, required_tier=required_tier
            )
            return False

    async def tier_limit(self, user_id: str, limit_type: LimitType) -> TierLimit:
        try:
            state = await self.current_subscription(user_id)
            return (await self.evaluator()).tier_limit(state.tier_code, limit_type)
        except Exception:
            logger.exception(
                "entitlement_check_failed", user_id=user_id, limit_type=limit_type.value
            )
            return TierLimit(limit_type=limit_type)

    async def history_limit(self, user_id: str) -> HistoryLimit:
        try:
            state = await self.current_subscription(user_id)
            return (await self.evaluator()).history_limit(state.tier_code)
        except Exception:
            logger.exception("entitlement_check_failed", user_id=user_id, limit_type="history_days")
            days = FALLBACK_HISTORY_DAYS
            return HistoryLimit(
                days=days, unlimited=False, cutoff=datetime.now(UTC) - timedelta(days=days)
            )

    async def has_paid_subscription(self, user_id: str) -> bool:
        try:
            state = await self.current_subscription(user_id)
        except Exception:
            logger.exception("entitlement_check_failed", user_id=user_id)
            return False
        return EntitlementEvaluator.has_paid_subscription(state)
