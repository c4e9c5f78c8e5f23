"""Subscription state repositories."""

from datetime import UTC, datetime
from typing import Any, Protocol

import structlog
from supabase._async.client import AsyncClient as AsyncSupabaseClient

from healthlog_billing.models.subscription import (
    SubscriptionChanges,
    SubscriptionState,
    SubscriptionStatus,
)
from healthlog_billing.models.tiers import BillingPeriod, TierCode
from healthlog_billing.services.stripe_events import map_status

logger = structlog.get_logger(__name__)


def _utcnow() -> datetime:
    return datetime.now(UTC)


def downgrade_changes() -> SubscriptionChanges:
    """Field values applied when a subscription ends."""
    return SubscriptionChanges(
        tier_code=TierCode.FREE,
        status=SubscriptionStatus.CANCELLED,
        billing_period=BillingPeriod.MONTHLY,
        cancel_at_period_end=False,
    )


def link_changes(customer_id: str | None, subscription_id: str | None) -> SubscriptionChanges:
    """Linkage fields from a completed checkout; absent ids never clear stored ones."""
    fields: dict[str, str] = {}
    if customer_id:
        fields["external_customer_id"] = customer_id
    if subscription_id:
        fields["external_subscription_id"] = subscription_id
    return SubscriptionChanges(**fields)


class SubscriptionStore(Protocol):
    """Storage contract for per-user subscription state."""

    async def get(self, user_id: str) -> SubscriptionState | None:
        """Fetch a user's state; None if the user has never been linked."""

    async def find_by_customer_id(self, customer_id: str) -> SubscriptionState | None:
        """Fetch state by Stripe customer ID."""

    async def find_by_subscription_id(self, subscription_id: str) -> SubscriptionState | None:
        """Fetch state by Stripe subscription ID."""

    async def link_customer(
        self, user_id: str, customer_id: str | None, subscription_id: str | None
    ) -> SubscriptionState:
        """Attach Stripe customer/subscription ids to a user."""

    async def apply_changes(self, user_id: str, changes: SubscriptionChanges) -> SubscriptionState:
        """Upsert only the fields set on ``changes``."""

    async def downgrade_to_free(self, user_id: str) -> SubscriptionState:
        """Force free tier and cancelled status."""


class InMemorySubscriptionStore:
    """In-memory repository used for tests and local fallback."""

    def __init__(self) -> None:
        self.states: dict[str, SubscriptionState] = {}

    def _find(self, **criteria: str) -> SubscriptionState | None:
        for state in self.states.values():
            if all(getattr(state, key) == value for key, value in criteria.items()):
                return state.model_copy(deep=True)
        return None

    async def get(self, user_id: str) -> SubscriptionState | None:
        state = self.states.get(user_id)
        return state.model_copy(deep=True) if state else None

    async def find_by_customer_id(self, customer_id: str) -> SubscriptionState | None:
        return self._find(external_customer_id=customer_id)

    async def find_by_subscription_id(self, subscription_id: str) -> SubscriptionState | None:
        return self._find(external_subscription_id=subscription_id)

    async def put(self, state: SubscriptionState) -> SubscriptionState:
        self.states[state.user_id] = state.model_copy(deep=True)
        return state.model_copy(deep=True)

    async def link_customer(
        self, user_id: str, customer_id: str | None, subscription_id: str | None
    ) -> SubscriptionState:
        return await self.apply_changes(user_id, link_changes(customer_id, subscription_id))

    async def apply_changes(self, user_id: str, changes: SubscriptionChanges) -> SubscriptionState:
        current = self.states.get(user_id) or SubscriptionState(user_id=user_id)
        updated = SubscriptionState.model_validate(
            {**current.model_dump(), **changes.as_fields(), "updated_at": _utcnow()}
        )
        return await self.put(updated)

    async def downgrade_to_free(self, user_id: str) -> SubscriptionState:
        return await self.apply_changes(user_id, downgrade_changes())


# SubscriptionState field -> user_profiles column
_COLUMNS: dict[str, str] = {
    "user_id": "user_id",
    "tier_code": "subscription_tier",
    "status": "subscription_status",
    "billing_period": "subscription_period",
    "start_date": "subscription_start_date",
    "end_date": "subscription_end_date",
    "cancel_at_period_end": "cancel_at_period_end",
    "external_customer_id": "stripe_customer_id",
    "external_subscription_id": "stripe_subscription_id",
    "external_price_id": "stripe_price_id",
    "email": "email",
    "first_name": "first_name",
    "updated_at": "updated_at",
}
_SELECT = ", ".join(_COLUMNS.values())


def _stored_tier(value: Any) -> TierCode:
    try:
        return TierCode(value or TierCode.FREE)
    except ValueError:
        logger.warning("stored_tier_unknown", tier_code=value)
        return TierCode.FREE


def _stored_status(value: Any) -> SubscriptionStatus:
    if not value:
        return SubscriptionStatus.ACTIVE
    try:
        return SubscriptionStatus(value)
    except ValueError:
        # Rows written with Stripe's own spelling (canceled, unpaid, incomplete)
        return map_status(value)


def _stored_period(value: Any) -> BillingPeriod:
    try:
        return BillingPeriod(value or BillingPeriod.MONTHLY)
    except ValueError:
        logger.warning("stored_period_unknown", billing_period=value)
        return BillingPeriod.MONTHLY


def state_from_row(row: dict[str, Any]) -> SubscriptionState:
    data = {field: row.get(column) for field, column in _COLUMNS.items()}
    # Profile rows created before billing existed carry nulls here
    data["tier_code"] = _stored_tier(data["tier_code"])
    data["status"] = _stored_status(data["status"])
    data["billing_period"] = _stored_period(data["billing_period"])
    data["cancel_at_period_end"] = bool(data["cancel_at_period_end"])
    return SubscriptionState.model_validate(data)


def row_from_fields(fields: dict[str, Any]) -> dict[str, Any]:
    row: dict[str, Any] = {}
    for field, value in fields.items():
        if hasattr(value, "isoformat"):
            value = value.isoformat()
        elif hasattr(value, "value"):
            value = value.value
        row[_COLUMNS[field]] = value
    return row


class SupabaseSubscriptionStore:
    """Supabase-backed repository over the ``user_profiles`` table."""

    def __init__(self, client: AsyncSupabaseClient, table: str = "user_profiles") -> None:
        self.client = client
        self.table = table

    async def _select_one(self, column: str, value: str) -> SubscriptionState | None:
        response = (
            await self.client.table(self.table)
            .select(_SELECT)
            .eq(column, value)
            .limit(1)
            .execute()
        )
        rows = response.data or []
        if not rows:
            return None
        return state_from_row(rows[0])

    async def get(self, user_id: str) -> SubscriptionState | None:
        return await self._select_one("user_id", user_id)

    async def find_by_customer_id(self, customer_id: str) -> SubscriptionState | None:
        return await self._select_one("stripe_customer_id", customer_id)

    async def find_by_subscription_id(self, subscription_id: str) -> SubscriptionState | None:
        return await self._select_one("stripe_subscription_id", subscription_id)

    async def link_customer(
        self, user_id: str, customer_id: str | None, subscription_id: str | None
    ) -> SubscriptionState:
        return await self.apply_changes(user_id, link_changes(customer_id, subscription_id))

    async def apply_changes(self, user_id: str, changes: SubscriptionChanges) -> SubscriptionState:
        fields = {**changes.as_fields(), "user_id": user_id, "updated_at": _utcnow()}
        response = (
            await self.client.table(self.table)
            .upsert(row_from_fields(fields), on_conflict="user_id")
            .execute()
        )
        rows = response.data or []
        if rows:
            return state_from_row(rows[0])
        # Some Supabase responses return no data unless `returning=representation`.
        state = await self.get(user_id)
        if state is None:
            logger.warning("subscription_upsert_not_visible", user_id=user_id)
            return SubscriptionState.model_validate({"user_id": user_id, **changes.as_fields()})
        return state

    async def downgrade_to_free(self, user_id: str) -> SubscriptionState:
        return await self.apply_changes(user_id, downgrade_changes())
