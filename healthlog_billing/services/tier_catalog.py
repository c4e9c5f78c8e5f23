"""Tier catalog: the subscription plans, their ranks, prices and features."""

from typing import Protocol

import structlog
from pydantic import ValidationError
from supabase._async.client import AsyncClient as AsyncSupabaseClient

from healthlog_billing.config import StripeConfig
from healthlog_billing.constants import DEFAULT_TIERS
from healthlog_billing.errors import TierNotFoundError
from healthlog_billing.models.tiers import BillingPeriod, FeatureBundle, Tier, TierCode

logger = structlog.get_logger(__name__)


class TierCatalog(Protocol):
    """Read-only access to subscription tiers."""

    async def list_tiers(self) -> list[Tier]:
        """All tiers, ascending by rank."""

    async def get_tier_by_code(self, tier_code: str) -> Tier:
        """Fetch one tier. Raises TierNotFoundError."""

    async def resolve_tier_from_price_id(self, price_id: str | None) -> Tier:
        """Tier owning a Stripe price id, or the lowest-rank tier."""


def find_tier(tiers: list[Tier], tier_code: str) -> Tier:
    for tier in tiers:
        if tier.tier_code.value == tier_code:
            return tier
    raise TierNotFoundError(getattr(tier_code, "value", str(tier_code)))


def resolve_price_id(tiers: list[Tier], price_id: str | None) -> Tier:
    """Match a price id against every tier's monthly and yearly slots.

    Unknown price ids resolve to the lowest-rank tier so a catalog/provider
    mismatch downgrades the user instead of failing the reconciliation.
    """
    ordered = sorted(tiers, key=lambda t: t.rank)
    if not ordered:
        raise TierNotFoundError(TierCode.FREE.value)
    if price_id:
        for tier in ordered:
            if tier.matches_price_id(price_id):
                return tier
    logger.warning("tier_price_id_unmatched", price_id=price_id, fallback=ordered[0].tier_code.value)
    return ordered[0]


class StaticTierCatalog:
    """Catalog held in memory, optionally wired to configured Stripe prices."""

    def __init__(self, tiers: list[Tier] | tuple[Tier, ...] = DEFAULT_TIERS) -> None:
        self._tiers = sorted((t.model_copy(deep=True) for t in tiers), key=lambda t: t.rank)

    @classmethod
    def from_config(cls, config: StripeConfig) -> "StaticTierCatalog":
        tiers = []
        for tier in DEFAULT_TIERS:
            price_ids = {
                BillingPeriod(period): price_id
                for period, price_id in config.price_ids_for(tier.tier_code.value).items()
            }
            tiers.append(tier.model_copy(update={"external_price_ids": price_ids}, deep=True))
        return cls(tiers)

    async def list_tiers(self) -> list[Tier]:
        return [t.model_copy(deep=True) for t in self._tiers]

    async def get_tier_by_code(self, tier_code: str) -> Tier:
        return find_tier(self._tiers, tier_code).model_copy(deep=True)

    async def resolve_tier_from_price_id(self, price_id: str | None) -> Tier:
        return resolve_price_id(self._tiers, price_id).model_copy(deep=True)


def tier_from_row(row: dict) -> Tier | None:
    """Build a Tier from a ``subscription_tiers`` row; None for unusable rows."""
    try:
        code = TierCode(row.get("tier_code"))
    except ValueError:
        logger.warning("tier_row_unknown_code", tier_code=row.get("tier_code"))
        return None

    price_ids: dict[BillingPeriod, str] = {}
    if row.get("stripe_price_id_monthly"):
        price_ids[BillingPeriod.MONTHLY] = row["stripe_price_id_monthly"]
    if row.get("stripe_price_id_yearly"):
        price_ids[BillingPeriod.YEARLY] = row["stripe_price_id_yearly"]

    try:
        return Tier(
            tier_code=code,
            name=row.get("tier_name") or code.value.capitalize(),
            rank=code.rank,
            price_monthly=row.get("price_monthly") or 0,
            price_yearly=row.get("price_yearly") or 0,
            features=FeatureBundle.model_validate(row.get("features") or {}),
            external_price_ids=price_ids,
        )
    except ValidationError as e:
        logger.warning("tier_row_invalid", tier_code=code.value, error=str(e))
        return None


class SupabaseTierCatalog:
    """Supabase-backed catalog reading the ``subscription_tiers`` table."""

    def __init__(self, client: AsyncSupabaseClient, table: str = "subscription_tiers") -> None:
        self.client = client
        self.table = table

    async def list_tiers(self) -> list[Tier]:
        response = (
            await self.client.table(self.table)
            .select("*")
            .eq("is_active", True)
            .execute()
        )
        tiers = [tier for row in response.data or [] if (tier := tier_from_row(row))]
        return sorted(tiers, key=lambda t: t.rank)

    async def get_tier_by_code(self, tier_code: str) -> Tier:
        return find_tier(await self.list_tiers(), tier_code)

    async def resolve_tier_from_price_id(self, price_id: str | None) -> Tier:
        return resolve_price_id(await self.list_tiers(), price_id)
