"""Subscription tier and feature bundle models."""

from decimal import Decimal
from enum import Enum
from typing import Literal

from pydantic import BaseModel, Field


class TierCode(str, Enum):
    """Subscription tiers, declared in ascending rank order."""

    FREE = "free"
    BASIC = "basic"
    PREMIUM = "premium"
    PROFESSIONAL = "professional"

    @property
    def rank(self) -> int:
        return list(TierCode).index(self)


class BillingPeriod(str, Enum):
    """Billing intervals offered at checkout."""

    MONTHLY = "monthly"
    YEARLY = "yearly"


def tier_rank(tier_code: str | None) -> int:
    """Rank for a tier code; unknown or missing codes rank as free."""
    try:
        return TierCode(tier_code).rank
    except ValueError:
        return TierCode.FREE.rank


class ReminderFeatures(BaseModel):
    """Reminder capabilities of a tier."""

    enabled: bool = False
    max_per_day: int = Field(default=0, ge=0)
    methods: list[str] = Field(default_factory=list)
    frequencies: list[str] = Field(default_factory=list)


class ReportFeatures(BaseModel):
    """Wellness report capabilities of a tier."""

    enabled: bool = False
    methods: list[str] = Field(default_factory=list)
    frequencies: list[str] = Field(default_factory=list)


class FeatureBundle(BaseModel):
    """Capability flags and limits granted by a tier."""

    # None = unlimited retention
    history_days: int | None = Field(default=7, ge=0)
    reminders: ReminderFeatures = Field(default_factory=ReminderFeatures)
    reports: ReportFeatures = Field(default_factory=ReportFeatures)
    insights: Literal["basic", "advanced"] | None = None
    pdf_export: bool = False
    csv_export: bool = False


class Tier(BaseModel):
    """One subscription plan."""

    tier_code: TierCode
    name: str
    rank: int = Field(ge=0)
    price_monthly: Decimal = Field(default=Decimal("0"), ge=0)
    price_yearly: Decimal = Field(default=Decimal("0"), ge=0)
    features: FeatureBundle = Field(default_factory=FeatureBundle)
    external_price_ids: dict[BillingPeriod, str] = Field(default_factory=dict)

    def price_for(self, period: BillingPeriod) -> Decimal:
        return self.price_yearly if period == BillingPeriod.YEARLY else self.price_monthly

    def matches_price_id(self, price_id: str) -> bool:
        return bool(price_id) and price_id in self.external_price_ids.values()
