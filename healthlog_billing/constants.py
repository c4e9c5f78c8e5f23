"""
Business constants for the billing service.

These values are stable across environments (dev/staging/prod) and do not
need env-var overrides. Stripe price ids and credentials vary per
environment, see config.py.
"""

from decimal import Decimal

from healthlog_billing.models.tiers import (
    FeatureBundle,
    ReminderFeatures,
    ReportFeatures,
    Tier,
    TierCode,
)

API_TITLE = "HealthLog Billing API"
API_VERSION = "1.0.0"

# --- Built-in tier catalog ---
# Used when the subscription_tiers table is not the source of truth.
DEFAULT_TIERS: tuple[Tier, ...] = (
    Tier(
        tier_code=TierCode.FREE,
        name="Free",
        rank=TierCode.FREE.rank,
        features=FeatureBundle(history_days=7),
    ),
    Tier(
        tier_code=TierCode.BASIC,
        name="Basic",
        rank=TierCode.BASIC.rank,
        price_monthly=Decimal("4.99"),
        price_yearly=Decimal("49.99"),
        features=FeatureBundle(
            history_days=30,
            reminders=ReminderFeatures(
                enabled=True, max_per_day=3, methods=["email"], frequencies=["daily"]
            ),
            reports=ReportFeatures(enabled=True, methods=["email"], frequencies=["weekly"]),
            insights="basic",
        ),
    ),
    Tier(
        tier_code=TierCode.PREMIUM,
        name="Premium",
        rank=TierCode.PREMIUM.rank,
        price_monthly=Decimal("9.99"),
        price_yearly=Decimal("99.99"),
        features=FeatureBundle(
            history_days=365,
            reminders=ReminderFeatures(
                enabled=True,
                max_per_day=10,
                methods=["email", "sms"],
                frequencies=["daily", "weekly"],
            ),
            reports=ReportFeatures(
                enabled=True, methods=["email"], frequencies=["weekly", "monthly"]
            ),
            insights="advanced",
            pdf_export=True,
        ),
    ),
    Tier(
        tier_code=TierCode.PROFESSIONAL,
        name="Professional",
        rank=TierCode.PROFESSIONAL.rank,
        price_monthly=Decimal("19.99"),
        price_yearly=Decimal("199.99"),
        features=FeatureBundle(
            history_days=None,
            reminders=ReminderFeatures(
                enabled=True,
                max_per_day=25,
                methods=["email", "sms"],
                frequencies=["daily", "weekly", "custom"],
            ),
            reports=ReportFeatures(
                enabled=True,
                methods=["email", "sms"],
                frequencies=["daily", "weekly", "monthly"],
            ),
            insights="advanced",
            pdf_export=True,
            csv_export=True,
        ),
    ),
)
