"""
Application configuration using pydantic-settings.
Loads environment variables from .env file.

Nested config groups (StripeConfig, EmailJSConfig) are env-overridable via
the double-underscore delimiter, e.g.:
    STRIPE__SECRET_KEY=sk_live_...
    STRIPE__PRICE_PREMIUM_MONTHLY=price_123
    EMAILJS__TEMPLATE_WELCOME=template_abc
"""

from functools import lru_cache

from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class StripeConfig(BaseModel):
    """Stripe credentials, pre-configured price ids and redirect URLs."""

    secret_key: str = ""
    webhook_secret: str = ""
    currency: str = "usd"

    # Pre-configured price ids; empty means "create on demand at checkout"
    price_basic_monthly: str = ""
    price_basic_yearly: str = ""
    price_premium_monthly: str = ""
    price_premium_yearly: str = ""
    price_professional_monthly: str = ""
    price_professional_yearly: str = ""

    # Relative to Settings.app_url unless absolute
    checkout_success_path: str = "/subscription/success?session_id={CHECKOUT_SESSION_ID}"
    checkout_cancel_path: str = "/subscription/plans"
    portal_return_path: str = "/profile"

    def price_ids_for(self, tier_code: str) -> dict[str, str]:
        """Configured price ids for a tier, keyed by billing period."""
        ids = {
            "monthly": getattr(self, f"price_{tier_code}_monthly", ""),
            "yearly": getattr(self, f"price_{tier_code}_yearly", ""),
        }
        return {period: price_id for period, price_id in ids.items() if price_id}


class EmailJSConfig(BaseModel):
    """EmailJS REST API credentials and notification template ids."""

    api_url: str = "https://api.emailjs.com/api/v1.0/email/send"
    service_id: str = ""
    public_key: str = ""
    private_key: str = ""
    timeout_seconds: float = 5.0

    template_welcome: str = ""
    template_upgrade: str = ""
    template_downgrade: str = ""
    template_cancelled: str = ""
    template_payment_failed: str = ""

    @property
    def enabled(self) -> bool:
        return bool(self.service_id and self.public_key)


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        env_nested_delimiter="__",
    )

    # Supabase (service role key bypasses RLS for webhook writes)
    supabase_url: str = ""
    supabase_service_role_key: str = ""
    user_profiles_table: str = "user_profiles"
    subscription_tiers_table: str = "subscription_tiers"
    subscription_history_table: str = "subscription_history"

    # Read tiers from Supabase instead of the built-in catalog
    use_remote_tier_catalog: bool = False

    # Public frontend URL used to build Stripe redirect URLs
    app_url: str = "http://localhost:5173"

    # App Settings
    debug: bool = False
    log_level: str | None = None
    cors_origins: list[str] = ["http://localhost:5173"]

    # Nested config groups (env-overridable via SECTION__KEY format)
    stripe: StripeConfig = Field(default_factory=StripeConfig)
    emailjs: EmailJSConfig = Field(default_factory=EmailJSConfig)

    @property
    def supabase_configured(self) -> bool:
        return bool(self.supabase_url and self.supabase_service_role_key)

    def absolute_url(self, path: str) -> str:
        if path.startswith("http://") or path.startswith("https://"):
            return path
        return f"{self.app_url.rstrip('/')}/{path.lstrip('/')}"


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
