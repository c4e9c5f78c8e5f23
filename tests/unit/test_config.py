"""Unit tests for application settings."""

import pytest

from healthlog_billing.config import EmailJSConfig, Settings, StripeConfig


class TestSettings:
    def test_nested_env_overrides(self, monkeypatch: pytest.MonkeyPatch):
        monkeypatch.setenv("STRIPE__SECRET_KEY", "sk_test_env")
        monkeypatch.setenv("STRIPE__PRICE_PREMIUM_MONTHLY", "price_env")
        monkeypatch.setenv("EMAILJS__TEMPLATE_WELCOME", "template_env")

        settings = Settings()

        assert settings.stripe.secret_key == "sk_test_env"
        assert settings.stripe.price_premium_monthly == "price_env"
        assert settings.emailjs.template_welcome == "template_env"

    def test_supabase_configured(self, monkeypatch: pytest.MonkeyPatch):
        assert Settings().supabase_configured is False

        monkeypatch.setenv("SUPABASE_URL", "https://project.supabase.co")
        monkeypatch.setenv("SUPABASE_SERVICE_ROLE_KEY", "service-role")

        assert Settings().supabase_configured is True

    def test_absolute_url(self):
        settings = Settings(app_url="https://healthlog.app/")

        assert settings.absolute_url("/profile") == "https://healthlog.app/profile"
        assert settings.absolute_url("https://other.test/x") == "https://other.test/x"

    def test_log_level_from_env(self, monkeypatch: pytest.MonkeyPatch):
        monkeypatch.delenv("LOG_LEVEL", raising=False)
        assert Settings().log_level is None

        monkeypatch.setenv("LOG_LEVEL", "warning")

        assert Settings().log_level == "warning"


class TestStripeConfig:
    def test_price_ids_for_skips_empty(self):
        config = StripeConfig(price_basic_monthly="price_1")

        assert config.price_ids_for("basic") == {"monthly": "price_1"}
        assert config.price_ids_for("free") == {}


class TestEmailJSConfig:
    def test_enabled_requires_service_and_public_key(self):
        assert EmailJSConfig().enabled is False
        assert EmailJSConfig(service_id="s", public_key="p").enabled is True
