"""
Shared test fixtures for the HealthLog billing test suite.
"""

import pytest
import structlog
from fastapi.testclient import TestClient

from healthlog_billing.constants import DEFAULT_TIERS
from healthlog_billing.models.subscription import SubscriptionState
from healthlog_billing.models.tiers import BillingPeriod, TierCode
from healthlog_billing.services.history_ledger import InMemoryHistoryLedger
from healthlog_billing.services.subscription_store import InMemorySubscriptionStore
from healthlog_billing.services.tier_catalog import StaticTierCatalog


@pytest.fixture(autouse=True)
def _set_test_env(monkeypatch: pytest.MonkeyPatch) -> None:
    """Keep tests off real Supabase, Stripe and EmailJS credentials."""
    monkeypatch.setenv("SUPABASE_URL", "")
    monkeypatch.setenv("SUPABASE_SERVICE_ROLE_KEY", "")
    monkeypatch.setenv("STRIPE__SECRET_KEY", "")
    monkeypatch.setenv("STRIPE__WEBHOOK_SECRET", "")
    monkeypatch.setenv("EMAILJS__SERVICE_ID", "")
    monkeypatch.setenv("EMAILJS__PUBLIC_KEY", "")


@pytest.fixture(autouse=True)
def _configure_structlog_for_tests():
    """Configure structlog for tests using a simple, deterministic setup."""
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.add_log_level,
            structlog.dev.ConsoleRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(0),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=False,
    )


@pytest.fixture
def client() -> TestClient:
    """FastAPI TestClient wrapping the main application."""
    # Clear the lru_cache so settings pick up test env vars
    from healthlog_billing.config import get_settings

    get_settings.cache_clear()

    from healthlog_billing.main import app

    return TestClient(app)


PRICE_IDS = {
    TierCode.BASIC: {BillingPeriod.MONTHLY: "price_basic_m", BillingPeriod.YEARLY: "price_basic_y"},
    TierCode.PREMIUM: {
        BillingPeriod.MONTHLY: "price_premium_m",
        BillingPeriod.YEARLY: "price_premium_y",
    },
    TierCode.PROFESSIONAL: {
        BillingPeriod.MONTHLY: "price_pro_m",
        BillingPeriod.YEARLY: "price_pro_y",
    },
}


def make_catalog() -> StaticTierCatalog:
    """Built-in catalog with deterministic Stripe price ids."""
    tiers = [
        tier.model_copy(update={"external_price_ids": PRICE_IDS.get(tier.tier_code, {})})
        for tier in DEFAULT_TIERS
    ]
    return StaticTierCatalog(tiers)


@pytest.fixture
def catalog() -> StaticTierCatalog:
    return make_catalog()


@pytest.fixture
def store() -> InMemorySubscriptionStore:
    return InMemorySubscriptionStore()


@pytest.fixture
def ledger() -> InMemoryHistoryLedger:
    return InMemoryHistoryLedger()


@pytest.fixture
def alice() -> SubscriptionState:
    """A free-tier user with contact details and no Stripe linkage yet."""
    return SubscriptionState(user_id="user-alice", email="alice@example.com", first_name="Alice")
