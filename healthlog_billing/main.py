"""
HealthLog Billing - Main FastAPI Application.

Receives Stripe webhooks, keeps per-user subscription state and answers
entitlement checks for the HealthLog frontend.

Run with:
    uvicorn healthlog_billing.main:app --reload
"""

from contextlib import asynccontextmanager
from typing import AsyncGenerator

import structlog
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from supabase import acreate_client
from supabase._async.client import AsyncClient as AsyncSupabaseClient

from healthlog_billing.api.v1.billing import router as billing_router
from healthlog_billing.api.v1.entitlements import router as entitlements_router
from healthlog_billing.config import Settings, get_settings
from healthlog_billing.constants import API_TITLE, API_VERSION
from healthlog_billing.errors import BillingError
from healthlog_billing.logging_config import setup_logging
from healthlog_billing.middleware import RequestContextMiddleware
from healthlog_billing.services.entitlements import EntitlementService
from healthlog_billing.services.history_ledger import (
    InMemoryHistoryLedger,
    SupabaseHistoryLedger,
)
from healthlog_billing.services.notifications import EmailJSNotifier
from healthlog_billing.services.reconciler import WebhookReconciler
from healthlog_billing.services.session_broker import BillingSessionBroker
from healthlog_billing.services.stripe_service import StripeService
from healthlog_billing.services.subscription_store import (
    InMemorySubscriptionStore,
    SupabaseSubscriptionStore,
)
from healthlog_billing.services.tier_catalog import StaticTierCatalog, SupabaseTierCatalog

# Get settings before logging setup so we know the debug flag
settings = get_settings()

# Configure logging
setup_logging(settings.debug, settings.log_level)

logger = structlog.get_logger(__name__)


async def _create_supabase(settings: Settings) -> AsyncSupabaseClient | None:
    if not settings.supabase_configured:
        logger.warning(
            "supabase_not_configured", detail="Using in-memory subscription store and ledger"
        )
        return None
    try:
        client = await acreate_client(settings.supabase_url, settings.supabase_service_role_key)
    except Exception as e:
        logger.warning("supabase_init_failed", error=str(e))
        return None
    logger.info("supabase_configured")
    return client


def _wire_services(app: FastAPI, settings: Settings, supabase: AsyncSupabaseClient | None) -> None:
    """Construct every service once and store it on app state."""
    if supabase is not None:
        store = SupabaseSubscriptionStore(supabase, settings.user_profiles_table)
        ledger = SupabaseHistoryLedger(supabase, settings.subscription_history_table)
    else:
        store = InMemorySubscriptionStore()
        ledger = InMemoryHistoryLedger()

    if supabase is not None and settings.use_remote_tier_catalog:
        catalog = SupabaseTierCatalog(supabase, settings.subscription_tiers_table)
    else:
        catalog = StaticTierCatalog.from_config(settings.stripe)

    app.state.supabase = supabase
    app.state.subscription_store = store
    app.state.history_ledger = ledger
    app.state.tier_catalog = catalog
    app.state.entitlement_service = EntitlementService(catalog, store)
    app.state.notifier = EmailJSNotifier(settings.emailjs)
    if not settings.emailjs.enabled:
        logger.warning("emailjs_not_configured", detail="Notifications will be skipped")

    app.state.stripe_service = None
    app.state.session_broker = None
    app.state.reconciler = None
    if not settings.stripe.secret_key:
        logger.warning("stripe_not_configured", detail="Billing endpoints will return 503")
        return

    stripe_service = StripeService(settings.stripe)
    app.state.stripe_service = stripe_service
    app.state.session_broker = BillingSessionBroker(
        stripe_service,
        catalog,
        store,
        success_url=settings.absolute_url(settings.stripe.checkout_success_path),
        cancel_url=settings.absolute_url(settings.stripe.checkout_cancel_path),
        portal_return_url=settings.absolute_url(settings.stripe.portal_return_path),
    )
    app.state.reconciler = WebhookReconciler(stripe_service, catalog, store, ledger)
    if not settings.stripe.webhook_secret:
        logger.warning("stripe_webhook_secret_missing", detail="Webhooks will be rejected")
    logger.info("stripe_configured")


@asynccontextmanager
async def lifespan(_app: FastAPI) -> AsyncGenerator[None, None]:
    """Lifespan event handler for startup and shutdown."""
    logger.info("api_startup", cors_origins=settings.cors_origins)

    supabase = await _create_supabase(settings)
    _wire_services(_app, settings, supabase)
    logger.info("services_initialized")

    yield

    await _app.state.notifier.close()
    logger.info("api_shutdown")


# Create FastAPI app
app = FastAPI(
    title=API_TITLE,
    description=(
        "Subscription reconciliation and entitlement checks: Stripe webhooks in, "
        "per-user tier state and feature gates out."
    ),
    version=API_VERSION,
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan,
)

# Request context middleware must come before CORS so every response gets
# the X-Request-ID header (including preflight OPTIONS responses).
app.add_middleware(RequestContextMiddleware)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(BillingError)
async def billing_error_handler(_request: Request, exc: BillingError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error("billing_error", error_code=exc.error_code, message=exc.message)
    else:
        logger.info("billing_request_rejected", error_code=exc.error_code, message=exc.message)
    return JSONResponse(
        status_code=exc.status_code,
        content={"error": exc.error_code, "message": exc.message},
    )


# Include routers
app.include_router(billing_router, prefix="/api/v1")
app.include_router(entitlements_router, prefix="/api/v1")


@app.get("/")
async def root() -> dict:
    """Root endpoint with API info."""
    return {
        "name": API_TITLE,
        "version": API_VERSION,
        "docs": "/docs",
    }


@app.get("/health")
async def health() -> dict:
    """Health check endpoint."""
    return {"status": "healthy"}
