"""Billing API endpoints."""

from decimal import Decimal

import structlog
from fastapi import APIRouter, BackgroundTasks, Header, Query, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from healthlog_billing.errors import ConfigurationError
from healthlog_billing.models.subscription import (
    HistoryEvent,
    SubscriptionStatus,
)
from healthlog_billing.models.tiers import BillingPeriod, Tier, TierCode
from healthlog_billing.services.entitlements import EntitlementService
from healthlog_billing.services.history_ledger import HistoryLedger
from healthlog_billing.services.reconciler import WebhookReconciler
from healthlog_billing.services.session_broker import BillingSessionBroker
from healthlog_billing.services.tier_catalog import TierCatalog

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/billing", tags=["billing"])


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class CheckoutRequest(_CamelModel):
    """Checkout session request."""

    user_id: str = Field(min_length=1)
    tier_code: TierCode = Field(description="Requested paid tier")
    billing_period: BillingPeriod = BillingPeriod.MONTHLY
    price_id: str | None = Field(default=None, description="Pre-configured Stripe price")
    amount: Decimal | None = Field(default=None, gt=0, description="Major units, e.g. 9.99")
    tier_name: str | None = Field(default=None, description="Product name for new prices")


class CheckoutResponse(_CamelModel):
    """Checkout session response."""

    session_id: str
    url: str


class PortalRequest(_CamelModel):
    """Customer portal request."""

    user_id: str = Field(min_length=1)


class PortalResponse(_CamelModel):
    """Customer portal response."""

    url: str


class SubscriptionResponse(_CamelModel):
    """Current subscription with tier details (no contact fields)."""

    user_id: str
    tier_code: TierCode
    status: SubscriptionStatus
    billing_period: BillingPeriod
    start_date: str | None = None
    end_date: str | None = None
    cancel_at_period_end: bool = False
    has_customer: bool = False
    tier: Tier | None = None


def _get_broker(request: Request) -> BillingSessionBroker:
    broker = getattr(request.app.state, "session_broker", None)
    if broker is None:
        raise ConfigurationError("Stripe is not configured")
    return broker


def _get_reconciler(request: Request) -> WebhookReconciler:
    reconciler = getattr(request.app.state, "reconciler", None)
    if reconciler is None:
        raise ConfigurationError("Stripe webhook handling is not configured")
    return reconciler


def _get_catalog(request: Request) -> TierCatalog:
    catalog = getattr(request.app.state, "tier_catalog", None)
    if catalog is None:
        raise ConfigurationError("Tier catalog unavailable")
    return catalog


def _get_ledger(request: Request) -> HistoryLedger:
    ledger = getattr(request.app.state, "history_ledger", None)
    if ledger is None:
        raise ConfigurationError("History ledger unavailable")
    return ledger


def _get_entitlements(request: Request) -> EntitlementService:
    service = getattr(request.app.state, "entitlement_service", None)
    if service is None:
        raise ConfigurationError("Entitlement service unavailable")
    return service


@router.post("/checkout", response_model=CheckoutResponse)
async def create_checkout_session(body: CheckoutRequest, request: Request) -> CheckoutResponse:
    """Create a Stripe Checkout session for a paid tier."""
    broker = _get_broker(request)
    session = await broker.create_checkout_session(
        body.user_id,
        body.tier_code,
        body.billing_period,
        price_id=body.price_id,
        amount=body.amount,
        tier_name=body.tier_name,
    )
    return CheckoutResponse(session_id=session.session_id, url=session.url)


@router.post("/portal", response_model=PortalResponse)
async def create_portal_session(body: PortalRequest, request: Request) -> PortalResponse:
    """Create a Stripe Customer Portal session."""
    broker = _get_broker(request)
    session = await broker.create_billing_portal_session(body.user_id)
    return PortalResponse(url=session.url)


@router.post("/webhook")
async def stripe_webhook(
    request: Request,
    background_tasks: BackgroundTasks,
    stripe_signature: str | None = Header(default=None, alias="Stripe-Signature"),
) -> JSONResponse:
    """Process Stripe webhooks and reconcile subscription state.

    Notifications are scheduled as background tasks so they run only after
    the acknowledgement has been produced.
    """
    reconciler = _get_reconciler(request)
    payload = await request.body()

    result = await reconciler.handle(payload, stripe_signature)

    notifier = getattr(request.app.state, "notifier", None)
    if notifier is not None:
        for notification in result.notifications:
            background_tasks.add_task(notifier.dispatch, notification)
    elif result.notifications:
        logger.info("notifier_missing", dropped=len(result.notifications))

    return JSONResponse(status_code=result.status_code, content=result.body)


@router.get("/tiers", response_model=list[Tier])
async def list_tiers(request: Request) -> list[Tier]:
    """All subscription tiers, ascending by rank."""
    return await _get_catalog(request).list_tiers()


@router.get("/subscription/{user_id}", response_model=SubscriptionResponse)
async def current_subscription(user_id: str, request: Request) -> SubscriptionResponse:
    """A user's current subscription; users without a row are on the free tier."""
    service = _get_entitlements(request)
    state = await service.current_subscription(user_id)
    evaluator = await service.evaluator()
    return SubscriptionResponse(
        user_id=state.user_id,
        tier_code=state.tier_code,
        status=state.status,
        billing_period=state.billing_period,
        start_date=state.start_date.isoformat() if state.start_date else None,
        end_date=state.end_date.isoformat() if state.end_date else None,
        cancel_at_period_end=state.cancel_at_period_end,
        has_customer=bool(state.external_customer_id),
        tier=evaluator.tier_for(state.tier_code),
    )


@router.get("/history/{user_id}", response_model=list[HistoryEvent])
async def subscription_history(
    user_id: str,
    request: Request,
    limit: int = Query(default=10, ge=1, le=100),
) -> list[HistoryEvent]:
    """Most recent history ledger entries for a user."""
    return await _get_ledger(request).list_for_user(user_id, limit=limit)
