"""Checkout and billing-portal session brokers."""

from decimal import Decimal

import structlog
from pydantic import BaseModel

from healthlog_billing.errors import (
    InvalidCheckoutRequestError,
    NoActiveSubscriptionError,
    UserProfileNotFoundError,
)
from healthlog_billing.models.tiers import BillingPeriod, TierCode
from healthlog_billing.services.stripe_service import StripeService
from healthlog_billing.services.subscription_store import SubscriptionStore
from healthlog_billing.services.tier_catalog import TierCatalog

logger = structlog.get_logger(__name__)


class CheckoutSession(BaseModel):
    session_id: str
    url: str


class PortalSession(BaseModel):
    url: str


class BillingSessionBroker:
    """Starts Stripe-hosted purchase and self-service billing flows."""

    def __init__(
        self,
        stripe_service: StripeService,
        catalog: TierCatalog,
        store: SubscriptionStore,
        *,
        success_url: str,
        cancel_url: str,
        portal_return_url: str,
    ) -> None:
        self.stripe_service = stripe_service
        self.catalog = catalog
        self.store = store
        self.success_url = success_url
        self.cancel_url = cancel_url
        self.portal_return_url = portal_return_url

    async def _resolve_price_id(
        self,
        tier_code: TierCode,
        billing_period: BillingPeriod,
        price_id: str | None,
        amount: Decimal | None,
        tier_name: str | None,
    ) -> str:
        if price_id:
            return price_id

        tier = await self.catalog.get_tier_by_code(tier_code)
        configured = tier.external_price_ids.get(billing_period)
        if configured:
            return configured

        if amount is None and tier.price_for(billing_period) > 0:
            amount = tier.price_for(billing_period)
        if not amount:
            raise InvalidCheckoutRequestError("Either priceId or amount must be provided")

        product_id = await self.stripe_service.find_or_create_product(
            tier_name or f"{tier.name} Plan", tier_code.value
        )
        return await self.stripe_service.create_price(
            product_id=product_id,
            amount=amount,
            billing_period=billing_period,
            tier_code=tier_code.value,
        )

    async def create_checkout_session(
        self,
        user_id: str,
        tier_code: TierCode,
        billing_period: BillingPeriod,
        *,
        price_id: str | None = None,
        amount: Decimal | None = None,
        tier_name: str | None = None,
    ) -> CheckoutSession:
        """
        Create a subscription Checkout session for a paid tier.

        ``user_id`` is attached as client reference and as metadata on both the
        session and the resulting subscription, so webhooks can be correlated
        before the customer id has been linked.

        Raises:
            InvalidCheckoutRequestError: free tier, or no price id and no amount.
            TierNotFoundError: tier code not in the catalog.
            UserProfileNotFoundError: the user has no profile row.
        """
        if tier_code == TierCode.FREE:
            raise InvalidCheckoutRequestError("The free tier cannot be purchased")

        state = await self.store.get(user_id)
        if state is None:
            raise UserProfileNotFoundError()

        final_price_id = await self._resolve_price_id(
            tier_code, billing_period, price_id, amount, tier_name
        )

        session = await self.stripe_service.create_checkout_session(
            user_id=user_id,
            user_email=state.email,
            tier_code=tier_code.value,
            billing_period=billing_period,
            price_id=final_price_id,
            customer_id=state.external_customer_id,
            success_url=self.success_url,
            cancel_url=self.cancel_url,
        )
        logger.info(
            "checkout_session_created",
            user_id=user_id,
            session_id=session["id"],
            tier_code=tier_code.value,
            period=billing_period.value,
        )
        return CheckoutSession(session_id=session["id"], url=session["url"])

    async def create_billing_portal_session(self, user_id: str) -> PortalSession:
        state = await self.store.get(user_id)
        if state is None:
            raise UserProfileNotFoundError()
        if not state.external_customer_id:
            raise NoActiveSubscriptionError()

        session = await self.stripe_service.create_portal_session(
            customer_id=state.external_customer_id, return_url=self.portal_return_url
        )
        logger.info("billing_portal_session_created", user_id=user_id)
        return PortalSession(url=session["url"])
