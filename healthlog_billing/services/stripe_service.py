"""Stripe API wrapper."""

import asyncio
import json
from decimal import Decimal
from typing import Any

import stripe
import structlog

from healthlog_billing.config import StripeConfig
from healthlog_billing.errors import ConfigurationError, SignatureVerificationError
from healthlog_billing.models.tiers import BillingPeriod
from healthlog_billing.services.stripe_events import major_to_minor

logger = structlog.get_logger(__name__)


class StripeService:
    """Encapsulates Stripe SDK calls used by the brokers and the reconciler."""

    def __init__(self, config: StripeConfig) -> None:
        if not config.secret_key:
            raise ConfigurationError("Stripe secret key is required")

        self.config = config
        stripe.api_key = config.secret_key

    def verify_webhook_event(self, payload: bytes, signature: str | None) -> dict[str, Any]:
        """
        Check the Stripe-Signature header against the webhook secret.

        Returns the decoded event as a plain dict.

        Raises:
            ConfigurationError: the webhook secret is not configured.
            SignatureVerificationError: header missing, stale or not matching.
        """
        if not self.config.webhook_secret:
            raise ConfigurationError("Stripe webhook secret is not configured")
        if not signature:
            raise SignatureVerificationError("Missing Stripe-Signature header")

        try:
            stripe.Webhook.construct_event(
                payload=payload,
                sig_header=signature,
                secret=self.config.webhook_secret,
            )
        except Exception as e:
            raise SignatureVerificationError(f"Webhook Error: {e}") from e

        return json.loads(payload)

    async def find_or_create_product(self, name: str, tier_code: str) -> str:
        products = await asyncio.to_thread(stripe.Product.list, limit=100, active=True)
        for product in products.data:
            if product.name == name:
                return product.id

        product = await asyncio.to_thread(
            stripe.Product.create,
            name=name,
            description=f"Subscription plan for {name}",
            metadata={"tier_code": tier_code},
        )
        logger.info("stripe_product_created", product_id=product.id, tier_code=tier_code)
        return product.id

    async def create_price(
        self,
        *,
        product_id: str,
        amount: Decimal,
        billing_period: BillingPeriod,
        tier_code: str,
    ) -> str:
        """Create a recurring price; ``amount`` is in major units."""
        interval = "year" if billing_period == BillingPeriod.YEARLY else "month"
        price = await asyncio.to_thread(
            stripe.Price.create,
            product=product_id,
            unit_amount=major_to_minor(amount),
            currency=self.config.currency,
            recurring={"interval": interval},
            metadata={"tier_code": tier_code, "period": billing_period.value},
        )
        logger.info(
            "stripe_price_created",
            price_id=price.id,
            tier_code=tier_code,
            period=billing_period.value,
            amount=str(amount),
        )
        return price.id

    async def create_checkout_session(
        self,
        *,
        user_id: str,
        user_email: str | None,
        tier_code: str,
        billing_period: BillingPeriod,
        price_id: str,
        customer_id: str | None,
        success_url: str,
        cancel_url: str,
    ) -> dict[str, str]:
        params: dict[str, Any] = {
            "mode": "subscription",
            "payment_method_types": ["card"],
            "line_items": [{"price": price_id, "quantity": 1}],
            "client_reference_id": user_id,
            "metadata": {
                "user_id": user_id,
                "tier_code": tier_code,
                "period": billing_period.value,
            },
            "subscription_data": {
                "metadata": {
                    "user_id": user_id,
                    "tier_code": tier_code,
                    "period": billing_period.value,
                }
            },
            "success_url": success_url,
            "cancel_url": cancel_url,
        }

        # Subscription-mode sessions always create a customer when none is given.
        if customer_id:
            params["customer"] = customer_id
        elif user_email:
            params["customer_email"] = user_email

        session = await asyncio.to_thread(stripe.checkout.Session.create, **params)
        return {"id": session.id, "url": session.url}

    async def create_portal_session(self, *, customer_id: str, return_url: str) -> dict[str, str]:
        session = await asyncio.to_thread(
            stripe.billing_portal.Session.create,
            customer=customer_id,
            return_url=return_url,
        )
        return {"id": session.id, "url": session.url}
