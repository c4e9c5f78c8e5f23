"""Billing error hierarchy.

Each error carries the HTTP status and machine-readable code the API layer
renders as ``{"error": ..., "message": ...}``.
"""


class BillingError(Exception):
    """Base class for expected billing failures."""

    status_code: int = 500
    error_code: str = "billing_error"

    def __init__(self, message: str | None = None) -> None:
        self.message = message or self.__class__.__doc__ or self.error_code
        super().__init__(self.message)


class ConfigurationError(BillingError):
    """A required credential or secret is not configured."""

    status_code = 503
    error_code = "configuration_error"


class SignatureVerificationError(BillingError):
    """Webhook signature is missing or invalid."""

    status_code = 400
    error_code = "invalid_signature"


class MalformedEventError(BillingError):
    """Verified webhook event lacks fields required to process it."""

    status_code = 400
    error_code = "malformed_event"


class TierNotFoundError(BillingError):
    """No tier with the requested code exists in the catalog."""

    status_code = 404
    error_code = "tier_not_found"

    def __init__(self, tier_code: str) -> None:
        self.tier_code = tier_code
        super().__init__(f"Unknown subscription tier '{tier_code}'")


class UserProfileNotFoundError(BillingError):
    """User profile not found."""

    status_code = 404
    error_code = "user_profile_not_found"


class NoActiveSubscriptionError(BillingError):
    """No active subscription found."""

    status_code = 400
    error_code = "no_active_subscription"


class InvalidCheckoutRequestError(BillingError):
    """Checkout request cannot be fulfilled as given."""

    status_code = 400
    error_code = "invalid_checkout_request"
