"""Entitlement check endpoints consumed by the frontend feature gates."""

from fastapi import APIRouter, Request
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from healthlog_billing.errors import ConfigurationError
from healthlog_billing.models.tiers import TierCode
from healthlog_billing.services.entitlements import (
    EntitlementService,
    FeatureAccess,
    HistoryLimit,
    LimitType,
    TierLimit,
)

router = APIRouter(prefix="/entitlements", tags=["entitlements"])


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class FeatureCheckRequest(_CamelModel):
    user_id: str = Field(min_length=1)
    feature_path: str = Field(min_length=1, examples=["reminders.enabled"])


class TierCheckRequest(_CamelModel):
    user_id: str = Field(min_length=1)
    required_tier: TierCode


class TierCheckResponse(_CamelModel):
    allowed: bool
    current_tier: TierCode
    required_tier: TierCode


def _get_entitlements(request: Request) -> EntitlementService:
    service = getattr(request.app.state, "entitlement_service", None)
    if service is None:
        raise ConfigurationError("Entitlement service unavailable")
    return service


@router.post("/check", response_model=FeatureAccess)
async def check_feature(body: FeatureCheckRequest, request: Request) -> FeatureAccess:
    """Whether the user's tier grants a capability path such as ``reminders.enabled``."""
    service = _get_entitlements(request)
    return await service.can_access_feature(body.user_id, body.feature_path)


@router.post("/tier-check", response_model=TierCheckResponse)
async def check_tier(body: TierCheckRequest, request: Request) -> TierCheckResponse:
    service = _get_entitlements(request)
    state = await service.current_subscription(body.user_id)
    allowed = await service.can_access_tier(body.user_id, body.required_tier)
    return TierCheckResponse(
        allowed=allowed, current_tier=state.tier_code, required_tier=body.required_tier
    )


@router.get("/{user_id}/limits/{limit_type}", response_model=TierLimit)
async def tier_limit(user_id: str, limit_type: LimitType, request: Request) -> TierLimit:
    return await _get_entitlements(request).tier_limit(user_id, limit_type)


@router.get("/{user_id}/history-limit", response_model=HistoryLimit)
async def history_limit(user_id: str, request: Request) -> HistoryLimit:
    return await _get_entitlements(request).history_limit(user_id)
