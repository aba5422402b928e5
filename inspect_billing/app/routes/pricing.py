"""API routes for tier detection, smart packs and price quotes."""
from __future__ import annotations

from typing import List, Optional

from fastapi import APIRouter, HTTPException, Query, status

from ..catalog.models import BillingCycle
from ..exceptions import BillingError
from ..schemas.pricing import (
    ModuleAvailabilityResponse,
    PricingQuoteResponse,
    SmartPackListResponse,
    SmartPackResponse,
    TierResponse,
)
from ..services.billing import (
    get_entitlement_service,
    get_pricing_service,
    get_subscription_query_service,
)


router = APIRouter(prefix="/api/pricing", tags=["pricing"])


@router.get("/tier", response_model=TierResponse)
def detect_tier(inspections: int = Query(ge=0)) -> TierResponse:
    tier = get_pricing_service().detect_tier(inspections)
    if tier is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="No subscription tiers are configured")
    return TierResponse.from_tier(tier)


@router.get("/smart-packs", response_model=SmartPackListResponse)
def calculate_smart_packs(
    extra: int = Query(ge=0),
    tier_id: str = Query(alias="tierId"),
    currency: str = Query("GBP", min_length=3, max_length=3),
) -> SmartPackListResponse:
    service = get_pricing_service()
    try:
        packs = service.calculate_smart_packs(extra, tier_id, currency)
    except BillingError as exc:
        raise exc.to_http_exception() from exc
    return SmartPackListResponse(
        extra_inspections=extra,
        currency=currency.upper(),
        packs=[SmartPackResponse.from_line(line) for line in packs],
        total_price=sum(line.price for line in packs),
    )


@router.get("/quote", response_model=PricingQuoteResponse)
def calculate_quote(
    inspections: int = Query(ge=0),
    currency: str = Query("GBP", min_length=3, max_length=3),
    billing_cycle: BillingCycle = Query(BillingCycle.MONTHLY, alias="billingCycle"),
    module_ids: List[str] = Query([], alias="moduleId"),
    bundle_ids: List[str] = Query([], alias="bundleId"),
    organization_id: Optional[str] = Query(None, alias="organizationId"),
) -> PricingQuoteResponse:
    """Quote a plan; with ``organizationId`` the instance's fee overrides apply."""

    subscription = None
    if organization_id is not None:
        try:
            subscription = get_subscription_query_service().get_status(organization_id).subscription
        except LookupError as exc:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc

    service = get_pricing_service()
    try:
        quote = service.calculate_quote(
            inspections,
            currency,
            billing_cycle=billing_cycle,
            enabled_module_ids=set(module_ids),
            active_bundle_ids=list(dict.fromkeys(bundle_ids)),
            subscription=subscription,
        )
    except LookupError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except BillingError as exc:
        raise exc.to_http_exception() from exc
    return PricingQuoteResponse.from_quote(quote)


@router.get("/modules/{module_id}/availability", response_model=ModuleAvailabilityResponse)
def module_availability(
    module_id: str,
    organization_id: str = Query(alias="organizationId"),
) -> ModuleAvailabilityResponse:
    try:
        available = get_entitlement_service().is_module_available_for_instance(module_id, organization_id)
    except LookupError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    return ModuleAvailabilityResponse(module_id=module_id, organization_id=organization_id, available=available)
