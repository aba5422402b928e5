"""API routes exposing webhook intake, subscription state and entitlements."""
from __future__ import annotations

import logging
from typing import Optional

from fastapi import APIRouter, Header, HTTPException, Request, Response, status
from fastapi.concurrency import run_in_threadpool

from ..billing import EventProcessingStatus, ProcessingOutcome, normalize_event
from ..exceptions import BillingError
from ..schemas.billing import (
    EntitlementChangeResponse,
    ModuleToggleRequest,
    ReplayRequest,
    ReplayResponse,
    SubscriptionStatusResponse,
    WebhookResponse,
)
from ..services.billing import (
    get_entitlement_service,
    get_subscription_query_service,
    get_webhook_processor,
    get_webhook_verifier,
)


logger = logging.getLogger("billing")

router = APIRouter(prefix="/api/billing", tags=["billing"])


def _process_webhook(payload: bytes, signature: Optional[str]) -> ProcessingOutcome:
    """Verify, normalize and apply a delivery; blocks on the database and provider."""

    raw = get_webhook_verifier().decode(payload, signature)
    return get_webhook_processor().process(normalize_event(raw))


@router.post("/webhook", response_model=WebhookResponse)
async def receive_webhook(
    request: Request,
    response: Response,
    stripe_signature: Optional[str] = Header(None, alias="Stripe-Signature"),
) -> WebhookResponse:
    payload = await request.body()
    try:
        outcome = await run_in_threadpool(_process_webhook, payload, stripe_signature)
    except BillingError as exc:
        raise exc.to_http_exception() from exc

    if outcome.status == EventProcessingStatus.RETRYING:
        response.status_code = status.HTTP_202_ACCEPTED
    return WebhookResponse.from_outcome(outcome)


@router.post("/events/replay", response_model=ReplayResponse)
def replay_parked_events(payload: Optional[ReplayRequest] = None) -> ReplayResponse:
    limit = payload.limit if payload is not None else ReplayRequest().limit
    try:
        outcomes = get_webhook_processor().replay_parked_events(limit=limit)
    except BillingError as exc:
        raise exc.to_http_exception() from exc
    return ReplayResponse(outcomes=[WebhookResponse.from_outcome(outcome) for outcome in outcomes])


@router.get("/organizations/{organization_id}/subscription", response_model=SubscriptionStatusResponse)
def get_subscription_status(organization_id: str) -> SubscriptionStatusResponse:
    service = get_subscription_query_service()
    try:
        view = service.get_status(organization_id)
    except LookupError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    return SubscriptionStatusResponse.from_view(view)


@router.put(
    "/organizations/{organization_id}/modules/{module_id}",
    response_model=EntitlementChangeResponse,
)
def toggle_module(
    organization_id: str,
    module_id: str,
    payload: ModuleToggleRequest,
) -> EntitlementChangeResponse:
    service = get_entitlement_service()
    try:
        change = service.toggle_module(organization_id, module_id, payload.enabled)
    except LookupError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except BillingError as exc:
        raise exc.to_http_exception() from exc
    return EntitlementChangeResponse.from_change(change)


@router.post(
    "/organizations/{organization_id}/bundles/{bundle_id}",
    response_model=EntitlementChangeResponse,
)
def activate_bundle(organization_id: str, bundle_id: str) -> EntitlementChangeResponse:
    service = get_entitlement_service()
    try:
        change = service.activate_bundle(organization_id, bundle_id)
    except LookupError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except BillingError as exc:
        raise exc.to_http_exception() from exc
    return EntitlementChangeResponse.from_change(change)


@router.delete(
    "/organizations/{organization_id}/bundles/{bundle_id}",
    response_model=EntitlementChangeResponse,
)
def deactivate_bundle(organization_id: str, bundle_id: str) -> EntitlementChangeResponse:
    service = get_entitlement_service()
    try:
        change = service.deactivate_bundle(organization_id, bundle_id)
    except LookupError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except BillingError as exc:
        raise exc.to_http_exception() from exc
    return EntitlementChangeResponse.from_change(change)


@router.post("/bundles/{bundle_id}/modules-changed")
def bundle_modules_changed(bundle_id: str) -> dict:
    deactivated = get_entitlement_service().handle_bundle_modules_changed(bundle_id)
    if deactivated:
        logger.info("Deactivated %s instance bundles for %s", deactivated, bundle_id)
    return {"bundleId": bundle_id, "deactivated": deactivated}
