"""API routes for organization credit balances and the credit ledger."""
from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, HTTPException, Query, status

from ..exceptions import BillingError
from ..ledger import AdminGrantMetadata, CreditSource, RefundMetadata, calculate_inspection_credit_cost
from ..schemas.credits import (
    ConsumeCreditsRequest,
    ConsumeCreditsResponse,
    CreditBalanceResponse,
    CreditBatchResponse,
    GrantCreditsRequest,
    LedgerEntryResponse,
    LedgerListResponse,
)
from ..services.billing import get_credit_ledger_service


router = APIRouter(prefix="/api/organizations/{organization_id}/credits", tags=["credits"])


@router.get("", response_model=CreditBalanceResponse)
def get_credit_balance(organization_id: str) -> CreditBalanceResponse:
    service = get_credit_ledger_service()
    try:
        balance = service.get_balance(organization_id)
    except LookupError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    return CreditBalanceResponse.from_balance(balance)


@router.post("/consume", response_model=ConsumeCreditsResponse)
def consume_credits(organization_id: str, payload: ConsumeCreditsRequest) -> ConsumeCreditsResponse:
    service = get_credit_ledger_service()
    quantity = payload.quantity
    if quantity is None:
        quantity = calculate_inspection_credit_cost(payload.complexity or 1)
    try:
        entries = service.consume_credits(
            organization_id,
            quantity,
            payload.entity_type,
            payload.entity_id,
            notes=payload.notes,
        )
    except LookupError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except BillingError as exc:
        raise exc.to_http_exception() from exc
    return ConsumeCreditsResponse(
        consumed=quantity,
        entries=[LedgerEntryResponse.from_entry(entry) for entry in entries],
    )


@router.post("/grants", response_model=CreditBatchResponse, status_code=status.HTTP_201_CREATED)
def grant_credits(organization_id: str, payload: GrantCreditsRequest) -> CreditBatchResponse:
    service = get_credit_ledger_service()
    if payload.source == CreditSource.REFUND:
        metadata = RefundMetadata(
            refunded_entity_type=payload.refunded_entity_type,
            refunded_entity_id=payload.refunded_entity_id,
            reason=payload.notes,
        )
        linked_entity_id = payload.refunded_entity_id
    else:
        metadata = AdminGrantMetadata(granted_by=payload.granted_by, admin_notes=payload.notes)
        linked_entity_id = payload.granted_by
    try:
        batch = service.grant_credits(
            organization_id,
            payload.quantity,
            payload.source,
            expires_at=payload.expires_at,
            metadata=metadata,
            unit_cost_minor_units=payload.unit_cost_minor_units,
            linked_entity_id=linked_entity_id,
        )
    except LookupError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except BillingError as exc:
        raise exc.to_http_exception() from exc
    return CreditBatchResponse.from_batch(batch)


@router.get("/ledger", response_model=LedgerListResponse)
def list_ledger_entries(
    organization_id: str,
    batch_id: Optional[str] = Query(None, alias="batchId"),
    limit: int = Query(100, ge=1, le=1000),
) -> LedgerListResponse:
    service = get_credit_ledger_service()
    try:
        entries = service.list_entries(organization_id, batch_id=batch_id, limit=limit)
    except LookupError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    return LedgerListResponse(entries=[LedgerEntryResponse.from_entry(entry) for entry in entries])
