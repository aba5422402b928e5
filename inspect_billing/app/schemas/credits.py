"""API schemas for credit balance and ledger endpoints."""
from __future__ import annotations

from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator

from ..ledger import CreditBalance, CreditBatch, CreditLedgerEntry, CreditSource, LedgerEntrySource


class CreditBatchResponse(BaseModel):
    id: str
    source: CreditSource
    granted_quantity: int = Field(alias="grantedQuantity")
    remaining_quantity: int = Field(alias="remainingQuantity")
    granted_at: datetime = Field(alias="grantedAt")
    expires_at: Optional[datetime] = Field(alias="expiresAt", default=None)

    model_config = ConfigDict(populate_by_name=True)

    @classmethod
    def from_batch(cls, batch: CreditBatch) -> "CreditBatchResponse":
        return cls(
            id=batch.id,
            source=batch.source,
            granted_quantity=batch.granted_quantity,
            remaining_quantity=batch.remaining_quantity,
            granted_at=batch.granted_at,
            expires_at=batch.expires_at,
        )


class CreditBalanceResponse(BaseModel):
    organization_id: str = Field(alias="organizationId")
    credits_remaining: int = Field(alias="creditsRemaining")
    available_credits: int = Field(alias="availableCredits")
    batches: List[CreditBatchResponse] = Field(default_factory=list)

    model_config = ConfigDict(populate_by_name=True)

    @classmethod
    def from_balance(cls, balance: CreditBalance) -> "CreditBalanceResponse":
        return cls(
            organization_id=balance.organization_id,
            credits_remaining=balance.credits_remaining,
            available_credits=balance.available_credits,
            batches=[CreditBatchResponse.from_batch(batch) for batch in balance.batches],
        )


class LedgerEntryResponse(BaseModel):
    id: str
    source: LedgerEntrySource
    quantity: int
    batch_id: str = Field(alias="batchId")
    linked_entity_type: Optional[str] = Field(alias="linkedEntityType", default=None)
    linked_entity_id: Optional[str] = Field(alias="linkedEntityId", default=None)
    notes: Optional[str] = None
    created_at: datetime = Field(alias="createdAt")

    model_config = ConfigDict(populate_by_name=True)

    @classmethod
    def from_entry(cls, entry: CreditLedgerEntry) -> "LedgerEntryResponse":
        return cls(
            id=entry.id,
            source=entry.source,
            quantity=entry.quantity,
            batch_id=entry.batch_id,
            linked_entity_type=entry.linked_entity_type,
            linked_entity_id=entry.linked_entity_id,
            notes=entry.notes,
            created_at=entry.created_at,
        )


class LedgerListResponse(BaseModel):
    entries: List[LedgerEntryResponse] = Field(default_factory=list)


class ConsumeCreditsRequest(BaseModel):
    """Either an explicit ``quantity`` or an inspection ``complexity`` level."""

    quantity: Optional[int] = Field(default=None, ge=1)
    complexity: Optional[int] = None
    entity_type: str = Field(alias="entityType", min_length=1)
    entity_id: str = Field(alias="entityId", min_length=1)
    notes: Optional[str] = None

    model_config = ConfigDict(populate_by_name=True)

    @model_validator(mode="after")
    def _require_amount(self) -> "ConsumeCreditsRequest":
        if self.quantity is None and self.complexity is None:
            raise ValueError("quantity or complexity is required")
        return self


class ConsumeCreditsResponse(BaseModel):
    consumed: int
    entries: List[LedgerEntryResponse] = Field(default_factory=list)


class GrantCreditsRequest(BaseModel):
    """Manual grants; plan and top-up credits only arrive through billing events."""

    quantity: int = Field(ge=1)
    source: CreditSource = CreditSource.ADMIN_GRANT
    expires_at: Optional[datetime] = Field(alias="expiresAt", default=None)
    unit_cost_minor_units: Optional[int] = Field(alias="unitCostMinorUnits", default=None, ge=0)
    granted_by: Optional[str] = Field(alias="grantedBy", default=None)
    notes: Optional[str] = None
    refunded_entity_type: Optional[str] = Field(alias="refundedEntityType", default=None)
    refunded_entity_id: Optional[str] = Field(alias="refundedEntityId", default=None)

    model_config = ConfigDict(populate_by_name=True)

    @model_validator(mode="after")
    def _check_source(self) -> "GrantCreditsRequest":
        if self.source not in {CreditSource.ADMIN_GRANT, CreditSource.REFUND}:
            raise ValueError("only admin_grant and refund credits can be granted manually")
        if self.source == CreditSource.REFUND and not (self.refunded_entity_type and self.refunded_entity_id):
            raise ValueError("refunds require refundedEntityType and refundedEntityId")
        return self


__all__ = [
    "ConsumeCreditsRequest",
    "ConsumeCreditsResponse",
    "CreditBalanceResponse",
    "CreditBatchResponse",
    "GrantCreditsRequest",
    "LedgerEntryResponse",
    "LedgerListResponse",
]
