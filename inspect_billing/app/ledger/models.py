"""Domain models for inspection credits."""
from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Literal, Optional, Tuple, Union

from pydantic import BaseModel, ConfigDict, Field, model_validator


class CreditSource(str, Enum):
    """Origin of a credit batch."""

    PLAN_INCLUSION = "plan_inclusion"
    TOPUP = "topup"
    ADMIN_GRANT = "admin_grant"
    REFUND = "refund"


class LedgerEntrySource(str, Enum):
    """Source recorded on a ledger entry: a grant source, consumption or expiry."""

    PLAN_INCLUSION = "plan_inclusion"
    TOPUP = "topup"
    ADMIN_GRANT = "admin_grant"
    REFUND = "refund"
    CONSUMPTION = "consumption"
    EXPIRY = "expiry"

    @classmethod
    def from_credit_source(cls, source: CreditSource) -> "LedgerEntrySource":
        return cls(source.value)


class ExpiryPolicy(str, Enum):
    """Which batches an expiry sweep zeroes out."""

    PLAN_INCLUSION = "plan_inclusion"
    ALL = "all"


class PlanInclusionMetadata(BaseModel):
    source: Literal["plan_inclusion"] = "plan_inclusion"
    subscription_id: str
    invoice_id: Optional[str] = None
    period_end: Optional[datetime] = None

    model_config = ConfigDict(frozen=True)


class TopupMetadata(BaseModel):
    source: Literal["topup"] = "topup"
    topup_order_id: str
    pack_id: Optional[str] = None

    model_config = ConfigDict(frozen=True)


class AdminGrantMetadata(BaseModel):
    source: Literal["admin_grant"] = "admin_grant"
    granted_by: Optional[str] = None
    admin_notes: Optional[str] = None

    model_config = ConfigDict(frozen=True)


class RefundMetadata(BaseModel):
    source: Literal["refund"] = "refund"
    refunded_entity_type: str
    refunded_entity_id: str
    reason: Optional[str] = None

    model_config = ConfigDict(frozen=True)


GrantMetadata = Annotated[
    Union[PlanInclusionMetadata, TopupMetadata, AdminGrantMetadata, RefundMetadata],
    Field(discriminator="source"),
]


class Organization(BaseModel):
    """The tenant that owns credits. ``credits_remaining`` mirrors the ledger."""

    id: str
    name: Optional[str] = None
    credits_remaining: int = Field(default=0, ge=0)

    model_config = ConfigDict(populate_by_name=True, frozen=True)


class CreditBatch(BaseModel):
    """A single grant of credits with its own remaining quantity and expiry."""

    id: str
    organization_id: str
    granted_quantity: int = Field(gt=0)
    remaining_quantity: int = Field(ge=0)
    source: CreditSource
    granted_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    expires_at: Optional[datetime] = None
    unit_cost_minor_units: Optional[int] = Field(default=None, ge=0)
    rolled: bool = False
    metadata: Optional[GrantMetadata] = None

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    @model_validator(mode="after")
    def _check_remaining(self) -> "CreditBatch":
        if self.remaining_quantity > self.granted_quantity:
            raise ValueError("remaining_quantity cannot exceed granted_quantity")
        if self.metadata is not None and self.metadata.source != self.source.value:
            raise ValueError("metadata does not match the batch source")
        return self

    def is_available(self, now: datetime) -> bool:
        """Return ``True`` when the batch can still be drawn from at ``now``."""
        return self.remaining_quantity > 0 and (self.expires_at is None or self.expires_at > now)

    def consumption_order_key(self) -> Tuple[bool, datetime, datetime]:
        # Earliest expiry first, never-expiring batches last, then oldest grant.
        expires = self.expires_at or self.granted_at
        return (self.expires_at is None, expires, self.granted_at)


class CreditLedgerEntry(BaseModel):
    """Append-only movement of credits against a batch."""

    id: str
    organization_id: str
    source: LedgerEntrySource
    quantity: int
    batch_id: str
    linked_entity_type: Optional[str] = None
    linked_entity_id: Optional[str] = None
    unit_cost_minor_units: Optional[int] = None
    notes: Optional[str] = None
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    model_config = ConfigDict(populate_by_name=True, frozen=True)


class CreditBalance(BaseModel):
    """Balance view combining the organization counter with live batches."""

    organization_id: str
    credits_remaining: int
    available_credits: int
    batches: Tuple[CreditBatch, ...] = ()

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    @property
    def in_sync(self) -> bool:
        return self.credits_remaining == self.available_credits


__all__ = [
    "AdminGrantMetadata",
    "CreditBalance",
    "CreditBatch",
    "CreditLedgerEntry",
    "CreditSource",
    "ExpiryPolicy",
    "GrantMetadata",
    "LedgerEntrySource",
    "Organization",
    "PlanInclusionMetadata",
    "RefundMetadata",
    "TopupMetadata",
]
