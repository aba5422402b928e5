"""Domain models for instance subscriptions and their billable line items."""
from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field

from ..catalog.models import BillingCycle


class SubscriptionStatus(str, Enum):
    """Lifecycle state of an instance subscription."""

    ACTIVE = "active"
    GRACE_PERIOD = "grace_period"
    INACTIVE = "inactive"
    CANCELLED = "cancelled"


class BillableKind(str, Enum):
    """Kinds of items that can appear as provider line items."""

    TIER = "tier"
    MODULE = "module"
    BUNDLE = "bundle"


class ProcessedEventStatus(str, Enum):
    PROCESSED = "processed"
    FAILED = "failed"
    RETRYING = "retrying"


class BillableItem(BaseModel):
    """Reference to a catalog item that may need a provider line item."""

    kind: BillableKind
    item_id: str

    model_config = ConfigDict(frozen=True)

    @property
    def key(self) -> str:
        return f"{self.kind.value}:{self.item_id}"


class LineItem(BaseModel):
    """Cached provider line item attached to a subscription."""

    provider_item_id: str
    kind: BillableKind
    item_id: str
    unit_amount: int = Field(default=0, ge=0)
    currency: str = "GBP"
    pending: bool = False

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    def matches(self, item: BillableItem) -> bool:
        return self.kind == item.kind and self.item_id == item.item_id


class InstanceSubscription(BaseModel):
    """Local record of an organization's subscription with the provider."""

    id: str
    organization_id: str
    provider_subscription_id: Optional[str] = None
    provider_customer_id: Optional[str] = None
    current_tier_id: Optional[str] = None
    status: SubscriptionStatus = SubscriptionStatus.ACTIVE
    cancel_at_period_end: bool = False
    cancellation_requested_at: Optional[datetime] = None
    first_payment_failure_date: Optional[datetime] = None
    current_period_start: Optional[datetime] = None
    current_period_end: Optional[datetime] = None
    registration_currency: str = Field(default="GBP", min_length=3, max_length=3)
    billing_cycle: BillingCycle = BillingCycle.MONTHLY
    line_items: Tuple[LineItem, ...] = ()
    override_monthly_fee: Optional[int] = Field(default=None, ge=0)
    override_annual_fee: Optional[int] = Field(default=None, ge=0)
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    @property
    def is_cancelled(self) -> bool:
        return self.cancel_at_period_end or self.status == SubscriptionStatus.CANCELLED

    def find_line_items(self, item: BillableItem) -> Tuple[LineItem, ...]:
        return tuple(line for line in self.line_items if line.matches(item))

    def with_line_item(self, line_item: LineItem) -> "InstanceSubscription":
        if any(existing.provider_item_id == line_item.provider_item_id for existing in self.line_items):
            return self
        return self.model_copy(update={"line_items": self.line_items + (line_item,)})

    def without_line_items(self, item: BillableItem) -> "InstanceSubscription":
        return self.model_copy(
            update={"line_items": tuple(line for line in self.line_items if not line.matches(item))}
        )


class InstanceModule(BaseModel):
    id: str
    subscription_id: str
    module_id: str
    is_enabled: bool = False
    enabled_date: Optional[datetime] = None
    disabled_date: Optional[datetime] = None

    model_config = ConfigDict(populate_by_name=True, frozen=True)


class InstanceBundle(BaseModel):
    id: str
    subscription_id: str
    bundle_id: str
    is_active: bool = False
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None

    model_config = ConfigDict(populate_by_name=True, frozen=True)


class ProcessedEvent(BaseModel):
    """Idempotency record for a provider event, also used to park failures."""

    external_event_id: str
    event_type: str
    organization_id: Optional[str] = None
    status: ProcessedEventStatus
    processed_at: Optional[datetime] = None
    result_summary: Optional[str] = None
    retry_count: int = Field(default=0, ge=0)
    last_error: Optional[str] = None
    payload: Dict[str, Any] = Field(default_factory=dict)
    updated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    model_config = ConfigDict(populate_by_name=True, frozen=True)


__all__ = [
    "BillableItem",
    "BillableKind",
    "InstanceBundle",
    "InstanceModule",
    "InstanceSubscription",
    "LineItem",
    "ProcessedEvent",
    "ProcessedEventStatus",
    "SubscriptionStatus",
]
