"""Result types produced by entitlement reconciliation."""
from __future__ import annotations

from enum import Enum
from typing import Optional, Tuple, Union

from pydantic import BaseModel, ConfigDict

from ..subscriptions.models import (
    BillableItem,
    InstanceBundle,
    InstanceModule,
    InstanceSubscription,
    LineItem,
)


class ReconciliationDecision(str, Enum):
    """Which check settled an ``ensure_charge`` call."""

    ALREADY_BILLED = "already_billed"
    COVERED_BY_BUNDLE = "covered_by_bundle"
    PENDING_INVOICE_ITEM = "pending_invoice_item"
    CHARGE_CREATED = "charge_created"
    NO_CHARGE_REQUIRED = "no_charge_required"


class ReconciliationResult(BaseModel):
    item: BillableItem
    decision: ReconciliationDecision
    subscription: InstanceSubscription
    line_item: Optional[LineItem] = None
    unit_amount: int = 0

    model_config = ConfigDict(frozen=True)

    @property
    def charged(self) -> bool:
        return self.decision == ReconciliationDecision.CHARGE_CREATED


class EntitlementChange(BaseModel):
    """Outcome of a user-initiated module or bundle change."""

    subscription: InstanceSubscription
    record: Union[InstanceModule, InstanceBundle]
    results: Tuple[ReconciliationResult, ...] = ()

    model_config = ConfigDict(frozen=True)


__all__ = ["EntitlementChange", "ReconciliationDecision", "ReconciliationResult"]
