"""API schemas for billing endpoints."""
from __future__ import annotations

from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field

from ..billing import BillingEventType, EventProcessingStatus, ProcessingOutcome
from ..catalog.models import BillingCycle
from ..entitlements import EntitlementChange, ReconciliationDecision, ReconciliationResult
from ..subscriptions import InstanceBundle, SubscriptionStatus, SubscriptionStatusView


class WebhookResponse(BaseModel):
    event_id: str = Field(alias="eventId")
    event_type: BillingEventType = Field(alias="eventType")
    status: EventProcessingStatus
    organization_id: Optional[str] = Field(alias="organizationId", default=None)
    summary: Optional[str] = None
    retry_count: int = Field(alias="retryCount", default=0)
    error_code: Optional[str] = Field(alias="errorCode", default=None)

    model_config = ConfigDict(populate_by_name=True)

    @classmethod
    def from_outcome(cls, outcome: ProcessingOutcome) -> "WebhookResponse":
        return cls(
            event_id=outcome.event_id,
            event_type=outcome.event_type,
            status=outcome.status,
            organization_id=outcome.organization_id,
            summary=outcome.summary,
            retry_count=outcome.retry_count,
            error_code=outcome.error_code,
        )


class ReplayRequest(BaseModel):
    limit: int = Field(default=50, ge=1, le=500)


class ReplayResponse(BaseModel):
    outcomes: List[WebhookResponse] = Field(default_factory=list)


class SubscriptionStatusResponse(BaseModel):
    subscription_id: str = Field(alias="subscriptionId")
    organization_id: str = Field(alias="organizationId")
    status: SubscriptionStatus
    tier_id: Optional[str] = Field(alias="tierId", default=None)
    billing_cycle: BillingCycle = Field(alias="billingCycle")
    registration_currency: str = Field(alias="registrationCurrency")
    cancel_at_period_end: bool = Field(alias="cancelAtPeriodEnd")
    cancellation_requested_at: Optional[datetime] = Field(alias="cancellationRequestedAt", default=None)
    first_payment_failure_date: Optional[datetime] = Field(alias="firstPaymentFailureDate", default=None)
    grace_period_ends_at: Optional[datetime] = Field(alias="gracePeriodEndsAt", default=None)
    current_period_start: Optional[datetime] = Field(alias="currentPeriodStart", default=None)
    current_period_end: Optional[datetime] = Field(alias="currentPeriodEnd", default=None)
    enabled_modules: List[str] = Field(alias="enabledModules", default_factory=list)
    active_bundles: List[str] = Field(alias="activeBundles", default_factory=list)
    is_usable: bool = Field(alias="isUsable")

    model_config = ConfigDict(populate_by_name=True)

    @classmethod
    def from_view(cls, view: SubscriptionStatusView) -> "SubscriptionStatusResponse":
        subscription = view.subscription
        return cls(
            subscription_id=subscription.id,
            organization_id=subscription.organization_id,
            status=subscription.status,
            tier_id=subscription.current_tier_id,
            billing_cycle=subscription.billing_cycle,
            registration_currency=subscription.registration_currency,
            cancel_at_period_end=subscription.cancel_at_period_end,
            cancellation_requested_at=subscription.cancellation_requested_at,
            first_payment_failure_date=subscription.first_payment_failure_date,
            grace_period_ends_at=view.grace_period_ends_at,
            current_period_start=subscription.current_period_start,
            current_period_end=subscription.current_period_end,
            enabled_modules=list(view.enabled_module_ids),
            active_bundles=list(view.active_bundle_ids),
            is_usable=view.is_usable,
        )


class ModuleToggleRequest(BaseModel):
    enabled: bool


class ReconciliationResponse(BaseModel):
    item_key: str = Field(alias="itemKey")
    decision: ReconciliationDecision
    unit_amount: int = Field(alias="unitAmount", default=0)
    provider_item_id: Optional[str] = Field(alias="providerItemId", default=None)

    model_config = ConfigDict(populate_by_name=True)

    @classmethod
    def from_result(cls, result: ReconciliationResult) -> "ReconciliationResponse":
        return cls(
            item_key=result.item.key,
            decision=result.decision,
            unit_amount=result.unit_amount,
            provider_item_id=result.line_item.provider_item_id if result.line_item else None,
        )


class EntitlementChangeResponse(BaseModel):
    subscription_id: str = Field(alias="subscriptionId")
    item_id: str = Field(alias="itemId")
    active: bool
    reconciliation: List[ReconciliationResponse] = Field(default_factory=list)

    model_config = ConfigDict(populate_by_name=True)

    @classmethod
    def from_change(cls, change: EntitlementChange) -> "EntitlementChangeResponse":
        record = change.record
        if isinstance(record, InstanceBundle):
            item_id, active = record.bundle_id, record.is_active
        else:
            item_id, active = record.module_id, record.is_enabled
        return cls(
            subscription_id=change.subscription.id,
            item_id=item_id,
            active=active,
            reconciliation=[ReconciliationResponse.from_result(result) for result in change.results],
        )


__all__ = [
    "EntitlementChangeResponse",
    "ModuleToggleRequest",
    "ReconciliationResponse",
    "ReplayRequest",
    "ReplayResponse",
    "SubscriptionStatusResponse",
    "WebhookResponse",
]
