"""Canonical billing events, processing outcomes and audit records."""
from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Dict, Literal, Optional, Tuple, Union

from pydantic import BaseModel, ConfigDict, Field, model_validator

from ..catalog.models import BillingCycle
from ..subscriptions.models import LineItem


class BillingEventType(str, Enum):
    """Provider-independent event kinds the processor reacts to."""

    RENEWAL_PAID = "renewal_paid"
    PAYMENT_FAILED = "payment_failed"
    SUBSCRIPTION_UPDATED = "subscription_updated"
    SUBSCRIPTION_DELETED = "subscription_deleted"
    CHECKOUT_COMPLETED = "checkout_completed"


class CheckoutMode(str, Enum):
    SUBSCRIPTION = "subscription"
    TOPUP = "topup"


INITIAL_INVOICE_REASON = "subscription_create"


class RenewalPaidDetails(BaseModel):
    type: Literal["renewal_paid"] = "renewal_paid"
    invoice_id: Optional[str] = None
    amount_paid: int = 0
    currency: Optional[str] = None
    billing_reason: Optional[str] = None
    period_start: Optional[datetime] = None
    period_end: Optional[datetime] = None

    model_config = ConfigDict(frozen=True)

    @property
    def is_initial_invoice(self) -> bool:
        return self.billing_reason == INITIAL_INVOICE_REASON


class PaymentFailedDetails(BaseModel):
    type: Literal["payment_failed"] = "payment_failed"
    invoice_id: Optional[str] = None
    amount_due: int = 0
    currency: Optional[str] = None
    attempt_count: Optional[int] = None

    model_config = ConfigDict(frozen=True)


class SubscriptionUpdatedDetails(BaseModel):
    type: Literal["subscription_updated"] = "subscription_updated"
    provider_status: Optional[str] = None
    cancel_at_period_end: Optional[bool] = None
    tier_id: Optional[str] = None
    period_start: Optional[datetime] = None
    period_end: Optional[datetime] = None

    model_config = ConfigDict(frozen=True)


class SubscriptionDeletedDetails(BaseModel):
    type: Literal["subscription_deleted"] = "subscription_deleted"

    model_config = ConfigDict(frozen=True)


class CheckoutCompletedDetails(BaseModel):
    type: Literal["checkout_completed"] = "checkout_completed"
    mode: CheckoutMode = CheckoutMode.SUBSCRIPTION
    session_id: Optional[str] = None
    tier_id: Optional[str] = None
    module_ids: Tuple[str, ...] = ()
    bundle_ids: Tuple[str, ...] = ()
    credits: int = Field(default=0, ge=0)
    pack_id: Optional[str] = None
    amount_total: int = Field(default=0, ge=0)
    currency: Optional[str] = None
    billing_cycle: BillingCycle = BillingCycle.MONTHLY
    period_start: Optional[datetime] = None
    period_end: Optional[datetime] = None

    model_config = ConfigDict(frozen=True)


EventDetails = Annotated[
    Union[
        RenewalPaidDetails,
        PaymentFailedDetails,
        SubscriptionUpdatedDetails,
        SubscriptionDeletedDetails,
        CheckoutCompletedDetails,
    ],
    Field(discriminator="type"),
]


class BillingEvent(BaseModel):
    """Normalized provider event; ``details`` is keyed by ``event_type``."""

    event_id: str = Field(min_length=1)
    event_type: BillingEventType
    provider_event_type: Optional[str] = None
    provider_subscription_id: Optional[str] = None
    provider_customer_id: Optional[str] = None
    organization_id: Optional[str] = None
    occurred_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    line_items: Tuple[LineItem, ...] = ()
    details: EventDetails

    model_config = ConfigDict(frozen=True)

    @model_validator(mode="after")
    def _check_details(self) -> "BillingEvent":
        if self.details.type != self.event_type.value:
            raise ValueError("details do not match event_type")
        return self


class EventProcessingStatus(str, Enum):
    PROCESSED = "processed"
    DUPLICATE = "duplicate"
    RETRYING = "retrying"
    FAILED = "failed"


class ProcessingOutcome(BaseModel):
    """What happened to one delivered event."""

    event_id: str
    event_type: BillingEventType
    status: EventProcessingStatus
    organization_id: Optional[str] = None
    summary: Optional[str] = None
    retry_count: int = 0
    error_code: Optional[str] = None

    model_config = ConfigDict(frozen=True)


class BillingAuditEventType(str, Enum):
    """Audit event names emitted by the webhook processor."""

    SUBSCRIPTION_ACTIVATED = "subscription_activated"
    SUBSCRIPTION_RENEWED = "subscription_renewed"
    SUBSCRIPTION_UPDATED = "subscription_updated"
    SUBSCRIPTION_CANCELED = "subscription_canceled"
    SUBSCRIPTION_REACTIVATED = "subscription_reactivated"
    SUBSCRIPTION_DEACTIVATED = "subscription_deactivated"
    PAYMENT_FAILED = "payment_failed"
    PAYMENT_RECOVERED = "payment_recovered"
    GRACE_PERIOD_EXPIRED = "grace_period_expired"
    CREDITS_TOPPED_UP = "credits_topped_up"


class BillingAuditEvent(BaseModel):
    """Structured audit event for analytics and notifications."""

    event_type: BillingAuditEventType
    organization_id: Optional[str] = None
    subscription_id: Optional[str] = None
    metadata: Dict[str, str] = Field(default_factory=dict)
    occurred_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    model_config = ConfigDict(populate_by_name=True, frozen=True)


class PaymentFailure(BaseModel):
    """A payment failure that started a grace period."""

    organization_id: str
    subscription_id: str
    invoice_id: Optional[str] = None
    amount_due: int = 0
    currency: str = "GBP"
    occurred_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    grace_period_expires_at: Optional[datetime] = None

    model_config = ConfigDict(populate_by_name=True, frozen=True)


__all__ = [
    "BillingAuditEvent",
    "BillingAuditEventType",
    "BillingEvent",
    "BillingEventType",
    "CheckoutCompletedDetails",
    "CheckoutMode",
    "EventDetails",
    "EventProcessingStatus",
    "INITIAL_INVOICE_REASON",
    "PaymentFailedDetails",
    "PaymentFailure",
    "ProcessingOutcome",
    "RenewalPaidDetails",
    "SubscriptionDeletedDetails",
    "SubscriptionUpdatedDetails",
]
