"""Billing webhook normalization and subscription lifecycle processing."""

from .models import (
    BillingAuditEvent,
    BillingAuditEventType,
    BillingEvent,
    BillingEventType,
    CheckoutCompletedDetails,
    CheckoutMode,
    EventProcessingStatus,
    PaymentFailedDetails,
    PaymentFailure,
    ProcessingOutcome,
    RenewalPaidDetails,
    SubscriptionDeletedDetails,
    SubscriptionUpdatedDetails,
)
from .normalizer import EVENT_TYPE_ALIASES, normalize_event
from .service import BillingEventLogger, BillingNotifier, WebhookEventProcessor

__all__ = [
    "BillingAuditEvent",
    "BillingAuditEventType",
    "BillingEvent",
    "BillingEventLogger",
    "BillingEventType",
    "BillingNotifier",
    "CheckoutCompletedDetails",
    "CheckoutMode",
    "EVENT_TYPE_ALIASES",
    "EventProcessingStatus",
    "PaymentFailedDetails",
    "PaymentFailure",
    "ProcessingOutcome",
    "RenewalPaidDetails",
    "SubscriptionDeletedDetails",
    "SubscriptionUpdatedDetails",
    "WebhookEventProcessor",
    "normalize_event",
]
