"""Instance subscriptions, entitlements records and processed events."""

from .models import (
    BillableItem,
    BillableKind,
    InstanceBundle,
    InstanceModule,
    InstanceSubscription,
    LineItem,
    ProcessedEvent,
    ProcessedEventStatus,
    SubscriptionStatus,
)
from .service import (
    PaymentFailureAction,
    SubscriptionQueryService,
    SubscriptionRepository,
    SubscriptionScope,
    SubscriptionStatusView,
    SubscriptionTransactionManager,
    evaluate_payment_failure,
)

__all__ = [
    "BillableItem",
    "BillableKind",
    "InstanceBundle",
    "InstanceModule",
    "InstanceSubscription",
    "LineItem",
    "PaymentFailureAction",
    "ProcessedEvent",
    "ProcessedEventStatus",
    "SubscriptionQueryService",
    "SubscriptionRepository",
    "SubscriptionScope",
    "SubscriptionStatus",
    "SubscriptionStatusView",
    "SubscriptionTransactionManager",
    "evaluate_payment_failure",
]
