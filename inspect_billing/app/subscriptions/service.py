"""Subscription record access, grace-period evaluation and status queries."""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import ContextManager, Optional, Protocol, Sequence, Tuple

from pydantic import BaseModel, ConfigDict

from .models import (
    InstanceBundle,
    InstanceModule,
    InstanceSubscription,
    ProcessedEvent,
    ProcessedEventStatus,
    SubscriptionStatus,
)


class SubscriptionRepository(Protocol):
    """Persistence operations for subscriptions, entitlements and event records."""

    def get_subscription(self, subscription_id: str) -> Optional[InstanceSubscription]:
        ...

    def get_subscription_for_organization(self, organization_id: str) -> Optional[InstanceSubscription]:
        ...

    def get_subscription_by_provider_id(self, provider_subscription_id: str) -> Optional[InstanceSubscription]:
        ...

    def save_subscription(self, subscription: InstanceSubscription) -> InstanceSubscription:
        ...

    def list_modules(self, subscription_id: str) -> Sequence[InstanceModule]:
        ...

    def save_module(self, module: InstanceModule) -> InstanceModule:
        ...

    def list_bundles(self, subscription_id: str) -> Sequence[InstanceBundle]:
        ...

    def save_bundle(self, bundle: InstanceBundle) -> InstanceBundle:
        ...

    def list_active_bundle_records(self, bundle_id: str) -> Sequence[InstanceBundle]:
        ...

    def get_processed_event(self, external_event_id: str) -> Optional[ProcessedEvent]:
        ...

    def save_processed_event(self, event: ProcessedEvent) -> ProcessedEvent:
        ...

    def list_processed_events(
        self,
        *,
        status: ProcessedEventStatus,
        limit: int = 50,
    ) -> Sequence[ProcessedEvent]:
        ...


class SubscriptionScope(Protocol):
    subscriptions: SubscriptionRepository


class SubscriptionTransactionManager(Protocol):
    def transaction(self, organization_id: Optional[str]) -> ContextManager[SubscriptionScope]:
        ...


class PaymentFailureAction(str, Enum):
    """What a payment-failed event does to the subscription."""

    START_GRACE_PERIOD = "start_grace_period"
    WITHIN_GRACE_PERIOD = "within_grace_period"
    DEACTIVATE = "deactivate"
    IGNORE = "ignore"


def evaluate_payment_failure(
    subscription: InstanceSubscription,
    now: datetime,
    grace_period: timedelta,
) -> PaymentFailureAction:
    """Decide the effect of a payment failure observed at ``now``.

    The grace timer is evaluated lazily: there is no background job, so the
    decision depends only on when the first failure was recorded.
    Subscriptions that are already inactive or cancelled are left alone.
    """

    if subscription.status in {SubscriptionStatus.INACTIVE, SubscriptionStatus.CANCELLED}:
        return PaymentFailureAction.IGNORE
    first_failure = subscription.first_payment_failure_date
    if first_failure is None:
        return PaymentFailureAction.START_GRACE_PERIOD
    if now - first_failure < grace_period:
        return PaymentFailureAction.WITHIN_GRACE_PERIOD
    return PaymentFailureAction.DEACTIVATE


class SubscriptionStatusView(BaseModel):
    """Read model describing an organization's subscription state."""

    subscription: InstanceSubscription
    enabled_module_ids: Tuple[str, ...] = ()
    active_bundle_ids: Tuple[str, ...] = ()
    grace_period_ends_at: Optional[datetime] = None

    model_config = ConfigDict(frozen=True)

    @property
    def is_usable(self) -> bool:
        return self.subscription.status in {SubscriptionStatus.ACTIVE, SubscriptionStatus.GRACE_PERIOD}


@dataclass
class SubscriptionQueryService:
    transactions: SubscriptionTransactionManager
    grace_period_days: int = 3

    def get_status(self, organization_id: str) -> SubscriptionStatusView:
        with self.transactions.transaction(organization_id) as scope:
            subscription = scope.subscriptions.get_subscription_for_organization(organization_id)
            if subscription is None:
                raise LookupError("Subscription not found")
            modules = scope.subscriptions.list_modules(subscription.id)
            bundles = scope.subscriptions.list_bundles(subscription.id)

        grace_period_ends_at = None
        if subscription.first_payment_failure_date is not None:
            grace_period_ends_at = subscription.first_payment_failure_date + timedelta(
                days=self.grace_period_days
            )
        return SubscriptionStatusView(
            subscription=subscription,
            enabled_module_ids=tuple(module.module_id for module in modules if module.is_enabled),
            active_bundle_ids=tuple(bundle.bundle_id for bundle in bundles if bundle.is_active),
            grace_period_ends_at=grace_period_ends_at,
        )


__all__ = [
    "PaymentFailureAction",
    "SubscriptionQueryService",
    "SubscriptionRepository",
    "SubscriptionScope",
    "SubscriptionStatusView",
    "SubscriptionTransactionManager",
    "evaluate_payment_failure",
]
