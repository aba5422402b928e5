"""Entitlement reconciliation against the billing provider and user entitlement actions."""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, List, Optional, Protocol, Sequence, Tuple
from uuid import uuid4

from ..catalog.models import BillingCycle
from ..catalog.repository import CatalogRepository
from ..exceptions import ValidationError
from ..pricing.service import PricingService
from ..retry import RetryPolicy
from ..storage.transactions import TransactionManager
from ..subscriptions.models import (
    BillableItem,
    BillableKind,
    InstanceBundle,
    InstanceModule,
    InstanceSubscription,
    LineItem,
    SubscriptionStatus,
)
from ..subscriptions.service import SubscriptionScope
from .models import EntitlementChange, ReconciliationDecision, ReconciliationResult


logger = logging.getLogger(__name__)


class BillingProvider(Protocol):
    """Line-item operations on the external billing provider."""

    def add_subscription_item(
        self,
        *,
        provider_subscription_id: str,
        item: BillableItem,
        unit_amount: int,
        currency: str,
        billing_cycle: BillingCycle,
        idempotency_key: str,
    ) -> LineItem:
        """Attach a recurring line item and return it."""

    def remove_subscription_item(
        self,
        *,
        provider_subscription_id: str,
        provider_item_id: str,
        prorate: bool,
    ) -> None:
        """Detach a line item, refunding unused time only when ``prorate``."""

    def list_pending_invoice_items(self, provider_subscription_id: str) -> Sequence[LineItem]:
        """Invoice items created for the current cycle but not yet invoiced."""


def _active_bundle_ids(scope: SubscriptionScope, subscription: InstanceSubscription) -> Tuple[str, ...]:
    return tuple(
        bundle.bundle_id for bundle in scope.subscriptions.list_bundles(subscription.id) if bundle.is_active
    )


@dataclass
class EntitlementReconciler:
    """Keeps provider line items in step with enabled modules and active bundles.

    Every call runs inside a caller-owned transaction scope and persists the
    refreshed line-item cache through it.
    """

    pricing: PricingService
    provider: BillingProvider
    prorate_on_disable: bool = False

    def ensure_charge(
        self,
        scope: SubscriptionScope,
        subscription: InstanceSubscription,
        item: BillableItem,
        *,
        idempotency_key: str,
        reported_items: Sequence[LineItem] = (),
    ) -> ReconciliationResult:
        cached = subscription.find_line_items(item)
        reported = [line for line in reported_items if line.matches(item)]
        if cached or reported:
            updated = subscription
            for line in reported:
                updated = updated.with_line_item(line)
            if updated is not subscription:
                updated = scope.subscriptions.save_subscription(updated)
            existing = (cached or tuple(reported))[0]
            return ReconciliationResult(
                item=item,
                decision=ReconciliationDecision.ALREADY_BILLED,
                subscription=updated,
                line_item=existing,
                unit_amount=existing.unit_amount,
            )

        active_bundle_ids = _active_bundle_ids(scope, subscription)
        if item.kind == BillableKind.MODULE and self.pricing.covering_bundles(item.item_id, active_bundle_ids):
            return ReconciliationResult(
                item=item,
                decision=ReconciliationDecision.COVERED_BY_BUNDLE,
                subscription=subscription,
            )

        provider_subscription_id = subscription.provider_subscription_id
        if not provider_subscription_id:
            raise ValidationError(
                "Subscription is not linked to the billing provider",
                detail={"subscription_id": subscription.id},
            )

        pending = [
            line for line in self.provider.list_pending_invoice_items(provider_subscription_id) if line.matches(item)
        ]
        if pending:
            return ReconciliationResult(
                item=item,
                decision=ReconciliationDecision.PENDING_INVOICE_ITEM,
                subscription=subscription,
                line_item=pending[0],
                unit_amount=pending[0].unit_amount,
            )

        unit_amount = self.pricing.item_price(item, subscription, active_bundle_ids=active_bundle_ids)
        if unit_amount <= 0:
            return ReconciliationResult(
                item=item,
                decision=ReconciliationDecision.NO_CHARGE_REQUIRED,
                subscription=subscription,
            )

        line_item = self.provider.add_subscription_item(
            provider_subscription_id=provider_subscription_id,
            item=item,
            unit_amount=unit_amount,
            currency=subscription.registration_currency,
            billing_cycle=subscription.billing_cycle,
            idempotency_key=idempotency_key,
        )
        updated = scope.subscriptions.save_subscription(subscription.with_line_item(line_item))
        logger.info(
            "Created provider line item %s for %s",
            line_item.provider_item_id,
            item.key,
            extra={"subscription_id": subscription.id, "unit_amount": unit_amount},
        )
        return ReconciliationResult(
            item=item,
            decision=ReconciliationDecision.CHARGE_CREATED,
            subscription=updated,
            line_item=line_item,
            unit_amount=unit_amount,
        )

    def release_item(
        self,
        scope: SubscriptionScope,
        subscription: InstanceSubscription,
        item: BillableItem,
    ) -> InstanceSubscription:
        """Remove every line item for ``item`` from the provider and the cache."""

        lines = subscription.find_line_items(item)
        if not lines:
            return subscription
        if subscription.provider_subscription_id:
            for line in lines:
                self.provider.remove_subscription_item(
                    provider_subscription_id=subscription.provider_subscription_id,
                    provider_item_id=line.provider_item_id,
                    prorate=self.prorate_on_disable,
                )
        return scope.subscriptions.save_subscription(subscription.without_line_items(item))

    def reconcile_subscription(
        self,
        scope: SubscriptionScope,
        subscription: InstanceSubscription,
        *,
        idempotency_prefix: str,
        reported_items: Sequence[LineItem] = (),
    ) -> Tuple[InstanceSubscription, Tuple[ReconciliationResult, ...]]:
        """Ensure a charge for every active bundle, then every enabled module."""

        items: List[BillableItem] = [
            BillableItem(kind=BillableKind.BUNDLE, item_id=bundle_id)
            for bundle_id in _active_bundle_ids(scope, subscription)
        ]
        items.extend(
            BillableItem(kind=BillableKind.MODULE, item_id=module.module_id)
            for module in scope.subscriptions.list_modules(subscription.id)
            if module.is_enabled
        )

        results: List[ReconciliationResult] = []
        for item in items:
            result = self.ensure_charge(
                scope,
                subscription,
                item,
                idempotency_key=f"{idempotency_prefix}:{item.key}",
                reported_items=reported_items,
            )
            subscription = result.subscription
            results.append(result)
        return subscription, tuple(results)

    def deactivate_all(
        self,
        scope: SubscriptionScope,
        subscription: InstanceSubscription,
        *,
        now: datetime,
        release_line_items: bool = False,
    ) -> InstanceSubscription:
        """Disable every module and bundle of the subscription.

        With ``release_line_items`` the module and bundle line items are also
        removed from the provider; otherwise only the local cache is cleared.
        """

        repository = scope.subscriptions
        for module in repository.list_modules(subscription.id):
            if module.is_enabled:
                repository.save_module(module.model_copy(update={"is_enabled": False, "disabled_date": now}))
            item = BillableItem(kind=BillableKind.MODULE, item_id=module.module_id)
            subscription = self._drop(scope, subscription, item, release=release_line_items)
        for bundle in repository.list_bundles(subscription.id):
            if bundle.is_active:
                repository.save_bundle(bundle.model_copy(update={"is_active": False, "end_date": now}))
            item = BillableItem(kind=BillableKind.BUNDLE, item_id=bundle.bundle_id)
            subscription = self._drop(scope, subscription, item, release=release_line_items)
        return subscription

    def _drop(
        self,
        scope: SubscriptionScope,
        subscription: InstanceSubscription,
        item: BillableItem,
        *,
        release: bool,
    ) -> InstanceSubscription:
        if release:
            return self.release_item(scope, subscription, item)
        if not subscription.find_line_items(item):
            return subscription
        return scope.subscriptions.save_subscription(subscription.without_line_items(item))


_USABLE_STATUSES = {SubscriptionStatus.ACTIVE, SubscriptionStatus.GRACE_PERIOD}


@dataclass
class EntitlementService:
    """User-initiated module and bundle changes.

    Each action runs in one organization transaction and is retried as a whole
    on retryable failures, reusing the same provider idempotency key.
    """

    transactions: TransactionManager
    catalog: CatalogRepository
    reconciler: EntitlementReconciler
    retry_policy: RetryPolicy = field(default_factory=RetryPolicy)
    clock: Optional[Callable[[], datetime]] = None

    def _now(self) -> datetime:
        return self.clock() if self.clock else datetime.now(timezone.utc)

    def toggle_module(self, organization_id: str, module_id: str, enabled: bool) -> EntitlementChange:
        module = self.catalog.get_module(module_id)
        if module is None:
            raise LookupError("Module not found")
        if enabled and not module.is_available_globally:
            raise ValidationError("Module is not available", detail={"module_id": module_id})

        idempotency_key = f"module:{organization_id}:{module_id}:{uuid4().hex}"
        return self.retry_policy.run(
            lambda: self._toggle_module(organization_id, module_id, enabled, idempotency_key),
            description=f"toggle module {module_id}",
        )

    def _toggle_module(
        self,
        organization_id: str,
        module_id: str,
        enabled: bool,
        idempotency_key: str,
    ) -> EntitlementChange:
        now = self._now()
        item = BillableItem(kind=BillableKind.MODULE, item_id=module_id)
        with self.transactions.transaction(organization_id) as scope:
            subscription = self._require_subscription(scope, organization_id, for_activation=enabled)
            existing = _find_module(scope, subscription.id, module_id)
            if enabled:
                record = InstanceModule(
                    id=existing.id if existing else f"im_{uuid4().hex}",
                    subscription_id=subscription.id,
                    module_id=module_id,
                    is_enabled=True,
                    enabled_date=existing.enabled_date if existing and existing.is_enabled else now,
                )
            else:
                record = InstanceModule(
                    id=existing.id if existing else f"im_{uuid4().hex}",
                    subscription_id=subscription.id,
                    module_id=module_id,
                    is_enabled=False,
                    enabled_date=existing.enabled_date if existing else None,
                    disabled_date=now,
                )
            record = scope.subscriptions.save_module(record)

            results: Tuple[ReconciliationResult, ...] = ()
            if enabled:
                result = self.reconciler.ensure_charge(scope, subscription, item, idempotency_key=idempotency_key)
                subscription = result.subscription
                results = (result,)
            else:
                subscription = self.reconciler.release_item(scope, subscription, item)

        logger.info(
            "Module %s %s",
            module_id,
            "enabled" if enabled else "disabled",
            extra={"organization_id": organization_id},
        )
        return EntitlementChange(subscription=subscription, record=record, results=results)

    def activate_bundle(self, organization_id: str, bundle_id: str) -> EntitlementChange:
        bundle = self.catalog.get_bundle(bundle_id)
        if bundle is None:
            raise LookupError("Bundle not found")
        if not bundle.is_active or not bundle.module_ids:
            raise ValidationError("Bundle is not available", detail={"bundle_id": bundle_id})

        idempotency_key = f"bundle:{organization_id}:{bundle_id}:{uuid4().hex}"
        return self.retry_policy.run(
            lambda: self._activate_bundle(organization_id, bundle_id, bundle.module_ids, idempotency_key),
            description=f"activate bundle {bundle_id}",
        )

    def _activate_bundle(
        self,
        organization_id: str,
        bundle_id: str,
        module_ids: Sequence[str],
        idempotency_key: str,
    ) -> EntitlementChange:
        now = self._now()
        with self.transactions.transaction(organization_id) as scope:
            subscription = self._require_subscription(scope, organization_id, for_activation=True)
            existing = _find_bundle(scope, subscription.id, bundle_id)
            record = scope.subscriptions.save_bundle(
                InstanceBundle(
                    id=existing.id if existing else f"ib_{uuid4().hex}",
                    subscription_id=subscription.id,
                    bundle_id=bundle_id,
                    is_active=True,
                    start_date=existing.start_date if existing and existing.is_active else now,
                )
            )
            result = self.reconciler.ensure_charge(
                scope,
                subscription,
                BillableItem(kind=BillableKind.BUNDLE, item_id=bundle_id),
                idempotency_key=idempotency_key,
            )
            subscription = result.subscription
            for module_id in module_ids:
                subscription = self.reconciler.release_item(
                    scope, subscription, BillableItem(kind=BillableKind.MODULE, item_id=module_id)
                )

        logger.info("Bundle %s activated", bundle_id, extra={"organization_id": organization_id})
        return EntitlementChange(subscription=subscription, record=record, results=(result,))

    def deactivate_bundle(self, organization_id: str, bundle_id: str) -> EntitlementChange:
        bundle = self.catalog.get_bundle(bundle_id)
        if bundle is None:
            raise LookupError("Bundle not found")

        idempotency_key = f"bundle-revert:{organization_id}:{bundle_id}:{uuid4().hex}"
        return self.retry_policy.run(
            lambda: self._deactivate_bundle(organization_id, bundle_id, bundle.module_ids, idempotency_key),
            description=f"deactivate bundle {bundle_id}",
        )

    def _deactivate_bundle(
        self,
        organization_id: str,
        bundle_id: str,
        module_ids: Sequence[str],
        idempotency_key: str,
    ) -> EntitlementChange:
        now = self._now()
        with self.transactions.transaction(organization_id) as scope:
            subscription = self._require_subscription(scope, organization_id, for_activation=False)
            existing = _find_bundle(scope, subscription.id, bundle_id)
            if existing is None:
                raise LookupError("Bundle is not attached to this subscription")
            record = scope.subscriptions.save_bundle(
                existing.model_copy(update={"is_active": False, "end_date": now})
            )
            subscription = self.reconciler.release_item(
                scope, subscription, BillableItem(kind=BillableKind.BUNDLE, item_id=bundle_id)
            )

            # Modules the customer still has enabled go back to individual pricing.
            results: List[ReconciliationResult] = []
            enabled = {
                module.module_id
                for module in scope.subscriptions.list_modules(subscription.id)
                if module.is_enabled
            }
            if subscription.status in _USABLE_STATUSES:
                for module_id in module_ids:
                    if module_id not in enabled:
                        continue
                    result = self.reconciler.ensure_charge(
                        scope,
                        subscription,
                        BillableItem(kind=BillableKind.MODULE, item_id=module_id),
                        idempotency_key=f"{idempotency_key}:{module_id}",
                    )
                    subscription = result.subscription
                    results.append(result)

        logger.info("Bundle %s deactivated", bundle_id, extra={"organization_id": organization_id})
        return EntitlementChange(subscription=subscription, record=record, results=tuple(results))

    def handle_bundle_modules_changed(self, bundle_id: str) -> int:
        """React to a catalog edit of a bundle's module list.

        A bundle left without modules is deactivated on every instance that
        has it active. Returns the number of instance records deactivated.
        """

        bundle = self.catalog.get_bundle(bundle_id)
        if bundle is not None and bundle.module_ids:
            return 0

        with self.transactions.transaction(None) as scope:
            organization_ids = []
            for record in scope.subscriptions.list_active_bundle_records(bundle_id):
                subscription = scope.subscriptions.get_subscription(record.subscription_id)
                if subscription is not None:
                    organization_ids.append(subscription.organization_id)

        for organization_id in organization_ids:
            self.retry_policy.run(
                lambda organization_id=organization_id: self._deactivate_bundle(
                    organization_id, bundle_id, (), f"bundle-emptied:{bundle_id}:{uuid4().hex}"
                ),
                description=f"deactivate emptied bundle {bundle_id}",
            )
        if organization_ids:
            logger.warning(
                "Deactivated empty bundle %s on %s instances",
                bundle_id,
                len(organization_ids),
            )
        return len(organization_ids)

    def is_module_available_for_instance(self, module_id: str, organization_id: str) -> bool:
        module = self.catalog.get_module(module_id)
        if module is None or not module.is_available_globally:
            return False

        with self.transactions.transaction(organization_id) as scope:
            subscription = scope.subscriptions.get_subscription_for_organization(organization_id)
            if subscription is None:
                return False
            record = _find_module(scope, subscription.id, module_id)
            if record is not None and record.is_enabled:
                return True
            active_bundle_ids = _active_bundle_ids(scope, subscription)
        return bool(self.reconciler.pricing.covering_bundles(module_id, active_bundle_ids))

    def _require_subscription(
        self,
        scope: SubscriptionScope,
        organization_id: str,
        *,
        for_activation: bool,
    ) -> InstanceSubscription:
        subscription = scope.subscriptions.get_subscription_for_organization(organization_id)
        if subscription is None:
            raise LookupError("Subscription not found")
        if for_activation and subscription.status not in _USABLE_STATUSES:
            raise ValidationError(
                "Subscription is not active",
                detail={"subscription_id": subscription.id, "status": subscription.status.value},
            )
        return subscription


def _find_module(scope: SubscriptionScope, subscription_id: str, module_id: str) -> Optional[InstanceModule]:
    for module in scope.subscriptions.list_modules(subscription_id):
        if module.module_id == module_id:
            return module
    return None


def _find_bundle(scope: SubscriptionScope, subscription_id: str, bundle_id: str) -> Optional[InstanceBundle]:
    for bundle in scope.subscriptions.list_bundles(subscription_id):
        if bundle.bundle_id == bundle_id:
            return bundle
    return None


__all__ = ["BillingProvider", "EntitlementReconciler", "EntitlementService"]
