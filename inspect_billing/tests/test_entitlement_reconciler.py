"""Tests for module/bundle entitlement changes and line-item reconciliation."""
from __future__ import annotations

from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Dict, List

import pytest

from inspect_billing.app.catalog import InMemoryCatalog, MarketplaceModule
from inspect_billing.app.catalog.defaults import DEFAULT_MODULES
from inspect_billing.app.entitlements import (
    EntitlementReconciler,
    EntitlementService,
    ReconciliationDecision,
)
from inspect_billing.app.exceptions import ExternalProviderError, ValidationError
from inspect_billing.app.pricing import CurrencyConverter, ExchangeRateCache, PricingService
from inspect_billing.app.retry import RetryPolicy
from inspect_billing.app.services.billing import LocalSandboxBillingProvider
from inspect_billing.app.storage import InMemoryBillingStore
from inspect_billing.app.subscriptions import (
    BillableItem,
    BillableKind,
    InstanceSubscription,
    LineItem,
    SubscriptionStatus,
)


NOW = datetime(2026, 3, 1, 9, 0, tzinfo=timezone.utc)


class StaticRates:
    def fetch_rates(self) -> Dict[str, Decimal]:
        return {"USD": Decimal("1.27"), "EUR": Decimal("1.17")}


def _catalog() -> InMemoryCatalog:
    modules = list(DEFAULT_MODULES) + [MarketplaceModule("beta_reports", "beta_reports", "Beta Reports", False)]
    return InMemoryCatalog(modules=modules)


class Setup:
    def __init__(self, *, prorate_on_disable: bool = False) -> None:
        self.store = InMemoryBillingStore()
        self.store.add_organization("org-1")
        self.catalog = _catalog()
        self.provider = LocalSandboxBillingProvider()
        self.sleeps: List[float] = []
        self.pricing = PricingService(
            catalog=self.catalog,
            converter=CurrencyConverter(ExchangeRateCache(StaticRates())),
        )
        self.reconciler = EntitlementReconciler(
            pricing=self.pricing,
            provider=self.provider,
            prorate_on_disable=prorate_on_disable,
        )
        self.service = EntitlementService(
            transactions=self.store,
            catalog=self.catalog,
            reconciler=self.reconciler,
            retry_policy=RetryPolicy(max_attempts=3, sleep=self.sleeps.append),
            clock=lambda: NOW,
        )
        self.save_subscription(
            InstanceSubscription(
                id="sub-local",
                organization_id="org-1",
                provider_subscription_id="sub_1",
                current_tier_id="growth",
                status=SubscriptionStatus.ACTIVE,
            )
        )

    def save_subscription(self, subscription: InstanceSubscription) -> None:
        with self.store.transaction(subscription.organization_id) as scope:
            scope.subscriptions.save_subscription(subscription)

    def subscription(self) -> InstanceSubscription:
        with self.store.transaction("org-1") as scope:
            return scope.subscriptions.get_subscription_for_organization("org-1")

    def bundles(self):
        with self.store.transaction("org-1") as scope:
            return {bundle.bundle_id: bundle for bundle in scope.subscriptions.list_bundles("sub-local")}

    def line_keys(self) -> List[str]:
        return sorted(f"{line.kind.value}:{line.item_id}" for line in self.subscription().line_items)


@pytest.fixture()
def setup() -> Setup:
    return Setup()


def test_enabling_module_creates_charge(setup):
    change = setup.service.toggle_module("org-1", "white_label", True)

    assert change.record.is_enabled is True
    assert change.record.enabled_date == NOW
    [result] = change.results
    assert result.decision == ReconciliationDecision.CHARGE_CREATED
    assert result.unit_amount == 15000
    assert setup.line_keys() == ["module:white_label"]
    [(provider_subscription_id, line_item)] = setup.provider.added
    assert provider_subscription_id == "sub_1"
    assert line_item.unit_amount == 15000
    assert line_item.currency == "GBP"


def test_enabling_twice_does_not_charge_twice(setup):
    setup.service.toggle_module("org-1", "white_label", True)

    change = setup.service.toggle_module("org-1", "white_label", True)

    assert change.results[0].decision == ReconciliationDecision.ALREADY_BILLED
    assert len(setup.provider.added) == 1


def test_disabling_module_releases_line_item_without_proration(setup):
    setup.service.toggle_module("org-1", "white_label", True)
    provider_item_id = setup.subscription().line_items[0].provider_item_id

    change = setup.service.toggle_module("org-1", "white_label", False)

    assert change.record.is_enabled is False
    assert change.record.disabled_date == NOW
    assert change.results == ()
    assert setup.provider.removed == [("sub_1", provider_item_id, False)]
    assert setup.line_keys() == []


def test_disabling_module_can_prorate():
    setup = Setup(prorate_on_disable=True)
    setup.service.toggle_module("org-1", "white_label", True)

    setup.service.toggle_module("org-1", "white_label", False)

    assert [prorate for _, _, prorate in setup.provider.removed] == [True]


def test_pending_invoice_item_counts_as_billed(setup):
    setup.provider.pending["sub_1"] = [
        LineItem(
            provider_item_id="ii_pending",
            kind=BillableKind.MODULE,
            item_id="white_label",
            unit_amount=15000,
            pending=True,
        )
    ]

    change = setup.service.toggle_module("org-1", "white_label", True)

    assert change.results[0].decision == ReconciliationDecision.PENDING_INVOICE_ITEM
    assert change.results[0].line_item.provider_item_id == "ii_pending"
    assert setup.provider.added == []


def test_reported_line_items_are_cached_instead_of_recharged(setup):
    reported = LineItem(provider_item_id="si_reported", kind=BillableKind.MODULE, item_id="maintenance", unit_amount=15000)
    item = BillableItem(kind=BillableKind.MODULE, item_id="maintenance")

    with setup.store.transaction("org-1") as scope:
        subscription = scope.subscriptions.get_subscription_for_organization("org-1")
        result = setup.reconciler.ensure_charge(
            scope,
            subscription,
            item,
            idempotency_key="evt_1:module:maintenance",
            reported_items=[reported],
        )

    assert result.decision == ReconciliationDecision.ALREADY_BILLED
    assert setup.subscription().line_items == (reported,)
    assert setup.provider.added == []


def test_activating_bundle_charges_bundle_and_releases_covered_modules(setup):
    setup.service.toggle_module("org-1", "tenant_portal", True)
    setup.service.toggle_module("org-1", "white_label", True)

    change = setup.service.activate_bundle("org-1", "essential")

    assert change.record.is_active is True
    assert change.results[0].decision == ReconciliationDecision.CHARGE_CREATED
    assert change.results[0].unit_amount == 27900
    assert setup.line_keys() == ["bundle:essential", "module:white_label"]
    assert len(setup.provider.removed) == 1


def test_module_covered_by_active_bundle_is_not_charged(setup):
    setup.service.activate_bundle("org-1", "essential")
    added_before = len(setup.provider.added)

    change = setup.service.toggle_module("org-1", "maintenance", True)

    assert change.results[0].decision == ReconciliationDecision.COVERED_BY_BUNDLE
    assert len(setup.provider.added) == added_before
    assert setup.line_keys() == ["bundle:essential"]


def test_deactivating_bundle_recharges_enabled_modules(setup):
    setup.service.activate_bundle("org-1", "essential")
    setup.service.toggle_module("org-1", "tenant_portal", True)

    change = setup.service.deactivate_bundle("org-1", "essential")

    assert change.record.is_active is False
    assert change.record.end_date == NOW
    assert [(result.item.item_id, result.decision) for result in change.results] == [
        ("tenant_portal", ReconciliationDecision.CHARGE_CREATED)
    ]
    assert setup.line_keys() == ["module:tenant_portal"]


def test_deactivating_unattached_bundle_raises_lookup_error(setup):
    with pytest.raises(LookupError):
        setup.service.deactivate_bundle("org-1", "premium")


def test_inactive_subscription_cannot_enable_modules(setup):
    setup.save_subscription(setup.subscription().model_copy(update={"status": SubscriptionStatus.INACTIVE}))

    with pytest.raises(ValidationError):
        setup.service.toggle_module("org-1", "white_label", True)

    change = setup.service.toggle_module("org-1", "white_label", False)
    assert change.record.is_enabled is False


def test_grace_period_subscription_can_still_enable_modules(setup):
    setup.save_subscription(setup.subscription().model_copy(update={"status": SubscriptionStatus.GRACE_PERIOD}))

    change = setup.service.toggle_module("org-1", "white_label", True)

    assert change.results[0].charged


def test_unknown_or_unavailable_modules_are_rejected(setup):
    with pytest.raises(LookupError):
        setup.service.toggle_module("org-1", "teleport", True)
    with pytest.raises(ValidationError):
        setup.service.toggle_module("org-1", "beta_reports", True)


def test_subscription_without_provider_link_cannot_be_charged(setup):
    setup.save_subscription(setup.subscription().model_copy(update={"provider_subscription_id": None}))

    with pytest.raises(ValidationError):
        setup.service.toggle_module("org-1", "white_label", True)


def test_provider_failures_are_retried_with_the_same_idempotency_key(setup, monkeypatch):
    calls: List[str] = []
    original = setup.provider.add_subscription_item

    def flaky_add(**kwargs):
        calls.append(kwargs["idempotency_key"])
        if len(calls) == 1:
            raise ExternalProviderError("timeout")
        return original(**kwargs)

    monkeypatch.setattr(setup.provider, "add_subscription_item", flaky_add)

    change = setup.service.toggle_module("org-1", "white_label", True)

    assert change.results[0].charged
    assert len(calls) == 2
    assert calls[0] == calls[1]
    assert setup.sleeps == [0.5]
    assert setup.line_keys() == ["module:white_label"]


def test_emptied_bundle_is_deactivated_everywhere(setup):
    setup.service.activate_bundle("org-1", "essential")
    setup.catalog.set_bundle_modules("essential", ())

    deactivated = setup.service.handle_bundle_modules_changed("essential")

    assert deactivated == 1
    assert setup.bundles()["essential"].is_active is False
    assert setup.line_keys() == []
    assert setup.service.handle_bundle_modules_changed("essential") == 0


def test_bundle_with_modules_left_is_untouched(setup):
    setup.service.activate_bundle("org-1", "essential")
    setup.catalog.set_bundle_modules("essential", ("maintenance",))

    assert setup.service.handle_bundle_modules_changed("essential") == 0
    assert setup.bundles()["essential"].is_active is True


def test_module_availability_for_instance(setup):
    assert setup.service.is_module_available_for_instance("white_label", "org-1") is False

    setup.service.toggle_module("org-1", "white_label", True)
    setup.service.activate_bundle("org-1", "essential")

    assert setup.service.is_module_available_for_instance("white_label", "org-1") is True
    assert setup.service.is_module_available_for_instance("maintenance", "org-1") is True
    assert setup.service.is_module_available_for_instance("fundraising", "org-1") is False
    assert setup.service.is_module_available_for_instance("beta_reports", "org-1") is False
    assert setup.service.is_module_available_for_instance("teleport", "org-1") is False


def test_reenabling_module_keeps_original_enabled_date(setup):
    setup.service.toggle_module("org-1", "white_label", True)
    later = NOW + timedelta(days=30)
    setup.service.clock = lambda: later

    change = setup.service.toggle_module("org-1", "white_label", True)

    assert change.record.enabled_date == NOW
