"""Tests for tier detection, smart pack selection and price quotes."""
from __future__ import annotations

from decimal import Decimal
from typing import Dict

import pytest

from inspect_billing.app.catalog import BillingCycle, InMemoryCatalog, SubscriptionTier
from inspect_billing.app.catalog.defaults import DEFAULT_TIERS
from inspect_billing.app.pricing import (
    CurrencyConverter,
    ExchangeRateCache,
    PackOption,
    PricingService,
    detect_tier,
    select_smart_packs,
)
from inspect_billing.app.subscriptions import InstanceSubscription


class StaticRates:
    def __init__(self, rates: Dict[str, str]) -> None:
        self.rates = rates
        self.calls = 0

    def fetch_rates(self) -> Dict[str, Decimal]:
        self.calls += 1
        return {code: Decimal(value) for code, value in self.rates.items()}


@pytest.fixture()
def pricing() -> PricingService:
    converter = CurrencyConverter(ExchangeRateCache(StaticRates({"USD": "1.27", "EUR": "1.17", "AED": "4.67"})))
    return PricingService(catalog=InMemoryCatalog(), converter=converter)


@pytest.mark.parametrize(
    "count, expected",
    [
        (0, "starter"),
        (9, "starter"),
        (10, "starter"),
        (29, "starter"),
        (30, "growth"),
        (74, "growth"),
        (75, "professional"),
        (200, "enterprise"),
        (499, "enterprise"),
        (500, "enterprise_plus"),
        (501, "enterprise_plus"),
    ],
)
def test_detect_tier_uses_half_open_ranges(count, expected):
    assert detect_tier(count, DEFAULT_TIERS).id == expected


def test_detect_tier_ignores_inactive_tiers():
    tiers = [
        SubscriptionTier("a", "a", "A", 1, 10, 100, 1000),
        SubscriptionTier("b", "b", "B", 2, 50, 200, 2000, is_active=False),
        SubscriptionTier("c", "c", "C", 3, 100, 300, 3000),
    ]

    assert detect_tier(60, tiers).id == "a"
    assert detect_tier(100, tiers).id == "c"


def test_detect_tier_without_tiers_returns_none():
    assert detect_tier(40, []) is None


def test_smart_packs_prefer_single_larger_pack(pricing):
    lines = pricing.calculate_smart_packs(45, "starter", "GBP")

    assert [(line.pack_id, line.count, line.quantity, line.price) for line in lines] == [("pack_50", 1, 50, 27500)]


def test_smart_packs_consolidate_repeated_packs(pricing):
    lines = pricing.calculate_smart_packs(60, "starter", "GBP")

    assert [(line.pack_id, line.count, line.quantity, line.price) for line in lines] == [("pack_20", 3, 60, 33000)]
    assert lines[0].price_per_inspection == 550


def test_smart_packs_for_zero_extra_is_empty(pricing):
    assert pricing.calculate_smart_packs(0, "starter", "GBP") == []


def test_select_smart_packs_prefers_exact_cover():
    options = [
        PackOption(pack_id="small", name="Small", quantity=20, price=10000),
        PackOption(pack_id="large", name="Large", quantity=50, price=15000),
    ]

    lines = select_smart_packs(40, options)

    assert [(line.pack_id, line.count) for line in lines] == [("small", 2)]


def test_select_smart_packs_breaks_overshoot_price_ties_on_smaller_total():
    options = [
        PackOption(pack_id="ten", name="Ten", quantity=10, price=1000),
        PackOption(pack_id="twenty", name="Twenty", quantity=20, price=1000),
    ]

    lines = select_smart_packs(5, options)

    assert [(line.pack_id, line.quantity) for line in lines] == [("ten", 10)]


def test_select_smart_packs_prefers_cheaper_overshoot_to_smaller_one():
    options = [
        PackOption(pack_id="p20", name="20 Pack", quantity=20, price=1000),
        PackOption(pack_id="p50", name="50 Pack", quantity=50, price=5000),
        PackOption(pack_id="p100", name="100 Pack", quantity=100, price=9000),
    ]

    lines = select_smart_packs(45, options)

    assert [(line.pack_id, line.count, line.quantity, line.price) for line in lines] == [("p20", 3, 60, 3000)]


def test_select_smart_packs_ignores_unpriced_options():
    options = [
        PackOption(pack_id="free", name="Free", quantity=100, price=0),
        PackOption(pack_id="paid", name="Paid", quantity=20, price=5000),
    ]

    lines = select_smart_packs(15, options)

    assert [line.pack_id for line in lines] == ["paid"]


def test_pack_prices_fall_back_to_converted_base_price(pricing):
    lines = pricing.calculate_smart_packs(20, "starter", "EUR")

    assert lines[0].price == round(11000 * 1.17)


def test_tier_price_uses_currency_price_then_conversion(pricing):
    assert pricing.tier_price("starter", "USD") == 6125
    assert pricing.tier_price("starter", "EUR") == 5733
    assert pricing.tier_price("starter", "GBP", BillingCycle.ANNUAL) == 49000


def test_tier_price_prefers_instance_override_for_current_tier(pricing):
    subscription = InstanceSubscription(
        id="sub-1",
        organization_id="org-1",
        current_tier_id="growth",
        override_monthly_fee=9900,
    )

    assert pricing.tier_price("growth", "GBP", subscription=subscription) == 9900
    assert pricing.tier_price("growth", "GBP", BillingCycle.ANNUAL, subscription=subscription) == 129000
    assert pricing.tier_price("starter", "GBP", subscription=subscription) == 4900


def test_tier_price_for_unknown_tier_raises(pricing):
    with pytest.raises(LookupError):
        pricing.tier_price("platinum", "GBP")


def test_module_price_is_zero_when_bundle_covers_module(pricing):
    assert pricing.module_price("tenant_portal", "GBP") == 15000
    assert pricing.module_price("tenant_portal", "GBP", active_bundle_ids=["essential"]) == 0
    assert pricing.module_price("white_label", "GBP", active_bundle_ids=["essential"]) == 15000


def test_module_price_for_unknown_module_raises(pricing):
    with pytest.raises(LookupError):
        pricing.module_price("teleport", "GBP")


def test_quote_raises_count_to_minimum(pricing):
    quote = pricing.calculate_quote(4)

    assert quote.inspection_count == 10
    assert quote.tier_id == "starter"
    assert quote.extra_inspections == 0
    assert quote.packs == ()
    assert quote.total == 4900
    assert quote.upgrade_recommendation is None


def test_quote_adds_packs_modules_and_bundles(pricing):
    quote = pricing.calculate_quote(
        45,
        "gbp",
        enabled_module_ids={"tenant_portal", "white_label"},
        active_bundle_ids=["essential"],
    )

    assert quote.currency == "GBP"
    assert quote.tier_id == "growth"
    assert quote.extra_inspections == 15
    assert [(line.pack_id, line.count) for line in quote.packs] == [("pack_20", 1)]
    assert quote.addon_cost == 11000
    assert quote.module_cost == 15000
    assert quote.bundle_cost == 27900
    assert quote.total == 12900 + 11000 + 15000 + 27900

    charges = {charge.module_id: charge for charge in quote.modules}
    assert charges["tenant_portal"].covered_by_bundle is True
    assert charges["tenant_portal"].is_enabled is True
    assert charges["white_label"].covered_by_bundle is False
    assert charges["maintenance"].is_enabled is False


def test_quote_recommends_cheaper_next_tier(pricing):
    quote = pricing.calculate_quote(70)

    assert quote.tier_id == "growth"
    assert quote.addon_cost == 22000
    recommendation = quote.upgrade_recommendation
    assert recommendation is not None
    assert recommendation.tier_id == "professional"
    assert recommendation.savings == (12900 + 22000) - 29900
    assert "Professional" in recommendation.message


def test_quote_never_recommends_custom_priced_tier(pricing):
    quote = pricing.calculate_quote(499)

    assert quote.tier_id == "enterprise"
    assert quote.upgrade_recommendation is None
