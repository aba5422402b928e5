"""Tier detection, smart add-on pack selection and price quotes."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Collection, Dict, Iterable, List, Optional, Sequence

from ..catalog.models import BillingCycle, SubscriptionTier
from ..catalog.repository import CatalogRepository
from ..subscriptions.models import BillableItem, BillableKind, InstanceSubscription
from .currency import CurrencyConverter
from .models import ModuleCharge, PackOption, PricingQuote, SmartPackLine, UpgradeRecommendation


logger = logging.getLogger(__name__)


def detect_tier(
    inspection_count: int,
    tiers: Iterable[SubscriptionTier],
    *,
    minimum: int = 10,
) -> Optional[SubscriptionTier]:
    """Return the tier whose inspection range contains ``inspection_count``.

    Each active tier owns ``[included_inspections, next.included_inspections)``
    and the largest tier is open-ended. Counts below ``minimum`` are raised to
    it first, so small volumes always land on the entry tier.
    """

    ordered = sorted((tier for tier in tiers if tier.is_active), key=lambda tier: tier.included_inspections)
    if not ordered:
        return None

    count = max(inspection_count, minimum)
    for index, tier in enumerate(ordered):
        upper = ordered[index + 1].included_inspections if index + 1 < len(ordered) else None
        if count >= tier.included_inspections and (upper is None or count < upper):
            return tier
    return ordered[-1]


def select_smart_packs(extra_count: int, options: Sequence[PackOption]) -> List[SmartPackLine]:
    """Choose a combination of packs covering ``extra_count`` inspections.

    Unbounded knapsack over every total from zero to ``extra_count`` plus the
    largest pack. The cheapest exact cover wins; without one, the cheapest
    overshooting combination is used, ties going to the smaller total.
    """

    if extra_count <= 0:
        return []
    valid = sorted(
        (option for option in options if option.price > 0 and option.quantity > 0),
        key=lambda option: option.quantity,
    )
    if not valid:
        return []

    limit = extra_count + valid[-1].quantity
    costs: List[Optional[int]] = [None] * (limit + 1)
    choice: List[Optional[int]] = [None] * (limit + 1)
    costs[0] = 0
    for total in range(1, limit + 1):
        for index, option in enumerate(valid):
            if option.quantity > total:
                break
            previous = costs[total - option.quantity]
            if previous is None:
                continue
            candidate = previous + option.price
            if costs[total] is None or candidate < costs[total]:
                costs[total] = candidate
                choice[total] = index

    best_total: Optional[int] = extra_count if costs[extra_count] is not None else None
    if best_total is None:
        for total in range(extra_count + 1, limit + 1):
            if costs[total] is not None and (best_total is None or costs[total] < costs[best_total]):
                best_total = total

    picked: List[PackOption] = []
    if best_total is not None:
        total = best_total
        while total > 0:
            option = valid[choice[total]]
            picked.append(option)
            total -= option.quantity
    else:
        largest = valid[-1]
        needed = -(-extra_count // largest.quantity)
        logger.warning("No pack combination covers %s inspections, using %s x %s", extra_count, needed, largest.pack_id)
        picked = [largest] * needed

    return _consolidate(picked)


def _consolidate(picked: Sequence[PackOption]) -> List[SmartPackLine]:
    counts: Dict[str, int] = {}
    by_id: Dict[str, PackOption] = {}
    for option in picked:
        if option.pack_id not in counts:
            by_id[option.pack_id] = option
            counts[option.pack_id] = 0
        counts[option.pack_id] += 1
    return [
        SmartPackLine(
            pack_id=pack_id,
            name=by_id[pack_id].name,
            count=count,
            quantity=by_id[pack_id].quantity * count,
            price=by_id[pack_id].price * count,
        )
        for pack_id, count in counts.items()
    ]


@dataclass
class PricingService:
    """Prices tiers, packs, modules and bundles in any supported currency.

    Catalog prices missing in the requested currency are converted from the
    base-currency price.
    """

    catalog: CatalogRepository
    converter: CurrencyConverter
    minimum_inspections: int = 10

    @property
    def base_currency(self) -> str:
        return self.converter.base_currency

    def detect_tier(self, inspection_count: int) -> Optional[SubscriptionTier]:
        return detect_tier(inspection_count, self.catalog.list_tiers(), minimum=self.minimum_inspections)

    def pack_options(self, tier_id: str, currency: str) -> List[PackOption]:
        currency = currency.upper()
        options: List[PackOption] = []
        for pack in self.catalog.list_addon_packs():
            if not pack.is_active:
                continue
            price = self.catalog.get_addon_pack_price(pack.id, tier_id, currency)
            if price is not None:
                amount = price.total_pack_price
            else:
                base_price = self.catalog.get_addon_pack_price(pack.id, tier_id, self.base_currency)
                if base_price is None:
                    continue
                amount = self.converter.convert_from_base(base_price.total_pack_price, currency)
            options.append(
                PackOption(pack_id=pack.id, name=pack.name, quantity=pack.inspection_quantity, price=amount)
            )
        return options

    def calculate_smart_packs(self, extra_count: int, tier_id: str, currency: str) -> List[SmartPackLine]:
        if extra_count <= 0:
            return []
        return select_smart_packs(extra_count, self.pack_options(tier_id, currency))

    def tier_price(
        self,
        tier_id: str,
        currency: str,
        cycle: BillingCycle = BillingCycle.MONTHLY,
        *,
        subscription: Optional[InstanceSubscription] = None,
    ) -> int:
        """Tier price with instance override fees taking precedence."""

        if subscription is not None and subscription.current_tier_id == tier_id:
            override = (
                subscription.override_annual_fee
                if cycle == BillingCycle.ANNUAL
                else subscription.override_monthly_fee
            )
            if override:
                return override

        tier = self.catalog.get_tier(tier_id)
        if tier is None:
            raise LookupError("Tier not found")
        price = self.catalog.get_tier_price(tier_id, currency)
        if price is not None:
            return price.amount(cycle)
        base_price = self.catalog.get_tier_price(tier_id, self.base_currency)
        amount = base_price.amount(cycle) if base_price is not None else tier.base_price(cycle)
        return self.converter.convert_from_base(amount, currency)

    def covering_bundles(self, module_id: str, active_bundle_ids: Collection[str]) -> List[str]:
        covering: List[str] = []
        for bundle_id in active_bundle_ids:
            bundle = self.catalog.get_bundle(bundle_id)
            if bundle is not None and bundle.is_active and bundle.covers(module_id):
                covering.append(bundle_id)
        return covering

    def module_price(
        self,
        module_id: str,
        currency: str,
        cycle: BillingCycle = BillingCycle.MONTHLY,
        *,
        active_bundle_ids: Collection[str] = (),
    ) -> int:
        """Module price, or 0 when an active bundle already covers the module."""

        if self.catalog.get_module(module_id) is None:
            raise LookupError("Module not found")
        if self.covering_bundles(module_id, active_bundle_ids):
            return 0
        price = self.catalog.get_module_price(module_id, currency)
        if price is not None:
            return price.amount(cycle)
        base_price = self.catalog.get_module_price(module_id, self.base_currency)
        if base_price is None:
            return 0
        return self.converter.convert_from_base(base_price.amount(cycle), currency)

    def bundle_price(self, bundle_id: str, currency: str, cycle: BillingCycle = BillingCycle.MONTHLY) -> int:
        if self.catalog.get_bundle(bundle_id) is None:
            raise LookupError("Bundle not found")
        price = self.catalog.get_bundle_price(bundle_id, currency)
        if price is not None:
            return price.amount(cycle)
        base_price = self.catalog.get_bundle_price(bundle_id, self.base_currency)
        if base_price is None:
            return 0
        return self.converter.convert_from_base(base_price.amount(cycle), currency)

    def item_price(
        self,
        item: BillableItem,
        subscription: InstanceSubscription,
        *,
        active_bundle_ids: Collection[str] = (),
    ) -> int:
        """Recurring price of a billable item in the subscription's currency and cycle."""

        currency = subscription.registration_currency
        cycle = subscription.billing_cycle
        if item.kind == BillableKind.TIER:
            return self.tier_price(item.item_id, currency, cycle, subscription=subscription)
        if item.kind == BillableKind.MODULE:
            return self.module_price(item.item_id, currency, cycle, active_bundle_ids=active_bundle_ids)
        return self.bundle_price(item.item_id, currency, cycle)

    def calculate_quote(
        self,
        inspection_count: int,
        currency: str = "GBP",
        *,
        billing_cycle: BillingCycle = BillingCycle.MONTHLY,
        enabled_module_ids: Collection[str] = (),
        active_bundle_ids: Collection[str] = (),
        subscription: Optional[InstanceSubscription] = None,
    ) -> PricingQuote:
        currency = currency.upper()
        count = max(inspection_count, self.minimum_inspections)
        tier = self.detect_tier(count)
        if tier is None:
            raise LookupError("No subscription tiers are configured")

        tier_price = self.tier_price(tier.id, currency, billing_cycle, subscription=subscription)
        extra = max(0, count - tier.included_inspections)
        packs = self.calculate_smart_packs(extra, tier.id, currency)
        addon_cost = sum(line.price for line in packs)

        modules: List[ModuleCharge] = []
        module_cost = 0
        for module in self.catalog.list_modules():
            covered = bool(self.covering_bundles(module.id, active_bundle_ids))
            enabled = module.id in enabled_module_ids
            price = self.module_price(module.id, currency, billing_cycle)
            modules.append(
                ModuleCharge(
                    module_id=module.id,
                    name=module.name,
                    price=price,
                    is_enabled=enabled,
                    covered_by_bundle=covered,
                )
            )
            if enabled and not covered:
                module_cost += price
        bundle_cost = sum(self.bundle_price(bundle_id, currency, billing_cycle) for bundle_id in active_bundle_ids)

        recommendation = None
        if extra > 0:
            recommendation = self._upgrade_recommendation(
                tier,
                count,
                currency,
                billing_cycle,
                current_total=tier_price + addon_cost,
            )

        return PricingQuote(
            inspection_count=count,
            currency=currency,
            billing_cycle=billing_cycle,
            tier_id=tier.id,
            tier_name=tier.name,
            included_inspections=tier.included_inspections,
            tier_price=tier_price,
            extra_inspections=extra,
            packs=tuple(packs),
            addon_cost=addon_cost,
            modules=tuple(modules),
            module_cost=module_cost,
            bundle_cost=bundle_cost,
            upgrade_recommendation=recommendation,
        )

    def _upgrade_recommendation(
        self,
        tier: SubscriptionTier,
        inspection_count: int,
        currency: str,
        cycle: BillingCycle,
        *,
        current_total: int,
    ) -> Optional[UpgradeRecommendation]:
        ordered = sorted(
            (candidate for candidate in self.catalog.list_tiers() if candidate.is_active),
            key=lambda candidate: candidate.included_inspections,
        )
        higher = [candidate for candidate in ordered if candidate.included_inspections > tier.included_inspections]
        if not higher:
            return None
        next_tier = higher[0]
        if next_tier.requires_custom_pricing or next_tier.included_inspections < inspection_count:
            return None

        next_total = self.tier_price(next_tier.id, currency, cycle)
        if next_total >= current_total:
            return None
        savings = current_total - next_total
        return UpgradeRecommendation(
            tier_id=next_tier.id,
            tier_name=next_tier.name,
            included_inspections=next_tier.included_inspections,
            savings=savings,
            message=(
                f"Upgrade to {next_tier.name} ({next_tier.included_inspections} included) "
                f"and save {currency} {savings / 100:.2f}/{'year' if cycle == BillingCycle.ANNUAL else 'month'}"
            ),
        )


__all__ = ["PricingService", "detect_tier", "select_smart_packs"]
