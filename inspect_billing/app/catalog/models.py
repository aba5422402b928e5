"""Read-only catalog definitions for tiers, add-on packs, modules and bundles."""
from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Optional, Tuple


class BillingCycle(str, Enum):
    """Billing cadence of an instance subscription."""

    MONTHLY = "monthly"
    ANNUAL = "annual"


@dataclass(frozen=True)
class SubscriptionTier:
    """Tier of the core plan and the inspections it includes per cycle."""

    id: str
    code: str
    name: str
    tier_order: int
    included_inspections: int
    base_price_monthly: int
    base_price_annual: int
    is_active: bool = True
    requires_custom_pricing: bool = False

    def base_price(self, cycle: BillingCycle) -> int:
        return self.base_price_annual if cycle == BillingCycle.ANNUAL else self.base_price_monthly


@dataclass(frozen=True)
class TierPrice:
    tier_id: str
    currency: str
    price_monthly: int
    price_annual: int

    def amount(self, cycle: BillingCycle) -> int:
        return self.price_annual if cycle == BillingCycle.ANNUAL else self.price_monthly


@dataclass(frozen=True)
class AddonPack:
    """A purchasable pack of extra inspection credits."""

    id: str
    name: str
    inspection_quantity: int
    pack_order: int
    is_active: bool = True


@dataclass(frozen=True)
class AddonPackPrice:
    pack_id: str
    tier_id: str
    currency: str
    price_per_inspection: int
    total_pack_price: int


@dataclass(frozen=True)
class MarketplaceModule:
    """Optional feature sold per instance."""

    id: str
    module_key: str
    name: str
    is_available_globally: bool = True
    default_enabled: bool = False


@dataclass(frozen=True)
class ModulePrice:
    module_id: str
    currency: str
    price_monthly: int
    price_annual: int

    def amount(self, cycle: BillingCycle) -> int:
        return self.price_annual if cycle == BillingCycle.ANNUAL else self.price_monthly


@dataclass(frozen=True)
class ModuleBundle:
    """Group of modules sold together at a discount."""

    id: str
    name: str
    module_ids: Tuple[str, ...]
    is_active: bool = True
    discount_percentage: Optional[float] = None

    def covers(self, module_id: str) -> bool:
        return module_id in self.module_ids


@dataclass(frozen=True)
class BundlePrice:
    bundle_id: str
    currency: str
    price_monthly: int
    price_annual: int

    def amount(self, cycle: BillingCycle) -> int:
        return self.price_annual if cycle == BillingCycle.ANNUAL else self.price_monthly


__all__ = [
    "AddonPack",
    "AddonPackPrice",
    "BillingCycle",
    "BundlePrice",
    "MarketplaceModule",
    "ModuleBundle",
    "ModulePrice",
    "SubscriptionTier",
    "TierPrice",
]
