"""Marketplace catalog: tiers, add-on packs, modules and bundles."""

from .models import (
    AddonPack,
    AddonPackPrice,
    BillingCycle,
    BundlePrice,
    MarketplaceModule,
    ModuleBundle,
    ModulePrice,
    SubscriptionTier,
    TierPrice,
)
from .repository import CatalogRepository, InMemoryCatalog, PostgresCatalogRepository

__all__ = [
    "AddonPack",
    "AddonPackPrice",
    "BillingCycle",
    "BundlePrice",
    "CatalogRepository",
    "InMemoryCatalog",
    "MarketplaceModule",
    "ModuleBundle",
    "ModulePrice",
    "PostgresCatalogRepository",
    "SubscriptionTier",
    "TierPrice",
]
