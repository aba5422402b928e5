"""Default marketplace catalog used by the sandbox backend and tests."""
from __future__ import annotations

from typing import Dict, Tuple

from .models import (
    AddonPack,
    AddonPackPrice,
    BundlePrice,
    MarketplaceModule,
    ModuleBundle,
    ModulePrice,
    SubscriptionTier,
    TierPrice,
)


DEFAULT_TIERS: Tuple[SubscriptionTier, ...] = (
    SubscriptionTier("starter", "starter", "Starter", 1, 10, 4900, 49000),
    SubscriptionTier("growth", "growth", "Growth", 2, 30, 12900, 129000),
    SubscriptionTier("professional", "professional", "Professional", 3, 75, 29900, 299000),
    SubscriptionTier("enterprise", "enterprise", "Enterprise", 4, 200, 69900, 699000),
    SubscriptionTier(
        "enterprise_plus",
        "enterprise_plus",
        "Enterprise Plus",
        5,
        500,
        0,
        0,
        requires_custom_pricing=True,
    ),
)

_TIER_PRICES: Dict[str, Dict[str, Tuple[int, int]]] = {
    "starter": {"GBP": (4900, 49000), "USD": (6125, 61250), "AED": (22540, 225400)},
    "growth": {"GBP": (12900, 129000), "USD": (16125, 161250), "AED": (59340, 593400)},
    "professional": {"GBP": (29900, 299000), "USD": (37375, 373750), "AED": (137540, 1375400)},
    "enterprise": {"GBP": (69900, 699000), "USD": (87375, 873750), "AED": (321540, 3215400)},
    "enterprise_plus": {"GBP": (0, 0), "USD": (0, 0), "AED": (0, 0)},
}

DEFAULT_TIER_PRICES: Tuple[TierPrice, ...] = tuple(
    TierPrice(tier_id, currency, monthly, annual)
    for tier_id, prices in _TIER_PRICES.items()
    for currency, (monthly, annual) in prices.items()
)

DEFAULT_ADDON_PACKS: Tuple[AddonPack, ...] = (
    AddonPack("pack_20", "20 Pack", 20, 1),
    AddonPack("pack_50", "50 Pack", 50, 2),
    AddonPack("pack_100", "100 Pack", 100, 3),
)

# Flat per-inspection price for every tier, in minor units.
_PACK_PRICE_PER_INSPECTION: Dict[str, int] = {"GBP": 550, "USD": 690, "AED": 2540}

DEFAULT_ADDON_PACK_PRICES: Tuple[AddonPackPrice, ...] = tuple(
    AddonPackPrice(
        pack_id=pack.id,
        tier_id=tier.id,
        currency=currency,
        price_per_inspection=per_inspection,
        total_pack_price=per_inspection * pack.inspection_quantity,
    )
    for pack in DEFAULT_ADDON_PACKS
    for tier in DEFAULT_TIERS
    for currency, per_inspection in _PACK_PRICE_PER_INSPECTION.items()
)

DEFAULT_MODULES: Tuple[MarketplaceModule, ...] = (
    MarketplaceModule("white_label", "white_label", "White Labelling"),
    MarketplaceModule("tenant_portal", "tenant_portal", "Tenant Portal"),
    MarketplaceModule("maintenance", "maintenance", "Maintenance & Work Orders"),
    MarketplaceModule("ai_preventative", "ai_preventative", "AI Preventative Maintenance"),
    MarketplaceModule("dispute_resolution", "dispute_resolution", "Dispute Resolution Portal"),
    MarketplaceModule("fundraising", "fundraising", "Fundraising"),
)

DEFAULT_MODULE_PRICES: Tuple[ModulePrice, ...] = tuple(
    ModulePrice(module.id, currency, monthly, annual)
    for module in DEFAULT_MODULES
    for currency, (monthly, annual) in {
        "GBP": (15000, 150000),
        "USD": (19000, 190000),
        "AED": (70000, 700000),
    }.items()
)

DEFAULT_BUNDLES: Tuple[ModuleBundle, ...] = (
    ModuleBundle("essential", "Essential Bundle", ("tenant_portal", "maintenance"), discount_percentage=12.0),
    ModuleBundle(
        "premium",
        "Premium Bundle",
        tuple(module.id for module in DEFAULT_MODULES),
        discount_percentage=20.0,
    ),
)

DEFAULT_BUNDLE_PRICES: Tuple[BundlePrice, ...] = (
    BundlePrice("essential", "GBP", 27900, 279000),
    BundlePrice("premium", "GBP", 45000, 432000),
)
