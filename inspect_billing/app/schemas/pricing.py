"""API schemas for pricing endpoints."""
from __future__ import annotations

from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field

from ..catalog.models import BillingCycle, SubscriptionTier
from ..pricing import ModuleCharge, PricingQuote, SmartPackLine, UpgradeRecommendation


class TierResponse(BaseModel):
    tier_id: str = Field(alias="tierId")
    code: str
    name: str
    included_inspections: int = Field(alias="includedInspections")
    requires_custom_pricing: bool = Field(alias="requiresCustomPricing", default=False)

    model_config = ConfigDict(populate_by_name=True)

    @classmethod
    def from_tier(cls, tier: SubscriptionTier) -> "TierResponse":
        return cls(
            tier_id=tier.id,
            code=tier.code,
            name=tier.name,
            included_inspections=tier.included_inspections,
            requires_custom_pricing=tier.requires_custom_pricing,
        )


class SmartPackResponse(BaseModel):
    pack_id: str = Field(alias="packId")
    name: str
    count: int
    quantity: int
    price: int

    model_config = ConfigDict(populate_by_name=True)

    @classmethod
    def from_line(cls, line: SmartPackLine) -> "SmartPackResponse":
        return cls(pack_id=line.pack_id, name=line.name, count=line.count, quantity=line.quantity, price=line.price)


class SmartPackListResponse(BaseModel):
    extra_inspections: int = Field(alias="extraInspections")
    currency: str
    packs: List[SmartPackResponse] = Field(default_factory=list)
    total_price: int = Field(alias="totalPrice")

    model_config = ConfigDict(populate_by_name=True)


class ModuleChargeResponse(BaseModel):
    module_id: str = Field(alias="moduleId")
    name: str
    price: int
    is_enabled: bool = Field(alias="isEnabled")
    covered_by_bundle: bool = Field(alias="coveredByBundle")

    model_config = ConfigDict(populate_by_name=True)

    @classmethod
    def from_charge(cls, charge: ModuleCharge) -> "ModuleChargeResponse":
        return cls(
            module_id=charge.module_id,
            name=charge.name,
            price=charge.price,
            is_enabled=charge.is_enabled,
            covered_by_bundle=charge.covered_by_bundle,
        )


class UpgradeRecommendationResponse(BaseModel):
    tier_id: str = Field(alias="tierId")
    tier_name: str = Field(alias="tierName")
    savings: int
    message: str

    model_config = ConfigDict(populate_by_name=True)

    @classmethod
    def from_recommendation(cls, recommendation: UpgradeRecommendation) -> "UpgradeRecommendationResponse":
        return cls(
            tier_id=recommendation.tier_id,
            tier_name=recommendation.tier_name,
            savings=recommendation.savings,
            message=recommendation.message,
        )


class PricingQuoteResponse(BaseModel):
    inspection_count: int = Field(alias="inspectionCount")
    currency: str
    billing_cycle: BillingCycle = Field(alias="billingCycle")
    tier_id: str = Field(alias="tierId")
    tier_name: str = Field(alias="tierName")
    included_inspections: int = Field(alias="includedInspections")
    tier_price: int = Field(alias="tierPrice")
    extra_inspections: int = Field(alias="extraInspections")
    packs: List[SmartPackResponse] = Field(default_factory=list)
    addon_cost: int = Field(alias="addonCost")
    modules: List[ModuleChargeResponse] = Field(default_factory=list)
    module_cost: int = Field(alias="moduleCost")
    bundle_cost: int = Field(alias="bundleCost")
    total: int
    upgrade_recommendation: Optional[UpgradeRecommendationResponse] = Field(
        alias="upgradeRecommendation", default=None
    )

    model_config = ConfigDict(populate_by_name=True)

    @classmethod
    def from_quote(cls, quote: PricingQuote) -> "PricingQuoteResponse":
        recommendation = quote.upgrade_recommendation
        return cls(
            inspection_count=quote.inspection_count,
            currency=quote.currency,
            billing_cycle=quote.billing_cycle,
            tier_id=quote.tier_id,
            tier_name=quote.tier_name,
            included_inspections=quote.included_inspections,
            tier_price=quote.tier_price,
            extra_inspections=quote.extra_inspections,
            packs=[SmartPackResponse.from_line(line) for line in quote.packs],
            addon_cost=quote.addon_cost,
            modules=[ModuleChargeResponse.from_charge(charge) for charge in quote.modules],
            module_cost=quote.module_cost,
            bundle_cost=quote.bundle_cost,
            total=quote.total,
            upgrade_recommendation=(
                UpgradeRecommendationResponse.from_recommendation(recommendation) if recommendation else None
            ),
        )


class ModuleAvailabilityResponse(BaseModel):
    module_id: str = Field(alias="moduleId")
    organization_id: str = Field(alias="organizationId")
    available: bool

    model_config = ConfigDict(populate_by_name=True)


__all__ = [
    "ModuleAvailabilityResponse",
    "ModuleChargeResponse",
    "PricingQuoteResponse",
    "SmartPackListResponse",
    "SmartPackResponse",
    "TierResponse",
    "UpgradeRecommendationResponse",
]
