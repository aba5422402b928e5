"""Value objects returned by the pricing calculator."""
from __future__ import annotations

from typing import Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field

from ..catalog.models import BillingCycle


class PackOption(BaseModel):
    """One purchasable add-on pack with its price in the quote currency."""

    pack_id: str
    name: str
    quantity: int
    price: int

    model_config = ConfigDict(frozen=True)


class SmartPackLine(BaseModel):
    """A consolidated recommendation: ``count`` copies of one pack."""

    pack_id: str
    name: str
    count: int = Field(ge=1)
    quantity: int
    price: int

    model_config = ConfigDict(frozen=True)

    @property
    def price_per_inspection(self) -> int:
        return self.price // self.quantity if self.quantity else 0


class ModuleCharge(BaseModel):
    module_id: str
    name: str
    price: int
    is_enabled: bool = False
    covered_by_bundle: bool = False

    model_config = ConfigDict(frozen=True)


class UpgradeRecommendation(BaseModel):
    tier_id: str
    tier_name: str
    included_inspections: int
    savings: int
    message: str

    model_config = ConfigDict(frozen=True)


class PricingQuote(BaseModel):
    """Full monthly/annual cost breakdown for an inspection volume."""

    inspection_count: int
    currency: str
    billing_cycle: BillingCycle
    tier_id: str
    tier_name: str
    included_inspections: int
    tier_price: int
    extra_inspections: int = 0
    packs: Tuple[SmartPackLine, ...] = ()
    addon_cost: int = 0
    modules: Tuple[ModuleCharge, ...] = ()
    module_cost: int = 0
    bundle_cost: int = 0
    upgrade_recommendation: Optional[UpgradeRecommendation] = None

    model_config = ConfigDict(frozen=True)

    @property
    def total(self) -> int:
        return self.tier_price + self.addon_cost + self.module_cost + self.bundle_cost


__all__ = [
    "ModuleCharge",
    "PackOption",
    "PricingQuote",
    "SmartPackLine",
    "UpgradeRecommendation",
]
