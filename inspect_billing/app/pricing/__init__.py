"""Pricing calculator and currency conversion."""

from .currency import (
    BASE_CURRENCY,
    FALLBACK_RATES,
    CurrencyConverter,
    ExchangeRateCache,
    ExchangeRateSource,
    HttpExchangeRateSource,
)
from .models import ModuleCharge, PackOption, PricingQuote, SmartPackLine, UpgradeRecommendation
from .service import PricingService, detect_tier, select_smart_packs

__all__ = [
    "BASE_CURRENCY",
    "CurrencyConverter",
    "ExchangeRateCache",
    "ExchangeRateSource",
    "FALLBACK_RATES",
    "HttpExchangeRateSource",
    "ModuleCharge",
    "PackOption",
    "PricingQuote",
    "PricingService",
    "SmartPackLine",
    "UpgradeRecommendation",
    "detect_tier",
    "select_smart_packs",
]
