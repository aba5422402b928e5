"""Tests for the exchange-rate cache and currency conversion."""
from __future__ import annotations

from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Dict

from inspect_billing.app.exceptions import ExternalProviderError
from inspect_billing.app.pricing import FALLBACK_RATES, CurrencyConverter, ExchangeRateCache


class FlakySource:
    def __init__(self, rates: Dict[str, str]) -> None:
        self.rates = rates
        self.fail = False
        self.calls = 0

    def fetch_rates(self) -> Dict[str, Decimal]:
        self.calls += 1
        if self.fail:
            raise ExternalProviderError("rates unavailable")
        return {code: Decimal(value) for code, value in self.rates.items()}


class FakeClock:
    def __init__(self) -> None:
        self.now = datetime(2026, 1, 1, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now


def test_cache_reuses_rates_within_ttl():
    source = FlakySource({"USD": "1.30"})
    clock = FakeClock()
    cache = ExchangeRateCache(source, ttl_seconds=60, clock=clock)

    cache.get_rates()
    clock.now += timedelta(seconds=30)
    rates = cache.get_rates()

    assert source.calls == 1
    assert rates["USD"] == Decimal("1.30")
    assert rates["GBP"] == Decimal("1.0")
    assert cache.fetched_at == datetime(2026, 1, 1, tzinfo=timezone.utc)


def test_cache_refreshes_after_ttl():
    source = FlakySource({"USD": "1.30"})
    clock = FakeClock()
    cache = ExchangeRateCache(source, ttl_seconds=60, clock=clock)

    cache.get_rates()
    source.rates = {"USD": "1.25"}
    clock.now += timedelta(seconds=61)

    assert cache.get_rates()["USD"] == Decimal("1.25")
    assert source.calls == 2


def test_cache_serves_stale_rates_when_refresh_fails():
    source = FlakySource({"USD": "1.30"})
    clock = FakeClock()
    cache = ExchangeRateCache(source, ttl_seconds=60, clock=clock)
    cache.get_rates()

    source.fail = True
    clock.now += timedelta(minutes=5)

    assert cache.get_rates()["USD"] == Decimal("1.30")


def test_cache_uses_fallback_rates_when_never_fetched():
    source = FlakySource({})
    source.fail = True
    cache = ExchangeRateCache(source)

    assert cache.get_rates() is FALLBACK_RATES


def test_converter_rounds_half_up_in_minor_units():
    converter = CurrencyConverter(ExchangeRateCache(FlakySource({"USD": "1.275"})))

    assert converter.convert_from_base(1000, "usd") == 1275
    assert converter.convert_from_base(2, "USD") == 3
    assert converter.convert_to_base(1275, "USD") == 1000


def test_converter_routes_cross_rates_through_base():
    converter = CurrencyConverter(ExchangeRateCache(FlakySource({"USD": "1.25", "AED": "4.60"})))

    assert converter.convert(1250, "USD", "AED") == 4600
    assert converter.get_rate("USD", "AED") == Decimal("4.60") / Decimal("1.25")
    assert converter.convert(999, "AED", "AED") == 999


def test_converter_leaves_amount_unchanged_for_unknown_currency():
    converter = CurrencyConverter(ExchangeRateCache(FlakySource({"USD": "1.25"})))

    assert converter.convert_from_base(1000, "JPY") == 1000
