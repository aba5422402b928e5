"""Exchange-rate cache and currency conversion in integer minor units."""
from __future__ import annotations

import json
import logging
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Callable, Dict, Mapping, Optional, Protocol
from urllib import error as urllib_error
from urllib import request as urllib_request

from ..exceptions import ExternalProviderError


logger = logging.getLogger(__name__)

BASE_CURRENCY = "GBP"

FALLBACK_RATES: Mapping[str, Decimal] = {
    "GBP": Decimal("1.0"),
    "USD": Decimal("1.27"),
    "EUR": Decimal("1.17"),
    "AED": Decimal("4.67"),
}


class ExchangeRateSource(Protocol):
    """Remote source of exchange rates relative to a base currency."""

    def fetch_rates(self) -> Dict[str, Decimal]:
        ...


class HttpExchangeRateSource:
    """Fetches ``{"rates": {...}}`` JSON documents such as exchangerate-api.com."""

    def __init__(self, url: str, *, timeout: float = 5.0) -> None:
        self._url = url
        self._timeout = timeout

    def fetch_rates(self) -> Dict[str, Decimal]:
        http_request = urllib_request.Request(self._url, headers={"Accept": "application/json"})
        try:
            with urllib_request.urlopen(http_request, timeout=self._timeout) as response:
                body = response.read()
            payload = json.loads(body.decode("utf-8"))
        except (urllib_error.URLError, urllib_error.HTTPError, json.JSONDecodeError, UnicodeDecodeError, OSError) as exc:
            raise ExternalProviderError(f"Exchange rate lookup failed: {exc}") from exc

        raw_rates = payload.get("rates") if isinstance(payload, dict) else None
        if not isinstance(raw_rates, dict) or not raw_rates:
            raise ExternalProviderError("Exchange rate response did not include rates")
        rates: Dict[str, Decimal] = {}
        for code, value in raw_rates.items():
            try:
                rate = Decimal(str(value))
            except InvalidOperation:
                continue
            if rate > 0:
                rates[str(code).upper()] = rate
        return rates


@dataclass
class _RatesEntry:
    rates: Dict[str, Decimal]
    fetched_at: datetime
    expires_at: datetime

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at


class ExchangeRateCache:
    """TTL cache in front of an :class:`ExchangeRateSource`.

    A failed refresh serves the previous rates even when stale, and falls back
    to :data:`FALLBACK_RATES` when nothing was ever fetched.
    """

    def __init__(
        self,
        source: ExchangeRateSource,
        *,
        ttl_seconds: int = 3600,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self._source = source
        self._ttl = timedelta(seconds=ttl_seconds)
        self._clock = clock
        self._entry: Optional[_RatesEntry] = None
        self._lock = threading.Lock()

    def _now(self) -> datetime:
        return self._clock() if self._clock else datetime.now(timezone.utc)

    @property
    def fetched_at(self) -> Optional[datetime]:
        entry = self._entry
        return entry.fetched_at if entry else None

    def get_rates(self) -> Mapping[str, Decimal]:
        with self._lock:
            entry = self._entry
            if entry is not None and not entry.is_expired(self._now()):
                return entry.rates
            return self._refresh_locked()

    def refresh(self) -> Mapping[str, Decimal]:
        """Fetch fresh rates regardless of the TTL."""

        with self._lock:
            return self._refresh_locked()

    def invalidate(self) -> None:
        with self._lock:
            self._entry = None

    def _refresh_locked(self) -> Mapping[str, Decimal]:
        try:
            rates = self._source.fetch_rates()
        except ExternalProviderError as exc:
            if self._entry is not None:
                logger.warning("Using stale exchange rates after refresh failure: %s", exc)
                return self._entry.rates
            logger.warning("Using fallback exchange rates after refresh failure: %s", exc)
            return FALLBACK_RATES

        now = self._now()
        rates.setdefault(BASE_CURRENCY, Decimal("1.0"))
        self._entry = _RatesEntry(rates=rates, fetched_at=now, expires_at=now + self._ttl)
        return rates


def _round_minor_units(value: Decimal) -> int:
    return int(value.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


class CurrencyConverter:
    """Converts integer minor-unit amounts, always routing through the base currency."""

    def __init__(self, rates: ExchangeRateCache, *, base_currency: str = BASE_CURRENCY) -> None:
        self._rates = rates
        self.base_currency = base_currency.upper()

    def _rate_for(self, currency: str) -> Optional[Decimal]:
        code = currency.upper()
        if code == self.base_currency:
            return Decimal("1.0")
        rate = self._rates.get_rates().get(code)
        if not rate:
            logger.warning("No exchange rate found for %s, using %s", code, self.base_currency)
            return None
        return rate

    def convert_from_base(self, amount: int, target_currency: str) -> int:
        rate = self._rate_for(target_currency)
        if rate is None:
            return amount
        return _round_minor_units(Decimal(amount) * rate)

    def convert_to_base(self, amount: int, source_currency: str) -> int:
        rate = self._rate_for(source_currency)
        if rate is None:
            return amount
        return _round_minor_units(Decimal(amount) / rate)

    def convert(self, amount: int, source_currency: str, target_currency: str) -> int:
        if source_currency.upper() == target_currency.upper():
            return amount
        return self.convert_from_base(self.convert_to_base(amount, source_currency), target_currency)

    def get_rate(self, source_currency: str, target_currency: str) -> Decimal:
        if source_currency.upper() == target_currency.upper():
            return Decimal("1.0")
        source_rate = self._rate_for(source_currency)
        target_rate = self._rate_for(target_currency)
        if source_rate is None or target_rate is None:
            return Decimal("1.0")
        return target_rate / source_rate


__all__ = [
    "BASE_CURRENCY",
    "CurrencyConverter",
    "ExchangeRateCache",
    "ExchangeRateSource",
    "FALLBACK_RATES",
    "HttpExchangeRateSource",
]
