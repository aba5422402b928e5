"""Billing engine configuration helpers."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional
import os


DEFAULT_EXCHANGE_RATE_URL = "https://api.exchangerate-api.com/v4/latest/GBP"


@dataclass(frozen=True)
class BillingConfig:
    """Configuration for the credit ledger and reconciliation engine."""

    storage_backend: str
    grace_period_days: int
    retry_max_attempts: int
    retry_backoff_seconds: float
    retry_max_backoff_seconds: float
    base_currency: str
    exchange_rate_url: str
    exchange_rate_ttl_seconds: int
    exchange_rate_timeout_seconds: float
    minimum_inspections: int
    prorate_on_disable: bool
    stripe_secret_key: Optional[str]
    stripe_webhook_secret: Optional[str]
    stripe_addon_product_id: Optional[str]
    sandbox_organization_id: Optional[str] = None

    @property
    def uses_stripe(self) -> bool:
        return bool(self.stripe_secret_key)


def _to_bool(value: Optional[str], *, default: bool) -> bool:
    if value is None:
        return default
    lowered = value.strip().lower()
    if lowered in {"1", "true", "yes", "on"}:
        return True
    if lowered in {"0", "false", "no", "off"}:
        return False
    return default


def _to_int(value: Optional[str], *, default: int) -> int:
    if value is None or value == "":
        return default
    try:
        return int(value)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"Expected integer value, got {value!r}") from exc


def _to_float(value: Optional[str], *, default: float) -> float:
    if value is None or value == "":
        return default
    try:
        return float(value)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"Expected float value, got {value!r}") from exc


def load_billing_config(env: Optional[Mapping[str, str]] = None) -> BillingConfig:
    """Load :class:`BillingConfig` from environment variables."""

    env_mapping = os.environ if env is None else env

    storage_backend = (env_mapping.get("BILLING_STORAGE_BACKEND") or "postgres").strip().lower()
    if storage_backend not in {"postgres", "memory"}:
        raise ValueError(f"Unsupported BILLING_STORAGE_BACKEND {storage_backend!r}")

    grace_period_days = max(0, _to_int(env_mapping.get("GRACE_PERIOD_DAYS"), default=3))
    retry_max_attempts = max(1, _to_int(env_mapping.get("BILLING_RETRY_MAX_ATTEMPTS"), default=3))
    retry_backoff_seconds = max(0.0, _to_float(env_mapping.get("BILLING_RETRY_BACKOFF"), default=0.5))
    retry_max_backoff_seconds = max(
        retry_backoff_seconds,
        _to_float(env_mapping.get("BILLING_RETRY_MAX_BACKOFF"), default=8.0),
    )

    base_currency = (env_mapping.get("BASE_CURRENCY") or "GBP").strip().upper()
    exchange_rate_url = env_mapping.get("EXCHANGE_RATE_URL") or DEFAULT_EXCHANGE_RATE_URL
    exchange_rate_ttl_seconds = max(0, _to_int(env_mapping.get("EXCHANGE_RATE_TTL_SECONDS"), default=3600))
    exchange_rate_timeout_seconds = max(0.1, _to_float(env_mapping.get("EXCHANGE_RATE_TIMEOUT"), default=5.0))

    return BillingConfig(
        storage_backend=storage_backend,
        grace_period_days=grace_period_days,
        retry_max_attempts=retry_max_attempts,
        retry_backoff_seconds=retry_backoff_seconds,
        retry_max_backoff_seconds=retry_max_backoff_seconds,
        base_currency=base_currency,
        exchange_rate_url=exchange_rate_url,
        exchange_rate_ttl_seconds=exchange_rate_ttl_seconds,
        exchange_rate_timeout_seconds=exchange_rate_timeout_seconds,
        minimum_inspections=max(0, _to_int(env_mapping.get("MINIMUM_INSPECTIONS"), default=10)),
        prorate_on_disable=_to_bool(env_mapping.get("PRORATE_ON_DISABLE"), default=False),
        stripe_secret_key=env_mapping.get("STRIPE_SECRET_KEY") or None,
        stripe_webhook_secret=env_mapping.get("STRIPE_WEBHOOK_SECRET") or None,
        stripe_addon_product_id=env_mapping.get("STRIPE_ADDON_PRODUCT_ID") or None,
        sandbox_organization_id=(env_mapping.get("BILLING_SANDBOX_ORGANIZATION_ID") or "org-sandbox").strip() or None,
    )


def load_database_config(env: Optional[Mapping[str, str]] = None) -> Dict[str, Any]:
    """Return psycopg2 connection keyword arguments from the environment."""

    env_mapping = os.environ if env is None else env
    return dict(
        host=env_mapping.get("DB_HOST", "localhost"),
        port=_to_int(env_mapping.get("DB_PORT"), default=5432),
        dbname=env_mapping.get("DB_NAME", "inspections"),
        user=env_mapping.get("DB_USER", "postgres"),
        password=env_mapping.get("DB_PASSWORD", "postgres"),
        connect_timeout=_to_int(env_mapping.get("DB_CONNECT_TIMEOUT"), default=5),
    )


__all__ = ["BillingConfig", "load_billing_config", "load_database_config"]
