"""Application wiring for the billing engine."""
from __future__ import annotations

import logging
import threading
from functools import lru_cache
from typing import List, Sequence, Tuple
from uuid import uuid4

from ...config import BillingConfig, load_billing_config
from ..billing import (
    BillingAuditEvent,
    BillingEventLogger,
    BillingNotifier,
    PaymentFailure,
    WebhookEventProcessor,
)
from ..catalog import CatalogRepository, InMemoryCatalog, PostgresCatalogRepository
from ..catalog.models import BillingCycle
from ..entitlements import BillingProvider, EntitlementReconciler, EntitlementService
from ..ledger import CreditLedgerService
from ..pricing import CurrencyConverter, ExchangeRateCache, HttpExchangeRateSource, PricingService
from ..retry import RetryPolicy
from ..storage import InMemoryBillingStore, PostgresTransactionManager, TransactionManager
from ..subscriptions import BillableItem, InstanceSubscription, LineItem, SubscriptionQueryService
from .stripe_provider import StripeBillingProvider, StripeWebhookVerifier


logger = logging.getLogger("billing")


class LoggingBillingNotifier(BillingNotifier):
    """Notifier that records billing notifications to the application logger."""

    def notify_payment_failure(self, failure: PaymentFailure) -> None:
        logger.warning(
            "Payment failure for organization %s subscription=%s invoice=%s amount=%s %s grace_until=%s",
            failure.organization_id,
            failure.subscription_id,
            failure.invoice_id,
            failure.amount_due,
            failure.currency,
            failure.grace_period_expires_at,
        )

    def notify_grace_period_expired(self, subscription: InstanceSubscription) -> None:
        logger.warning(
            "Grace period expired for subscription %s organization=%s",
            subscription.id,
            subscription.organization_id,
        )


class LoggingBillingEventLogger(BillingEventLogger):
    """Simple event logger forwarding billing audit events to logging."""

    def log(self, event: BillingAuditEvent) -> None:
        logger.info(
            "Billing event %s organization=%s subscription=%s metadata=%s",
            event.event_type.value,
            event.organization_id,
            event.subscription_id,
            event.metadata,
        )


class LocalSandboxBillingProvider(BillingProvider):
    """In-process provider for local development and tests.

    Calls are recorded, and repeated idempotency keys return the line item
    created by the first call.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._by_key: dict = {}
        self.added: List[Tuple[str, LineItem]] = []
        self.removed: List[Tuple[str, str, bool]] = []
        self.pending: dict = {}

    def add_subscription_item(
        self,
        *,
        provider_subscription_id: str,
        item: BillableItem,
        unit_amount: int,
        currency: str,
        billing_cycle: BillingCycle,
        idempotency_key: str,
    ) -> LineItem:
        with self._lock:
            existing = self._by_key.get(idempotency_key)
            if existing is not None:
                return existing
            line_item = LineItem(
                provider_item_id=f"si_{uuid4().hex}",
                kind=item.kind,
                item_id=item.item_id,
                unit_amount=unit_amount,
                currency=currency.upper(),
            )
            self._by_key[idempotency_key] = line_item
            self.added.append((provider_subscription_id, line_item))
        logger.debug("Sandbox line item %s added for %s", line_item.provider_item_id, item.key)
        return line_item

    def remove_subscription_item(
        self,
        *,
        provider_subscription_id: str,
        provider_item_id: str,
        prorate: bool,
    ) -> None:
        with self._lock:
            self.removed.append((provider_subscription_id, provider_item_id, prorate))
        logger.debug("Sandbox line item %s removed (prorate=%s)", provider_item_id, prorate)

    def list_pending_invoice_items(self, provider_subscription_id: str) -> Sequence[LineItem]:
        with self._lock:
            return list(self.pending.get(provider_subscription_id, ()))


@lru_cache(maxsize=1)
def get_billing_config() -> BillingConfig:
    return load_billing_config()


@lru_cache(maxsize=1)
def get_transaction_manager() -> TransactionManager:
    config = get_billing_config()
    if config.storage_backend == "memory":
        store = InMemoryBillingStore()
        if config.sandbox_organization_id:
            store.add_organization(config.sandbox_organization_id, name="Sandbox organization")
            logger.info("Seeded sandbox organization %s", config.sandbox_organization_id)
        return store
    return PostgresTransactionManager()


@lru_cache(maxsize=1)
def get_catalog() -> CatalogRepository:
    if get_billing_config().storage_backend == "memory":
        return InMemoryCatalog()
    return PostgresCatalogRepository()


@lru_cache(maxsize=1)
def get_currency_converter() -> CurrencyConverter:
    config = get_billing_config()
    source = HttpExchangeRateSource(config.exchange_rate_url, timeout=config.exchange_rate_timeout_seconds)
    rates = ExchangeRateCache(source, ttl_seconds=config.exchange_rate_ttl_seconds)
    return CurrencyConverter(rates, base_currency=config.base_currency)


@lru_cache(maxsize=1)
def get_pricing_service() -> PricingService:
    return PricingService(
        catalog=get_catalog(),
        converter=get_currency_converter(),
        minimum_inspections=get_billing_config().minimum_inspections,
    )


@lru_cache(maxsize=1)
def get_billing_provider() -> BillingProvider:
    config = get_billing_config()
    if config.uses_stripe:
        return StripeBillingProvider(api_key=config.stripe_secret_key, product_id=config.stripe_addon_product_id)
    logger.warning("STRIPE_SECRET_KEY not configured; using the local sandbox billing provider")
    return LocalSandboxBillingProvider()


@lru_cache(maxsize=1)
def get_webhook_verifier() -> StripeWebhookVerifier:
    return StripeWebhookVerifier(get_billing_config().stripe_webhook_secret)


def _retry_policy(config: BillingConfig) -> RetryPolicy:
    return RetryPolicy(
        max_attempts=config.retry_max_attempts,
        base_delay_seconds=config.retry_backoff_seconds,
        max_delay_seconds=config.retry_max_backoff_seconds,
    )


@lru_cache(maxsize=1)
def get_credit_ledger_service() -> CreditLedgerService:
    return CreditLedgerService(transactions=get_transaction_manager())


@lru_cache(maxsize=1)
def get_entitlement_reconciler() -> EntitlementReconciler:
    return EntitlementReconciler(
        pricing=get_pricing_service(),
        provider=get_billing_provider(),
        prorate_on_disable=get_billing_config().prorate_on_disable,
    )


@lru_cache(maxsize=1)
def get_entitlement_service() -> EntitlementService:
    return EntitlementService(
        transactions=get_transaction_manager(),
        catalog=get_catalog(),
        reconciler=get_entitlement_reconciler(),
        retry_policy=_retry_policy(get_billing_config()),
    )


@lru_cache(maxsize=1)
def get_subscription_query_service() -> SubscriptionQueryService:
    return SubscriptionQueryService(
        transactions=get_transaction_manager(),
        grace_period_days=get_billing_config().grace_period_days,
    )


@lru_cache(maxsize=1)
def get_webhook_processor() -> WebhookEventProcessor:
    config = get_billing_config()
    return WebhookEventProcessor(
        transactions=get_transaction_manager(),
        catalog=get_catalog(),
        ledger=get_credit_ledger_service(),
        reconciler=get_entitlement_reconciler(),
        notifier=LoggingBillingNotifier(),
        event_logger=LoggingBillingEventLogger(),
        retry_policy=_retry_policy(config),
        grace_period_days=config.grace_period_days,
    )


__all__ = [
    "LocalSandboxBillingProvider",
    "LoggingBillingEventLogger",
    "LoggingBillingNotifier",
    "get_billing_config",
    "get_billing_provider",
    "get_catalog",
    "get_credit_ledger_service",
    "get_currency_converter",
    "get_entitlement_reconciler",
    "get_entitlement_service",
    "get_pricing_service",
    "get_subscription_query_service",
    "get_transaction_manager",
    "get_webhook_processor",
    "get_webhook_verifier",
]
