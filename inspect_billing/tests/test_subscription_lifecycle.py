"""Webhook-driven subscription lifecycle tests against the in-memory store."""
from __future__ import annotations

from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Dict, List

import pytest

from inspect_billing.app.billing import (
    BillingAuditEvent,
    BillingAuditEventType,
    BillingEvent,
    BillingEventType,
    CheckoutCompletedDetails,
    CheckoutMode,
    EventProcessingStatus,
    PaymentFailedDetails,
    PaymentFailure,
    RenewalPaidDetails,
    SubscriptionDeletedDetails,
    SubscriptionUpdatedDetails,
    WebhookEventProcessor,
)
from inspect_billing.app.billing.service import BillingEventLogger, BillingNotifier
from inspect_billing.app.catalog import InMemoryCatalog
from inspect_billing.app.entitlements import EntitlementReconciler
from inspect_billing.app.ledger import CreditLedgerService, CreditSource
from inspect_billing.app.pricing import CurrencyConverter, ExchangeRateCache, PricingService
from inspect_billing.app.retry import RetryPolicy
from inspect_billing.app.services.billing import LocalSandboxBillingProvider
from inspect_billing.app.storage import InMemoryBillingStore
from inspect_billing.app.subscriptions import (
    BillableKind,
    InstanceSubscription,
    LineItem,
    ProcessedEventStatus,
    SubscriptionStatus,
)


NOW = datetime(2026, 3, 1, 9, 0, tzinfo=timezone.utc)


class FakeClock:
    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now = self.now + timedelta(**kwargs)


class StaticRates:
    def fetch_rates(self) -> Dict[str, Decimal]:
        return {"USD": Decimal("1.27"), "EUR": Decimal("1.17")}


class FakeNotifier(BillingNotifier):
    def __init__(self) -> None:
        self.payment_failures: List[PaymentFailure] = []
        self.grace_expired: List[InstanceSubscription] = []

    def notify_payment_failure(self, failure: PaymentFailure) -> None:
        self.payment_failures.append(failure)

    def notify_grace_period_expired(self, subscription: InstanceSubscription) -> None:
        self.grace_expired.append(subscription)


class FakeEventLogger(BillingEventLogger):
    def __init__(self) -> None:
        self.events: List[BillingAuditEvent] = []

    def log(self, event: BillingAuditEvent) -> None:
        self.events.append(event)

    @property
    def types(self) -> List[BillingAuditEventType]:
        return [event.event_type for event in self.events]


class Harness:
    def __init__(self) -> None:
        self.clock = FakeClock(NOW)
        self.store = InMemoryBillingStore()
        self.store.add_organization("org-1", name="Acme Lettings")
        self.catalog = InMemoryCatalog()
        self.provider = LocalSandboxBillingProvider()
        self.notifier = FakeNotifier()
        self.event_logger = FakeEventLogger()
        self.sleeps: List[float] = []
        self.ledger = CreditLedgerService(transactions=self.store, clock=self.clock)
        pricing = PricingService(
            catalog=self.catalog,
            converter=CurrencyConverter(ExchangeRateCache(StaticRates())),
        )
        self.reconciler = EntitlementReconciler(pricing=pricing, provider=self.provider)
        self.processor = WebhookEventProcessor(
            transactions=self.store,
            catalog=self.catalog,
            ledger=self.ledger,
            reconciler=self.reconciler,
            notifier=self.notifier,
            event_logger=self.event_logger,
            retry_policy=RetryPolicy(max_attempts=3, base_delay_seconds=0.5, sleep=self.sleeps.append),
            clock=self.clock,
        )

    def subscription(self, organization_id: str = "org-1") -> InstanceSubscription:
        with self.store.transaction(organization_id) as scope:
            return scope.subscriptions.get_subscription_for_organization(organization_id)

    def modules(self, organization_id: str = "org-1"):
        with self.store.transaction(organization_id) as scope:
            subscription = scope.subscriptions.get_subscription_for_organization(organization_id)
            return {module.module_id: module for module in scope.subscriptions.list_modules(subscription.id)}

    def processed(self, event_id: str):
        with self.store.transaction(None) as scope:
            return scope.subscriptions.get_processed_event(event_id)


@pytest.fixture()
def harness() -> Harness:
    return Harness()


def checkout_event(event_id: str = "evt_checkout", **overrides) -> BillingEvent:
    details = dict(
        session_id="cs_1",
        tier_id="growth",
        module_ids=("white_label",),
        bundle_ids=("essential",),
        period_start=NOW,
        period_end=NOW + timedelta(days=30),
    )
    details.update(overrides.pop("details", {}))
    fields = dict(
        event_id=event_id,
        event_type=BillingEventType.CHECKOUT_COMPLETED,
        organization_id="org-1",
        provider_subscription_id="sub_1",
        provider_customer_id="cus_1",
        details=CheckoutCompletedDetails(**details),
    )
    fields.update(overrides)
    return BillingEvent(**fields)


def renewal_event(event_id: str, *, billing_reason: str = "subscription_cycle", period_end=None, **overrides) -> BillingEvent:
    fields = dict(
        event_id=event_id,
        event_type=BillingEventType.RENEWAL_PAID,
        provider_subscription_id="sub_1",
        details=RenewalPaidDetails(
            invoice_id=f"in_{event_id}",
            amount_paid=12900,
            billing_reason=billing_reason,
            period_start=NOW + timedelta(days=30),
            period_end=period_end or NOW + timedelta(days=60),
        ),
    )
    fields.update(overrides)
    return BillingEvent(**fields)


def payment_failed_event(event_id: str, **overrides) -> BillingEvent:
    fields = dict(
        event_id=event_id,
        event_type=BillingEventType.PAYMENT_FAILED,
        provider_subscription_id="sub_1",
        details=PaymentFailedDetails(invoice_id=f"in_{event_id}", amount_due=12900, currency="GBP"),
    )
    fields.update(overrides)
    return BillingEvent(**fields)


def subscription_updated_event(event_id: str, **details) -> BillingEvent:
    return BillingEvent(
        event_id=event_id,
        event_type=BillingEventType.SUBSCRIPTION_UPDATED,
        provider_subscription_id="sub_1",
        details=SubscriptionUpdatedDetails(**details),
    )


def test_checkout_activates_subscription_grants_credits_and_charges_items(harness):
    outcome = harness.processor.process(checkout_event())

    assert outcome.status == EventProcessingStatus.PROCESSED
    assert outcome.organization_id == "org-1"

    subscription = harness.subscription()
    assert subscription.status == SubscriptionStatus.ACTIVE
    assert subscription.current_tier_id == "growth"
    assert subscription.provider_subscription_id == "sub_1"
    assert subscription.current_period_end == NOW + timedelta(days=30)
    assert sorted((line.kind.value, line.item_id, line.unit_amount) for line in subscription.line_items) == [
        ("bundle", "essential", 27900),
        ("module", "white_label", 15000),
    ]
    assert len(harness.provider.added) == 2

    balance = harness.ledger.get_balance("org-1")
    assert balance.available_credits == 30
    assert balance.batches[0].source == CreditSource.PLAN_INCLUSION
    assert balance.batches[0].expires_at == NOW + timedelta(days=30)
    assert harness.event_logger.types == [BillingAuditEventType.SUBSCRIPTION_ACTIVATED]
    assert harness.processed("evt_checkout").status == ProcessedEventStatus.PROCESSED


def test_checkout_with_tier_line_item_caches_it(harness):
    tier_line = LineItem(provider_item_id="si_tier", kind=BillableKind.TIER, item_id="growth", unit_amount=12900)

    harness.processor.process(checkout_event(line_items=(tier_line,), details={"module_ids": (), "bundle_ids": ()}))

    assert harness.subscription().line_items == (tier_line,)
    assert harness.provider.added == []


def test_duplicate_event_is_applied_once(harness):
    first = harness.processor.process(checkout_event())
    second = harness.processor.process(checkout_event())

    assert second.status == EventProcessingStatus.DUPLICATE
    assert second.summary == first.summary
    assert harness.ledger.get_balance("org-1").available_credits == 30
    assert len(harness.provider.added) == 2
    assert len(harness.event_logger.events) == 1


def test_topup_checkout_grants_credits_without_subscription(harness):
    outcome = harness.processor.process(
        BillingEvent(
            event_id="evt_topup",
            event_type=BillingEventType.CHECKOUT_COMPLETED,
            organization_id="org-1",
            details=CheckoutCompletedDetails(
                mode=CheckoutMode.TOPUP,
                session_id="cs_topup",
                credits=20,
                pack_id="pack_20",
                amount_total=11000,
            ),
        )
    )

    assert outcome.status == EventProcessingStatus.PROCESSED
    balance = harness.ledger.get_balance("org-1")
    assert balance.available_credits == 20
    batch = balance.batches[0]
    assert batch.source == CreditSource.TOPUP
    assert batch.unit_cost_minor_units == 550
    assert batch.expires_at is None
    assert harness.subscription() is None
    assert harness.event_logger.types == [BillingAuditEventType.CREDITS_TOPPED_UP]


def test_renewal_replaces_plan_credits_and_keeps_topups(harness):
    harness.processor.process(checkout_event())
    harness.ledger.grant_credits("org-1", 20, CreditSource.TOPUP)
    harness.ledger.consume_credits("org-1", 5, "inspection", "insp-1")
    harness.clock.advance(days=29)

    outcome = harness.processor.process(renewal_event("evt_renewal"))

    assert outcome.status == EventProcessingStatus.PROCESSED
    balance = harness.ledger.get_balance("org-1")
    assert balance.available_credits == 50
    assert balance.credits_remaining == 50
    plan_batches = [batch for batch in balance.batches if batch.source == CreditSource.PLAN_INCLUSION]
    assert [batch.expires_at for batch in plan_batches] == [NOW + timedelta(days=60)]

    subscription = harness.subscription()
    assert subscription.status == SubscriptionStatus.ACTIVE
    assert subscription.current_period_end == NOW + timedelta(days=60)
    assert len(harness.provider.added) == 2
    assert harness.event_logger.types[-1] == BillingAuditEventType.SUBSCRIPTION_RENEWED
    harness.ledger.audit_batches("org-1")


def test_initial_invoice_is_only_recorded(harness):
    harness.processor.process(checkout_event())

    outcome = harness.processor.process(renewal_event("evt_first_invoice", billing_reason="subscription_create"))

    assert outcome.summary == "initial invoice recorded"
    assert harness.ledger.get_balance("org-1").available_credits == 30


def test_payment_failures_walk_through_grace_period(harness):
    harness.processor.process(checkout_event())
    harness.ledger.grant_credits("org-1", 10, CreditSource.TOPUP)
    started_at = harness.clock.now

    first = harness.processor.process(payment_failed_event("evt_fail_1"))

    assert first.summary == "grace period started"
    subscription = harness.subscription()
    assert subscription.status == SubscriptionStatus.GRACE_PERIOD
    assert subscription.first_payment_failure_date == started_at
    assert len(harness.notifier.payment_failures) == 1
    assert harness.notifier.payment_failures[0].grace_period_expires_at == started_at + timedelta(days=3)

    harness.clock.advance(days=1)
    second = harness.processor.process(payment_failed_event("evt_fail_2"))

    assert second.summary == "payment failed within grace period"
    assert harness.subscription().status == SubscriptionStatus.GRACE_PERIOD
    assert len(harness.notifier.payment_failures) == 1

    harness.clock.advance(days=3)
    third = harness.processor.process(payment_failed_event("evt_fail_3"))

    assert third.status == EventProcessingStatus.PROCESSED
    subscription = harness.subscription()
    assert subscription.status == SubscriptionStatus.INACTIVE
    assert subscription.line_items == ()
    assert all(not module.is_enabled for module in harness.modules().values())
    assert sorted(prorate for _, _, prorate in harness.provider.removed) == [False, False]
    assert len(harness.notifier.grace_expired) == 1

    balance = harness.ledger.get_balance("org-1")
    assert balance.available_credits == 0
    assert balance.credits_remaining == 0
    harness.ledger.audit_batches("org-1")


def test_renewal_after_failure_recovers_subscription(harness):
    harness.processor.process(checkout_event())
    harness.processor.process(payment_failed_event("evt_fail_1"))
    harness.clock.advance(days=1)

    harness.processor.process(renewal_event("evt_recovered"))

    subscription = harness.subscription()
    assert subscription.status == SubscriptionStatus.ACTIVE
    assert subscription.first_payment_failure_date is None
    assert harness.event_logger.types[-1] == BillingAuditEventType.PAYMENT_RECOVERED


def test_renewal_for_cancelled_subscription_deactivates_without_grant(harness):
    harness.processor.process(checkout_event())
    harness.processor.process(subscription_updated_event("evt_cancel", cancel_at_period_end=True))

    assert harness.subscription().cancel_at_period_end is True

    outcome = harness.processor.process(renewal_event("evt_final_invoice"))

    assert outcome.status == EventProcessingStatus.PROCESSED
    subscription = harness.subscription()
    assert subscription.status == SubscriptionStatus.INACTIVE
    assert subscription.line_items == ()
    assert all(not module.is_enabled for module in harness.modules().values())
    assert harness.provider.removed == []
    assert harness.ledger.get_balance("org-1").available_credits == 30


def test_subscription_update_changes_tier_and_reactivates(harness):
    harness.processor.process(checkout_event())
    harness.processor.process(subscription_updated_event("evt_cancel", cancel_at_period_end=True))

    outcome = harness.processor.process(
        subscription_updated_event(
            "evt_reactivate",
            provider_status="active",
            cancel_at_period_end=False,
            tier_id="professional",
        )
    )

    assert outcome.summary == "subscription reactivated"
    subscription = harness.subscription()
    assert subscription.status == SubscriptionStatus.ACTIVE
    assert subscription.cancel_at_period_end is False
    assert subscription.cancellation_requested_at is None
    assert subscription.current_tier_id == "professional"


def test_subscription_deleted_deactivates_everything(harness):
    harness.processor.process(checkout_event())

    harness.processor.process(
        BillingEvent(
            event_id="evt_deleted",
            event_type=BillingEventType.SUBSCRIPTION_DELETED,
            provider_subscription_id="sub_1",
            details=SubscriptionDeletedDetails(),
        )
    )

    subscription = harness.subscription()
    assert subscription.status == SubscriptionStatus.INACTIVE
    assert subscription.cancellation_requested_at == NOW
    assert all(not module.is_enabled for module in harness.modules().values())


def test_late_payment_failure_does_not_revive_deleted_subscription(harness):
    harness.processor.process(checkout_event())
    harness.processor.process(
        BillingEvent(
            event_id="evt_deleted",
            event_type=BillingEventType.SUBSCRIPTION_DELETED,
            provider_subscription_id="sub_1",
            details=SubscriptionDeletedDetails(),
        )
    )
    harness.clock.advance(hours=1)

    outcome = harness.processor.process(payment_failed_event("evt_late_fail"))

    assert outcome.status == EventProcessingStatus.PROCESSED
    assert outcome.summary == "payment failure ignored; subscription is inactive"
    subscription = harness.subscription()
    assert subscription.status == SubscriptionStatus.INACTIVE
    assert subscription.first_payment_failure_date is None
    assert harness.notifier.payment_failures == []
    assert BillingAuditEventType.PAYMENT_FAILED not in harness.event_logger.types


def test_provider_cancellation_then_renewal_deactivates_without_grant(harness):
    harness.processor.process(checkout_event())

    cancelled = harness.processor.process(subscription_updated_event("evt_expired", provider_status="incomplete_expired"))

    assert cancelled.summary == "cancellation recorded"
    subscription = harness.subscription()
    assert subscription.status == SubscriptionStatus.CANCELLED
    assert subscription.cancellation_requested_at == NOW
    assert harness.event_logger.types[-1] == BillingAuditEventType.SUBSCRIPTION_CANCELED

    failed = harness.processor.process(payment_failed_event("evt_fail_after_cancel"))

    assert failed.summary == "payment failure ignored; subscription is cancelled"
    assert harness.subscription().status == SubscriptionStatus.CANCELLED

    renewed = harness.processor.process(renewal_event("evt_after_cancel"))

    assert renewed.summary == "subscription cancelled; modules deactivated without credit grant"
    subscription = harness.subscription()
    assert subscription.status == SubscriptionStatus.INACTIVE
    assert all(not module.is_enabled for module in harness.modules().values())
    assert harness.ledger.get_balance("org-1").available_credits == 30
    assert harness.event_logger.types[-1] == BillingAuditEventType.SUBSCRIPTION_DEACTIVATED


def test_out_of_order_event_is_parked_and_replayed(harness):
    early = payment_failed_event("evt_early", provider_subscription_id="sub_late")

    parked = harness.processor.process(early)

    assert parked.status == EventProcessingStatus.RETRYING
    assert parked.error_code == "out_of_order_event"
    assert parked.retry_count == 1
    assert harness.sleeps == [0.5, 1.0]
    assert harness.processed("evt_early").status == ProcessedEventStatus.RETRYING

    harness.processor.process(checkout_event(provider_subscription_id="sub_late"))
    outcomes = harness.processor.replay_parked_events()

    assert [(outcome.event_id, outcome.status) for outcome in outcomes] == [
        ("evt_early", EventProcessingStatus.PROCESSED)
    ]
    assert harness.subscription().status == SubscriptionStatus.GRACE_PERIOD
    record = harness.processed("evt_early")
    assert record.status == ProcessedEventStatus.PROCESSED
    assert record.retry_count == 1
    assert harness.processor.replay_parked_events() == []


def test_invalid_event_is_parked_as_failed_and_rolled_back(harness):
    outcome = harness.processor.process(checkout_event(details={"tier_id": "platinum"}))

    assert outcome.status == EventProcessingStatus.FAILED
    assert outcome.error_code == "validation_error"
    assert harness.sleeps == []
    assert harness.subscription() is None
    assert harness.ledger.get_balance("org-1").available_credits == 0
    record = harness.processed("evt_checkout")
    assert record.status == ProcessedEventStatus.FAILED
    assert record.last_error == "Unknown subscription tier"


def test_event_for_unknown_organization_fails(harness):
    outcome = harness.processor.process(checkout_event(organization_id="org-missing"))

    assert outcome.status == EventProcessingStatus.FAILED
    assert outcome.error_code == "validation_error"


def test_notification_failures_do_not_undo_processing(harness):
    def explode(_failure):
        raise RuntimeError("smtp down")

    harness.processor.process(checkout_event())
    harness.notifier.notify_payment_failure = explode

    outcome = harness.processor.process(payment_failed_event("evt_fail"))

    assert outcome.status == EventProcessingStatus.PROCESSED
    assert harness.subscription().status == SubscriptionStatus.GRACE_PERIOD
