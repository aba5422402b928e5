"""Webhook event processor driving the subscription lifecycle."""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Callable, List, Optional, Protocol, Tuple
from uuid import uuid4

from pydantic import ValidationError as PydanticValidationError

from ..catalog.models import BillingCycle, SubscriptionTier
from ..catalog.repository import CatalogRepository
from ..entitlements.service import EntitlementReconciler
from ..exceptions import (
    BillingError,
    DataIntegrityError,
    DuplicateEventError,
    OutOfOrderEventError,
    ValidationError,
)
from ..ledger.models import CreditSource, ExpiryPolicy, PlanInclusionMetadata, TopupMetadata
from ..ledger.service import CreditLedgerService
from ..retry import RetryPolicy
from ..storage.transactions import TransactionManager, TransactionScope
from ..subscriptions.models import (
    BillableKind,
    InstanceBundle,
    InstanceModule,
    InstanceSubscription,
    ProcessedEvent,
    ProcessedEventStatus,
    SubscriptionStatus,
)
from ..subscriptions.service import PaymentFailureAction, evaluate_payment_failure
from .models import (
    BillingAuditEvent,
    BillingAuditEventType,
    BillingEvent,
    BillingEventType,
    CheckoutCompletedDetails,
    CheckoutMode,
    EventProcessingStatus,
    PaymentFailedDetails,
    PaymentFailure,
    ProcessingOutcome,
    RenewalPaidDetails,
    SubscriptionUpdatedDetails,
)


logger = logging.getLogger(__name__)

CANCELLED_PROVIDER_STATUSES = frozenset({"canceled", "cancelled", "incomplete_expired"})


class BillingNotifier(Protocol):
    """Dispatches billing related notifications to end users."""

    def notify_payment_failure(self, failure: PaymentFailure) -> None:
        ...

    def notify_grace_period_expired(self, subscription: InstanceSubscription) -> None:
        ...


class BillingEventLogger(Protocol):
    """Captures structured billing audit events."""

    def log(self, event: BillingAuditEvent) -> None:
        ...


SideEffect = Callable[[], None]


@dataclass
class WebhookEventProcessor:
    """Applies canonical billing events exactly once per event id.

    The processed-event check, every ledger and subscription mutation and the
    processed-event record share one organization transaction. Notifications
    and audit events are collected while the transaction is open and only
    dispatched after it commits.
    """

    transactions: TransactionManager
    catalog: CatalogRepository
    ledger: CreditLedgerService
    reconciler: EntitlementReconciler
    notifier: BillingNotifier
    event_logger: BillingEventLogger
    retry_policy: RetryPolicy = field(default_factory=RetryPolicy)
    grace_period_days: int = 3
    clock: Optional[Callable[[], datetime]] = None

    def _now(self) -> datetime:
        return self.clock() if self.clock else datetime.now(timezone.utc)

    @property
    def grace_period(self) -> timedelta:
        return timedelta(days=self.grace_period_days)

    def process(self, event: BillingEvent) -> ProcessingOutcome:
        try:
            outcome, effects = self.retry_policy.run(
                lambda: self._apply(event),
                description=f"billing event {event.event_id}",
            )
        except DuplicateEventError as exc:
            logger.info("Skipping duplicate billing event %s", event.event_id)
            detail = exc.detail or {}
            return ProcessingOutcome(
                event_id=event.event_id,
                event_type=event.event_type,
                status=EventProcessingStatus.DUPLICATE,
                organization_id=detail.get("organization_id"),
                summary=detail.get("result_summary"),
            )
        except DataIntegrityError as exc:
            logger.critical(
                "Data integrity violation while processing billing event %s: %s",
                event.event_id,
                exc.message,
                extra={"event_id": event.event_id, "detail": dict(exc.detail or {})},
            )
            self._park(event, ProcessedEventStatus.FAILED, exc)
            raise
        except BillingError as exc:
            status = ProcessedEventStatus.RETRYING if exc.retryable else ProcessedEventStatus.FAILED
            parked = self._park(event, status, exc)
            log = logger.warning if exc.retryable else logger.error
            log(
                "Parked billing event %s as %s: %s",
                event.event_id,
                status.value,
                exc.message,
                extra={"event_id": event.event_id, "error_code": exc.code},
            )
            return ProcessingOutcome(
                event_id=event.event_id,
                event_type=event.event_type,
                status=EventProcessingStatus(status.value),
                organization_id=parked.organization_id,
                summary=parked.result_summary,
                retry_count=parked.retry_count,
                error_code=exc.code,
            )

        self._dispatch(effects)
        return outcome

    def replay_parked_events(self, *, limit: int = 50) -> List[ProcessingOutcome]:
        """Re-run events parked as ``retrying`` from their stored canonical payload."""

        with self.transactions.transaction(None) as scope:
            parked = scope.subscriptions.list_processed_events(status=ProcessedEventStatus.RETRYING, limit=limit)

        outcomes: List[ProcessingOutcome] = []
        for record in parked:
            try:
                event = BillingEvent.model_validate(record.payload)
            except PydanticValidationError:
                logger.exception("Parked billing event %s has an unreadable payload", record.external_event_id)
                self._park_record(
                    record,
                    ProcessedEventStatus.FAILED,
                    ValidationError("Stored event payload is invalid"),
                )
                continue
            outcomes.append(self.process(event))
        logger.info("Replayed %s parked billing events", len(outcomes))
        return outcomes

    def _apply(self, event: BillingEvent) -> Tuple[ProcessingOutcome, List[SideEffect]]:
        organization_id = self._resolve_organization(event)
        effects: List[SideEffect] = []
        try:
            with self.transactions.transaction(organization_id) as scope:
                existing = scope.subscriptions.get_processed_event(event.event_id)
                if existing is not None and existing.status == ProcessedEventStatus.PROCESSED:
                    raise DuplicateEventError(
                        "Event already processed",
                        detail={
                            "event_id": event.event_id,
                            "organization_id": existing.organization_id,
                            "result_summary": existing.result_summary,
                        },
                    )

                summary = self._handle(scope, event, organization_id, effects)
                scope.subscriptions.save_processed_event(
                    ProcessedEvent(
                        external_event_id=event.event_id,
                        event_type=event.event_type.value,
                        organization_id=organization_id,
                        status=ProcessedEventStatus.PROCESSED,
                        processed_at=self._now(),
                        result_summary=summary,
                        retry_count=existing.retry_count if existing else 0,
                        payload=event.model_dump(mode="json"),
                        updated_at=self._now(),
                    )
                )
        except LookupError as exc:
            raise ValidationError(str(exc), detail={"event_id": event.event_id}) from exc

        logger.info(
            "Processed billing event %s (%s): %s",
            event.event_id,
            event.event_type.value,
            summary,
            extra={"organization_id": organization_id},
        )
        outcome = ProcessingOutcome(
            event_id=event.event_id,
            event_type=event.event_type,
            status=EventProcessingStatus.PROCESSED,
            organization_id=organization_id,
            summary=summary,
        )
        return outcome, effects

    def _resolve_organization(self, event: BillingEvent) -> str:
        if event.organization_id:
            return event.organization_id
        if not event.provider_subscription_id:
            raise ValidationError(
                "Event does not identify an organization or subscription",
                detail={"event_id": event.event_id},
            )
        with self.transactions.transaction(None) as scope:
            subscription = scope.subscriptions.get_subscription_by_provider_id(event.provider_subscription_id)
        if subscription is None:
            raise OutOfOrderEventError(
                "Subscription is not known yet",
                detail={"event_id": event.event_id, "provider_subscription_id": event.provider_subscription_id},
            )
        return subscription.organization_id

    def _handle(
        self,
        scope: TransactionScope,
        event: BillingEvent,
        organization_id: str,
        effects: List[SideEffect],
    ) -> str:
        if event.event_type == BillingEventType.RENEWAL_PAID:
            return self._handle_renewal_paid(scope, event, organization_id, effects)
        if event.event_type == BillingEventType.PAYMENT_FAILED:
            return self._handle_payment_failed(scope, event, organization_id, effects)
        if event.event_type == BillingEventType.SUBSCRIPTION_UPDATED:
            return self._handle_subscription_updated(scope, event, organization_id, effects)
        if event.event_type == BillingEventType.SUBSCRIPTION_DELETED:
            return self._handle_subscription_deleted(scope, event, organization_id, effects)
        return self._handle_checkout_completed(scope, event, organization_id, effects)

    def _handle_renewal_paid(
        self,
        scope: TransactionScope,
        event: BillingEvent,
        organization_id: str,
        effects: List[SideEffect],
    ) -> str:
        details: RenewalPaidDetails = event.details
        subscription = self._require_subscription(scope, event, organization_id)
        now = self._now()
        recovering = subscription.first_payment_failure_date is not None
        updates = {
            "first_payment_failure_date": None,
            "current_period_start": details.period_start or subscription.current_period_start,
            "current_period_end": details.period_end or subscription.current_period_end,
            "updated_at": now,
        }

        if subscription.is_cancelled:
            subscription = self.reconciler.deactivate_all(scope, subscription, now=now)
            subscription = scope.subscriptions.save_subscription(
                subscription.model_copy(update={**updates, "status": SubscriptionStatus.INACTIVE})
            )
            self._audit(effects, BillingAuditEventType.SUBSCRIPTION_DEACTIVATED, subscription, invoice_id=details.invoice_id)
            return "subscription cancelled; modules deactivated without credit grant"

        if details.is_initial_invoice:
            status = SubscriptionStatus.ACTIVE if subscription.status == SubscriptionStatus.GRACE_PERIOD else subscription.status
            subscription = scope.subscriptions.save_subscription(
                subscription.model_copy(update={**updates, "status": status})
            )
            return "initial invoice recorded"

        tier = self._require_tier(subscription.current_tier_id)
        self.ledger.expire_batches(organization_id, ExpiryPolicy.PLAN_INCLUSION, reason="plan renewal", scope=scope)
        period_end = details.period_end or self._default_period_end(now, subscription.billing_cycle)
        granted = self._grant_plan_credits(
            scope,
            organization_id,
            subscription,
            tier,
            period_end=period_end,
            invoice_id=details.invoice_id,
        )

        subscription = scope.subscriptions.save_subscription(
            subscription.model_copy(
                update={**updates, "current_period_end": period_end, "status": SubscriptionStatus.ACTIVE}
            )
        )
        subscription, results = self.reconciler.reconcile_subscription(
            scope,
            subscription,
            idempotency_prefix=event.event_id,
            reported_items=event.line_items,
        )

        audit_type = BillingAuditEventType.PAYMENT_RECOVERED if recovering else BillingAuditEventType.SUBSCRIPTION_RENEWED
        self._audit(effects, audit_type, subscription, invoice_id=details.invoice_id, credits=str(granted))
        charged = sum(1 for result in results if result.charged)
        return f"renewed {tier.id}: granted {granted} credits, created {charged} line items"

    def _handle_payment_failed(
        self,
        scope: TransactionScope,
        event: BillingEvent,
        organization_id: str,
        effects: List[SideEffect],
    ) -> str:
        details: PaymentFailedDetails = event.details
        subscription = self._require_subscription(scope, event, organization_id)
        now = self._now()
        action = evaluate_payment_failure(subscription, now, self.grace_period)

        if action == PaymentFailureAction.IGNORE:
            logger.info(
                "Ignoring payment failure for %s subscription %s",
                subscription.status.value,
                subscription.id,
                extra={"organization_id": organization_id, "invoice_id": details.invoice_id},
            )
            return f"payment failure ignored; subscription is {subscription.status.value}"

        if action == PaymentFailureAction.START_GRACE_PERIOD:
            subscription = scope.subscriptions.save_subscription(
                subscription.model_copy(
                    update={
                        "first_payment_failure_date": now,
                        "status": SubscriptionStatus.GRACE_PERIOD,
                        "updated_at": now,
                    }
                )
            )
            failure = PaymentFailure(
                organization_id=organization_id,
                subscription_id=subscription.id,
                invoice_id=details.invoice_id,
                amount_due=details.amount_due,
                currency=details.currency or subscription.registration_currency,
                occurred_at=now,
                grace_period_expires_at=now + self.grace_period,
            )
            effects.append(lambda: self.notifier.notify_payment_failure(failure))
            self._audit(effects, BillingAuditEventType.PAYMENT_FAILED, subscription, invoice_id=details.invoice_id)
            return "grace period started"

        if action == PaymentFailureAction.WITHIN_GRACE_PERIOD:
            logger.info(
                "Payment failed again within grace period for subscription %s",
                subscription.id,
                extra={"organization_id": organization_id, "invoice_id": details.invoice_id},
            )
            return "payment failed within grace period"

        subscription = self.reconciler.deactivate_all(scope, subscription, now=now, release_line_items=True)
        expired = self.ledger.expire_batches(
            organization_id,
            ExpiryPolicy.ALL,
            reason="grace period expired",
            scope=scope,
        )
        subscription = scope.subscriptions.save_subscription(
            subscription.model_copy(update={"status": SubscriptionStatus.INACTIVE, "updated_at": now})
        )
        deactivated = subscription
        effects.append(lambda: self.notifier.notify_grace_period_expired(deactivated))
        self._audit(effects, BillingAuditEventType.GRACE_PERIOD_EXPIRED, subscription, invoice_id=details.invoice_id)
        return f"grace period expired; deactivated and expired {sum(-entry.quantity for entry in expired)} credits"

    def _handle_subscription_updated(
        self,
        scope: TransactionScope,
        event: BillingEvent,
        organization_id: str,
        effects: List[SideEffect],
    ) -> str:
        details: SubscriptionUpdatedDetails = event.details
        subscription = self._require_subscription(scope, event, organization_id)
        now = self._now()
        updates = {"updated_at": now}
        if details.period_start:
            updates["current_period_start"] = details.period_start
        if details.period_end:
            updates["current_period_end"] = details.period_end
        if details.tier_id and details.tier_id != subscription.current_tier_id:
            updates["current_tier_id"] = self._require_tier(details.tier_id).id

        provider_cancelled = details.provider_status in CANCELLED_PROVIDER_STATUSES
        if details.cancel_at_period_end or provider_cancelled:
            updates["cancel_at_period_end"] = bool(details.cancel_at_period_end) or subscription.cancel_at_period_end
            updates["cancellation_requested_at"] = subscription.cancellation_requested_at or now
            if provider_cancelled:
                updates["status"] = SubscriptionStatus.CANCELLED
            subscription = scope.subscriptions.save_subscription(subscription.model_copy(update=updates))
            self._audit(effects, BillingAuditEventType.SUBSCRIPTION_CANCELED, subscription)
            return "cancellation recorded"

        was_cancelled = (
            subscription.cancellation_requested_at is not None
            or subscription.cancel_at_period_end
            or subscription.status in {SubscriptionStatus.INACTIVE, SubscriptionStatus.CANCELLED}
        )
        if details.provider_status == "active" and was_cancelled:
            updates.update(
                {
                    "cancel_at_period_end": False,
                    "cancellation_requested_at": None,
                    "status": SubscriptionStatus.ACTIVE,
                }
            )
            subscription = scope.subscriptions.save_subscription(subscription.model_copy(update=updates))
            self._audit(effects, BillingAuditEventType.SUBSCRIPTION_REACTIVATED, subscription)
            return "subscription reactivated"

        subscription = scope.subscriptions.save_subscription(subscription.model_copy(update=updates))
        self._audit(effects, BillingAuditEventType.SUBSCRIPTION_UPDATED, subscription)
        return "subscription updated"

    def _handle_subscription_deleted(
        self,
        scope: TransactionScope,
        event: BillingEvent,
        organization_id: str,
        effects: List[SideEffect],
    ) -> str:
        subscription = self._require_subscription(scope, event, organization_id)
        now = self._now()
        subscription = self.reconciler.deactivate_all(scope, subscription, now=now)
        subscription = scope.subscriptions.save_subscription(
            subscription.model_copy(
                update={
                    "cancellation_requested_at": subscription.cancellation_requested_at or now,
                    "status": SubscriptionStatus.INACTIVE,
                    "updated_at": now,
                }
            )
        )
        self._audit(effects, BillingAuditEventType.SUBSCRIPTION_CANCELED, subscription, deleted="true")
        return "subscription deleted; modules deactivated"

    def _handle_checkout_completed(
        self,
        scope: TransactionScope,
        event: BillingEvent,
        organization_id: str,
        effects: List[SideEffect],
    ) -> str:
        details: CheckoutCompletedDetails = event.details
        if details.mode == CheckoutMode.TOPUP:
            return self._handle_topup(scope, event, organization_id, effects)

        tier = self._require_tier(details.tier_id)
        now = self._now()
        existing = scope.subscriptions.get_subscription_for_organization(organization_id)
        period_end = details.period_end or self._default_period_end(now, details.billing_cycle)
        base = existing or InstanceSubscription(
            id=f"sub_{uuid4().hex}",
            organization_id=organization_id,
            created_at=now,
        )
        subscription = scope.subscriptions.save_subscription(
            base.model_copy(
                update={
                    "provider_subscription_id": event.provider_subscription_id or base.provider_subscription_id,
                    "provider_customer_id": event.provider_customer_id or base.provider_customer_id,
                    "current_tier_id": tier.id,
                    "status": SubscriptionStatus.ACTIVE,
                    "cancel_at_period_end": False,
                    "cancellation_requested_at": None,
                    "first_payment_failure_date": None,
                    "current_period_start": details.period_start or now,
                    "current_period_end": period_end,
                    "registration_currency": details.currency or base.registration_currency,
                    "billing_cycle": details.billing_cycle,
                    "updated_at": now,
                }
            )
        )
        for line in event.line_items:
            if line.kind == BillableKind.TIER:
                subscription = subscription.with_line_item(line)
        subscription = scope.subscriptions.save_subscription(subscription)

        self._enable_purchased_items(scope, subscription, details, now)
        subscription, results = self.reconciler.reconcile_subscription(
            scope,
            subscription,
            idempotency_prefix=event.event_id,
            reported_items=event.line_items,
        )
        granted = self._grant_plan_credits(
            scope,
            organization_id,
            subscription,
            tier,
            period_end=period_end,
            invoice_id=None,
        )
        self._audit(
            effects,
            BillingAuditEventType.SUBSCRIPTION_ACTIVATED,
            subscription,
            tier_id=tier.id,
            session_id=details.session_id or "",
        )
        charged = sum(1 for result in results if result.charged)
        return f"subscribed to {tier.id}: granted {granted} credits, created {charged} line items"

    def _handle_topup(
        self,
        scope: TransactionScope,
        event: BillingEvent,
        organization_id: str,
        effects: List[SideEffect],
    ) -> str:
        details: CheckoutCompletedDetails = event.details
        if details.credits <= 0:
            raise ValidationError("Top-up checkout carries no credits", detail={"event_id": event.event_id})
        order_id = details.session_id or event.event_id
        unit_cost = details.amount_total // details.credits if details.amount_total else None
        batch = self.ledger.grant_credits(
            organization_id,
            details.credits,
            CreditSource.TOPUP,
            metadata=TopupMetadata(topup_order_id=order_id, pack_id=details.pack_id),
            unit_cost_minor_units=unit_cost,
            linked_entity_id=order_id,
            scope=scope,
        )
        effects.append(
            lambda: self.event_logger.log(
                BillingAuditEvent(
                    event_type=BillingAuditEventType.CREDITS_TOPPED_UP,
                    organization_id=organization_id,
                    metadata={"batch_id": batch.id, "credits": str(details.credits)},
                )
            )
        )
        return f"topped up {details.credits} credits"

    def _enable_purchased_items(
        self,
        scope: TransactionScope,
        subscription: InstanceSubscription,
        details: CheckoutCompletedDetails,
        now: datetime,
    ) -> None:
        modules = {module.module_id: module for module in scope.subscriptions.list_modules(subscription.id)}
        for module_id in details.module_ids:
            if self.catalog.get_module(module_id) is None:
                logger.warning("Ignoring unknown module %s in checkout", module_id)
                continue
            existing = modules.get(module_id)
            scope.subscriptions.save_module(
                InstanceModule(
                    id=existing.id if existing else f"im_{uuid4().hex}",
                    subscription_id=subscription.id,
                    module_id=module_id,
                    is_enabled=True,
                    enabled_date=now,
                )
            )

        bundles = {bundle.bundle_id: bundle for bundle in scope.subscriptions.list_bundles(subscription.id)}
        for bundle_id in details.bundle_ids:
            if self.catalog.get_bundle(bundle_id) is None:
                logger.warning("Ignoring unknown bundle %s in checkout", bundle_id)
                continue
            existing_bundle = bundles.get(bundle_id)
            scope.subscriptions.save_bundle(
                InstanceBundle(
                    id=existing_bundle.id if existing_bundle else f"ib_{uuid4().hex}",
                    subscription_id=subscription.id,
                    bundle_id=bundle_id,
                    is_active=True,
                    start_date=now,
                )
            )

    def _grant_plan_credits(
        self,
        scope: TransactionScope,
        organization_id: str,
        subscription: InstanceSubscription,
        tier: SubscriptionTier,
        *,
        period_end: datetime,
        invoice_id: Optional[str],
    ) -> int:
        if tier.included_inspections <= 0:
            return 0
        self.ledger.grant_credits(
            organization_id,
            tier.included_inspections,
            CreditSource.PLAN_INCLUSION,
            expires_at=period_end,
            metadata=PlanInclusionMetadata(
                subscription_id=subscription.id,
                invoice_id=invoice_id,
                period_end=period_end,
            ),
            linked_entity_id=subscription.id,
            scope=scope,
        )
        return tier.included_inspections

    def _require_subscription(
        self,
        scope: TransactionScope,
        event: BillingEvent,
        organization_id: str,
    ) -> InstanceSubscription:
        subscription = None
        if event.provider_subscription_id:
            subscription = scope.subscriptions.get_subscription_by_provider_id(event.provider_subscription_id)
            if subscription is not None and subscription.organization_id != organization_id:
                raise ValidationError(
                    "Event organization does not own the subscription",
                    detail={"event_id": event.event_id, "organization_id": organization_id},
                )
        if subscription is None:
            subscription = scope.subscriptions.get_subscription_for_organization(organization_id)
        if subscription is None:
            raise OutOfOrderEventError(
                "Subscription is not known yet",
                detail={"event_id": event.event_id, "organization_id": organization_id},
            )
        return subscription

    def _require_tier(self, tier_id: Optional[str]) -> SubscriptionTier:
        tier = self.catalog.get_tier(tier_id) if tier_id else None
        if tier is None:
            raise ValidationError("Unknown subscription tier", detail={"tier_id": tier_id})
        return tier

    @staticmethod
    def _default_period_end(now: datetime, cycle: BillingCycle) -> datetime:
        return now + (timedelta(days=365) if cycle == BillingCycle.ANNUAL else timedelta(days=30))

    def _audit(
        self,
        effects: List[SideEffect],
        event_type: BillingAuditEventType,
        subscription: InstanceSubscription,
        **metadata: Optional[str],
    ) -> None:
        audit_event = BillingAuditEvent(
            event_type=event_type,
            organization_id=subscription.organization_id,
            subscription_id=subscription.id,
            metadata={key: value for key, value in metadata.items() if value is not None},
            occurred_at=self._now(),
        )
        effects.append(lambda: self.event_logger.log(audit_event))

    def _dispatch(self, effects: List[SideEffect]) -> None:
        for effect in effects:
            try:
                effect()
            except Exception:
                logger.exception("Billing notification dispatch failed")

    def _park(self, event: BillingEvent, status: ProcessedEventStatus, error: BillingError) -> ProcessedEvent:
        with self.transactions.transaction(None) as scope:
            existing = scope.subscriptions.get_processed_event(event.event_id)
            if existing is not None and existing.status == ProcessedEventStatus.PROCESSED:
                return existing
            retry_count = existing.retry_count if existing else 0
            if status == ProcessedEventStatus.RETRYING:
                retry_count += 1
            return scope.subscriptions.save_processed_event(
                ProcessedEvent(
                    external_event_id=event.event_id,
                    event_type=event.event_type.value,
                    organization_id=event.organization_id or (existing.organization_id if existing else None),
                    status=status,
                    result_summary=error.code,
                    retry_count=retry_count,
                    last_error=error.message,
                    payload=event.model_dump(mode="json"),
                    updated_at=self._now(),
                )
            )

    def _park_record(self, record: ProcessedEvent, status: ProcessedEventStatus, error: BillingError) -> None:
        with self.transactions.transaction(None) as scope:
            scope.subscriptions.save_processed_event(
                record.model_copy(
                    update={"status": status, "last_error": error.message, "updated_at": self._now()}
                )
            )


__all__ = ["BillingEventLogger", "BillingNotifier", "SideEffect", "WebhookEventProcessor"]
