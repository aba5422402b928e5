"""Persistence layer for instance subscriptions, modules, bundles and events."""
from __future__ import annotations

from contextlib import contextmanager
from typing import Iterator, Optional, Sequence

import psycopg2.extras
from psycopg2.extensions import connection as PgConnection
from psycopg2.extensions import cursor as PgCursor

from ..catalog.models import BillingCycle
from ..db import managed_connection
from ..exceptions import DataIntegrityError
from .models import (
    InstanceBundle,
    InstanceModule,
    InstanceSubscription,
    LineItem,
    ProcessedEvent,
    ProcessedEventStatus,
    SubscriptionStatus,
)


def _row_to_subscription(row: dict) -> InstanceSubscription:
    return InstanceSubscription(
        id=str(row["id"]),
        organization_id=str(row["organization_id"]),
        provider_subscription_id=row.get("provider_subscription_id"),
        provider_customer_id=row.get("provider_customer_id"),
        current_tier_id=row.get("current_tier_id") and str(row["current_tier_id"]),
        status=SubscriptionStatus(row["status"]),
        cancel_at_period_end=bool(row.get("cancel_at_period_end")),
        cancellation_requested_at=row.get("cancellation_requested_at"),
        first_payment_failure_date=row.get("first_payment_failure_date"),
        current_period_start=row.get("current_period_start"),
        current_period_end=row.get("current_period_end"),
        registration_currency=row["registration_currency"],
        billing_cycle=BillingCycle(row["billing_cycle"]),
        line_items=tuple(LineItem.model_validate(item) for item in (row.get("line_items") or [])),
        override_monthly_fee=row.get("override_monthly_fee"),
        override_annual_fee=row.get("override_annual_fee"),
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def _row_to_module(row: dict) -> InstanceModule:
    return InstanceModule(
        id=str(row["id"]),
        subscription_id=str(row["instance_id"]),
        module_id=str(row["module_id"]),
        is_enabled=bool(row["is_enabled"]),
        enabled_date=row.get("enabled_date"),
        disabled_date=row.get("disabled_date"),
    )


def _row_to_bundle(row: dict) -> InstanceBundle:
    return InstanceBundle(
        id=str(row["id"]),
        subscription_id=str(row["instance_id"]),
        bundle_id=str(row["bundle_id"]),
        is_active=bool(row["is_active"]),
        start_date=row.get("start_date"),
        end_date=row.get("end_date"),
    )


def _row_to_processed_event(row: dict) -> ProcessedEvent:
    return ProcessedEvent(
        external_event_id=row["external_event_id"],
        event_type=row["event_type"],
        organization_id=row.get("organization_id") and str(row["organization_id"]),
        status=ProcessedEventStatus(row["status"]),
        processed_at=row.get("processed_at"),
        result_summary=row.get("result_summary"),
        retry_count=int(row.get("retry_count") or 0),
        last_error=row.get("last_error"),
        payload=row.get("payload") or {},
        updated_at=row["updated_at"],
    )


class PostgresSubscriptionRepository:
    """Subscription tables in PostgreSQL, bound to a transaction scope's connection."""

    def __init__(self, *, conn: Optional[PgConnection] = None) -> None:
        self._conn = conn

    @contextmanager
    def _cursor(self) -> Iterator[PgCursor]:
        with managed_connection(self._conn) as (connection, _managed):
            cursor = connection.cursor(cursor_factory=psycopg2.extras.RealDictCursor)
            try:
                yield cursor
            finally:
                cursor.close()

    def get_subscription(self, subscription_id: str) -> Optional[InstanceSubscription]:
        with self._cursor() as cursor:
            cursor.execute("SELECT * FROM instance_subscriptions WHERE id = %s LIMIT 1", (subscription_id,))
            row = cursor.fetchone()
            return _row_to_subscription(row) if row else None

    def get_subscription_for_organization(self, organization_id: str) -> Optional[InstanceSubscription]:
        with self._cursor() as cursor:
            cursor.execute(
                "SELECT * FROM instance_subscriptions WHERE organization_id = %s LIMIT 2",
                (organization_id,),
            )
            rows = cursor.fetchall()
            if len(rows) > 1:
                raise DataIntegrityError(
                    "Organization has more than one subscription record",
                    detail={"organization_id": organization_id},
                )
            return _row_to_subscription(rows[0]) if rows else None

    def get_subscription_by_provider_id(self, provider_subscription_id: str) -> Optional[InstanceSubscription]:
        with self._cursor() as cursor:
            cursor.execute(
                "SELECT * FROM instance_subscriptions WHERE provider_subscription_id = %s LIMIT 1",
                (provider_subscription_id,),
            )
            row = cursor.fetchone()
            return _row_to_subscription(row) if row else None

    def save_subscription(self, subscription: InstanceSubscription) -> InstanceSubscription:
        with self._cursor() as cursor:
            cursor.execute(
                """
                INSERT INTO instance_subscriptions (
                    id,
                    organization_id,
                    provider_subscription_id,
                    provider_customer_id,
                    current_tier_id,
                    status,
                    cancel_at_period_end,
                    cancellation_requested_at,
                    first_payment_failure_date,
                    current_period_start,
                    current_period_end,
                    registration_currency,
                    billing_cycle,
                    line_items,
                    override_monthly_fee,
                    override_annual_fee,
                    created_at,
                    updated_at
                )
                VALUES (%(id)s, %(organization_id)s, %(provider_subscription_id)s, %(provider_customer_id)s,
                        %(current_tier_id)s, %(status)s, %(cancel_at_period_end)s,
                        %(cancellation_requested_at)s, %(first_payment_failure_date)s,
                        %(current_period_start)s, %(current_period_end)s, %(registration_currency)s,
                        %(billing_cycle)s, %(line_items)s, %(override_monthly_fee)s,
                        %(override_annual_fee)s, %(created_at)s, %(updated_at)s)
                ON CONFLICT (id) DO UPDATE SET
                    provider_subscription_id = EXCLUDED.provider_subscription_id,
                    provider_customer_id = EXCLUDED.provider_customer_id,
                    current_tier_id = EXCLUDED.current_tier_id,
                    status = EXCLUDED.status,
                    cancel_at_period_end = EXCLUDED.cancel_at_period_end,
                    cancellation_requested_at = EXCLUDED.cancellation_requested_at,
                    first_payment_failure_date = EXCLUDED.first_payment_failure_date,
                    current_period_start = EXCLUDED.current_period_start,
                    current_period_end = EXCLUDED.current_period_end,
                    registration_currency = EXCLUDED.registration_currency,
                    billing_cycle = EXCLUDED.billing_cycle,
                    line_items = EXCLUDED.line_items,
                    override_monthly_fee = EXCLUDED.override_monthly_fee,
                    override_annual_fee = EXCLUDED.override_annual_fee,
                    updated_at = NOW()
                RETURNING *
                """,
                {
                    "id": subscription.id,
                    "organization_id": subscription.organization_id,
                    "provider_subscription_id": subscription.provider_subscription_id,
                    "provider_customer_id": subscription.provider_customer_id,
                    "current_tier_id": subscription.current_tier_id,
                    "status": subscription.status.value,
                    "cancel_at_period_end": subscription.cancel_at_period_end,
                    "cancellation_requested_at": subscription.cancellation_requested_at,
                    "first_payment_failure_date": subscription.first_payment_failure_date,
                    "current_period_start": subscription.current_period_start,
                    "current_period_end": subscription.current_period_end,
                    "registration_currency": subscription.registration_currency,
                    "billing_cycle": subscription.billing_cycle.value,
                    "line_items": psycopg2.extras.Json(
                        [item.model_dump(mode="json") for item in subscription.line_items]
                    ),
                    "override_monthly_fee": subscription.override_monthly_fee,
                    "override_annual_fee": subscription.override_annual_fee,
                    "created_at": subscription.created_at,
                    "updated_at": subscription.updated_at,
                },
            )
            row = cursor.fetchone()
            if not row:
                raise RuntimeError("Failed to persist subscription")
            return _row_to_subscription(row)

    def list_modules(self, subscription_id: str) -> Sequence[InstanceModule]:
        with self._cursor() as cursor:
            cursor.execute(
                "SELECT * FROM instance_modules WHERE instance_id = %s ORDER BY enabled_date ASC NULLS LAST",
                (subscription_id,),
            )
            return [_row_to_module(row) for row in cursor.fetchall()]

    def save_module(self, module: InstanceModule) -> InstanceModule:
        with self._cursor() as cursor:
            cursor.execute(
                """
                INSERT INTO instance_modules (id, instance_id, module_id, is_enabled, enabled_date, disabled_date)
                VALUES (%s, %s, %s, %s, %s, %s)
                ON CONFLICT (instance_id, module_id) DO UPDATE SET
                    is_enabled = EXCLUDED.is_enabled,
                    enabled_date = EXCLUDED.enabled_date,
                    disabled_date = EXCLUDED.disabled_date
                RETURNING *
                """,
                (
                    module.id,
                    module.subscription_id,
                    module.module_id,
                    module.is_enabled,
                    module.enabled_date,
                    module.disabled_date,
                ),
            )
            row = cursor.fetchone()
            if not row:
                raise RuntimeError("Failed to persist instance module")
            return _row_to_module(row)

    def list_bundles(self, subscription_id: str) -> Sequence[InstanceBundle]:
        with self._cursor() as cursor:
            cursor.execute(
                "SELECT * FROM instance_bundles WHERE instance_id = %s ORDER BY start_date ASC NULLS LAST",
                (subscription_id,),
            )
            return [_row_to_bundle(row) for row in cursor.fetchall()]

    def save_bundle(self, bundle: InstanceBundle) -> InstanceBundle:
        with self._cursor() as cursor:
            cursor.execute(
                """
                INSERT INTO instance_bundles (id, instance_id, bundle_id, is_active, start_date, end_date)
                VALUES (%s, %s, %s, %s, %s, %s)
                ON CONFLICT (instance_id, bundle_id) DO UPDATE SET
                    is_active = EXCLUDED.is_active,
                    start_date = EXCLUDED.start_date,
                    end_date = EXCLUDED.end_date
                RETURNING *
                """,
                (
                    bundle.id,
                    bundle.subscription_id,
                    bundle.bundle_id,
                    bundle.is_active,
                    bundle.start_date,
                    bundle.end_date,
                ),
            )
            row = cursor.fetchone()
            if not row:
                raise RuntimeError("Failed to persist instance bundle")
            return _row_to_bundle(row)

    def list_active_bundle_records(self, bundle_id: str) -> Sequence[InstanceBundle]:
        with self._cursor() as cursor:
            cursor.execute(
                "SELECT * FROM instance_bundles WHERE bundle_id = %s AND is_active = TRUE",
                (bundle_id,),
            )
            return [_row_to_bundle(row) for row in cursor.fetchall()]

    def get_processed_event(self, external_event_id: str) -> Optional[ProcessedEvent]:
        with self._cursor() as cursor:
            cursor.execute(
                "SELECT * FROM processed_webhook_events WHERE external_event_id = %s FOR UPDATE",
                (external_event_id,),
            )
            row = cursor.fetchone()
            return _row_to_processed_event(row) if row else None

    def save_processed_event(self, event: ProcessedEvent) -> ProcessedEvent:
        with self._cursor() as cursor:
            cursor.execute(
                """
                INSERT INTO processed_webhook_events (
                    external_event_id,
                    event_type,
                    organization_id,
                    status,
                    processed_at,
                    result_summary,
                    retry_count,
                    last_error,
                    payload,
                    updated_at
                )
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, NOW())
                ON CONFLICT (external_event_id) DO UPDATE SET
                    organization_id = COALESCE(EXCLUDED.organization_id, processed_webhook_events.organization_id),
                    status = EXCLUDED.status,
                    processed_at = EXCLUDED.processed_at,
                    result_summary = EXCLUDED.result_summary,
                    retry_count = EXCLUDED.retry_count,
                    last_error = EXCLUDED.last_error,
                    payload = EXCLUDED.payload,
                    updated_at = NOW()
                RETURNING *
                """,
                (
                    event.external_event_id,
                    event.event_type,
                    event.organization_id,
                    event.status.value,
                    event.processed_at,
                    event.result_summary,
                    event.retry_count,
                    event.last_error,
                    psycopg2.extras.Json(event.payload),
                ),
            )
            row = cursor.fetchone()
            if not row:
                raise RuntimeError("Failed to persist processed event")
            return _row_to_processed_event(row)

    def list_processed_events(
        self,
        *,
        status: ProcessedEventStatus,
        limit: int = 50,
    ) -> Sequence[ProcessedEvent]:
        with self._cursor() as cursor:
            cursor.execute(
                """
                SELECT *
                FROM processed_webhook_events
                WHERE status = %s
                ORDER BY updated_at ASC
                LIMIT %s
                """,
                (status.value, limit),
            )
            return [_row_to_processed_event(row) for row in cursor.fetchall()]


__all__ = ["PostgresSubscriptionRepository"]
