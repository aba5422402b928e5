"""In-memory storage backend used by the local sandbox and the test-suite."""
from __future__ import annotations

import threading
from contextlib import contextmanager
from datetime import datetime
from typing import Dict, Generic, Hashable, Iterator, List, Optional, Sequence, TypeVar

from ..exceptions import DataIntegrityError
from ..ledger.models import CreditBatch, CreditLedgerEntry, Organization
from ..subscriptions.models import (
    InstanceBundle,
    InstanceModule,
    InstanceSubscription,
    ProcessedEvent,
    ProcessedEventStatus,
)
from .transactions import TransactionScope

K = TypeVar("K", bound=Hashable)
V = TypeVar("V")


class _Table(Generic[K, V]):
    def __init__(self) -> None:
        self.rows: Dict[K, V] = {}


class _StagedTable(Generic[K, V]):
    """Write set over a table; nothing reaches the table until ``commit``."""

    def __init__(self, table: _Table[K, V]) -> None:
        self._table = table
        self._writes: Dict[K, V] = {}

    def get(self, key: K) -> Optional[V]:
        if key in self._writes:
            return self._writes[key]
        return self._table.rows.get(key)

    def put(self, key: K, value: V) -> V:
        self._writes[key] = value
        return value

    def values(self) -> List[V]:
        merged = dict(self._table.rows)
        merged.update(self._writes)
        return list(merged.values())

    def commit(self) -> None:
        self._table.rows.update(self._writes)


class _Workspace:
    def __init__(self, store: "InMemoryBillingStore") -> None:
        self.organizations: _StagedTable[str, Organization] = _StagedTable(store._organizations)
        self.batches: _StagedTable[str, CreditBatch] = _StagedTable(store._batches)
        self.entries: _StagedTable[str, CreditLedgerEntry] = _StagedTable(store._entries)
        self.subscriptions: _StagedTable[str, InstanceSubscription] = _StagedTable(store._subscriptions)
        self.modules: _StagedTable[tuple, InstanceModule] = _StagedTable(store._modules)
        self.bundles: _StagedTable[tuple, InstanceBundle] = _StagedTable(store._bundles)
        self.events: _StagedTable[str, ProcessedEvent] = _StagedTable(store._events)

    def commit(self) -> None:
        for table in (
            self.organizations,
            self.batches,
            self.entries,
            self.subscriptions,
            self.modules,
            self.bundles,
            self.events,
        ):
            table.commit()


class InMemoryCreditLedgerRepository:
    def __init__(self, workspace: _Workspace) -> None:
        self._ws = workspace

    def get_organization(self, organization_id: str) -> Optional[Organization]:
        return self._ws.organizations.get(organization_id)

    def set_organization_credits(self, organization_id: str, credits_remaining: int) -> Organization:
        organization = self._ws.organizations.get(organization_id)
        if organization is None:
            raise LookupError("Organization not found")
        return self._ws.organizations.put(
            organization_id, organization.model_copy(update={"credits_remaining": credits_remaining})
        )

    def list_batches(self, organization_id: str) -> Sequence[CreditBatch]:
        return sorted(
            (batch for batch in self._ws.batches.values() if batch.organization_id == organization_id),
            key=lambda batch: batch.granted_at,
        )

    def list_available_batches(self, organization_id: str, *, now: datetime) -> Sequence[CreditBatch]:
        return sorted(
            (batch for batch in self.list_batches(organization_id) if batch.is_available(now)),
            key=CreditBatch.consumption_order_key,
        )

    def insert_batch(self, batch: CreditBatch) -> CreditBatch:
        if self._ws.batches.get(batch.id) is not None:
            raise DataIntegrityError("Duplicate credit batch id", detail={"batch_id": batch.id})
        return self._ws.batches.put(batch.id, batch)

    def update_batch_remaining(self, batch_id: str, remaining_quantity: int) -> CreditBatch:
        batch = self._ws.batches.get(batch_id)
        if batch is None:
            raise LookupError("Credit batch not found")
        if remaining_quantity < 0 or remaining_quantity > batch.granted_quantity:
            raise DataIntegrityError(
                "Credit batch constraint violated",
                detail={"batch_id": batch_id, "remaining_quantity": remaining_quantity},
            )
        return self._ws.batches.put(batch_id, batch.model_copy(update={"remaining_quantity": remaining_quantity}))

    def insert_entry(self, entry: CreditLedgerEntry) -> CreditLedgerEntry:
        return self._ws.entries.put(entry.id, entry)

    def list_entries(
        self,
        organization_id: str,
        *,
        batch_id: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> Sequence[CreditLedgerEntry]:
        entries = [
            entry
            for entry in self._ws.entries.values()
            if entry.organization_id == organization_id and (batch_id is None or entry.batch_id == batch_id)
        ]
        entries.sort(key=lambda entry: entry.created_at)
        return entries[:limit] if limit is not None else entries


class InMemorySubscriptionRepository:
    def __init__(self, workspace: _Workspace) -> None:
        self._ws = workspace

    def get_subscription(self, subscription_id: str) -> Optional[InstanceSubscription]:
        return self._ws.subscriptions.get(subscription_id)

    def get_subscription_for_organization(self, organization_id: str) -> Optional[InstanceSubscription]:
        matches = [
            subscription
            for subscription in self._ws.subscriptions.values()
            if subscription.organization_id == organization_id
        ]
        if len(matches) > 1:
            raise DataIntegrityError(
                "Organization has more than one subscription record",
                detail={"organization_id": organization_id},
            )
        return matches[0] if matches else None

    def get_subscription_by_provider_id(self, provider_subscription_id: str) -> Optional[InstanceSubscription]:
        for subscription in self._ws.subscriptions.values():
            if subscription.provider_subscription_id == provider_subscription_id:
                return subscription
        return None

    def save_subscription(self, subscription: InstanceSubscription) -> InstanceSubscription:
        return self._ws.subscriptions.put(subscription.id, subscription)

    def list_modules(self, subscription_id: str) -> Sequence[InstanceModule]:
        return [module for module in self._ws.modules.values() if module.subscription_id == subscription_id]

    def save_module(self, module: InstanceModule) -> InstanceModule:
        key = (module.subscription_id, module.module_id)
        existing = self._ws.modules.get(key)
        if existing is not None and existing.id != module.id:
            module = module.model_copy(update={"id": existing.id})
        return self._ws.modules.put(key, module)

    def list_bundles(self, subscription_id: str) -> Sequence[InstanceBundle]:
        return [bundle for bundle in self._ws.bundles.values() if bundle.subscription_id == subscription_id]

    def save_bundle(self, bundle: InstanceBundle) -> InstanceBundle:
        key = (bundle.subscription_id, bundle.bundle_id)
        existing = self._ws.bundles.get(key)
        if existing is not None and existing.id != bundle.id:
            bundle = bundle.model_copy(update={"id": existing.id})
        return self._ws.bundles.put(key, bundle)

    def list_active_bundle_records(self, bundle_id: str) -> Sequence[InstanceBundle]:
        return [
            bundle for bundle in self._ws.bundles.values() if bundle.bundle_id == bundle_id and bundle.is_active
        ]

    def get_processed_event(self, external_event_id: str) -> Optional[ProcessedEvent]:
        return self._ws.events.get(external_event_id)

    def save_processed_event(self, event: ProcessedEvent) -> ProcessedEvent:
        return self._ws.events.put(event.external_event_id, event)

    def list_processed_events(
        self,
        *,
        status: ProcessedEventStatus,
        limit: int = 50,
    ) -> Sequence[ProcessedEvent]:
        events = sorted(
            (event for event in self._ws.events.values() if event.status == status),
            key=lambda event: event.updated_at,
        )
        return events[:limit]


class InMemoryBillingStore:
    """Thread-safe store mirroring the PostgreSQL transaction semantics.

    Scopes for the same organization are serialized by a per-organization
    lock; writes are staged and only applied when the scope exits cleanly.
    """

    def __init__(self) -> None:
        self._organizations: _Table[str, Organization] = _Table()
        self._batches: _Table[str, CreditBatch] = _Table()
        self._entries: _Table[str, CreditLedgerEntry] = _Table()
        self._subscriptions: _Table[str, InstanceSubscription] = _Table()
        self._modules: _Table[tuple, InstanceModule] = _Table()
        self._bundles: _Table[tuple, InstanceBundle] = _Table()
        self._events: _Table[str, ProcessedEvent] = _Table()
        self._locks: Dict[Optional[str], threading.RLock] = {}
        self._locks_guard = threading.Lock()
        self._commit_lock = threading.Lock()

    def _lock_for(self, organization_id: Optional[str]) -> threading.RLock:
        with self._locks_guard:
            lock = self._locks.get(organization_id)
            if lock is None:
                lock = threading.RLock()
                self._locks[organization_id] = lock
            return lock

    @contextmanager
    def transaction(self, organization_id: Optional[str]) -> Iterator[TransactionScope]:
        with self._lock_for(organization_id):
            if organization_id is not None and organization_id not in self._organizations.rows:
                raise LookupError("Organization not found")
            workspace = _Workspace(self)
            yield TransactionScope(
                ledger=InMemoryCreditLedgerRepository(workspace),
                subscriptions=InMemorySubscriptionRepository(workspace),
                organization_id=organization_id,
            )
            with self._commit_lock:
                workspace.commit()

    def add_organization(self, organization_id: str, *, name: Optional[str] = None, credits_remaining: int = 0) -> Organization:
        organization = Organization(id=organization_id, name=name, credits_remaining=credits_remaining)
        with self._commit_lock:
            self._organizations.rows[organization_id] = organization
        return organization


__all__ = [
    "InMemoryBillingStore",
    "InMemoryCreditLedgerRepository",
    "InMemorySubscriptionRepository",
]
