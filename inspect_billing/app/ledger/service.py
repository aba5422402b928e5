"""Credit ledger: grants, FIFO consumption and expiry of inspection credits."""
from __future__ import annotations

import logging
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, ContextManager, Iterator, List, Optional, Protocol, Sequence, Tuple
from uuid import uuid4

from ..exceptions import DataIntegrityError, InsufficientCreditsError, ValidationError
from .models import (
    CreditBalance,
    CreditBatch,
    CreditLedgerEntry,
    CreditSource,
    ExpiryPolicy,
    GrantMetadata,
    LedgerEntrySource,
    Organization,
)


logger = logging.getLogger(__name__)

MAX_INSPECTION_CREDIT_COST = 3

_LINKED_ENTITY_BY_SOURCE = {
    CreditSource.PLAN_INCLUSION: "subscription",
    CreditSource.TOPUP: "topup_order",
    CreditSource.ADMIN_GRANT: "admin_grant",
    CreditSource.REFUND: "refund",
}


class CreditLedgerRepository(Protocol):
    """Persistence operations required by the credit ledger.

    Implementations are bound to one open transaction; callers obtain them
    from a transaction scope that already holds the organization lock.
    """

    def get_organization(self, organization_id: str) -> Optional[Organization]:
        ...

    def set_organization_credits(self, organization_id: str, credits_remaining: int) -> Organization:
        ...

    def list_batches(self, organization_id: str) -> Sequence[CreditBatch]:
        ...

    def list_available_batches(self, organization_id: str, *, now: datetime) -> Sequence[CreditBatch]:
        ...

    def insert_batch(self, batch: CreditBatch) -> CreditBatch:
        ...

    def update_batch_remaining(self, batch_id: str, remaining_quantity: int) -> CreditBatch:
        ...

    def insert_entry(self, entry: CreditLedgerEntry) -> CreditLedgerEntry:
        ...

    def list_entries(
        self,
        organization_id: str,
        *,
        batch_id: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> Sequence[CreditLedgerEntry]:
        ...


class LedgerScope(Protocol):
    """Anything exposing a transaction-bound ledger repository."""

    ledger: CreditLedgerRepository


class LedgerTransactionManager(Protocol):
    def transaction(self, organization_id: Optional[str]) -> ContextManager[LedgerScope]:
        ...


def _current_time(clock: Optional[Callable[[], datetime]]) -> datetime:
    current = clock() if clock else datetime.now(timezone.utc)
    if current.tzinfo is None:
        return current.replace(tzinfo=timezone.utc)
    return current


def calculate_inspection_credit_cost(complexity: int = 1) -> int:
    """Credits charged for one inspection: its complexity level, capped at 3."""

    return max(1, min(int(complexity), MAX_INSPECTION_CREDIT_COST))


@dataclass
class CreditLedgerService:
    """Coordinates every mutation of credit batches and the ledger."""

    transactions: LedgerTransactionManager
    clock: Optional[Callable[[], datetime]] = None

    def _now(self) -> datetime:
        return _current_time(self.clock)

    @contextmanager
    def _scope(self, organization_id: str, scope: Optional[LedgerScope]) -> Iterator[LedgerScope]:
        if scope is not None:
            yield scope
            return
        with self.transactions.transaction(organization_id) as opened:
            yield opened

    def grant_credits(
        self,
        organization_id: str,
        quantity: int,
        source: CreditSource,
        *,
        expires_at: Optional[datetime] = None,
        metadata: Optional[GrantMetadata] = None,
        unit_cost_minor_units: Optional[int] = None,
        linked_entity_id: Optional[str] = None,
        scope: Optional[LedgerScope] = None,
    ) -> CreditBatch:
        if quantity <= 0:
            raise ValidationError("quantity must be greater than zero", detail={"quantity": quantity})
        if metadata is not None and metadata.source != source.value:
            raise ValidationError(
                "metadata does not match the credit source",
                detail={"source": source.value, "metadata_source": metadata.source},
            )
        if unit_cost_minor_units is not None and unit_cost_minor_units < 0:
            raise ValidationError("unit_cost_minor_units cannot be negative")

        with self._scope(organization_id, scope) as opened:
            organization = self._require_organization(opened, organization_id)
            now = self._now()
            batch = opened.ledger.insert_batch(
                CreditBatch(
                    id=f"cb_{uuid4().hex}",
                    organization_id=organization_id,
                    granted_quantity=quantity,
                    remaining_quantity=quantity,
                    source=source,
                    granted_at=now,
                    expires_at=expires_at,
                    unit_cost_minor_units=unit_cost_minor_units,
                    metadata=metadata,
                )
            )
            opened.ledger.insert_entry(
                CreditLedgerEntry(
                    id=f"cle_{uuid4().hex}",
                    organization_id=organization_id,
                    source=LedgerEntrySource.from_credit_source(source),
                    quantity=quantity,
                    batch_id=batch.id,
                    linked_entity_type=_LINKED_ENTITY_BY_SOURCE[source],
                    linked_entity_id=linked_entity_id,
                    unit_cost_minor_units=unit_cost_minor_units,
                    notes=f"Granted {quantity} credits from {source.value}",
                    created_at=now,
                )
            )
            opened.ledger.set_organization_credits(
                organization_id, organization.credits_remaining + quantity
            )

        logger.info(
            "Granted %s credits to organization %s from %s",
            quantity,
            organization_id,
            source.value,
            extra={"organization_id": organization_id, "batch_id": batch.id},
        )
        return batch

    def consume_credits(
        self,
        organization_id: str,
        quantity: int,
        entity_type: str,
        entity_id: str,
        *,
        notes: Optional[str] = None,
        scope: Optional[LedgerScope] = None,
    ) -> Tuple[CreditLedgerEntry, ...]:
        """Draw ``quantity`` credits from available batches, earliest expiry first.

        The draw is planned in full before any batch is touched, so an
        unsatisfiable request leaves every batch unchanged.
        """

        if quantity <= 0:
            raise ValidationError("quantity must be greater than zero", detail={"quantity": quantity})

        with self._scope(organization_id, scope) as opened:
            organization = self._require_organization(opened, organization_id)
            now = self._now()
            batches = sorted(
                (
                    batch
                    for batch in opened.ledger.list_available_batches(organization_id, now=now)
                    if batch.is_available(now)
                ),
                key=CreditBatch.consumption_order_key,
            )
            plan = _plan_draw(batches, quantity)
            if plan is None:
                available = sum(batch.remaining_quantity for batch in batches)
                raise InsufficientCreditsError(
                    "Insufficient credits",
                    detail={"requested": quantity, "available": available},
                )

            entries: List[CreditLedgerEntry] = []
            for batch, draw in plan:
                remaining = batch.remaining_quantity - draw
                if remaining < 0:
                    raise DataIntegrityError(
                        "Credit batch would become negative",
                        detail={"batch_id": batch.id, "remaining_quantity": remaining},
                    )
                opened.ledger.update_batch_remaining(batch.id, remaining)
                entries.append(
                    opened.ledger.insert_entry(
                        CreditLedgerEntry(
                            id=f"cle_{uuid4().hex}",
                            organization_id=organization_id,
                            source=LedgerEntrySource.CONSUMPTION,
                            quantity=-draw,
                            batch_id=batch.id,
                            linked_entity_type=entity_type,
                            linked_entity_id=entity_id,
                            unit_cost_minor_units=batch.unit_cost_minor_units,
                            notes=notes or f"Consumed {draw} credits for {entity_type} {entity_id}",
                            created_at=now,
                        )
                    )
                )
            opened.ledger.set_organization_credits(
                organization_id, max(0, organization.credits_remaining - quantity)
            )

        logger.info(
            "Consumed %s credits for organization %s across %s batches",
            quantity,
            organization_id,
            len(entries),
            extra={"organization_id": organization_id, "entity_type": entity_type, "entity_id": entity_id},
        )
        return tuple(entries)

    def expire_batches(
        self,
        organization_id: str,
        policy: ExpiryPolicy,
        *,
        reason: str,
        scope: Optional[LedgerScope] = None,
    ) -> Tuple[CreditLedgerEntry, ...]:
        """Zero out remaining credits of the batches selected by ``policy``."""

        def selected(batch: CreditBatch) -> bool:
            if policy == ExpiryPolicy.PLAN_INCLUSION:
                return batch.source == CreditSource.PLAN_INCLUSION
            return True

        return self._expire(organization_id, selected, reason=reason, scope=scope)

    def expire_lapsed_batches(
        self,
        organization_id: str,
        *,
        scope: Optional[LedgerScope] = None,
    ) -> Tuple[CreditLedgerEntry, ...]:
        """Zero out batches whose expiry time has already passed."""

        now = self._now()
        return self._expire(
            organization_id,
            lambda batch: batch.expires_at is not None and batch.expires_at <= now,
            reason="lapsed",
            scope=scope,
        )

    def _expire(
        self,
        organization_id: str,
        selected: Callable[[CreditBatch], bool],
        *,
        reason: str,
        scope: Optional[LedgerScope],
    ) -> Tuple[CreditLedgerEntry, ...]:
        with self._scope(organization_id, scope) as opened:
            organization = self._require_organization(opened, organization_id)
            now = self._now()
            entries: List[CreditLedgerEntry] = []
            for batch in opened.ledger.list_batches(organization_id):
                if batch.remaining_quantity <= 0 or not selected(batch):
                    continue
                opened.ledger.update_batch_remaining(batch.id, 0)
                entries.append(
                    opened.ledger.insert_entry(
                        CreditLedgerEntry(
                            id=f"cle_{uuid4().hex}",
                            organization_id=organization_id,
                            source=LedgerEntrySource.EXPIRY,
                            quantity=-batch.remaining_quantity,
                            batch_id=batch.id,
                            unit_cost_minor_units=batch.unit_cost_minor_units,
                            notes=f"Expired {batch.remaining_quantity} {batch.source.value} credits ({reason})",
                            created_at=now,
                        )
                    )
                )
            expired_total = -sum(entry.quantity for entry in entries)
            if expired_total:
                opened.ledger.set_organization_credits(
                    organization_id, max(0, organization.credits_remaining - expired_total)
                )

        if entries:
            logger.info(
                "Expired %s credits across %s batches for organization %s (%s)",
                expired_total,
                len(entries),
                organization_id,
                reason,
            )
        return tuple(entries)

    def get_balance(self, organization_id: str, *, scope: Optional[LedgerScope] = None) -> CreditBalance:
        with self._scope(organization_id, scope) as opened:
            organization = self._require_organization(opened, organization_id)
            now = self._now()
            batches = tuple(
                sorted(
                    (batch for batch in opened.ledger.list_batches(organization_id) if batch.is_available(now)),
                    key=CreditBatch.consumption_order_key,
                )
            )
        return CreditBalance(
            organization_id=organization_id,
            credits_remaining=organization.credits_remaining,
            available_credits=sum(batch.remaining_quantity for batch in batches),
            batches=batches,
        )

    def list_entries(
        self,
        organization_id: str,
        *,
        batch_id: Optional[str] = None,
        limit: Optional[int] = None,
        scope: Optional[LedgerScope] = None,
    ) -> Sequence[CreditLedgerEntry]:
        with self._scope(organization_id, scope) as opened:
            return opened.ledger.list_entries(organization_id, batch_id=batch_id, limit=limit)

    def audit_batches(self, organization_id: str, *, scope: Optional[LedgerScope] = None) -> None:
        """Verify that every batch's drawn quantity equals its negative entries."""

        with self._scope(organization_id, scope) as opened:
            for batch in opened.ledger.list_batches(organization_id):
                entries = opened.ledger.list_entries(organization_id, batch_id=batch.id)
                drawn = -sum(entry.quantity for entry in entries if entry.quantity < 0)
                if batch.granted_quantity - batch.remaining_quantity != drawn:
                    logger.critical(
                        "Credit batch %s out of balance: granted=%s remaining=%s drawn=%s",
                        batch.id,
                        batch.granted_quantity,
                        batch.remaining_quantity,
                        drawn,
                    )
                    raise DataIntegrityError(
                        "Credit batch does not match its ledger entries",
                        detail={
                            "batch_id": batch.id,
                            "granted_quantity": batch.granted_quantity,
                            "remaining_quantity": batch.remaining_quantity,
                            "drawn": drawn,
                        },
                    )

    def _require_organization(self, scope: LedgerScope, organization_id: str) -> Organization:
        organization = scope.ledger.get_organization(organization_id)
        if organization is None:
            raise LookupError("Organization not found")
        return organization


def _plan_draw(batches: Sequence[CreditBatch], quantity: int) -> Optional[List[Tuple[CreditBatch, int]]]:
    plan: List[Tuple[CreditBatch, int]] = []
    needed = quantity
    for batch in batches:
        if needed <= 0:
            break
        draw = min(batch.remaining_quantity, needed)
        if draw > 0:
            plan.append((batch, draw))
            needed -= draw
    return plan if needed <= 0 else None


__all__ = [
    "CreditLedgerRepository",
    "CreditLedgerService",
    "LedgerScope",
    "LedgerTransactionManager",
    "MAX_INSPECTION_CREDIT_COST",
    "calculate_inspection_credit_cost",
]
