"""Organization-scoped units of work binding repositories to one transaction."""
from __future__ import annotations

from contextlib import contextmanager
from dataclasses import dataclass
from typing import ContextManager, Iterator, Optional, Protocol

from ..db import managed_connection
from ..ledger.repository import PostgresCreditLedgerRepository
from ..ledger.service import CreditLedgerRepository
from ..subscriptions.repository import PostgresSubscriptionRepository
from ..subscriptions.service import SubscriptionRepository


@dataclass(frozen=True)
class TransactionScope:
    """Repositories sharing a single transaction."""

    ledger: CreditLedgerRepository
    subscriptions: SubscriptionRepository
    organization_id: Optional[str] = None


class TransactionManager(Protocol):
    """Opens transaction scopes, serialized per organization when one is given."""

    def transaction(self, organization_id: Optional[str]) -> ContextManager[TransactionScope]:
        ...


class PostgresTransactionManager:
    """Transaction scopes over a psycopg2 connection.

    The organization row is locked with ``SELECT ... FOR UPDATE`` for the
    lifetime of the scope, so concurrent ledger and subscription mutations
    for one organization are serialized by the database.
    """

    @contextmanager
    def transaction(self, organization_id: Optional[str]) -> Iterator[TransactionScope]:
        with managed_connection() as (connection, _managed):
            if organization_id is not None:
                with connection.cursor() as cursor:
                    cursor.execute(
                        "SELECT id FROM organizations WHERE id = %s FOR UPDATE",
                        (organization_id,),
                    )
                    if cursor.fetchone() is None:
                        raise LookupError("Organization not found")
            yield TransactionScope(
                ledger=PostgresCreditLedgerRepository(conn=connection),
                subscriptions=PostgresSubscriptionRepository(conn=connection),
                organization_id=organization_id,
            )


__all__ = ["PostgresTransactionManager", "TransactionManager", "TransactionScope"]
