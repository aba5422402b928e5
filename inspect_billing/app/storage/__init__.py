"""Transaction scopes and storage backends."""

from .memory import InMemoryBillingStore
from .transactions import PostgresTransactionManager, TransactionManager, TransactionScope

__all__ = [
    "InMemoryBillingStore",
    "PostgresTransactionManager",
    "TransactionManager",
    "TransactionScope",
]
