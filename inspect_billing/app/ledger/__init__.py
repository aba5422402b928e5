"""Inspection credit ledger."""

from .models import (
    AdminGrantMetadata,
    CreditBalance,
    CreditBatch,
    CreditLedgerEntry,
    CreditSource,
    ExpiryPolicy,
    GrantMetadata,
    LedgerEntrySource,
    Organization,
    PlanInclusionMetadata,
    RefundMetadata,
    TopupMetadata,
)
from .service import (
    CreditLedgerRepository,
    CreditLedgerService,
    LedgerScope,
    LedgerTransactionManager,
    calculate_inspection_credit_cost,
)

__all__ = [
    "AdminGrantMetadata",
    "CreditBalance",
    "CreditBatch",
    "CreditLedgerEntry",
    "CreditLedgerRepository",
    "CreditLedgerService",
    "CreditSource",
    "ExpiryPolicy",
    "GrantMetadata",
    "LedgerEntrySource",
    "LedgerScope",
    "LedgerTransactionManager",
    "Organization",
    "PlanInclusionMetadata",
    "RefundMetadata",
    "TopupMetadata",
    "calculate_inspection_credit_cost",
]
