"""Entitlement reconciliation and module/bundle actions."""

from .models import EntitlementChange, ReconciliationDecision, ReconciliationResult
from .service import BillingProvider, EntitlementReconciler, EntitlementService

__all__ = [
    "BillingProvider",
    "EntitlementChange",
    "EntitlementReconciler",
    "EntitlementService",
    "ReconciliationDecision",
    "ReconciliationResult",
]
