"""Error taxonomy shared by the ledger, reconciler and webhook processor."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, ClassVar, Dict, Mapping, Optional

from fastapi import HTTPException, status


@dataclass
class BillingError(Exception):
    """Base class for billing failures surfaced to callers and operators.

    ``retryable`` is a property of the error kind: the webhook processor and
    :class:`~inspect_billing.app.retry.RetryPolicy` only retry kinds
    that declare it.
    """

    message: str
    code: str = "billing_error"
    detail: Optional[Mapping[str, Any]] = None

    retryable: ClassVar[bool] = False
    status_code: ClassVar[int] = status.HTTP_500_INTERNAL_SERVER_ERROR

    def __post_init__(self) -> None:
        base_detail: Dict[str, Any] = {"error": self.code, "message": self.message}
        if self.detail:
            base_detail.update(self.detail)
        object.__setattr__(self, "_payload", base_detail)
        super().__init__(self.message)

    def __str__(self) -> str:
        return self.message

    @property
    def payload(self) -> Mapping[str, Any]:
        """Serialized representation suitable for JSON responses."""

        return self._payload

    def to_http_exception(self) -> HTTPException:
        """Convert the domain error into a FastAPI HTTPException."""

        return HTTPException(status_code=self.status_code, detail=dict(self.payload))


@dataclass
class ValidationError(BillingError):
    """Malformed input or an unknown event shape. Never retried."""

    code: str = "validation_error"

    status_code: ClassVar[int] = status.HTTP_422_UNPROCESSABLE_ENTITY


@dataclass
class InsufficientCreditsError(BillingError):
    """Available batches cannot cover a consumption request."""

    code: str = "insufficient_credits"

    status_code: ClassVar[int] = status.HTTP_402_PAYMENT_REQUIRED


@dataclass
class DuplicateEventError(BillingError):
    """The event id was already processed; the prior result is in ``detail``."""

    code: str = "duplicate_event"

    status_code: ClassVar[int] = status.HTTP_200_OK


@dataclass
class ExternalProviderError(BillingError):
    """The billing provider or exchange-rate source failed transiently."""

    code: str = "external_provider_error"

    retryable: ClassVar[bool] = True
    status_code: ClassVar[int] = status.HTTP_502_BAD_GATEWAY


@dataclass
class TransientStorageError(BillingError):
    """The database rejected the transaction for a retryable reason."""

    code: str = "transient_storage_error"

    retryable: ClassVar[bool] = True
    status_code: ClassVar[int] = status.HTTP_503_SERVICE_UNAVAILABLE


@dataclass
class OutOfOrderEventError(BillingError):
    """The event references a subscription that does not exist locally yet."""

    code: str = "out_of_order_event"

    retryable: ClassVar[bool] = True
    status_code: ClassVar[int] = status.HTTP_409_CONFLICT


@dataclass
class DataIntegrityError(BillingError):
    """A stored invariant does not hold. Operators must intervene."""

    code: str = "data_integrity_error"


__all__ = [
    "BillingError",
    "DataIntegrityError",
    "DuplicateEventError",
    "ExternalProviderError",
    "InsufficientCreditsError",
    "OutOfOrderEventError",
    "TransientStorageError",
    "ValidationError",
]
