"""Bounded exponential-backoff retries for retryable billing errors."""
from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Callable, TypeVar

from .exceptions import BillingError


logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class RetryPolicy:
    """Retries an operation while it raises a retryable :class:`BillingError`.

    Non-billing exceptions and non-retryable kinds propagate on the first
    attempt. The last retryable error propagates once attempts run out.
    """

    max_attempts: int = 3
    base_delay_seconds: float = 0.5
    max_delay_seconds: float = 8.0
    sleep: Callable[[float], None] = field(default=time.sleep, repr=False)

    def delay_for(self, attempt: int) -> float:
        """Delay after the ``attempt``-th failure (1-based)."""

        if self.base_delay_seconds <= 0:
            return 0.0
        return min(self.max_delay_seconds, self.base_delay_seconds * (2 ** (attempt - 1)))

    def run(self, operation: Callable[[], T], *, description: str = "billing operation") -> T:
        attempts = max(1, self.max_attempts)
        for attempt in range(1, attempts + 1):
            try:
                return operation()
            except BillingError as exc:
                if not exc.retryable or attempt >= attempts:
                    raise
                delay = self.delay_for(attempt)
                logger.warning(
                    "Retrying %s after %s",
                    description,
                    exc.code,
                    extra={"retry_attempt": attempt, "retry_attempts": attempts, "retry_delay": delay},
                )
                if delay > 0:
                    self.sleep(delay)
        raise RuntimeError("unreachable")  # pragma: no cover


__all__ = ["RetryPolicy"]
