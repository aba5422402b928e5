from typing import List

import pytest

from inspect_billing.app.exceptions import (
    ExternalProviderError,
    InsufficientCreditsError,
    TransientStorageError,
)
from inspect_billing.app.retry import RetryPolicy


class Flaky:
    def __init__(self, failures: int, error=TransientStorageError) -> None:
        self.failures = failures
        self.error = error
        self.calls = 0

    def __call__(self) -> str:
        self.calls += 1
        if self.calls <= self.failures:
            raise self.error("database busy")
        return "done"


def test_delays_grow_and_are_capped():
    policy = RetryPolicy(base_delay_seconds=0.5, max_delay_seconds=3.0)

    assert [policy.delay_for(attempt) for attempt in range(1, 6)] == [0.5, 1.0, 2.0, 3.0, 3.0]
    assert RetryPolicy(base_delay_seconds=0).delay_for(3) == 0.0


def test_retryable_errors_are_retried_until_success():
    sleeps: List[float] = []
    operation = Flaky(failures=2)

    result = RetryPolicy(max_attempts=3, sleep=sleeps.append).run(operation)

    assert result == "done"
    assert operation.calls == 3
    assert sleeps == [0.5, 1.0]


def test_last_retryable_error_propagates_when_attempts_run_out():
    sleeps: List[float] = []
    operation = Flaky(failures=5, error=ExternalProviderError)

    with pytest.raises(ExternalProviderError):
        RetryPolicy(max_attempts=2, sleep=sleeps.append).run(operation)

    assert operation.calls == 2
    assert sleeps == [0.5]


def test_non_retryable_errors_propagate_immediately():
    sleeps: List[float] = []
    operation = Flaky(failures=1, error=InsufficientCreditsError)

    with pytest.raises(InsufficientCreditsError):
        RetryPolicy(sleep=sleeps.append).run(operation)

    assert operation.calls == 1
    assert sleeps == []


def test_other_exceptions_are_not_retried():
    calls = []

    def boom():
        calls.append(1)
        raise KeyError("missing")

    with pytest.raises(KeyError):
        RetryPolicy(sleep=lambda _: None).run(boom)

    assert calls == [1]
