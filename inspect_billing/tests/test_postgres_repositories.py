from datetime import datetime, timezone

import psycopg2
import psycopg2.extras
import pytest

from inspect_billing import app_context
from inspect_billing.app.exceptions import DataIntegrityError, TransientStorageError
from inspect_billing.app.ledger import CreditSource
from inspect_billing.app.ledger.repository import PostgresCreditLedgerRepository
from inspect_billing.app.storage import PostgresTransactionManager


NOW = datetime(2026, 3, 1, 9, 0, tzinfo=timezone.utc)


class FakeCursor:
    def __init__(self, *, fetchone_result=None, fetchall_result=None, error=None):
        self.fetchone_result = fetchone_result
        self.fetchall_result = list(fetchall_result or [])
        self.error = error
        self.execute_calls = []
        self.closed = False

    def execute(self, query, params=None):
        self.execute_calls.append((" ".join(query.split()), params))
        if self.error is not None:
            raise self.error

    def fetchone(self):
        return self.fetchone_result

    def fetchall(self):
        return list(self.fetchall_result)

    def close(self):
        self.closed = True

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.closed = True
        return False


class FakeConnection:
    def __init__(self, *cursors):
        self._cursors = list(cursors)
        self.cursor_calls = []
        self.committed = False
        self.rolled_back = False
        self.closed = False

    def cursor(self, *args, **kwargs):
        self.cursor_calls.append((args, kwargs))
        if not self._cursors:
            raise AssertionError("No cursors configured")
        return self._cursors.pop(0)

    def commit(self):
        self.committed = True

    def rollback(self):
        self.rolled_back = True

    def close(self):
        self.closed = True


def _batch_row(**overrides):
    row = {
        "id": "cb_1",
        "organization_id": "org-1",
        "granted_quantity": 10,
        "remaining_quantity": 4,
        "grant_source": "plan_inclusion",
        "granted_at": NOW,
        "expires_at": None,
        "unit_cost_minor_units": None,
        "rolled": False,
        "metadata_json": None,
    }
    row.update(overrides)
    return row


def test_transaction_locks_organization_and_commits(monkeypatch):
    lock_cursor = FakeCursor(fetchone_result={"id": "org-1"})
    conn = FakeConnection(lock_cursor)
    monkeypatch.setattr(app_context, "_connection_factory", lambda: conn)

    with PostgresTransactionManager().transaction("org-1") as scope:
        assert scope.organization_id == "org-1"

    (query, params), = lock_cursor.execute_calls
    assert query == "SELECT id FROM organizations WHERE id = %s FOR UPDATE"
    assert params == ("org-1",)
    assert conn.committed is True
    assert conn.closed is True


def test_transaction_for_unknown_organization_rolls_back(monkeypatch):
    conn = FakeConnection(FakeCursor(fetchone_result=None))
    monkeypatch.setattr(app_context, "_connection_factory", lambda: conn)

    with pytest.raises(LookupError):
        with PostgresTransactionManager().transaction("org-missing"):
            pass

    assert conn.committed is False
    assert conn.rolled_back is True
    assert conn.closed is True


def test_transient_database_errors_become_retryable(monkeypatch):
    conn = FakeConnection(FakeCursor(fetchone_result={"id": "org-1"}))
    monkeypatch.setattr(app_context, "_connection_factory", lambda: conn)

    with pytest.raises(TransientStorageError) as excinfo:
        with PostgresTransactionManager().transaction("org-1"):
            raise psycopg2.OperationalError("server closed the connection")

    assert excinfo.value.retryable is True
    assert conn.rolled_back is True


def test_available_batches_are_locked_in_consumption_order():
    cursor = FakeCursor(fetchall_result=[_batch_row()])
    conn = FakeConnection(cursor)
    repo = PostgresCreditLedgerRepository(conn=conn)

    [batch] = repo.list_available_batches("org-1", now=NOW)

    assert batch.source == CreditSource.PLAN_INCLUSION
    assert batch.remaining_quantity == 4
    (query, params), = cursor.execute_calls
    assert "ORDER BY expires_at ASC NULLS LAST, granted_at ASC FOR UPDATE" in query
    assert params == ("org-1", NOW)
    assert conn.cursor_calls == [((), {"cursor_factory": psycopg2.extras.RealDictCursor})]
    assert cursor.closed is True
    assert conn.committed is False


def test_batch_constraint_violation_is_a_data_integrity_error():
    cursor = FakeCursor(error=psycopg2.IntegrityError("remaining_quantity_check"))
    repo = PostgresCreditLedgerRepository(conn=FakeConnection(cursor))

    with pytest.raises(DataIntegrityError):
        repo.update_batch_remaining("cb_1", -1)


def test_list_entries_filters_by_batch_and_limit():
    cursor = FakeCursor(fetchall_result=[])
    repo = PostgresCreditLedgerRepository(conn=FakeConnection(cursor))

    assert repo.list_entries("org-1", batch_id="cb_1", limit=5) == []

    (query, params), = cursor.execute_calls
    assert query == (
        "SELECT * FROM credit_ledger WHERE organization_id = %s AND batch_id = %s "
        "ORDER BY created_at ASC, id ASC LIMIT %s"
    )
    assert params == ("org-1", "cb_1", 5)
