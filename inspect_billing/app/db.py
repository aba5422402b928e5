"""Connection helpers shared by the PostgreSQL repositories."""
from __future__ import annotations

from contextlib import contextmanager
from typing import Iterator, Optional, Tuple

import psycopg2
from psycopg2 import errorcodes
from psycopg2.extensions import connection as PgConnection

from .. import app_context
from .exceptions import TransientStorageError

# Serialization failures and deadlocks are safe to retry from the top.
_RETRYABLE_PGCODES = {
    errorcodes.SERIALIZATION_FAILURE,
    errorcodes.DEADLOCK_DETECTED,
    errorcodes.LOCK_NOT_AVAILABLE,
}


def is_transient_database_error(exc: BaseException) -> bool:
    if isinstance(exc, psycopg2.OperationalError):
        return True
    return isinstance(exc, psycopg2.Error) and getattr(exc, "pgcode", None) in _RETRYABLE_PGCODES


@contextmanager
def managed_connection(conn: Optional[PgConnection] = None) -> Iterator[Tuple[PgConnection, bool]]:
    """Context manager that manages transaction boundaries for optional connections."""

    if conn is not None:
        yield conn, False
        return

    try:
        connection = app_context.get_conn()
    except psycopg2.OperationalError as exc:
        raise TransientStorageError(f"Could not connect to the database: {exc}") from exc
    try:
        yield connection, True
        connection.commit()
    except Exception as exc:
        connection.rollback()
        if is_transient_database_error(exc):
            raise TransientStorageError(f"Database transaction failed: {exc}") from exc
        raise
    finally:
        connection.close()


__all__ = ["is_transient_database_error", "managed_connection"]
