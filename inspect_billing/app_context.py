"""Process-wide connection factory used by the PostgreSQL repositories."""
from __future__ import annotations

from typing import Any, Callable, Optional

_connection_factory: Optional[Callable[[], Any]] = None


def configure(*, get_conn: Callable[[], Any]) -> None:
    """Register the psycopg2 connection factory; ``main`` calls this at startup."""

    global _connection_factory

    _connection_factory = get_conn


def is_configured() -> bool:
    return _connection_factory is not None


def get_conn() -> Any:
    if _connection_factory is None:
        raise RuntimeError("Billing database connections have not been configured")
    return _connection_factory()
