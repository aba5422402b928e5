"""Persistence layer for credit batches and ledger entries."""
from __future__ import annotations

from contextlib import contextmanager
from datetime import datetime
from typing import Iterator, List, Optional, Sequence

import psycopg2.extras
from psycopg2.extensions import connection as PgConnection
from psycopg2.extensions import cursor as PgCursor

from ..exceptions import DataIntegrityError
from ..db import managed_connection
from .models import CreditBatch, CreditLedgerEntry, CreditSource, LedgerEntrySource, Organization


def _row_to_organization(row: dict) -> Organization:
    return Organization(
        id=str(row["id"]),
        name=row.get("name"),
        credits_remaining=max(0, int(row.get("credits_remaining") or 0)),
    )


def _row_to_batch(row: dict) -> CreditBatch:
    return CreditBatch(
        id=row["id"],
        organization_id=str(row["organization_id"]),
        granted_quantity=int(row["granted_quantity"]),
        remaining_quantity=int(row["remaining_quantity"]),
        source=CreditSource(row["grant_source"]),
        granted_at=row["granted_at"],
        expires_at=row.get("expires_at"),
        unit_cost_minor_units=row.get("unit_cost_minor_units"),
        rolled=bool(row.get("rolled")),
        metadata=row.get("metadata_json") or None,
    )


def _row_to_entry(row: dict) -> CreditLedgerEntry:
    return CreditLedgerEntry(
        id=row["id"],
        organization_id=str(row["organization_id"]),
        source=LedgerEntrySource(row["source"]),
        quantity=int(row["quantity"]),
        batch_id=row["batch_id"],
        linked_entity_type=row.get("linked_entity_type"),
        linked_entity_id=row.get("linked_entity_id"),
        unit_cost_minor_units=row.get("unit_cost_minor_units"),
        notes=row.get("notes"),
        created_at=row["created_at"],
    )


class PostgresCreditLedgerRepository:
    """Credit ledger tables in PostgreSQL.

    Bound to the connection of a transaction scope, every statement joins the
    scope's transaction and sees the organization row lock it holds.
    """

    def __init__(self, *, conn: Optional[PgConnection] = None) -> None:
        self._conn = conn

    @contextmanager
    def _cursor(self) -> Iterator[PgCursor]:
        with managed_connection(self._conn) as (connection, _managed):
            cursor = connection.cursor(cursor_factory=psycopg2.extras.RealDictCursor)
            try:
                yield cursor
            finally:
                cursor.close()

    def get_organization(self, organization_id: str) -> Optional[Organization]:
        with self._cursor() as cursor:
            cursor.execute(
                "SELECT id, name, credits_remaining FROM organizations WHERE id = %s LIMIT 1",
                (organization_id,),
            )
            row = cursor.fetchone()
            return _row_to_organization(row) if row else None

    def set_organization_credits(self, organization_id: str, credits_remaining: int) -> Organization:
        with self._cursor() as cursor:
            cursor.execute(
                """
                UPDATE organizations
                SET credits_remaining = %s, updated_at = NOW()
                WHERE id = %s
                RETURNING id, name, credits_remaining
                """,
                (credits_remaining, organization_id),
            )
            row = cursor.fetchone()
            if not row:
                raise LookupError("Organization not found")
            return _row_to_organization(row)

    def list_batches(self, organization_id: str) -> Sequence[CreditBatch]:
        with self._cursor() as cursor:
            cursor.execute(
                """
                SELECT *
                FROM credit_batches
                WHERE organization_id = %s
                ORDER BY granted_at ASC
                """,
                (organization_id,),
            )
            return [_row_to_batch(row) for row in cursor.fetchall()]

    def list_available_batches(self, organization_id: str, *, now: datetime) -> Sequence[CreditBatch]:
        with self._cursor() as cursor:
            cursor.execute(
                """
                SELECT *
                FROM credit_batches
                WHERE organization_id = %s
                  AND remaining_quantity > 0
                  AND (expires_at IS NULL OR expires_at > %s)
                ORDER BY expires_at ASC NULLS LAST, granted_at ASC
                FOR UPDATE
                """,
                (organization_id, now),
            )
            return [_row_to_batch(row) for row in cursor.fetchall()]

    def insert_batch(self, batch: CreditBatch) -> CreditBatch:
        with self._cursor() as cursor:
            cursor.execute(
                """
                INSERT INTO credit_batches (
                    id,
                    organization_id,
                    granted_quantity,
                    remaining_quantity,
                    grant_source,
                    granted_at,
                    expires_at,
                    unit_cost_minor_units,
                    rolled,
                    metadata_json
                )
                VALUES (%(id)s, %(organization_id)s, %(granted_quantity)s, %(remaining_quantity)s,
                        %(grant_source)s, %(granted_at)s, %(expires_at)s, %(unit_cost_minor_units)s,
                        %(rolled)s, %(metadata_json)s)
                RETURNING *
                """,
                {
                    "id": batch.id,
                    "organization_id": batch.organization_id,
                    "granted_quantity": batch.granted_quantity,
                    "remaining_quantity": batch.remaining_quantity,
                    "grant_source": batch.source.value,
                    "granted_at": batch.granted_at,
                    "expires_at": batch.expires_at,
                    "unit_cost_minor_units": batch.unit_cost_minor_units,
                    "rolled": batch.rolled,
                    "metadata_json": psycopg2.extras.Json(batch.metadata.model_dump(mode="json"))
                    if batch.metadata
                    else None,
                },
            )
            row = cursor.fetchone()
            if not row:
                raise RuntimeError("Failed to persist credit batch")
            return _row_to_batch(row)

    def update_batch_remaining(self, batch_id: str, remaining_quantity: int) -> CreditBatch:
        with self._cursor() as cursor:
            try:
                cursor.execute(
                    """
                    UPDATE credit_batches
                    SET remaining_quantity = %s
                    WHERE id = %s
                    RETURNING *
                    """,
                    (remaining_quantity, batch_id),
                )
            except psycopg2.IntegrityError as exc:
                raise DataIntegrityError(
                    "Credit batch constraint violated",
                    detail={"batch_id": batch_id, "remaining_quantity": remaining_quantity},
                ) from exc
            row = cursor.fetchone()
            if not row:
                raise LookupError("Credit batch not found")
            return _row_to_batch(row)

    def insert_entry(self, entry: CreditLedgerEntry) -> CreditLedgerEntry:
        with self._cursor() as cursor:
            cursor.execute(
                """
                INSERT INTO credit_ledger (
                    id,
                    organization_id,
                    source,
                    quantity,
                    batch_id,
                    linked_entity_type,
                    linked_entity_id,
                    unit_cost_minor_units,
                    notes,
                    created_at
                )
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                RETURNING *
                """,
                (
                    entry.id,
                    entry.organization_id,
                    entry.source.value,
                    entry.quantity,
                    entry.batch_id,
                    entry.linked_entity_type,
                    entry.linked_entity_id,
                    entry.unit_cost_minor_units,
                    entry.notes,
                    entry.created_at,
                ),
            )
            row = cursor.fetchone()
            if not row:
                raise RuntimeError("Failed to persist ledger entry")
            return _row_to_entry(row)

    def list_entries(
        self,
        organization_id: str,
        *,
        batch_id: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> Sequence[CreditLedgerEntry]:
        clauses: List[str] = ["organization_id = %s"]
        params: List[object] = [organization_id]
        if batch_id is not None:
            clauses.append("batch_id = %s")
            params.append(batch_id)
        query = f"SELECT * FROM credit_ledger WHERE {' AND '.join(clauses)} ORDER BY created_at ASC, id ASC"
        if limit is not None:
            query += " LIMIT %s"
            params.append(limit)
        with self._cursor() as cursor:
            cursor.execute(query, tuple(params))
            return [_row_to_entry(row) for row in cursor.fetchall()]


__all__ = ["PostgresCreditLedgerRepository"]
