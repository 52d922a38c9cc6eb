"""
SQLite view store implementation.

Conditional writes run inside ``BEGIN IMMEDIATE`` transactions: the write
lock is taken before the stored sequence is compared, so two processes
racing on the same key cannot both pass the check.
"""

from __future__ import annotations

import sqlite3
from collections.abc import Iterator
from contextlib import contextmanager

from viewkeeper.projection.row import ViewRow
from viewkeeper.store.connection import get_connection_manager
from viewkeeper.store.helpers import storage_errors
from viewkeeper.store.interface import ViewQuery, ViewStore, ViewTransaction, WriteResult
from viewkeeper.store.sqlite.converters import row_from_db, row_to_params, total_sort_key
from viewkeeper.store.sqlite.schema import VIEW_SCHEMA

_ORDER_EXPRESSIONS = {
    "updated_at": "updated_at",
    "created_at": "created_at",
    "entity_key": "entity_key",
    "item_count": "item_count",
    "total": "total_key",
}


class SqliteViewTransaction(ViewTransaction):
    """Operations bound to one open SQLite transaction."""

    def __init__(self, conn: sqlite3.Connection) -> None:
        self._conn = conn

    def load(self, entity_key: str) -> ViewRow | None:
        row = self._conn.execute(
            "SELECT * FROM order_view WHERE entity_key = :key",
            {"key": entity_key},
        ).fetchone()
        return row_from_db(row) if row else None

    def apply_if_sequence_matches(
        self,
        entity_key: str,
        expected_last_sequence: int | None,
        new_row: ViewRow,
    ) -> WriteResult:
        current = self._conn.execute(
            "SELECT last_applied_sequence FROM order_view WHERE entity_key = :key",
            {"key": entity_key},
        ).fetchone()
        current_sequence = current["last_applied_sequence"] if current else None
        if current_sequence != expected_last_sequence:
            return WriteResult.CONFLICT

        if new_row.last_applied_event_id is not None:
            seen = self._conn.execute(
                """
                SELECT 1 FROM order_view_applied_events
                WHERE entity_key = :key AND event_id = :event_id
                """,
                {"key": entity_key, "event_id": new_row.last_applied_event_id},
            ).fetchone()
            if seen:
                return WriteResult.DUPLICATE_EVENT

        params = row_to_params(new_row)
        params["total_key"] = total_sort_key(new_row.total)
        if current is None:
            self._conn.execute(
                """
                INSERT INTO order_view (
                    entity_key, customer_id, currency, status, lines, item_count,
                    total, total_key, cancel_reason, created_at, updated_at,
                    last_applied_sequence, last_applied_event_id
                ) VALUES (
                    :entity_key, :customer_id, :currency, :status, :lines, :item_count,
                    :total, :total_key, :cancel_reason, :created_at, :updated_at,
                    :last_applied_sequence, :last_applied_event_id
                )
                """,
                params,
            )
        else:
            params["expected"] = expected_last_sequence
            cursor = self._conn.execute(
                """
                UPDATE order_view SET
                    customer_id = :customer_id,
                    currency = :currency,
                    status = :status,
                    lines = :lines,
                    item_count = :item_count,
                    total = :total,
                    total_key = :total_key,
                    cancel_reason = :cancel_reason,
                    created_at = :created_at,
                    updated_at = :updated_at,
                    last_applied_sequence = :last_applied_sequence,
                    last_applied_event_id = :last_applied_event_id
                WHERE entity_key = :entity_key AND last_applied_sequence = :expected
                """,
                params,
            )
            if cursor.rowcount == 0:
                return WriteResult.CONFLICT

        # Ledger entry goes last so a rejected write leaves nothing behind.
        if new_row.last_applied_event_id is not None:
            self._conn.execute(
                """
                INSERT INTO order_view_applied_events (entity_key, event_id, sequence)
                VALUES (:key, :event_id, :sequence)
                """,
                {
                    "key": entity_key,
                    "event_id": new_row.last_applied_event_id,
                    "sequence": new_row.last_applied_sequence,
                },
            )

        return WriteResult.APPLIED


class SqliteViewStore(ViewStore):
    """
    SQLite implementation of the view store.

    Uses the shared ConnectionManager for thread-local connections.
    """

    def __init__(self, connection_string: str, create_tables: bool = True) -> None:
        """
        Initialize SQLite view store.

        Args:
            connection_string: SQLite connection string (e.g., "sqlite:///./view.db")
            create_tables: Whether to create tables if they don't exist.
        """
        self._connection_string = connection_string
        if create_tables:
            self._create_tables()

    def _get_connection(self) -> sqlite3.Connection:
        """Get thread-local connection."""
        return get_connection_manager().get_sqlite_connection(self._connection_string)

    def _create_tables(self) -> None:
        with storage_errors("view.create_tables"):
            conn = self._get_connection()
            conn.executescript(VIEW_SCHEMA)
            conn.commit()

    def load(self, entity_key: str) -> ViewRow | None:
        with storage_errors("view.load"):
            return SqliteViewTransaction(self._get_connection()).load(entity_key)

    @contextmanager
    def transaction(self) -> Iterator[SqliteViewTransaction]:
        with storage_errors("view.transaction"):
            conn = self._get_connection()
            if conn.in_transaction:
                conn.commit()
            conn.execute("BEGIN IMMEDIATE")
            try:
                yield SqliteViewTransaction(conn)
                conn.commit()
            except BaseException:
                conn.rollback()
                raise

    def query(self, query: ViewQuery) -> list[ViewRow]:
        direction = "ASC" if query.ascending else "DESC"
        order = _ORDER_EXPRESSIONS[query.order_by]
        sql = ["SELECT * FROM order_view"]
        params: dict[str, object] = {"limit": query.limit, "offset": query.offset}
        if query.status is not None:
            sql.append("WHERE status = :status")
            params["status"] = query.status
        sql.append(f"ORDER BY {order} {direction}, entity_key {direction}")
        sql.append("LIMIT :limit OFFSET :offset")

        with storage_errors("view.query"):
            cursor = self._get_connection().execute(" ".join(sql), params)
            return [row_from_db(row) for row in cursor]

    def count(self, status: str | None = None) -> int:
        with storage_errors("view.count"):
            conn = self._get_connection()
            if status is None:
                result = conn.execute("SELECT COUNT(*) FROM order_view").fetchone()
            else:
                result = conn.execute(
                    "SELECT COUNT(*) FROM order_view WHERE status = :status",
                    {"status": status},
                ).fetchone()
            return int(result[0])

    def truncate(self) -> None:
        with storage_errors("view.truncate"):
            conn = self._get_connection()
            try:
                conn.execute("DELETE FROM order_view")
                conn.execute("DELETE FROM order_view_applied_events")
                conn.commit()
            except Exception:
                conn.rollback()
                raise
