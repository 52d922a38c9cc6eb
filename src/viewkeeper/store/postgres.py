"""
PostgreSQL view store.

Production-grade persistence using native psycopg3 with connection pooling.
The conditional write locks the row with ``SELECT ... FOR UPDATE``; a row
that does not exist yet is created with ``ON CONFLICT DO NOTHING`` so two
writers racing on a fresh key cannot both insert it.
"""

from __future__ import annotations

import logging
from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any

from viewkeeper.projection.row import ViewRow
from viewkeeper.store.connection import get_connection_manager
from viewkeeper.store.helpers import storage_errors
from viewkeeper.store.interface import ViewQuery, ViewStore, ViewTransaction, WriteResult
from viewkeeper.store.sqlite.converters import row_from_db, row_to_params

logger = logging.getLogger(__name__)

POSTGRES_VIEW_SCHEMA = """
CREATE TABLE IF NOT EXISTS order_view (
    entity_key TEXT PRIMARY KEY,
    customer_id TEXT,
    currency TEXT,
    status TEXT NOT NULL,
    lines JSONB NOT NULL DEFAULT '{}'::jsonb,
    item_count INTEGER NOT NULL DEFAULT 0,
    total NUMERIC NOT NULL DEFAULT 0,
    cancel_reason TEXT,
    created_at TIMESTAMPTZ,
    updated_at TIMESTAMPTZ,
    last_applied_sequence BIGINT NOT NULL,
    last_applied_event_id TEXT
);

CREATE INDEX IF NOT EXISTS idx_order_view_status ON order_view(status, updated_at);

CREATE TABLE IF NOT EXISTS order_view_applied_events (
    entity_key TEXT NOT NULL,
    event_id TEXT NOT NULL,
    sequence BIGINT NOT NULL,
    applied_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    PRIMARY KEY (entity_key, event_id)
);
"""

_ORDER_EXPRESSIONS = {
    "updated_at": "updated_at",
    "created_at": "created_at",
    "entity_key": "entity_key",
    "item_count": "item_count",
    "total": "total",
}

_INSERT_ROW = """
INSERT INTO order_view (
    entity_key, customer_id, currency, status, lines, item_count,
    total, cancel_reason, created_at, updated_at,
    last_applied_sequence, last_applied_event_id
) VALUES (
    %(entity_key)s, %(customer_id)s, %(currency)s, %(status)s, %(lines)s::jsonb, %(item_count)s,
    %(total)s::numeric, %(cancel_reason)s, %(created_at)s::timestamptz, %(updated_at)s::timestamptz,
    %(last_applied_sequence)s, %(last_applied_event_id)s
)
ON CONFLICT (entity_key) DO NOTHING
"""

_UPDATE_ROW = """
UPDATE order_view SET
    customer_id = %(customer_id)s,
    currency = %(currency)s,
    status = %(status)s,
    lines = %(lines)s::jsonb,
    item_count = %(item_count)s,
    total = %(total)s::numeric,
    cancel_reason = %(cancel_reason)s,
    created_at = %(created_at)s::timestamptz,
    updated_at = %(updated_at)s::timestamptz,
    last_applied_sequence = %(last_applied_sequence)s,
    last_applied_event_id = %(last_applied_event_id)s
WHERE entity_key = %(entity_key)s AND last_applied_sequence = %(expected)s
"""


class PostgresViewTransaction(ViewTransaction):
    """Operations bound to one pooled connection's open transaction."""

    def __init__(self, conn: Any) -> None:
        self._conn = conn

    def load(self, entity_key: str) -> ViewRow | None:
        with self._conn.cursor() as cur:
            cur.execute(
                "SELECT * FROM order_view WHERE entity_key = %(key)s FOR UPDATE",
                {"key": entity_key},
            )
            row = cur.fetchone()
        return row_from_db(row) if row else None

    def apply_if_sequence_matches(
        self,
        entity_key: str,
        expected_last_sequence: int | None,
        new_row: ViewRow,
    ) -> WriteResult:
        with self._conn.cursor() as cur:
            cur.execute(
                "SELECT last_applied_sequence FROM order_view WHERE entity_key = %(key)s FOR UPDATE",
                {"key": entity_key},
            )
            current = cur.fetchone()
            current_sequence = current["last_applied_sequence"] if current else None
            if current_sequence != expected_last_sequence:
                return WriteResult.CONFLICT

            event_id = new_row.last_applied_event_id
            if event_id is not None:
                cur.execute(
                    """
                    SELECT 1 FROM order_view_applied_events
                    WHERE entity_key = %(key)s AND event_id = %(event_id)s
                    """,
                    {"key": entity_key, "event_id": event_id},
                )
                if cur.fetchone():
                    return WriteResult.DUPLICATE_EVENT

            params = row_to_params(new_row)
            if current is None:
                cur.execute(_INSERT_ROW, params)
            else:
                params["expected"] = expected_last_sequence
                cur.execute(_UPDATE_ROW, params)
            if cur.rowcount == 0:
                return WriteResult.CONFLICT

            if event_id is not None:
                cur.execute(
                    """
                    INSERT INTO order_view_applied_events (entity_key, event_id, sequence)
                    VALUES (%(key)s, %(event_id)s, %(sequence)s)
                    """,
                    {"key": entity_key, "event_id": event_id, "sequence": new_row.last_applied_sequence},
                )

        return WriteResult.APPLIED


class PostgresViewStore(ViewStore):
    """
    PostgreSQL implementation of the view store.

    Uses the shared ConnectionManager pool, so several stores built from
    the same connection string share connections.
    """

    def __init__(self, connection_string: str, create_tables: bool = True) -> None:
        self.connection_string = connection_string
        self._manager = get_connection_manager()
        self._pool = self._manager.get_postgres_pool(connection_string)
        if create_tables:
            self._create_tables()

    def _create_tables(self) -> None:
        with storage_errors("view.create_tables"):
            with self._pool.connection() as conn:
                with conn.cursor() as cur:
                    cur.execute(POSTGRES_VIEW_SCHEMA)
                conn.commit()

    def close(self) -> None:
        """Close the connection pool via connection manager."""
        self._manager.close_postgres_pool(self.connection_string)

    def load(self, entity_key: str) -> ViewRow | None:
        with storage_errors("view.load"):
            with self._pool.connection() as conn:
                with conn.cursor() as cur:
                    cur.execute("SELECT * FROM order_view WHERE entity_key = %(key)s", {"key": entity_key})
                    row = cur.fetchone()
        return row_from_db(row) if row else None

    @contextmanager
    def transaction(self) -> Iterator[PostgresViewTransaction]:
        with storage_errors("view.transaction"):
            with self._pool.connection() as conn:
                try:
                    yield PostgresViewTransaction(conn)
                    conn.commit()
                except Exception:
                    conn.rollback()
                    raise

    def query(self, query: ViewQuery) -> list[ViewRow]:
        direction = "ASC" if query.ascending else "DESC"
        nulls = "NULLS FIRST" if query.ascending else "NULLS LAST"
        order = _ORDER_EXPRESSIONS[query.order_by]
        sql = ["SELECT * FROM order_view"]
        params: dict[str, Any] = {"limit": query.limit, "offset": query.offset}
        if query.status is not None:
            sql.append("WHERE status = %(status)s")
            params["status"] = query.status
        sql.append(f"ORDER BY {order} {direction} {nulls}, entity_key {direction}")
        sql.append("LIMIT %(limit)s OFFSET %(offset)s")

        with storage_errors("view.query"):
            with self._pool.connection() as conn:
                with conn.cursor() as cur:
                    cur.execute(" ".join(sql), params)
                    rows = cur.fetchall()
        return [row_from_db(row) for row in rows]

    def count(self, status: str | None = None) -> int:
        with storage_errors("view.count"):
            with self._pool.connection() as conn:
                with conn.cursor() as cur:
                    if status is None:
                        cur.execute("SELECT COUNT(*) AS n FROM order_view")
                    else:
                        cur.execute(
                            "SELECT COUNT(*) AS n FROM order_view WHERE status = %(status)s",
                            {"status": status},
                        )
                    row = cur.fetchone()
        return int(row["n"])

    def truncate(self) -> None:
        with storage_errors("view.truncate"):
            with self._pool.connection() as conn:
                with conn.cursor() as cur:
                    cur.execute("TRUNCATE order_view, order_view_applied_events")
                conn.commit()
        logger.info("Truncated order_view")
