"""
In-memory view store implementation.

Provides a simple, thread-safe view store for testing and development.
Rows are lost when the process exits.
"""

from __future__ import annotations

import threading
from collections.abc import Iterator
from contextlib import contextmanager

from viewkeeper.projection.row import ViewRow
from viewkeeper.store.interface import ViewQuery, ViewStore, ViewTransaction, WriteResult


class InMemoryViewTransaction(ViewTransaction):
    """Buffers writes until the owning store commits them."""

    def __init__(self, store: InMemoryViewStore) -> None:
        self._store = store
        self._rows: dict[str, ViewRow] = {}
        self._ledger: set[tuple[str, str]] = set()

    def load(self, entity_key: str) -> ViewRow | None:
        if entity_key in self._rows:
            return self._rows[entity_key]
        return self._store._rows.get(entity_key)

    def apply_if_sequence_matches(
        self,
        entity_key: str,
        expected_last_sequence: int | None,
        new_row: ViewRow,
    ) -> WriteResult:
        current = self.load(entity_key)
        current_sequence = current.last_applied_sequence if current is not None else None
        if current_sequence != expected_last_sequence:
            return WriteResult.CONFLICT

        event_id = new_row.last_applied_event_id
        if event_id is not None:
            pair = (entity_key, event_id)
            if pair in self._ledger or pair in self._store._ledger:
                return WriteResult.DUPLICATE_EVENT
            self._ledger.add(pair)

        self._rows[entity_key] = new_row
        return WriteResult.APPLIED

    def commit(self) -> None:
        self._store._rows.update(self._rows)
        self._store._ledger.update(self._ledger)


class InMemoryViewStore(ViewStore):
    """
    In-memory implementation of the view store.

    A transaction holds the store lock from begin to commit, so
    conditional writes are serialized exactly like row locks would.
    """

    def __init__(self) -> None:
        self._rows: dict[str, ViewRow] = {}
        self._ledger: set[tuple[str, str]] = set()
        self._lock = threading.RLock()

    def load(self, entity_key: str) -> ViewRow | None:
        with self._lock:
            return self._rows.get(entity_key)

    @contextmanager
    def transaction(self) -> Iterator[InMemoryViewTransaction]:
        with self._lock:
            txn = InMemoryViewTransaction(self)
            yield txn
            # Only reached without an exception: discard on error
            txn.commit()

    def query(self, query: ViewQuery) -> list[ViewRow]:
        with self._lock:
            rows = [r for r in self._rows.values() if query.status is None or r.status == query.status]

        def sort_key(row: ViewRow) -> tuple:
            value = getattr(row, query.order_by)
            # NULLs sort first ascending, last descending, like the SQL backends
            return (value is not None, value if value is not None else 0, row.entity_key)

        rows.sort(key=sort_key, reverse=not query.ascending)
        return rows[query.offset : query.offset + query.limit]

    def count(self, status: str | None = None) -> int:
        with self._lock:
            return sum(1 for r in self._rows.values() if status is None or r.status == status)

    def truncate(self) -> None:
        with self._lock:
            self._rows.clear()
            self._ledger.clear()
