"""
View store interface.

The view store owns the materialized rows and, with them, the per-key
``last_applied_sequence`` that sequencing decisions are derived from.
Writes are conditional: a row is only replaced when its stored sequence
still matches what the writer read, which gives per-key linearizability
across concurrent partition workers without a global lock.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Iterator
from contextlib import AbstractContextManager
from dataclasses import dataclass
from enum import Enum
from typing import Any

from viewkeeper.errors import ValidationError
from viewkeeper.projection.row import ViewRow


class WriteResult(Enum):
    """Outcome of a conditional write."""

    APPLIED = "applied"
    CONFLICT = "conflict"  # another writer advanced the row first
    DUPLICATE_EVENT = "duplicate_event"  # event_id already applied to this key


ORDER_COLUMNS = ("updated_at", "total", "entity_key", "item_count", "created_at")


@dataclass
class ViewQuery:
    """
    Range query over view rows by status.

    Attributes:
        status: Only rows with this status (None = any status)
        order_by: One of ORDER_COLUMNS
        ascending: Sort direction
        limit: Page size
        offset: Rows to skip
    """

    status: str | None = None
    order_by: str = "updated_at"
    ascending: bool = False
    limit: int = 100
    offset: int = 0

    def __post_init__(self) -> None:
        if self.order_by not in ORDER_COLUMNS:
            raise ValidationError(f"order_by must be one of {ORDER_COLUMNS}", field="order_by")
        if self.limit <= 0 or self.offset < 0:
            raise ValidationError("limit must be positive and offset non-negative", field="limit")


class ViewTransaction(ABC):
    """Operations available inside a view store transaction."""

    @abstractmethod
    def load(self, entity_key: str) -> ViewRow | None:
        """Read a row, locking it for the rest of the transaction where supported."""
        pass

    @abstractmethod
    def apply_if_sequence_matches(
        self,
        entity_key: str,
        expected_last_sequence: int | None,
        new_row: ViewRow,
    ) -> WriteResult:
        """Conditional write, see ViewStore.apply_if_sequence_matches."""
        pass


class ViewStore(ABC):
    """
    Abstract interface for the view store.

    Implementations must translate driver outages into
    StorageUnavailableError so the ingest loop can back off.
    """

    @abstractmethod
    def load(self, entity_key: str) -> ViewRow | None:
        """
        Read the current row for a key.

        Returns:
            The row (carrying last_applied_sequence), or None if the key
            has never been applied
        """
        pass

    def apply_if_sequence_matches(
        self,
        entity_key: str,
        expected_last_sequence: int | None,
        new_row: ViewRow,
    ) -> WriteResult:
        """
        Write ``new_row`` if the stored sequence still equals the expected one.

        Runs in a single transaction. The ``(entity_key, event_id)`` of
        ``new_row.last_applied_event_id`` is recorded in the same
        transaction; an already recorded pair yields DUPLICATE_EVENT and
        nothing is written.

        Args:
            entity_key: Row key
            expected_last_sequence: Sequence read before projecting
                (None = the row must not exist yet)
            new_row: Row to write, stamped with the new sequence

        Returns:
            APPLIED, CONFLICT or DUPLICATE_EVENT
        """
        with self.transaction() as txn:
            return txn.apply_if_sequence_matches(entity_key, expected_last_sequence, new_row)

    @abstractmethod
    def transaction(self) -> AbstractContextManager[ViewTransaction]:
        """
        Open a transaction.

        Usage:
            with store.transaction() as txn:
                row = txn.load("order-1")
                txn.apply_if_sequence_matches("order-1", seq, new_row)
            # Commits on normal exit, rolls back on any exception
        """
        pass

    @abstractmethod
    def query(self, query: ViewQuery) -> list[ViewRow]:
        """Range query by status with sort and pagination."""
        pass

    @abstractmethod
    def count(self, status: str | None = None) -> int:
        """Number of rows, optionally restricted to a status."""
        pass

    @abstractmethod
    def truncate(self) -> None:
        """Delete every row and the applied event-id ledger."""
        pass

    def iter_rows(self, page_size: int = 500) -> Iterator[ViewRow]:
        """Iterate over all rows ordered by entity key."""
        offset = 0
        while True:
            page = self.query(ViewQuery(order_by="entity_key", ascending=True, limit=page_size, offset=offset))
            yield from page
            if len(page) < page_size:
                return
            offset += page_size

    def close(self) -> None:
        """Release resources held by the store."""
        pass

    def __enter__(self) -> ViewStore:
        return self

    def __exit__(self, *args: Any) -> None:
        self.close()
