"""
SQLite stash.

Keeps gap state in the ``view_stash`` table so stashed events survive a
controlled restart. Envelopes are stored in their wire encoding.
"""

from __future__ import annotations

import logging
import sqlite3
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import UTC, datetime

from viewkeeper.config import StashConfig
from viewkeeper.events import EventEnvelope, decode_envelope, encode_envelope
from viewkeeper.stash.interface import Stash, StashEntry
from viewkeeper.store.connection import get_connection_manager
from viewkeeper.store.helpers import storage_errors
from viewkeeper.store.sqlite.schema import STASH_SCHEMA

logger = logging.getLogger(__name__)


def _iso(value: datetime) -> str:
    return value.astimezone(UTC).isoformat()


def _row_to_entry(row: sqlite3.Row) -> StashEntry:
    return StashEntry(
        entity_key=row["entity_key"],
        sequence=row["sequence"],
        envelope=decode_envelope(row["envelope"]),
        received_at=datetime.fromisoformat(row["received_at"]),
    )


class SqliteStash(Stash):
    """SQLite implementation of the stash."""

    def __init__(
        self,
        connection_string: str,
        config: StashConfig | None = None,
        create_tables: bool = True,
    ) -> None:
        super().__init__(config)
        self._connection_string = connection_string
        if create_tables:
            with storage_errors("stash.create_tables"):
                conn = self._get_connection()
                conn.executescript(STASH_SCHEMA)
                conn.commit()

    def _get_connection(self) -> sqlite3.Connection:
        return get_connection_manager().get_sqlite_connection(self._connection_string)

    @contextmanager
    def _write(self, operation: str) -> Iterator[sqlite3.Connection]:
        with storage_errors(operation):
            conn = self._get_connection()
            if conn.in_transaction:
                conn.commit()
            conn.execute("BEGIN IMMEDIATE")
            try:
                yield conn
                conn.commit()
            except BaseException:
                conn.rollback()
                raise

    def put(self, envelope: EventEnvelope, received_at: datetime | None = None) -> bool:
        received = received_at or datetime.now(UTC)
        with self._write("stash.put") as conn:
            cursor = conn.execute(
                """
                INSERT OR IGNORE INTO view_stash (entity_key, sequence, envelope, received_at)
                VALUES (:key, :sequence, :envelope, :received_at)
                """,
                {
                    "key": envelope.entity_key,
                    "sequence": envelope.sequence,
                    "envelope": encode_envelope(envelope).decode("utf-8"),
                    "received_at": _iso(received),
                },
            )
            return cursor.rowcount > 0

    def overflow(self, entity_key: str | None = None) -> list[StashEntry]:
        with storage_errors("stash.overflow"):
            conn = self._get_connection()
            over: list[StashEntry] = []
            if entity_key is not None:
                per_key = conn.execute(
                    "SELECT COUNT(*) FROM view_stash WHERE entity_key = :key",
                    {"key": entity_key},
                ).fetchone()[0]
                excess = per_key - self.config.max_pending_per_key
                if excess > 0:
                    over.extend(self._oldest(conn, "WHERE entity_key = :key", {"key": entity_key, "limit": excess}))

            total = conn.execute("SELECT COUNT(*) FROM view_stash").fetchone()[0]
            excess = total - len(over) - self.config.max_total
            if excess > 0:
                chosen = {(e.entity_key, e.sequence) for e in over}
                candidates = self._oldest(conn, "", {"limit": excess + len(over)})
                over.extend([e for e in candidates if (e.entity_key, e.sequence) not in chosen][:excess])

        if over:
            logger.warning("Stash bound exceeded by %d entries", len(over))
        return over

    @staticmethod
    def _oldest(conn: sqlite3.Connection, where: str, params: dict[str, object]) -> list[StashEntry]:
        rows = conn.execute(
            f"""
            SELECT * FROM view_stash {where}
            ORDER BY received_at ASC, sequence ASC
            LIMIT :limit
            """,
            params,
        ).fetchall()
        return [_row_to_entry(row) for row in rows]

    def expired(self, now: datetime | None = None) -> list[StashEntry]:
        cutoff = self._expiry_cutoff(now)
        if cutoff is None:
            return []
        with storage_errors("stash.expired"):
            return self._oldest(
                self._get_connection(),
                "WHERE received_at < :cutoff",
                {"cutoff": _iso(cutoff), "limit": -1},
            )

    def pending(self, entity_key: str | None = None) -> int:
        with storage_errors("stash.pending"):
            conn = self._get_connection()
            if entity_key is None:
                row = conn.execute("SELECT COUNT(*) FROM view_stash").fetchone()
            else:
                row = conn.execute(
                    "SELECT COUNT(*) FROM view_stash WHERE entity_key = :key",
                    {"key": entity_key},
                ).fetchone()
            return int(row[0])

    def keys(self) -> list[str]:
        with storage_errors("stash.keys"):
            rows = self._get_connection().execute(
                "SELECT DISTINCT entity_key FROM view_stash ORDER BY entity_key"
            ).fetchall()
            return [row["entity_key"] for row in rows]

    def entries(self, entity_key: str) -> list[StashEntry]:
        with storage_errors("stash.entries"):
            rows = self._get_connection().execute(
                "SELECT * FROM view_stash WHERE entity_key = :key ORDER BY sequence",
                {"key": entity_key},
            ).fetchall()
            return [_row_to_entry(row) for row in rows]

    def clear(self) -> None:
        with self._write("stash.clear") as conn:
            conn.execute("DELETE FROM view_stash")

    def _get(self, entity_key: str, sequence: int) -> StashEntry | None:
        with storage_errors("stash.get"):
            row = self._get_connection().execute(
                "SELECT * FROM view_stash WHERE entity_key = :key AND sequence = :sequence",
                {"key": entity_key, "sequence": sequence},
            ).fetchone()
            return _row_to_entry(row) if row else None

    def _remove(self, entity_key: str, sequence: int) -> None:
        with self._write("stash.remove") as conn:
            conn.execute(
                "DELETE FROM view_stash WHERE entity_key = :key AND sequence = :sequence",
                {"key": entity_key, "sequence": sequence},
            )

    def _purge_below(self, entity_key: str, sequence: int) -> int:
        with self._write("stash.purge") as conn:
            cursor = conn.execute(
                "DELETE FROM view_stash WHERE entity_key = :key AND sequence < :sequence",
                {"key": entity_key, "sequence": sequence},
            )
            purged = cursor.rowcount
        if purged:
            logger.debug("Purged %d stale stash entries for %s", purged, entity_key)
        return purged
