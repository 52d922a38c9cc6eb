"""SQLite dead-letter sink backed by the ``dead_letters`` table."""

from __future__ import annotations

import logging
import sqlite3
from datetime import datetime
from typing import Any

from viewkeeper.deadletter.interface import DeadLetter, DeadLetterReason, DeadLetterSink
from viewkeeper.store.connection import get_connection_manager
from viewkeeper.store.helpers import storage_errors
from viewkeeper.store.sqlite.schema import DEAD_LETTER_SCHEMA

logger = logging.getLogger(__name__)


def _row_to_letter(row: sqlite3.Row) -> DeadLetter:
    return DeadLetter(
        id=row["id"],
        payload=bytes(row["payload"]),
        reason=DeadLetterReason(row["reason"]),
        error=row["error"],
        entity_key=row["entity_key"],
        event_id=row["event_id"],
        sequence=row["sequence"],
        partition=row["partition"],
        offset=row["stream_offset"],
        created_at=datetime.fromisoformat(row["created_at"]),
    )


class SqliteDeadLetterSink(DeadLetterSink):
    """SQLite implementation of the dead-letter sink."""

    def __init__(self, connection_string: str, create_tables: bool = True) -> None:
        self._connection_string = connection_string
        if create_tables:
            with storage_errors("deadletter.create_tables"):
                conn = self._get_connection()
                conn.executescript(DEAD_LETTER_SCHEMA)
                conn.commit()

    def _get_connection(self) -> sqlite3.Connection:
        return get_connection_manager().get_sqlite_connection(self._connection_string)

    def send(self, letter: DeadLetter) -> DeadLetter:
        with storage_errors("deadletter.send"):
            conn = self._get_connection()
            cursor = conn.execute(
                """
                INSERT INTO dead_letters (
                    reason, error, payload, entity_key, event_id, sequence,
                    partition, stream_offset, created_at
                ) VALUES (
                    :reason, :error, :payload, :entity_key, :event_id, :sequence,
                    :partition, :offset, :created_at
                )
                """,
                {
                    "reason": letter.reason.value,
                    "error": letter.error,
                    "payload": letter.payload,
                    "entity_key": letter.entity_key,
                    "event_id": letter.event_id,
                    "sequence": letter.sequence,
                    "partition": letter.partition,
                    "offset": letter.offset,
                    "created_at": letter.created_at.isoformat(),
                },
            )
            conn.commit()
        stored = letter.with_id(int(cursor.lastrowid or 0))

        logger.warning(
            "Dead-lettered event (id=%s, reason=%s, key=%s, partition=%s, offset=%s, error=%s)",
            stored.id,
            stored.reason.value,
            stored.entity_key,
            stored.partition,
            stored.offset,
            stored.error,
        )
        return stored

    def list(self, limit: int = 100, reason: DeadLetterReason | None = None) -> list[DeadLetter]:
        query = "SELECT * FROM dead_letters"
        params: dict[str, Any] = {"limit": limit}
        if reason is not None:
            query += " WHERE reason = :reason"
            params["reason"] = reason.value
        query += " ORDER BY id DESC LIMIT :limit"

        with storage_errors("deadletter.list"):
            rows = self._get_connection().execute(query, params).fetchall()
        return [_row_to_letter(row) for row in rows]

    def count(self, reason: DeadLetterReason | None = None) -> int:
        with storage_errors("deadletter.count"):
            conn = self._get_connection()
            if reason is None:
                row = conn.execute("SELECT COUNT(*) FROM dead_letters").fetchone()
            else:
                row = conn.execute(
                    "SELECT COUNT(*) FROM dead_letters WHERE reason = :reason",
                    {"reason": reason.value},
                ).fetchone()
        return int(row[0]) if row else 0

    def get(self, dead_letter_id: int) -> DeadLetter | None:
        with storage_errors("deadletter.get"):
            row = self._get_connection().execute(
                "SELECT * FROM dead_letters WHERE id = :id",
                {"id": dead_letter_id},
            ).fetchone()
        return _row_to_letter(row) if row else None

    def delete(self, dead_letter_id: int) -> bool:
        with storage_errors("deadletter.delete"):
            conn = self._get_connection()
            cursor = conn.execute("DELETE FROM dead_letters WHERE id = :id", {"id": dead_letter_id})
            conn.commit()
        return cursor.rowcount > 0

    def clear(self) -> int:
        with storage_errors("deadletter.clear"):
            conn = self._get_connection()
            cursor = conn.execute("DELETE FROM dead_letters")
            conn.commit()
        logger.info("Cleared %d dead letters", cursor.rowcount)
        return cursor.rowcount
