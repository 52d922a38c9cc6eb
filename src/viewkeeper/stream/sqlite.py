"""
SQLite partitioned stream.

A durable append-only log in ``stream_records`` with consumer offsets in
``stream_offsets``. The partition count is fixed when the stream is first
created and stored in ``stream_meta``; reopening an existing stream keeps
its partition count.
"""

from __future__ import annotations

import logging
import sqlite3
from datetime import UTC, datetime

from viewkeeper.store.connection import get_connection_manager
from viewkeeper.store.helpers import storage_errors
from viewkeeper.store.sqlite.schema import STREAM_SCHEMA
from viewkeeper.stream.interface import PartitionedStream, StreamRecord

logger = logging.getLogger(__name__)


class SqliteStream(PartitionedStream):
    """SQLite implementation of the partitioned stream."""

    def __init__(self, connection_string: str, partition_count: int = 4) -> None:
        self._connection_string = connection_string
        with storage_errors("stream.open"):
            conn = self._get_connection()
            conn.executescript(STREAM_SCHEMA)
            conn.execute(
                "INSERT OR IGNORE INTO stream_meta (name, value) VALUES ('partition_count', :count)",
                {"count": partition_count},
            )
            conn.commit()
            stored = conn.execute("SELECT value FROM stream_meta WHERE name = 'partition_count'").fetchone()[0]

        if stored != partition_count:
            logger.info("Stream already has %d partitions, ignoring requested %d", stored, partition_count)
        super().__init__(int(stored))

    def _get_connection(self) -> sqlite3.Connection:
        return get_connection_manager().get_sqlite_connection(self._connection_string)

    def publish(self, key: str, value: bytes, partition: int | None = None) -> tuple[int, int]:
        partition = self.partition_for(key) if partition is None else partition
        self._check_partition(partition)
        with storage_errors("stream.publish"):
            conn = self._get_connection()
            if conn.in_transaction:
                conn.commit()
            conn.execute("BEGIN IMMEDIATE")
            try:
                offset = conn.execute(
                    "SELECT COALESCE(MAX(record_offset) + 1, 0) FROM stream_records WHERE partition = :p",
                    {"p": partition},
                ).fetchone()[0]
                conn.execute(
                    """
                    INSERT INTO stream_records (partition, record_offset, record_key, value, appended_at)
                    VALUES (:p, :offset, :key, :value, :appended_at)
                    """,
                    {
                        "p": partition,
                        "offset": offset,
                        "key": key,
                        "value": bytes(value),
                        "appended_at": datetime.now(UTC).isoformat(),
                    },
                )
                conn.commit()
            except BaseException:
                conn.rollback()
                raise
        return partition, int(offset)

    def fetch(self, partition: int, offset: int, max_records: int = 100) -> list[StreamRecord]:
        self._check_partition(partition)
        with storage_errors("stream.fetch"):
            rows = self._get_connection().execute(
                """
                SELECT partition, record_offset, record_key, value, appended_at
                FROM stream_records
                WHERE partition = :p AND record_offset >= :offset
                ORDER BY record_offset
                LIMIT :limit
                """,
                {"p": partition, "offset": offset, "limit": max_records},
            ).fetchall()
        return [
            StreamRecord(
                partition=row["partition"],
                offset=row["record_offset"],
                key=row["record_key"],
                value=bytes(row["value"]),
                appended_at=datetime.fromisoformat(row["appended_at"]),
            )
            for row in rows
        ]

    def end_offset(self, partition: int) -> int:
        self._check_partition(partition)
        with storage_errors("stream.end_offset"):
            row = self._get_connection().execute(
                "SELECT COALESCE(MAX(record_offset) + 1, 0) FROM stream_records WHERE partition = :p",
                {"p": partition},
            ).fetchone()
        return int(row[0])

    def committed(self, group: str, partition: int) -> int | None:
        self._check_partition(partition)
        with storage_errors("stream.committed"):
            row = self._get_connection().execute(
                """
                SELECT committed_offset FROM stream_offsets
                WHERE consumer_group = :group AND partition = :p
                """,
                {"group": group, "p": partition},
            ).fetchone()
        return int(row["committed_offset"]) if row else None

    def commit(self, group: str, partition: int, offset: int, reset: bool = False) -> None:
        self._check_partition(partition)
        with storage_errors("stream.commit"):
            conn = self._get_connection()
            conn.execute(
                """
                INSERT INTO stream_offsets (consumer_group, partition, committed_offset, updated_at)
                VALUES (:group, :p, :offset, :now)
                ON CONFLICT (consumer_group, partition) DO UPDATE SET
                    committed_offset = excluded.committed_offset,
                    updated_at = excluded.updated_at
                WHERE :reset OR excluded.committed_offset > stream_offsets.committed_offset
                """,
                {
                    "group": group,
                    "p": partition,
                    "offset": offset,
                    "now": datetime.now(UTC).isoformat(),
                    "reset": 1 if reset else 0,
                },
            )
            conn.commit()
