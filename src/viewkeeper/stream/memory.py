"""In-memory partitioned stream for tests and development."""

from __future__ import annotations

import threading
from datetime import UTC, datetime

from viewkeeper.stream.interface import PartitionedStream, StreamRecord


class InMemoryStream(PartitionedStream):
    """Lists of records per partition plus a committed-offset table."""

    def __init__(self, partition_count: int = 4) -> None:
        super().__init__(partition_count)
        self._records: list[list[StreamRecord]] = [[] for _ in range(partition_count)]
        self._offsets: dict[tuple[str, int], int] = {}
        self._lock = threading.Lock()

    def publish(self, key: str, value: bytes, partition: int | None = None) -> tuple[int, int]:
        partition = self.partition_for(key) if partition is None else partition
        self._check_partition(partition)
        with self._lock:
            log = self._records[partition]
            record = StreamRecord(
                partition=partition,
                offset=len(log),
                key=key,
                value=bytes(value),
                appended_at=datetime.now(UTC),
            )
            log.append(record)
        return partition, record.offset

    def fetch(self, partition: int, offset: int, max_records: int = 100) -> list[StreamRecord]:
        self._check_partition(partition)
        with self._lock:
            return self._records[partition][max(offset, 0) : max(offset, 0) + max_records]

    def end_offset(self, partition: int) -> int:
        self._check_partition(partition)
        with self._lock:
            return len(self._records[partition])

    def committed(self, group: str, partition: int) -> int | None:
        self._check_partition(partition)
        with self._lock:
            return self._offsets.get((group, partition))

    def commit(self, group: str, partition: int, offset: int, reset: bool = False) -> None:
        self._check_partition(partition)
        with self._lock:
            current = self._offsets.get((group, partition))
            if reset or current is None or offset > current:
                self._offsets[(group, partition)] = offset
