"""
Partitioned stream interface.

A minimal, Kafka-shaped log: records are appended to one of a fixed number
of partitions chosen by key hash, read back by offset, and consumer groups
commit the next offset they want to read. Records of one key always land
on the same partition, which is what gives the projection its per-key
ordering.
"""

from __future__ import annotations

import hashlib
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from viewkeeper.errors import ValidationError


@dataclass(frozen=True)
class StreamRecord:
    """A record read from a partition."""

    partition: int
    offset: int
    key: str
    value: bytes
    appended_at: datetime


@dataclass(frozen=True)
class PartitionLag:
    """
    Consumer position on a partition.

    Attributes:
        latest_offset: Offset the next published record will get
        committed_offset: Next offset the consumer group will read
    """

    latest_offset: int
    committed_offset: int

    @property
    def lag(self) -> int:
        return max(0, self.latest_offset - self.committed_offset)

    def to_dict(self) -> dict[str, int]:
        return {"latest_offset": self.latest_offset, "committed_offset": self.committed_offset, "lag": self.lag}


class PartitionedStream(ABC):
    """Abstract interface for the inbound event stream."""

    def __init__(self, partition_count: int) -> None:
        if partition_count <= 0:
            raise ValidationError("partition_count must be positive", field="partition_count")
        self.partition_count = partition_count

    def partitions(self) -> list[int]:
        return list(range(self.partition_count))

    def partition_for(self, key: str) -> int:
        """Stable key-hash partitioner: the same key always maps to the same partition."""
        digest = hashlib.md5(key.encode("utf-8")).hexdigest()
        return int(digest, 16) % self.partition_count

    def _check_partition(self, partition: int) -> None:
        if not 0 <= partition < self.partition_count:
            raise ValidationError(
                f"partition {partition} out of range 0..{self.partition_count - 1}",
                field="partition",
            )

    @abstractmethod
    def publish(self, key: str, value: bytes, partition: int | None = None) -> tuple[int, int]:
        """
        Append a record.

        Args:
            key: Record key, hashed to pick the partition
            value: Record bytes
            partition: Explicit partition, overriding the key hash

        Returns:
            (partition, offset) of the appended record
        """
        pass

    @abstractmethod
    def fetch(self, partition: int, offset: int, max_records: int = 100) -> list[StreamRecord]:
        """Read up to ``max_records`` records starting at ``offset``."""
        pass

    def beginning_offset(self, partition: int) -> int:
        """First offset still held by the partition (the log is never compacted)."""
        self._check_partition(partition)
        return 0

    @abstractmethod
    def end_offset(self, partition: int) -> int:
        """Offset the next published record on the partition will get."""
        pass

    @abstractmethod
    def committed(self, group: str, partition: int) -> int | None:
        """Committed offset of a consumer group, or None if it never committed."""
        pass

    @abstractmethod
    def commit(self, group: str, partition: int, offset: int, reset: bool = False) -> None:
        """
        Commit the next offset a consumer group will read.

        Commits only move forward; a lower offset is ignored unless
        ``reset`` is set (used by rebuilds to rewind).
        """
        pass

    def position(self, group: str, partition: int) -> int:
        """Where a consumer group resumes: its committed offset or the beginning."""
        committed = self.committed(group, partition)
        if committed is None:
            return self.beginning_offset(partition)
        return committed

    def lag(self, group: str, partition: int) -> PartitionLag:
        return PartitionLag(
            latest_offset=self.end_offset(partition),
            committed_offset=self.position(group, partition),
        )

    def close(self) -> None:
        """Release resources held by the stream."""
        pass

    def __enter__(self) -> PartitionedStream:
        return self

    def __exit__(self, *args: Any) -> None:
        self.close()
