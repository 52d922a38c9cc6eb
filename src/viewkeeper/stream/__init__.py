"""Partitioned stream backends."""

from __future__ import annotations

from viewkeeper.errors import ConfigurationError
from viewkeeper.stream.interface import PartitionedStream, PartitionLag, StreamRecord
from viewkeeper.stream.memory import InMemoryStream


def create_stream(connection_string: str, partition_count: int = 4) -> PartitionedStream:
    """Create an in-memory (``memory://``) or SQLite stream."""
    from viewkeeper.store.connection import detect_backend

    backend = detect_backend(connection_string)
    if backend == "memory":
        return InMemoryStream(partition_count)
    if backend == "sqlite":
        from viewkeeper.stream.sqlite import SqliteStream

        return SqliteStream(connection_string, partition_count)
    raise ConfigurationError(f"Unsupported stream backend: {backend}")


__all__ = ["InMemoryStream", "PartitionLag", "PartitionedStream", "StreamRecord", "create_stream"]
