"""Dead-letter sinks."""

from __future__ import annotations

from viewkeeper.deadletter.interface import DeadLetter, DeadLetterReason, DeadLetterSink
from viewkeeper.deadletter.memory import InMemoryDeadLetterSink
from viewkeeper.errors import ConfigurationError


def create_dead_letter_sink(connection_string: str) -> DeadLetterSink:
    """Create an in-memory (``memory://``) or SQLite dead-letter sink."""
    from viewkeeper.store.connection import detect_backend

    backend = detect_backend(connection_string)
    if backend == "memory":
        return InMemoryDeadLetterSink()
    if backend == "sqlite":
        from viewkeeper.deadletter.sqlite import SqliteDeadLetterSink

        return SqliteDeadLetterSink(connection_string)
    raise ConfigurationError(f"Unsupported dead-letter backend: {backend}")


__all__ = [
    "DeadLetter",
    "DeadLetterReason",
    "DeadLetterSink",
    "InMemoryDeadLetterSink",
    "create_dead_letter_sink",
]
