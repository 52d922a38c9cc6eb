"""Out-of-order stash backends."""

from __future__ import annotations

from viewkeeper.config import StashConfig
from viewkeeper.errors import ConfigurationError
from viewkeeper.stash.interface import Stash, StashEntry
from viewkeeper.stash.memory import InMemoryStash


def create_stash(connection_string: str, config: StashConfig | None = None) -> Stash:
    """Create an in-memory (``memory://``) or SQLite stash."""
    from viewkeeper.store.connection import detect_backend

    backend = detect_backend(connection_string)
    if backend == "memory":
        return InMemoryStash(config)
    if backend == "sqlite":
        from viewkeeper.stash.sqlite import SqliteStash

        return SqliteStash(connection_string, config)
    raise ConfigurationError(f"Unsupported stash backend: {backend}")


__all__ = ["InMemoryStash", "Stash", "StashEntry", "create_stash"]
