"""SQLite backend for the view store."""

from viewkeeper.store.sqlite.store import SqliteViewStore, SqliteViewTransaction

__all__ = ["SqliteViewStore", "SqliteViewTransaction"]
