"""Helpers shared by the SQL backends."""

from __future__ import annotations

import logging
from collections.abc import Iterator
from contextlib import contextmanager

from viewkeeper.errors import StorageUnavailableError, ViewkeeperError, is_storage_unavailable

logger = logging.getLogger(__name__)


@contextmanager
def storage_errors(operation: str) -> Iterator[None]:
    """Translate driver outages raised inside the block into StorageUnavailableError.

    Other exceptions propagate unchanged.

    Usage:
        with storage_errors("view.load"):
            conn.execute(...)
    """
    try:
        yield
    except ViewkeeperError:
        raise
    except Exception as e:
        if is_storage_unavailable(e):
            logger.warning("Storage unavailable during %s: %s", operation, e)
            raise StorageUnavailableError(f"Storage unavailable during {operation}: {e}", cause=e) from e
        raise
