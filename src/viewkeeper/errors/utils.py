"""Error utility functions."""

from __future__ import annotations

import sqlite3

from viewkeeper.errors.permanent import PermanentError
from viewkeeper.errors.transient import StorageUnavailableError, TransientError

_STORAGE_ERROR_PATTERNS = (
    "database is locked",
    "disk i/o error",
    "unable to open database",
    "connection refused",
    "connection reset",
    "server closed the connection",
    "could not connect",
    "couldn't get a connection",
    "timeout",
    "terminating connection",
)


def is_storage_unavailable(error: BaseException) -> bool:
    """Check if a raw driver error means the backend is temporarily unreachable.

    Detects:
    - SQLite: OperationalError for locks, I/O failures and open failures
    - PostgreSQL (psycopg 3): OperationalError, pool timeouts
    - Generic: ConnectionError, TimeoutError, StorageUnavailableError

    Args:
        error: The exception to check

    Returns:
        True if the error should be retried with backoff
    """
    if isinstance(error, StorageUnavailableError):
        return True

    if isinstance(error, (ConnectionError, TimeoutError)):
        return True

    if isinstance(error, sqlite3.OperationalError):
        message = str(error).lower()
        return any(pattern in message for pattern in _STORAGE_ERROR_PATTERNS)

    error_name = type(error).__name__
    error_module = type(error).__module__ or ""
    if error_module.startswith(("psycopg", "psycopg_pool")) and error_name in (
        "OperationalError",
        "PoolTimeout",
        "InterfaceError",
    ):
        return True

    message = str(error).lower()
    return any(pattern in message for pattern in _STORAGE_ERROR_PATTERNS)


def is_transient(error: BaseException) -> bool:
    """Check if an error is transient and should be retried.

    Permanent classification takes precedence over transient heuristics.
    The cause chain is followed for wrapped errors.
    """
    if isinstance(error, TransientError):
        return True

    if isinstance(error, PermanentError):
        return False

    if is_storage_unavailable(error):
        return True

    cause = getattr(error, "__cause__", None)
    if cause is not None and cause is not error:
        return is_transient(cause)

    return False


def is_permanent(error: BaseException) -> bool:
    """Check if an error is permanent and should not be retried."""
    if isinstance(error, PermanentError):
        return True

    if isinstance(error, TransientError):
        return False

    if isinstance(error, (ValueError, TypeError, KeyError, UnicodeDecodeError)):
        return True

    cause = getattr(error, "__cause__", None)
    if cause is not None and cause is not error:
        return is_permanent(cause)

    return False


def truncate_error(message: str, max_bytes: int = 8192) -> str:
    """Truncate error message to max_bytes, appending '[TRUNCATED]' marker.

    Keeps dead-letter rows small when an exception carries a huge payload.
    """
    if not message:
        return message

    encoded = message.encode("utf-8", errors="replace")
    if len(encoded) <= max_bytes:
        return message

    marker = " [TRUNCATED]"
    target_bytes = max_bytes - len(marker.encode("utf-8"))
    if target_bytes <= 0:
        return marker.strip()

    truncated = encoded[:target_bytes].decode("utf-8", errors="ignore")
    return truncated + marker
