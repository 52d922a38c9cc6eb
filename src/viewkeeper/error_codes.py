"""
Structured error codes for Viewkeeper.

Provides semantic error classification and exception chain traversal so
that the ingest loop, dead-letter records and health reports can name a
failure without depending on concrete exception classes.

Usage:
    from viewkeeper.error_codes import ErrorCode, classify_error

    try:
        store.apply_if_sequence_matches(key, expected, row)
    except Exception as e:
        if classify_error(e) == ErrorCode.STORAGE_UNAVAILABLE:
            # Back off, do not commit the offset
            pass
"""

from __future__ import annotations

from enum import Enum


class ErrorCode(Enum):
    """Semantic error codes for categorizing exceptions.

    These codes are used for:
    - Routing decisions (retry vs dead-letter)
    - Health and lag reporting
    - Dead-letter records
    """

    # General errors
    UNKNOWN = "UNKNOWN"
    SYSTEM_ERROR = "SYSTEM_ERROR"

    # Event errors
    VALIDATION_FAILED = "VALIDATION_FAILED"
    GAP_OVERFLOW = "GAP_OVERFLOW"

    # Storage errors
    CONCURRENCY_CONFLICT = "CONCURRENCY_CONFLICT"
    STORAGE_UNAVAILABLE = "STORAGE_UNAVAILABLE"

    # Configuration errors
    CONFIGURATION_INVALID = "CONFIGURATION_INVALID"

    # Administrative errors
    REBUILD_NOT_ALLOWED = "REBUILD_NOT_ALLOWED"
    REBUILD_IN_PROGRESS = "REBUILD_IN_PROGRESS"


def error_chain(error: BaseException) -> list[BaseException]:
    """Traverse __cause__ chain, return list from root to leaf.

    Args:
        error: The exception to traverse

    Returns:
        List of exceptions from root cause to the provided exception.
    """
    chain: list[BaseException] = []
    current: BaseException | None = error

    while current is not None:
        chain.append(current)
        cause = getattr(current, "__cause__", None)
        if cause is current or cause in chain:
            break
        current = cause

    chain.reverse()
    return chain


def find_in_chain(error: BaseException, error_type: type) -> BaseException | None:
    """Find first error of given type in cause chain."""
    for exc in error_chain(error):
        if isinstance(exc, error_type):
            return exc
    return None


def classify_error(error: BaseException) -> ErrorCode:
    """Map any exception to an ErrorCode.

    Uses the explicit ``error_code`` attribute of Viewkeeper exceptions
    first (on the error or anywhere in its cause chain), then falls back
    to name-based heuristics for driver exceptions.
    """
    if hasattr(error, "error_code"):
        return error.error_code  # type: ignore[no-any-return]

    for exc in error_chain(error):
        if hasattr(exc, "error_code"):
            return exc.error_code  # type: ignore[no-any-return]

    error_type = type(error).__name__.lower()

    if any(pattern in error_type for pattern in ["validation", "invalid", "parse", "decode"]):
        return ErrorCode.VALIDATION_FAILED

    if any(pattern in error_type for pattern in ["config", "setting"]):
        return ErrorCode.CONFIGURATION_INVALID

    if any(pattern in error_type for pattern in ["conflict", "concurrency", "optimistic"]):
        return ErrorCode.CONCURRENCY_CONFLICT

    if any(
        pattern in error_type
        for pattern in ["operational", "connection", "timeout", "unavailable", "pool"]
    ):
        return ErrorCode.STORAGE_UNAVAILABLE

    return ErrorCode.UNKNOWN
