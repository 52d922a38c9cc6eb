"""Transient (retryable) errors."""

from __future__ import annotations

from typing import TYPE_CHECKING

from viewkeeper.errors.base import ViewkeeperError

if TYPE_CHECKING:
    from viewkeeper.error_codes import ErrorCode


class TransientError(ViewkeeperError):
    """Retryable errors.

    These errors indicate temporary conditions that may resolve on retry.
    A partition worker never commits the stream offset of a record whose
    processing raised a TransientError; the record is read again.
    """

    code: int = 101

    @property
    def error_code(self) -> ErrorCode:
        if self._error_code is not None:
            return self._error_code
        from viewkeeper.error_codes import ErrorCode

        return ErrorCode.STORAGE_UNAVAILABLE


class ConflictError(TransientError):
    """Concurrent write race on an entity key.

    Raised when a conditional write kept losing against another writer
    that advanced the same key, after the local re-read/re-decide budget
    was spent.
    """

    code: int = 105

    def __init__(
        self,
        message: str,
        *,
        entity_key: str | None = None,
        attempts: int = 0,
        cause: BaseException | None = None,
    ) -> None:
        super().__init__(message, cause=cause, entity_key=entity_key)
        self.attempts = attempts

    @property
    def error_code(self) -> ErrorCode:
        if self._error_code is not None:
            return self._error_code
        from viewkeeper.error_codes import ErrorCode

        return ErrorCode.CONCURRENCY_CONFLICT


class StorageUnavailableError(TransientError):
    """The view store, stash or stream backend could not be reached.

    Halts offset advancement for the affected partition; surfaced through
    the engine's health and lag reports.
    """

    code: int = 106
