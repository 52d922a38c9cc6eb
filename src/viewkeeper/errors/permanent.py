"""Permanent (non-retryable) errors."""

from __future__ import annotations

from typing import TYPE_CHECKING

from viewkeeper.errors.base import ViewkeeperError

if TYPE_CHECKING:
    from viewkeeper.error_codes import ErrorCode


class PermanentError(ViewkeeperError):
    """Non-retryable errors.

    The offending event is routed to the dead-letter sink and the
    partition moves on.
    """

    code: int = 102

    @property
    def error_code(self) -> ErrorCode:
        if self._error_code is not None:
            return self._error_code
        from viewkeeper.error_codes import ErrorCode

        return ErrorCode.SYSTEM_ERROR


class ValidationError(PermanentError):
    """Malformed, unparseable or unknown event.

    Attributes:
        field: Name of the offending envelope or payload field, if known
    """

    code: int = 110

    def __init__(
        self,
        message: str,
        *,
        field: str | None = None,
        cause: BaseException | None = None,
    ) -> None:
        super().__init__(message, cause=cause)
        self.field = field

    @property
    def error_code(self) -> ErrorCode:
        if self._error_code is not None:
            return self._error_code
        from viewkeeper.error_codes import ErrorCode

        return ErrorCode.VALIDATION_FAILED


class GapOverflowError(PermanentError):
    """A stash bound was exceeded for an entity key."""

    code: int = 111

    def __init__(self, message: str, *, entity_key: str | None = None, sequence: int | None = None) -> None:
        super().__init__(message, entity_key=entity_key)
        self.sequence = sequence

    @property
    def error_code(self) -> ErrorCode:
        if self._error_code is not None:
            return self._error_code
        from viewkeeper.error_codes import ErrorCode

        return ErrorCode.GAP_OVERFLOW


class ConfigurationError(PermanentError):
    """Invalid configuration.

    Raised during initialization when configuration is invalid.
    """

    code: int = 104

    @property
    def error_code(self) -> ErrorCode:
        if self._error_code is not None:
            return self._error_code
        from viewkeeper.error_codes import ErrorCode

        return ErrorCode.CONFIGURATION_INVALID


class RebuildNotAllowedError(PermanentError):
    """A rebuild was requested in an environment that forbids it."""

    code: int = 120

    @property
    def error_code(self) -> ErrorCode:
        if self._error_code is not None:
            return self._error_code
        from viewkeeper.error_codes import ErrorCode

        return ErrorCode.REBUILD_NOT_ALLOWED
