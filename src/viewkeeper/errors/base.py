"""Base exception hierarchy for Viewkeeper.

Two-tier exception hierarchy:

1. ViewkeeperBaseException - Base for all errors, not caught by default handlers
2. ViewkeeperError - Standard errors that can be caught and handled

Errors raised while processing a record may name the entity key and
stream partition they concern, so health reports and log lines can point
at the stuck order without parsing messages.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from viewkeeper.error_codes import ErrorCode


class ViewkeeperBaseException(Exception):  # noqa: N818 - intentional base exception name
    """Base exception for all Viewkeeper errors.

    Attributes:
        code: Numeric error code for programmatic handling
        error_code: Semantic ErrorCode for categorization and routing
        cause: Optional original exception that caused this error
        entity_key: Order the error concerns, if known
        partition: Stream partition being consumed, if known
    """

    code: int = 0
    _error_code: ErrorCode | None = None

    def __init__(
        self,
        message: str,
        *,
        code: int | None = None,
        cause: BaseException | None = None,
        error_code: ErrorCode | None = None,
        entity_key: str | None = None,
        partition: int | None = None,
    ) -> None:
        super().__init__(message)
        if code is not None:
            self.code = code
        self.cause = cause
        if error_code is not None:
            self._error_code = error_code
        self.entity_key = entity_key
        self.partition = partition

    @property
    def error_code(self) -> ErrorCode:
        """Get the semantic error code for this exception."""
        if self._error_code is not None:
            return self._error_code
        from viewkeeper.error_codes import ErrorCode

        return ErrorCode.UNKNOWN

    def log_context(self) -> dict[str, Any]:
        """Structured fields for a log line about this error."""
        context: dict[str, Any] = {"error": super().__str__(), "error_code": self.error_code.value}
        if self.entity_key is not None:
            context["entity_key"] = self.entity_key
        if self.partition is not None:
            context["partition"] = self.partition
        return context

    def __str__(self) -> str:
        parts = [super().__str__()]
        if self.code:
            parts.append(f"(code={self.code})")
        if self.entity_key is not None:
            parts.append(f"[entity_key={self.entity_key}]")
        if self.cause:
            parts.append(f"caused by: {self.cause}")
        return " ".join(parts)


class ViewkeeperError(ViewkeeperBaseException):
    """Standard Viewkeeper error.

    All normal application errors inherit from this.
    """

    code: int = 100

    @property
    def error_code(self) -> ErrorCode:
        if self._error_code is not None:
            return self._error_code
        from viewkeeper.error_codes import ErrorCode

        return ErrorCode.SYSTEM_ERROR
