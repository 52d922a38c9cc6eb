"""Administrative errors raised by the rebuild controller."""

from __future__ import annotations

from typing import TYPE_CHECKING

from viewkeeper.errors.base import ViewkeeperError

if TYPE_CHECKING:
    from viewkeeper.error_codes import ErrorCode


class RebuildInProgressError(ViewkeeperError):
    """A rebuild was requested while another one is still running."""

    code: int = 121

    @property
    def error_code(self) -> ErrorCode:
        if self._error_code is not None:
            return self._error_code
        from viewkeeper.error_codes import ErrorCode

        return ErrorCode.REBUILD_IN_PROGRESS
