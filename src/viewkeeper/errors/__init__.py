"""Viewkeeper error hierarchy.

Import from ``viewkeeper.errors``.
"""

from viewkeeper.errors.base import ViewkeeperBaseException, ViewkeeperError
from viewkeeper.errors.permanent import (
    ConfigurationError,
    GapOverflowError,
    PermanentError,
    RebuildNotAllowedError,
    ValidationError,
)
from viewkeeper.errors.rebuild import RebuildInProgressError
from viewkeeper.errors.transient import ConflictError, StorageUnavailableError, TransientError
from viewkeeper.errors.utils import is_permanent, is_storage_unavailable, is_transient, truncate_error

__all__ = [
    "ConfigurationError",
    "ConflictError",
    "GapOverflowError",
    "PermanentError",
    "RebuildInProgressError",
    "RebuildNotAllowedError",
    "StorageUnavailableError",
    "TransientError",
    "ValidationError",
    "ViewkeeperBaseException",
    "ViewkeeperError",
    "is_permanent",
    "is_storage_unavailable",
    "is_transient",
    "truncate_error",
]
