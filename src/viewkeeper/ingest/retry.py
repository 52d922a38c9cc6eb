"""
Storage outage retries.

Wraps a unit of work in a resilient-circuit retry policy that backs off
exponentially while the view store (or stream, stash, sink) reports
StorageUnavailableError. Every other error propagates on the first raise.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from typing import TypeVar

from resilient_circuit import RetryWithBackoffPolicy
from resilient_circuit.exceptions import RetryLimitReached

from viewkeeper.config import BackoffConfig
from viewkeeper.errors import StorageUnavailableError, is_storage_unavailable

logger = logging.getLogger(__name__)

T = TypeVar("T")


def storage_retry_policy(config: BackoffConfig) -> RetryWithBackoffPolicy:
    """Build the retry policy for storage outages from backoff settings."""
    return RetryWithBackoffPolicy(
        max_retries=config.max_retries,
        backoff=config.to_delay(),
        should_handle=is_storage_unavailable,
    )


def call_with_storage_retry(
    func: Callable[[], T],
    config: BackoffConfig,
    operation: str = "storage operation",
) -> T:
    """
    Run ``func``, retrying with backoff while storage is unavailable.

    Raises:
        StorageUnavailableError: If the outage outlasts the retry budget
    """
    if config.max_retries <= 0:
        return func()

    policy = storage_retry_policy(config)

    @policy
    def _attempt() -> T:
        return func()

    try:
        return _attempt()
    except RetryLimitReached as e:
        logger.error("%s failed after %d retries: storage unavailable", operation, config.max_retries)
        cause = e.__cause__
        if isinstance(cause, StorageUnavailableError):
            raise cause from e
        raise StorageUnavailableError(f"{operation} failed after retries: {cause or e}", cause=cause) from e
