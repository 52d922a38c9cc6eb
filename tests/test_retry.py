"""Tests for storage outage retries."""

import pytest

from viewkeeper.config import BackoffConfig
from viewkeeper.errors import StorageUnavailableError
from viewkeeper.ingest.retry import call_with_storage_retry


class Flaky:
    """Callable that fails ``failures`` times before returning ``value``."""

    def __init__(self, failures: int, error: Exception | None = None, value: str = "ok") -> None:
        self.failures = failures
        self.error = error or StorageUnavailableError("view store unreachable")
        self.value = value
        self.calls = 0

    def __call__(self) -> str:
        self.calls += 1
        if self.calls <= self.failures:
            raise self.error
        return self.value


class TestCallWithStorageRetry:
    def test_recovers_after_outage(self, fast_backoff: BackoffConfig) -> None:
        func = Flaky(failures=1)
        assert call_with_storage_retry(func, fast_backoff) == "ok"
        assert func.calls == 2

    def test_gives_up_with_storage_unavailable(self, fast_backoff: BackoffConfig) -> None:
        func = Flaky(failures=100)
        with pytest.raises(StorageUnavailableError):
            call_with_storage_retry(func, fast_backoff, operation="load view row")
        assert func.calls > 1

    def test_other_errors_are_not_retried(self, fast_backoff: BackoffConfig) -> None:
        func = Flaky(failures=100, error=KeyError("order-1"))
        with pytest.raises(KeyError):
            call_with_storage_retry(func, fast_backoff)
        assert func.calls == 1

    def test_zero_retries_calls_once(self) -> None:
        func = Flaky(failures=1)
        with pytest.raises(StorageUnavailableError):
            call_with_storage_retry(func, BackoffConfig(max_retries=0))
        assert func.calls == 1
