"""Shared pytest fixtures for parameterized backend testing."""

import os
from collections.abc import Callable, Generator
from pathlib import Path

import pytest
import structlog
from testcontainers.postgres import PostgresContainer  # type: ignore[import-untyped]

from viewkeeper.config import BackoffConfig, EngineConfig, StashConfig
from viewkeeper.deadletter import DeadLetterSink, InMemoryDeadLetterSink
from viewkeeper.deadletter.sqlite import SqliteDeadLetterSink
from viewkeeper.events import EventEnvelope, encode_envelope
from viewkeeper.logging import configure_logging
from viewkeeper.metrics import CountingMetricsProvider
from viewkeeper.stash import InMemoryStash, Stash
from viewkeeper.stash.sqlite import SqliteStash
from viewkeeper.store import InMemoryViewStore, ViewStore
from viewkeeper.store.connection import ConnectionManager, SingletonMeta
from viewkeeper.store.sqlite import SqliteViewStore
from viewkeeper.stream import InMemoryStream, PartitionedStream
from viewkeeper.stream.sqlite import SqliteStream

POSTGRES_ENABLED = os.environ.get("VIEWKEEPER_TEST_POSTGRES", "").lower() in ("1", "true", "yes")

Publisher = Callable[..., list[tuple[int, int]]]


@pytest.fixture(scope="session", autouse=True)
def quiet_logging() -> None:
    """Route structlog output to a ReturnLogger so captured stdout stays clean."""
    configure_logging(logger_factory=structlog.ReturnLoggerFactory())


@pytest.fixture(autouse=True)
def reset_connection_manager() -> Generator[None, None, None]:
    """Reset singleton ConnectionManager between tests for isolation."""
    yield
    # Reset the singleton after each test
    SingletonMeta.reset(ConnectionManager)


# =============================================================================
# PostgreSQL Container (Session-Scoped, opt-in)
# =============================================================================


@pytest.fixture(scope="session")
def postgres_container() -> Generator[PostgresContainer, None, None]:
    """Start PostgreSQL container once per test session."""
    if not POSTGRES_ENABLED:
        pytest.skip("set VIEWKEEPER_TEST_POSTGRES=1 to run PostgreSQL tests")
    with PostgresContainer("postgres:15") as postgres:
        yield postgres


@pytest.fixture(scope="session")
def postgres_url(postgres_container: PostgresContainer) -> str:
    """Get PostgreSQL connection URL."""
    url = postgres_container.get_connection_url()
    # testcontainers returns a psycopg2 style URL, psycopg 3 wants the plain scheme
    if "+psycopg2" in url:
        url = url.replace("+psycopg2", "")
    return str(url)


# =============================================================================
# Configuration
# =============================================================================


@pytest.fixture
def sqlite_url(tmp_path: Path) -> str:
    """File-backed SQLite URL, shareable across threads."""
    return f"sqlite:///{tmp_path / 'viewkeeper.db'}"


@pytest.fixture
def fast_backoff() -> BackoffConfig:
    """Millisecond backoff so outage tests finish quickly."""
    return BackoffConfig(min_delay_ms=1, max_delay_ms=5, factor=2, jitter=0.1, max_retries=2)


@pytest.fixture
def stash_config() -> StashConfig:
    return StashConfig(max_pending_per_key=5, max_total=10, max_age_seconds=60.0)


@pytest.fixture
def engine_config(fast_backoff: BackoffConfig, stash_config: StashConfig) -> EngineConfig:
    """Single-partition engine settings for deterministic tests."""
    return EngineConfig(
        database_url="memory://",
        partition_count=1,
        environment="test",
        batch_size=50,
        poll_interval_ms=5,
        conflict_max_retries=3,
        pause_timeout_seconds=5.0,
        storage_backoff=fast_backoff,
        stash=stash_config,
    )


@pytest.fixture
def metrics() -> CountingMetricsProvider:
    return CountingMetricsProvider()


# =============================================================================
# Parameterized Backend Fixtures
# =============================================================================


@pytest.fixture(params=["memory", "sqlite", pytest.param("postgres", marks=pytest.mark.postgres)])
def store_backend(request: pytest.FixtureRequest) -> str:
    """View store backend - memory and SQLite always, PostgreSQL when enabled."""
    return str(request.param)


@pytest.fixture
def view_store(
    store_backend: str,
    sqlite_url: str,
    request: pytest.FixtureRequest,
) -> Generator[ViewStore, None, None]:
    """Create an empty view store for the current backend."""
    store: ViewStore
    if store_backend == "memory":
        store = InMemoryViewStore()
    elif store_backend == "sqlite":
        store = SqliteViewStore(sqlite_url)
    else:
        from viewkeeper.store.postgres import PostgresViewStore

        store = PostgresViewStore(request.getfixturevalue("postgres_url"))
        store.truncate()
    yield store
    store.close()


@pytest.fixture(params=["memory", "sqlite"])
def local_backend(request: pytest.FixtureRequest) -> str:
    """Backend of the stream, stash and dead-letter sink."""
    return str(request.param)


@pytest.fixture
def stash(local_backend: str, sqlite_url: str, stash_config: StashConfig) -> Stash:
    if local_backend == "memory":
        return InMemoryStash(stash_config)
    return SqliteStash(sqlite_url, stash_config)


@pytest.fixture
def dead_letters(local_backend: str, sqlite_url: str) -> DeadLetterSink:
    if local_backend == "memory":
        return InMemoryDeadLetterSink()
    return SqliteDeadLetterSink(sqlite_url)


@pytest.fixture
def stream(local_backend: str, sqlite_url: str) -> PartitionedStream:
    """Single-partition stream so every key shares one ordered log."""
    if local_backend == "memory":
        return InMemoryStream(partition_count=1)
    return SqliteStream(sqlite_url, partition_count=1)


# =============================================================================
# Helpers
# =============================================================================


@pytest.fixture
def publish() -> Publisher:
    """Publish envelopes in their wire encoding, keyed by entity key."""

    def _publish(stream: PartitionedStream, *envelopes: EventEnvelope) -> list[tuple[int, int]]:
        return [stream.publish(e.entity_key, encode_envelope(e)) for e in envelopes]

    return _publish
