"""Tests for the out-of-order stash (in-memory and SQLite)."""

from datetime import UTC, datetime, timedelta

import pytest

from viewkeeper.config import StashConfig
from viewkeeper.errors import ConfigurationError
from viewkeeper.events import EventEnvelope, status_changed
from viewkeeper.stash import InMemoryStash, Stash, create_stash
from viewkeeper.stash.sqlite import SqliteStash

T0 = datetime(2024, 5, 1, 10, 0, tzinfo=UTC)


def _event(key: str, sequence: int) -> EventEnvelope:
    return status_changed(key, sequence, status="paid")


class TestPutAndDrain:
    """Stashed entries come back in sequence order, up to the first hole."""

    def test_put_and_inspect(self, stash: Stash) -> None:
        stash.put(_event("order-1", 4), received_at=T0)
        stash.put(_event("order-1", 3), received_at=T0)
        stash.put(_event("order-2", 9), received_at=T0)

        assert stash.pending() == 3
        assert stash.pending("order-1") == 2
        assert stash.keys() == ["order-1", "order-2"]
        assert [e.sequence for e in stash.entries("order-1")] == [3, 4]

    def test_put_same_sequence_twice_is_noop(self, stash: Stash) -> None:
        event = _event("order-1", 3)
        assert stash.put(event) is True
        assert stash.put(event) is False
        assert stash.pending("order-1") == 1

    def test_drain_stops_at_first_missing_sequence(self, stash: Stash) -> None:
        for sequence in (3, 4, 6):
            stash.put(_event("order-1", sequence))

        drained = [e.sequence for e in stash.drain("order-1", 3)]

        assert drained == [3, 4]
        assert [e.sequence for e in stash.entries("order-1")] == [6]

    def test_drain_returns_stored_envelope(self, stash: Stash) -> None:
        event = _event("order-1", 2)
        stash.put(event)

        (drained,) = list(stash.drain("order-1", 2))
        assert drained == event

    def test_drain_purges_stale_entries(self, stash: Stash) -> None:
        for sequence in (2, 3, 5):
            stash.put(_event("order-1", sequence))

        assert [e.sequence for e in stash.drain("order-1", 5)] == [5]
        assert stash.pending("order-1") == 0

    def test_entry_stays_stashed_until_consumer_moves_on(self, stash: Stash) -> None:
        """An entry whose processing raised is not lost."""
        stash.put(_event("order-1", 2))
        stash.put(_event("order-1", 3))

        drain = stash.drain("order-1", 2)
        first = next(drain)
        assert first.sequence == 2
        assert stash.pending("order-1") == 2

        # The consumer failed on the first entry and abandoned the iterator
        drain.close()
        assert [e.sequence for e in stash.entries("order-1")] == [2, 3]

    def test_drain_of_unknown_key_is_empty(self, stash: Stash) -> None:
        assert list(stash.drain("order-404", 1)) == []

    def test_clear(self, stash: Stash) -> None:
        stash.put(_event("order-1", 3))
        stash.put(_event("order-2", 3))
        stash.clear()
        assert stash.pending() == 0
        assert stash.keys() == []


class TestBounds:
    """Entries beyond a bound are reported, and stay stashed until discarded."""

    def test_per_key_bound_reports_oldest_of_that_key(self, stash: Stash) -> None:
        # stash_config allows 5 entries per key
        for offset, sequence in enumerate(range(10, 15)):
            assert stash.put(_event("order-1", sequence), received_at=T0 + timedelta(seconds=offset)) is True
        assert stash.overflow("order-1") == []

        stash.put(_event("order-1", 20), received_at=T0 + timedelta(seconds=10))
        over = stash.overflow("order-1")

        assert [(e.entity_key, e.sequence) for e in over] == [("order-1", 10)]
        assert stash.pending("order-1") == 6

        stash.discard("order-1", 10)
        assert stash.overflow("order-1") == []
        assert [e.sequence for e in stash.entries("order-1")] == [11, 12, 13, 14, 20]

    def test_global_bound_reports_oldest_overall(self, stash: Stash) -> None:
        # stash_config allows 10 entries overall
        for index in range(10):
            key = f"order-{index % 5}"
            stash.put(_event(key, 10 + index), received_at=T0 + timedelta(seconds=index))

        stash.put(_event("order-9", 2), received_at=T0 + timedelta(seconds=30))

        assert [(e.entity_key, e.sequence) for e in stash.overflow("order-9")] == [("order-0", 10)]
        assert [(e.entity_key, e.sequence) for e in stash.overflow()] == [("order-0", 10)]
        assert stash.pending() == 11

    def test_per_key_excess_counts_towards_global_bound(self, stash: Stash) -> None:
        for offset, sequence in enumerate(range(10, 16)):
            stash.put(_event("order-1", sequence), received_at=T0 + timedelta(seconds=10 + offset))
        for index in range(5):
            stash.put(_event(f"order-{index + 2}", 3), received_at=T0 + timedelta(seconds=index))

        over = stash.overflow("order-1")

        # 11 entries: dropping order-1's oldest already meets the global bound
        assert [(e.entity_key, e.sequence) for e in over] == [("order-1", 10)]

    def test_discard_of_absent_entry_is_noop(self, stash: Stash) -> None:
        stash.put(_event("order-1", 3))
        stash.discard("order-1", 4)
        stash.discard("order-404", 1)
        assert stash.pending() == 1


class TestExpiry:
    """Entries older than max_age_seconds are reported by expired()."""

    def test_expired_reports_only_old_entries(self, stash: Stash) -> None:
        stash.put(_event("order-1", 3), received_at=T0)
        stash.put(_event("order-2", 3), received_at=T0 + timedelta(seconds=50))

        expired = stash.expired(now=T0 + timedelta(seconds=61))

        assert [(e.entity_key, e.sequence) for e in expired] == [("order-1", 3)]
        assert stash.keys() == ["order-1", "order-2"]

    def test_expired_entries_stay_until_discarded(self, stash: Stash) -> None:
        stash.put(_event("order-1", 3), received_at=T0)
        now = T0 + timedelta(hours=1)
        assert len(stash.expired(now)) == 1
        assert len(stash.expired(now)) == 1

        stash.discard("order-1", 3)
        assert stash.expired(now) == []

    def test_zero_max_age_disables_expiry(self) -> None:
        stash = InMemoryStash(StashConfig(max_age_seconds=0))
        stash.put(_event("order-1", 3), received_at=T0)
        assert stash.expired(now=T0 + timedelta(days=365)) == []
        assert stash.pending() == 1


class TestSqliteStash:
    """SQLite-specific stash behaviour."""

    def test_entries_survive_reopen(self, sqlite_url: str) -> None:
        SqliteStash(sqlite_url).put(_event("order-1", 5), received_at=T0)

        reopened = SqliteStash(sqlite_url)
        (entry,) = reopened.entries("order-1")
        assert entry.sequence == 5
        assert entry.received_at == T0
        assert entry.envelope.payload == {"status": "paid"}


class TestCreateStash:
    """Tests for backend selection by connection string."""

    def test_memory_and_sqlite(self, sqlite_url: str) -> None:
        assert isinstance(create_stash("memory://"), InMemoryStash)
        assert isinstance(create_stash(sqlite_url), SqliteStash)

    def test_config_is_passed_through(self) -> None:
        config = StashConfig(max_pending_per_key=2)
        assert create_stash("memory://", config).config is config

    def test_postgres_is_rejected(self) -> None:
        with pytest.raises(ConfigurationError):
            create_stash("postgresql://localhost/viewkeeper")
