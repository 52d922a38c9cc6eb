"""Partition worker scenarios.

These tests drive a single-partition worker synchronously with poll()
and check the view, the stash, the dead-letter sink and the committed
offset after each delivery pattern.
"""

from collections.abc import Callable
from contextlib import AbstractContextManager
from dataclasses import replace
from datetime import UTC, datetime, timedelta
from typing import Any

import pytest

from viewkeeper.config import BackoffConfig, EngineConfig, StashConfig
from viewkeeper.deadletter import DeadLetter, DeadLetterReason, DeadLetterSink, InMemoryDeadLetterSink
from viewkeeper.errors import StorageUnavailableError, ValidationError
from viewkeeper.events import (
    EventEnvelope,
    item_added,
    item_removed,
    order_created,
    status_changed,
)
from viewkeeper.ingest import PartitionWorker, RecordOutcome, WorkerState
from viewkeeper.metrics import (
    EVENTS_APPLIED,
    EVENTS_DEAD_LETTERED,
    EVENTS_DUPLICATES,
    PARTITION_LAG,
    STORE_UNAVAILABLE,
    CountingMetricsProvider,
)
from viewkeeper.projection import OrderProjector, ViewRow
from viewkeeper.stash import InMemoryStash, Stash
from viewkeeper.store import InMemoryViewStore, ViewQuery, ViewStore, ViewTransaction, WriteResult
from viewkeeper.stream import InMemoryStream, PartitionedStream

Publish = Callable[..., list[tuple[int, int]]]

T0 = datetime(2024, 5, 1, 10, 0, tzinfo=UTC)


def _history(key: str = "order-1") -> list[EventEnvelope]:
    """Five events of one order with fixed timestamps."""
    return [
        order_created(key, 1, customer_id="c-1", occurred_at=T0),
        item_added(key, 2, sku="A-1", quantity=2, unit_price="9.99", occurred_at=T0 + timedelta(minutes=1)),
        item_added(key, 3, sku="B-2", quantity=1, unit_price="3.50", occurred_at=T0 + timedelta(minutes=2)),
        item_removed(key, 4, sku="A-1", quantity=1, occurred_at=T0 + timedelta(minutes=3)),
        status_changed(key, 5, status="paid", occurred_at=T0 + timedelta(minutes=4)),
    ]


def _fold(events: list[EventEnvelope]) -> ViewRow:
    projector = OrderProjector()
    row: ViewRow | None = None
    for event in events:
        row = projector.apply(row, event)
    assert row is not None
    return row


class FlakyViewStore(ViewStore):
    """Delegating view store whose loads fail while ``failures`` is positive."""

    def __init__(self, inner: ViewStore, failures: int = 0) -> None:
        self.inner = inner
        self.failures = failures

    def load(self, entity_key: str) -> ViewRow | None:
        if self.failures > 0:
            self.failures -= 1
            raise StorageUnavailableError("view store is down")
        return self.inner.load(entity_key)

    def apply_if_sequence_matches(
        self,
        entity_key: str,
        expected_last_sequence: int | None,
        new_row: ViewRow,
    ) -> WriteResult:
        return self.inner.apply_if_sequence_matches(entity_key, expected_last_sequence, new_row)

    def transaction(self) -> AbstractContextManager[ViewTransaction]:
        return self.inner.transaction()

    def query(self, query: ViewQuery) -> list[ViewRow]:
        return self.inner.query(query)

    def count(self, status: str | None = None) -> int:
        return self.inner.count(status)

    def truncate(self) -> None:
        self.inner.truncate()


class RacingViewStore(FlakyViewStore):
    """Lets a competing writer apply the same event just before our first write."""

    def __init__(self, inner: ViewStore) -> None:
        super().__init__(inner)
        self.raced = False

    def apply_if_sequence_matches(
        self,
        entity_key: str,
        expected_last_sequence: int | None,
        new_row: ViewRow,
    ) -> WriteResult:
        if not self.raced:
            self.raced = True
            self.inner.apply_if_sequence_matches(entity_key, expected_last_sequence, new_row)
        return self.inner.apply_if_sequence_matches(entity_key, expected_last_sequence, new_row)


class AlwaysConflictingViewStore(FlakyViewStore):
    """A key that some other writer keeps advancing."""

    def apply_if_sequence_matches(
        self,
        entity_key: str,
        expected_last_sequence: int | None,
        new_row: ViewRow,
    ) -> WriteResult:
        return WriteResult.CONFLICT


class RejectingProjector(OrderProjector):
    """Refuses to project shipped orders."""

    def apply(self, row: ViewRow | None, event: EventEnvelope) -> ViewRow:
        if event.payload.get("status") == "shipped":
            raise ValidationError("shipping is not modelled", field="payload.status")
        return super().apply(row, event)


class FlakyDeadLetterSink(InMemoryDeadLetterSink):
    """Sink whose sends fail on the given call numbers (1-based)."""

    def __init__(self, failing_calls: set[int]) -> None:
        super().__init__()
        self.failing_calls = failing_calls
        self.calls = 0

    def send(self, letter: DeadLetter) -> DeadLetter:
        self.calls += 1
        if self.calls in self.failing_calls:
            raise StorageUnavailableError("dead-letter table is locked")
        return super().send(letter)


class FlakyPendingStash(InMemoryStash):
    """Stash whose pending() fails while ``failures`` is positive."""

    def __init__(self, config: StashConfig, failures: int = 0) -> None:
        super().__init__(config)
        self.failures = failures

    def pending(self, entity_key: str | None = None) -> int:
        if self.failures > 0:
            self.failures -= 1
            raise StorageUnavailableError("stash is down")
        return super().pending(entity_key)


@pytest.fixture
def worker(
    stream: PartitionedStream,
    view_store: ViewStore,
    stash: Stash,
    dead_letters: DeadLetterSink,
    engine_config: EngineConfig,
    metrics: CountingMetricsProvider,
) -> PartitionWorker:
    return PartitionWorker(0, stream, view_store, stash, dead_letters, config=engine_config, metrics=metrics)


def _memory_worker(
    store: ViewStore,
    config: EngineConfig,
    metrics: CountingMetricsProvider,
    stash: Stash | None = None,
    dead_letters: DeadLetterSink | None = None,
    **kwargs: Any,
) -> PartitionWorker:
    return PartitionWorker(
        0,
        InMemoryStream(partition_count=1),
        store,
        InMemoryStash(config.stash) if stash is None else stash,
        InMemoryDeadLetterSink() if dead_letters is None else dead_letters,
        config=config,
        metrics=metrics,
        **kwargs,
    )


class TestInOrderDelivery:
    """Events delivered once and in order."""

    def test_applies_and_commits(self, worker: PartitionWorker, publish: Publish) -> None:
        events = _history()
        publish(worker.stream, *events)

        assert worker.poll() == 5

        assert worker.store.load("order-1") == _fold(events)
        assert worker.position() == 5
        assert worker.stats.applied == 5
        assert worker.stats.records == 5
        assert worker.health.healthy

    def test_empty_partition(self, worker: PartitionWorker) -> None:
        assert worker.poll() == 0
        assert worker.position() == 0

    def test_metrics_and_lag_gauge(
        self,
        worker: PartitionWorker,
        publish: Publish,
        metrics: CountingMetricsProvider,
    ) -> None:
        publish(worker.stream, *_history()[:2])
        worker.poll()

        assert metrics.counter(EVENTS_APPLIED) == 2
        assert metrics.counter(EVENTS_APPLIED, partition=0) == 2
        assert metrics.gauge_value(PARTITION_LAG, partition=0) == 0
        assert worker.lag().lag == 0

    def test_keys_are_independent(self, worker: PartitionWorker, publish: Publish) -> None:
        first = _history("order-1")
        second = _history("order-2")
        interleaved = [e for pair in zip(first, second, strict=True) for e in pair]
        publish(worker.stream, *interleaved)

        worker.poll()

        assert worker.store.load("order-1") == _fold(first)
        assert worker.store.load("order-2") == _fold(second)


class TestRedelivery:
    """At-least-once delivery must not apply an event twice."""

    def test_redelivered_event_is_deduplicated(
        self,
        worker: PartitionWorker,
        publish: Publish,
        metrics: CountingMetricsProvider,
    ) -> None:
        events = _history()[:2]
        publish(worker.stream, *events, events[1])

        assert worker.poll() == 3

        assert worker.store.load("order-1") == _fold(events)
        assert worker.stats.duplicates == 1
        assert metrics.counter(EVENTS_DUPLICATES) == 1
        assert worker.position() == 3

    def test_old_event_is_skipped_as_stale(self, worker: PartitionWorker, publish: Publish) -> None:
        events = _history()[:3]
        publish(worker.stream, *events, events[0])

        worker.poll()

        assert worker.store.load("order-1") == _fold(events)
        assert worker.stats.out_of_order == 1

    def test_restart_replays_without_double_apply(
        self,
        worker: PartitionWorker,
        publish: Publish,
        engine_config: EngineConfig,
        metrics: CountingMetricsProvider,
    ) -> None:
        """A new worker that resumes before the last commit converges on the same rows."""
        events = _history()
        publish(worker.stream, *events)
        worker.poll()
        before = worker.store.load("order-1")

        # Crash before any commit reached the stream
        worker.stream.commit(engine_config.consumer_group, 0, 0, reset=True)
        restarted = PartitionWorker(
            0,
            worker.stream,
            worker.store,
            worker.stash,
            worker.dead_letters,
            config=engine_config,
            metrics=metrics,
        )

        assert restarted.poll() == 5

        assert restarted.store.load("order-1") == before
        assert restarted.stats.applied == 0
        assert restarted.stats.duplicates == 1
        assert restarted.stats.out_of_order == 4

    def test_shuffled_duplicated_delivery_converges(self, worker: PartitionWorker, publish: Publish) -> None:
        """Any interleaving of duplicates and reordering yields the in-order row."""
        events = _history()
        order = [0, 2, 2, 1, 4, 0, 3, 3, 1, 4]
        publish(worker.stream, *[events[i] for i in order])

        worker.poll()

        assert worker.store.load("order-1") == _fold(events)
        assert worker.stash.pending() == 0
        assert worker.dead_letters.count() == 0


class TestGaps:
    """Events ahead of a gap wait in the stash."""

    def test_gap_is_stashed_then_drained(self, worker: PartitionWorker, publish: Publish) -> None:
        events = _history()[:3]
        publish(worker.stream, events[0], events[2])

        worker.poll()

        row = worker.store.load("order-1")
        assert row is not None
        assert row.last_applied_sequence == 1
        assert worker.stash.pending("order-1") == 1
        # The stashed record is committed: the stash owns it now
        assert worker.position() == 2

        publish(worker.stream, events[1])
        worker.poll()

        assert worker.store.load("order-1") == _fold(events)
        assert worker.stash.pending() == 0
        assert worker.stats.gaps == 1
        assert worker.stats.drained == 1
        assert worker.stats.applied == 3

    def test_drain_continues_after_redelivery(self, worker: PartitionWorker, publish: Publish) -> None:
        """Stashed successors are drained even when the unblocking event arrives as a duplicate."""
        events = _history()[:3]
        publish(worker.stream, events[0], events[1])
        worker.poll()

        # Left behind by a drain that was interrupted by an outage
        worker.stash.put(events[2])
        publish(worker.stream, events[1])
        worker.poll()

        assert worker.store.load("order-1") == _fold(events)
        assert worker.stash.pending() == 0

    def test_stash_overflow_is_dead_lettered(self, worker: PartitionWorker, publish: Publish) -> None:
        # stash_config allows 5 pending entries per key
        key = "order-1"
        publish(worker.stream, order_created(key, 1, customer_id="c-1"))
        publish(worker.stream, *[status_changed(key, sequence, status="paid") for sequence in range(3, 9)])

        worker.poll()

        (letter,) = worker.dead_letters.list(reason=DeadLetterReason.STASH_OVERFLOW)
        assert letter.entity_key == key
        assert letter.sequence == 3
        assert worker.stash.pending(key) == 5
        assert worker.position() == 7

    def test_expired_gap_is_dead_lettered(self, worker: PartitionWorker) -> None:
        stale = status_changed("order-7", 5, status="paid")
        worker.stash.put(stale, received_at=datetime.now(UTC) - timedelta(hours=2))

        worker.poll()

        (letter,) = worker.dead_letters.list(reason=DeadLetterReason.GAP_UNRESOLVED)
        assert letter.entity_key == "order-7"
        assert letter.event_id == stale.event_id
        assert letter.sequence == 5
        assert worker.stash.pending() == 0


    def test_rejected_stashed_event_stops_the_drain(
        self,
        engine_config: EngineConfig,
        metrics: CountingMetricsProvider,
        publish: Publish,
    ) -> None:
        worker = _memory_worker(InMemoryViewStore(), engine_config, metrics, projector=RejectingProjector())
        key = "order-1"
        publish(
            worker.stream,
            order_created(key, 1, customer_id="c-1"),
            status_changed(key, 3, status="shipped"),
            status_changed(key, 4, status="paid"),
            status_changed(key, 2, status="placed"),
        )

        assert worker.poll() == 4

        (letter,) = worker.dead_letters.list()
        assert letter.reason is DeadLetterReason.VALIDATION_FAILED
        assert letter.sequence == 3
        # seq 4 still waits for seq 3; it must not be dropped by the drain
        assert worker.stash.pending(key) == 1
        assert [e.sequence for e in worker.stash.entries(key)] == [4]
        row = worker.store.load(key)
        assert row is not None
        assert row.last_applied_sequence == 2
        assert worker.stats.drained == 0

    def test_failed_send_keeps_expired_entries_stashed(
        self,
        engine_config: EngineConfig,
        metrics: CountingMetricsProvider,
    ) -> None:
        config = replace(engine_config, storage_backoff=BackoffConfig(max_retries=0))
        sink = FlakyDeadLetterSink(failing_calls={2})
        worker = _memory_worker(InMemoryViewStore(), config, metrics, dead_letters=sink)
        received_at = datetime.now(UTC) - timedelta(hours=2)
        for sequence in (5, 6, 7):
            worker.stash.put(status_changed("order-9", sequence, status="paid"), received_at=received_at)

        worker.poll()

        assert not worker.health.healthy
        assert [letter.sequence for letter in sink.list()] == [5]
        assert [e.sequence for e in worker.stash.entries("order-9")] == [6, 7]

        worker.poll()

        assert worker.health.healthy
        assert sorted(letter.sequence for letter in sink.list(reason=DeadLetterReason.GAP_UNRESOLVED)) == [5, 6, 7]
        assert worker.stash.pending() == 0
        assert worker.stats.dead_lettered == 3

    def test_failed_send_keeps_overflow_entries_stashed(
        self,
        engine_config: EngineConfig,
        metrics: CountingMetricsProvider,
        publish: Publish,
    ) -> None:
        # stash_config allows 5 pending entries per key
        config = replace(engine_config, storage_backoff=BackoffConfig(max_retries=0))
        sink = FlakyDeadLetterSink(failing_calls={2})
        worker = _memory_worker(InMemoryViewStore(), config, metrics, dead_letters=sink)
        key = "order-1"
        now = datetime.now(UTC)
        for offset, sequence in enumerate(range(3, 10)):
            envelope = status_changed(key, sequence, status="paid")
            worker.stash.put(envelope, received_at=now - timedelta(seconds=30 - offset))
        publish(worker.stream, status_changed(key, 10, status="paid"))

        assert worker.poll() == 0

        assert [letter.sequence for letter in sink.list()] == [3]
        assert worker.stash.pending(key) == 7
        assert worker.position() == 0

        # The redelivered record finishes the evictions without stashing twice
        assert worker.poll() == 1

        assert sorted(letter.sequence for letter in sink.list(reason=DeadLetterReason.STASH_OVERFLOW)) == [3, 4, 5]
        assert [e.sequence for e in worker.stash.entries(key)] == [6, 7, 8, 9, 10]
        assert worker.stats.gaps == 1
        assert worker.stats.dead_lettered == 3


class TestValidation:
    """Malformed events are dead-lettered and the partition moves on."""

    def test_garbage_is_dead_lettered(
        self,
        worker: PartitionWorker,
        publish: Publish,
        metrics: CountingMetricsProvider,
    ) -> None:
        worker.stream.publish("order-1", b"{definitely not an event")
        publish(worker.stream, _history()[0])

        assert worker.poll() == 2

        (letter,) = worker.dead_letters.list()
        assert letter.reason is DeadLetterReason.VALIDATION_FAILED
        assert letter.payload == b"{definitely not an event"
        assert letter.partition == 0
        assert letter.offset == 0
        assert worker.store.load("order-1") is not None
        assert worker.position() == 2
        assert metrics.counter(EVENTS_DEAD_LETTERED, reason="validation failed") == 1

    def test_projection_failure_is_dead_lettered(
        self,
        engine_config: EngineConfig,
        metrics: CountingMetricsProvider,
        publish: Publish,
    ) -> None:
        worker = _memory_worker(InMemoryViewStore(), engine_config, metrics, projector=RejectingProjector())
        events = [order_created("order-1", 1, customer_id="c-1"), status_changed("order-1", 2, status="shipped")]
        publish(worker.stream, *events)

        assert worker.process_record(worker.stream.fetch(0, 0)[0]) is RecordOutcome.APPLIED
        assert worker.process_record(worker.stream.fetch(0, 1)[0]) is RecordOutcome.DEAD_LETTERED

        (letter,) = worker.dead_letters.list()
        assert letter.entity_key == "order-1"
        assert letter.sequence == 2
        assert letter.offset == 1


class TestStorageOutage:
    """An unavailable view store stops the partition without losing events."""

    def test_outage_blocks_commit(
        self,
        engine_config: EngineConfig,
        metrics: CountingMetricsProvider,
        publish: Publish,
    ) -> None:
        store = FlakyViewStore(InMemoryViewStore(), failures=1000)
        worker = _memory_worker(store, engine_config, metrics)
        events = _history()
        publish(worker.stream, *events)

        assert worker.poll() == 0

        assert worker.stream.committed(engine_config.consumer_group, 0) is None
        assert not worker.health.healthy
        assert worker.health.last_error_code == "STORAGE_UNAVAILABLE"
        assert worker.stats.storage_failures == 1
        assert metrics.counter(STORE_UNAVAILABLE, partition=0) == 1

        # The store comes back: the same records are read again and applied once
        store.failures = 0
        assert worker.poll() == 5
        assert store.load("order-1") == _fold(events)
        assert worker.position() == 5
        assert worker.health.healthy

    def test_short_outage_is_retried_within_poll(
        self,
        engine_config: EngineConfig,
        metrics: CountingMetricsProvider,
        publish: Publish,
    ) -> None:
        store = FlakyViewStore(InMemoryViewStore(), failures=1)
        worker = _memory_worker(store, engine_config, metrics)
        publish(worker.stream, *_history())

        assert worker.poll() == 5
        assert worker.health.healthy
        assert worker.stats.storage_failures == 0


    def test_outage_mid_record_counts_effects_once(
        self,
        engine_config: EngineConfig,
        metrics: CountingMetricsProvider,
        publish: Publish,
    ) -> None:
        """A storage blip after a counter moved does not replay the whole record."""
        stash = FlakyPendingStash(engine_config.stash)
        worker = _memory_worker(InMemoryViewStore(), engine_config, metrics, stash=stash)
        event = _history()[0]
        publish(worker.stream, event, event)
        # The duplicate's stash lookup fails once, after it was counted
        stash.failures = 1

        assert worker.poll() == 2

        assert stash.failures == 0
        assert worker.stats.applied == 1
        assert worker.stats.duplicates == 1
        assert metrics.counter(EVENTS_DUPLICATES) == 1


class TestConflicts:
    """Conditional write conflicts are re-decided, never overwritten."""

    def test_lost_race_is_redecided_as_duplicate(
        self,
        engine_config: EngineConfig,
        metrics: CountingMetricsProvider,
        publish: Publish,
    ) -> None:
        store = RacingViewStore(InMemoryViewStore())
        worker = _memory_worker(store, engine_config, metrics)
        publish(worker.stream, _history()[0])

        assert worker.poll() == 1

        assert worker.stats.conflicts == 1
        assert worker.stats.duplicates == 1
        assert worker.stats.applied == 0
        assert store.load("order-1") is not None

    def test_exhausted_conflicts_leave_record_uncommitted(
        self,
        engine_config: EngineConfig,
        metrics: CountingMetricsProvider,
        publish: Publish,
    ) -> None:
        worker = _memory_worker(AlwaysConflictingViewStore(InMemoryViewStore()), engine_config, metrics)
        publish(worker.stream, _history()[0])

        assert worker.poll() == 0

        assert worker.stats.conflicts == engine_config.conflict_max_retries + 1
        assert worker.position() == 0
        assert not worker.health.healthy
        assert worker.health.last_error_code == "CONCURRENCY_CONFLICT"


class TestPause:
    """A paused worker does not consume."""

    def test_pause_and_resume(self, worker: PartitionWorker, publish: Publish) -> None:
        publish(worker.stream, *_history())

        assert worker.pause(timeout=1) is True
        assert worker.state is WorkerState.PAUSED
        assert worker.poll() == 0
        assert worker.position() == 0

        worker.resume()
        assert worker.state is WorkerState.RUNNING
        assert worker.poll() == 5

    def test_rebuilding_state_also_blocks_polls(self, worker: PartitionWorker, publish: Publish) -> None:
        publish(worker.stream, _history()[0])
        worker.pause(timeout=1, state=WorkerState.REBUILDING)
        assert worker.poll() == 0
