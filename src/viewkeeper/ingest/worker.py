"""
Partition worker.

One PartitionWorker owns one stream partition and processes its records
strictly in offset order:

    decode -> load row -> decide -> {project + conditional write | stash | count}
           -> drain the stash for the key -> commit offset + 1

The offset is committed only after every write the record caused
(including drained stash entries) has committed. A record whose
processing fails with a transient error is not committed and is read
again on the next poll; since the decision is recomputed from the stored
``last_applied_sequence`` a re-read is harmless.

Storage calls are retried one at a time, and each counter moves only
after the write it reports has succeeded, so an outage in the middle of a
record does not count the record's effects twice.
"""

from __future__ import annotations

import threading
from collections.abc import Callable
from dataclasses import asdict, dataclass, fields
from datetime import UTC, datetime
from enum import Enum
from functools import partial
from typing import Any, TypeVar

from viewkeeper.config import EngineConfig
from viewkeeper.deadletter import DeadLetter, DeadLetterReason, DeadLetterSink
from viewkeeper.error_codes import classify_error
from viewkeeper.errors import ConflictError, GapOverflowError, TransientError, ValidationError, truncate_error
from viewkeeper.events import EventEnvelope, decode_envelope, encode_envelope
from viewkeeper.ingest.retry import call_with_storage_retry
from viewkeeper.logging import partition_logger
from viewkeeper.metrics import (
    EVENT_DURATION,
    EVENTS_APPLIED,
    EVENTS_DEAD_LETTERED,
    EVENTS_DUPLICATES,
    EVENTS_GAPS,
    EVENTS_OUT_OF_ORDER,
    PARTITION_LAG,
    STORE_CONFLICTS,
    STORE_UNAVAILABLE,
    MetricsProvider,
    Timer,
    get_metrics,
)
from viewkeeper.projection import OrderProjector, ViewProjector
from viewkeeper.sequencing import Decision, decide, expected_next
from viewkeeper.stash import Stash, StashEntry
from viewkeeper.store import ViewStore, WriteResult
from viewkeeper.stream import PartitionedStream, PartitionLag, StreamRecord
from viewkeeper.tracing import trace_operation

T = TypeVar("T")


class WorkerState(Enum):
    """Lifecycle state of a worker (and of the engine driving it)."""

    RUNNING = "running"
    PAUSED = "paused"
    REBUILDING = "rebuilding"


class RecordOutcome(Enum):
    """What processing a single record resulted in."""

    APPLIED = "applied"
    DUPLICATE = "duplicate"
    STALE = "stale"
    STASHED = "stashed"
    DEAD_LETTERED = "dead_lettered"


@dataclass
class WorkerStats:
    """Counters kept by a worker since it was created."""

    records: int = 0
    applied: int = 0
    drained: int = 0
    duplicates: int = 0
    out_of_order: int = 0
    gaps: int = 0
    dead_lettered: int = 0
    conflicts: int = 0
    storage_failures: int = 0

    def __add__(self, other: WorkerStats) -> WorkerStats:
        return WorkerStats(**{f.name: getattr(self, f.name) + getattr(other, f.name) for f in fields(self)})

    def to_dict(self) -> dict[str, int]:
        return asdict(self)


@dataclass
class WorkerHealth:
    """
    Health signal of a worker.

    A worker is unhealthy while its last poll failed on a transient error;
    the partition is then not advancing and its lag grows.
    """

    healthy: bool = True
    consecutive_failures: int = 0
    last_error: str | None = None
    last_error_code: str | None = None
    last_failure_at: datetime | None = None
    last_success_at: datetime | None = None

    def record_success(self) -> None:
        self.healthy = True
        self.consecutive_failures = 0
        self.last_success_at = datetime.now(UTC)

    def record_failure(self, error: BaseException) -> None:
        self.healthy = False
        self.consecutive_failures += 1
        self.last_error = truncate_error(str(error), 1024)
        self.last_error_code = classify_error(error).value
        self.last_failure_at = datetime.now(UTC)

    def to_dict(self) -> dict[str, Any]:
        return {
            "healthy": self.healthy,
            "consecutive_failures": self.consecutive_failures,
            "last_error": self.last_error,
            "last_error_code": self.last_error_code,
            "last_failure_at": self.last_failure_at.isoformat() if self.last_failure_at else None,
            "last_success_at": self.last_success_at.isoformat() if self.last_success_at else None,
        }


class PartitionWorker:
    """
    Processes the records of one stream partition.

    The worker receives all its collaborators; several workers (one per
    partition) share the view store, stash and dead-letter sink of their
    engine.
    """

    def __init__(
        self,
        partition: int,
        stream: PartitionedStream,
        store: ViewStore,
        stash: Stash,
        dead_letters: DeadLetterSink,
        config: EngineConfig | None = None,
        projector: ViewProjector | None = None,
        metrics: MetricsProvider | None = None,
    ) -> None:
        self.partition = partition
        self.stream = stream
        self.store = store
        self.stash = stash
        self.dead_letters = dead_letters
        self.config = config or EngineConfig()
        self.projector = projector or OrderProjector()
        self.metrics = metrics or get_metrics()

        self.stats = WorkerStats()
        self.health = WorkerHealth()
        self._tags = {"partition": str(partition)}
        self._log = partition_logger(partition, self.config.consumer_group)

        self._state = WorkerState.RUNNING
        self._busy = False
        self._generation = 0
        self._cond = threading.Condition()

    # Lifecycle

    @property
    def state(self) -> WorkerState:
        with self._cond:
            return self._state

    def pause(self, timeout: float | None = None, state: WorkerState = WorkerState.PAUSED) -> bool:
        """
        Stop consuming and wait for the in-flight record to finish.

        Returns:
            True if no record is in flight any more, False on timeout
        """
        with self._cond:
            self._state = state
            self._generation += 1
            idle = self._cond.wait_for(lambda: not self._busy, timeout=timeout)
        self._log.info("worker_paused", state=state.value, idle=idle)
        return idle

    def resume(self) -> None:
        with self._cond:
            self._state = WorkerState.RUNNING
            self._cond.notify_all()
        self._log.info("worker_resumed")

    def wake(self) -> None:
        with self._cond:
            self._cond.notify_all()

    def run(self, stop: threading.Event) -> None:
        """Poll until ``stop`` is set. Used as a thread target by the engine."""
        interval = self.config.poll_interval_ms / 1000.0
        self._log.info("worker_started")
        while not stop.is_set():
            with self._cond:
                if self._state is not WorkerState.RUNNING:
                    self._cond.wait(timeout=interval or None)
                    continue
            try:
                processed = self.poll()
            except Exception as e:
                # Unexpected failures must not kill the partition thread
                self.health.record_failure(e)
                self._log.exception("poll_failed", error=str(e))
                processed = 0
            if processed == 0:
                stop.wait(interval)
        self._log.info("worker_stopped")

    # Polling

    def position(self) -> int:
        """Next offset this worker will read."""
        return self.stream.position(self.config.consumer_group, self.partition)

    def lag(self) -> PartitionLag:
        return self.stream.lag(self.config.consumer_group, self.partition)

    def poll(self) -> int:
        """
        Process one batch of records.

        Stops early when the worker is paused or a transient failure
        occurs; the failed record is read again on the next poll.

        Returns:
            Number of records processed and committed
        """
        with self._cond:
            if self._state is not WorkerState.RUNNING:
                return 0
            generation = self._generation

        processed = 0
        try:
            self._sweep_expired()
            records = self._retry(
                lambda: self.stream.fetch(self.partition, self.position(), self.config.batch_size),
                "stream.fetch",
            )
            for record in records:
                with self._cond:
                    # A pause since the fetch invalidates the fetched batch
                    if self._state is not WorkerState.RUNNING or self._generation != generation:
                        break
                    self._busy = True
                try:
                    self._process_and_commit(record)
                finally:
                    with self._cond:
                        self._busy = False
                        self._cond.notify_all()
                processed += 1
        except TransientError as e:
            self.health.record_failure(e)
            if isinstance(e, ConflictError):
                self._log.warning("conflict_retries_exhausted", **e.log_context())
            else:
                self.stats.storage_failures += 1
                self.metrics.increment(STORE_UNAVAILABLE, tags=self._tags)
                self._log.warning("storage_unavailable", retry_from=self._safe_position(), **e.log_context())
            return processed

        self.health.record_success()
        self._report_lag()
        return processed

    def _process_and_commit(self, record: StreamRecord) -> RecordOutcome:
        outcome = self.process_record(record)
        self._retry(
            lambda: self.stream.commit(self.config.consumer_group, self.partition, record.offset + 1),
            "stream.commit",
        )
        self.stats.records += 1
        return outcome

    def _retry(self, func: Callable[[], T], operation: str) -> T:
        return call_with_storage_retry(func, self.config.storage_backoff, operation)

    def process_record(self, record: StreamRecord) -> RecordOutcome:
        """Run one record through decode, decide, write and drain. Does not commit."""
        with trace_operation("ingest.record", partition=self.partition, offset=record.offset) as span:
            with Timer(self.metrics, EVENT_DURATION, partition=self.partition):
                try:
                    envelope = decode_envelope(record.value)
                except ValidationError as e:
                    self._dead_letter_raw(record, e)
                    outcome = RecordOutcome.DEAD_LETTERED
                else:
                    span.set_attribute("entity_key", envelope.entity_key)
                    span.set_attribute("sequence", envelope.sequence)
                    try:
                        outcome = self._handle(envelope)
                    except ValidationError as e:
                        self._dead_letter_raw(record, e, envelope)
                        outcome = RecordOutcome.DEAD_LETTERED
            span.set_attribute("outcome", outcome.value)
        return outcome

    # Per-key processing

    def _handle(self, envelope: EventEnvelope) -> RecordOutcome:
        key = envelope.entity_key
        outcome = self._apply(envelope)
        if outcome is RecordOutcome.APPLIED:
            self._drain(key, envelope.sequence + 1)
        elif outcome is RecordOutcome.DUPLICATE and self._retry(partial(self.stash.pending, key), "stash.pending"):
            # A redelivery after an interrupted drain: finish draining
            row = self._retry(partial(self.store.load, key), "store.load")
            if row is not None:
                self._drain(key, expected_next(row.last_applied_sequence, self.config.first_sequence))
        return outcome

    def _apply(self, envelope: EventEnvelope) -> RecordOutcome:
        """Decide and act on one envelope, re-deciding after write conflicts."""
        key = envelope.entity_key
        attempts = self.config.conflict_max_retries + 1
        for _ in range(attempts):
            row = self._retry(partial(self.store.load, key), "store.load")
            last = row.last_applied_sequence if row is not None else None
            decision = decide(last, envelope.sequence, self.config.first_sequence)

            if decision is Decision.DEDUP:
                return self._duplicate(envelope)

            if decision is Decision.SKIP_STALE:
                self.stats.out_of_order += 1
                self.metrics.increment(EVENTS_OUT_OF_ORDER, tags=self._tags)
                self._log.warning(
                    "skip_stale",
                    entity_key=key,
                    sequence=envelope.sequence,
                    last_applied_sequence=last,
                    event_id=envelope.event_id,
                )
                return RecordOutcome.STALE

            if decision is Decision.STASH:
                self._stash(envelope, last)
                return RecordOutcome.STASHED

            new_row = self.projector.apply(row, envelope)
            result = self._retry(
                partial(self.store.apply_if_sequence_matches, key, last, new_row),
                "store.apply_if_sequence_matches",
            )
            if result is WriteResult.APPLIED:
                self.stats.applied += 1
                self.metrics.increment(EVENTS_APPLIED, tags=self._tags)
                self._log.debug("event_applied", entity_key=key, sequence=envelope.sequence)
                return RecordOutcome.APPLIED
            if result is WriteResult.DUPLICATE_EVENT:
                return self._duplicate(envelope)

            self.stats.conflicts += 1
            self.metrics.increment(STORE_CONFLICTS, tags=self._tags)
            self._log.debug("write_conflict", entity_key=key, sequence=envelope.sequence, expected=last)

        raise ConflictError(
            f"Conditional write for {key!r} seq {envelope.sequence} kept conflicting",
            entity_key=key,
            attempts=attempts,
        )

    def _duplicate(self, envelope: EventEnvelope) -> RecordOutcome:
        self.stats.duplicates += 1
        self.metrics.increment(EVENTS_DUPLICATES, tags=self._tags)
        self._log.debug("duplicate_event", entity_key=envelope.entity_key, sequence=envelope.sequence)
        return RecordOutcome.DUPLICATE

    def _stash(self, envelope: EventEnvelope, last: int | None) -> None:
        key = envelope.entity_key
        if self._retry(partial(self.stash.put, envelope), "stash.put"):
            self.stats.gaps += 1
            self.metrics.increment(EVENTS_GAPS, tags=self._tags)
            self._log.info(
                "event_stashed",
                entity_key=key,
                sequence=envelope.sequence,
                last_applied_sequence=last,
            )
        # Also runs for a re-put, finishing evictions an outage interrupted
        for entry in self._retry(partial(self.stash.overflow, key), "stash.overflow"):
            error = GapOverflowError(
                f"Stash bound exceeded while waiting for {entry.entity_key!r} to reach seq {entry.sequence}",
                entity_key=entry.entity_key,
                sequence=entry.sequence,
            )
            self._dead_letter_entry(entry, DeadLetterReason.STASH_OVERFLOW, str(error))

    def _drain(self, entity_key: str, expected_next: int) -> None:
        """
        Apply stashed events the last write unblocked, in sequence order.

        Stops at the first entry that does not advance the key; an entry
        still waiting on a gap stays stashed.
        """
        for envelope in self.stash.drain(entity_key, expected_next):
            try:
                outcome = self._apply(envelope)
            except ValidationError as e:
                self._dead_letter(encode_envelope(envelope), DeadLetterReason.VALIDATION_FAILED, str(e), envelope)
                self._discard(entity_key, envelope.sequence)
                break
            if outcome is RecordOutcome.APPLIED:
                self.stats.drained += 1
                self._log.debug("stash_drained", entity_key=entity_key, sequence=envelope.sequence)
            elif outcome not in (RecordOutcome.DUPLICATE, RecordOutcome.STALE):
                break

    def _sweep_expired(self) -> None:
        """Dead-letter gaps of this partition's keys that were never filled."""
        for entry in self._retry(self.stash.expired, "stash.expired"):
            if self.stream.partition_for(entry.entity_key) != self.partition:
                continue
            self._dead_letter_entry(
                entry,
                DeadLetterReason.GAP_UNRESOLVED,
                f"Gap before seq {entry.sequence} not filled within {self.config.stash.max_age_seconds}s",
            )

    def _discard(self, entity_key: str, sequence: int) -> None:
        self._retry(partial(self.stash.discard, entity_key, sequence), "stash.discard")

    # Dead letters

    def _dead_letter_raw(
        self,
        record: StreamRecord,
        error: ValidationError,
        envelope: EventEnvelope | None = None,
    ) -> None:
        self._dead_letter(
            record.value,
            DeadLetterReason.VALIDATION_FAILED,
            str(error),
            envelope,
            partition=record.partition,
            offset=record.offset,
        )

    def _dead_letter_entry(self, entry: StashEntry, reason: DeadLetterReason, error: str) -> None:
        """Dead-letter a stash entry, then discard it. A failed send leaves it stashed."""
        self._dead_letter(
            encode_envelope(entry.envelope),
            reason,
            error,
            entry.envelope,
            partition=self.stream.partition_for(entry.entity_key),
        )
        self._discard(entry.entity_key, entry.sequence)

    def _dead_letter(
        self,
        payload: bytes,
        reason: DeadLetterReason,
        error: str,
        envelope: EventEnvelope | None = None,
        partition: int | None = None,
        offset: int | None = None,
    ) -> None:
        letter = DeadLetter(
            payload=payload,
            reason=reason,
            error=truncate_error(error),
            entity_key=envelope.entity_key if envelope else None,
            event_id=envelope.event_id if envelope else None,
            sequence=envelope.sequence if envelope else None,
            partition=self.partition if partition is None else partition,
            offset=offset,
        )
        self._retry(partial(self.dead_letters.send, letter), "dead_letters.send")
        self.stats.dead_lettered += 1
        self.metrics.increment(EVENTS_DEAD_LETTERED, tags={**self._tags, "reason": reason.value})
        self._log.warning(
            "event_dead_lettered",
            reason=reason.value,
            entity_key=envelope.entity_key if envelope else None,
            offset=offset,
            error=error,
        )

    # Reporting

    def _safe_position(self) -> int | None:
        try:
            return self.position()
        except TransientError:
            return None

    def _report_lag(self) -> None:
        try:
            lag = self.lag()
        except TransientError:
            return
        self.metrics.gauge(PARTITION_LAG, lag.lag, self._tags)

    def __repr__(self) -> str:
        return f"PartitionWorker(partition={self.partition}, state={self.state.value})"

