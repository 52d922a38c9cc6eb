"""
Projection engine.

Runs one PartitionWorker per owned partition, each on its own thread, and
exposes the administrative surface: lifecycle, per-partition lag, health
and counters.

Usage:
    engine = ProjectionEngine.from_config(load_config())
    engine.start()
    ...
    engine.per_partition_lag()   # {0: PartitionLag(latest_offset=120, committed_offset=118), ...}
    engine.stop()

For tests and one-shot catch-up, ``run_until_idle()`` drives the workers
synchronously on the calling thread instead.
"""

from __future__ import annotations

import threading
from typing import Any

from viewkeeper.config import EngineConfig
from viewkeeper.deadletter import DeadLetterSink, create_dead_letter_sink
from viewkeeper.ingest.worker import PartitionWorker, WorkerState, WorkerStats
from viewkeeper.logging import get_logger
from viewkeeper.metrics import MetricsProvider, get_metrics
from viewkeeper.projection import ViewProjector
from viewkeeper.stash import Stash, create_stash
from viewkeeper.store import ViewStore, create_view_store
from viewkeeper.stream import PartitionedStream, PartitionLag, create_stream

logger = get_logger(__name__)


class ProjectionEngine:
    """
    Owns the partition workers of one process.

    All collaborators are passed in; nothing is looked up from module
    state, so several engines (for instance in tests) can coexist.
    """

    def __init__(
        self,
        stream: PartitionedStream,
        store: ViewStore,
        stash: Stash,
        dead_letters: DeadLetterSink,
        config: EngineConfig | None = None,
        projector: ViewProjector | None = None,
        metrics: MetricsProvider | None = None,
    ) -> None:
        self.stream = stream
        self.store = store
        self.stash = stash
        self.dead_letters = dead_letters
        self.config = config or EngineConfig()
        self.metrics = metrics or get_metrics()

        partitions = self.config.partitions if self.config.partitions is not None else stream.partitions()
        self.workers: dict[int, PartitionWorker] = {
            partition: PartitionWorker(
                partition,
                stream,
                store,
                stash,
                dead_letters,
                config=self.config,
                projector=projector,
                metrics=self.metrics,
            )
            for partition in partitions
        }

        self._state = WorkerState.RUNNING
        self._lock = threading.RLock()
        self._stop = threading.Event()
        self._threads: list[threading.Thread] = []

    @classmethod
    def from_config(
        cls,
        config: EngineConfig,
        projector: ViewProjector | None = None,
        metrics: MetricsProvider | None = None,
    ) -> ProjectionEngine:
        """Build an engine and its backends from connection strings in the config."""
        stream_url = config.resolved_stream_url
        return cls(
            stream=create_stream(stream_url, config.partition_count),
            store=create_view_store(config.database_url),
            stash=create_stash(stream_url, config.stash),
            dead_letters=create_dead_letter_sink(stream_url),
            config=config,
            projector=projector,
            metrics=metrics,
        )

    @property
    def partitions(self) -> list[int]:
        return sorted(self.workers)

    # Lifecycle

    def start(self) -> None:
        """Start one polling thread per partition."""
        with self._lock:
            if self.is_alive():
                return
            self._stop.clear()
            self._threads = [
                threading.Thread(
                    target=worker.run,
                    args=(self._stop,),
                    name=f"viewkeeper-partition-{partition}",
                    daemon=True,
                )
                for partition, worker in self.workers.items()
            ]
            for thread in self._threads:
                thread.start()
        logger.info("engine_started", partitions=self.partitions, state=self.state().value)

    def stop(self, timeout: float | None = None) -> None:
        """Stop the polling threads, letting in-flight records finish."""
        with self._lock:
            self._stop.set()
            for worker in self.workers.values():
                worker.wake()
            for thread in self._threads:
                thread.join(timeout)
            self._threads = []
        logger.info("engine_stopped")

    def is_alive(self) -> bool:
        return any(thread.is_alive() for thread in self._threads)

    def state(self) -> WorkerState:
        with self._lock:
            return self._state

    def pause(self, timeout: float | None = None, state: WorkerState = WorkerState.PAUSED) -> bool:
        """
        Stop consuming on every partition and wait for in-flight records.

        Args:
            timeout: Seconds to wait per partition (default: config.pause_timeout_seconds)
            state: PAUSED, or REBUILDING when called by the rebuild controller

        Returns:
            True if every worker went idle within the timeout
        """
        timeout = self.config.pause_timeout_seconds if timeout is None else timeout
        with self._lock:
            self._state = state
        idle = [worker.pause(timeout, state) for worker in self.workers.values()]
        if not all(idle):
            logger.warning("engine_pause_timed_out", timeout=timeout)
        return all(idle)

    def resume(self) -> None:
        with self._lock:
            self._state = WorkerState.RUNNING
            for worker in self.workers.values():
                worker.resume()

    def run_until_idle(self, max_polls: int | None = None) -> int:
        """
        Poll every worker on the calling thread until none makes progress.

        Returns:
            Total number of records processed
        """
        total = 0
        polls = 0
        while max_polls is None or polls < max_polls:
            polls += 1
            processed = sum(worker.poll() for worker in self.workers.values())
            total += processed
            if processed == 0:
                break
        return total

    def reset_offsets(self) -> None:
        """Rewind every owned partition to the stream's beginning."""
        for partition in self.partitions:
            self.stream.commit(
                self.config.consumer_group,
                partition,
                self.stream.beginning_offset(partition),
                reset=True,
            )
        logger.info("offsets_reset", partitions=self.partitions, consumer_group=self.config.consumer_group)

    # Reporting

    def per_partition_lag(self) -> dict[int, PartitionLag]:
        return {partition: worker.lag() for partition, worker in sorted(self.workers.items())}

    def health(self) -> dict[str, Any]:
        partitions = {partition: worker.health.to_dict() for partition, worker in sorted(self.workers.items())}
        return {
            "healthy": all(p["healthy"] for p in partitions.values()),
            "state": self.state().value,
            "alive": self.is_alive(),
            "partitions": partitions,
        }

    def stats(self) -> dict[int, WorkerStats]:
        return {partition: worker.stats for partition, worker in sorted(self.workers.items())}

    def totals(self) -> WorkerStats:
        total = WorkerStats()
        for stats in self.stats().values():
            total = total + stats
        return total

    def close(self) -> None:
        """Stop the workers and release every backend."""
        self.stop()
        self.store.close()
        self.stash.close()
        self.dead_letters.close()
        self.stream.close()

    def __enter__(self) -> ProjectionEngine:
        return self

    def __exit__(self, *args: Any) -> None:
        self.close()
