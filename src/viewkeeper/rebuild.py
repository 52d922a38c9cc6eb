"""
Rebuild controller.

A rebuild throws the view away and replays the stream from the
beginning:

    RUNNING -> PAUSED (in-flight records finish) -> REBUILDING
            -> truncate view store + stash -> rewind offsets -> RUNNING

Only one rebuild runs at a time, and rebuilds are refused in production
unless explicitly allowed, because every row of the view is recomputed.

Usage:
    controller = RebuildController(engine)
    report = controller.rebuild()
    engine.run_until_idle()  # or let the engine threads catch up
"""

from __future__ import annotations

import threading
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from viewkeeper.config import EngineConfig
from viewkeeper.errors import RebuildInProgressError, RebuildNotAllowedError, ViewkeeperError
from viewkeeper.ingest import ProjectionEngine, WorkerState
from viewkeeper.logging import get_logger
from viewkeeper.stash import Stash
from viewkeeper.store import ViewStore
from viewkeeper.tracing import trace_operation

logger = get_logger(__name__)

EngineState = WorkerState


@dataclass
class RebuildReport:
    """Summary of a finished rebuild."""

    started_at: datetime
    finished_at: datetime | None = None
    rows_truncated: int = 0
    stash_cleared: int = 0
    partitions: list[int] = field(default_factory=list)
    resumed: bool = False

    @property
    def duration_seconds(self) -> float:
        if self.finished_at is None:
            return 0.0
        return (self.finished_at - self.started_at).total_seconds()

    def to_dict(self) -> dict[str, Any]:
        return {
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "duration_seconds": self.duration_seconds,
            "rows_truncated": self.rows_truncated,
            "stash_cleared": self.stash_cleared,
            "partitions": self.partitions,
            "resumed": self.resumed,
        }


class RebuildController:
    """Serializes pause / rebuild / resume requests against one engine."""

    def __init__(
        self,
        engine: ProjectionEngine,
        store: ViewStore | None = None,
        stash: Stash | None = None,
        config: EngineConfig | None = None,
    ) -> None:
        self.engine = engine
        self.store = store or engine.store
        self.stash = stash or engine.stash
        self.config = config or engine.config
        self._lock = threading.Lock()

    def status(self) -> EngineState:
        return self.engine.state()

    def pause(self) -> bool:
        self._refuse_while_rebuilding("pause")
        return self.engine.pause()

    def resume(self) -> None:
        self._refuse_while_rebuilding("resume")
        self.engine.resume()

    def _refuse_while_rebuilding(self, action: str) -> None:
        if self._lock.locked():
            raise RebuildInProgressError(f"Cannot {action} while a rebuild is in progress")

    def rebuild(self) -> RebuildReport:
        """
        Truncate the view and stash, rewind the stream, and resume.

        The engine returns to RUNNING only if it was running when the
        rebuild was requested; a paused engine stays paused.

        Raises:
            RebuildInProgressError: Another rebuild holds the lock
            RebuildNotAllowedError: The environment forbids rebuilds
        """
        if not self._lock.acquire(blocking=False):
            raise RebuildInProgressError("A rebuild is already in progress")
        try:
            if not self.config.rebuild_permitted:
                raise RebuildNotAllowedError(
                    f"Rebuilds are disabled in {self.config.environment!r}; set allow_rebuild to override"
                )
            with trace_operation("rebuild", consumer_group=self.config.consumer_group):
                return self._rebuild()
        finally:
            self._lock.release()

    def _rebuild(self) -> RebuildReport:
        report = RebuildReport(started_at=datetime.now(UTC), partitions=self.engine.partitions)
        was_running = self.engine.state() is EngineState.RUNNING
        logger.info("rebuild_started", partitions=report.partitions, was_running=was_running)

        if not self.engine.pause(state=EngineState.PAUSED):
            if was_running:
                self.engine.resume()
            raise ViewkeeperError("Engine did not finish in-flight records in time; rebuild aborted")

        try:
            self.engine.pause(timeout=0, state=EngineState.REBUILDING)
            report.rows_truncated = self.store.count()
            report.stash_cleared = self.stash.pending()
            self.store.truncate()
            self.stash.clear()
            self.engine.reset_offsets()
        except Exception:
            # Leave the engine paused: the view may be half truncated
            self.engine.pause(timeout=0, state=EngineState.PAUSED)
            logger.exception("rebuild_failed")
            raise

        if was_running:
            self.engine.resume()
            report.resumed = True
        else:
            self.engine.pause(timeout=0, state=EngineState.PAUSED)

        report.finished_at = datetime.now(UTC)
        logger.info("rebuild_finished", **report.to_dict())
        return report
