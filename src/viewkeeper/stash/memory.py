"""
In-memory stash.

Thread-safe, shared by the partition workers of one engine. Contents are
lost when the process exits; use the SQLite stash to keep gap state across
restarts.
"""

from __future__ import annotations

import logging
import threading
from datetime import UTC, datetime

from viewkeeper.config import StashConfig
from viewkeeper.events import EventEnvelope
from viewkeeper.stash.interface import Stash, StashEntry

logger = logging.getLogger(__name__)


class InMemoryStash(Stash):
    """Dict-of-dicts stash: entity_key -> sequence -> entry."""

    def __init__(self, config: StashConfig | None = None) -> None:
        super().__init__(config)
        self._entries: dict[str, dict[int, StashEntry]] = {}
        self._total = 0
        self._lock = threading.RLock()

    def put(self, envelope: EventEnvelope, received_at: datetime | None = None) -> bool:
        entry = StashEntry(
            entity_key=envelope.entity_key,
            sequence=envelope.sequence,
            envelope=envelope,
            received_at=received_at or datetime.now(UTC),
        )
        with self._lock:
            per_key = self._entries.setdefault(entry.entity_key, {})
            if entry.sequence in per_key:
                return False
            per_key[entry.sequence] = entry
            self._total += 1
        return True

    def overflow(self, entity_key: str | None = None) -> list[StashEntry]:
        with self._lock:
            over: list[StashEntry] = []
            if entity_key is not None:
                per_key = sorted(self._entries.get(entity_key, {}).values(), key=lambda e: e.age_order)
                over.extend(per_key[: max(len(per_key) - self.config.max_pending_per_key, 0)])

            excess = self._total - len(over) - self.config.max_total
            if excess > 0:
                chosen = {(e.entity_key, e.sequence) for e in over}
                rest = sorted(
                    (
                        e
                        for entries in self._entries.values()
                        for e in entries.values()
                        if (e.entity_key, e.sequence) not in chosen
                    ),
                    key=lambda e: e.age_order,
                )
                over.extend(rest[:excess])

        if over:
            logger.warning("Stash bound exceeded by %d entries", len(over))
        return over

    def expired(self, now: datetime | None = None) -> list[StashEntry]:
        cutoff = self._expiry_cutoff(now)
        if cutoff is None:
            return []
        with self._lock:
            expired = [
                e for entries in self._entries.values() for e in entries.values() if e.received_at < cutoff
            ]
        return sorted(expired, key=lambda e: e.age_order)

    def pending(self, entity_key: str | None = None) -> int:
        with self._lock:
            if entity_key is None:
                return self._total
            return len(self._entries.get(entity_key, {}))

    def keys(self) -> list[str]:
        with self._lock:
            return sorted(k for k, entries in self._entries.items() if entries)

    def entries(self, entity_key: str) -> list[StashEntry]:
        with self._lock:
            entries = self._entries.get(entity_key, {})
            return [entries[s] for s in sorted(entries)]

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()
            self._total = 0

    def _get(self, entity_key: str, sequence: int) -> StashEntry | None:
        with self._lock:
            return self._entries.get(entity_key, {}).get(sequence)

    def _remove(self, entity_key: str, sequence: int) -> None:
        with self._lock:
            if sequence in self._entries.get(entity_key, {}):
                self._pop(entity_key, sequence)

    def _purge_below(self, entity_key: str, sequence: int) -> int:
        with self._lock:
            stale = [s for s in self._entries.get(entity_key, {}) if s < sequence]
            for s in stale:
                self._pop(entity_key, s)
        return len(stale)

    def _pop(self, entity_key: str, sequence: int) -> StashEntry:
        entries = self._entries[entity_key]
        entry = entries.pop(sequence)
        if not entries:
            del self._entries[entity_key]
        self._total -= 1
        return entry
