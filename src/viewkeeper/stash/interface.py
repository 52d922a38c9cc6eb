"""
Stash interface.

The stash holds events that arrived ahead of their key's expected
sequence. It is bounded per key and globally. Entries beyond a bound,
or older than the configured maximum age, are reported to the caller but
left in place; the caller dead-letters each one and only then discards
it, so a failed send never loses an entry.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Iterator
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import Any

from viewkeeper.config import StashConfig
from viewkeeper.events import EventEnvelope


@dataclass(frozen=True)
class StashEntry:
    """An event waiting for the gap in front of it to close."""

    entity_key: str
    sequence: int
    envelope: EventEnvelope
    received_at: datetime

    @property
    def age_order(self) -> tuple[datetime, int]:
        """Sort key: oldest first, lower sequence first on ties."""
        return self.received_at, self.sequence


class Stash(ABC):
    """
    Abstract interface for the out-of-order stash.

    Subclasses implement the storage primitives; ``drain`` is built on top
    of them so every backend consumes entries the same way.
    """

    def __init__(self, config: StashConfig | None = None) -> None:
        self.config = config or StashConfig()

    @abstractmethod
    def put(self, envelope: EventEnvelope, received_at: datetime | None = None) -> bool:
        """
        Hold an envelope until its key catches up.

        Re-putting an already stashed (entity_key, sequence) is a no-op.
        Bounds are not enforced here; see ``overflow``.

        Returns:
            True if the entry was added, False if it was already stashed
        """
        pass

    @abstractmethod
    def overflow(self, entity_key: str | None = None) -> list[StashEntry]:
        """
        Entries that exceed the configured bounds, oldest first.

        With ``entity_key`` the per-key excess of that key comes first,
        followed by whatever still exceeds the global bound once those are
        gone. Nothing is removed; the caller dead-letters each entry and
        then calls ``discard``.
        """
        pass

    @abstractmethod
    def expired(self, now: datetime | None = None) -> list[StashEntry]:
        """Entries older than ``config.max_age_seconds``, oldest first. Nothing is removed."""
        pass

    def discard(self, entity_key: str, sequence: int) -> None:
        """Remove one entry. Discarding an absent entry is a no-op."""
        self._remove(entity_key, sequence)

    def drain(self, entity_key: str, expected_next: int) -> Iterator[EventEnvelope]:
        """
        Yield stashed envelopes for a key in ascending sequence order.

        Starts at ``expected_next`` and stops at the first missing
        sequence. An entry is removed only when the consumer asks for the
        next one, so an envelope whose processing raised stays stashed.
        Entries below ``expected_next`` are stale and purged up front.
        """
        self._purge_below(entity_key, expected_next)
        sequence = expected_next
        while True:
            entry = self._get(entity_key, sequence)
            if entry is None:
                return
            yield entry.envelope
            self._remove(entity_key, sequence)
            sequence += 1

    @abstractmethod
    def pending(self, entity_key: str | None = None) -> int:
        """Number of stashed entries, for one key or overall."""
        pass

    @abstractmethod
    def keys(self) -> list[str]:
        """Entity keys with at least one stashed entry."""
        pass

    @abstractmethod
    def entries(self, entity_key: str) -> list[StashEntry]:
        """Stashed entries of a key in sequence order."""
        pass

    @abstractmethod
    def clear(self) -> None:
        """Remove every entry."""
        pass

    @abstractmethod
    def _get(self, entity_key: str, sequence: int) -> StashEntry | None:
        pass

    @abstractmethod
    def _remove(self, entity_key: str, sequence: int) -> None:
        pass

    @abstractmethod
    def _purge_below(self, entity_key: str, sequence: int) -> int:
        pass

    def _expiry_cutoff(self, now: datetime | None) -> datetime | None:
        if self.config.max_age_seconds <= 0:
            return None
        return (now or datetime.now(UTC)) - timedelta(seconds=self.config.max_age_seconds)

    def close(self) -> None:
        """Release resources held by the stash."""
        pass

    def __enter__(self) -> Stash:
        return self

    def __exit__(self, *args: Any) -> None:
        self.close()
