"""
Dead-letter sink interface.

Events that can never be applied end up here with the raw bytes they
arrived as, so an operator can inspect them and, once the cause is fixed,
republish them to the stream.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from enum import Enum
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from viewkeeper.stream.interface import PartitionedStream

logger = logging.getLogger(__name__)


class DeadLetterReason(Enum):
    """Why an event was given up on."""

    VALIDATION_FAILED = "validation failed"
    STASH_OVERFLOW = "stash overflow"
    GAP_UNRESOLVED = "gap unresolved"


def _utc_now() -> datetime:
    return datetime.now(UTC)


@dataclass(frozen=True)
class DeadLetter:
    """
    A dead-lettered event.

    Attributes:
        payload: Raw wire bytes of the event
        reason: Why it was dead-lettered
        error: Error detail (validation message, gap description)
        entity_key: Key of the event, when it could be decoded
        event_id: Event id, when it could be decoded
        sequence: Event sequence, when it could be decoded
        partition: Stream partition the event was read from
        offset: Stream offset the event was read from
        created_at: When it was dead-lettered
        id: Sink-assigned id (None until sent)
    """

    payload: bytes
    reason: DeadLetterReason
    error: str | None = None
    entity_key: str | None = None
    event_id: str | None = None
    sequence: int | None = None
    partition: int | None = None
    offset: int | None = None
    created_at: datetime = field(default_factory=_utc_now)
    id: int | None = None

    def with_id(self, dead_letter_id: int) -> DeadLetter:
        return replace(self, id=dead_letter_id)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "reason": self.reason.value,
            "error": self.error,
            "entity_key": self.entity_key,
            "event_id": self.event_id,
            "sequence": self.sequence,
            "partition": self.partition,
            "offset": self.offset,
            "created_at": self.created_at.isoformat(),
            "payload": self.payload.decode("utf-8", errors="replace"),
        }


class DeadLetterSink(ABC):
    """Abstract interface for the dead-letter sink."""

    @abstractmethod
    def send(self, letter: DeadLetter) -> DeadLetter:
        """
        Record a dead letter.

        Returns:
            The stored letter with its id assigned
        """
        pass

    @abstractmethod
    def list(self, limit: int = 100, reason: DeadLetterReason | None = None) -> list[DeadLetter]:
        """List dead letters, newest first, optionally filtered by reason."""
        pass

    @abstractmethod
    def count(self, reason: DeadLetterReason | None = None) -> int:
        """Number of dead letters, optionally filtered by reason."""
        pass

    @abstractmethod
    def get(self, dead_letter_id: int) -> DeadLetter | None:
        """Fetch a single dead letter by id."""
        pass

    @abstractmethod
    def delete(self, dead_letter_id: int) -> bool:
        """Remove a dead letter. Returns False if it did not exist."""
        pass

    @abstractmethod
    def clear(self) -> int:
        """Remove every dead letter, returning how many were removed."""
        pass

    def replay(self, dead_letter_id: int, stream: PartitionedStream) -> tuple[int, int] | None:
        """
        Republish a dead letter's raw bytes to the stream and remove it.

        The event is routed by its entity key when known, otherwise back
        to the partition it was read from.

        Returns:
            (partition, offset) of the republished record, or None if the
            dead letter does not exist
        """
        letter = self.get(dead_letter_id)
        if letter is None:
            logger.warning("Dead letter %s not found for replay", dead_letter_id)
            return None

        if letter.entity_key is not None:
            position = stream.publish(letter.entity_key, letter.payload)
        else:
            position = stream.publish("", letter.payload, partition=letter.partition or 0)
        self.delete(dead_letter_id)

        logger.info(
            "Replayed dead letter %s (reason=%s) to partition %s offset %s",
            dead_letter_id,
            letter.reason.value,
            position[0],
            position[1],
        )
        return position

    def close(self) -> None:
        """Release resources held by the sink."""
        pass
