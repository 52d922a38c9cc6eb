"""In-memory dead-letter sink for tests and development."""

from __future__ import annotations

import itertools
import logging
import threading

from viewkeeper.deadletter.interface import DeadLetter, DeadLetterReason, DeadLetterSink

logger = logging.getLogger(__name__)


class InMemoryDeadLetterSink(DeadLetterSink):
    """Thread-safe list-backed sink."""

    def __init__(self) -> None:
        self._letters: dict[int, DeadLetter] = {}
        self._ids = itertools.count(1)
        self._lock = threading.Lock()

    def send(self, letter: DeadLetter) -> DeadLetter:
        with self._lock:
            stored = letter.with_id(next(self._ids))
            self._letters[stored.id] = stored  # type: ignore[index]
        logger.warning(
            "Dead-lettered event (id=%s, reason=%s, key=%s, error=%s)",
            stored.id,
            stored.reason.value,
            stored.entity_key,
            stored.error,
        )
        return stored

    def list(self, limit: int = 100, reason: DeadLetterReason | None = None) -> list[DeadLetter]:
        with self._lock:
            letters = [
                letter for letter in self._letters.values() if reason is None or letter.reason is reason
            ]
        letters.sort(key=lambda letter: letter.id or 0, reverse=True)
        return letters[:limit]

    def count(self, reason: DeadLetterReason | None = None) -> int:
        with self._lock:
            return sum(1 for letter in self._letters.values() if reason is None or letter.reason is reason)

    def get(self, dead_letter_id: int) -> DeadLetter | None:
        with self._lock:
            return self._letters.get(dead_letter_id)

    def delete(self, dead_letter_id: int) -> bool:
        with self._lock:
            return self._letters.pop(dead_letter_id, None) is not None

    def clear(self) -> int:
        with self._lock:
            count = len(self._letters)
            self._letters.clear()
        return count
