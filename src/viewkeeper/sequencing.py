"""
Per-key sequencing decisions.

decide() compares the sequence of an incoming event against the last
sequence applied to the view for the same entity key. It holds no state of
its own: everything it needs is read from the view store, so a restarted
worker reaches exactly the same decisions as the one before it.
"""

from __future__ import annotations

from enum import Enum


class Decision(Enum):
    """What to do with an incoming event."""

    APPLY = "apply"  # next in line: project and write
    DEDUP = "dedup"  # same sequence as the last applied event
    SKIP_STALE = "skip_stale"  # older than the applied state
    STASH = "stash"  # a gap precedes it: hold until the gap closes

    @property
    def mutates_view(self) -> bool:
        return self is Decision.APPLY


def expected_next(last_applied_sequence: int | None, first_sequence: int = 1) -> int:
    """Sequence the next applicable event for a key must carry."""
    if last_applied_sequence is None:
        return first_sequence
    return last_applied_sequence + 1


def decide(
    last_applied_sequence: int | None,
    incoming_sequence: int,
    first_sequence: int = 1,
) -> Decision:
    """Decide how to handle an event.

    Args:
        last_applied_sequence: Last sequence applied for the key, or None
            if the key has never been applied
        incoming_sequence: Sequence carried by the incoming event
        first_sequence: Sequence of an entity's first event

    Returns:
        APPLY if the event is the next one in line, DEDUP if it repeats
        the last applied one, SKIP_STALE if it is older, STASH if events
        are missing in between.
    """
    if last_applied_sequence is not None and incoming_sequence == last_applied_sequence:
        return Decision.DEDUP

    nxt = expected_next(last_applied_sequence, first_sequence)
    if incoming_sequence == nxt:
        return Decision.APPLY
    if incoming_sequence < nxt:
        return Decision.SKIP_STALE
    return Decision.STASH
