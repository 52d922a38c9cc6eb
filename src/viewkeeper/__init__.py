"""
Viewkeeper - event stream to materialized view projection engine.

This package keeps a read-optimized view in step with an ordered,
partitioned event stream, with support for:
- Per-key sequencing: apply, dedup, skip-stale or stash every event
- Exactly-once effect under at-least-once, out-of-order delivery
- Conditional (compare-and-swap) view writes on memory, SQLite and PostgreSQL
- A bounded stash for events that arrive ahead of a gap
- Offset commits only after the view writes they cover are durable
- Dead-letter sink with replay
- Pause / rebuild / resume from the start of the stream
"""

__version__ = "0.1.0"

from viewkeeper.config import BackoffConfig, EngineConfig, StashConfig, load_config

# Events and projection
from viewkeeper.events import (
    EventEnvelope,
    EventType,
    OrderStatus,
    decode_envelope,
    encode_envelope,
)
from viewkeeper.projection import OrderProjector, ViewProjector, ViewRow
from viewkeeper.sequencing import Decision, decide

# Storage
from viewkeeper.store import ViewQuery, ViewStore, WriteResult, create_view_store
from viewkeeper.stash import Stash, create_stash
from viewkeeper.deadletter import DeadLetter, DeadLetterReason, DeadLetterSink, create_dead_letter_sink
from viewkeeper.stream import PartitionedStream, PartitionLag, create_stream

# Ingest and administration
from viewkeeper.ingest import PartitionWorker, ProjectionEngine, WorkerState
from viewkeeper.rebuild import EngineState, RebuildController, RebuildReport

# Errors
from viewkeeper.errors import (
    ConfigurationError,
    ConflictError,
    GapOverflowError,
    RebuildInProgressError,
    RebuildNotAllowedError,
    StorageUnavailableError,
    ValidationError,
    ViewkeeperError,
)

__all__ = [
    "__version__",
    # Config
    "BackoffConfig",
    "EngineConfig",
    "StashConfig",
    "load_config",
    # Events and projection
    "EventEnvelope",
    "EventType",
    "OrderStatus",
    "decode_envelope",
    "encode_envelope",
    "OrderProjector",
    "ViewProjector",
    "ViewRow",
    "Decision",
    "decide",
    # Storage
    "ViewQuery",
    "ViewStore",
    "WriteResult",
    "create_view_store",
    "Stash",
    "create_stash",
    "DeadLetter",
    "DeadLetterReason",
    "DeadLetterSink",
    "create_dead_letter_sink",
    "PartitionedStream",
    "PartitionLag",
    "create_stream",
    # Ingest and administration
    "PartitionWorker",
    "ProjectionEngine",
    "WorkerState",
    "EngineState",
    "RebuildController",
    "RebuildReport",
    # Errors
    "ConfigurationError",
    "ConflictError",
    "GapOverflowError",
    "RebuildInProgressError",
    "RebuildNotAllowedError",
    "StorageUnavailableError",
    "ValidationError",
    "ViewkeeperError",
]
