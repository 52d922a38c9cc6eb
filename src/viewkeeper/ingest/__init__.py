"""Ingest loop: partition workers and the engine that runs them."""

from viewkeeper.ingest.engine import ProjectionEngine
from viewkeeper.ingest.retry import call_with_storage_retry, storage_retry_policy
from viewkeeper.ingest.worker import PartitionWorker, RecordOutcome, WorkerHealth, WorkerState, WorkerStats

__all__ = [
    "PartitionWorker",
    "ProjectionEngine",
    "RecordOutcome",
    "WorkerHealth",
    "WorkerState",
    "WorkerStats",
    "call_with_storage_retry",
    "storage_retry_policy",
]
