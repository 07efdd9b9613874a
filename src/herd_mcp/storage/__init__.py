"""Persistence for workers, batches and per-pane event streams."""

from .batches import BatchCompletion, BatchStore, BatchSummary, summarize
from .events import EventLog
from .models import (
    Batch,
    BatchOptions,
    BatchStatus,
    BatchWorker,
    BatchWorkerStatus,
    TERMINAL_BATCH_STATUSES,
    Worker,
    WorkerState,
)
from .workers import (
    InMemoryWorkerStore,
    InvalidTransitionError,
    JsonWorkerStore,
    TERMINAL_STATES,
    TRANSITIONS,
    WorkerRegistry,
    WorkerStore,
    get_elapsed_time,
)

__all__ = [
    "Batch",
    "BatchCompletion",
    "BatchOptions",
    "BatchStatus",
    "BatchStore",
    "BatchSummary",
    "BatchWorker",
    "BatchWorkerStatus",
    "EventLog",
    "InMemoryWorkerStore",
    "InvalidTransitionError",
    "JsonWorkerStore",
    "TERMINAL_BATCH_STATUSES",
    "TERMINAL_STATES",
    "TRANSITIONS",
    "Worker",
    "WorkerRegistry",
    "WorkerState",
    "WorkerStore",
    "get_elapsed_time",
    "summarize",
]
