from .base import BatchReport, BatchRunner, BoundedBatchWorker, ItemOutcome, WorkerRunReport, WorkQueue
from .registry import QueueKind, QueueRegistry

__all__ = [
    "BatchReport",
    "BatchRunner",
    "BoundedBatchWorker",
    "ItemOutcome",
    "QueueKind",
    "QueueRegistry",
    "WorkQueue",
    "WorkerRunReport",
]
