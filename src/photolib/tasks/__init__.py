"""Enrichment task ledger, workers and dispatcher."""

from photolib.tasks.dispatcher import Dispatcher, DispatchStats
from photolib.tasks.ledger import TaskLedger
from photolib.tasks.policy import DEPENDENCIES, RetryPolicy
from photolib.tasks.workers import (
    BookmarkResolveWorker,
    CancelToken,
    FunctionWorker,
    QuickHashWorker,
    Worker,
)

__all__ = [
    "BookmarkResolveWorker",
    "CancelToken",
    "DEPENDENCIES",
    "Dispatcher",
    "DispatchStats",
    "FunctionWorker",
    "QuickHashWorker",
    "RetryPolicy",
    "TaskLedger",
    "Worker",
]
