"""Worker interface and the built-in workers.

Workers receive a read-only ``TaskState`` and a ``CancelToken`` and
return an outcome. They never mutate the index; the ledger applies
what they return.
"""

from __future__ import annotations

import logging
import threading
from typing import Callable, Mapping, Protocol

from photolib.constants import CANCELLED_ERROR, QUICK_HASH_PREFIX_BYTES
from photolib.exceptions import ExternalFailure
from photolib.fileaccess import FileAccess, compute_quick_hash
from photolib.models import Asset, TaskKind, TaskState
from photolib.tasks.outcomes import (
    BookmarkResolveResult,
    Failure,
    Outcome,
    QuickHashResult,
)

logger = logging.getLogger(__name__)

AssetLookup = Callable[[str], Asset]


class CancelToken:
    """Cooperative cancellation flag shared between dispatcher and worker."""

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()


class Worker(Protocol):
    def kinds_supported(self) -> set[TaskKind]:
        """Task kinds this worker can execute."""

    def execute(self, task: TaskState, cancel_token: CancelToken) -> Outcome:
        """Run *task* and return its outcome. May block; runs in a thread."""


class FunctionWorker:
    """Adapt a mapping of kind -> ``fn(task, cancel_token)`` into a worker.

    Usage::

        worker = FunctionWorker(
            {TaskKind.THUMBNAIL: lambda task, token: ThumbnailResult("t1")},
            name="thumbnails",
        )
    """

    def __init__(
        self,
        handlers: Mapping[TaskKind, Callable[[TaskState, CancelToken], Outcome]],
        name: str = "function-worker",
    ) -> None:
        self._handlers = {TaskKind(k): fn for k, fn in handlers.items()}
        self.name = name

    def kinds_supported(self) -> set[TaskKind]:
        return set(self._handlers)

    def execute(self, task: TaskState, cancel_token: CancelToken) -> Outcome:
        if cancel_token.cancelled:
            return Failure(CANCELLED_ERROR, retryable=False)
        return self._handlers[task.kind](task, cancel_token)


class BookmarkResolveWorker:
    """Resolve an asset's bookmark to a current path."""

    name = "bookmark-resolver"

    def __init__(self, file_access: FileAccess, lookup: AssetLookup) -> None:
        self._files = file_access
        self._lookup = lookup

    def kinds_supported(self) -> set[TaskKind]:
        return {TaskKind.BOOKMARK_RESOLVE}

    def execute(self, task: TaskState, cancel_token: CancelToken) -> Outcome:
        asset = self._lookup(task.asset_id)
        if asset.bookmark is None:
            if asset.resolved_path and self._files.exists(asset.resolved_path):
                return BookmarkResolveResult(asset.resolved_path)
            return Failure("asset has no bookmark", retryable=False)
        try:
            path, stale = self._files.resolve(asset.bookmark)
        except (OSError, ExternalFailure) as e:
            return Failure(f"bookmark resolution failed: {e}")
        if stale:
            logger.debug("Bookmark for %s is stale", task.asset_id)
        return BookmarkResolveResult(path)


class QuickHashWorker:
    """Recompute the prefix hash for assets imported without one."""

    name = "quick-hasher"

    def __init__(self, file_access: FileAccess, lookup: AssetLookup) -> None:
        self._files = file_access
        self._lookup = lookup

    def kinds_supported(self) -> set[TaskKind]:
        return {TaskKind.QUICK_HASH}

    def execute(self, task: TaskState, cancel_token: CancelToken) -> Outcome:
        asset = self._lookup(task.asset_id)
        if asset.quick_hash:
            return QuickHashResult(asset.quick_hash)
        if not asset.resolved_path:
            return Failure("asset has no resolved path")
        try:
            data = self._files.read_prefix(asset.resolved_path, QUICK_HASH_PREFIX_BYTES)
        except (OSError, ExternalFailure) as e:
            return Failure(f"cannot read file: {e}")
        return QuickHashResult(compute_quick_hash(data))
