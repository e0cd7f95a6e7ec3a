"""Engine facade tying the index, ledger, dispatcher and query pipeline.

One ``Library`` is one engine. Nothing is global; tests build as many
isolated libraries as they like.
"""

from __future__ import annotations

import logging
from typing import Any, Callable, Iterable

from reactivex.abc import DisposableBase

from photolib import commands
from photolib.clock import Clock, SystemClock
from photolib.config import LibraryConfig
from photolib.events import EventBus, LibraryEvent
from photolib.exceptions import InvalidError
from photolib.fileaccess import FileAccess, LocalFileAccess
from photolib.index import AssetIndex, ImportReport, LivenessReport
from photolib.models import Asset, AssetStatus, TaskKind, TaskStatus
from photolib.query import Query, QueryPipeline, SemanticMatcher
from photolib.snapshot import Snapshot
from photolib.tasks.dispatcher import Dispatcher, DispatchStats
from photolib.tasks.ledger import TaskLedger
from photolib.tasks.workers import BookmarkResolveWorker, QuickHashWorker, Worker

logger = logging.getLogger(__name__)


class Library:
    """A photo library engine.

    Usage::

        library = Library()
        report = library.import_paths(["/photos/a.jpg"])
        library.execute(commands.UpdateRating(report.imported[0], 5))
        ids = library.query(Query(search_query="a.jpg"))
        stats = asyncio.run(library.run_tasks())
    """

    def __init__(
        self,
        file_access: FileAccess | None = None,
        clock: Clock | None = None,
        config: LibraryConfig | None = None,
        matcher: SemanticMatcher | None = None,
        builtin_workers: bool = True,
    ) -> None:
        self.config = config or LibraryConfig()
        self.clock = clock or SystemClock()
        self.file_access = file_access or LocalFileAccess()
        self.bus = EventBus()
        self.index = AssetIndex(self.file_access, self.clock, self.bus)
        self.ledger = TaskLedger(self.index, self.clock, self.config.retry_policy())
        self.dispatcher = Dispatcher(self.ledger, pool_size=self.config.pool_size)
        self.pipeline = QueryPipeline(matcher)

        self.index.set_local_only_mode(self.config.local_only_mode)
        self.index.set_ai_provider(self.config.ai_provider)
        self.ledger.faces_enabled = self.config.faces_enabled
        if builtin_workers:
            self.register_worker(BookmarkResolveWorker(self.file_access, self.index.get))
            self.register_worker(QuickHashWorker(self.file_access, self.index.get))

        self._handlers: dict[type, Callable[[Any], Any]] = {
            commands.UpdateRating: lambda c: self.index.set_rating(c.asset_id, c.rating),
            commands.SetFlagged: lambda c: self.index.set_flagged(c.asset_id, c.flagged),
            commands.AddKeyword: lambda c: self.index.add_keyword(c.asset_id, c.name),
            commands.RemoveKeyword: lambda c: self.index.remove_keyword(c.asset_id, c.name),
            commands.RemoveAITag: lambda c: self.index.remove_ai_tag(c.asset_id, c.tag_id),
            commands.DeleteAsset: lambda c: self.delete(c.asset_id),
            commands.CreateAlbum: lambda c: self.index.create_album(c.name, c.asset_ids),
            commands.AddToAlbum: lambda c: self.index.add_to_album(c.album_id, c.asset_ids),
            commands.RemoveFromAlbum: lambda c: self.index.remove_from_album(
                c.album_id, c.asset_ids
            ),
            commands.CreateSmartAlbum: lambda c: self.index.create_smart_album(
                c.name, c.rules
            ),
            commands.SetLocalOnlyMode: lambda c: self.set_local_only_mode(c.enabled),
            commands.SetAIProvider: lambda c: self.index.set_ai_provider(c.provider),
            commands.RetryTask: lambda c: self.ledger.retry_task(c.task_id),
        }

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------

    def execute(self, command: commands.Command) -> Any:
        """Apply one user command and return its result."""
        try:
            handler = self._handlers[type(command)]
        except KeyError:
            raise InvalidError(f"Unknown command: {type(command).__name__}") from None
        logger.debug("Executing %s", command)
        return handler(command)

    def import_paths(self, paths: Iterable[str]) -> ImportReport:
        """Import files and enqueue the standard task set for each new asset."""
        return self.index.insert_from_paths(paths, on_insert=self.ledger.enqueue_standard)

    def delete(self, asset_id: str) -> bool:
        """Delete an asset, cancelling its outstanding tasks. Idempotent."""
        with self.index.lock:
            cancelled = self.ledger.cancel(asset_id)
            removed = self.index.delete(asset_id)
        self.dispatcher.cancel_tasks(cancelled)
        return removed

    def set_local_only_mode(self, enabled: bool) -> None:
        self.index.set_local_only_mode(enabled)

    def register_worker(self, worker: Worker) -> None:
        """Add a worker; a faces-capable worker enables the faces task."""
        self.dispatcher.register(worker)
        if TaskKind.FACES in worker.kinds_supported():
            self.ledger.faces_enabled = True

    def scan_liveness(self) -> LivenessReport:
        return self.index.scan_liveness()

    def refresh_bookmarks(self) -> LivenessReport:
        return self.index.refresh_bookmarks()

    async def run_tasks(self, until_idle: bool = True) -> DispatchStats:
        return await self.dispatcher.run(until_idle=until_idle)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def subscribe(self, callback: Callable[[LibraryEvent], None]) -> DisposableBase:
        return self.bus.subscribe(callback)

    def get_asset(self, asset_id: str) -> Asset:
        return self.index.get(asset_id)

    def snapshot(self) -> Snapshot:
        with self.index.lock:
            return self.index.snapshot(self.ledger.all_tasks())

    def query(self, query: Query | None = None, **options: Any) -> list[str]:
        """Run a query against a fresh snapshot.

        Pass a ``Query`` or its fields as keyword arguments.
        """
        return self.pipeline.run(self.snapshot(), query or Query(**options))

    def restore(self, snapshot: Snapshot) -> None:
        with self.index.lock:
            self.index.restore(snapshot)
            self.ledger.restore(snapshot.tasks)

    # ------------------------------------------------------------------
    # Invariants
    # ------------------------------------------------------------------

    def check_invariants(self) -> None:
        """Assert every cross-record invariant on a fresh snapshot."""
        snap = self.snapshot()
        asset_ids = [a.id for a in snap.assets]
        assert len(asset_ids) == len(set(asset_ids)), "duplicate asset ids"
        known = set(asset_ids)

        for asset in snap.assets:
            assert 0 <= asset.rating <= 5, f"rating out of range on {asset.id}"
            assert isinstance(asset.status, AssetStatus)
            names = [k.name for k in asset.keywords]
            assert len(names) == len(set(names)), f"duplicate keywords on {asset.id}"
            ai_done = any(
                t.kind == TaskKind.AI_TAGGING and t.status == TaskStatus.COMPLETED
                for t in snap.tasks_for(asset.id)
            )
            assert asset.needs_ai_tags != ai_done, (
                f"needs_ai_tags={asset.needs_ai_tags} but completed ai_tagging={ai_done} "
                f"on {asset.id}"
            )

        for album in snap.albums:
            dangling = album.asset_ids - known
            assert not dangling, f"album {album.name} references {sorted(dangling)}"

        active: set[tuple[str, TaskKind]] = set()
        for task in snap.tasks:
            if task.status.is_terminal:
                continue
            assert task.asset_id in known, f"active task {task.id} for deleted asset"
            key = (task.asset_id, task.kind)
            assert key not in active, f"two active {task.kind.value} tasks on {task.asset_id}"
            active.add(key)
