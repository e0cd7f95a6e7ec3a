"""Shared pytest fixtures for photolib tests.

Provides a controllable clock, an in-memory FileAccess, and isolated
index / ledger / library instances wired to them.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from photolib.config import LibraryConfig
from photolib.events import EventBus
from photolib.index import AssetIndex
from photolib.library import Library
from photolib.models import TaskKind, TaskState
from photolib.tasks.ledger import TaskLedger
from photolib.tasks.outcomes import ThumbnailResult
from photolib.tasks.policy import RetryPolicy

EPOCH = datetime(2024, 6, 15, 12, 0, tzinfo=timezone.utc)


class FakeClock:
    """Clock that only moves when told to."""

    def __init__(self, start: datetime = EPOCH) -> None:
        self.current = start

    def now(self) -> datetime:
        return self.current

    def advance(self, seconds: float = 0, **kwargs) -> datetime:
        self.current += timedelta(seconds=seconds, **kwargs)
        return self.current


class FakeFileAccess:
    """In-memory filesystem with move-aware bookmarks.

    A bookmark records the path a file was first seen at; ``move``
    keeps resolving it to the new location and reports it stale.
    """

    def __init__(self) -> None:
        self.files: dict[str, bytes] = {}
        self.created: dict[str, datetime] = {}
        self.locations: dict[str, str] = {}
        self.fail_stat: set[str] = set()
        self.fail_bookmark: set[str] = set()
        self.fail_read: set[str] = set()

    def add(self, path: str, data: bytes = b"\xff\xd8 image bytes", created_at: datetime = EPOCH) -> str:
        self.files[path] = data
        self.created[path] = created_at
        self.locations.setdefault(path, path)
        return path

    def remove(self, path: str) -> None:
        self.files.pop(path, None)

    def move(self, old: str, new: str) -> None:
        self.files[new] = self.files.pop(old)
        self.created[new] = self.created.pop(old)
        for origin, current in self.locations.items():
            if current == old:
                self.locations[origin] = new
        self.locations.setdefault(new, new)

    # FileAccess protocol

    def resolve(self, bookmark: bytes) -> tuple[str, bool]:
        origin = bookmark.decode("utf-8").removeprefix("bm:")
        current = self.locations.get(origin, origin)
        if current not in self.files:
            raise FileNotFoundError(current)
        return current, current != origin

    def create_bookmark(self, path: str) -> bytes:
        if path in self.fail_bookmark or path not in self.files:
            raise OSError(f"cannot bookmark {path}")
        self.locations[path] = path
        return f"bm:{path}".encode("utf-8")

    def exists(self, path: str) -> bool:
        return path in self.files

    def stat(self, path: str) -> tuple[int, datetime]:
        if path in self.fail_stat or path not in self.files:
            raise FileNotFoundError(path)
        return len(self.files[path]), self.created[path]

    def read_prefix(self, path: str, size: int) -> bytes:
        if path in self.fail_read or path not in self.files:
            raise PermissionError(path)
        return self.files[path][:size]


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def files() -> FakeFileAccess:
    return FakeFileAccess()


@pytest.fixture
def bus() -> EventBus:
    return EventBus()


@pytest.fixture
def index(files: FakeFileAccess, clock: FakeClock, bus: EventBus) -> AssetIndex:
    return AssetIndex(files, clock, bus)


@pytest.fixture
def ledger(index: AssetIndex, clock: FakeClock) -> TaskLedger:
    return TaskLedger(index, clock, RetryPolicy())


@pytest.fixture
def library(files: FakeFileAccess, clock: FakeClock) -> Library:
    """Isolated engine without built-in workers (tests drive the ledger)."""
    return Library(
        file_access=files, clock=clock, config=LibraryConfig(), builtin_workers=False
    )


@pytest.fixture
def imported(library: Library, files: FakeFileAccess) -> str:
    """Id of one asset imported from ``/a/x.jpg``."""
    files.add("/a/x.jpg")
    return library.import_paths(["/a/x.jpg"]).imported[0]


def task_of(library: Library, asset_id: str, kind: TaskKind) -> TaskState:
    """The most recent task of *kind* for *asset_id*."""
    return [t for t in library.ledger.tasks_for(asset_id) if t.kind == kind][-1]


def finish_thumbnail(library: Library, asset_id: str) -> None:
    task = task_of(library, asset_id, TaskKind.THUMBNAIL)
    library.ledger.claim(task.id)
    library.ledger.complete(task.id, ThumbnailResult(f"thumb-{asset_id}"))
