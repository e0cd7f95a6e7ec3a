"""Change notifications published by the library after each committed write.

Events flow through a reactivex ``Subject``. Publishing happens while
the index writer lock is held, so delivery is serialised per subscriber
and follows the snapshot sequence. Subscribers must not block.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable, Union

from reactivex import Observable
from reactivex.abc import DisposableBase
from reactivex.subject import Subject

from photolib.models import TaskStatus

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AssetInserted:
    asset_id: str


@dataclass(frozen=True)
class AssetMutated:
    asset_id: str
    changed_fields: tuple[str, ...]


@dataclass(frozen=True)
class AssetDeleted:
    asset_id: str


@dataclass(frozen=True)
class TaskStateChanged:
    task_id: str
    asset_id: str
    status: TaskStatus


@dataclass(frozen=True)
class AlbumChanged:
    album_id: str


LibraryEvent = Union[
    AssetInserted, AssetMutated, AssetDeleted, TaskStateChanged, AlbumChanged
]


class EventBus:
    """Publish/subscribe channel carrying library deltas.

    Usage::

        bus = EventBus()
        sub = bus.subscribe(lambda event: print(event))
        bus.publish(AssetInserted("abc"))
        sub.dispose()
    """

    def __init__(self) -> None:
        self._subject: Subject = Subject()

    @property
    def events(self) -> Observable:
        """Raw observable, for callers that want reactivex operators."""
        return self._subject

    def subscribe(self, callback: Callable[[LibraryEvent], None]) -> DisposableBase:
        """Register *callback* for every future event.

        A callback that raises is logged and skipped; it never affects
        the writer or other subscribers.
        """

        def _deliver(event: LibraryEvent) -> None:
            try:
                callback(event)
            except Exception:
                logger.exception("Subscriber %r failed on %s", callback, event)

        return self._subject.subscribe(on_next=_deliver)

    def publish(self, event: LibraryEvent) -> None:
        self._subject.on_next(event)
