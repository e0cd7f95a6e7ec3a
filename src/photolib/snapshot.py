"""Immutable point-in-time view of the library."""

from __future__ import annotations

from dataclasses import dataclass
from functools import cached_property

from photolib.exceptions import NotFoundError
from photolib.models import AIProvider, Album, Asset, SmartAlbum, TaskState


@dataclass(frozen=True)
class Snapshot:
    """Everything an observer may read, captured at one serialization point.

    Records are frozen dataclasses, so a snapshot can be shared across
    threads without copying. ``assets`` keep index insertion order and
    ``tasks`` keep enqueue order.
    """

    sequence: int
    assets: tuple[Asset, ...] = ()
    albums: tuple[Album, ...] = ()
    smart_albums: tuple[SmartAlbum, ...] = ()
    tasks: tuple[TaskState, ...] = ()
    watched_folders: tuple[str, ...] = ()
    local_only_mode: bool = False
    ai_provider: AIProvider = AIProvider.OPENAI

    @cached_property
    def _assets_by_id(self) -> dict[str, Asset]:
        return {a.id: a for a in self.assets}

    def get_asset(self, asset_id: str) -> Asset:
        try:
            return self._assets_by_id[asset_id]
        except KeyError:
            raise NotFoundError("asset", asset_id) from None

    def has_asset(self, asset_id: str) -> bool:
        return asset_id in self._assets_by_id

    def get_album(self, album_id: str) -> Album:
        for album in self.albums:
            if album.id == album_id:
                return album
        raise NotFoundError("album", album_id)

    def get_smart_album(self, smart_album_id: str) -> SmartAlbum:
        for album in self.smart_albums:
            if album.id == smart_album_id:
                return album
        raise NotFoundError("smart album", smart_album_id)

    def tasks_for(self, asset_id: str) -> list[TaskState]:
        return [t for t in self.tasks if t.asset_id == asset_id]
