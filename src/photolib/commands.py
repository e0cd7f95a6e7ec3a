"""Explicit user commands accepted by ``Library.execute``.

UI actions are expressed as plain message values rather than closures
over the model, so they can be logged, queued, and replayed in tests.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Union

from photolib.models import AIProvider
from photolib.rules import Rule


@dataclass(frozen=True)
class UpdateRating:
    asset_id: str
    rating: int


@dataclass(frozen=True)
class SetFlagged:
    asset_id: str
    flagged: bool


@dataclass(frozen=True)
class AddKeyword:
    asset_id: str
    name: str


@dataclass(frozen=True)
class RemoveKeyword:
    asset_id: str
    name: str


@dataclass(frozen=True)
class RemoveAITag:
    asset_id: str
    tag_id: str


@dataclass(frozen=True)
class DeleteAsset:
    asset_id: str


@dataclass(frozen=True)
class CreateAlbum:
    name: str
    asset_ids: tuple[str, ...] = ()


@dataclass(frozen=True)
class AddToAlbum:
    album_id: str
    asset_ids: tuple[str, ...]


@dataclass(frozen=True)
class RemoveFromAlbum:
    album_id: str
    asset_ids: tuple[str, ...]


@dataclass(frozen=True)
class CreateSmartAlbum:
    name: str
    rules: tuple[Rule, ...] = field(default_factory=tuple)


@dataclass(frozen=True)
class SetLocalOnlyMode:
    enabled: bool


@dataclass(frozen=True)
class SetAIProvider:
    provider: AIProvider


@dataclass(frozen=True)
class RetryTask:
    task_id: str


Command = Union[
    UpdateRating,
    SetFlagged,
    AddKeyword,
    RemoveKeyword,
    RemoveAITag,
    DeleteAsset,
    CreateAlbum,
    AddToAlbum,
    RemoveFromAlbum,
    CreateSmartAlbum,
    SetLocalOnlyMode,
    SetAIProvider,
    RetryTask,
]
