"""Data models and enums for the photo library engine.

All records are frozen dataclasses. The index replaces a record with
``dataclasses.replace`` on every mutation, so any tuple of records
handed out in a snapshot stays valid forever.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import PurePath
from typing import Optional

from photolib.constants import (
    DOCUMENT_LABEL,
    FACE_LABEL,
    MAX_RATING,
    MIN_RATING,
    SCREENSHOT_MARKER,
)
from photolib.exceptions import InvalidError


def new_id() -> str:
    """Return a fresh opaque identifier."""
    return uuid.uuid4().hex


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class AssetStatus(str, Enum):
    """Reachability of an asset's file."""

    AVAILABLE = "available"
    MISSING = "missing"
    OFFLINE = "offline"


class AIProvider(str, Enum):
    """AI tagging / embedding providers. Cloudness is a property of the tag."""

    OPENAI = "openAI"
    AZURE = "azure"
    GOOGLE = "google"
    APPLE_VISION = "appleVision"
    LOCAL_CLIP = "localCLIP"

    @property
    def is_cloud(self) -> bool:
        return self in (AIProvider.OPENAI, AIProvider.AZURE, AIProvider.GOOGLE)

    @property
    def display_name(self) -> str:
        return _PROVIDER_NAMES[self]


_PROVIDER_NAMES = {
    AIProvider.OPENAI: "OpenAI",
    AIProvider.AZURE: "Azure Vision",
    AIProvider.GOOGLE: "Google Vision",
    AIProvider.APPLE_VISION: "Apple Vision",
    AIProvider.LOCAL_CLIP: "Local CLIP",
}


class TaskKind(str, Enum):
    """Per-asset enrichment jobs, declared in standard enqueue order."""

    BOOKMARK_RESOLVE = "bookmark_resolve"
    QUICK_HASH = "quick_hash"
    EXIF = "exif"
    THUMBNAIL = "thumbnail"
    FULL_HASH = "full_hash"
    AI_TAGGING = "ai_tagging"
    EMBEDDINGS = "embeddings"
    FACES = "faces"

    @property
    def uses_provider(self) -> bool:
        return self in (TaskKind.AI_TAGGING, TaskKind.EMBEDDINGS)


STANDARD_TASK_KINDS: tuple[TaskKind, ...] = (
    TaskKind.BOOKMARK_RESOLVE,
    TaskKind.QUICK_HASH,
    TaskKind.EXIF,
    TaskKind.THUMBNAIL,
    TaskKind.FULL_HASH,
    TaskKind.AI_TAGGING,
    TaskKind.EMBEDDINGS,
)


class TaskStatus(str, Enum):
    """Status of a task in the ledger."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (TaskStatus.COMPLETED, TaskStatus.FAILED)


@dataclass(frozen=True, slots=True)
class Keyword:
    """A user-assigned label with a stable id."""

    name: str
    id: str = field(default_factory=new_id)


@dataclass(frozen=True, slots=True)
class AITag:
    """One annotation produced by an AI provider."""

    provider: AIProvider
    labels: tuple[str, ...] = ()
    caption: str = ""
    confidence: float = 0.0
    timestamp: datetime = field(default_factory=utcnow)
    id: str = field(default_factory=new_id)

    def __post_init__(self) -> None:
        object.__setattr__(self, "provider", AIProvider(self.provider))
        object.__setattr__(self, "labels", tuple(self.labels))
        if not 0.0 <= self.confidence <= 1.0:
            raise InvalidError(
                f"AI tag confidence must be within [0, 1], got {self.confidence}"
            )


@dataclass(frozen=True, slots=True)
class Embedding:
    """A provider-specific embedding vector."""

    provider: AIProvider
    vector: tuple[float, ...] = ()

    def __post_init__(self) -> None:
        object.__setattr__(self, "provider", AIProvider(self.provider))
        object.__setattr__(self, "vector", tuple(float(v) for v in self.vector))


@dataclass(frozen=True, slots=True)
class Dimensions:
    width: int = 0
    height: int = 0


@dataclass(frozen=True, slots=True)
class ExifData:
    """Fields extracted from image metadata. ``None`` means "not present"."""

    exif_date: Optional[datetime] = None
    camera: Optional[str] = None
    lens: Optional[str] = None
    orientation: Optional[str] = None
    dimensions: Optional[Dimensions] = None


@dataclass(frozen=True, slots=True)
class Asset:
    """A single image file tracked by the library."""

    id: str
    file_name: str
    file_type: str
    file_size: int
    folder: str
    created_at: datetime
    bookmark: Optional[bytes] = None
    resolved_path: Optional[str] = None
    quick_hash: str = ""
    full_hash: Optional[str] = None
    exif_date: Optional[datetime] = None
    camera: Optional[str] = None
    lens: Optional[str] = None
    orientation: Optional[str] = None
    dimensions: Dimensions = Dimensions()
    rating: int = 0
    flagged: bool = False
    status: AssetStatus = AssetStatus.AVAILABLE
    keywords: tuple[Keyword, ...] = ()
    ai_tags: tuple[AITag, ...] = ()
    embedding: Optional[Embedding] = None
    needs_ai_tags: bool = True
    thumbnail_ref: Optional[str] = None

    @property
    def effective_date(self) -> datetime:
        """Capture time when known, otherwise filesystem creation time."""
        return self.exif_date or self.created_at


@dataclass(frozen=True, slots=True)
class Album:
    """A manual album: a named set of asset ids."""

    id: str
    name: str
    asset_ids: frozenset[str] = frozenset()


@dataclass(frozen=True, slots=True)
class SmartAlbum:
    """A named conjunction of rules (see ``photolib.rules``)."""

    id: str
    name: str
    rules: tuple = ()


@dataclass(frozen=True, slots=True)
class TaskState:
    """One enrichment job bound to one asset and one kind.

    ``sequence`` is the global enqueue counter, ``attempts`` counts
    automatic retries, and ``not_before`` holds the retry backoff
    deadline while the task waits in ``pending``.
    """

    id: str
    asset_id: str
    kind: TaskKind
    status: TaskStatus
    last_updated: datetime
    error_description: Optional[str] = None
    provider: Optional[AIProvider] = None
    sequence: int = 0
    attempts: int = 0
    not_before: Optional[datetime] = None
    started_at: Optional[datetime] = None


# ----------------------------------------------------------------------
# Constructors and pure helpers
# ----------------------------------------------------------------------


def clamp_rating(value: int) -> int:
    """Clamp a rating into [MIN_RATING, MAX_RATING]."""
    return max(MIN_RATING, min(MAX_RATING, int(value)))


def new_asset(
    file_name: str,
    file_type: str,
    file_size: int,
    folder: str,
    created_at: datetime,
    *,
    asset_id: str | None = None,
    bookmark: bytes | None = None,
    resolved_path: str | None = None,
    quick_hash: str = "",
) -> Asset:
    """Build a freshly imported asset.

    ``file_type`` is lowercased (and stripped of a leading dot);
    ``file_name`` is kept verbatim.
    """
    return Asset(
        id=asset_id or new_id(),
        file_name=file_name,
        file_type=file_type.lstrip(".").lower(),
        file_size=file_size,
        folder=folder,
        created_at=created_at,
        bookmark=bookmark,
        resolved_path=resolved_path,
        quick_hash=quick_hash,
    )


def asset_from_path(
    path: str,
    file_size: int,
    created_at: datetime,
    *,
    bookmark: bytes | None = None,
    quick_hash: str = "",
) -> Asset:
    """Build a freshly imported asset, deriving names from *path*."""
    p = PurePath(path)
    return new_asset(
        file_name=p.name,
        file_type=p.suffix,
        file_size=file_size,
        folder=p.parent.name,
        created_at=created_at,
        bookmark=bookmark,
        resolved_path=str(path),
        quick_hash=quick_hash,
    )


def _any_label_contains(asset: Asset, needle: str) -> bool:
    return any(
        needle in label.lower() for tag in asset.ai_tags for label in tag.labels
    )


def has_face(asset: Asset) -> bool:
    """True if any AI label mentions a face."""
    return _any_label_contains(asset, FACE_LABEL)


def has_document(asset: Asset) -> bool:
    """True if any AI label mentions a document."""
    return _any_label_contains(asset, DOCUMENT_LABEL)


def looks_like_screenshot(asset: Asset) -> bool:
    return SCREENSHOT_MARKER in asset.file_name.lower()
