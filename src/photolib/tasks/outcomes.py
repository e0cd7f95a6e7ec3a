"""Typed task outcomes and the messages workers exchange with the ledger.

Each successful outcome type belongs to exactly one task kind; the
ledger rejects an outcome reported for a task of another kind.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Optional, Union

from photolib.models import AITag, Dimensions, Embedding, ExifData, TaskKind


@dataclass(frozen=True)
class BookmarkResolveResult:
    path: str


@dataclass(frozen=True)
class QuickHashResult:
    hash: str


@dataclass(frozen=True)
class ExifResult:
    exif_date: Optional[datetime] = None
    camera: Optional[str] = None
    lens: Optional[str] = None
    orientation: Optional[str] = None
    dimensions: Optional[Dimensions] = None

    def to_exif_data(self) -> ExifData:
        return ExifData(
            exif_date=self.exif_date,
            camera=self.camera,
            lens=self.lens,
            orientation=self.orientation,
            dimensions=self.dimensions,
        )


@dataclass(frozen=True)
class ThumbnailResult:
    """``handle`` is an opaque reference into the thumbnail store."""

    handle: str


@dataclass(frozen=True)
class FullHashResult:
    hash: str


@dataclass(frozen=True)
class AITagResult:
    tag: AITag


@dataclass(frozen=True)
class EmbeddingResult:
    embedding: Embedding


@dataclass(frozen=True)
class FacesResult:
    tag: AITag


@dataclass(frozen=True)
class Failure:
    """A failed attempt. Non-retryable failures skip automatic retries."""

    error: str
    retryable: bool = True


SuccessOutcome = Union[
    BookmarkResolveResult,
    QuickHashResult,
    ExifResult,
    ThumbnailResult,
    FullHashResult,
    AITagResult,
    EmbeddingResult,
    FacesResult,
]

Outcome = Union[SuccessOutcome, Failure]

OUTCOME_KINDS: dict[type, TaskKind] = {
    BookmarkResolveResult: TaskKind.BOOKMARK_RESOLVE,
    QuickHashResult: TaskKind.QUICK_HASH,
    ExifResult: TaskKind.EXIF,
    ThumbnailResult: TaskKind.THUMBNAIL,
    FullHashResult: TaskKind.FULL_HASH,
    AITagResult: TaskKind.AI_TAGGING,
    EmbeddingResult: TaskKind.EMBEDDINGS,
    FacesResult: TaskKind.FACES,
}


@dataclass(frozen=True)
class ClaimRequest:
    """A worker asking for its next task among *kinds*."""

    worker_name: str
    kinds: frozenset[TaskKind]


@dataclass(frozen=True)
class CompletionReport:
    """A worker's result for one claimed task."""

    task_id: str
    outcome: Outcome
