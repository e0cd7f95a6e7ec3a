"""JSON persistence for library snapshots.

Pydantic v2 models mirror the frozen records in ``photolib.models``;
the engine itself never depends on this format. Dumps are
deterministic (fixed field order, sorted album members), so a
dump -> load -> dump round trip is byte-identical.
"""

from __future__ import annotations

import base64
import logging
from datetime import datetime
from pathlib import Path
from typing import Any, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from photolib.exceptions import InvalidError
from photolib.library import Library
from photolib.models import (
    AIProvider,
    AITag,
    Album,
    Asset,
    AssetStatus,
    Dimensions,
    Embedding,
    Keyword,
    SmartAlbum,
    TaskKind,
    TaskState,
    TaskStatus,
)
from photolib.rules import (
    AILabelContains,
    DateInRange,
    HasFaces,
    IsMissing,
    IsOffline,
    KeywordContains,
    NeedsAITags,
    RatingAtLeast,
    Rule,
)
from photolib.snapshot import Snapshot

logger = logging.getLogger(__name__)

FORMAT_VERSION = 1

_RULE_NAMES: dict[type, str] = {
    RatingAtLeast: "rating_at_least",
    KeywordContains: "keyword_contains",
    AILabelContains: "ai_label_contains",
    DateInRange: "date_in_range",
    HasFaces: "has_faces",
    IsOffline: "is_offline",
    IsMissing: "is_missing",
    NeedsAITags: "needs_ai_tags",
}
_RULE_TYPES = {name: rule_type for rule_type, name in _RULE_NAMES.items()}


class _Model(BaseModel):
    model_config = ConfigDict(extra="ignore")


class KeywordModel(_Model):
    id: str
    name: str


class AITagModel(_Model):
    id: str
    provider: AIProvider
    labels: list[str] = Field(default_factory=list)
    caption: str = ""
    confidence: float = Field(default=0.0, ge=0, le=1)
    timestamp: datetime


class EmbeddingModel(_Model):
    provider: AIProvider
    vector: list[float] = Field(default_factory=list)


class DimensionsModel(_Model):
    width: int = 0
    height: int = 0


class AssetModel(_Model):
    id: str
    file_name: str
    file_type: str
    file_size: int
    folder: str
    created_at: datetime
    bookmark: Optional[str] = Field(default=None, description="base64")
    resolved_path: Optional[str] = None
    quick_hash: str = ""
    full_hash: Optional[str] = None
    exif_date: Optional[datetime] = None
    camera: Optional[str] = None
    lens: Optional[str] = None
    orientation: Optional[str] = None
    dimensions: DimensionsModel = Field(default_factory=DimensionsModel)
    rating: int = Field(default=0, ge=0, le=5)
    flagged: bool = False
    status: AssetStatus = AssetStatus.AVAILABLE
    keywords: list[KeywordModel] = Field(default_factory=list)
    ai_tags: list[AITagModel] = Field(default_factory=list)
    embedding: Optional[EmbeddingModel] = None
    needs_ai_tags: bool = True
    thumbnail_ref: Optional[str] = None

    @classmethod
    def from_record(cls, asset: Asset) -> "AssetModel":
        return cls(
            id=asset.id,
            file_name=asset.file_name,
            file_type=asset.file_type,
            file_size=asset.file_size,
            folder=asset.folder,
            created_at=asset.created_at,
            bookmark=(
                base64.b64encode(asset.bookmark).decode("ascii")
                if asset.bookmark is not None
                else None
            ),
            resolved_path=asset.resolved_path,
            quick_hash=asset.quick_hash,
            full_hash=asset.full_hash,
            exif_date=asset.exif_date,
            camera=asset.camera,
            lens=asset.lens,
            orientation=asset.orientation,
            dimensions=DimensionsModel(
                width=asset.dimensions.width, height=asset.dimensions.height
            ),
            rating=asset.rating,
            flagged=asset.flagged,
            status=asset.status,
            keywords=[KeywordModel(id=k.id, name=k.name) for k in asset.keywords],
            ai_tags=[
                AITagModel(
                    id=t.id,
                    provider=t.provider,
                    labels=list(t.labels),
                    caption=t.caption,
                    confidence=t.confidence,
                    timestamp=t.timestamp,
                )
                for t in asset.ai_tags
            ],
            embedding=(
                EmbeddingModel(
                    provider=asset.embedding.provider,
                    vector=list(asset.embedding.vector),
                )
                if asset.embedding is not None
                else None
            ),
            needs_ai_tags=asset.needs_ai_tags,
            thumbnail_ref=asset.thumbnail_ref,
        )

    def to_record(self) -> Asset:
        return Asset(
            id=self.id,
            file_name=self.file_name,
            file_type=self.file_type,
            file_size=self.file_size,
            folder=self.folder,
            created_at=self.created_at,
            bookmark=base64.b64decode(self.bookmark) if self.bookmark is not None else None,
            resolved_path=self.resolved_path,
            quick_hash=self.quick_hash,
            full_hash=self.full_hash,
            exif_date=self.exif_date,
            camera=self.camera,
            lens=self.lens,
            orientation=self.orientation,
            dimensions=Dimensions(self.dimensions.width, self.dimensions.height),
            rating=self.rating,
            flagged=self.flagged,
            status=self.status,
            keywords=tuple(Keyword(name=k.name, id=k.id) for k in self.keywords),
            ai_tags=tuple(
                AITag(
                    provider=t.provider,
                    labels=tuple(t.labels),
                    caption=t.caption,
                    confidence=t.confidence,
                    timestamp=t.timestamp,
                    id=t.id,
                )
                for t in self.ai_tags
            ),
            embedding=(
                Embedding(self.embedding.provider, tuple(self.embedding.vector))
                if self.embedding is not None
                else None
            ),
            needs_ai_tags=self.needs_ai_tags,
            thumbnail_ref=self.thumbnail_ref,
        )


class AlbumModel(_Model):
    id: str
    name: str
    asset_ids: list[str] = Field(default_factory=list)


class RuleModel(_Model):
    type: Literal[
        "rating_at_least",
        "keyword_contains",
        "ai_label_contains",
        "date_in_range",
        "has_faces",
        "is_offline",
        "is_missing",
        "needs_ai_tags",
    ]
    minimum: Optional[int] = None
    text: Optional[str] = None
    start: Optional[datetime] = None
    end: Optional[datetime] = None
    expected: Optional[bool] = None

    @classmethod
    def from_rule(cls, rule: Rule) -> "RuleModel":
        try:
            name = _RULE_NAMES[type(rule)]
        except KeyError:
            raise InvalidError(f"Unknown rule type: {type(rule).__name__}") from None
        return cls(type=name, **vars(rule))

    def to_rule(self) -> Rule:
        rule_type = _RULE_TYPES[self.type]
        values = self.model_dump(exclude={"type"}, exclude_none=True)
        return rule_type(**values)


class SmartAlbumModel(_Model):
    id: str
    name: str
    rules: list[RuleModel] = Field(default_factory=list)


class TaskModel(_Model):
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


class SnapshotModel(_Model):
    format_version: int = FORMAT_VERSION
    sequence: int = 0
    local_only_mode: bool = False
    ai_provider: AIProvider = AIProvider.OPENAI
    watched_folders: list[str] = Field(default_factory=list)
    assets: list[AssetModel] = Field(default_factory=list)
    albums: list[AlbumModel] = Field(default_factory=list)
    smart_albums: list[SmartAlbumModel] = Field(default_factory=list)
    tasks: list[TaskModel] = Field(default_factory=list)

    @classmethod
    def from_snapshot(cls, snapshot: Snapshot) -> "SnapshotModel":
        return cls(
            sequence=snapshot.sequence,
            local_only_mode=snapshot.local_only_mode,
            ai_provider=snapshot.ai_provider,
            watched_folders=list(snapshot.watched_folders),
            assets=[AssetModel.from_record(a) for a in snapshot.assets],
            albums=[
                AlbumModel(id=a.id, name=a.name, asset_ids=sorted(a.asset_ids))
                for a in snapshot.albums
            ],
            smart_albums=[
                SmartAlbumModel(
                    id=s.id, name=s.name, rules=[RuleModel.from_rule(r) for r in s.rules]
                )
                for s in snapshot.smart_albums
            ],
            tasks=[TaskModel(**_task_fields(t)) for t in snapshot.tasks],
        )

    def to_snapshot(self) -> Snapshot:
        return Snapshot(
            sequence=self.sequence,
            assets=tuple(a.to_record() for a in self.assets),
            albums=tuple(
                Album(id=a.id, name=a.name, asset_ids=frozenset(a.asset_ids))
                for a in self.albums
            ),
            smart_albums=tuple(
                SmartAlbum(id=s.id, name=s.name, rules=tuple(r.to_rule() for r in s.rules))
                for s in self.smart_albums
            ),
            tasks=tuple(TaskState(**t.model_dump()) for t in self.tasks),
            watched_folders=tuple(self.watched_folders),
            local_only_mode=self.local_only_mode,
            ai_provider=self.ai_provider,
        )


def _task_fields(task: TaskState) -> dict[str, Any]:
    return {name: getattr(task, name) for name in TaskState.__dataclass_fields__}


def dump_snapshot(snapshot: Snapshot) -> str:
    """Serialize *snapshot* to deterministic JSON."""
    return SnapshotModel.from_snapshot(snapshot).model_dump_json(indent=2)


def load_snapshot(text: str) -> Snapshot:
    """Parse JSON produced by ``dump_snapshot``.

    Raises:
        InvalidError: If the document does not match the schema.
    """
    try:
        model = SnapshotModel.model_validate_json(text)
    except ValidationError as e:
        raise InvalidError(f"Invalid library file: {e}") from e
    if model.format_version != FORMAT_VERSION:
        raise InvalidError(f"Unsupported library format version: {model.format_version}")
    return model.to_snapshot()


def save_library(library: Library, path: Path | str) -> Path:
    """Write the library's current snapshot to *path* (parents created)."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    snapshot = library.snapshot()
    tmp = path.with_suffix(path.suffix + ".tmp")
    tmp.write_text(dump_snapshot(snapshot), encoding="utf-8")
    tmp.replace(path)
    logger.info("Saved %d asset(s) to %s", len(snapshot.assets), path)
    return path


def load_library(
    path: Path | str,
    library: Library | None = None,
    requeue_interrupted: bool = True,
) -> Library:
    """Restore a library from *path* into *library* (a new one by default).

    A missing file leaves the library empty. Tasks left running by a
    previous process count as a failed attempt and go back to pending
    while retries remain, when *requeue_interrupted*.
    """
    path = Path(path)
    library = library or Library()
    if not path.exists():
        logger.debug("No library file at %s, starting empty", path)
        return library
    library.restore(load_snapshot(path.read_text(encoding="utf-8")))
    if requeue_interrupted:
        library.ledger.requeue_interrupted()
    return library
