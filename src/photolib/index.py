"""Authoritative in-memory store of assets, albums and smart albums.

All writes run under one re-entrant writer lock (``AssetIndex.lock``),
which the task ledger shares. Each committed write bumps the sequence
number and publishes its event before the lock is released, so
observers see changes in snapshot order. Collaborator I/O (stat,
bookmark resolution, existence checks) happens outside the lock and
the results are applied afterwards.
"""

from __future__ import annotations

import dataclasses
import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Iterable, Mapping

from photolib.clock import Clock, SystemClock
from photolib.constants import QUICK_HASH_PREFIX_BYTES
from photolib.events import (
    AlbumChanged,
    AssetDeleted,
    AssetInserted,
    AssetMutated,
    EventBus,
)
from photolib.exceptions import ExternalFailure, InvalidError, NotFoundError
from photolib.fileaccess import FileAccess, compute_quick_hash
from photolib.models import (
    AIProvider,
    AITag,
    Album,
    Asset,
    AssetStatus,
    Dimensions,
    Embedding,
    ExifData,
    Keyword,
    SmartAlbum,
    TaskState,
    asset_from_path,
    clamp_rating,
    new_id,
)
from photolib.rules import Rule, validate_rules
from photolib.snapshot import Snapshot

logger = logging.getLogger(__name__)

_FILE_ERRORS = (OSError, ExternalFailure)


@dataclass
class ImportReport:
    """Outcome of a batch import. Failed paths do not abort the batch."""

    imported: list[str] = field(default_factory=list)
    errors: dict[str, str] = field(default_factory=dict)

    @property
    def summary(self) -> str:
        return f"imported={len(self.imported)}, failed={len(self.errors)}"


@dataclass
class LivenessReport:
    """Result of a liveness sweep or bookmark refresh."""

    checked: int = 0
    now_missing: list[str] = field(default_factory=list)
    restored: list[str] = field(default_factory=list)

    @property
    def summary(self) -> str:
        return (
            f"checked={self.checked}, missing={len(self.now_missing)}, "
            f"restored={len(self.restored)}"
        )


class AssetIndex:
    """Single-writer store for the library's records.

    Usage::

        index = AssetIndex(LocalFileAccess())
        report = index.insert_from_paths(["/photos/a.jpg"])
        index.set_rating(report.imported[0], 4)
        snap = index.snapshot()
    """

    def __init__(
        self,
        file_access: FileAccess,
        clock: Clock | None = None,
        bus: EventBus | None = None,
    ) -> None:
        self.lock = threading.RLock()
        self.bus = bus or EventBus()
        self._files = file_access
        self._clock = clock or SystemClock()
        self._assets: dict[str, Asset] = {}
        self._albums: dict[str, Album] = {}
        self._smart_albums: dict[str, SmartAlbum] = {}
        self._watched_folders: list[str] = []
        self._local_only_mode = False
        self._ai_provider = AIProvider.OPENAI
        self._sequence = 0

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def __len__(self) -> int:
        return len(self._assets)

    def __contains__(self, asset_id: object) -> bool:
        return asset_id in self._assets

    @property
    def sequence(self) -> int:
        return self._sequence

    @property
    def local_only_mode(self) -> bool:
        return self._local_only_mode

    @property
    def ai_provider(self) -> AIProvider:
        return self._ai_provider

    def get(self, asset_id: str) -> Asset:
        try:
            return self._assets[asset_id]
        except KeyError:
            raise NotFoundError("asset", asset_id) from None

    def get_album(self, album_id: str) -> Album:
        try:
            return self._albums[album_id]
        except KeyError:
            raise NotFoundError("album", album_id) from None

    def get_smart_album(self, smart_album_id: str) -> SmartAlbum:
        try:
            return self._smart_albums[smart_album_id]
        except KeyError:
            raise NotFoundError("smart album", smart_album_id) from None

    def assets(self) -> tuple[Asset, ...]:
        with self.lock:
            return tuple(self._assets.values())

    def snapshot(self, tasks: Iterable[TaskState] = ()) -> Snapshot:
        """Capture the current state. *tasks* is supplied by the ledger."""
        with self.lock:
            return Snapshot(
                sequence=self._sequence,
                assets=tuple(self._assets.values()),
                albums=tuple(self._albums.values()),
                smart_albums=tuple(self._smart_albums.values()),
                tasks=tuple(tasks),
                watched_folders=tuple(self._watched_folders),
                local_only_mode=self._local_only_mode,
                ai_provider=self._ai_provider,
            )

    def restore(self, snapshot: Snapshot) -> None:
        """Replace the whole store with the contents of *snapshot*."""
        with self.lock:
            self._assets = {a.id: a for a in snapshot.assets}
            self._albums = {a.id: a for a in snapshot.albums}
            self._smart_albums = {a.id: a for a in snapshot.smart_albums}
            self._watched_folders = list(snapshot.watched_folders)
            self._local_only_mode = snapshot.local_only_mode
            self._ai_provider = snapshot.ai_provider
            self._sequence = snapshot.sequence

    # ------------------------------------------------------------------
    # Import / insert / delete
    # ------------------------------------------------------------------

    def insert_from_paths(
        self,
        paths: Iterable[str],
        on_insert: Callable[[str], Any] | None = None,
    ) -> ImportReport:
        """Create one asset per readable path.

        *on_insert* runs under the writer lock right after each insert,
        so follow-up writes (task enqueueing) land in the same critical
        section as the new asset.

        A path whose stat fails is reported in ``errors`` and skipped;
        the rest of the batch is still committed. Bookmark and quick-hash
        failures are tolerated: the asset is imported without them and the
        enrichment tasks fill them in later.
        """
        report = ImportReport()
        for raw_path in paths:
            path = str(raw_path)
            try:
                size, created_at = self._files.stat(path)
            except _FILE_ERRORS as e:
                logger.warning("Cannot stat %s: %s", path, e)
                report.errors[path] = str(e) or type(e).__name__
                continue

            asset = asset_from_path(
                path,
                size,
                created_at,
                bookmark=self._create_bookmark(path),
                quick_hash=self._initial_quick_hash(path),
            )
            with self.lock:
                self.insert(asset)
                if on_insert is not None:
                    on_insert(asset.id)
            report.imported.append(asset.id)

        logger.info("Import complete: %s", report.summary)
        return report

    def insert(self, asset: Asset) -> Asset:
        """Insert a fully built asset.

        The rating is clamped and naive datetimes are taken as UTC.
        """
        with self.lock:
            if asset.id in self._assets:
                raise InvalidError(f"Asset id already exists: {asset.id}")
            asset = dataclasses.replace(
                asset,
                rating=clamp_rating(asset.rating),
                created_at=_as_utc(asset.created_at),
                exif_date=_as_utc(asset.exif_date) if asset.exif_date else None,
            )
            self._assets[asset.id] = asset
            self.commit(AssetInserted(asset.id))
            return asset

    def delete(self, asset_id: str) -> bool:
        """Remove an asset and its album memberships. Unknown ids are a no-op."""
        with self.lock:
            if self._assets.pop(asset_id, None) is None:
                return False
            for album in list(self._albums.values()):
                if asset_id in album.asset_ids:
                    self._albums[album.id] = dataclasses.replace(
                        album, asset_ids=album.asset_ids - {asset_id}
                    )
                    self.commit(AlbumChanged(album.id))
            self.commit(AssetDeleted(asset_id))
            return True

    def _create_bookmark(self, path: str) -> bytes | None:
        try:
            return self._files.create_bookmark(path)
        except _FILE_ERRORS as e:
            logger.warning("Cannot create bookmark for %s: %s", path, e)
            return None

    def _initial_quick_hash(self, path: str) -> str:
        try:
            return compute_quick_hash(
                self._files.read_prefix(path, QUICK_HASH_PREFIX_BYTES)
            )
        except _FILE_ERRORS as e:
            logger.warning("Cannot read %s for quick hash: %s", path, e)
            return ""

    # ------------------------------------------------------------------
    # Field mutation
    # ------------------------------------------------------------------

    def update_field(self, asset_id: str, field_name: str, value: Any) -> Asset:
        """Typed mutation of one field. See ``update_fields``."""
        return self.update_fields(asset_id, {field_name: value})

    def update_fields(self, asset_id: str, changes: Mapping[str, Any]) -> Asset:
        """Apply several typed mutations to one asset atomically.

        Accepted fields: rating (clamped), flagged, keywords (names, set
        semantics in insertion order), status, resolved_path,
        thumbnail_ref, full_hash, quick_hash, exif (``ExifData`` or
        mapping), ai_tags (one ``AITag`` to append) and embedding
        (replace). Nothing changes if any field is invalid.
        """
        with self.lock:
            asset = self.get(asset_id)
            updates: dict[str, Any] = {}
            for name, value in changes.items():
                updates.update(self._coerce_field(asset, name, value))
            return self._replace_fields(asset, updates)

    def _record_ai_tagging(self, asset_id: str, tag: AITag) -> Asset:
        """Append the tag of a completed ai_tagging task and clear needs_ai_tags.

        Only the task ledger calls this, in the same locked section that
        marks the task completed.
        """
        with self.lock:
            asset = self.get(asset_id)
            updates = self._coerce_field(asset, "ai_tags", tag)
            updates["needs_ai_tags"] = False
            return self._replace_fields(asset, updates)

    def _replace_fields(self, asset: Asset, updates: dict[str, Any]) -> Asset:
        changed = tuple(k for k, v in updates.items() if getattr(asset, k) != v)
        if not changed:
            return asset
        asset = dataclasses.replace(asset, **updates)
        self._assets[asset.id] = asset
        self.commit(AssetMutated(asset.id, changed))
        return asset

    def _coerce_field(self, asset: Asset, name: str, value: Any) -> dict[str, Any]:
        if name == "rating":
            if isinstance(value, bool) or not isinstance(value, int):
                raise InvalidError(f"rating must be an integer, got {value!r}")
            return {"rating": clamp_rating(value)}
        if name == "flagged":
            if not isinstance(value, bool):
                raise InvalidError(f"{name} must be a boolean, got {value!r}")
            return {name: value}
        if name == "keywords":
            return {"keywords": _merge_keywords(asset.keywords, value)}
        if name == "status":
            try:
                return {"status": AssetStatus(value)}
            except ValueError:
                raise InvalidError(f"Unknown asset status: {value!r}") from None
        if name in ("resolved_path", "thumbnail_ref", "full_hash"):
            if value is not None and not isinstance(value, str):
                raise InvalidError(f"{name} must be a string or None, got {value!r}")
            return {name: value}
        if name == "quick_hash":
            if not isinstance(value, str):
                raise InvalidError(f"quick_hash must be a string, got {value!r}")
            return {"quick_hash": value}
        if name == "exif":
            return _exif_updates(value)
        if name == "ai_tags":
            if not isinstance(value, AITag):
                raise InvalidError(f"ai_tags accepts one AITag to append, got {value!r}")
            return {"ai_tags": asset.ai_tags + (value,)}
        if name == "embedding":
            if value is not None and not isinstance(value, Embedding):
                raise InvalidError(f"embedding must be an Embedding, got {value!r}")
            return {"embedding": value}
        raise InvalidError(f"Unknown or read-only asset field: {name}")

    def set_rating(self, asset_id: str, rating: int) -> Asset:
        return self.update_field(asset_id, "rating", rating)

    def set_flagged(self, asset_id: str, flagged: bool) -> Asset:
        return self.update_field(asset_id, "flagged", flagged)

    def set_keywords(self, asset_id: str, names: Iterable[str]) -> Asset:
        return self.update_field(asset_id, "keywords", list(names))

    def add_keyword(self, asset_id: str, name: str) -> Asset:
        with self.lock:
            current = [k.name for k in self.get(asset_id).keywords]
            return self.update_field(asset_id, "keywords", current + [name])

    def remove_keyword(self, asset_id: str, name: str) -> Asset:
        with self.lock:
            current = [k.name for k in self.get(asset_id).keywords if k.name != name]
            return self.update_field(asset_id, "keywords", current)

    def remove_ai_tag(self, asset_id: str, tag_id: str) -> Asset:
        """Explicit user deletion of one AI annotation."""
        with self.lock:
            asset = self.get(asset_id)
            remaining = tuple(t for t in asset.ai_tags if t.id != tag_id)
            if len(remaining) == len(asset.ai_tags):
                raise NotFoundError("ai tag", tag_id)
            asset = dataclasses.replace(asset, ai_tags=remaining)
            self._assets[asset_id] = asset
            self.commit(AssetMutated(asset_id, ("ai_tags",)))
            return asset

    def apply_resolved_path(self, asset_id: str, path: str) -> Asset:
        """Record a freshly resolved path; a missing asset becomes available."""
        with self.lock:
            changes: dict[str, Any] = {"resolved_path": path}
            if self.get(asset_id).status == AssetStatus.MISSING:
                changes["status"] = AssetStatus.AVAILABLE
            return self.update_fields(asset_id, changes)

    def mark_offline(self, asset_ids: Iterable[str]) -> None:
        """Mark assets whose volume is unmounted. Liveness sweeps skip them."""
        with self.lock:
            for asset_id in asset_ids:
                self.update_field(asset_id, "status", AssetStatus.OFFLINE)

    def mark_online(self, asset_ids: Iterable[str]) -> None:
        with self.lock:
            for asset_id in asset_ids:
                if self.get(asset_id).status == AssetStatus.OFFLINE:
                    self.update_field(asset_id, "status", AssetStatus.AVAILABLE)

    # ------------------------------------------------------------------
    # Liveness and bookmarks
    # ------------------------------------------------------------------

    def scan_liveness(self) -> LivenessReport:
        """Flip available <-> missing based on whether resolved paths exist.

        Offline assets and assets without a resolved path are skipped.
        """
        with self.lock:
            candidates = [
                (a.id, a.resolved_path)
                for a in self._assets.values()
                if a.resolved_path and a.status != AssetStatus.OFFLINE
            ]

        report = LivenessReport(checked=len(candidates))
        observed = {asset_id: self._safe_exists(path) for asset_id, path in candidates}

        with self.lock:
            for asset_id, exists in observed.items():
                asset = self._assets.get(asset_id)
                if asset is None:
                    continue
                if not exists and asset.status == AssetStatus.AVAILABLE:
                    self.update_field(asset_id, "status", AssetStatus.MISSING)
                    report.now_missing.append(asset_id)
                elif exists and asset.status == AssetStatus.MISSING:
                    self.update_field(asset_id, "status", AssetStatus.AVAILABLE)
                    report.restored.append(asset_id)

        logger.info("Liveness scan complete: %s", report.summary)
        return report

    def refresh_bookmarks(self) -> LivenessReport:
        """Re-resolve every bookmark.

        Success updates ``resolved_path`` (re-creating stale bookmarks) and
        restores missing assets; failure marks the asset missing.
        Offline assets are left alone.
        """
        with self.lock:
            candidates = [
                (a.id, a.bookmark)
                for a in self._assets.values()
                if a.bookmark is not None and a.status != AssetStatus.OFFLINE
            ]

        report = LivenessReport(checked=len(candidates))
        resolved: dict[str, tuple[str, bytes | None] | None] = {}
        for asset_id, bookmark in candidates:
            try:
                path, stale = self._files.resolve(bookmark)
            except _FILE_ERRORS as e:
                logger.warning("Bookmark for asset %s did not resolve: %s", asset_id, e)
                resolved[asset_id] = None
                continue
            renewed = self._create_bookmark(path) if stale else None
            resolved[asset_id] = (path, renewed)

        with self.lock:
            for asset_id, outcome in resolved.items():
                asset = self._assets.get(asset_id)
                if asset is None:
                    continue
                if outcome is None:
                    if asset.status != AssetStatus.MISSING:
                        self.update_field(asset_id, "status", AssetStatus.MISSING)
                        report.now_missing.append(asset_id)
                    continue
                path, renewed = outcome
                was_missing = asset.status == AssetStatus.MISSING
                self.apply_resolved_path(asset_id, path)
                if renewed is not None:
                    self._replace_bookmark(asset_id, renewed)
                if was_missing:
                    report.restored.append(asset_id)

        logger.info("Bookmark refresh complete: %s", report.summary)
        return report

    def _replace_bookmark(self, asset_id: str, bookmark: bytes) -> None:
        asset = dataclasses.replace(self._assets[asset_id], bookmark=bookmark)
        self._assets[asset_id] = asset
        self.commit(AssetMutated(asset_id, ("bookmark",)))

    def _safe_exists(self, path: str) -> bool:
        try:
            return self._files.exists(path)
        except _FILE_ERRORS as e:
            logger.warning("Cannot check %s: %s", path, e)
            return False

    # ------------------------------------------------------------------
    # Manual albums
    # ------------------------------------------------------------------

    def create_album(self, name: str, asset_ids: Iterable[str] = ()) -> Album:
        with self.lock:
            members = self._require_assets(asset_ids)
            album = Album(id=new_id(), name=_require_name(name), asset_ids=members)
            self._albums[album.id] = album
            self.commit(AlbumChanged(album.id))
            return album

    def rename_album(self, album_id: str, name: str) -> Album:
        with self.lock:
            album = dataclasses.replace(self.get_album(album_id), name=_require_name(name))
            self._albums[album_id] = album
            self.commit(AlbumChanged(album_id))
            return album

    def delete_album(self, album_id: str) -> bool:
        with self.lock:
            if self._albums.pop(album_id, None) is None:
                return False
            self.commit(AlbumChanged(album_id))
            return True

    def add_to_album(self, album_id: str, asset_ids: Iterable[str]) -> Album:
        """Add assets to an album. Any unknown asset id rejects the whole call."""
        with self.lock:
            album = self.get_album(album_id)
            members = self._require_assets(asset_ids)
            if members <= album.asset_ids:
                return album
            album = dataclasses.replace(album, asset_ids=album.asset_ids | members)
            self._albums[album_id] = album
            self.commit(AlbumChanged(album_id))
            return album

    def remove_from_album(self, album_id: str, asset_ids: Iterable[str]) -> Album:
        with self.lock:
            album = self.get_album(album_id)
            remaining = album.asset_ids - set(asset_ids)
            if remaining == album.asset_ids:
                return album
            album = dataclasses.replace(album, asset_ids=remaining)
            self._albums[album_id] = album
            self.commit(AlbumChanged(album_id))
            return album

    def _require_assets(self, asset_ids: Iterable[str]) -> frozenset[str]:
        members = frozenset(asset_ids)
        unknown = sorted(members - self._assets.keys())
        if unknown:
            raise InvalidError(f"Unknown asset ids: {', '.join(unknown)}")
        return members

    # ------------------------------------------------------------------
    # Smart albums
    # ------------------------------------------------------------------

    def create_smart_album(self, name: str, rules: Iterable[Rule] = ()) -> SmartAlbum:
        with self.lock:
            album = SmartAlbum(
                id=new_id(), name=_require_name(name), rules=validate_rules(rules)
            )
            self._smart_albums[album.id] = album
            self.commit(AlbumChanged(album.id))
            return album

    def rename_smart_album(self, smart_album_id: str, name: str) -> SmartAlbum:
        with self.lock:
            album = dataclasses.replace(
                self.get_smart_album(smart_album_id), name=_require_name(name)
            )
            self._smart_albums[smart_album_id] = album
            self.commit(AlbumChanged(smart_album_id))
            return album

    def update_smart_album_rules(
        self, smart_album_id: str, rules: Iterable[Rule]
    ) -> SmartAlbum:
        with self.lock:
            album = dataclasses.replace(
                self.get_smart_album(smart_album_id), rules=validate_rules(rules)
            )
            self._smart_albums[smart_album_id] = album
            self.commit(AlbumChanged(smart_album_id))
            return album

    def delete_smart_album(self, smart_album_id: str) -> bool:
        with self.lock:
            if self._smart_albums.pop(smart_album_id, None) is None:
                return False
            self.commit(AlbumChanged(smart_album_id))
            return True

    # ------------------------------------------------------------------
    # Library settings and watched folders
    # ------------------------------------------------------------------

    def set_local_only_mode(self, enabled: bool) -> None:
        with self.lock:
            self._local_only_mode = bool(enabled)
            self._sequence += 1

    def set_ai_provider(self, provider: AIProvider | str) -> None:
        with self.lock:
            self._ai_provider = AIProvider(provider)
            self._sequence += 1

    def add_watched_folder(self, path: str) -> bool:
        with self.lock:
            path = str(path)
            if path in self._watched_folders:
                return False
            self._watched_folders.append(path)
            self._sequence += 1
            return True

    def remove_watched_folder(self, path: str) -> bool:
        with self.lock:
            try:
                self._watched_folders.remove(str(path))
            except ValueError:
                return False
            self._sequence += 1
            return True

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def commit(self, event) -> None:
        """Advance the sequence and publish; caller holds the lock."""
        self._sequence += 1
        self.bus.publish(event)


def _require_name(name: str) -> str:
    if not name or not name.strip():
        raise InvalidError("Album name cannot be empty")
    return name.strip()


def _merge_keywords(existing: tuple[Keyword, ...], names: Any) -> tuple[Keyword, ...]:
    """Build a keyword tuple from *names*, reusing ids of known names."""
    if isinstance(names, str) or not isinstance(names, Iterable):
        raise InvalidError(f"keywords must be an iterable of names, got {names!r}")
    by_name = {k.name: k for k in existing}
    result: list[Keyword] = []
    seen: set[str] = set()
    for item in names:
        name = item.name if isinstance(item, Keyword) else item
        if not isinstance(name, str) or not name.strip():
            raise InvalidError(f"Invalid keyword: {item!r}")
        name = name.strip()
        if name in seen:
            continue
        seen.add(name)
        result.append(by_name.get(name) or Keyword(name=name))
    return tuple(result)


def _exif_updates(value: Any) -> dict[str, Any]:
    if isinstance(value, ExifData):
        value = {f.name: getattr(value, f.name) for f in dataclasses.fields(ExifData)}
    if not isinstance(value, Mapping):
        raise InvalidError(f"exif must be ExifData or a mapping, got {value!r}")

    updates: dict[str, Any] = {}
    for key, item in value.items():
        if item is None:
            continue
        if key == "exif_date":
            if not isinstance(item, datetime):
                raise InvalidError(f"exif_date must be a datetime, got {item!r}")
            updates[key] = _as_utc(item)
        elif key in ("camera", "lens", "orientation"):
            updates[key] = str(item)
        elif key == "dimensions":
            if not isinstance(item, Dimensions):
                try:
                    width, height = item
                except (TypeError, ValueError):
                    raise InvalidError(f"dimensions must be (width, height), got {item!r}") from None
                try:
                    item = Dimensions(int(width), int(height))
                except (TypeError, ValueError):
                    raise InvalidError(f"dimensions must be integers, got {item!r}") from None
            updates[key] = item
        else:
            raise InvalidError(f"Unknown exif field: {key}")
    return updates


def _as_utc(value: datetime) -> datetime:
    """Naive datetimes (EXIF capture times usually are) are taken as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value
