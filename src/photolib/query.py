"""Filtered views over a snapshot: album, flags, smart album, text search.

The pipeline is non-blocking and reads only immutable snapshots, so UI
reads never contend with the index writer.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional, Protocol, Sequence

import numpy as np

from photolib.models import (
    AIProvider,
    Asset,
    AssetStatus,
    Embedding,
    SmartAlbum,
    has_document,
    has_face,
    looks_like_screenshot,
)
from photolib.rules import evaluate_smart_album
from photolib.snapshot import Snapshot

logger = logging.getLogger(__name__)


class SearchMode(str, Enum):
    KEYWORD = "keyword"
    SEMANTIC = "semantic"

    @property
    def label(self) -> str:
        return self.value.capitalize()


@dataclass
class Query:
    """Current selection, flags and search text.

    Every option is AND-combined; the default query matches everything.
    """

    selected_album: Optional[str] = None
    selected_smart_album: Optional[str] = None
    show_missing_only: bool = False
    show_needs_ai: bool = False
    show_faces_only: bool = False
    show_documents_only: bool = False
    show_screenshots_only: bool = False
    search_query: str = ""
    search_mode: SearchMode = SearchMode.KEYWORD

    def is_empty(self) -> bool:
        """Return True if no option restricts the result."""
        return not self.to_filter_strings()

    def to_filter_strings(self) -> list[str]:
        """Describe active options as ``field:value`` strings."""
        filters: list[str] = []
        if self.selected_album is not None:
            filters.append(f"album:{self.selected_album}")
        if self.selected_smart_album is not None:
            filters.append(f"smart-album:{self.selected_smart_album}")
        if self.show_missing_only:
            filters.append("missing:true")
        if self.show_needs_ai:
            filters.append("needs-ai:true")
        if self.show_faces_only:
            filters.append("faces:true")
        if self.show_documents_only:
            filters.append("documents:true")
        if self.show_screenshots_only:
            filters.append("screenshots:true")
        if self.search_query:
            filters.append(f"{SearchMode(self.search_mode).value}:{self.search_query}")
        return filters


class SemanticMatcher(Protocol):
    def matches(self, embedding: Embedding, query: str) -> bool:
        """Pure function of (embedding, query)."""


class NullSemanticMatcher:
    """Default matcher: no embeddings are considered ready, nothing matches."""

    def matches(self, embedding: Embedding, query: str) -> bool:
        return False


class CosineSemanticMatcher:
    """Cosine similarity between an asset embedding and an embedded query.

    *embed_query* turns query text into a vector in the space of
    *provider*; assets embedded by another provider never match. Query
    vectors are cached per query string.
    """

    def __init__(
        self,
        embed_query: Callable[[str], Sequence[float]],
        provider: AIProvider,
        threshold: float = 0.25,
    ) -> None:
        self._embed_query = embed_query
        self.provider = AIProvider(provider)
        self.threshold = threshold
        self._cache: dict[str, np.ndarray] = {}

    def matches(self, embedding: Embedding, query: str) -> bool:
        if embedding.provider != self.provider or not embedding.vector:
            return False
        query_vector = self._query_vector(query)
        vector = _normalize(np.asarray(embedding.vector, dtype=np.float32))
        if vector.shape != query_vector.shape:
            logger.debug(
                "Embedding dim %s does not match query dim %s",
                vector.shape, query_vector.shape,
            )
            return False
        return float(np.dot(vector, query_vector)) >= self.threshold

    def _query_vector(self, query: str) -> np.ndarray:
        if query not in self._cache:
            raw = np.asarray(self._embed_query(query), dtype=np.float32)
            self._cache[query] = _normalize(raw)
        return self._cache[query]


def _normalize(vector: np.ndarray) -> np.ndarray:
    norm = np.linalg.norm(vector)
    if norm == 0:
        return vector
    return vector / norm


def keyword_match(asset: Asset, text: str) -> bool:
    """Case-insensitive substring over file name, keywords, AI captions and labels."""
    needle = text.lower()
    if needle in asset.file_name.lower():
        return True
    if any(needle in k.name.lower() for k in asset.keywords):
        return True
    return any(
        needle in tag.caption.lower()
        or any(needle in label.lower() for label in tag.labels)
        for tag in asset.ai_tags
    )


class QueryPipeline:
    """Compose a ``Query`` into the ordered list of matching asset ids.

    Predicates run cheapest first: album membership, status flags,
    label / file-name predicates, smart-album rules, then text search.
    Each asset is visited once.

    Usage::

        pipeline = QueryPipeline()
        ids = pipeline.run(library.snapshot(), Query(show_needs_ai=True))
    """

    def __init__(self, matcher: SemanticMatcher | None = None) -> None:
        self.matcher: SemanticMatcher = matcher or NullSemanticMatcher()

    def run(self, snapshot: Snapshot, query: Query) -> list[str]:
        """Return matching asset ids in index insertion order.

        Raises:
            NotFoundError: If the selected album or smart album is unknown.
        """
        members = (
            snapshot.get_album(query.selected_album).asset_ids
            if query.selected_album is not None
            else None
        )
        smart_album = (
            snapshot.get_smart_album(query.selected_smart_album)
            if query.selected_smart_album is not None
            else None
        )
        return [
            asset.id
            for asset in snapshot.assets
            if self._matches(asset, query, members, smart_album)
        ]

    def filter(self, snapshot: Snapshot, query: Query) -> list[Asset]:
        """Like ``run`` but returns the asset records."""
        ids = set(self.run(snapshot, query))
        return [a for a in snapshot.assets if a.id in ids]

    def _matches(
        self,
        asset: Asset,
        query: Query,
        members: frozenset[str] | None,
        smart_album: SmartAlbum | None,
    ) -> bool:
        if members is not None and asset.id not in members:
            return False
        if query.show_missing_only and asset.status != AssetStatus.MISSING:
            return False
        if query.show_needs_ai and not asset.needs_ai_tags:
            return False
        if query.show_screenshots_only and not looks_like_screenshot(asset):
            return False
        if query.show_faces_only and not has_face(asset):
            return False
        if query.show_documents_only and not has_document(asset):
            return False
        if smart_album is not None and not evaluate_smart_album(smart_album, asset):
            return False
        if query.search_query:
            return self._text_match(asset, query)
        return True

    def _text_match(self, asset: Asset, query: Query) -> bool:
        if SearchMode(query.search_mode) == SearchMode.KEYWORD:
            return keyword_match(asset, query.search_query)
        if asset.embedding is None:
            return False
        return self.matcher.matches(asset.embedding, query.search_query)
