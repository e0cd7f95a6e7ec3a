"""Tests for records, constructors and pure helpers in photolib.models."""

from __future__ import annotations

import dataclasses

import pytest

from photolib.exceptions import InvalidError
from photolib.models import (
    AIProvider,
    AITag,
    Asset,
    AssetStatus,
    TaskKind,
    TaskStatus,
    asset_from_path,
    clamp_rating,
    has_document,
    has_face,
    looks_like_screenshot,
    new_asset,
)

from conftest import EPOCH


class TestConstructors:
    def test_new_asset_defaults(self):
        asset = new_asset("IMG_0001.JPG", ".JPG", 1200, "Trips", EPOCH)
        assert asset.file_type == "jpg"
        assert asset.file_name == "IMG_0001.JPG"
        assert asset.status == AssetStatus.AVAILABLE
        assert asset.needs_ai_tags is True
        assert asset.keywords == ()
        assert asset.ai_tags == ()
        assert asset.embedding is None
        assert asset.full_hash is None
        assert asset.rating == 0

    def test_ids_are_unique(self):
        a = new_asset("a.jpg", "jpg", 1, "f", EPOCH)
        b = new_asset("a.jpg", "jpg", 1, "f", EPOCH)
        assert a.id != b.id

    def test_asset_from_path_derives_names(self):
        asset = asset_from_path("/Users/you/Pictures/Trips/Beach.HEIC", 42, EPOCH)
        assert asset.file_name == "Beach.HEIC"
        assert asset.file_type == "heic"
        assert asset.folder == "Trips"
        assert asset.resolved_path == "/Users/you/Pictures/Trips/Beach.HEIC"
        assert asset.file_size == 42

    def test_records_are_frozen(self):
        asset = new_asset("a.jpg", "jpg", 1, "f", EPOCH)
        with pytest.raises(dataclasses.FrozenInstanceError):
            asset.rating = 5  # type: ignore[misc]

    def test_effective_date_prefers_exif(self):
        asset = new_asset("a.jpg", "jpg", 1, "f", EPOCH)
        assert asset.effective_date == EPOCH
        later = EPOCH.replace(year=2025)
        assert dataclasses.replace(asset, exif_date=later).effective_date == later


class TestAITag:
    def test_confidence_out_of_range_rejected(self):
        with pytest.raises(InvalidError):
            AITag(AIProvider.OPENAI, ("cat",), confidence=1.5)

    def test_provider_and_labels_coerced(self):
        tag = AITag("localCLIP", ["dog", "park"], "A dog", 0.5)
        assert tag.provider is AIProvider.LOCAL_CLIP
        assert tag.labels == ("dog", "park")


@pytest.mark.parametrize(
    "value,expected", [(-3, 0), (0, 0), (3, 3), (5, 5), (9, 5)]
)
def test_clamp_rating(value, expected):
    assert clamp_rating(value) == expected


def test_provider_cloudness():
    assert {p for p in AIProvider if p.is_cloud} == {
        AIProvider.OPENAI, AIProvider.AZURE, AIProvider.GOOGLE,
    }
    assert AIProvider.APPLE_VISION.display_name == "Apple Vision"


def test_enum_helpers():
    assert TaskKind.AI_TAGGING.uses_provider
    assert not TaskKind.THUMBNAIL.uses_provider
    assert TaskStatus.FAILED.is_terminal
    assert not TaskStatus.RUNNING.is_terminal


class TestLabelHelpers:
    def _tagged(self, *labels: str) -> Asset:
        asset = new_asset("IMG.jpg", "jpg", 1, "f", EPOCH)
        return dataclasses.replace(
            asset, ai_tags=(AITag(AIProvider.APPLE_VISION, labels, "", 0.9),)
        )

    def test_has_face_is_case_insensitive(self):
        assert has_face(self._tagged("Human FACE"))
        assert not has_face(self._tagged("cat"))

    def test_has_document(self):
        assert has_document(self._tagged("document", "text"))
        assert not has_document(self._tagged("mountain"))

    def test_looks_like_screenshot(self):
        asset = new_asset("Screenshot 2023-12-01.png", "png", 1, "f", EPOCH)
        assert looks_like_screenshot(asset)
        assert not looks_like_screenshot(new_asset("IMG.png", "png", 1, "f", EPOCH))
