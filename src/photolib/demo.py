"""Seed a library with the sample content the desktop app starts with."""

from __future__ import annotations

import dataclasses
import logging
from datetime import timedelta

from photolib.exceptions import PolicyRejectedError
from photolib.library import Library
from photolib.models import (
    AIProvider,
    AITag,
    AssetStatus,
    Dimensions,
    Embedding,
    TaskKind,
    new_asset,
)
from photolib.rules import DateInRange, NeedsAITags
from photolib.tasks.outcomes import AITagResult, ThumbnailResult

logger = logging.getLogger(__name__)


def seed_demo(library: Library) -> list[str]:
    """Insert three sample assets, two albums and two smart albums.

    AI tags on the first two assets arrive through completed
    ``thumbnail`` and ``ai_tagging`` tasks so the library stays
    consistent; the rest of each standard task set stays pending.
    Returns the new asset ids.
    """
    now = library.clock.now()
    index = library.index

    mountain = dataclasses.replace(
        new_asset(
            "IMG_0001.JPG", "jpg", 3_200_000, "Trips", now - timedelta(days=10),
            resolved_path="/Users/you/Pictures/IMG_0001.JPG", quick_hash="a1b2c3d4",
        ),
        exif_date=now - timedelta(days=10),
        camera="iPhone 15 Pro",
        lens="Main",
        orientation="portrait",
        dimensions=Dimensions(4032, 3024),
        rating=4,
        embedding=Embedding(AIProvider.LOCAL_CLIP, (0.1,) * 8),
    )
    cat = dataclasses.replace(
        new_asset(
            "IMG_0002.JPG", "jpg", 2_800_000, "Home", now - timedelta(days=5),
            resolved_path="/Users/you/Pictures/IMG_0002.JPG", quick_hash="z9y8x7w6",
        ),
        exif_date=now - timedelta(days=5),
        camera="iPhone 14",
        lens="Wide",
        orientation="landscape",
        dimensions=Dimensions(3024, 4032),
        rating=5,
        flagged=True,
        embedding=Embedding(AIProvider.OPENAI, (0.2,) * 8),
    )
    screenshot = dataclasses.replace(
        new_asset(
            "Screenshot 2023-12-01.png", "png", 1_200_000, "Screenshots",
            now - timedelta(days=1),
            resolved_path="/Users/you/Pictures/IMG_0003.PNG", quick_hash="m1n2o3p4",
        ),
        orientation="landscape",
        dimensions=Dimensions(2560, 1440),
        status=AssetStatus.MISSING,
        ai_tags=(
            AITag(
                AIProvider.AZURE, ("document", "screenshot"),
                "Screenshot of a presentation", 0.81, now,
            ),
        ),
        embedding=Embedding(AIProvider.LOCAL_CLIP, (0.5,) * 8),
    )

    keywords = {
        mountain.id: ["Travel", "Landscape"],
        cat.id: ["Family", "Cat"],
        screenshot.id: ["Work"],
    }
    with index.lock:
        for asset in (mountain, cat, screenshot):
            index.insert(asset)
            index.set_keywords(asset.id, keywords[asset.id])
            library.ledger.enqueue_standard(asset.id)

        _tag_through_tasks(
            library, mountain.id,
            AITag(AIProvider.APPLE_VISION, ("mountain", "sky"), "A clear mountain view", 0.92, now),
        )
        _tag_through_tasks(
            library, cat.id,
            AITag(AIProvider.OPENAI, ("cat", "indoors"), "A cat sitting on a sofa", 0.88, now),
        )

        index.create_album("Favorites", [mountain.id, cat.id])
        index.create_album("Work", [screenshot.id])
        index.create_smart_album("This Week", [DateInRange(now - timedelta(days=7), now)])
        index.create_smart_album("Needs AI tags", [NeedsAITags(True)])

    logger.info("Seeded demo library with 3 assets")
    return [mountain.id, cat.id, screenshot.id]


def _tag_through_tasks(library: Library, asset_id: str, tag: AITag) -> None:
    ledger = library.ledger
    thumbnail = ledger.active_task(asset_id, TaskKind.THUMBNAIL)
    ai_tagging = ledger.active_task(asset_id, TaskKind.AI_TAGGING)
    if thumbnail is None or ai_tagging is None:
        return
    ledger.claim(thumbnail.id)
    ledger.complete(thumbnail.id, ThumbnailResult(f"demo-thumb-{asset_id}"))
    try:
        ledger.claim(ai_tagging.id)
    except PolicyRejectedError as e:
        logger.info("Leaving demo AI tagging pending: %s", e)
        return
    ledger.complete(ai_tagging.id, AITagResult(tag))
