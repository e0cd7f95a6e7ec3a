"""Randomised mutation sequences checked against the library invariants.

Each seed drives a different interleaving of imports, edits, album
changes, deletions and task transitions; ``check_invariants`` runs
after every step.
"""

from __future__ import annotations

import dataclasses
import random

import pytest

from photolib import commands
from photolib.exceptions import PhotoLibError
from photolib.models import (
    AITag,
    Dimensions,
    Embedding,
    SmartAlbum,
    TaskKind,
    new_asset,
)
from photolib.persistence import dump_snapshot, load_snapshot
from photolib.query import Query
from photolib.rules import evaluate_smart_album
from photolib.tasks.outcomes import (
    AITagResult,
    BookmarkResolveResult,
    EmbeddingResult,
    ExifResult,
    FullHashResult,
    QuickHashResult,
    ThumbnailResult,
)
from photolib.tasks.policy import RetryPolicy

from conftest import EPOCH

LABELS = ["cat", "face", "document", "beach", "sky"]

OUTCOMES = {
    TaskKind.BOOKMARK_RESOLVE: lambda task, rng: BookmarkResolveResult(f"/r/{task.asset_id}.jpg"),
    TaskKind.QUICK_HASH: lambda task, rng: QuickHashResult(f"{rng.getrandbits(64):016x}"),
    TaskKind.EXIF: lambda task, rng: ExifResult(
        exif_date=EPOCH, camera="Cam", dimensions=Dimensions(10, 20)
    ),
    TaskKind.THUMBNAIL: lambda task, rng: ThumbnailResult(f"thumb-{task.id}"),
    TaskKind.FULL_HASH: lambda task, rng: FullHashResult(f"{rng.getrandbits(128):032x}"),
    TaskKind.AI_TAGGING: lambda task, rng: AITagResult(
        AITag(task.provider, tuple(rng.sample(LABELS, 2)), "caption", 0.5)
    ),
    TaskKind.EMBEDDINGS: lambda task, rng: EmbeddingResult(
        Embedding(task.provider, (rng.random(), rng.random()))
    ),
}


class _Driver:
    def __init__(self, library, files, clock, seed: int) -> None:
        self.library = library
        self.files = files
        self.clock = clock
        self.rng = random.Random(seed)
        self.counter = 0

    def asset_ids(self) -> list[str]:
        return [a.id for a in self.library.index.assets()]

    def pick_asset(self):
        ids = self.asset_ids()
        return self.rng.choice(ids) if ids else None

    def step(self) -> None:
        action = self.rng.choice(
            [
                self.import_file,
                self.import_file,
                self.edit,
                self.edit,
                self.album,
                self.delete,
                self.work,
                self.work,
                self.work,
                self.toggle_local_only,
                self.scan,
            ]
        )
        try:
            action()
        except PhotoLibError:
            pass

    def import_file(self) -> None:
        self.counter += 1
        path = self.files.add(f"/lib/img_{self.counter}.jpg", bytes([self.counter % 256]) * 8)
        self.library.import_paths([path])

    def edit(self) -> None:
        asset_id = self.pick_asset()
        if asset_id is None:
            return
        command = self.rng.choice(
            [
                commands.UpdateRating(asset_id, self.rng.randint(-3, 9)),
                commands.SetFlagged(asset_id, self.rng.random() < 0.5),
                commands.AddKeyword(asset_id, self.rng.choice(["a", "b", "A", "c"])),
                commands.RemoveKeyword(asset_id, self.rng.choice(["a", "b", "zz"])),
            ]
        )
        self.library.execute(command)

    def album(self) -> None:
        ids = self.asset_ids()
        snap = self.library.snapshot()
        members = tuple(self.rng.sample(ids, min(len(ids), 2)))
        if snap.albums and self.rng.random() < 0.6:
            album = self.rng.choice(snap.albums)
            self.library.execute(commands.AddToAlbum(album.id, members))
        else:
            self.library.execute(commands.CreateAlbum(f"album-{self.counter}", members))

    def delete(self) -> None:
        asset_id = self.pick_asset()
        if asset_id is not None:
            self.library.execute(commands.DeleteAsset(asset_id))

    def work(self) -> None:
        ledger = self.library.ledger
        self.clock.advance(self.rng.choice([0, 1, 30]))
        task = ledger.claim_next()
        if task is None:
            return
        roll = self.rng.random()
        if roll < 0.7:
            ledger.complete(task.id, OUTCOMES[task.kind](task, self.rng))
        elif roll < 0.9:
            ledger.fail(task.id, "flaky", retryable=self.rng.random() < 0.8)
        # otherwise the task stays running

    def toggle_local_only(self) -> None:
        self.library.execute(
            commands.SetLocalOnlyMode(not self.library.index.local_only_mode)
        )

    def scan(self) -> None:
        if self.counter and self.rng.random() < 0.5:
            self.files.remove(f"/lib/img_{self.rng.randint(1, self.counter)}.jpg")
        self.library.scan_liveness()


@pytest.fixture
def driver_for(library, files, clock):
    library.ledger.policy = RetryPolicy(base_delay=1.0, max_delay=4.0)

    def _make(seed: int) -> _Driver:
        return _Driver(library, files, clock, seed)

    return _make


@pytest.mark.parametrize("seed", range(12))
def test_invariants_hold_after_every_step(driver_for, seed):
    driver = driver_for(seed)
    last_sequence = -1
    for _ in range(80):
        driver.step()
        driver.library.check_invariants()
        sequence = driver.library.snapshot().sequence
        assert sequence >= last_sequence
        last_sequence = sequence


@pytest.mark.parametrize("seed", range(4))
def test_snapshot_round_trip_after_random_history(driver_for, seed):
    driver = driver_for(seed)
    for _ in range(60):
        driver.step()
    text = dump_snapshot(driver.library.snapshot())
    assert dump_snapshot(load_snapshot(text)) == text


FLAGS = [
    "show_missing_only",
    "show_needs_ai",
    "show_faces_only",
    "show_documents_only",
    "show_screenshots_only",
]


@pytest.mark.parametrize("seed", range(4))
@pytest.mark.parametrize("flag", FLAGS)
def test_query_is_monotone_in_each_flag(driver_for, seed, flag):
    driver = driver_for(seed)
    for _ in range(60):
        driver.step()
    rng = random.Random(seed)
    for _ in range(10):
        base = Query(**{f: rng.random() < 0.3 for f in FLAGS if f != flag})
        base = dataclasses.replace(base, search_query=rng.choice(["", "img", "cat"]))
        loose = set(driver.library.query(dataclasses.replace(base, **{flag: False})))
        strict = set(driver.library.query(dataclasses.replace(base, **{flag: True})))
        assert strict <= loose


def test_zero_rule_smart_album_matches_everything(driver_for):
    driver = driver_for(99)
    for _ in range(40):
        driver.step()
    empty = SmartAlbum(id="s", name="All", rules=())
    assert all(evaluate_smart_album(empty, a) for a in driver.library.index.assets())

    smart = driver.library.execute(commands.CreateSmartAlbum("All"))
    assert driver.library.query(selected_smart_album=smart.id) == driver.asset_ids()


def test_rating_clamped_for_inserted_records(library):
    asset = dataclasses.replace(new_asset("x.jpg", "jpg", 1, "f", EPOCH), rating=11)
    assert library.index.insert(asset).rating == 5
    library.check_invariants()
