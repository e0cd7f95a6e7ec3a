"""Tests for the task ledger: ordering, dependencies, retries, policy, cancel."""

from __future__ import annotations

import threading

import pytest

from photolib.events import TaskStateChanged
from photolib.exceptions import (
    ConflictError,
    InvalidError,
    NotFoundError,
    PolicyRejectedError,
)
from photolib.models import (
    AIProvider,
    AITag,
    STANDARD_TASK_KINDS,
    TaskKind,
    TaskStatus,
)
from photolib.tasks.outcomes import (
    AITagResult,
    BookmarkResolveResult,
    CompletionReport,
    ExifResult,
    Failure,
    FullHashResult,
    QuickHashResult,
    ThumbnailResult,
)
from photolib.tasks.policy import RetryPolicy

from conftest import finish_thumbnail, task_of


@pytest.fixture
def ledger(library):
    return library.ledger


def _claim_kind(ledger, asset_id, kind):
    task = [t for t in ledger.tasks_for(asset_id) if t.kind == kind][-1]
    return ledger.claim(task.id)


class TestEnqueue:
    def test_standard_set_in_fixed_order(self, ledger, imported):
        tasks = ledger.tasks_for(imported)
        assert [t.kind for t in tasks] == list(STANDARD_TASK_KINDS)
        assert all(t.status == TaskStatus.PENDING for t in tasks)
        assert [t.sequence for t in tasks] == sorted(t.sequence for t in tasks)

    def test_ai_tasks_carry_provider(self, ledger, imported):
        providers = {t.kind: t.provider for t in ledger.tasks_for(imported)}
        assert providers[TaskKind.AI_TAGGING] is AIProvider.OPENAI
        assert providers[TaskKind.EMBEDDINGS] is AIProvider.OPENAI
        assert providers[TaskKind.EXIF] is None

    def test_faces_only_when_enabled(self, library, files):
        files.add("/f.jpg")
        library.ledger.faces_enabled = True
        asset_id = library.import_paths(["/f.jpg"]).imported[0]
        assert library.ledger.tasks_for(asset_id)[-1].kind == TaskKind.FACES

    def test_second_active_task_of_same_kind_conflicts(self, ledger, imported):
        with pytest.raises(ConflictError):
            ledger.enqueue(imported, TaskKind.EXIF)

    def test_unknown_asset(self, ledger):
        with pytest.raises(NotFoundError):
            ledger.enqueue("ghost", TaskKind.EXIF)

    def test_events_published(self, library, files):
        received = []
        library.subscribe(received.append)
        files.add("/e.jpg")
        asset_id = library.import_paths(["/e.jpg"]).imported[0]
        task_events = [e for e in received if isinstance(e, TaskStateChanged)]
        assert len(task_events) == len(STANDARD_TASK_KINDS)
        assert all(e.asset_id == asset_id and e.status == TaskStatus.PENDING for e in task_events)


class TestDependencies:
    def test_pending_skips_blocked_kinds(self, ledger, imported):
        kinds = [t.kind for t in ledger.pending()]
        assert kinds == [
            TaskKind.BOOKMARK_RESOLVE,
            TaskKind.QUICK_HASH,
            TaskKind.EXIF,
            TaskKind.THUMBNAIL,
        ]

    def test_claiming_blocked_task_conflicts(self, ledger, imported):
        with pytest.raises(ConflictError):
            _claim_kind(ledger, imported, TaskKind.FULL_HASH)

    def test_full_hash_unblocked_by_quick_hash(self, ledger, imported):
        task = _claim_kind(ledger, imported, TaskKind.QUICK_HASH)
        ledger.complete(task.id, QuickHashResult("abcd"))
        assert TaskKind.FULL_HASH in {t.kind for t in ledger.pending()}

    def test_claim_next_filters_kinds(self, ledger, imported):
        task = ledger.claim_next({TaskKind.EXIF, TaskKind.FULL_HASH})
        assert task.kind == TaskKind.EXIF
        assert task.status == TaskStatus.RUNNING
        assert ledger.claim_next({TaskKind.AI_TAGGING}) is None


class TestComplete:
    def test_outcomes_apply_to_asset(self, library, ledger, imported):
        for kind, outcome in [
            (TaskKind.BOOKMARK_RESOLVE, BookmarkResolveResult("/moved/x.jpg")),
            (TaskKind.QUICK_HASH, QuickHashResult("q1")),
            (TaskKind.EXIF, ExifResult(camera="X100V", orientation="landscape")),
            (TaskKind.THUMBNAIL, ThumbnailResult("thumb-1")),
            (TaskKind.FULL_HASH, FullHashResult("f1")),
        ]:
            task = _claim_kind(ledger, imported, kind)
            assert ledger.complete(task.id, outcome).status == TaskStatus.COMPLETED

        asset = library.get_asset(imported)
        assert asset.resolved_path == "/moved/x.jpg"
        assert asset.quick_hash == "q1"
        assert asset.camera == "X100V"
        assert asset.thumbnail_ref == "thumb-1"
        assert asset.full_hash == "f1"
        library.check_invariants()

    def test_ai_tagging_clears_needs_ai(self, library, ledger, imported):
        finish_thumbnail(library, imported)
        task = _claim_kind(ledger, imported, TaskKind.AI_TAGGING)
        ledger.complete(task.id, AITagResult(AITag(AIProvider.OPENAI, ("cat",))))

        asset = library.get_asset(imported)
        assert not asset.needs_ai_tags
        assert asset.ai_tags[0].labels == ("cat",)
        library.check_invariants()

    def test_mismatched_outcome_rejected(self, ledger, imported):
        task = _claim_kind(ledger, imported, TaskKind.EXIF)
        with pytest.raises(InvalidError):
            ledger.complete(task.id, QuickHashResult("nope"))
        assert ledger.get(task.id).status == TaskStatus.RUNNING

    def test_double_completion_conflicts(self, ledger, imported):
        task = _claim_kind(ledger, imported, TaskKind.EXIF)
        ledger.complete(task.id, ExifResult())
        with pytest.raises(ConflictError):
            ledger.complete(task.id, ExifResult())

    def test_double_claim_conflicts(self, ledger, imported):
        task = _claim_kind(ledger, imported, TaskKind.EXIF)
        with pytest.raises(ConflictError):
            ledger.claim(task.id)


class TestRetryPolicy:
    def test_backoff_is_exponential_and_capped(self):
        policy = RetryPolicy(base_delay=1.0, max_delay=5.0)
        assert [policy.backoff(n).total_seconds() for n in (1, 2, 3, 4)] == [1, 2, 4, 5]

    def test_retryable_failure_returns_to_pending_after_backoff(self, ledger, clock, imported):
        task = _claim_kind(ledger, imported, TaskKind.QUICK_HASH)
        retried = ledger.fail(task.id, "disk busy")

        assert retried.status == TaskStatus.PENDING
        assert retried.attempts == 1
        assert retried.error_description == "disk busy"
        assert task.id not in {t.id for t in ledger.pending()}

        clock.advance(1)
        assert task.id in {t.id for t in ledger.pending()}

    def test_exhausted_retries_are_terminal(self, ledger, clock, imported):
        task_id = _claim_kind(ledger, imported, TaskKind.EXIF).id
        ledger.fail(task_id, "corrupt")
        clock.advance(60)
        ledger.claim(task_id)
        final = ledger.fail(task_id, "corrupt")
        assert final.status == TaskStatus.FAILED
        assert final.attempts == 1

    def test_ai_failures_are_not_retried(self, library, ledger, imported):
        finish_thumbnail(library, imported)
        task = _claim_kind(ledger, imported, TaskKind.AI_TAGGING)
        assert ledger.fail(task.id, "HTTP 500").status == TaskStatus.FAILED

    def test_non_retryable_failure_skips_retries(self, ledger, imported):
        task = _claim_kind(ledger, imported, TaskKind.BOOKMARK_RESOLVE)
        failed = ledger.report(CompletionReport(task.id, Failure("gone", retryable=False)))
        assert failed.status == TaskStatus.FAILED

    def test_terminal_failure_fails_dependents(self, library, ledger, imported):
        task = _claim_kind(ledger, imported, TaskKind.THUMBNAIL)
        ledger.fail(task.id, "decoder crashed", retryable=False)

        for kind in (TaskKind.AI_TAGGING, TaskKind.EMBEDDINGS):
            dependent = task_of(library, imported, kind)
            assert dependent.status == TaskStatus.FAILED
            assert dependent.error_description == "dependency failed: thumbnail"
        assert task_of(library, imported, TaskKind.FULL_HASH).status == TaskStatus.PENDING

    def test_user_retry_requeues(self, ledger, imported):
        task = _claim_kind(ledger, imported, TaskKind.BOOKMARK_RESOLVE)
        ledger.fail(task.id, "gone", retryable=False)
        requeued = ledger.retry_task(task.id)
        assert requeued.status == TaskStatus.PENDING
        assert requeued.attempts == 0
        assert requeued.error_description is None

        with pytest.raises(ConflictError):
            ledger.retry_task(task.id)

    def test_user_retry_requeues_dependency_failures(self, library, ledger, imported):
        thumbnail = _claim_kind(ledger, imported, TaskKind.THUMBNAIL)
        ledger.fail(thumbnail.id, "decoder crashed", retryable=False)
        ai = task_of(library, imported, TaskKind.AI_TAGGING)
        assert ai.status == TaskStatus.FAILED

        ledger.retry_task(thumbnail.id)
        for kind in (TaskKind.AI_TAGGING, TaskKind.EMBEDDINGS):
            dependent = task_of(library, imported, kind)
            assert dependent.status == TaskStatus.PENDING
            assert dependent.error_description is None
        assert ledger.active_task(imported, TaskKind.AI_TAGGING).id == ai.id

        finish_thumbnail(library, imported)
        tagging = _claim_kind(ledger, imported, TaskKind.AI_TAGGING)
        ledger.complete(tagging.id, AITagResult(AITag(AIProvider.OPENAI, ("dog",))))
        assert not library.get_asset(imported).needs_ai_tags
        library.check_invariants()

    def test_user_retry_leaves_own_failures_alone(self, library, ledger, imported):
        finish_thumbnail(library, imported)
        embeddings = _claim_kind(ledger, imported, TaskKind.EMBEDDINGS)
        ledger.fail(embeddings.id, "HTTP 500")

        rethumb = ledger.enqueue(imported, TaskKind.THUMBNAIL)
        ledger.claim(rethumb.id)
        ledger.fail(rethumb.id, "decoder crashed", retryable=False)
        assert task_of(library, imported, TaskKind.AI_TAGGING).status == TaskStatus.FAILED

        ledger.retry_task(rethumb.id)
        assert task_of(library, imported, TaskKind.AI_TAGGING).status == TaskStatus.PENDING
        assert ledger.get(embeddings.id).status == TaskStatus.FAILED
        assert ledger.get(embeddings.id).error_description == "HTTP 500"

    def test_expire_overdue(self, ledger, clock, imported):
        task = _claim_kind(ledger, imported, TaskKind.THUMBNAIL)
        clock.advance(5)
        assert ledger.expire_overdue() == []
        clock.advance(6)
        assert ledger.expire_overdue() == [task.id]

        expired = ledger.get(task.id)
        assert expired.status == TaskStatus.PENDING
        assert expired.error_description == "timeout"


class TestLocalOnlyPolicy:
    def test_cloud_ai_held_pending(self, library, ledger, imported):
        finish_thumbnail(library, imported)
        library.set_local_only_mode(True)

        task = task_of(library, imported, TaskKind.AI_TAGGING)
        assert task.id not in {t.id for t in ledger.pending()}
        with pytest.raises(PolicyRejectedError):
            ledger.claim(task.id)
        assert ledger.get(task.id).status == TaskStatus.PENDING

    def test_local_providers_still_dispatch(self, library, ledger, files):
        library.index.set_ai_provider(AIProvider.LOCAL_CLIP)
        library.set_local_only_mode(True)
        files.add("/l.jpg")
        asset_id = library.import_paths(["/l.jpg"]).imported[0]
        finish_thumbnail(library, asset_id)

        kinds = {t.kind for t in ledger.pending() if t.asset_id == asset_id}
        assert {TaskKind.AI_TAGGING, TaskKind.EMBEDDINGS} <= kinds

    def test_pending_reads_policy_under_the_writer_lock(self, ledger, imported, monkeypatch):
        blocked_reason = ledger._blocked_reason
        locked = []

        def held_elsewhere():
            result = []

            def try_lock():
                acquired = ledger.lock.acquire(blocking=False)
                if acquired:
                    ledger.lock.release()
                result.append(acquired)

            thread = threading.Thread(target=try_lock)
            thread.start()
            thread.join()
            return not result[0]

        def checked(task):
            locked.append(held_elsewhere())
            return blocked_reason(task)

        monkeypatch.setattr(ledger, "_blocked_reason", checked)
        assert list(ledger.pending())
        assert locked and all(locked)

    def test_local_only_applies_mid_iteration(self, library, ledger, files):
        for name in ("/p1.jpg", "/p2.jpg"):
            files.add(name)
            finish_thumbnail(library, library.import_paths([name]).imported[0])

        pending = ledger.pending([TaskKind.AI_TAGGING])
        assert next(pending).kind == TaskKind.AI_TAGGING
        library.set_local_only_mode(True)
        assert list(pending) == []


class TestCancel:
    def test_cancel_fails_non_terminal_tasks(self, ledger, imported):
        running = _claim_kind(ledger, imported, TaskKind.EXIF)
        done = _claim_kind(ledger, imported, TaskKind.QUICK_HASH)
        ledger.complete(done.id, QuickHashResult("h"))

        cancelled = ledger.cancel(imported)
        assert running.id in cancelled
        assert done.id not in cancelled
        assert all(
            t.error_description == "cancelled"
            for t in ledger.tasks_for(imported)
            if t.id in cancelled
        )
        assert ledger.cancel(imported) == []

    def test_late_completion_after_cancel_conflicts(self, ledger, imported):
        task = _claim_kind(ledger, imported, TaskKind.EXIF)
        ledger.cancel(imported)
        with pytest.raises(ConflictError):
            ledger.complete(task.id, ExifResult(camera="late"))


class TestRestore:
    def test_restore_rebuilds_active_index(self, library, ledger, imported):
        tasks = ledger.all_tasks()
        ledger.restore(tasks)
        with pytest.raises(ConflictError):
            ledger.enqueue(imported, TaskKind.EXIF)
        assert ledger.counts()[TaskStatus.PENDING] == len(STANDARD_TASK_KINDS)

    def test_requeue_interrupted(self, ledger, imported):
        task = _claim_kind(ledger, imported, TaskKind.EXIF)
        assert ledger.requeue_interrupted() == [task.id]
        requeued = ledger.get(task.id)
        assert requeued.status == TaskStatus.PENDING
        assert requeued.attempts == 1
        assert requeued.error_description == "interrupted"

    def test_repeated_interruptions_use_up_retries(self, ledger, clock, imported):
        task = _claim_kind(ledger, imported, TaskKind.EXIF)
        ledger.requeue_interrupted()
        clock.advance(120)
        ledger.claim(task.id)

        ledger.requeue_interrupted()
        assert ledger.get(task.id).status == TaskStatus.FAILED
        assert ledger.active_task(imported, TaskKind.EXIF) is None
