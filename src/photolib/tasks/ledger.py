"""Durable record of enrichment tasks and their transitions.

The ledger shares the index's writer lock, so a task transition and
the index mutation that applies its outcome commit together, and
events from both follow one sequence. Transition legality is checked
by ``TaskLifecycleSM`` before any state is written.
"""

from __future__ import annotations

import dataclasses
import logging
from collections import Counter
from datetime import datetime
from typing import Iterable, Iterator, Optional

from photolib.clock import Clock, SystemClock
from photolib.constants import (
    CANCELLED_ERROR,
    DEPENDENCY_FAILED_PREFIX,
    INTERRUPTED_ERROR,
    TIMEOUT_ERROR,
)
from photolib.events import TaskStateChanged
from photolib.exceptions import (
    ConflictError,
    InvalidError,
    NotFoundError,
    PolicyRejectedError,
)
from photolib.index import AssetIndex
from photolib.models import (
    AIProvider,
    STANDARD_TASK_KINDS,
    TaskKind,
    TaskState,
    TaskStatus,
    new_id,
)
from photolib.tasks.fsm import next_status
from photolib.tasks.outcomes import (
    OUTCOME_KINDS,
    AITagResult,
    BookmarkResolveResult,
    CompletionReport,
    EmbeddingResult,
    ExifResult,
    FacesResult,
    Failure,
    FullHashResult,
    QuickHashResult,
    SuccessOutcome,
    ThumbnailResult,
)
from photolib.tasks.policy import DEPENDENCIES, RetryPolicy, dependents_of

logger = logging.getLogger(__name__)


class TaskLedger:
    """Enqueue, claim, complete and fail per-asset enrichment tasks.

    Usage::

        ledger = TaskLedger(index)
        ledger.enqueue_standard(asset_id)
        task = ledger.claim_next({TaskKind.QUICK_HASH})
        ledger.complete(task.id, QuickHashResult("ab12..."))
    """

    def __init__(
        self,
        index: AssetIndex,
        clock: Clock | None = None,
        policy: RetryPolicy | None = None,
    ) -> None:
        self.index = index
        self.lock = index.lock
        self.policy = policy or RetryPolicy()
        self.faces_enabled = False
        self._clock = clock or SystemClock()
        # insertion order is enqueue order
        self._tasks: dict[str, TaskState] = {}
        self._active: dict[tuple[str, TaskKind], str] = {}
        self._completed: set[tuple[str, TaskKind]] = set()
        self._next_sequence = 0

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get(self, task_id: str) -> TaskState:
        try:
            return self._tasks[task_id]
        except KeyError:
            raise NotFoundError("task", task_id) from None

    def all_tasks(self) -> tuple[TaskState, ...]:
        with self.lock:
            return tuple(self._tasks.values())

    def tasks_for(self, asset_id: str) -> list[TaskState]:
        with self.lock:
            return [t for t in self._tasks.values() if t.asset_id == asset_id]

    def active_task(self, asset_id: str, kind: TaskKind) -> Optional[TaskState]:
        """The non-terminal task for (asset, kind), if any."""
        with self.lock:
            task_id = self._active.get((asset_id, kind))
            return self._tasks[task_id] if task_id else None

    def has_completed(self, asset_id: str, kind: TaskKind) -> bool:
        return (asset_id, kind) in self._completed

    def counts(self) -> dict[TaskStatus, int]:
        """Number of tasks per status (every status present, possibly 0)."""
        with self.lock:
            counter = Counter(t.status for t in self._tasks.values())
        return {status: counter.get(status, 0) for status in TaskStatus}

    def pending(self, kinds: Iterable[TaskKind] | None = None) -> Iterator[TaskState]:
        """Yield dispatchable pending tasks in enqueue order.

        Tasks waiting on a dependency, inside a retry backoff window, or
        blocked by local-only mode are skipped. The generator reads a
        copy of the task list taken when iteration starts.
        """
        wanted = set(kinds) if kinds is not None else None
        with self.lock:
            tasks = list(self._tasks.values())
        for task in tasks:
            if task.status != TaskStatus.PENDING:
                continue
            if wanted is not None and task.kind not in wanted:
                continue
            with self.lock:
                blocked = self._blocked_reason(task)
            if blocked is None:
                yield task

    def next_retry_at(
        self, kinds: Iterable[TaskKind] | None = None
    ) -> Optional[datetime]:
        """Earliest future backoff deadline among pending tasks of *kinds*."""
        wanted = set(kinds) if kinds is not None else None
        now = self._clock.now()
        with self.lock:
            deadlines = [
                t.not_before
                for t in self._tasks.values()
                if t.status == TaskStatus.PENDING
                and t.not_before is not None
                and t.not_before > now
                and (wanted is None or t.kind in wanted)
            ]
        return min(deadlines) if deadlines else None

    # ------------------------------------------------------------------
    # Enqueue
    # ------------------------------------------------------------------

    def enqueue(
        self,
        asset_id: str,
        kind: TaskKind | str,
        provider: AIProvider | str | None = None,
    ) -> TaskState:
        """Create a pending task of *kind* for *asset_id*.

        AI kinds take *provider*, defaulting to the library's current
        provider.

        Raises:
            NotFoundError: If the asset does not exist.
            ConflictError: If a non-terminal task of this kind exists.
        """
        kind = TaskKind(kind)
        with self.lock:
            self.index.get(asset_id)
            existing = self._active.get((asset_id, kind))
            if existing is not None:
                raise ConflictError(
                    existing, self._tasks[existing].status.value, f"enqueue {kind.value}"
                )
            if kind.uses_provider:
                provider = AIProvider(provider or self.index.ai_provider)
            else:
                provider = None

            task = TaskState(
                id=new_id(),
                asset_id=asset_id,
                kind=kind,
                status=TaskStatus.PENDING,
                last_updated=self._clock.now(),
                provider=provider,
                sequence=self._next_sequence,
            )
            self._next_sequence += 1
            self._active[(asset_id, kind)] = task.id
            self._store(task)
            logger.debug("Enqueued %s for asset %s", kind.value, asset_id)
            return task

    def enqueue_standard(
        self, asset_id: str, include_faces: bool | None = None
    ) -> list[TaskState]:
        """Enqueue the standard job set in the fixed kind order.

        ``faces`` is appended when *include_faces* is true, or when it is
        None and a faces-capable worker has been registered. Kinds that
        already have a non-terminal task are skipped.
        """
        if include_faces is None:
            include_faces = self.faces_enabled
        kinds = list(STANDARD_TASK_KINDS)
        if include_faces:
            kinds.append(TaskKind.FACES)
        with self.lock:
            return [
                self.enqueue(asset_id, kind)
                for kind in kinds
                if (asset_id, kind) not in self._active
            ]

    # ------------------------------------------------------------------
    # Claim / complete / fail
    # ------------------------------------------------------------------

    def claim(self, task_id: str) -> TaskState:
        """Move a pending task to running.

        Raises:
            ConflictError: Not pending, or still waiting on a dependency
                or a retry backoff.
            PolicyRejectedError: Cloud AI task while local-only mode is on;
                the task stays pending.
        """
        with self.lock:
            task = self.get(task_id)
            if task.status == TaskStatus.PENDING:
                if self._policy_blocks(task):
                    raise PolicyRejectedError(task_id, task.provider.value)
                reason = self._blocked_reason(task)
                if reason is not None:
                    raise ConflictError(task_id, f"pending ({reason})", "claim_task")
            status = next_status(task_id, task.status, "claim_task")
            now = self._clock.now()
            return self._store(
                dataclasses.replace(
                    task, status=status, last_updated=now, started_at=now
                )
            )

    def claim_next(self, kinds: Iterable[TaskKind] | None = None) -> Optional[TaskState]:
        """Claim the first dispatchable pending task among *kinds*."""
        with self.lock:
            for task in self.pending(kinds):
                return self.claim(task.id)
        return None

    def complete(self, task_id: str, outcome: SuccessOutcome) -> TaskState:
        """Mark a running task completed and apply *outcome* to its asset.

        Raises:
            ConflictError: The task is not running (late or duplicate report).
            InvalidError: *outcome* does not belong to the task's kind.
            NotFoundError: The asset vanished; the task is failed first.
        """
        with self.lock:
            task = self.get(task_id)
            status = next_status(task_id, task.status, "complete_task")
            expected = OUTCOME_KINDS.get(type(outcome))
            if expected != task.kind:
                raise InvalidError(
                    f"Outcome {type(outcome).__name__} does not match "
                    f"task kind {task.kind.value}"
                )
            try:
                self._apply_outcome(task.asset_id, outcome)
            except NotFoundError:
                self._finish(
                    task, next_status(task_id, task.status, "fail_task"), "asset deleted"
                )
                raise
            logger.debug("Completed %s for asset %s", task.kind.value, task.asset_id)
            return self._finish(task, status, None)

    def fail(self, task_id: str, error: str, retryable: bool = True) -> TaskState:
        """Record a failed attempt of a running task.

        A retryable failure with retries left goes back to pending after
        the policy's backoff; otherwise the failure is terminal and any
        pending dependents fail with ``dependency failed: <kind>``.
        """
        with self.lock:
            task = self.get(task_id)
            status = next_status(task_id, task.status, "fail_task")
            now = self._clock.now()
            failed = self._store(
                dataclasses.replace(
                    task, status=status, last_updated=now, error_description=error
                )
            )
            if retryable and task.attempts < self.policy.max_retries(task.kind):
                attempt = task.attempts + 1
                logger.warning(
                    "Task %s (%s) failed: %s; retry %d/%d",
                    task_id, task.kind.value, error,
                    attempt, self.policy.max_retries(task.kind),
                )
                return self._store(
                    dataclasses.replace(
                        failed,
                        status=next_status(task_id, failed.status, "retry_task"),
                        attempts=attempt,
                        not_before=now + self.policy.backoff(attempt),
                        started_at=None,
                    )
                )

            logger.warning("Task %s (%s) failed: %s", task_id, task.kind.value, error)
            self._release(failed)
            self._fail_dependents(failed)
            return failed

    def report(self, report: CompletionReport) -> TaskState:
        """Apply a worker's report: ``Failure`` fails, anything else completes."""
        if isinstance(report.outcome, Failure):
            return self.fail(
                report.task_id, report.outcome.error, report.outcome.retryable
            )
        return self.complete(report.task_id, report.outcome)

    def cancel(self, asset_id: str) -> list[str]:
        """Fail every non-terminal task of *asset_id* with ``cancelled``.

        Idempotent: returns the ids cancelled by this call.
        """
        with self.lock:
            cancelled = [
                task_id
                for (owner, _), task_id in list(self._active.items())
                if owner == asset_id
            ]
            for task_id in cancelled:
                self._abort(self._tasks[task_id], CANCELLED_ERROR)
            if cancelled:
                logger.info("Cancelled %d task(s) for asset %s", len(cancelled), asset_id)
            return cancelled

    def expire_overdue(self) -> list[str]:
        """Fail running tasks that exceeded their kind timeout."""
        now = self._clock.now()
        with self.lock:
            overdue = [
                t.id
                for t in self._tasks.values()
                if t.status == TaskStatus.RUNNING
                and t.started_at is not None
                and (now - t.started_at).total_seconds() > self.policy.timeout(t.kind)
            ]
            for task_id in overdue:
                self.fail(task_id, TIMEOUT_ERROR, retryable=True)
            return overdue

    def retry_task(self, task_id: str) -> TaskState:
        """User-initiated requeue of a failed task; resets the retry count.

        Dependents that were failed only because this task failed are
        requeued along with it.

        Raises:
            ConflictError: The task is not failed, or another task of the
                same kind is already active for the asset.
            NotFoundError: The asset no longer exists.
        """
        with self.lock:
            task = self.get(task_id)
            self.index.get(task.asset_id)
            requeued = self._requeue(task, attempts=0)
            self._requeue_dependents(requeued)
            return requeued

    # ------------------------------------------------------------------
    # Restore
    # ------------------------------------------------------------------

    def restore(self, tasks: Iterable[TaskState]) -> None:
        """Replace all tasks (used when loading a saved library)."""
        with self.lock:
            self._tasks = {}
            self._active = {}
            self._completed = set()
            for task in tasks:
                self._tasks[task.id] = task
                key = (task.asset_id, task.kind)
                if task.status == TaskStatus.COMPLETED:
                    self._completed.add(key)
                elif not task.status.is_terminal:
                    self._active[key] = task.id
            self._next_sequence = max((t.sequence for t in self._tasks.values()), default=-1) + 1

    def requeue_interrupted(self) -> list[str]:
        """Fail tasks left running by a previous process as retryable.

        An interruption counts as an attempt: the task goes back to
        pending while it has retries left, so a task that keeps taking
        the process down eventually fails for good.
        """
        with self.lock:
            interrupted = [
                t for t in self._tasks.values() if t.status == TaskStatus.RUNNING
            ]
            for task in interrupted:
                self.fail(task.id, INTERRUPTED_ERROR, retryable=True)
            if interrupted:
                logger.info("Requeued %d interrupted task(s)", len(interrupted))
            return [t.id for t in interrupted]

    # ------------------------------------------------------------------
    # Internals (caller holds the lock)
    # ------------------------------------------------------------------

    def _policy_blocks(self, task: TaskState) -> bool:
        return (
            task.provider is not None
            and task.provider.is_cloud
            and self.index.local_only_mode
        )

    def _blocked_reason(self, task: TaskState) -> Optional[str]:
        if self._policy_blocks(task):
            return "local-only mode"
        dependency = DEPENDENCIES.get(task.kind)
        if dependency is not None and (task.asset_id, dependency) not in self._completed:
            return f"waiting for {dependency.value}"
        if task.not_before is not None and self._clock.now() < task.not_before:
            return "retry backoff"
        return None

    def _apply_outcome(self, asset_id: str, outcome: SuccessOutcome) -> None:
        if isinstance(outcome, BookmarkResolveResult):
            self.index.apply_resolved_path(asset_id, outcome.path)
        elif isinstance(outcome, QuickHashResult):
            self.index.update_field(asset_id, "quick_hash", outcome.hash)
        elif isinstance(outcome, FullHashResult):
            self.index.update_field(asset_id, "full_hash", outcome.hash)
        elif isinstance(outcome, ExifResult):
            self.index.update_field(asset_id, "exif", outcome.to_exif_data())
        elif isinstance(outcome, ThumbnailResult):
            self.index.update_field(asset_id, "thumbnail_ref", outcome.handle)
        elif isinstance(outcome, AITagResult):
            self.index._record_ai_tagging(asset_id, outcome.tag)
        elif isinstance(outcome, EmbeddingResult):
            self.index.update_field(asset_id, "embedding", outcome.embedding)
        elif isinstance(outcome, FacesResult):
            self.index.update_field(asset_id, "ai_tags", outcome.tag)

    def _finish(
        self, task: TaskState, status: TaskStatus, error: Optional[str]
    ) -> TaskState:
        finished = self._store(
            dataclasses.replace(
                task,
                status=status,
                last_updated=self._clock.now(),
                error_description=error,
            )
        )
        self._release(finished)
        if status == TaskStatus.COMPLETED:
            self._completed.add((task.asset_id, task.kind))
        return finished

    def _abort(self, task: TaskState, error: str) -> TaskState:
        status = next_status(task.id, task.status, "cancel_task")
        return self._finish(task, status, error)

    def _release(self, task: TaskState) -> None:
        key = (task.asset_id, task.kind)
        if self._active.get(key) == task.id:
            del self._active[key]

    def _fail_dependents(self, task: TaskState) -> None:
        for kind in dependents_of(task.kind):
            task_id = self._active.get((task.asset_id, kind))
            if task_id is None or self._tasks[task_id].status != TaskStatus.PENDING:
                continue
            dependent = self._abort(
                self._tasks[task_id], DEPENDENCY_FAILED_PREFIX + task.kind.value
            )
            self._fail_dependents(dependent)

    def _requeue(self, task: TaskState, attempts: int) -> TaskState:
        status = next_status(task.id, task.status, "retry_task")
        key = (task.asset_id, task.kind)
        if key in self._active:
            raise ConflictError(task.id, task.status.value, "retry_task")
        self._active[key] = task.id
        return self._store(
            dataclasses.replace(
                task,
                status=status,
                last_updated=self._clock.now(),
                error_description=None,
                attempts=attempts,
                not_before=None,
                started_at=None,
            )
        )

    def _requeue_dependents(self, task: TaskState) -> None:
        for kind in dependents_of(task.kind):
            if (task.asset_id, kind) in self._active:
                continue
            latest = max(
                (
                    t
                    for t in self._tasks.values()
                    if t.asset_id == task.asset_id and t.kind == kind
                ),
                key=lambda t: t.sequence,
                default=None,
            )
            if (
                latest is None
                or latest.status != TaskStatus.FAILED
                or not (latest.error_description or "").startswith(DEPENDENCY_FAILED_PREFIX)
            ):
                continue
            self._requeue_dependents(self._requeue(latest, attempts=0))

    def _store(self, task: TaskState) -> TaskState:
        self._tasks[task.id] = task
        self.index.commit(TaskStateChanged(task.id, task.asset_id, task.status))
        return task
