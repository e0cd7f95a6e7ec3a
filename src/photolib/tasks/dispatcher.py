"""Asyncio dispatcher: claims tasks and runs workers in a bounded pool.

Workers run in threads (``asyncio.to_thread``) under a semaphore and a
per-kind timeout. Their results are queued as ``CompletionReport``s and
applied to the ledger by one writer coroutine, so reports never race
each other.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Iterable, Optional

from photolib.constants import DEFAULT_POOL_SIZE, TIMEOUT_ERROR
from photolib.exceptions import ConflictError, InvalidError, NotFoundError, PhotoLibError
from photolib.models import TaskKind, TaskState, TaskStatus
from photolib.tasks.ledger import TaskLedger
from photolib.tasks.outcomes import ClaimRequest, CompletionReport, Failure, Outcome
from photolib.tasks.workers import CancelToken, Worker

logger = logging.getLogger(__name__)


@dataclass
class DispatchStats:
    """Counters for one ``Dispatcher.run``."""

    claimed: int = 0
    completed: int = 0
    failed: int = 0
    timed_out: int = 0
    discarded: int = 0

    @property
    def summary(self) -> str:
        return (
            f"claimed={self.claimed}, completed={self.completed}, "
            f"failed={self.failed}, timed_out={self.timed_out}, "
            f"discarded={self.discarded}"
        )


class Dispatcher:
    """Drive pending tasks through registered workers.

    Usage::

        dispatcher = Dispatcher(ledger, [thumbnail_worker], pool_size=4)
        stats = await dispatcher.run()
    """

    def __init__(
        self,
        ledger: TaskLedger,
        workers: Iterable[Worker] = (),
        pool_size: int = DEFAULT_POOL_SIZE,
        poll_interval: float = 0.05,
    ) -> None:
        if pool_size < 1:
            raise InvalidError(f"pool_size must be at least 1, got {pool_size}")
        self.ledger = ledger
        self.pool_size = pool_size
        self.poll_interval = poll_interval
        self._workers: dict[TaskKind, Worker] = {}
        self._tokens: dict[str, CancelToken] = {}
        for worker in workers:
            self.register(worker)

    def register(self, worker: Worker) -> None:
        """Route every kind *worker* supports to it (last registration wins)."""
        for kind in worker.kinds_supported():
            self._workers[TaskKind(kind)] = worker

    def supported_kinds(self) -> frozenset[TaskKind]:
        return frozenset(self._workers)

    def cancel_tasks(self, task_ids: Iterable[str]) -> None:
        """Signal the cancel tokens of in-flight tasks."""
        for task_id in task_ids:
            token = self._tokens.get(task_id)
            if token is not None:
                token.cancel()

    async def run(
        self, until_idle: bool = True, stop: Optional[asyncio.Event] = None
    ) -> DispatchStats:
        """Claim and execute tasks until idle (or until *stop* is set).

        Idle means nothing is in flight, nothing supported is claimable
        and no supported task is waiting out a retry backoff. Tasks
        blocked by local-only mode or by a dependency no worker can
        satisfy do not keep the dispatcher alive.
        """
        stats = DispatchStats()
        request = ClaimRequest("dispatcher", self.supported_kinds())
        reports: asyncio.Queue = asyncio.Queue()
        semaphore = asyncio.Semaphore(self.pool_size)
        in_flight: set[asyncio.Task] = set()
        writer = asyncio.create_task(self._drain(reports, stats))

        logger.info(
            "Dispatcher started: pool_size=%d, kinds=%s",
            self.pool_size, sorted(k.value for k in request.kinds),
        )
        try:
            while not (stop is not None and stop.is_set()):
                await semaphore.acquire()
                task = self.ledger.claim_next(request.kinds) if request.kinds else None
                if task is None:
                    semaphore.release()
                    if until_idle and not in_flight and self._idle(request):
                        break
                    await asyncio.sleep(self.poll_interval)
                    continue

                stats.claimed += 1
                job = asyncio.create_task(
                    self._execute(task, semaphore, reports, stats)
                )
                in_flight.add(job)
                job.add_done_callback(in_flight.discard)
        finally:
            if in_flight:
                await asyncio.gather(*in_flight, return_exceptions=True)
            writer.cancel()
            await asyncio.gather(writer, return_exceptions=True)

        logger.info("Dispatcher finished: %s", stats.summary)
        return stats

    def _idle(self, request: ClaimRequest) -> bool:
        return self.ledger.next_retry_at(request.kinds) is None

    async def _execute(
        self,
        task: TaskState,
        semaphore: asyncio.Semaphore,
        reports: asyncio.Queue,
        stats: DispatchStats,
    ) -> None:
        token = CancelToken()
        self._tokens[task.id] = token
        try:
            outcome = await self._call_worker(task, token, stats)
            applied = asyncio.get_running_loop().create_future()
            await reports.put((CompletionReport(task.id, outcome), applied))
            await applied
        finally:
            self._tokens.pop(task.id, None)
            semaphore.release()

    async def _call_worker(
        self, task: TaskState, token: CancelToken, stats: DispatchStats
    ) -> Outcome:
        worker = self._workers[task.kind]
        timeout = self.ledger.policy.timeout(task.kind)
        try:
            return await asyncio.wait_for(
                asyncio.to_thread(worker.execute, task, token), timeout
            )
        except asyncio.TimeoutError:
            token.cancel()
            stats.timed_out += 1
            logger.warning(
                "Task %s (%s) timed out after %.1fs", task.id, task.kind.value, timeout
            )
            return Failure(TIMEOUT_ERROR, retryable=True)
        except Exception as e:
            logger.warning("Worker raised on task %s (%s): %s", task.id, task.kind.value, e)
            return Failure(str(e) or type(e).__name__, retryable=True)

    async def _drain(self, reports: asyncio.Queue, stats: DispatchStats) -> None:
        while True:
            report, applied = await reports.get()
            try:
                self._apply(report, stats)
            except Exception:
                logger.exception("Writer failed on report for %s", report.task_id)
            finally:
                if not applied.done():
                    applied.set_result(None)
                reports.task_done()

    def _apply(self, report: CompletionReport, stats: DispatchStats) -> None:
        try:
            self.ledger.report(report)
        except ConflictError as e:
            stats.discarded += 1
            logger.debug("Discarding late report for %s: %s", report.task_id, e)
            return
        except NotFoundError as e:
            stats.discarded += 1
            logger.warning("Discarding report for %s: %s", report.task_id, e)
            return
        except Exception as e:
            stats.failed += 1
            logger.exception("Cannot apply report for %s", report.task_id)
            self._abandon(report.task_id, str(e) or type(e).__name__)
            return
        if isinstance(report.outcome, Failure):
            stats.failed += 1
        else:
            stats.completed += 1

    def _abandon(self, task_id: str, error: str) -> None:
        """Fail a task whose report could not be applied so it leaves running."""
        with self.ledger.lock:
            try:
                if self.ledger.get(task_id).status == TaskStatus.RUNNING:
                    self.ledger.fail(task_id, error, retryable=False)
            except PhotoLibError as e:
                logger.warning("Cannot fail task %s: %s", task_id, e)
