"""Retry limits, backoff, timeouts and inter-task dependencies."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import timedelta
from typing import Mapping

from photolib.constants import (
    DEFAULT_RETRY_LIMITS,
    DEFAULT_TASK_TIMEOUTS,
    RETRY_BASE_DELAY_SECONDS,
    RETRY_MAX_DELAY_SECONDS,
)
from photolib.models import TaskKind

# A task of the key kind may not be claimed until the value kind has
# completed for the same asset.
DEPENDENCIES: dict[TaskKind, TaskKind] = {
    TaskKind.FULL_HASH: TaskKind.QUICK_HASH,
    TaskKind.AI_TAGGING: TaskKind.THUMBNAIL,
    TaskKind.EMBEDDINGS: TaskKind.THUMBNAIL,
    TaskKind.FACES: TaskKind.THUMBNAIL,
}


def dependents_of(kind: TaskKind) -> list[TaskKind]:
    return [k for k, dep in DEPENDENCIES.items() if dep == kind]


def _by_kind(values: Mapping[str, float]) -> dict[TaskKind, float]:
    return {TaskKind(k): v for k, v in values.items()}


@dataclass
class RetryPolicy:
    """Per-kind retry limits and timeouts with capped exponential backoff.

    Usage::

        policy = RetryPolicy()
        policy.max_retries(TaskKind.QUICK_HASH)   # 3
        policy.backoff(2)                          # timedelta(seconds=2)
    """

    retry_limits: dict[TaskKind, int] = field(
        default_factory=lambda: {k: int(v) for k, v in _by_kind(DEFAULT_RETRY_LIMITS).items()}
    )
    timeouts: dict[TaskKind, float] = field(
        default_factory=lambda: _by_kind(DEFAULT_TASK_TIMEOUTS)
    )
    base_delay: float = RETRY_BASE_DELAY_SECONDS
    max_delay: float = RETRY_MAX_DELAY_SECONDS

    @classmethod
    def from_overrides(
        cls,
        retry_limits: Mapping[str, int] | None = None,
        timeouts: Mapping[str, float] | None = None,
        base_delay: float = RETRY_BASE_DELAY_SECONDS,
        max_delay: float = RETRY_MAX_DELAY_SECONDS,
    ) -> "RetryPolicy":
        """Build a policy from the defaults patched with kind-keyed overrides."""
        policy = cls(base_delay=base_delay, max_delay=max_delay)
        for kind, limit in (retry_limits or {}).items():
            policy.retry_limits[TaskKind(kind)] = int(limit)
        for kind, seconds in (timeouts or {}).items():
            policy.timeouts[TaskKind(kind)] = float(seconds)
        return policy

    def max_retries(self, kind: TaskKind) -> int:
        return self.retry_limits.get(kind, 0)

    def timeout(self, kind: TaskKind) -> float:
        return self.timeouts[kind]

    def backoff(self, attempt: int) -> timedelta:
        """Delay before retry number *attempt* (1-based): base * 2**(attempt-1)."""
        seconds = self.base_delay * (2 ** max(attempt - 1, 0))
        return timedelta(seconds=min(seconds, self.max_delay))
