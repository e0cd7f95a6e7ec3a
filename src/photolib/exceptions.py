"""Error kinds raised by the library engine."""

from __future__ import annotations


class PhotoLibError(Exception):
    """Base class for all engine errors."""


class NotFoundError(PhotoLibError):
    """A referenced asset, album, smart album or task does not exist."""

    def __init__(self, kind: str, identifier: str) -> None:
        self.kind = kind
        self.identifier = identifier
        super().__init__(f"{kind} not found: {identifier}")


class InvalidError(PhotoLibError, ValueError):
    """Rule validation failure, bad field value or dangling asset id."""


class ConflictError(PhotoLibError):
    """A task transition was requested from a state that does not allow it.

    Raised for a claim on a task that is no longer pending, or a
    completion for a task that is already terminal. The caller's work
    is discarded.
    """

    def __init__(self, task_id: str, current: str, attempted: str) -> None:
        self.task_id = task_id
        self.current = current
        self.attempted = attempted
        super().__init__(
            f"Task {task_id}: cannot {attempted} from state '{current}'"
        )


class ExternalFailure(PhotoLibError):
    """A collaborator (file access, worker) reported a failure."""


class PolicyRejectedError(PhotoLibError):
    """A cloud AI task was requested while local-only mode is on.

    The task stays pending until the policy changes.
    """

    def __init__(self, task_id: str, provider: str) -> None:
        self.task_id = task_id
        self.provider = provider
        super().__init__(
            f"Task {task_id}: provider '{provider}' is a cloud provider "
            "and local-only mode is enabled"
        )
