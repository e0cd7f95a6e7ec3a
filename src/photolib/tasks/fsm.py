"""Task lifecycle finite state machine.

Every ledger transition is validated by building an FSM at the task's
current status and firing the requested event. The FSM holds no data
and has no callbacks; the ledger owns persistence of the new status.
"""

from __future__ import annotations

from statemachine import State, StateMachine
from statemachine.exceptions import TransitionNotAllowed

from photolib.exceptions import ConflictError
from photolib.models import TaskStatus


class TaskLifecycleSM(StateMachine):
    """Four-state lifecycle of an enrichment task.

    States:
        pending   -- Enqueued, waiting for a worker (or a retry deadline).
        running   -- Claimed by exactly one worker.
        completed -- Outcome applied to the asset. Terminal.
        failed    -- Terminal unless retried.

    ``completed`` is the only final state; ``failed`` keeps an outgoing
    ``retry_task`` transition and therefore cannot be marked final.
    """

    pending = State("pending", initial=True, value="pending")
    running = State("running", value="running")
    completed = State("completed", value="completed", final=True)
    failed = State("failed", value="failed")

    claim_task = pending.to(running)
    complete_task = running.to(completed)
    fail_task = running.to(failed)
    retry_task = failed.to(pending)
    cancel_task = pending.to(failed) | running.to(failed)


def create_fsm(status: TaskStatus | str) -> TaskLifecycleSM:
    """Create an FSM instance positioned at *status*."""
    return TaskLifecycleSM(start_value=TaskStatus(status).value)


def next_status(task_id: str, status: TaskStatus, event: str) -> TaskStatus:
    """Return the status reached by firing *event* from *status*.

    Raises:
        ConflictError: If the lifecycle does not allow *event* from *status*.
    """
    sm = create_fsm(status)
    try:
        sm.send(event)
    except TransitionNotAllowed:
        raise ConflictError(task_id, TaskStatus(status).value, event) from None
    return TaskStatus(sm.current_state.value)
