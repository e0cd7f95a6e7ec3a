"""Tests for the task lifecycle state machine."""

from __future__ import annotations

import pytest
from statemachine.exceptions import TransitionNotAllowed

from photolib.exceptions import ConflictError
from photolib.models import TaskStatus
from photolib.tasks.fsm import TaskLifecycleSM, create_fsm, next_status


class TestFSMTransitions:
    """Legal transitions succeed and illegal ones raise."""

    def test_pending_to_running(self):
        fsm = create_fsm("pending")
        fsm.claim_task()
        assert fsm.current_state.value == "running"

    def test_running_to_completed(self):
        fsm = create_fsm(TaskStatus.RUNNING)
        fsm.complete_task()
        assert fsm.current_state.value == "completed"

    def test_running_to_failed_and_retry(self):
        fsm = create_fsm("running")
        fsm.fail_task()
        fsm.retry_task()
        assert fsm.current_state.value == "pending"

    @pytest.mark.parametrize("start", ["pending", "running"])
    def test_cancel_from_non_terminal(self, start):
        fsm = create_fsm(start)
        fsm.cancel_task()
        assert fsm.current_state.value == "failed"

    @pytest.mark.parametrize(
        "start,event",
        [
            ("pending", "complete_task"),
            ("pending", "fail_task"),
            ("running", "claim_task"),
            ("completed", "claim_task"),
            ("completed", "retry_task"),
            ("completed", "cancel_task"),
            ("failed", "complete_task"),
            ("failed", "cancel_task"),
        ],
    )
    def test_illegal_transitions(self, start, event):
        fsm = create_fsm(start)
        with pytest.raises(TransitionNotAllowed):
            fsm.send(event)

    def test_initial_state_is_pending(self):
        assert TaskLifecycleSM().current_state.value == "pending"


class TestNextStatus:
    def test_returns_new_status(self):
        assert next_status("t1", TaskStatus.PENDING, "claim_task") is TaskStatus.RUNNING

    def test_illegal_transition_is_conflict(self):
        with pytest.raises(ConflictError) as exc_info:
            next_status("t1", TaskStatus.COMPLETED, "complete_task")
        assert exc_info.value.task_id == "t1"
        assert exc_info.value.current == "completed"
