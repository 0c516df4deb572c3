import itertools

import pytest

from exceptions import Conflict
from models import JobOrderStatus
from state_machine import (
    TERMINAL_STATUSES,
    TRANSITIONS,
    JobOrderAction,
    allowed_actions,
    ensure_editable,
    is_terminal,
    next_status,
)

LIFECYCLE_ACTIONS = [
    JobOrderAction.REQUEST_APPROVAL,
    JobOrderAction.APPROVE,
    JobOrderAction.REJECT,
    JobOrderAction.CANCEL,
]


class TestTransitions:
    @pytest.mark.parametrize("current, action, expected", [
        (JobOrderStatus.CREATED, JobOrderAction.REQUEST_APPROVAL, JobOrderStatus.PENDING_APPROVAL),
        (JobOrderStatus.REJECTED, JobOrderAction.REQUEST_APPROVAL, JobOrderStatus.PENDING_APPROVAL),
        (JobOrderStatus.PENDING_APPROVAL, JobOrderAction.APPROVE, JobOrderStatus.APPROVED),
        (JobOrderStatus.PENDING_APPROVAL, JobOrderAction.REJECT, JobOrderStatus.REJECTED),
        (JobOrderStatus.CREATED, JobOrderAction.CANCEL, JobOrderStatus.CANCELLED),
        (JobOrderStatus.PENDING_APPROVAL, JobOrderAction.CANCEL, JobOrderStatus.CANCELLED),
        (JobOrderStatus.REJECTED, JobOrderAction.CANCEL, JobOrderStatus.CANCELLED),
    ])
    def test_legal_transitions(self, current, action, expected):
        assert next_status(current, action) == expected

    def test_every_unlisted_pair_is_a_conflict(self):
        for current, action in itertools.product(JobOrderStatus, LIFECYCLE_ACTIONS):
            if (current, action) in TRANSITIONS:
                continue
            with pytest.raises(Conflict) as exc_info:
                next_status(current, action)
            assert exc_info.value.current_status == current.value

    @pytest.mark.parametrize("terminal", sorted(TERMINAL_STATUSES, key=lambda s: s.value))
    def test_terminal_statuses_have_no_exits(self, terminal):
        assert is_terminal(terminal)
        assert allowed_actions(terminal) == []

    def test_accepts_raw_status_values(self):
        assert next_status("created", "REQUEST_APPROVAL") == JobOrderStatus.PENDING_APPROVAL

    def test_allowed_actions_for_pending(self):
        assert set(allowed_actions(JobOrderStatus.PENDING_APPROVAL)) == {
            JobOrderAction.APPROVE,
            JobOrderAction.REJECT,
            JobOrderAction.CANCEL,
        }


class TestEditable:
    @pytest.mark.parametrize("status", [
        JobOrderStatus.CREATED,
        JobOrderStatus.PENDING_APPROVAL,
        JobOrderStatus.REJECTED,
    ])
    def test_open_statuses_are_editable(self, status):
        ensure_editable(status)

    @pytest.mark.parametrize("status", [JobOrderStatus.APPROVED, JobOrderStatus.CANCELLED])
    def test_terminal_statuses_are_locked(self, status):
        with pytest.raises(Conflict) as exc_info:
            ensure_editable(status)
        assert exc_info.value.current_status == status.value
