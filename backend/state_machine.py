"""
Job order status transitions.

    created ──request_approval──> pending_approval ──approve──> approved
       │                           │    ^
       │                        reject  │ request_approval
       │                           v    │
       │                          rejected
       └── cancel (from created, pending_approval or rejected) ──> cancelled

approved and cancelled are terminal.
"""
import enum

from exceptions import Conflict
from models import JobOrderStatus


class JobOrderAction(str, enum.Enum):
    CREATE = "CREATE"
    UPDATE = "UPDATE"
    REQUEST_APPROVAL = "REQUEST_APPROVAL"
    APPROVE = "APPROVE"
    REJECT = "REJECT"
    CANCEL = "CANCEL"


TERMINAL_STATUSES = frozenset({JobOrderStatus.APPROVED, JobOrderStatus.CANCELLED})

TRANSITIONS = {
    (JobOrderStatus.CREATED, JobOrderAction.REQUEST_APPROVAL): JobOrderStatus.PENDING_APPROVAL,
    (JobOrderStatus.REJECTED, JobOrderAction.REQUEST_APPROVAL): JobOrderStatus.PENDING_APPROVAL,
    (JobOrderStatus.PENDING_APPROVAL, JobOrderAction.APPROVE): JobOrderStatus.APPROVED,
    (JobOrderStatus.PENDING_APPROVAL, JobOrderAction.REJECT): JobOrderStatus.REJECTED,
    (JobOrderStatus.CREATED, JobOrderAction.CANCEL): JobOrderStatus.CANCELLED,
    (JobOrderStatus.PENDING_APPROVAL, JobOrderAction.CANCEL): JobOrderStatus.CANCELLED,
    (JobOrderStatus.REJECTED, JobOrderAction.CANCEL): JobOrderStatus.CANCELLED,
}


def is_terminal(status: JobOrderStatus) -> bool:
    return JobOrderStatus(status) in TERMINAL_STATUSES


def allowed_actions(status: JobOrderStatus) -> list[JobOrderAction]:
    status = JobOrderStatus(status)
    return [action for (source, action) in TRANSITIONS if source == status]


def next_status(current: JobOrderStatus, action: JobOrderAction) -> JobOrderStatus:
    """Target status for a transition, or Conflict if the pair is not legal"""
    current = JobOrderStatus(current)
    action = JobOrderAction(action)
    target = TRANSITIONS.get((current, action))
    if target is None:
        raise Conflict(
            f'Cannot {action.value.lower().replace("_", " ")} a job order with status "{current.value}"',
            current_status=current.value,
        )
    return target


def ensure_editable(current: JobOrderStatus):
    """Notes and repairs can change until the order reaches a terminal status"""
    current = JobOrderStatus(current)
    if current in TERMINAL_STATUSES:
        raise Conflict(
            f'Job order with status "{current.value}" can no longer be edited',
            current_status=current.value,
        )
