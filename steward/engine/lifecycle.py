"""Task status state machine.

State Diagram:

    WAITING ──> RUNNING ──┬──> COMPLETED
       ^                  │
       └──────────────────┤    (waiting on a permission/question)
                          │
                          ├──> ERRORED
                          │
                          └──> INTERRUPTED  (stop, or crash recovery)

    COMPLETED / ERRORED / INTERRUPTED ──> RUNNING  (follow-up message)
"""
from __future__ import annotations

from .errors import InvalidTransitionError
from .models import TaskStatus

VALID_TRANSITIONS: dict[TaskStatus, set[TaskStatus]] = {
    TaskStatus.WAITING: {
        TaskStatus.RUNNING,
        TaskStatus.ERRORED,
        TaskStatus.INTERRUPTED,
    },
    TaskStatus.RUNNING: {
        TaskStatus.WAITING,
        TaskStatus.COMPLETED,
        TaskStatus.ERRORED,
        TaskStatus.INTERRUPTED,
    },
    TaskStatus.COMPLETED: {
        TaskStatus.RUNNING,
    },
    TaskStatus.ERRORED: {
        TaskStatus.RUNNING,
    },
    TaskStatus.INTERRUPTED: {
        TaskStatus.RUNNING,
    },
}

STALE_STATUSES: frozenset[TaskStatus] = frozenset(
    {TaskStatus.RUNNING, TaskStatus.WAITING}
)


def validate_transition(current: TaskStatus, target: TaskStatus) -> None:
    """Validate a status change. Raises InvalidTransitionError if invalid.

    Re-entering the current status is always accepted.
    """
    if current == target:
        return
    allowed = VALID_TRANSITIONS.get(current, set())
    if target not in allowed:
        raise InvalidTransitionError(
            current.value,
            target.value,
            sorted(s.value for s in allowed),
        )
