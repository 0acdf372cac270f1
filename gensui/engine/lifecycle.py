"""Worker lifecycle state machine.

Defines the allowed status edges and enforces them. Invalid transitions
raise InvalidTransitionError rather than silently proceeding.

State Diagram:

                 provision / restart / resume
    IDLE ────┐
    FAILED ──┼──────────────> RUNNING ──┬──> IDLE     (all steps succeeded)
    PAUSED ──┘                          ├──> FAILED   (a step failed)
                                        └──> PAUSED   (operator pause)

There is no edge into FAILED except from RUNNING.
"""
from __future__ import annotations

from gensui.shared.models.worker import WorkerStatus

from .errors import InvalidTransitionError

VALID_TRANSITIONS: dict[WorkerStatus, set[WorkerStatus]] = {
    WorkerStatus.IDLE: {WorkerStatus.RUNNING},
    WorkerStatus.FAILED: {WorkerStatus.RUNNING},
    WorkerStatus.PAUSED: {WorkerStatus.RUNNING},
    WorkerStatus.RUNNING: {
        WorkerStatus.IDLE,
        WorkerStatus.FAILED,
        WorkerStatus.PAUSED,
    },
}


def is_valid_transition(current: WorkerStatus, target: WorkerStatus) -> bool:
    return target in VALID_TRANSITIONS.get(current, set())


def validate_transition(current: WorkerStatus, target: WorkerStatus) -> None:
    """Raise InvalidTransitionError unless ``current -> target`` is allowed."""
    if not is_valid_transition(current, target):
        allowed = sorted(s.value for s in VALID_TRANSITIONS.get(current, set()))
        raise InvalidTransitionError(current.value, target.value, allowed)
