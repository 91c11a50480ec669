from __future__ import annotations

from enum import Enum


class GoalState(str, Enum):
    PLANNED = "planned"
    REQUESTED = "requested"
    IN_PROCESS = "in_process"
    SUCCESS = "success"
    FAILURE = "failure"
    WAITING_FOR_PRE_APPROVAL = "waiting_for_pre_approval"
    PRE_APPROVED = "pre_approved"
    WAITING_FOR_APPROVAL = "waiting_for_approval"
    APPROVED = "approved"
    CANCELED = "canceled"
    STOPPED = "stopped"
    SKIPPED = "skipped"


class FailureReason(str, Enum):
    PRECONDITION_EXHAUSTED = "precondition_exhausted"
    FULFILLMENT_TIMEOUT = "fulfillment_timeout"
    EXECUTION_FAILED = "execution_failed"
    NO_FULFILLMENT_REGISTERED = "no_fulfillment_registered"


S = GoalState

TERMINAL_STATES = frozenset({S.SUCCESS, S.FAILURE, S.SKIPPED, S.CANCELED, S.STOPPED, S.APPROVED})

# Dependencies in these states let dependents start.
SUCCESS_STATES = frozenset({S.SUCCESS, S.APPROVED})

# Dependencies in these states skip their dependents.
BLOCKING_STATES = frozenset({S.FAILURE, S.CANCELED, S.STOPPED, S.SKIPPED})

# States that have not reached in_process; cancellation cancels rather than stops them.
NOT_STARTED_STATES = frozenset({S.PLANNED, S.REQUESTED, S.WAITING_FOR_PRE_APPROVAL, S.PRE_APPROVED})

TRANSITIONS: dict[GoalState, frozenset[GoalState]] = {
    S.PLANNED: frozenset({S.REQUESTED, S.WAITING_FOR_PRE_APPROVAL, S.SKIPPED, S.CANCELED, S.FAILURE}),
    S.WAITING_FOR_PRE_APPROVAL: frozenset({S.PRE_APPROVED, S.CANCELED}),
    S.PRE_APPROVED: frozenset({S.REQUESTED, S.CANCELED, S.FAILURE}),
    S.REQUESTED: frozenset({S.IN_PROCESS, S.CANCELED, S.FAILURE}),
    S.IN_PROCESS: frozenset({S.SUCCESS, S.FAILURE, S.WAITING_FOR_APPROVAL, S.STOPPED}),
    S.WAITING_FOR_APPROVAL: frozenset({S.APPROVED, S.CANCELED}),
    S.SUCCESS: frozenset(),
    S.FAILURE: frozenset(),
    S.APPROVED: frozenset(),
    S.CANCELED: frozenset(),
    S.STOPPED: frozenset(),
    S.SKIPPED: frozenset(),
}

# The one exit from a terminal state: an explicit retry of a retry-feasible failed goal.
RETRY_TRANSITION = (S.FAILURE, S.REQUESTED)


def is_terminal(state: GoalState) -> bool:
    return state in TERMINAL_STATES


def can_transition(current: GoalState, target: GoalState, *, retry: bool = False) -> bool:
    if retry:
        return (current, target) == RETRY_TRANSITION
    return target in TRANSITIONS.get(current, frozenset())
