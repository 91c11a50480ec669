from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from goalflow.core.timeutil import utc_now_iso
from goalflow.goals.types import GoalDefinition
from goalflow.runtime.states import GoalState


class ExecutionResult(str, Enum):
    SUCCESS = "success"
    FAILURE = "failure"


class ApprovalGate(str, Enum):
    PRE = "pre_approval"
    POST = "approval"


class ApprovalDecision(str, Enum):
    GRANTED = "granted"
    DENIED = "denied"


def _new_event_id() -> str:
    return uuid.uuid4().hex


@dataclass(frozen=True)
class ExecutionEvent:
    change_event_id: str
    goal_name: str
    result: ExecutionResult
    diagnostics: Any = None
    event_id: str = field(default_factory=_new_event_id)
    recorded_at: str = field(default_factory=utc_now_iso)

    def __post_init__(self) -> None:
        object.__setattr__(self, "result", ExecutionResult(self.result))

    @classmethod
    def success(cls, change_event_id: str, goal_name: str, diagnostics: Any = None) -> "ExecutionEvent":
        return cls(change_event_id=change_event_id, goal_name=goal_name, result=ExecutionResult.SUCCESS, diagnostics=diagnostics)

    @classmethod
    def failure(cls, change_event_id: str, goal_name: str, diagnostics: Any = None) -> "ExecutionEvent":
        return cls(change_event_id=change_event_id, goal_name=goal_name, result=ExecutionResult.FAILURE, diagnostics=diagnostics)


@dataclass(frozen=True)
class CancellationRequest:
    change_event_id: str
    goal_names: tuple[str, ...]
    reason: str = "cancellation requested"

    def __post_init__(self) -> None:
        object.__setattr__(self, "goal_names", tuple(dict.fromkeys(str(g).strip() for g in self.goal_names)))


@dataclass(frozen=True)
class ApprovalRecord:
    gate: ApprovalGate
    decision: ApprovalDecision
    approver: str
    decided_at: str = field(default_factory=utc_now_iso)

    def to_json_obj(self) -> dict[str, Any]:
        return {
            "gate": self.gate.value,
            "decision": self.decision.value,
            "approver": self.approver,
            "decided_at": self.decided_at,
        }


@dataclass(frozen=True)
class Transition:
    """A proposed state change; only the scheduler validates and applies it."""

    goal: str
    target: GoalState
    reason: str | None = None


@dataclass
class GoalInstance:
    definition: GoalDefinition
    state: GoalState = GoalState.PLANNED
    retry_count: int = 0
    reason: str | None = None
    pre_approval: ApprovalRecord | None = None
    approval: ApprovalRecord | None = None
    started_at: str | None = None
    ended_at: str | None = None
    fulfillment_id: str | None = None
    diagnostics: Any = None

    @property
    def name(self) -> str:
        return self.definition.name

    def to_json_obj(self) -> dict[str, Any]:
        return {
            "goal": self.name,
            "display_name": self.definition.label,
            "environment": self.definition.environment.value,
            "ordering_key": self.definition.ordering_key,
            "state": self.state.value,
            "description": self.definition.description_for(self.state),
            "retry_count": self.retry_count,
            "reason": self.reason,
            "pre_approval": self.pre_approval.to_json_obj() if self.pre_approval else None,
            "approval": self.approval.to_json_obj() if self.approval else None,
            "started_at": self.started_at,
            "ended_at": self.ended_at,
            "fulfillment_id": self.fulfillment_id,
            "diagnostics": self.diagnostics,
        }


@dataclass(frozen=True)
class StateChange:
    change_event_id: str
    goal: str
    previous: GoalState
    current: GoalState
    reason: str | None
    recorded_at: str

    def to_json_obj(self) -> dict[str, Any]:
        return {
            "event_type": "GOAL_STATE_CHANGED",
            "change_event_id": self.change_event_id,
            "goal": self.goal,
            "outputs": {"from": self.previous.value, "to": self.current.value, "reason": self.reason},
            "recorded_at": self.recorded_at,
        }


@dataclass(frozen=True)
class GraphSnapshot:
    change_event_id: str
    graph_name: str
    fingerprint: str
    scope: str | None
    goals: tuple[dict[str, Any], ...]
    events: tuple[dict[str, Any], ...]

    def state_of(self, goal: str) -> GoalState:
        for g in self.goals:
            if g["goal"] == goal:
                return GoalState(g["state"])
        raise KeyError(goal)

    def states(self) -> dict[str, GoalState]:
        return {g["goal"]: GoalState(g["state"]) for g in self.goals}

    def to_json_obj(self) -> dict[str, Any]:
        return {
            "change_event_id": self.change_event_id,
            "graph_name": self.graph_name,
            "fingerprint": self.fingerprint,
            "scope": self.scope,
            "goals": [dict(g) for g in self.goals],
            "events": [dict(e) for e in self.events],
        }
