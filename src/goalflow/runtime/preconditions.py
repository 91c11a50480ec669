from __future__ import annotations

import asyncio
import inspect
import logging
from enum import Enum
from typing import Awaitable, Callable, Mapping, Union

from goalflow.core.errors import UnknownCondition
from goalflow.goals.types import CustomCondition
from goalflow.planner.compose import ResolvedGraph
from goalflow.runtime.states import BLOCKING_STATES, SUCCESS_STATES, GoalState

logger = logging.getLogger(__name__)

ConditionPredicate = Callable[[str], Union[bool, Awaitable[bool]]]
StateOf = Callable[[str], GoalState]


class Readiness(str, Enum):
    READY = "ready"
    NOT_READY = "not_ready"
    BLOCKED = "blocked"


class ConditionStatus(str, Enum):
    SATISFIED = "satisfied"
    DUE = "due"  # an attempt may start now
    CHECKING = "checking"  # an attempt is running
    WAITING = "waiting"  # a re-check is scheduled
    EXHAUSTED = "exhausted"


class PreconditionEvaluator:
    """Readiness of goal instances within one resolved graph.

    Structural checks are pure. Custom conditions keep per-goal attempt counters, the
    only mutable state owned here; every counter change goes through ``record_attempt``.
    """

    def __init__(self, graph: ResolvedGraph, predicates: Mapping[str, ConditionPredicate]) -> None:
        self._graph = graph
        self._predicates = predicates
        self._failed: dict[tuple[str, str], int] = {}
        self._satisfied: set[tuple[str, str]] = set()
        self._checking: set[tuple[str, str]] = set()
        self._waiting: set[tuple[str, str]] = set()

    def structural(self, goal: str, state_of: StateOf) -> Readiness:
        ready = True
        for dep in self._graph.depends_on.get(goal, ()):
            st = state_of(dep)
            if st in BLOCKING_STATES:
                return Readiness.BLOCKED
            if st not in SUCCESS_STATES:
                ready = False
        return Readiness.READY if ready else Readiness.NOT_READY

    def blocking_dependency(self, goal: str, state_of: StateOf) -> str | None:
        for dep in self._graph.depends_on.get(goal, ()):
            if state_of(dep) in BLOCKING_STATES:
                return dep
        return None

    def is_ready(self, goal: str, state_of: StateOf) -> Readiness:
        r = self.structural(goal, state_of)
        if r != Readiness.READY:
            return r
        if self.goal_condition_status(goal) == ConditionStatus.SATISFIED:
            return Readiness.READY
        return Readiness.NOT_READY

    def status(self, goal: str, condition: CustomCondition) -> ConditionStatus:
        key = (goal, condition.name)
        if key in self._satisfied:
            return ConditionStatus.SATISFIED
        if self._failed.get(key, 0) >= condition.retries:
            return ConditionStatus.EXHAUSTED
        if key in self._checking:
            return ConditionStatus.CHECKING
        if key in self._waiting:
            return ConditionStatus.WAITING
        return ConditionStatus.DUE

    def goal_condition_status(self, goal: str) -> ConditionStatus:
        """Aggregate over a goal's conditions: exhausted wins, then any unsatisfied state."""
        statuses = [self.status(goal, c) for c in self._graph.definition(goal).conditions]
        for st in (ConditionStatus.EXHAUSTED, ConditionStatus.DUE, ConditionStatus.CHECKING, ConditionStatus.WAITING):
            if st in statuses:
                return st
        return ConditionStatus.SATISFIED

    def due_conditions(self, goal: str) -> tuple[CustomCondition, ...]:
        return tuple(c for c in self._graph.definition(goal).conditions if self.status(goal, c) == ConditionStatus.DUE)

    def failed_attempts(self, goal: str, condition_name: str) -> int:
        return self._failed.get((goal, condition_name), 0)

    def begin_attempt(self, goal: str, condition: CustomCondition) -> None:
        self._checking.add((goal, condition.name))

    async def attempt(self, goal: str, condition: CustomCondition, change_event_id: str) -> bool:
        """Run one predicate attempt under the condition's timeout. Never raises."""
        fn = self._predicates.get(condition.name)
        if fn is None:
            raise UnknownCondition(condition.name, goal=goal)
        try:
            res = fn(change_event_id)
            if inspect.isawaitable(res):
                res = await asyncio.wait_for(res, timeout=condition.timeout_seconds)
            return bool(res)
        except asyncio.TimeoutError:
            logger.info("condition %s for goal %s timed out after %ss", condition.name, goal, condition.timeout_seconds)
            return False
        except asyncio.CancelledError:
            raise
        except Exception as e:  # noqa: BLE001
            logger.warning("condition %s for goal %s raised: %s", condition.name, goal, e)
            return False

    def record_attempt(self, goal: str, condition: CustomCondition, ok: bool) -> ConditionStatus:
        key = (goal, condition.name)
        self._checking.discard(key)
        if ok:
            self._satisfied.add(key)
            return ConditionStatus.SATISFIED
        self._failed[key] = self._failed.get(key, 0) + 1
        if self._failed[key] >= condition.retries:
            return ConditionStatus.EXHAUSTED
        self._waiting.add(key)
        return ConditionStatus.WAITING

    def release_recheck(self, goal: str, condition: CustomCondition) -> None:
        self._waiting.discard((goal, condition.name))

    def reset(self, goal: str) -> None:
        """Forget condition history for ``goal`` (explicit retry)."""
        for key in [k for k in self._failed if k[0] == goal]:
            del self._failed[key]
        self._satisfied = {k for k in self._satisfied if k[0] != goal}
        self._waiting = {k for k in self._waiting if k[0] != goal}
