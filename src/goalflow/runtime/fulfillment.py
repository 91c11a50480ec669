from __future__ import annotations

import inspect
import logging
import uuid
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Iterable, Union

from goalflow.core.errors import DuplicateFulfillment, NoFulfillmentRegistered
from goalflow.runtime.instance import ExecutionEvent, GoalInstance

logger = logging.getLogger(__name__)

ExecutorHandler = Callable[[str], Union[ExecutionEvent, Awaitable[ExecutionEvent]]]


@dataclass(frozen=True)
class InternalExecutor:
    goal: str
    handler: ExecutorHandler


@dataclass(frozen=True)
class ExternalSideEffect:
    """Work done by another system, which posts the result back through completion intake."""

    goal: str
    name: str
    timeout_seconds: float | None = None


Fulfillment = Union[InternalExecutor, ExternalSideEffect]


@dataclass(frozen=True)
class Dispatch:
    fulfillment: Fulfillment
    fulfillment_id: str

    @property
    def internal(self) -> bool:
        return isinstance(self.fulfillment, InternalExecutor)


class FulfillmentDispatcher:
    def __init__(self, *, default_timeout_seconds: float | None = None) -> None:
        self._by_goal: dict[str, Fulfillment] = {}
        self.default_timeout_seconds = default_timeout_seconds

    def register_executor(self, goal: str, handler: ExecutorHandler) -> InternalExecutor:
        if not callable(handler):
            raise TypeError(f"executor for goal {goal!r} must be callable")
        f = InternalExecutor(goal=str(goal).strip(), handler=handler)
        self._register(f)
        return f

    def register_side_effect(
        self, goal: str, name: str | None = None, *, timeout_seconds: float | None = None
    ) -> ExternalSideEffect:
        goal = str(goal).strip()
        if timeout_seconds is not None and timeout_seconds <= 0:
            raise ValueError(f"side effect timeout for goal {goal!r} must be > 0")
        f = ExternalSideEffect(goal=goal, name=str(name or goal).strip(), timeout_seconds=timeout_seconds)
        self._register(f)
        return f

    def _register(self, f: Fulfillment) -> None:
        if not f.goal:
            raise ValueError("fulfillment goal name must be non-empty")
        if f.goal in self._by_goal:
            raise DuplicateFulfillment(f.goal)
        self._by_goal[f.goal] = f
        logger.debug("registered %s fulfillment for goal %s", type(f).__name__, f.goal)

    def has(self, goal: str) -> bool:
        return goal in self._by_goal

    def lookup(self, goal: str) -> Fulfillment:
        f = self._by_goal.get(goal)
        if f is None:
            raise NoFulfillmentRegistered(goal)
        return f

    def missing(self, goals: Iterable[str]) -> list[str]:
        return [g for g in goals if g not in self._by_goal]

    def dispatch(self, instance: GoalInstance) -> Dispatch:
        f = self.lookup(instance.name)
        return Dispatch(fulfillment=f, fulfillment_id=f"{instance.name}-{uuid.uuid4().hex[:12]}")

    def timeout_for(self, dispatch: Dispatch) -> float | None:
        f = dispatch.fulfillment
        if not isinstance(f, ExternalSideEffect):
            return None
        if f.timeout_seconds is not None:
            return f.timeout_seconds
        return self.default_timeout_seconds

    async def execute(self, dispatch: Dispatch, change_event_id: str) -> ExecutionEvent:
        """Run an internal executor; a raised exception becomes a failure event."""
        f = dispatch.fulfillment
        if not isinstance(f, InternalExecutor):
            raise TypeError(f"goal {f.goal!r} is fulfilled externally")
        try:
            res: Any = f.handler(change_event_id)
            if inspect.isawaitable(res):
                res = await res
        except Exception as e:  # noqa: BLE001
            logger.warning("executor for goal %s raised: %s", f.goal, e)
            return ExecutionEvent.failure(change_event_id, f.goal, diagnostics={"error": f"{type(e).__name__}: {e}"})
        if not isinstance(res, ExecutionEvent):
            return ExecutionEvent.failure(
                change_event_id,
                f.goal,
                diagnostics={"error": f"executor returned {type(res).__name__}, expected ExecutionEvent"},
            )
        if res.goal_name != f.goal or res.change_event_id != change_event_id:
            return ExecutionEvent.failure(
                change_event_id,
                f.goal,
                diagnostics={"error": f"executor reported for {res.change_event_id}/{res.goal_name}"},
            )
        return res
