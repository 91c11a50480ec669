from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable, Coroutine, Iterable, Mapping

from goalflow.core.errors import ConfigurationError, InvalidTransition, NoFulfillmentRegistered, UnknownGoal
from goalflow.core.timeutil import utc_now_iso
from goalflow.goals.types import CustomCondition
from goalflow.planner.compose import ResolvedGraph
from goalflow.runtime.approvals import ApprovalGateManager
from goalflow.runtime.cancellation import CancellationPropagator
from goalflow.runtime.fulfillment import Dispatch, ExternalSideEffect, FulfillmentDispatcher
from goalflow.runtime.instance import (
    ApprovalRecord,
    CancellationRequest,
    ExecutionEvent,
    ExecutionResult,
    GoalInstance,
    GraphSnapshot,
    StateChange,
    Transition,
)
from goalflow.runtime.preconditions import ConditionPredicate, ConditionStatus, PreconditionEvaluator, Readiness
from goalflow.runtime.states import NOT_STARTED_STATES, FailureReason, GoalState, can_transition, is_terminal

logger = logging.getLogger(__name__)

StateListener = Callable[[StateChange], Any]


def _holds_slot(state: GoalState) -> bool:
    """An isolated goal holds the isolation slot from dispatch until it is terminal."""
    return state not in NOT_STARTED_STATES and not is_terminal(state)


class GraphRun:
    """Goal instances of one change event and the single authority over their states.

    Every trigger mutates state inside ``self._lock`` and ends with a full readiness pass,
    so isolation admission and cancellation closures never interleave with other
    transitions of the same graph. Executors, condition attempts and re-check timers run
    as background tasks outside the lock and re-enter it to apply their results.
    """

    def __init__(
        self,
        *,
        change_event_id: str,
        graph: ResolvedGraph,
        dispatcher: FulfillmentDispatcher,
        predicates: Mapping[str, ConditionPredicate],
        scope: str | None = None,
        listeners: Iterable[StateListener] = (),
    ) -> None:
        self.change_event_id = change_event_id
        self.graph = graph
        self.scope = scope
        self.instances: dict[str, GoalInstance] = {n: GoalInstance(definition=graph.goals[n]) for n in graph.order}
        self._dispatcher = dispatcher
        self._evaluator = PreconditionEvaluator(graph, predicates)
        self._approvals = ApprovalGateManager()
        self._cancellation = CancellationPropagator()
        self._listeners = listeners
        self._lock = asyncio.Lock()
        self._consumed: set[str] = set()
        self._events: list[dict[str, Any]] = []
        self._work: set[asyncio.Task] = set()
        self._timers: dict[str, asyncio.Task] = {}
        self._pending_errors: list[ConfigurationError] = []

    # -- observation ---------------------------------------------------------------

    def state_of(self, goal: str) -> GoalState:
        inst = self.instances.get(goal)
        if inst is None:
            raise UnknownGoal(goal)
        return inst.state

    @property
    def live(self) -> bool:
        return any(not is_terminal(i.state) for i in self.instances.values())

    @property
    def evaluator(self) -> PreconditionEvaluator:
        return self._evaluator

    def snapshot(self) -> GraphSnapshot:
        return GraphSnapshot(
            change_event_id=self.change_event_id,
            graph_name=self.graph.name,
            fingerprint=self.graph.fingerprint,
            scope=self.scope,
            goals=tuple(self.instances[n].to_json_obj() for n in self.graph.order),
            events=tuple(dict(e) for e in self._events),
        )

    async def drain(self) -> None:
        """Wait until no executor, condition attempt or re-check is outstanding."""
        while self._work:
            await asyncio.gather(*list(self._work), return_exceptions=True)

    async def close(self) -> None:
        for t in list(self._work) + list(self._timers.values()):
            t.cancel()
        await asyncio.gather(*list(self._work), *list(self._timers.values()), return_exceptions=True)

    # -- triggers -----------------------------------------------------------------

    async def start(self) -> None:
        async with self._lock:
            self._journal("SUBMITTED", outputs={"graph": self.graph.name, "goals": list(self.graph.order)})
            self._advance()
            self._surface_errors()

    async def apply_execution_event(self, event: ExecutionEvent) -> str:
        async with self._lock:
            outcome = self._consume(event)
            self._advance()
            self._surface_errors()
            return outcome

    async def decide_pre_approval(self, goal: str, approver: str, *, approved: bool) -> ApprovalRecord:
        async with self._lock:
            inst = self._instance(goal)
            if approved:
                record, transition = self._approvals.grant_pre_approval(inst, approver)
            else:
                record, transition = self._approvals.deny_pre_approval(inst, approver)
            inst.pre_approval = record
            self._apply(transition)
            self._advance()
            self._surface_errors()
            return record

    async def decide_approval(self, goal: str, approver: str, *, approved: bool) -> ApprovalRecord:
        async with self._lock:
            inst = self._instance(goal)
            if approved:
                record, transition = self._approvals.grant_approval(inst, approver)
            else:
                record, transition = self._approvals.deny_approval(inst, approver)
            inst.approval = record
            self._apply(transition)
            self._advance()
            self._surface_errors()
            return record

    async def cancel(self, request: CancellationRequest) -> list[Transition]:
        async with self._lock:
            transitions = self._cancellation.closure(request, self.graph, self.state_of)
            self._journal(
                "CANCELLATION_REQUESTED",
                outputs={"goals": list(request.goal_names), "reason": request.reason, "affected": [t.goal for t in transitions]},
            )
            for t in transitions:
                self._apply(t)
            self._advance()
            self._surface_errors()
            return transitions

    async def retry(self, goal: str) -> tuple[str, ...]:
        """Move a failed retry-feasible goal back to requested.

        Custom conditions are evaluated again before it is dispatched. Dependents that
        were skipped when it failed stay skipped; their names are returned.
        """
        async with self._lock:
            inst = self._instance(goal)
            if inst.state != GoalState.FAILURE:
                raise InvalidTransition(goal, inst.state.value, GoalState.REQUESTED.value, detail="only failed goals can be retried")
            if not inst.definition.retry_feasible:
                raise InvalidTransition(goal, inst.state.value, GoalState.REQUESTED.value, detail="goal is not retry feasible")
            inst.retry_count += 1
            inst.fulfillment_id = None
            inst.ended_at = None
            inst.diagnostics = None
            self._evaluator.reset(goal)
            self._apply(Transition(goal, GoalState.REQUESTED, f"retry {inst.retry_count} requested"), retry=True)
            self._advance()
            self._surface_errors()
            return tuple(d for d in self.graph.descendants(goal) if self.instances[d].state == GoalState.SKIPPED)

    # -- state machine ------------------------------------------------------------

    def _instance(self, goal: str) -> GoalInstance:
        inst = self.instances.get(goal)
        if inst is None:
            raise UnknownGoal(goal)
        return inst

    def _apply(self, transition: Transition, *, retry: bool = False) -> None:
        inst = self._instance(transition.goal)
        previous = inst.state
        if not can_transition(previous, transition.target, retry=retry):
            raise InvalidTransition(inst.name, previous.value, transition.target.value)

        now = utc_now_iso()
        inst.state = transition.target
        inst.reason = transition.reason
        if transition.target == GoalState.IN_PROCESS:
            inst.started_at = now
        if is_terminal(transition.target):
            inst.ended_at = now
        if previous == GoalState.IN_PROCESS:
            timer = self._timers.pop(inst.name, None)
            if timer is not None:
                timer.cancel()

        change = StateChange(
            change_event_id=self.change_event_id,
            goal=inst.name,
            previous=previous,
            current=transition.target,
            reason=transition.reason,
            recorded_at=now,
        )
        self._events.append(change.to_json_obj())
        logger.info(
            "%s: %s %s -> %s%s",
            self.change_event_id,
            inst.name,
            previous.value,
            transition.target.value,
            f" ({transition.reason})" if transition.reason else "",
        )
        for listener in self._listeners:
            try:
                listener(change)
            except Exception as e:  # noqa: BLE001
                logger.warning("state listener %r raised: %s", listener, e)

    def _consume(self, event: ExecutionEvent) -> str:
        if event.change_event_id != self.change_event_id:
            raise ValueError(f"event for {event.change_event_id!r} delivered to {self.change_event_id!r}")
        if event.event_id in self._consumed:
            return "duplicate"
        inst = self._instance(event.goal_name)
        if is_terminal(inst.state):
            self._consumed.add(event.event_id)
            self._journal(
                "EXECUTION_EVENT_IGNORED",
                goal=inst.name,
                outputs={"event_id": event.event_id, "result": event.result.value, "state": inst.state.value},
            )
            return "ignored"
        if inst.state != GoalState.IN_PROCESS:
            raise InvalidTransition(inst.name, inst.state.value, event.result.value, detail="goal is not in process")

        self._consumed.add(event.event_id)
        inst.diagnostics = event.diagnostics
        if event.result == ExecutionResult.SUCCESS:
            if inst.definition.approval_required:
                self._apply(self._approvals.request_approval(inst))
            else:
                self._apply(Transition(inst.name, GoalState.SUCCESS, None))
        else:
            self._apply(Transition(inst.name, GoalState.FAILURE, FailureReason.EXECUTION_FAILED.value))
        return "applied"

    def _advance(self) -> None:
        """Readiness pass, repeated until no transition applies."""
        changed = True
        while changed:
            changed = False
            for name in self.graph.order:
                inst = self.instances[name]
                if inst.state == GoalState.PLANNED:
                    r = self._evaluator.structural(name, self.state_of)
                    if r == Readiness.BLOCKED:
                        dep = self._evaluator.blocking_dependency(name, self.state_of)
                        self._apply(Transition(name, GoalState.SKIPPED, f"dependency {dep} {self.state_of(dep).value}"))
                        changed = True
                    elif r == Readiness.READY:
                        if inst.definition.pre_approval_required and inst.pre_approval is None:
                            self._apply(self._approvals.request_pre_approval(inst))
                            changed = True
                        else:
                            changed = self._progress_conditions(inst) or changed
                elif inst.state == GoalState.PRE_APPROVED:
                    changed = self._progress_conditions(inst) or changed
            changed = self._admit_requested() or changed

    def _check_conditions(self, inst: GoalInstance) -> ConditionStatus:
        status = self._evaluator.goal_condition_status(inst.name)
        if status == ConditionStatus.EXHAUSTED:
            self._apply(Transition(inst.name, GoalState.FAILURE, FailureReason.PRECONDITION_EXHAUSTED.value))
        elif status != ConditionStatus.SATISFIED:
            for cond in self._evaluator.due_conditions(inst.name):
                self._evaluator.begin_attempt(inst.name, cond)
                self._spawn(self._run_condition(inst.name, cond))
        return status

    def _progress_conditions(self, inst: GoalInstance) -> bool:
        status = self._check_conditions(inst)
        if status == ConditionStatus.SATISFIED:
            self._apply(Transition(inst.name, GoalState.REQUESTED, None))
            return True
        return status == ConditionStatus.EXHAUSTED

    def _admit_requested(self) -> bool:
        changed = False
        queued: list[GoalInstance] = []
        for name in self.graph.order:
            inst = self.instances[name]
            if inst.state != GoalState.REQUESTED:
                continue
            # Retried goals re-enter here with their condition history reset.
            status = self._check_conditions(inst)
            if status == ConditionStatus.EXHAUSTED:
                changed = True
                continue
            if status != ConditionStatus.SATISFIED:
                continue
            if inst.definition.isolated:
                queued.append(inst)
            else:
                self._dispatch(inst)
                changed = True
        if queued and not any(i.definition.isolated and _holds_slot(i.state) for i in self.instances.values()):
            queued.sort(key=lambda i: (i.definition.ordering_key, i.name))
            self._dispatch(queued[0])
            changed = True
        return changed

    def _dispatch(self, inst: GoalInstance) -> None:
        try:
            dispatch = self._dispatcher.dispatch(inst)
        except NoFulfillmentRegistered as e:
            logger.error("%s: %s", self.change_event_id, e)
            self._apply(Transition(inst.name, GoalState.FAILURE, FailureReason.NO_FULFILLMENT_REGISTERED.value))
            self._pending_errors.append(e)
            return

        inst.fulfillment_id = dispatch.fulfillment_id
        f = dispatch.fulfillment
        via = f"side effect {f.name}" if isinstance(f, ExternalSideEffect) else "executor"
        self._apply(Transition(inst.name, GoalState.IN_PROCESS, f"fulfilled by {via}"))
        if dispatch.internal:
            self._spawn(self._run_executor(dispatch))
            return
        timeout = self._dispatcher.timeout_for(dispatch)
        if timeout is not None:
            self._timers[inst.name] = self._spawn(
                self._expire(inst.name, dispatch.fulfillment_id, timeout), work=False
            )

    # -- background work ------------------------------------------------------------

    def _spawn(self, coro: Coroutine[Any, Any, None], *, work: bool = True) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(coro)
        if work:
            self._work.add(task)
            task.add_done_callback(self._work.discard)
        task.add_done_callback(self._log_task_failure)
        return task

    def _log_task_failure(self, task: asyncio.Task) -> None:
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("%s: background task failed: %s", self.change_event_id, exc, exc_info=exc)

    async def _run_condition(self, goal: str, cond: CustomCondition) -> None:
        ok = await self._evaluator.attempt(goal, cond, self.change_event_id)
        async with self._lock:
            status = self._evaluator.record_attempt(goal, cond, ok)
            self._journal(
                "CONDITION_CHECKED",
                goal=goal,
                outputs={
                    "condition": cond.name,
                    "ok": ok,
                    "failed_attempts": self._evaluator.failed_attempts(goal, cond.name),
                    "retries": cond.retries,
                },
            )
            awaiting = self.instances[goal].state in (GoalState.PLANNED, GoalState.PRE_APPROVED, GoalState.REQUESTED)
            if status == ConditionStatus.WAITING and awaiting:
                self._spawn(self._recheck(goal, cond))
            self._advance()
            self._log_pending_errors()

    async def _recheck(self, goal: str, cond: CustomCondition) -> None:
        await asyncio.sleep(cond.timeout_seconds)
        async with self._lock:
            self._evaluator.release_recheck(goal, cond)
            self._advance()
            self._log_pending_errors()

    async def _run_executor(self, dispatch: Dispatch) -> None:
        event = await self._dispatcher.execute(dispatch, self.change_event_id)
        async with self._lock:
            inst = self.instances[dispatch.fulfillment.goal]
            if inst.fulfillment_id != dispatch.fulfillment_id and not is_terminal(inst.state):
                # Superseded by a retry; the newer dispatch reports for itself.
                return
            self._consume(event)
            self._advance()
            self._log_pending_errors()

    async def _expire(self, goal: str, fulfillment_id: str, timeout: float) -> None:
        await asyncio.sleep(timeout)
        async with self._lock:
            inst = self.instances[goal]
            if inst.state != GoalState.IN_PROCESS or inst.fulfillment_id != fulfillment_id:
                return
            self._timers.pop(goal, None)
            self._apply(Transition(goal, GoalState.FAILURE, FailureReason.FULFILLMENT_TIMEOUT.value))
            self._advance()
            self._log_pending_errors()

    # -- helpers --------------------------------------------------------------------

    def _journal(self, event_type: str, *, goal: str | None = None, outputs: dict[str, Any] | None = None) -> None:
        ev: dict[str, Any] = {
            "event_type": event_type,
            "change_event_id": self.change_event_id,
            "recorded_at": utc_now_iso(),
        }
        if goal is not None:
            ev["goal"] = goal
        if outputs:
            ev["outputs"] = outputs
        self._events.append(ev)

    def _surface_errors(self) -> None:
        if self._pending_errors:
            err = self._pending_errors[0]
            self._pending_errors.clear()
            raise err

    def _log_pending_errors(self) -> None:
        for err in self._pending_errors:
            logger.error("%s: configuration error during background pass: %s", self.change_event_id, err)
        self._pending_errors.clear()
