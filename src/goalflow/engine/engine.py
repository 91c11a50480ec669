from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Callable, Iterable

from goalflow.core.config import EngineConfig
from goalflow.core.errors import ConflictingResubmission, NoFulfillmentRegistered, UnknownChangeEvent, UnknownCondition
from goalflow.goals.registry import GoalRegistry
from goalflow.planner.compose import ResolvedGraph
from goalflow.runtime.fulfillment import ExecutorHandler, ExternalSideEffect, FulfillmentDispatcher, InternalExecutor
from goalflow.runtime.instance import (
    ApprovalRecord,
    CancellationRequest,
    ExecutionEvent,
    ExecutionResult,
    GraphSnapshot,
    StateChange,
    Transition,
)
from goalflow.runtime.preconditions import ConditionPredicate
from goalflow.runtime.scheduler import GraphRun, StateListener

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class GraphHandle:
    change_event_id: str
    fingerprint: str
    created: bool


class DeliveryEngine:
    """Entry point for hosts: owns one GraphRun per change event.

    Graph runs are independent; only submission is serialized engine-wide so that
    idempotency checks and supersede cancellation see a consistent set of runs.
    """

    def __init__(self, *, config: EngineConfig | None = None, registry: GoalRegistry | None = None) -> None:
        self.config = config or EngineConfig.from_env()
        self.registry = registry
        self._dispatcher = FulfillmentDispatcher(default_timeout_seconds=self.config.fulfillment_timeout_seconds)
        self._predicates: dict[str, ConditionPredicate] = {}
        self._listeners: list[StateListener] = []
        self._runs: dict[str, GraphRun] = {}
        self._submit_lock = asyncio.Lock()

    # -- registration ---------------------------------------------------------------

    def register_condition(self, name: str, predicate: ConditionPredicate) -> None:
        name = str(name or "").strip()
        if not name:
            raise ValueError("condition name must be non-empty")
        if not callable(predicate):
            raise TypeError(f"predicate for condition {name!r} must be callable")
        self._predicates[name] = predicate

    def register_executor(self, goal_name: str, handler: ExecutorHandler) -> InternalExecutor:
        self._check_known(goal_name)
        return self._dispatcher.register_executor(goal_name, handler)

    def register_side_effect(
        self, goal_name: str, name: str | None = None, *, timeout_seconds: float | None = None
    ) -> ExternalSideEffect:
        self._check_known(goal_name)
        return self._dispatcher.register_side_effect(goal_name, name, timeout_seconds=timeout_seconds)

    def subscribe(self, listener: StateListener) -> Callable[[], None]:
        """Call ``listener`` with every applied StateChange; returns an unsubscribe callable."""
        self._listeners.append(listener)

        def _unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe

    def _check_known(self, goal_name: str) -> None:
        if self.registry is not None:
            self.registry.lookup(str(goal_name).strip())

    def _notify(self, change: StateChange) -> None:
        for listener in list(self._listeners):
            try:
                listener(change)
            except Exception as e:  # noqa: BLE001
                logger.warning("state listener %r raised: %s", listener, e)

    # -- submission -----------------------------------------------------------------

    async def submit(self, change_event_id: str, graph: ResolvedGraph, *, scope: str | None = None) -> GraphHandle:
        cid = str(change_event_id or "").strip()
        if not cid:
            raise ValueError("change_event_id must be non-empty")
        async with self._submit_lock:
            existing = self._runs.get(cid)
            if existing is not None:
                if existing.graph.fingerprint != graph.fingerprint:
                    raise ConflictingResubmission(cid, existing=existing.graph.fingerprint, submitted=graph.fingerprint)
                logger.info("%s: resubmitted with identical graph; no-op", cid)
                return GraphHandle(change_event_id=cid, fingerprint=graph.fingerprint, created=False)

            missing = self._dispatcher.missing(graph.order)
            if missing:
                raise NoFulfillmentRegistered(missing[0])
            for name in graph.order:
                for cond in graph.goals[name].conditions:
                    if cond.name not in self._predicates:
                        raise UnknownCondition(cond.name, goal=name)

            await self._evict_finished()
            run = GraphRun(
                change_event_id=cid,
                graph=graph,
                dispatcher=self._dispatcher,
                predicates=self._predicates,
                scope=scope,
                listeners=(self._notify,),
            )
            superseded = [r for r in self._runs.values() if scope and r.scope == scope and r.live]
            self._runs[cid] = run
            logger.info("%s: submitted graph %s (%d goals)", cid, graph.name, len(graph))

            for prior in superseded:
                await self._supersede(prior, graph, cid)
            await run.start()
            return GraphHandle(change_event_id=cid, fingerprint=graph.fingerprint, created=True)

    async def _evict_finished(self) -> None:
        """Drop the oldest finished runs beyond ``retain_finished_runs``."""
        finished = [cid for cid, r in self._runs.items() if not r.live]
        excess = len(finished) - self.config.retain_finished_runs
        for cid in finished[: max(excess, 0)]:
            run = self._runs.pop(cid)
            await run.close()
            logger.info("%s: finished run evicted", cid)

    async def _supersede(self, prior: GraphRun, graph: ResolvedGraph, cid: str) -> list[Transition]:
        names = tuple(n for n in graph.supersedes if n in prior.graph)
        if not names:
            return []
        logger.info("%s: superseded by %s (%s)", prior.change_event_id, cid, ", ".join(names))
        return await prior.cancel(
            CancellationRequest(change_event_id=prior.change_event_id, goal_names=names, reason=f"superseded by {cid}")
        )

    # -- triggers -------------------------------------------------------------------

    def _run(self, change_event_id: str) -> GraphRun:
        run = self._runs.get(str(change_event_id or "").strip())
        if run is None:
            raise UnknownChangeEvent(change_event_id)
        return run

    async def report_completion(
        self,
        change_event_id: str,
        goal_name: str,
        result: ExecutionResult | str,
        diagnostics: Any = None,
        *,
        event_id: str | None = None,
    ) -> str:
        """Feed an execution outcome; returns "applied", "duplicate" or "ignored"."""
        run = self._run(change_event_id)
        kwargs: dict[str, Any] = {}
        if event_id:
            kwargs["event_id"] = str(event_id)
        event = ExecutionEvent(
            change_event_id=run.change_event_id,
            goal_name=str(goal_name).strip(),
            result=ExecutionResult(result),
            diagnostics=diagnostics,
            **kwargs,
        )
        return await run.apply_execution_event(event)

    async def decide_pre_approval(
        self, change_event_id: str, goal_name: str, approver: str, *, approved: bool = True
    ) -> ApprovalRecord:
        return await self._run(change_event_id).decide_pre_approval(goal_name, approver, approved=approved)

    async def decide_approval(
        self, change_event_id: str, goal_name: str, approver: str, *, approved: bool = True
    ) -> ApprovalRecord:
        return await self._run(change_event_id).decide_approval(goal_name, approver, approved=approved)

    async def request_cancellation(
        self, change_event_id: str, goal_names: Iterable[str], *, reason: str = "cancellation requested"
    ) -> list[Transition]:
        run = self._run(change_event_id)
        request = CancellationRequest(change_event_id=run.change_event_id, goal_names=tuple(goal_names), reason=reason)
        return await run.cancel(request)

    async def request_retry(self, change_event_id: str, goal_name: str) -> tuple[str, ...]:
        """Retry a failed goal; returns the dependents that stay skipped from its earlier failure."""
        return await self._run(change_event_id).retry(goal_name)

    # -- observation ----------------------------------------------------------------

    def current_state(self, change_event_id: str) -> GraphSnapshot:
        return self._run(change_event_id).snapshot()

    def list_change_events(self) -> list[dict[str, Any]]:
        return [
            {
                "change_event_id": cid,
                "graph_name": run.graph.name,
                "fingerprint": run.graph.fingerprint,
                "scope": run.scope,
                "live": run.live,
            }
            for cid, run in self._runs.items()
        ]

    async def drain(self, change_event_id: str | None = None) -> None:
        if change_event_id is not None:
            await self._run(change_event_id).drain()
            return
        for run in list(self._runs.values()):
            await run.drain()

    async def close(self) -> None:
        for run in list(self._runs.values()):
            await run.close()
