from __future__ import annotations

import asyncio
from pathlib import Path

import pytest

from goalflow.core.config import EngineConfig
from goalflow.core.errors import UnknownCondition
from goalflow.engine.engine import DeliveryEngine
from goalflow.goals.types import CustomCondition, GoalDefinition
from goalflow.planner.compose import compose
from goalflow.planner.goalset import goals
from goalflow.runtime.preconditions import ConditionStatus, PreconditionEvaluator, Readiness
from goalflow.runtime.states import GoalState


def _engine() -> DeliveryEngine:
    cfg = EngineConfig(catalog_path=Path("unused.yaml"), fulfillment_timeout_seconds=None, log_level="INFO")
    return DeliveryEngine(config=cfg)


def _graph(retries: int, timeout: float = 0.01):
    tag = GoalDefinition(name="tag")
    staging = GoalDefinition(
        name="update-staging",
        conditions=(CustomCondition(name="commit-indexed", retries=retries, timeout_seconds=timeout),),
    )
    deploy = GoalDefinition(name="deploy")
    return compose([goals("Staging").plan(tag).plan(staging).after(tag).plan(deploy).after(staging)])


def _run_with_predicate(predicate, retries: int, timeout: float = 0.01):
    async def run():
        engine = _engine()
        engine.register_condition("commit-indexed", predicate)
        for n in ("tag", "update-staging", "deploy"):
            engine.register_side_effect(n)
        await engine.submit("push-1", _graph(retries, timeout))
        await engine.report_completion("push-1", "tag", "success")
        await engine.drain("push-1")
        snap = engine.current_state("push-1")
        await engine.close()
        return snap

    return asyncio.run(run())


@pytest.mark.parametrize("retries", [1, 3, 5])
def test_condition_exhausted_after_exactly_n_failed_attempts(retries: int) -> None:
    calls = []

    def never(change_event_id: str) -> bool:
        calls.append(change_event_id)
        return False

    snap = _run_with_predicate(never, retries)
    assert len(calls) == retries
    assert snap.state_of("update-staging") == GoalState.FAILURE
    row = [g for g in snap.goals if g["goal"] == "update-staging"][0]
    assert row["reason"] == "precondition_exhausted"
    assert snap.state_of("deploy") == GoalState.SKIPPED
    checks = [e for e in snap.events if e["event_type"] == "CONDITION_CHECKED"]
    assert [e["outputs"]["failed_attempts"] for e in checks] == list(range(1, retries + 1))


def test_condition_satisfied_on_last_allowed_attempt() -> None:
    calls = []

    async def third_time(change_event_id: str) -> bool:
        calls.append(change_event_id)
        return len(calls) == 3

    snap = _run_with_predicate(third_time, retries=3)
    assert len(calls) == 3
    assert snap.state_of("update-staging") == GoalState.IN_PROCESS


def test_slow_or_raising_attempts_count_as_failures() -> None:
    calls = []

    async def slow(change_event_id: str) -> bool:
        calls.append(1)
        if len(calls) == 1:
            raise RuntimeError("index service down")
        await asyncio.sleep(1)
        return True

    snap = _run_with_predicate(slow, retries=2, timeout=0.01)
    assert len(calls) == 2
    assert snap.state_of("update-staging") == GoalState.FAILURE


def test_submit_rejects_unregistered_condition() -> None:
    async def run():
        engine = _engine()
        for n in ("tag", "update-staging", "deploy"):
            engine.register_side_effect(n)
        await engine.submit("push-1", _graph(1))

    with pytest.raises(UnknownCondition):
        asyncio.run(run())


def test_evaluator_structural_readiness() -> None:
    graph = _graph(2)
    ev = PreconditionEvaluator(graph, {})
    states = {"tag": GoalState.IN_PROCESS, "update-staging": GoalState.PLANNED, "deploy": GoalState.PLANNED}
    assert ev.structural("update-staging", states.__getitem__) == Readiness.NOT_READY
    states["tag"] = GoalState.SUCCESS
    assert ev.structural("update-staging", states.__getitem__) == Readiness.READY
    assert ev.is_ready("update-staging", states.__getitem__) == Readiness.NOT_READY
    states["tag"] = GoalState.CANCELED
    assert ev.structural("update-staging", states.__getitem__) == Readiness.BLOCKED
    assert ev.blocking_dependency("update-staging", states.__getitem__) == "tag"


def test_evaluator_attempt_counters() -> None:
    graph = _graph(2)
    cond = graph.definition("update-staging").conditions[0]
    ev = PreconditionEvaluator(graph, {})
    assert ev.goal_condition_status("update-staging") == ConditionStatus.DUE
    ev.begin_attempt("update-staging", cond)
    assert ev.goal_condition_status("update-staging") == ConditionStatus.CHECKING
    assert ev.record_attempt("update-staging", cond, False) == ConditionStatus.WAITING
    ev.release_recheck("update-staging", cond)
    assert ev.due_conditions("update-staging") == (cond,)
    assert ev.record_attempt("update-staging", cond, False) == ConditionStatus.EXHAUSTED
    assert ev.failed_attempts("update-staging", "commit-indexed") == 2
    ev.reset("update-staging")
    assert ev.failed_attempts("update-staging", "commit-indexed") == 0
    assert ev.goal_condition_status("deploy") == ConditionStatus.SATISFIED
