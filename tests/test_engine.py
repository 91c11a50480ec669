from __future__ import annotations

import asyncio
from pathlib import Path

import pytest

from goalflow.core.config import EngineConfig
from goalflow.core.errors import (
    ConflictingResubmission,
    DuplicateFulfillment,
    InvalidTransition,
    NoFulfillmentRegistered,
    UnknownChangeEvent,
    UnknownGoal,
)
from goalflow.engine.engine import DeliveryEngine
from goalflow.goals.registry import GoalRegistry
from goalflow.goals.types import CustomCondition, GoalDefinition
from goalflow.planner.compose import compose
from goalflow.planner.goalset import goals
from goalflow.runtime.instance import ExecutionEvent, StateChange
from goalflow.runtime.states import GoalState

BUILD = GoalDefinition(name="build", ordering_key="1-build")
TAG = GoalDefinition(name="tag", ordering_key="4-tag")
IT = GoalDefinition(name="integration-test", ordering_key="6-integration-tests", retry_feasible=True)


def _engine(timeout: float | None = None, **kw) -> DeliveryEngine:
    cfg = EngineConfig(catalog_path=Path("unused.yaml"), fulfillment_timeout_seconds=timeout, log_level="INFO")
    return DeliveryEngine(config=cfg, **kw)


def _graph():
    return compose([goals("Build").plan(BUILD).plan(TAG).after(BUILD)])


def _row(snap, goal):
    return [g for g in snap.goals if g["goal"] == goal][0]


def test_resubmission_is_idempotent_and_conflicts_are_rejected() -> None:
    async def run():
        engine = _engine()
        engine.register_side_effect("build")
        engine.register_side_effect("tag")
        first = await engine.submit("push-1", _graph())
        again = await engine.submit("push-1", _graph())
        before = engine.current_state("push-1")
        with pytest.raises(ConflictingResubmission):
            await engine.submit("push-1", compose([goals("Only").plan(BUILD)]))
        await engine.close()
        return first, again, before

    first, again, before = asyncio.run(run())
    assert first.created and not again.created
    assert first.fingerprint == again.fingerprint
    assert len([e for e in before.events if e["event_type"] == "SUBMITTED"]) == 1


def test_missing_fulfillment_rejected_before_graph_is_created() -> None:
    async def run():
        engine = _engine()
        engine.register_side_effect("build")
        with pytest.raises(NoFulfillmentRegistered) as ei:
            await engine.submit("push-1", _graph())
        assert ei.value.goal == "tag"
        with pytest.raises(UnknownChangeEvent):
            engine.current_state("push-1")
        assert engine.list_change_events() == []

    asyncio.run(run())


def test_duplicate_and_late_completion_reports() -> None:
    async def run():
        engine = _engine()
        engine.register_side_effect("build")
        engine.register_side_effect("tag")
        await engine.submit("push-1", _graph())
        with pytest.raises(InvalidTransition):
            await engine.report_completion("push-1", "tag", "success")
        assert await engine.report_completion("push-1", "build", "success", event_id="evt-1") == "applied"
        assert await engine.report_completion("push-1", "build", "failure", event_id="evt-1") == "duplicate"
        assert await engine.report_completion("push-1", "build", "failure", event_id="evt-2") == "ignored"
        with pytest.raises(UnknownGoal):
            await engine.report_completion("push-1", "publish", "success")
        with pytest.raises(UnknownChangeEvent):
            await engine.report_completion("push-2", "build", "success")
        snap = engine.current_state("push-1")
        await engine.close()
        return snap

    snap = asyncio.run(run())
    assert snap.state_of("build") == GoalState.SUCCESS
    assert snap.state_of("tag") == GoalState.IN_PROCESS
    assert any(e["event_type"] == "EXECUTION_EVENT_IGNORED" for e in snap.events)


def test_side_effect_timeout_fails_goal_and_skips_dependents() -> None:
    async def run():
        engine = _engine(timeout=0.02)
        engine.register_side_effect("build")
        engine.register_side_effect("tag")
        await engine.submit("push-1", _graph())
        await asyncio.sleep(0.1)
        snap = engine.current_state("push-1")
        late = await engine.report_completion("push-1", "build", "success")
        await engine.close()
        return snap, late

    snap, late = asyncio.run(run())
    assert snap.state_of("build") == GoalState.FAILURE
    assert _row(snap, "build")["reason"] == "fulfillment_timeout"
    assert snap.state_of("tag") == GoalState.SKIPPED
    assert late == "ignored"


def test_timer_is_cancelled_when_goal_completes() -> None:
    async def run():
        engine = _engine()
        engine.register_side_effect("build", timeout_seconds=0.05)
        engine.register_side_effect("tag")
        await engine.submit("push-1", _graph())
        await engine.report_completion("push-1", "build", "success")
        await asyncio.sleep(0.1)
        snap = engine.current_state("push-1")
        await engine.close()
        return snap

    snap = asyncio.run(run())
    assert snap.state_of("build") == GoalState.SUCCESS


def test_internal_executors_run_and_report() -> None:
    async def build(change_event_id: str) -> ExecutionEvent:
        await asyncio.sleep(0)
        return ExecutionEvent.success(change_event_id, "build", diagnostics={"artifact": "app.jar"})

    def tag(change_event_id: str) -> ExecutionEvent:
        raise RuntimeError("git push rejected")

    async def run():
        engine = _engine()
        engine.register_executor("build", build)
        engine.register_executor("tag", tag)
        await engine.submit("push-1", _graph())
        await engine.drain()
        snap = engine.current_state("push-1")
        await engine.close()
        return snap

    snap = asyncio.run(run())
    assert snap.state_of("build") == GoalState.SUCCESS
    assert _row(snap, "build")["diagnostics"] == {"artifact": "app.jar"}
    assert snap.state_of("tag") == GoalState.FAILURE
    assert _row(snap, "tag")["diagnostics"] == {"error": "RuntimeError: git push rejected"}


def test_executor_returning_wrong_type_fails_goal() -> None:
    async def run():
        engine = _engine()
        engine.register_executor("build", lambda cid: True)
        engine.register_side_effect("tag")
        await engine.submit("push-1", _graph())
        await engine.drain("push-1")
        snap = engine.current_state("push-1")
        await engine.close()
        return snap

    snap = asyncio.run(run())
    assert snap.state_of("build") == GoalState.FAILURE
    assert "expected ExecutionEvent" in _row(snap, "build")["diagnostics"]["error"]


def test_registration_checks() -> None:
    registry = GoalRegistry.from_definitions([BUILD, TAG])
    engine = _engine(registry=registry)
    engine.register_side_effect("build")
    with pytest.raises(DuplicateFulfillment):
        engine.register_executor("build", lambda cid: None)
    with pytest.raises(UnknownGoal):
        engine.register_side_effect("publish")
    with pytest.raises(ValueError):
        engine.register_side_effect("tag", timeout_seconds=0)


def test_listeners_receive_every_applied_change() -> None:
    seen: list[StateChange] = []
    dropped: list[StateChange] = []

    def broken(change: StateChange) -> None:
        raise RuntimeError("status sink down")

    async def run():
        engine = _engine()
        engine.subscribe(seen.append)
        engine.subscribe(broken)
        unsubscribe = engine.subscribe(dropped.append)
        unsubscribe()
        engine.register_side_effect("build")
        engine.register_side_effect("tag")
        await engine.submit("push-1", _graph())
        await engine.report_completion("push-1", "build", "success")
        await engine.close()

    asyncio.run(run())
    assert dropped == []
    assert [(c.goal, c.current) for c in seen] == [
        ("build", GoalState.REQUESTED),
        ("build", GoalState.IN_PROCESS),
        ("build", GoalState.SUCCESS),
        ("tag", GoalState.REQUESTED),
        ("tag", GoalState.IN_PROCESS),
    ]
    assert seen[0].to_json_obj()["outputs"] == {"from": "planned", "to": "requested", "reason": None}


def test_retry_of_retry_feasible_goal() -> None:
    graph = compose([goals("IT").plan(BUILD).plan(IT).after(BUILD).plan(TAG).after(IT)])

    async def run():
        engine = _engine()
        engine.register_side_effect("build")
        engine.register_side_effect("integration-test")
        engine.register_side_effect("tag")
        await engine.submit("push-1", graph)
        await engine.report_completion("push-1", "build", "failure")
        with pytest.raises(InvalidTransition):
            await engine.request_retry("push-1", "build")

        await engine.submit("push-2", graph)
        await engine.report_completion("push-2", "build", "success")
        with pytest.raises(InvalidTransition):
            await engine.request_retry("push-2", "integration-test")
        await engine.report_completion("push-2", "integration-test", "failure")
        skipped = await engine.request_retry("push-2", "integration-test")
        retried = engine.current_state("push-2")
        await engine.report_completion("push-2", "integration-test", "success")
        snap = engine.current_state("push-2")
        await engine.close()
        return skipped, retried, snap

    skipped, retried, snap = asyncio.run(run())
    assert skipped == ("tag",)
    assert retried.state_of("integration-test") == GoalState.IN_PROCESS
    assert _row(retried, "integration-test")["retry_count"] == 1
    assert snap.state_of("integration-test") == GoalState.SUCCESS
    assert snap.state_of("tag") == GoalState.SKIPPED


def _gated_graph(retries: int = 1):
    gated = GoalDefinition(
        name="integration-test",
        ordering_key="6-integration-tests",
        retry_feasible=True,
        conditions=(CustomCondition(name="env-ready", retries=retries, timeout_seconds=0.01),),
    )
    return compose([goals("Gated").plan(gated)])


def test_retry_evaluates_conditions_again() -> None:
    calls: list[str] = []

    def env_ready(cid: str) -> bool:
        calls.append(cid)
        return len(calls) >= 2

    async def run():
        engine = _engine()
        engine.register_condition("env-ready", env_ready)
        engine.register_side_effect("integration-test")
        await engine.submit("push-1", _gated_graph())
        await engine.drain()
        failed = engine.current_state("push-1")
        await engine.request_retry("push-1", "integration-test")
        pending = engine.current_state("push-1")
        await engine.drain()
        snap = engine.current_state("push-1")
        await engine.close()
        return failed, pending, snap

    failed, pending, snap = asyncio.run(run())
    assert failed.state_of("integration-test") == GoalState.FAILURE
    assert _row(failed, "integration-test")["reason"] == "precondition_exhausted"
    assert pending.state_of("integration-test") == GoalState.REQUESTED
    assert snap.state_of("integration-test") == GoalState.IN_PROCESS
    assert len(calls) == 2


def test_retry_fails_again_when_conditions_stay_false() -> None:
    calls: list[str] = []

    def env_ready(cid: str) -> bool:
        calls.append(cid)
        return False

    async def run():
        engine = _engine()
        engine.register_condition("env-ready", env_ready)
        engine.register_side_effect("integration-test")
        await engine.submit("push-1", _gated_graph())
        await engine.drain()
        await engine.request_retry("push-1", "integration-test")
        await engine.drain()
        snap = engine.current_state("push-1")
        await engine.close()
        return snap

    snap = asyncio.run(run())
    assert snap.state_of("integration-test") == GoalState.FAILURE
    assert _row(snap, "integration-test")["reason"] == "precondition_exhausted"
    assert _row(snap, "integration-test")["retry_count"] == 1
    assert len(calls) == 2


def test_supersede_cancels_earlier_change_in_same_scope() -> None:
    deploy = GoalDefinition(name="deploy", ordering_key="5-deploy")
    graph = compose([goals("Release").plan(BUILD).plan(deploy).after(BUILD).with_supersedes(BUILD, deploy)])

    async def run():
        engine = _engine()
        engine.register_side_effect("build")
        engine.register_side_effect("deploy")
        await engine.submit("push-1", graph, scope="org/repo#main")
        await engine.submit("push-other", graph, scope="org/other#main")
        await engine.submit("push-2", graph, scope="org/repo#main")
        out = {cid: engine.current_state(cid) for cid in ("push-1", "push-other", "push-2")}
        listing = engine.list_change_events()
        await engine.close()
        return out, listing

    out, listing = asyncio.run(run())
    first = out["push-1"]
    assert first.state_of("build") == GoalState.STOPPED
    assert first.state_of("deploy") == GoalState.CANCELED
    assert _row(first, "build")["reason"] == "superseded by push-2"
    assert out["push-other"].state_of("build") == GoalState.IN_PROCESS
    assert out["push-2"].state_of("build") == GoalState.IN_PROCESS
    assert {row["change_event_id"]: row["live"] for row in listing} == {
        "push-1": False,
        "push-other": True,
        "push-2": True,
    }


def test_oldest_finished_runs_are_evicted() -> None:
    graph = compose([goals("Only").plan(BUILD)])
    cfg = EngineConfig(
        catalog_path=Path("unused.yaml"), fulfillment_timeout_seconds=None, log_level="INFO", retain_finished_runs=1
    )

    async def run():
        engine = DeliveryEngine(config=cfg)
        engine.register_side_effect("build")
        for cid in ("push-1", "push-2"):
            await engine.submit(cid, graph)
            await engine.report_completion(cid, "build", "success")
        await engine.submit("push-3", graph)
        with pytest.raises(UnknownChangeEvent):
            engine.current_state("push-1")
        again = await engine.submit("push-2", graph)
        await engine.submit("push-4", graph)
        listing = [row["change_event_id"] for row in engine.list_change_events()]
        await engine.close()
        return again, listing

    again, listing = asyncio.run(run())
    assert not again.created
    assert listing == ["push-2", "push-3", "push-4"]
