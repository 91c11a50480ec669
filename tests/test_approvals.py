from __future__ import annotations

import asyncio
from pathlib import Path

import pytest

from goalflow.core.config import EngineConfig
from goalflow.core.errors import AlreadyDecided, InvalidTransition
from goalflow.engine.engine import DeliveryEngine
from goalflow.goals.types import GoalDefinition
from goalflow.planner.compose import compose
from goalflow.planner.goalset import goals
from goalflow.runtime.approvals import ApprovalGateManager
from goalflow.runtime.instance import ApprovalDecision, ApprovalGate, GoalInstance
from goalflow.runtime.states import GoalState

STAGING = GoalDefinition(name="deploy-to-staging", ordering_key="5.1")
PROD_SPECS = GoalDefinition(name="update-prod-k8-specs", ordering_key="7", pre_approval_required=True)
PROD = GoalDefinition(name="deploy-to-prod", ordering_key="7.1")


def _engine() -> DeliveryEngine:
    cfg = EngineConfig(catalog_path=Path("unused.yaml"), fulfillment_timeout_seconds=None, log_level="INFO")
    engine = DeliveryEngine(config=cfg)
    for g in (STAGING, PROD_SPECS, PROD):
        engine.register_side_effect(g.name)
    return engine


def _graph():
    return compose([goals("Prod").plan(STAGING).plan(PROD_SPECS).after(STAGING).plan(PROD).after(PROD_SPECS)])


def test_pre_approval_gates_start() -> None:
    async def run():
        engine = _engine()
        await engine.submit("push-1", _graph())
        with pytest.raises(InvalidTransition):
            await engine.decide_pre_approval("push-1", "update-prod-k8-specs", "ops")
        await engine.report_completion("push-1", "deploy-to-staging", "success")
        waiting = engine.current_state("push-1").state_of("update-prod-k8-specs")

        record = await engine.decide_pre_approval("push-1", "update-prod-k8-specs", "ops")
        started = engine.current_state("push-1").state_of("update-prod-k8-specs")

        with pytest.raises(AlreadyDecided) as ei:
            await engine.decide_pre_approval("push-1", "update-prod-k8-specs", "someone-else", approved=False)
        await engine.close()
        return waiting, record, started, ei.value

    waiting, record, started, err = asyncio.run(run())
    assert waiting == GoalState.WAITING_FOR_PRE_APPROVAL
    assert record.gate == ApprovalGate.PRE
    assert record.decision == ApprovalDecision.GRANTED
    assert started == GoalState.IN_PROCESS
    assert err.record == record


def test_pre_approval_denied_cancels_and_skips_dependents() -> None:
    async def run():
        engine = _engine()
        await engine.submit("push-1", _graph())
        await engine.report_completion("push-1", "deploy-to-staging", "success")
        await engine.decide_pre_approval("push-1", "update-prod-k8-specs", "ops", approved=False)
        snap = engine.current_state("push-1")
        await engine.close()
        return snap

    snap = asyncio.run(run())
    assert snap.state_of("update-prod-k8-specs") == GoalState.CANCELED
    assert snap.state_of("deploy-to-prod") == GoalState.SKIPPED


def test_approval_denied_cancels_goal() -> None:
    build = GoalDefinition(name="build", approval_required=True)
    tag = GoalDefinition(name="tag")
    graph = compose([goals("B").plan(build).plan(tag).after(build)])

    async def run():
        engine = DeliveryEngine(
            config=EngineConfig(catalog_path=Path("unused.yaml"), fulfillment_timeout_seconds=None, log_level="INFO")
        )
        engine.register_side_effect("build")
        engine.register_side_effect("tag")
        await engine.submit("push-1", graph)
        await engine.report_completion("push-1", "build", "success")
        await engine.decide_approval("push-1", "build", "qa", approved=False)
        snap = engine.current_state("push-1")
        await engine.close()
        return snap

    snap = asyncio.run(run())
    assert snap.state_of("build") == GoalState.CANCELED
    assert snap.state_of("tag") == GoalState.SKIPPED


def test_gate_manager_rejects_blank_approver_and_wrong_state() -> None:
    mgr = ApprovalGateManager()
    inst = GoalInstance(definition=PROD_SPECS)
    with pytest.raises(InvalidTransition):
        mgr.grant_approval(inst, "ops")
    inst.state = GoalState.WAITING_FOR_PRE_APPROVAL
    with pytest.raises(ValueError):
        mgr.grant_pre_approval(inst, "  ")
    record, transition = mgr.grant_pre_approval(inst, "ops")
    assert transition.target == GoalState.PRE_APPROVED
    assert record.to_json_obj()["approver"] == "ops"
