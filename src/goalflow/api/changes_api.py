from __future__ import annotations

from typing import Any

from fastapi import APIRouter, HTTPException, Request

from goalflow.api.security import enforce_write_auth, require_safe_change_id
from goalflow.contracts import validate as contracts_validate
from goalflow.core.errors import (
    AlreadyDecided,
    ConfigurationError,
    GraphConstructionError,
    InvalidTransition,
    UnknownChangeEvent,
    UnknownGoal,
    UnknownGoalSet,
)
from goalflow.engine.engine import DeliveryEngine
from goalflow.goals.catalog import GoalCatalog

router = APIRouter()


def _engine(request: Request) -> DeliveryEngine:
    return request.app.state.engine


def _catalog(request: Request) -> GoalCatalog:
    return request.app.state.catalog


async def _read_payload(request: Request, schema_version: str) -> dict[str, Any]:
    try:
        payload = await request.json()
    except Exception:  # noqa: BLE001
        raise HTTPException(status_code=400, detail="invalid json")
    if not isinstance(payload, dict):
        raise HTTPException(status_code=400, detail="body must be a json object")
    code, msg = contracts_validate.validate_payload(payload, schema_version=schema_version)
    if code != contracts_validate.EXIT_OK:
        raise HTTPException(status_code=422, detail=msg)
    return payload


def _http_error(e: Exception) -> HTTPException:
    if isinstance(e, (UnknownChangeEvent, UnknownGoal, UnknownGoalSet)):
        return HTTPException(status_code=404, detail=str(e))
    if isinstance(e, AlreadyDecided):
        return HTTPException(status_code=409, detail={"error": str(e), "record": e.record.to_json_obj()})
    if isinstance(e, (InvalidTransition, ConfigurationError)):
        return HTTPException(status_code=409, detail=str(e))
    if isinstance(e, (GraphConstructionError, ValueError)):
        return HTTPException(status_code=422, detail=str(e))
    return HTTPException(status_code=500, detail=str(e))


@router.get("/changes")
def list_changes(request: Request) -> dict[str, Any]:
    return {"changes": _engine(request).list_change_events()}


@router.post("/changes")
async def submit_change(request: Request) -> dict[str, Any]:
    """Resolve the named goal sets from the catalog and submit the graph."""
    enforce_write_auth(request)
    payload = await _read_payload(request, "change_submission_v1")
    cid = require_safe_change_id(payload["change_event_id"])
    try:
        graph = _catalog(request).resolve(payload["goal_sets"])
        handle = await _engine(request).submit(cid, graph, scope=payload.get("scope"))
    except Exception as e:  # noqa: BLE001
        raise _http_error(e)
    return {
        "change_event_id": handle.change_event_id,
        "fingerprint": handle.fingerprint,
        "created": handle.created,
        "goals": list(graph.order),
    }


@router.get("/changes/{change_event_id}")
def get_change(request: Request, change_event_id: str) -> dict[str, Any]:
    cid = require_safe_change_id(change_event_id)
    try:
        snap = _engine(request).current_state(cid)
    except UnknownChangeEvent as e:
        raise HTTPException(status_code=404, detail=str(e))
    return snap.to_json_obj()


@router.post("/changes/{change_event_id}/goals/{goal_name}/completion")
async def report_completion(request: Request, change_event_id: str, goal_name: str) -> dict[str, Any]:
    enforce_write_auth(request)
    cid = require_safe_change_id(change_event_id)
    payload = await _read_payload(request, "completion_report_v1")
    try:
        outcome = await _engine(request).report_completion(
            cid,
            goal_name,
            payload["result"],
            payload.get("diagnostics"),
            event_id=payload.get("event_id"),
        )
    except Exception as e:  # noqa: BLE001
        raise _http_error(e)
    return {"change_event_id": cid, "goal": goal_name, "outcome": outcome}


async def _decide(request: Request, change_event_id: str, goal_name: str, *, pre: bool) -> dict[str, Any]:
    enforce_write_auth(request)
    cid = require_safe_change_id(change_event_id)
    payload = await _read_payload(request, "approval_decision_v1")
    approved = payload["decision"] == "grant"
    engine = _engine(request)
    try:
        if pre:
            record = await engine.decide_pre_approval(cid, goal_name, payload["approver"], approved=approved)
        else:
            record = await engine.decide_approval(cid, goal_name, payload["approver"], approved=approved)
    except Exception as e:  # noqa: BLE001
        raise _http_error(e)
    return {"change_event_id": cid, "goal": goal_name, "record": record.to_json_obj()}


@router.post("/changes/{change_event_id}/goals/{goal_name}/pre-approval")
async def decide_pre_approval(request: Request, change_event_id: str, goal_name: str) -> dict[str, Any]:
    return await _decide(request, change_event_id, goal_name, pre=True)


@router.post("/changes/{change_event_id}/goals/{goal_name}/approval")
async def decide_approval(request: Request, change_event_id: str, goal_name: str) -> dict[str, Any]:
    return await _decide(request, change_event_id, goal_name, pre=False)


@router.post("/changes/{change_event_id}/goals/{goal_name}/retry")
async def retry_goal(request: Request, change_event_id: str, goal_name: str) -> dict[str, Any]:
    enforce_write_auth(request)
    cid = require_safe_change_id(change_event_id)
    engine = _engine(request)
    try:
        skipped = await engine.request_retry(cid, goal_name)
    except Exception as e:  # noqa: BLE001
        raise _http_error(e)
    return {
        "change_event_id": cid,
        "goal": goal_name,
        "state": engine.current_state(cid).state_of(goal_name).value,
        "skipped_dependents": list(skipped),
    }


@router.post("/changes/{change_event_id}/cancel")
async def cancel_change(request: Request, change_event_id: str) -> dict[str, Any]:
    enforce_write_auth(request)
    cid = require_safe_change_id(change_event_id)
    payload = await _read_payload(request, "cancellation_request_v1")
    kwargs: dict[str, Any] = {}
    if payload.get("reason"):
        kwargs["reason"] = payload["reason"]
    try:
        transitions = await _engine(request).request_cancellation(cid, payload["goals"], **kwargs)
    except Exception as e:  # noqa: BLE001
        raise _http_error(e)
    return {
        "change_event_id": cid,
        "affected": [{"goal": t.goal, "to": t.target.value, "reason": t.reason} for t in transitions],
    }
