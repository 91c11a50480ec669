from __future__ import annotations

from goalflow.core.errors import AlreadyDecided, InvalidTransition
from goalflow.runtime.instance import (
    ApprovalDecision,
    ApprovalGate,
    ApprovalRecord,
    GoalInstance,
    Transition,
)
from goalflow.runtime.states import GoalState


class ApprovalGateManager:
    """Pre-start and post-completion sign-off gates.

    Decisions are written once per gate as an ``ApprovalRecord``; the returned
    ``Transition`` is only a proposal for the scheduler.
    """

    def request_pre_approval(self, instance: GoalInstance) -> Transition:
        if instance.state != GoalState.PLANNED:
            raise InvalidTransition(instance.name, instance.state.value, GoalState.WAITING_FOR_PRE_APPROVAL.value)
        return Transition(instance.name, GoalState.WAITING_FOR_PRE_APPROVAL, "pre-approval required")

    def grant_pre_approval(self, instance: GoalInstance, approver: str) -> tuple[ApprovalRecord, Transition]:
        record = self._decide(instance, ApprovalGate.PRE, ApprovalDecision.GRANTED, approver)
        return record, Transition(instance.name, GoalState.PRE_APPROVED, f"pre-approved by {approver}")

    def deny_pre_approval(self, instance: GoalInstance, approver: str) -> tuple[ApprovalRecord, Transition]:
        record = self._decide(instance, ApprovalGate.PRE, ApprovalDecision.DENIED, approver)
        return record, Transition(instance.name, GoalState.CANCELED, f"pre-approval denied by {approver}")

    def request_approval(self, instance: GoalInstance) -> Transition:
        if instance.state != GoalState.IN_PROCESS:
            raise InvalidTransition(instance.name, instance.state.value, GoalState.WAITING_FOR_APPROVAL.value)
        return Transition(instance.name, GoalState.WAITING_FOR_APPROVAL, "approval required")

    def grant_approval(self, instance: GoalInstance, approver: str) -> tuple[ApprovalRecord, Transition]:
        record = self._decide(instance, ApprovalGate.POST, ApprovalDecision.GRANTED, approver)
        return record, Transition(instance.name, GoalState.APPROVED, f"approved by {approver}")

    def deny_approval(self, instance: GoalInstance, approver: str) -> tuple[ApprovalRecord, Transition]:
        record = self._decide(instance, ApprovalGate.POST, ApprovalDecision.DENIED, approver)
        return record, Transition(instance.name, GoalState.CANCELED, f"approval denied by {approver}")

    def _decide(
        self, instance: GoalInstance, gate: ApprovalGate, decision: ApprovalDecision, approver: str
    ) -> ApprovalRecord:
        approver = str(approver or "").strip()
        if not approver:
            raise ValueError("approver must be a non-empty string")
        existing = instance.pre_approval if gate == ApprovalGate.PRE else instance.approval
        if existing is not None:
            raise AlreadyDecided(instance.name, existing)
        waiting = GoalState.WAITING_FOR_PRE_APPROVAL if gate == ApprovalGate.PRE else GoalState.WAITING_FOR_APPROVAL
        if instance.state != waiting:
            raise InvalidTransition(
                instance.name,
                instance.state.value,
                gate.value,
                detail=f"goal is not {waiting.value}",
            )
        return ApprovalRecord(gate=gate, decision=decision, approver=approver)
