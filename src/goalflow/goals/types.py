from __future__ import annotations

from dataclasses import dataclass, field, fields
from enum import Enum
from typing import Any


class Environment(str, Enum):
    INDEPENDENT = "independent"
    STAGING = "staging"
    PRODUCTION = "production"


@dataclass(frozen=True)
class CustomCondition:
    """Named host predicate gating a goal, with an attempt budget and per-attempt timeout."""

    name: str
    retries: int = 1
    timeout_seconds: float = 5.0

    def __post_init__(self) -> None:
        if not isinstance(self.name, str) or not self.name.strip():
            raise TypeError("CustomCondition.name must be a non-empty string")
        object.__setattr__(self, "name", self.name.strip())
        if isinstance(self.retries, bool) or not isinstance(self.retries, int) or self.retries < 1:
            raise ValueError(f"CustomCondition.retries must be an integer >= 1 (got {self.retries!r})")
        if not isinstance(self.timeout_seconds, (int, float)) or self.timeout_seconds <= 0:
            raise ValueError(
                f"CustomCondition.timeout_seconds must be > 0 (got {self.timeout_seconds!r})"
            )

    def to_json_obj(self) -> dict[str, Any]:
        return {"name": self.name, "retries": self.retries, "timeout_seconds": self.timeout_seconds}


@dataclass(frozen=True)
class GoalDescriptions:
    planned: str | None = None
    requested: str | None = None
    in_process: str | None = None
    completed: str | None = None
    failed: str | None = None
    waiting_for_pre_approval: str | None = None
    waiting_for_approval: str | None = None
    canceled: str | None = None
    stopped: str | None = None
    skipped: str | None = None

    def to_json_obj(self) -> dict[str, Any]:
        return {f.name: getattr(self, f.name) for f in fields(self) if getattr(self, f.name) is not None}


# Display defaults, keyed by state value.
_DEFAULT_DESCRIPTIONS = {
    "planned": "Planned: {name}",
    "requested": "Ready: {name}",
    "in_process": "Working: {name}",
    "success": "Complete: {name}",
    "failure": "Failed: {name}",
    "waiting_for_pre_approval": "Start required: {name}",
    "pre_approved": "Ready: {name}",
    "waiting_for_approval": "Approval required: {name}",
    "approved": "Approved: {name}",
    "canceled": "Canceled: {name}",
    "stopped": "Stopped: {name}",
    "skipped": "Skipped: {name}",
}

_STATE_TO_FIELD = {
    "planned": "planned",
    "requested": "requested",
    "pre_approved": "requested",
    "in_process": "in_process",
    "success": "completed",
    "approved": "completed",
    "failure": "failed",
    "waiting_for_pre_approval": "waiting_for_pre_approval",
    "waiting_for_approval": "waiting_for_approval",
    "canceled": "canceled",
    "stopped": "stopped",
    "skipped": "skipped",
}


@dataclass(frozen=True)
class GoalDefinition:
    name: str
    environment: Environment = Environment.INDEPENDENT
    ordering_key: str = ""
    display_name: str | None = None
    descriptions: GoalDescriptions = field(default_factory=GoalDescriptions)
    isolated: bool = False
    approval_required: bool = False
    pre_approval_required: bool = False
    retry_feasible: bool = False
    depends_on: tuple[str, ...] = ()
    conditions: tuple[CustomCondition, ...] = ()

    def __post_init__(self) -> None:
        if not isinstance(self.name, str) or not self.name.strip():
            raise TypeError("GoalDefinition.name must be a non-empty string")
        object.__setattr__(self, "name", self.name.strip())
        object.__setattr__(self, "environment", Environment(self.environment))
        object.__setattr__(self, "ordering_key", str(self.ordering_key or ""))

        deps: list[str] = []
        for d in self.depends_on:
            d = str(d).strip()
            if not d:
                raise ValueError(f"goal {self.name!r}: depends_on entries must be non-empty")
            if d not in deps:
                deps.append(d)
        object.__setattr__(self, "depends_on", tuple(deps))

        conds = tuple(self.conditions)
        seen: set[str] = set()
        for c in conds:
            if not isinstance(c, CustomCondition):
                raise TypeError(f"goal {self.name!r}: conditions must be CustomCondition instances")
            if c.name in seen:
                raise ValueError(f"goal {self.name!r}: duplicate condition {c.name!r}")
            seen.add(c.name)
        object.__setattr__(self, "conditions", conds)

    @property
    def label(self) -> str:
        return self.display_name or self.name

    def description_for(self, state: str) -> str:
        key = str(getattr(state, "value", state))
        field_name = _STATE_TO_FIELD.get(key)
        custom = getattr(self.descriptions, field_name) if field_name else None
        if custom:
            return custom
        return _DEFAULT_DESCRIPTIONS.get(key, "{name}").format(name=self.label)

    def to_json_obj(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "environment": self.environment.value,
            "ordering_key": self.ordering_key,
            "display_name": self.display_name,
            "descriptions": self.descriptions.to_json_obj(),
            "isolated": bool(self.isolated),
            "approval_required": bool(self.approval_required),
            "pre_approval_required": bool(self.pre_approval_required),
            "retry_feasible": bool(self.retry_feasible),
            "depends_on": list(self.depends_on),
            "conditions": [c.to_json_obj() for c in self.conditions],
        }
