from __future__ import annotations

from typing import Any, Sequence


class GraphConstructionError(ValueError):
    """Fatal while building registries or composing graphs; never recovered."""


class DuplicateGoalName(GraphConstructionError):
    def __init__(self, name: str, *, detail: str | None = None) -> None:
        msg = f"duplicate goal name: {name!r}"
        if detail:
            msg = f"{msg} ({detail})"
        super().__init__(msg)
        self.name = name


class CyclicDependency(GraphConstructionError):
    def __init__(self, cycle: Sequence[str]) -> None:
        super().__init__("cyclic dependency: " + " -> ".join(cycle))
        self.cycle = tuple(cycle)


class DanglingPrecondition(GraphConstructionError):
    def __init__(self, goal: str, dependency: str) -> None:
        super().__init__(f"goal {goal!r} depends on {dependency!r} which is not part of the composed goals")
        self.goal = goal
        self.dependency = dependency


class CatalogInvalid(GraphConstructionError):
    """Goal catalog document failed its contract or references unknown names."""


class ConfigurationError(RuntimeError):
    """Surfaced to the caller of the offending operation; other goals are untouched."""


class NoFulfillmentRegistered(ConfigurationError):
    def __init__(self, goal: str) -> None:
        super().__init__(f"no executor or side effect registered for goal {goal!r}")
        self.goal = goal


class DuplicateFulfillment(ConfigurationError):
    def __init__(self, goal: str) -> None:
        super().__init__(f"fulfillment already registered for goal {goal!r}")
        self.goal = goal


class ConflictingResubmission(ConfigurationError):
    def __init__(self, change_event_id: str, *, existing: str, submitted: str) -> None:
        super().__init__(
            f"change event {change_event_id!r} already submitted with a different graph "
            f"(existing={existing[:12]}, submitted={submitted[:12]})"
        )
        self.change_event_id = change_event_id


class RegistryFrozen(ConfigurationError):
    pass


class UnknownGoal(LookupError):
    def __init__(self, name: str) -> None:
        super().__init__(f"unknown goal: {name!r}")
        self.name = name


class UnknownChangeEvent(LookupError):
    def __init__(self, change_event_id: str) -> None:
        super().__init__(f"unknown change event: {change_event_id!r}")
        self.change_event_id = change_event_id


class UnknownPushTest(LookupError):
    def __init__(self, name: str) -> None:
        super().__init__(f"unknown push test: {name!r}")
        self.name = name


class InvalidTransition(ValueError):
    def __init__(self, goal: str, current: str, target: str, *, detail: str | None = None) -> None:
        msg = f"goal {goal!r} cannot move from {current} to {target}"
        if detail:
            msg = f"{msg}: {detail}"
        super().__init__(msg)
        self.goal = goal
        self.current = current
        self.target = target


class AlreadyDecided(RuntimeError):
    """Approval gate already carries a decision; the existing record is returned."""

    def __init__(self, goal: str, record: Any) -> None:
        super().__init__(f"approval for goal {goal!r} already decided")
        self.goal = goal
        self.record = record


class UnknownCondition(ConfigurationError):
    def __init__(self, name: str, *, goal: str | None = None) -> None:
        where = f" (goal {goal!r})" if goal else ""
        super().__init__(f"no predicate registered for condition {name!r}{where}")
        self.name = name
        self.goal = goal


class UnknownGoalSet(LookupError):
    def __init__(self, name: str) -> None:
        super().__init__(f"unknown goal set: {name!r}")
        self.name = name
