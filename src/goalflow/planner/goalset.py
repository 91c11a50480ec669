from __future__ import annotations

from dataclasses import dataclass, field
from typing import Iterable, Union

from goalflow.goals.types import GoalDefinition

Edge = tuple[str, str]  # (goal, dependency)


def merge_definitions(into: dict[str, GoalDefinition], definitions: Iterable[GoalDefinition]) -> set[Edge]:
    """Add definitions by unique name; the first definition of a name is kept.

    Returns the ``depends_on`` edges of later same-named definitions, which the caller
    unions into its edge set so their preconditions are not lost.
    """
    extra: set[Edge] = set()
    for d in definitions:
        existing = into.get(d.name)
        if existing is None:
            into[d.name] = d
        elif existing != d:
            extra.update((d.name, dep) for dep in d.depends_on)
    return extra


@dataclass(frozen=True)
class GoalSet:
    """Named, ordered collection of goal definitions and the edges between them.

    Built fluently and immutably::

        check = goals("Check").plan(autofix).plan(version, inspection).after(autofix)
        build = goals("Build").plan(check).plan(lein_build).after(version)
    """

    name: str
    goals: tuple[GoalDefinition, ...] = ()
    edges: frozenset[Edge] = frozenset()
    supersedes: tuple[str, ...] = ()
    _last_planned: tuple[str, ...] = field(default=(), compare=False, repr=False)

    def __post_init__(self) -> None:
        if not isinstance(self.name, str) or not self.name.strip():
            raise TypeError("GoalSet.name must be a non-empty string")
        object.__setattr__(self, "name", self.name.strip())
        merged: dict[str, GoalDefinition] = {}
        extra = merge_definitions(merged, self.goals)
        object.__setattr__(self, "goals", tuple(merged.values()))
        edges = {(str(g), str(d)) for g, d in self.edges} | extra
        object.__setattr__(self, "edges", frozenset(edges))

    @property
    def goal_names(self) -> tuple[str, ...]:
        return tuple(g.name for g in self.goals)

    def plan(self, *items: Union[GoalDefinition, "GoalSet"]) -> "GoalSet":
        if not items:
            raise ValueError(f"goal set {self.name!r}: plan() needs at least one goal or goal set")
        merged: dict[str, GoalDefinition] = {g.name: g for g in self.goals}
        edges = set(self.edges)
        supersedes = list(self.supersedes)
        planned: list[str] = []
        for item in items:
            if isinstance(item, GoalSet):
                edges.update(merge_definitions(merged, item.goals))
                edges.update(item.edges)
                supersedes.extend(s for s in item.supersedes if s not in supersedes)
                planned.extend(item.goal_names)
            elif isinstance(item, GoalDefinition):
                edges.update(merge_definitions(merged, [item]))
                planned.append(item.name)
            else:
                raise TypeError(f"cannot plan {type(item).__name__} in goal set {self.name!r}")
        return GoalSet(
            name=self.name,
            goals=tuple(merged.values()),
            edges=frozenset(edges),
            supersedes=tuple(supersedes),
            _last_planned=tuple(dict.fromkeys(planned)),
        )

    def after(self, *dependencies: Union[GoalDefinition, str]) -> "GoalSet":
        if not self._last_planned:
            raise ValueError(f"goal set {self.name!r}: after() must follow plan()")
        deps = [d.name if isinstance(d, GoalDefinition) else str(d).strip() for d in dependencies]
        edges = set(self.edges)
        for goal in self._last_planned:
            for dep in deps:
                edges.add((goal, dep))
        return GoalSet(
            name=self.name,
            goals=self.goals,
            edges=frozenset(edges),
            supersedes=self.supersedes,
            _last_planned=self._last_planned,
        )

    def with_supersedes(self, *goal_names: Union[GoalDefinition, str]) -> "GoalSet":
        names = list(self.supersedes)
        for g in goal_names:
            n = g.name if isinstance(g, GoalDefinition) else str(g).strip()
            if n and n not in names:
                names.append(n)
        return GoalSet(
            name=self.name,
            goals=self.goals,
            edges=self.edges,
            supersedes=tuple(names),
            _last_planned=self._last_planned,
        )


def goals(name: str) -> GoalSet:
    return GoalSet(name=name)
