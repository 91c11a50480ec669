from __future__ import annotations

import hashlib
import json
from dataclasses import dataclass
from types import MappingProxyType
from typing import Any, Iterable, Mapping, Sequence, Union

import networkx as nx

from goalflow.core.errors import CyclicDependency, DanglingPrecondition, UnknownGoal
from goalflow.goals.types import GoalDefinition
from goalflow.planner.goalset import Edge, GoalSet, merge_definitions


def _canonical_bytes(obj: Any) -> bytes:
    return json.dumps(obj, sort_keys=True, separators=(",", ":"), ensure_ascii=True).encode("utf-8")


@dataclass(frozen=True, eq=False)
class ResolvedGraph:
    """Frozen composition of goal sets resolved for one change event."""

    name: str
    goals: Mapping[str, GoalDefinition]
    edges: frozenset[Edge]
    depends_on: Mapping[str, tuple[str, ...]]
    depended_on_by: Mapping[str, tuple[str, ...]]
    order: tuple[str, ...]
    supersedes: tuple[str, ...] = ()

    def definition(self, name: str) -> GoalDefinition:
        d = self.goals.get(name)
        if d is None:
            raise UnknownGoal(name)
        return d

    def __contains__(self, name: object) -> bool:
        return name in self.goals

    def __len__(self) -> int:
        return len(self.goals)

    def descendants(self, name: str) -> tuple[str, ...]:
        """Every goal depending on ``name`` transitively, in graph order."""
        seen: set[str] = set()
        stack = list(self.depended_on_by.get(name, ()))
        while stack:
            n = stack.pop()
            if n in seen:
                continue
            seen.add(n)
            stack.extend(self.depended_on_by.get(n, ()))
        return tuple(n for n in self.order if n in seen)

    def to_json_obj(self) -> dict[str, Any]:
        return {
            "goals": [self.goals[n].to_json_obj() for n in sorted(self.goals)],
            "edges": sorted([list(e) for e in self.edges]),
            "supersedes": sorted(self.supersedes),
        }

    @property
    def fingerprint(self) -> str:
        return hashlib.sha256(_canonical_bytes(self.to_json_obj())).hexdigest()

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, ResolvedGraph):
            return NotImplemented
        return (
            dict(self.goals) == dict(other.goals)
            and self.edges == other.edges
            and set(self.supersedes) == set(other.supersedes)
        )

    def __hash__(self) -> int:
        return hash(self.fingerprint)


GoalSource = Union[GoalSet, ResolvedGraph]


def _source_goals(src: GoalSource) -> Iterable[GoalDefinition]:
    if isinstance(src, ResolvedGraph):
        return [src.goals[n] for n in src.order]
    return src.goals


def _find_cycle(dag: nx.DiGraph) -> list[str] | None:
    """Cycle path in ``goal -> dependency`` direction, first node repeated at the end."""
    try:
        cycle = nx.find_cycle(dag)
    except nx.NetworkXNoCycle:
        return None
    # Graph edges point dependency -> goal.
    path = [v for _, v in reversed(cycle)]
    return path + [path[0]]


def compose(sources: Sequence[GoalSource], *, name: str | None = None) -> ResolvedGraph:
    """Merge goal sets left to right into one validated DAG.

    Goals already present by unique name are not re-added; a later definition under
    the same name only contributes its ``depends_on`` edges. Edges are unioned. Raises
    DanglingPrecondition or CyclicDependency when the result is not a closed DAG.
    """
    merged: dict[str, GoalDefinition] = {}
    edges: set[Edge] = set()
    supersedes: list[str] = []
    names: list[str] = []
    for src in sources:
        edges.update(merge_definitions(merged, _source_goals(src)))
        edges.update(src.edges)
        supersedes.extend(s for s in src.supersedes if s not in supersedes)
        names.append(src.name)
    for d in merged.values():
        edges.update((d.name, dep) for dep in d.depends_on)

    for goal, dep in sorted(edges):
        if goal not in merged or dep not in merged:
            raise DanglingPrecondition(goal, dep)

    dag = nx.DiGraph()
    dag.add_nodes_from(merged)
    dag.add_edges_from((dep, goal) for goal, dep in edges)

    cycle = _find_cycle(dag)
    if cycle is not None:
        raise CyclicDependency(cycle)

    # Among ready goals the ordering key, then the name, decides.
    order = tuple(nx.lexicographical_topological_sort(dag, key=lambda n: (merged[n].ordering_key, n)))
    rank = {n: i for i, n in enumerate(order)}

    return ResolvedGraph(
        name=name or " + ".join(dict.fromkeys(names)),
        goals=MappingProxyType(dict(merged)),
        edges=frozenset(edges),
        depends_on=MappingProxyType({n: tuple(sorted(dag.predecessors(n), key=rank.__getitem__)) for n in merged}),
        depended_on_by=MappingProxyType({n: tuple(sorted(dag.successors(n), key=rank.__getitem__)) for n in merged}),
        order=order,
        supersedes=tuple(supersedes),
    )
