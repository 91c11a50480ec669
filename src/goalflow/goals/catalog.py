from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from types import MappingProxyType
from typing import Any, Mapping, Sequence

import yaml

from goalflow.contracts import validate as contracts_validate
from goalflow.core.errors import CatalogInvalid, UnknownGoal, UnknownGoalSet
from goalflow.goals.registry import GoalRegistry
from goalflow.goals.types import CustomCondition, Environment, GoalDefinition, GoalDescriptions
from goalflow.planner.compose import ResolvedGraph, compose
from goalflow.planner.goalset import GoalSet, goals
from goalflow.planner.push_rules import PushRule, PushTest, select_goal_sets


def load_yaml(path: Path) -> Any:
    return yaml.safe_load(path.read_text(encoding="utf-8"))


@dataclass(frozen=True)
class GoalCatalog:
    catalog_id: str
    registry: GoalRegistry
    goal_sets: Mapping[str, GoalSet]
    rules: tuple[PushRule, ...] = ()

    def goal_set(self, name: str) -> GoalSet:
        gs = self.goal_sets.get(str(name or "").strip())
        if gs is None:
            raise UnknownGoalSet(name)
        return gs

    def resolve(self, names: Sequence[str], *, name: str | None = None) -> ResolvedGraph:
        if not names:
            raise ValueError("at least one goal set name is required")
        return compose([self.goal_set(n) for n in names], name=name)

    def select(self, tests: Mapping[str, PushTest], push: Any) -> ResolvedGraph | None:
        """Resolve the goal sets of the first push rule matching ``push``; None means no goals."""
        names = select_goal_sets(self.rules, tests, push)
        if not names:
            return None
        return self.resolve(names)

    def describe(self) -> dict[str, Any]:
        return {
            "catalog_id": self.catalog_id,
            "goals": list(self.registry.describe()),
            "goal_sets": {
                n: {"goals": list(gs.goal_names), "edges": sorted([list(e) for e in gs.edges])}
                for n, gs in self.goal_sets.items()
            },
            "rules": [{"name": r.name, "when": list(r.when), "goal_sets": list(r.goal_sets)} for r in self.rules],
        }


def _definition_from_doc(doc: dict[str, Any]) -> GoalDefinition:
    return GoalDefinition(
        name=str(doc["name"]),
        environment=Environment(doc.get("environment", "independent")),
        ordering_key=str(doc.get("ordering_key", "")),
        display_name=doc.get("display_name"),
        descriptions=GoalDescriptions(**(doc.get("descriptions") or {})),
        isolated=bool(doc.get("isolated", False)),
        approval_required=bool(doc.get("approval_required", False)),
        pre_approval_required=bool(doc.get("pre_approval_required", False)),
        retry_feasible=bool(doc.get("retry_feasible", False)),
        depends_on=tuple(doc.get("depends_on") or ()),
        conditions=tuple(
            CustomCondition(name=c["name"], retries=int(c["retries"]), timeout_seconds=float(c["timeout_seconds"]))
            for c in (doc.get("conditions") or [])
        ),
    )


def _lookup(registry: GoalRegistry, name: str, where: str) -> GoalDefinition:
    try:
        return registry.lookup(name)
    except UnknownGoal:
        hint = registry.suggest(name)
        extra = f" (did you mean: {', '.join(hint)})" if hint else ""
        raise CatalogInvalid(f"{where}: unknown goal {name!r}{extra}")


def _goal_set_from_doc(doc: dict[str, Any], registry: GoalRegistry, declared: Mapping[str, GoalSet]) -> GoalSet:
    name = str(doc["name"])
    gs = goals(name)
    for i, step in enumerate(doc["plan"]):
        where = f"goal_sets/{name}/plan/{i}"
        items: list[Any] = []
        for inc in step.get("include") or []:
            included = declared.get(inc)
            if included is None:
                raise CatalogInvalid(f"{where}: goal set {inc!r} must be declared before {name!r}")
            items.append(included)
        for g in step.get("goals") or []:
            items.append(_lookup(registry, g, where))
        if not items:
            raise CatalogInvalid(f"{where}: plan step names no goals")
        gs = gs.plan(*items)
        after = step.get("after") or []
        if after:
            gs = gs.after(*[_lookup(registry, a, where + "/after") for a in after])
    supersedes = doc.get("supersedes") or []
    if supersedes:
        gs = gs.with_supersedes(*[_lookup(registry, s, f"goal_sets/{name}/supersedes") for s in supersedes])
    return gs


def catalog_from_doc(doc: Any) -> GoalCatalog:
    code, msg = contracts_validate.validate_payload(doc, schema_version="goal_catalog_v1")
    if code != contracts_validate.EXIT_OK:
        raise CatalogInvalid(msg)

    registry = GoalRegistry()
    for g in doc["goals"]:
        registry.register(_definition_from_doc(g))
    for d in registry.describe():
        for dep in d["depends_on"]:
            _lookup(registry, dep, f"goals/{d['name']}/depends_on")
    registry.freeze()

    sets: dict[str, GoalSet] = {}
    for gs_doc in doc.get("goal_sets") or []:
        name = str(gs_doc["name"])
        if name in sets:
            raise CatalogInvalid(f"goal_sets: duplicate goal set {name!r}")
        sets[name] = _goal_set_from_doc(gs_doc, registry, sets)

    rules: list[PushRule] = []
    for r in doc.get("rules") or []:
        for gs_name in r["goal_sets"]:
            if gs_name not in sets:
                raise CatalogInvalid(f"rules/{r['name']}: unknown goal set {gs_name!r}")
        rules.append(
            PushRule(name=r["name"], when=tuple(r["when"]), goal_sets=tuple(r["goal_sets"]), description=r.get("description"))
        )

    return GoalCatalog(
        catalog_id=str(doc.get("catalog_id") or "goal_catalog"),
        registry=registry,
        goal_sets=MappingProxyType(sets),
        rules=tuple(rules),
    )


def load_catalog(path: Path) -> GoalCatalog:
    p = Path(path)
    if not p.is_file():
        raise FileNotFoundError(f"goal catalog not found: {p}")
    doc = load_yaml(p)
    if not isinstance(doc, dict):
        raise CatalogInvalid(f"{p.name} must be a YAML mapping")
    return catalog_from_doc(doc)
