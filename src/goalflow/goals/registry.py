from __future__ import annotations

import difflib
from typing import Any, Iterable

from goalflow.core.errors import DuplicateGoalName, RegistryFrozen, UnknownGoal
from goalflow.goals.types import GoalDefinition


class GoalRegistry:
    """Process-wide catalog of goal definitions, written once at startup.

    After ``freeze()`` the registry only serves reads, which are safe without locking.
    """

    def __init__(self) -> None:
        self._by_name: dict[str, GoalDefinition] = {}
        self._frozen = False

    @classmethod
    def from_definitions(cls, definitions: Iterable[GoalDefinition], *, freeze: bool = True) -> "GoalRegistry":
        reg = cls()
        for d in definitions:
            reg.register(d)
        if freeze:
            reg.freeze()
        return reg

    @property
    def frozen(self) -> bool:
        return self._frozen

    def freeze(self) -> None:
        self._frozen = True

    def register(self, definition: GoalDefinition) -> GoalDefinition:
        if self._frozen:
            raise RegistryFrozen(f"goal registry is frozen; cannot register {definition.name!r}")
        if definition.name in self._by_name:
            raise DuplicateGoalName(definition.name)
        self._by_name[definition.name] = definition
        return definition

    def lookup(self, name: str) -> GoalDefinition:
        d = self._by_name.get(str(name or "").strip())
        if d is None:
            raise UnknownGoal(name)
        return d

    def __contains__(self, name: object) -> bool:
        return isinstance(name, str) and name.strip() in self._by_name

    def __len__(self) -> int:
        return len(self._by_name)

    def available(self) -> tuple[str, ...]:
        return tuple(sorted(self._by_name.keys()))

    def describe(self) -> tuple[dict[str, Any], ...]:
        rows: list[dict[str, Any]] = []
        for d in sorted(self._by_name.values(), key=lambda x: (x.ordering_key, x.name)):
            rows.append(d.to_json_obj())
        return tuple(rows)

    def suggest(self, name: str, *, limit: int = 3) -> tuple[str, ...]:
        key = (name or "").strip()
        if not key:
            return ()
        return tuple(difflib.get_close_matches(key, list(self._by_name.keys()), n=limit))
