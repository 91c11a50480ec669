from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable, Mapping, Sequence

from goalflow.core.errors import UnknownPushTest

PushTest = Callable[[Any], bool]

NEGATION_PREFIX = "not:"


@dataclass(frozen=True)
class PushRule:
    """First-match rule: when every named push test holds, plan ``goal_sets``."""

    name: str
    when: tuple[str, ...]
    goal_sets: tuple[str, ...]
    description: str | None = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "when", tuple(str(w).strip() for w in self.when))
        object.__setattr__(self, "goal_sets", tuple(str(g).strip() for g in self.goal_sets))

    def test_names(self) -> tuple[str, ...]:
        return tuple(_split(w)[0] for w in self.when)


def _split(term: str) -> tuple[str, bool]:
    if term.startswith(NEGATION_PREFIX):
        return term[len(NEGATION_PREFIX):].strip(), True
    return term, False


def rule_matches(rule: PushRule, tests: Mapping[str, PushTest], push: Any) -> bool:
    for term in rule.when:
        name, negated = _split(term)
        fn = tests.get(name)
        if fn is None:
            raise UnknownPushTest(name)
        if bool(fn(push)) == negated:
            return False
    return True


def select_goal_sets(rules: Sequence[PushRule], tests: Mapping[str, PushTest], push: Any) -> tuple[str, ...]:
    """Goal set names of the first matching rule; an empty tuple means no goals."""
    for rule in rules:
        if rule_matches(rule, tests, push):
            return rule.goal_sets
    return ()
