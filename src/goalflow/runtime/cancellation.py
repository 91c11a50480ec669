from __future__ import annotations

from typing import Callable

from goalflow.core.errors import UnknownGoal
from goalflow.planner.compose import ResolvedGraph
from goalflow.runtime.instance import CancellationRequest, Transition
from goalflow.runtime.states import NOT_STARTED_STATES, GoalState, is_terminal


class CancellationPropagator:
    def closure(
        self,
        request: CancellationRequest,
        graph: ResolvedGraph,
        state_of: Callable[[str], GoalState],
    ) -> list[Transition]:
        """Transitions cancelling the named goals and their not-yet-started dependents.

        Named goals: in_process becomes stopped, any other non-terminal state canceled.
        Dependents reached through an affected goal that have not reached in_process:
        planned becomes skipped, other not-started states canceled. Terminal goals are
        left alone and do not propagate.
        """
        for name in request.goal_names:
            if name not in graph:
                raise UnknownGoal(name)

        out: dict[str, Transition] = {}
        affected: list[str] = []
        for name in request.goal_names:
            st = state_of(name)
            if is_terminal(st):
                continue
            target = GoalState.STOPPED if st == GoalState.IN_PROCESS else GoalState.CANCELED
            out[name] = Transition(name, target, request.reason)
            affected.append(name)

        for name in affected:
            for dep in graph.descendants(name):
                if dep in out:
                    continue
                st = state_of(dep)
                if st not in NOT_STARTED_STATES:
                    continue
                if st == GoalState.PLANNED:
                    out[dep] = Transition(dep, GoalState.SKIPPED, f"ancestor {name} canceled")
                else:
                    out[dep] = Transition(dep, GoalState.CANCELED, f"ancestor {name} canceled")

        order = {n: i for i, n in enumerate(graph.order)}
        return sorted(out.values(), key=lambda t: order[t.goal])
