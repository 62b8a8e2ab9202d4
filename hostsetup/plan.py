from __future__ import annotations

import logging
from typing import Dict, Iterable, List, Optional

from .errors import CycleDetectedError, MissingDependencyWarning
from .model import ExecutionPlan, Step

logger = logging.getLogger(__name__)

_VISITING = 1
_VISITED = 2


def select_for_role(steps: Iterable[Step], role: str) -> List[Step]:
    return sorted((s for s in steps if s.matches_role(role)), key=Step.sort_key)


def resolve_plan(
    steps: Iterable[Step],
    role: str,
    *,
    satisfied: Optional[Iterable[str]] = None,
) -> ExecutionPlan:
    """Order the steps for `role` so every dependency runs before its dependents.

    Candidates are walked in (priority, name) order and each one is appended
    after its dependencies (depth-first, post-order). `satisfied` holds
    capabilities already completed by an earlier run; a dependency missing
    from the candidates but present there is not reported.

    Raises CycleDetectedError if the candidates' dependencies form a cycle.
    """

    candidates = select_for_role(steps, role)
    already = set(satisfied or ())

    providers: Dict[str, Step] = {}
    for s in candidates:
        for cap in sorted(s.provides | {s.name}):
            # Lowest (priority, name) wins when several steps provide a name.
            providers.setdefault(cap, s)

    marks: Dict[str, int] = {}
    ordered: List[Step] = []
    warnings: List[MissingDependencyWarning] = []
    path: List[str] = []

    def visit(step: Step) -> None:
        mark = marks.get(step.name)
        if mark == _VISITED:
            return
        if mark == _VISITING:
            start = path.index(step.name) if step.name in path else 0
            raise CycleDetectedError(step.name, path[start:])

        marks[step.name] = _VISITING
        path.append(step.name)
        for dep in sorted(step.depends_on):
            provider = providers.get(dep)
            if provider is None:
                if dep not in already:
                    w = MissingDependencyWarning(step.name, dep)
                    logger.warning("%s", w)
                    warnings.append(w)
                continue
            if provider.name == step.name:
                continue
            visit(provider)
        path.pop()
        marks[step.name] = _VISITED
        ordered.append(step)

    for s in candidates:
        visit(s)

    logger.info("Resolved plan for role %s: %s", role, ", ".join(s.name for s in ordered) or "(empty)")
    return ExecutionPlan(role=role, steps=tuple(ordered), warnings=tuple(warnings))


def unsatisfied_dependencies(plan: ExecutionPlan, satisfied: Iterable[str] = ()) -> Dict[str, List[str]]:
    """Dependencies not met by an earlier step in the plan or by `satisfied`."""

    have = set(satisfied)
    missing: Dict[str, List[str]] = {}
    for s in plan:
        gaps = sorted(d for d in s.depends_on if d not in have)
        if gaps:
            missing[s.name] = gaps
        have |= s.provides | {s.name}
    return missing
