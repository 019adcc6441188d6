import heapq
from typing import Any, Dict, List, Optional, Union

import pydantic

from .errors import (
    CycleDetected,
    DuplicateStepOrder,
    EmptyPlan,
    InvalidStepOrder,
    PlanValidationError,
    UnknownDependency,
)
from .schemas import Plan


def parse_plan(document: Union[Plan, Dict[str, Any]]) -> Plan:
    if isinstance(document, Plan):
        return document
    try:
        return Plan.model_validate(document)
    except pydantic.ValidationError as exc:
        raise PlanValidationError(f"Malformed plan: {exc}") from exc


def _dependency_map(plan: Plan) -> Dict[int, List[int]]:
    return {step.order: list(dict.fromkeys(step.depends_on)) for step in plan.steps}


def find_cycle(dependencies: Dict[int, List[int]]) -> Optional[List[int]]:
    """Return one dependency cycle as ``[a, b, ..., a]``, or None when the graph is acyclic."""
    white, grey, black = 0, 1, 2
    color = {order: white for order in dependencies}
    for root in sorted(dependencies):
        if color[root] != white:
            continue
        # Iterative DFS; the path stack doubles as the cycle witness.
        path: List[int] = [root]
        iterators = [iter(sorted(dependencies[root]))]
        color[root] = grey
        while path:
            advanced = False
            for dep in iterators[-1]:
                if dep not in color:
                    continue
                if color[dep] == grey:
                    start = path.index(dep)
                    return path[start:] + [dep]
                if color[dep] == white:
                    color[dep] = grey
                    path.append(dep)
                    iterators.append(iter(sorted(dependencies[dep])))
                    advanced = True
                    break
            if not advanced:
                color[path.pop()] = black
                iterators.pop()
    return None


def validate_plan(plan: Plan) -> None:
    """Reject structurally unusable plans. Checks run in a fixed order and stop at the first failure."""
    if not plan.steps:
        raise EmptyPlan()
    invalid = sorted({step.order for step in plan.steps if step.order <= 0})
    if invalid:
        raise InvalidStepOrder(invalid)
    seen = set()
    duplicates = set()
    for step in plan.steps:
        if step.order in seen:
            duplicates.add(step.order)
        seen.add(step.order)
    if duplicates:
        raise DuplicateStepOrder(sorted(duplicates))
    for step in sorted(plan.steps, key=lambda item: item.order):
        missing = sorted({dep for dep in step.depends_on if dep not in seen})
        if missing:
            raise UnknownDependency(step.order, missing)
    cycle = find_cycle(_dependency_map(plan))
    if cycle:
        raise CycleDetected(cycle)


def topological_order(plan: Plan) -> List[int]:
    """Kahn ordering of a validated plan; ties resolve to the lowest order first."""
    dependencies = _dependency_map(plan)
    dependents: Dict[int, List[int]] = {order: [] for order in dependencies}
    remaining = {order: len(deps) for order, deps in dependencies.items()}
    for order, deps in dependencies.items():
        for dep in deps:
            dependents[dep].append(order)
    ready = [order for order, count in remaining.items() if count == 0]
    heapq.heapify(ready)
    ordered: List[int] = []
    while ready:
        order = heapq.heappop(ready)
        ordered.append(order)
        for child in dependents[order]:
            remaining[child] -= 1
            if remaining[child] == 0:
                heapq.heappush(ready, child)
    if len(ordered) != len(dependencies):
        raise CycleDetected(find_cycle(dependencies) or [])
    return ordered
