"""
Step graph validation and ordering (pure).

No I/O, no subprocess. Raises on the first structural problem so a
malformed recipe never starts touching the node.
"""

from __future__ import annotations

import heapq
from collections.abc import Iterable, Sequence

from nodeprov.core.errors import CyclicDependencyError, StepGraphError
from nodeprov.core.models.step import Step


def validate_graph(steps: Sequence[Step], initial_outputs: Iterable[str] = ()) -> None:
    """Validate the step dependency graph.

    Checks for:
    - Duplicate step names
    - References to unknown steps
    - Cycles (Kahn's algorithm)
    - Required outputs that no ancestor exports

    Args:
        steps: Steps in declaration order.
        initial_outputs: Outputs already present in the starting context.

    Raises:
        StepGraphError: Duplicates, unknown references, unresolved outputs.
        CyclicDependencyError: The dependency relation has a cycle.
    """
    topological_order(steps)
    _check_requirements(steps, set(initial_outputs))


def topological_order(steps: Sequence[Step]) -> list[Step]:
    """Deterministic topological order.

    Among steps whose dependencies are all placed, the one declared
    first goes next, so a linear recipe keeps its declaration order.
    """
    index: dict[str, int] = {}
    for i, s in enumerate(steps):
        if s.name in index:
            raise StepGraphError(f"Duplicate step name: {s.name}")
        index[s.name] = i

    for s in steps:
        for dep in s.depends_on:
            if dep not in index:
                raise StepGraphError(f"Step '{s.name}' depends on unknown step '{dep}'")
            if dep == s.name:
                raise CyclicDependencyError([s.name])

    in_degree = {s.name: len(set(s.depends_on)) for s in steps}
    # dep → steps that depend on it
    adj: dict[str, list[str]] = {s.name: [] for s in steps}
    for s in steps:
        for dep in set(s.depends_on):
            adj[dep].append(s.name)

    ready = [index[name] for name, deg in in_degree.items() if deg == 0]
    heapq.heapify(ready)
    order: list[Step] = []
    while ready:
        step = steps[heapq.heappop(ready)]
        order.append(step)
        for successor in adj[step.name]:
            in_degree[successor] -= 1
            if in_degree[successor] == 0:
                heapq.heappush(ready, index[successor])

    if len(order) < len(steps):
        stuck = [s.name for s in steps if in_degree[s.name] > 0]
        raise CyclicDependencyError(stuck)
    return order


def ancestors(steps: Sequence[Step], name: str) -> set[str]:
    """All steps ``name`` transitively depends on."""
    by_name = {s.name: s for s in steps}
    seen: set[str] = set()
    stack = list(by_name[name].depends_on)
    while stack:
        dep = stack.pop()
        if dep in seen:
            continue
        seen.add(dep)
        stack.extend(by_name[dep].depends_on)
    return seen


def _check_requirements(steps: Sequence[Step], initial: set[str]) -> None:
    by_name = {s.name: s for s in steps}
    for s in steps:
        if not s.requires:
            continue
        available = set(initial)
        for anc in ancestors(steps, s.name):
            available.update(by_name[anc].exports)
        missing = [r for r in s.requires if r not in available]
        if missing:
            raise StepGraphError(
                f"Step '{s.name}' requires {', '.join(missing)} "
                "but no step it depends on exports it"
            )
