"""Structural validation of workflow definitions."""

from __future__ import annotations

from collections import deque
from typing import Dict, List, Optional

from ..contracts import WorkflowDefinition
from ..errors import InvalidDefinition


def _find_cycle(graph: Dict[str, List[str]]) -> Optional[List[str]]:
    """Return one dependency cycle as a list of step ids, or ``None``."""

    white, grey, black = 0, 1, 2
    color = {node: white for node in graph}
    parent: Dict[str, str] = {}

    for root in graph:
        if color[root] != white:
            continue
        stack = [(root, iter(graph[root]))]
        color[root] = grey
        while stack:
            node, children = stack[-1]
            child = next(children, None)
            if child is None:
                color[node] = black
                stack.pop()
                continue
            if color[child] == grey:
                cycle = [child]
                cur = node
                while cur != child:
                    cycle.append(cur)
                    cur = parent[cur]
                cycle.append(child)
                cycle.reverse()
                return cycle
            if color[child] == white:
                parent[child] = node
                color[child] = grey
                stack.append((child, iter(graph[child])))
    return None


def definition_problems(definition: WorkflowDefinition) -> List[str]:
    """Collect every structural problem in ``definition``.

    Edges run from a dependency to the steps that depend on it, so the entry
    step must reach every other step and the graph must be acyclic.
    """

    problems: List[str] = []
    if not definition.steps:
        return ["definition has no steps"]

    ids = [step.id for step in definition.steps]
    seen: set[str] = set()
    for step_id in ids:
        if step_id in seen:
            problems.append(f"duplicate step id {step_id!r}")
        seen.add(step_id)

    if definition.entry_step_id not in seen:
        problems.append(f"entry step {definition.entry_step_id!r} does not exist")

    dependents: Dict[str, List[str]] = {step_id: [] for step_id in seen}
    for step in definition.steps:
        for dep in step.dependencies:
            if dep == step.id:
                problems.append(f"step {step.id!r} depends on itself")
            elif dep not in seen:
                problems.append(f"step {step.id!r} depends on unknown step {dep!r}")
            else:
                dependents[dep].append(step.id)

    if problems:
        return problems

    cycle = _find_cycle(dependents)
    if cycle:
        problems.append("dependency cycle: " + " -> ".join(cycle))
        return problems

    reached = {definition.entry_step_id}
    queue = deque([definition.entry_step_id])
    while queue:
        for child in dependents[queue.popleft()]:
            if child not in reached:
                reached.add(child)
                queue.append(child)
    unreachable = [step_id for step_id in ids if step_id not in reached]
    if unreachable:
        problems.append(
            "steps unreachable from entry step: " + ", ".join(sorted(unreachable))
        )
    return problems


def validate_definition(definition: WorkflowDefinition) -> None:
    """Raise ``InvalidDefinition`` when the definition cannot run to completion."""

    problems = definition_problems(definition)
    if problems:
        raise InvalidDefinition(definition.id, problems)
