"""Compile workflow definitions into validated dependency graphs."""

from __future__ import annotations

import heapq
from dataclasses import dataclass, field
from typing import Dict, List, Tuple

from .contracts import StepDefinition, WorkflowDefinition
from .errors import CycleDetected, DuplicateStepName, UnknownPredecessor


@dataclass(frozen=True)
class Graph:
    """Read-only compiled view of a workflow definition."""

    definition: WorkflowDefinition
    order: Tuple[str, ...]
    predecessors: Dict[str, Tuple[str, ...]] = field(default_factory=dict)
    dependents: Dict[str, Tuple[str, ...]] = field(default_factory=dict)

    @property
    def definition_id(self) -> str:
        return self.definition.definition_id

    def step(self, name: str) -> StepDefinition:
        step = self.definition.get_step(name)
        if step is None:
            raise KeyError(name)
        return step

    def index(self, name: str) -> int:
        """Position of ``name`` in topological order."""
        return self.order.index(name)

    def dependencies(self) -> Dict[str, List[str]]:
        """Plain step -> predecessors mapping, suitable for persisting."""
        return {name: list(self.predecessors[name]) for name in self.order}


def compile_definition(definition: WorkflowDefinition) -> Graph:
    """Validate ``definition`` and return its topologically ordered graph.

    Ties between independent steps are broken by declaration order, so the
    same definition always compiles to the same order.
    """
    declared: Dict[str, int] = {}
    for position, step in enumerate(definition.steps):
        if step.name in declared:
            raise DuplicateStepName(step.name)
        declared[step.name] = position

    predecessors: Dict[str, Tuple[str, ...]] = {}
    dependents: Dict[str, List[str]] = {name: [] for name in declared}
    for step in definition.steps:
        for pred in step.after:
            if pred == step.name or pred not in declared:
                raise UnknownPredecessor(step.name, pred)
        # duplicate entries in ``after`` collapse to one edge
        unique = tuple(dict.fromkeys(step.after))
        predecessors[step.name] = unique
        for pred in unique:
            dependents[pred].append(step.name)

    in_degree = {name: len(preds) for name, preds in predecessors.items()}
    ready = [(declared[name], name) for name, deg in in_degree.items() if deg == 0]
    heapq.heapify(ready)
    order: List[str] = []
    while ready:
        _, name = heapq.heappop(ready)
        order.append(name)
        for child in dependents[name]:
            in_degree[child] -= 1
            if in_degree[child] == 0:
                heapq.heappush(ready, (declared[child], child))

    if len(order) != len(declared):
        remaining = {name for name, deg in in_degree.items() if deg > 0}
        raise CycleDetected(_find_cycle(remaining, predecessors, declared))

    return Graph(
        definition=definition,
        order=tuple(order),
        predecessors=predecessors,
        dependents={
            name: tuple(sorted(children, key=declared.__getitem__))
            for name, children in dependents.items()
        },
    )


def _find_cycle(
    remaining: set,
    predecessors: Dict[str, Tuple[str, ...]],
    declared: Dict[str, int],
) -> List[str]:
    # Every node left after Kahn's pass has a predecessor that is also left,
    # so walking predecessors must eventually revisit a node.
    start = min(remaining, key=declared.__getitem__)
    path: List[str] = []
    seen: Dict[str, int] = {}
    node = start
    while node not in seen:
        seen[node] = len(path)
        path.append(node)
        node = next(p for p in predecessors[node] if p in remaining)
    cycle = path[seen[node]:]
    cycle.reverse()
    # report in execution direction, starting and ending with the same step
    return cycle + [cycle[0]]
