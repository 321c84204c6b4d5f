"""
Topological Scheduler

Architectural Intent:
- Turns a dependency map into parallel batches for creation
- Destroy order is the exact reverse of the recorded create order, never a
  fresh sort of the current graph

Parallelization Strategy:
- Repeated extraction of every node whose dependencies are all scheduled
  (Kahn's algorithm, one round per batch)
- Ties inside a batch are broken by ascending node id so runs are
  reproducible
"""

from __future__ import annotations
from typing import Iterable, Mapping, Optional

from converge.domain.entities.resource_graph import ResourceGraph
from converge.domain.entities.state_record import StateRecord
from converge.domain.errors import CyclicDependencyError


def find_cycle(adjacency: Mapping[str, Iterable[str]]) -> Optional[list[str]]:
    """Return one dependency cycle as a path (first == last), or None."""
    visited: set[str] = set()
    rec_stack: set[str] = set()
    path: list[str] = []

    def visit(name: str) -> Optional[list[str]]:
        visited.add(name)
        rec_stack.add(name)
        path.append(name)
        for dep in sorted(adjacency.get(name, ())):
            if dep not in visited:
                cycle = visit(dep)
                if cycle:
                    return cycle
            elif dep in rec_stack:
                return path[path.index(dep):] + [dep]
        rec_stack.remove(name)
        path.pop()
        return None

    for name in sorted(adjacency):
        if name not in visited:
            cycle = visit(name)
            if cycle:
                return cycle
    return None


def schedule_batches(dependencies: Mapping[str, Iterable[str]]) -> list[list[str]]:
    """Batch k+1 only depends on batches <= k.

    Dependencies on ids outside the map are ignored; callers scheduling a
    subset have already checked those are satisfied.
    """
    remaining = {
        name: set(deps) & set(dependencies) for name, deps in dependencies.items()
    }
    batches: list[list[str]] = []
    while remaining:
        ready = sorted(name for name, deps in remaining.items() if not deps)
        if not ready:
            raise CyclicDependencyError(find_cycle(remaining) or sorted(remaining))
        batches.append(ready)
        for name in ready:
            del remaining[name]
        for deps in remaining.values():
            deps.difference_update(ready)
    return batches


class TopologicalScheduler:
    def create_batches(self, graph: ResourceGraph) -> list[list[str]]:
        return schedule_batches(graph.dependency_map())

    def destroy_batches(
        self, state: StateRecord, only: Optional[Iterable[str]] = None
    ) -> list[list[str]]:
        return state.destroy_batches(only)
