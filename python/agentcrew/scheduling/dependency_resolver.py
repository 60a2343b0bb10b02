"""Dependency graph analysis for one task's sub-tasks.

Standalone module: pure Python over (id, dependencies) pairs.

Provides:
- Cycle detection (DFS, returns the cycle path)
- Topological ordering via Kahn's algorithm (execution waves)
- Blocked queries for queue introspection

Readiness during scheduling is decided by the task store ("every
dependency is ``completed``"); this graph is used to explain and
validate, never to unblock.
"""

from __future__ import annotations

import logging
from typing import Dict, Iterable, List, Mapping, Optional, Set

from agentcrew.exceptions_unified import DependencyResolutionError
from agentcrew.orchestration.models import SubTask, TaskStatus

logger = logging.getLogger(__name__)


class CycleDetectedError(DependencyResolutionError):
    """Raised by ``DependencyGraph.check`` when the graph has a cycle."""

    def __init__(self, cycle: List[str]) -> None:
        self.cycle = cycle
        path = " -> ".join(cycle)
        super().__init__(f"Dependency cycle detected: {path}", details={"cycle": cycle})


class DependencyGraph:
    """Forward and reverse edges over sub-task ids, in insertion order."""

    def __init__(self) -> None:
        # Forward edges: id → ids it depends ON
        self._dependencies: Dict[str, Set[str]] = {}
        # Reverse edges: id → ids that depend on IT
        self._dependents: Dict[str, Set[str]] = {}
        self._order: List[str] = []

    @classmethod
    def from_subtasks(cls, subtasks: Iterable[SubTask]) -> "DependencyGraph":
        graph = cls()
        for sub in subtasks:
            graph.add(sub.id, sub.dependencies)
        return graph

    def add(self, node_id: str, dependencies: Iterable[str] = ()) -> None:
        deps = set(dependencies)
        self._dependencies[node_id] = deps
        self._dependents.setdefault(node_id, set())
        self._order.append(node_id)
        for dep in deps:
            self._dependents.setdefault(dep, set()).add(node_id)

    def __contains__(self, node_id: object) -> bool:
        return node_id in self._dependencies

    # ── Validation ───────────────────────────────────────────────────

    def find_cycle(self) -> Optional[List[str]]:
        """Return one cycle as a closed path (``[a, b, a]``), or ``None``."""
        white, grey, black = 0, 1, 2
        colour: Dict[str, int] = {nid: white for nid in self._dependencies}

        for root in self._order:
            if colour[root] != white:
                continue
            stack: List[tuple[str, List[str]]] = [(root, sorted(self._dependencies[root]))]
            path: List[str] = [root]
            colour[root] = grey
            while stack:
                node, pending = stack[-1]
                if not pending:
                    colour[node] = black
                    stack.pop()
                    path.pop()
                    continue
                nxt = pending.pop()
                if nxt not in colour:
                    continue
                if colour[nxt] == grey:
                    start = path.index(nxt)
                    return path[start:] + [nxt]
                if colour[nxt] == white:
                    colour[nxt] = grey
                    path.append(nxt)
                    stack.append((nxt, sorted(self._dependencies[nxt])))
        return None

    def check(self) -> None:
        """Raise ``CycleDetectedError`` if the graph contains a cycle."""
        cycle = self.find_cycle()
        if cycle is not None:
            raise CycleDetectedError(cycle)

    # ── Queries ──────────────────────────────────────────────────────

    def execution_waves(self) -> List[List[str]]:
        """Kahn's algorithm producing parallel execution waves.

        Nodes caught in a cycle never reach in-degree zero and are left
        out, which is exactly how they behave at run time.
        """
        in_degree = {
            nid: len([d for d in deps if d in self._dependencies])
            for nid, deps in self._dependencies.items()
        }
        position = {nid: i for i, nid in enumerate(self._order)}
        current = [nid for nid, deg in in_degree.items() if deg == 0]
        waves: List[List[str]] = []

        while current:
            current.sort(key=position.__getitem__)
            waves.append(current)
            following: List[str] = []
            for nid in current:
                for child in self._dependents.get(nid, set()):
                    if child not in in_degree:
                        continue
                    in_degree[child] -= 1
                    if in_degree[child] == 0:
                        following.append(child)
            current = following
        return waves

    def blocked_by(self, node_id: str, statuses: Mapping[str, TaskStatus]) -> Set[str]:
        """Dependencies of *node_id* that are not ``completed`` yet."""
        return {
            dep for dep in self._dependencies.get(node_id, set())
            if statuses.get(dep) != TaskStatus.COMPLETED
        }
