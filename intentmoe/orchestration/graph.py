"""
Dependency graph over a batch of subtasks.

Subtasks are stored in a flat list and edges as index sets, so cycle
detection and readiness bookkeeping work on integers rather than
object references.
"""

import heapq
from typing import Dict, List, Sequence, Set

from intentmoe.errors import CyclicDependencyError, InvalidSubtaskError

from .schemas import Subtask


class DependencyGraph:
    """
    Validated, acyclic dependency graph.

    Construction raises before anything is executed:
    - InvalidSubtaskError for duplicate ids, empty actions or unknown dependencies
    - CyclicDependencyError when the dependency relation has a cycle
    """

    def __init__(self, subtasks: Sequence[Subtask]):
        self.subtasks: List[Subtask] = list(subtasks)
        self.index: Dict[str, int] = {}

        for i, subtask in enumerate(self.subtasks):
            if subtask.subtask_id in self.index:
                raise InvalidSubtaskError(
                    f"Duplicate subtask id: {subtask.subtask_id}", subtask.subtask_id
                )
            if not subtask.action or not subtask.action.strip():
                raise InvalidSubtaskError(
                    f"Subtask {subtask.subtask_id} has no action", subtask.subtask_id
                )
            self.index[subtask.subtask_id] = i

        # dependencies[i]: indices i waits for; dependents[i]: indices waiting for i
        self.dependencies: List[Set[int]] = [set() for _ in self.subtasks]
        self.dependents: List[Set[int]] = [set() for _ in self.subtasks]

        for i, subtask in enumerate(self.subtasks):
            for dependency_id in sorted(subtask.dependencies):
                if dependency_id not in self.index:
                    raise InvalidSubtaskError(
                        f"Subtask {subtask.subtask_id} depends on unknown subtask {dependency_id}",
                        subtask.subtask_id,
                    )
                j = self.index[dependency_id]
                self.dependencies[i].add(j)
                self.dependents[j].add(i)

        self._order = self._topological_order()

    def __len__(self) -> int:
        return len(self.subtasks)

    def in_degrees(self) -> List[int]:
        """Fresh in-degree counts, one per subtask."""
        return [len(deps) for deps in self.dependencies]

    def roots(self) -> List[int]:
        return [i for i, deps in enumerate(self.dependencies) if not deps]

    def priority_key(self, i: int) -> tuple:
        """Ready subtasks dispatch by priority, then batch order."""
        return (self.subtasks[i].priority.rank, i)

    def topological_order(self) -> List[str]:
        """Subtask ids in a valid execution order."""
        return [self.subtasks[i].subtask_id for i in self._order]

    def transitive_dependents(self, i: int) -> Set[int]:
        """Every subtask that directly or indirectly depends on ``i``."""
        found: Set[int] = set()
        stack = list(self.dependents[i])
        while stack:
            j = stack.pop()
            if j in found:
                continue
            found.add(j)
            stack.extend(self.dependents[j])
        return found

    def _topological_order(self) -> List[int]:
        in_degree = self.in_degrees()
        ready = [self.priority_key(i) for i in self.roots()]
        heapq.heapify(ready)

        order: List[int] = []
        while ready:
            _, i = heapq.heappop(ready)
            order.append(i)
            for j in self.dependents[i]:
                in_degree[j] -= 1
                if in_degree[j] == 0:
                    heapq.heappush(ready, self.priority_key(j))

        if len(order) < len(self.subtasks):
            remaining = {i for i, degree in enumerate(in_degree) if degree > 0}
            raise CyclicDependencyError(self._find_cycle(remaining))
        return order

    def _find_cycle(self, candidates: Set[int]) -> List[str]:
        """Walk dependency edges inside the unresolved set until a node repeats."""
        start = min(candidates)
        path: List[int] = []
        position: Dict[int, int] = {}
        node = start
        while node not in position:
            position[node] = len(path)
            path.append(node)
            node = min(j for j in self.dependencies[node] if j in candidates)
        cycle = path[position[node]:] + [node]
        return [self.subtasks[i].subtask_id for i in cycle]
