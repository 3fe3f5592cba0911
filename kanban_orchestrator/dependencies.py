"""Dependency resolution over task ``blockedBy`` edges.

A task is ready for scheduling only when every task it transitively
depends on has ``passes == true`` on the board. The progress status of a
dependency does not matter: a dependency that is "completed" in progress
but not yet accepted still blocks its dependents.
"""

from collections.abc import Iterator

from kanban_orchestrator.errors import CyclicDependencyError
from kanban_orchestrator.models import Task


class DependencyResolver:
    """Answers dependency questions for one snapshot of the task store.

    Usage:
        resolver = DependencyResolver(tasks)
        resolver.validate_acyclic()
        ready = [t for t in tasks if resolver.is_ready(t)]
    """

    def __init__(self, tasks: list[Task]) -> None:
        self._tasks = {task.name: task for task in tasks}

    def _blocked_by(self, name: str) -> Iterator[str]:
        task = self._tasks.get(name)
        return iter(task.blocked_by if task is not None else ())

    def compute_transitive_dependencies(self, name: str) -> list[str]:
        """Return every ancestor of ``name`` in discovery order.

        Dependencies that are not on the board are included (they can
        never pass, so they keep the task blocked). A visited set guards
        against cycles. The walk keeps its own stack, so chain depth is
        not limited by the interpreter's recursion limit.
        """
        visited: set[str] = {name}
        ordered: list[str] = []
        stack = [self._blocked_by(name)]

        while stack:
            for dep in stack[-1]:
                if dep not in visited:
                    visited.add(dep)
                    ordered.append(dep)
                    stack.append(self._blocked_by(dep))
                    break
            else:
                stack.pop()
        return ordered

    def validate_acyclic(self) -> None:
        """Detect cycles using DFS with a recursion-stack marker.

        Raises:
            CyclicDependencyError: With the offending path, e.g. A -> B -> A
        """
        WHITE, GRAY, BLACK = 0, 1, 2
        color = {name: WHITE for name in self._tasks}

        for root in self._tasks:
            if color[root] != WHITE:
                continue
            color[root] = GRAY
            path = [root]
            stack = [self._blocked_by(root)]
            while stack:
                for dep in stack[-1]:
                    if dep not in self._tasks:
                        continue
                    if color[dep] == GRAY:
                        cycle = path[path.index(dep):] + [dep]
                        raise CyclicDependencyError(cycle)
                    if color[dep] == WHITE:
                        color[dep] = GRAY
                        path.append(dep)
                        stack.append(self._blocked_by(dep))
                        break
                else:
                    stack.pop()
                    color[path.pop()] = BLACK

    def unmet_dependencies(self, task: Task) -> list[str]:
        """Transitive dependencies that have not passed yet."""
        unmet = []
        for dep in self.compute_transitive_dependencies(task.name):
            dep_task = self._tasks.get(dep)
            if dep_task is None or not dep_task.passes:
                unmet.append(dep)
        return unmet

    def is_ready(self, task: Task) -> bool:
        """True iff every transitive dependency has ``passes == true``."""
        return not self.unmet_dependencies(task)
