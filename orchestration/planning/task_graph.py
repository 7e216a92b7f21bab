"""Task Graph - DAG analysis for execution plans.

Builds adjacency indexes over a list of tasks and answers the questions the
planner and optimizer ask of a plan: dependency layers, cycle paths, the
critical path, earliest finish times and simulated makespans under a
parallelism cap.
"""

from collections import defaultdict
from typing import Iterable, Iterator

from orchestration.planning.models import (
    PRIORITY_RANK,
    DependencyGraph,
    Task,
    TaskDependency,
)


class TaskGraph:
    """Directed graph of task dependencies.

    Construction never fails: cycles and dangling dependency IDs are
    reported by :meth:`find_cycle` and :meth:`missing_dependencies`, and the
    ordering methods raise ``ValueError`` when they run into them.
    """

    def __init__(self, tasks: list[Task]):
        self.tasks: dict[str, Task] = {}
        self._order: dict[str, int] = {}
        self._adjacency: dict[str, set[str]] = defaultdict(set)  # task -> dependents
        self._reverse: dict[str, set[str]] = defaultdict(set)    # task -> dependencies

        self._build_graph(tasks)

    def _build_graph(self, tasks: list[Task]) -> None:
        for index, task in enumerate(tasks):
            self.tasks[task.id] = task
            self._order[task.id] = index

        for task in tasks:
            for dep_id in task.dependencies:
                self._adjacency[dep_id].add(task.id)
                self._reverse[task.id].add(dep_id)

    def _sorted(self, task_ids: Iterable[str]) -> list[str]:
        """Plan order."""
        return sorted(task_ids, key=lambda t: self._order[t])

    # =========================================================================
    # Structural checks
    # =========================================================================

    def missing_dependencies(self) -> list[tuple[str, str]]:
        """(task_id, dependency_id) pairs naming tasks not in the graph."""
        missing = []
        for task_id in self.tasks:
            for dep_id in sorted(self._reverse[task_id]):
                if dep_id not in self.tasks:
                    missing.append((task_id, dep_id))
        return missing

    def find_cycle(self) -> list[str] | None:
        """Return a dependency loop as ``[a, b, ..., a]``, or None for a DAG.

        Walks dependency edges depth-first with a recursion stack so the
        reported path is the actual loop.
        """
        WHITE, GRAY, BLACK = 0, 1, 2
        color = {task_id: WHITE for task_id in self.tasks}
        stack: list[str] = []

        def dfs(node: str) -> list[str] | None:
            color[node] = GRAY
            stack.append(node)
            for dep_id in self._sorted(d for d in self._reverse[node] if d in self.tasks):
                if color[dep_id] == GRAY:
                    start = stack.index(dep_id)
                    return stack[start:] + [dep_id]
                if color[dep_id] == WHITE:
                    cycle = dfs(dep_id)
                    if cycle:
                        return cycle
            stack.pop()
            color[node] = BLACK
            return None

        for node in self.tasks:
            if color[node] == WHITE:
                cycle = dfs(node)
                if cycle:
                    return cycle
        return None

    # =========================================================================
    # Ordering
    # =========================================================================

    def topological_order(self) -> Iterator[str]:
        """Yield task IDs in topological order (Kahn's algorithm)."""
        in_degree = {t: len(self._reverse[t]) for t in self.tasks}
        queue = [t for t in self.tasks if in_degree[t] == 0]

        while queue:
            task_id = queue.pop(0)
            yield task_id

            for dependent in self._sorted(self._adjacency[task_id]):
                in_degree[dependent] -= 1
                if in_degree[dependent] == 0:
                    queue.append(dependent)

    def execution_levels(self) -> list[list[str]]:
        """Get tasks grouped by dependency layer.

        Layer 0 holds tasks without dependencies; layer k holds tasks whose
        dependencies all sit in earlier layers. Tasks in one layer have no
        dependencies on each other.
        """
        levels: list[list[str]] = []
        remaining = set(self.tasks)
        completed: set[str] = set()

        while remaining:
            current_level = [t for t in self._sorted(remaining) if self._reverse[t] <= completed]

            if not current_level:
                raise ValueError("Cycle or missing dependency - cannot determine execution levels")

            levels.append(current_level)
            completed.update(current_level)
            remaining -= set(current_level)

        return levels

    def get_dependencies(self, task_id: str) -> set[str]:
        """Get direct dependencies of a task."""
        return self._reverse[task_id].copy()

    def get_dependents(self, task_id: str) -> set[str]:
        """Get tasks that directly depend on this task."""
        return self._adjacency[task_id].copy()

    def get_descendants(self, task_id: str) -> list[str]:
        """All tasks transitively depending on ``task_id``, in plan order."""
        seen: set[str] = set()
        frontier = [task_id]
        while frontier:
            current = frontier.pop()
            for dependent in self._adjacency[current]:
                if dependent not in seen and dependent in self.tasks:
                    seen.add(dependent)
                    frontier.append(dependent)
        seen.discard(task_id)
        return self._sorted(seen)

    # =========================================================================
    # Durations
    # =========================================================================

    def _longest_paths(self, completed: set[str]) -> tuple[dict[str, int], dict[str, str | None]]:
        """Earliest finish per remaining task and the predecessor that sets it.

        Ties between equally long predecessors go to the higher-priority
        task, then to the lowest task ID.
        """
        finish: dict[str, int] = {}
        previous: dict[str, str | None] = {}

        order = list(self.topological_order())
        if len(order) != len(self.tasks):
            raise ValueError("Cycle or missing dependency - cannot compute durations")

        for task_id in order:
            if task_id in completed:
                continue
            task = self.tasks[task_id]
            deps = [d for d in self._reverse[task_id] if d not in completed]
            if deps:
                best = min(
                    deps,
                    key=lambda d: (-finish[d], -PRIORITY_RANK[self.tasks[d].priority], d),
                )
                finish[task_id] = finish[best] + task.estimated_duration
                previous[task_id] = best
            else:
                finish[task_id] = task.estimated_duration
                previous[task_id] = None

        return finish, previous

    def earliest_finish(self) -> dict[str, int]:
        """Minutes from plan start until each task can be done."""
        finish, _ = self._longest_paths(set())
        return finish

    def critical_path(self, completed: Iterable[str] = ()) -> tuple[list[str], int]:
        """Longest cumulative-duration path and its length in minutes.

        Tasks in ``completed`` are treated as already done and excluded.
        """
        finish, previous = self._longest_paths(set(completed))
        if not finish:
            return [], 0

        end = min(
            finish,
            key=lambda t: (-finish[t], -PRIORITY_RANK[self.tasks[t].priority], t),
        )

        path: list[str] = []
        current: str | None = end
        while current is not None:
            path.append(current)
            current = previous[current]
        path.reverse()

        return path, finish[end]

    def simulate_schedule(
        self,
        max_parallel: int | None = None,
        completed: Iterable[str] = (),
    ) -> int:
        """Makespan in minutes of a greedy list schedule.

        Parallel-eligible tasks share up to ``max_parallel`` slots (unbounded
        when None); a task with ``can_run_in_parallel=False`` only starts on an
        idle schedule and runs alone. Ready tasks start in priority order, then
        plan order. With no cap and every task eligible the makespan equals the
        critical-path length.
        """
        if max_parallel is not None and max_parallel < 1:
            raise ValueError("max_parallel must be at least 1")

        done = set(completed) & set(self.tasks)
        waiting = {
            t: {d for d in self._reverse[t] if d not in done}
            for t in self.tasks
            if t not in done
        }
        total = len(self.tasks)

        def rank(task_id: str) -> tuple[int, int]:
            return (-PRIORITY_RANK[self.tasks[task_id].priority], self._order[task_id])

        ready = [t for t, deps in waiting.items() if not deps]
        running: list[tuple[int, str]] = []
        now = 0

        while ready or running:
            if not any(not self.tasks[r].can_run_in_parallel for _, r in running):
                for task_id in sorted(ready, key=rank):
                    task = self.tasks[task_id]
                    if task.can_run_in_parallel:
                        if max_parallel is None or len(running) < max_parallel:
                            running.append((now + task.estimated_duration, task_id))
                            ready.remove(task_id)
                    elif not running:
                        running.append((now + task.estimated_duration, task_id))
                        ready.remove(task_id)
                        break

            if not running:
                break

            now = min(end for end, _ in running)
            finished = [t for end, t in running if end == now]
            running = [(end, t) for end, t in running if end != now]

            for task_id in finished:
                done.add(task_id)
                for dependent in self._sorted(self._adjacency[task_id]):
                    if dependent in waiting:
                        waiting[dependent].discard(task_id)
                        if not waiting[dependent] and dependent not in done and dependent not in ready:
                            ready.append(dependent)

        if len(done) != total:
            raise ValueError("Cycle or missing dependency - schedule cannot complete")

        return now

    # =========================================================================
    # Export
    # =========================================================================

    def to_dependency_graph(self) -> DependencyGraph:
        """Snapshot as a DependencyGraph (layers and critical path included)."""
        edges = []
        for task in self.tasks.values():
            for dep_id in task.dependencies:
                dep = self.tasks.get(dep_id)
                reason = f"{task.name} requires {dep.name}" if dep else f"{task.name} requires {dep_id}"
                edges.append(TaskDependency(from_task_id=dep_id, to_task_id=task.id, reason=reason))

        critical_path, _ = self.critical_path()
        return DependencyGraph(
            nodes=list(self.tasks),
            edges=edges,
            layers=self.execution_levels(),
            critical_path=critical_path,
        )
