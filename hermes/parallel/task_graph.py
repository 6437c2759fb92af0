"""
Task Graph
==========

Dependency graph over tasks and the scheduler that turns it into batches of
concurrently runnable work.

Key Features:
- Validates dependencies up front (unknown references, cycles via DFS)
- Kahn-style layering into batches over non-completed tasks
- Priority ordering within a batch (P1 first, then task ID)
- Splits batches at the worker cap, isolating non-parallelizable tasks
  and tasks that share files
- Mermaid and ASCII renderings of the plan
"""

from dataclasses import dataclass, field
from typing import Dict, List, Optional, Set, Tuple
import logging

from hermes.errors import GraphError
from hermes.tasks.models import Task, TaskStatus

logger = logging.getLogger(__name__)


@dataclass
class DependencyGraph:
    """
    Result of dependency resolution.

    Attributes:
        batches: Task ID batches that can execute in parallel
        task_order: Flattened list of all tasks in execution order
        circular_deps: Detected circular dependency cycles
        missing_deps: (task ID, unknown dependency) pairs
    """
    batches: List[List[str]] = field(default_factory=list)
    task_order: List[str] = field(default_factory=list)
    circular_deps: List[Tuple[str, ...]] = field(default_factory=list)
    missing_deps: List[Tuple[str, str]] = field(default_factory=list)


def _sort_key(task: Task) -> Tuple[int, str]:
    return (task.priority.rank, task.id)


class TaskGraph:
    """
    Scheduler over a fixed set of tasks.

    The graph is a pure function of task statuses: every query accepts an
    optional ``statuses`` override and nothing is mutated, so callers must
    re-query after each status change.
    """

    def __init__(self, tasks: List[Task], max_workers: int = 3, validate: bool = True):
        """
        Initialize task graph.

        Args:
            tasks: All tasks, including completed ones
            max_workers: Maximum tasks per batch
            validate: Raise GraphError for unknown dependencies or cycles

        Raises:
            GraphError: If validation fails
        """
        self.tasks: Dict[str, Task] = {}
        for task in tasks:
            self.tasks[task.id] = task
        self.max_workers = max(1, max_workers)

        # dependents[task_id] = tasks that depend on task_id
        self._dependents: Dict[str, List[str]] = {tid: [] for tid in self.tasks}
        for task in self.tasks.values():
            for dep in task.dependencies:
                if dep in self._dependents:
                    self._dependents[dep].append(task.id)

        if validate:
            self.validate()

    def validate(self) -> None:
        """
        Raises:
            GraphError: On a dependency on an unknown task, or a cycle
        """
        missing = self._find_missing()
        if missing:
            details = ", ".join(f"{tid} -> {dep}" for tid, dep in missing)
            raise GraphError(
                f"Unresolvable dependencies: {details}",
                stuck=sorted({tid for tid, _ in missing}),
            )

        cycles = self._detect_cycles()
        if cycles:
            members = sorted({tid for cycle in cycles for tid in cycle})
            rendered = "; ".join(" -> ".join(cycle) for cycle in cycles)
            raise GraphError(f"Circular dependency detected: {rendered}", stuck=members)

    def status_of(self, task_id: str, statuses: Optional[Dict[str, TaskStatus]] = None) -> TaskStatus:
        if statuses and task_id in statuses:
            return statuses[task_id]
        return self.tasks[task_id].status

    def completed_ids(self, statuses: Optional[Dict[str, TaskStatus]] = None) -> Set[str]:
        return {tid for tid in self.tasks if self.status_of(tid, statuses) == TaskStatus.COMPLETED}

    def ready_tasks(self, statuses: Optional[Dict[str, TaskStatus]] = None) -> List[Task]:
        """NOT_STARTED tasks whose dependencies are all COMPLETED, in priority order."""
        completed = self.completed_ids(statuses)
        ready = [
            task for task in self.tasks.values()
            if self.status_of(task.id, statuses) == TaskStatus.NOT_STARTED
            and all(dep in completed for dep in task.dependencies)
        ]
        return sorted(ready, key=_sort_key)

    def next_batch(self, statuses: Optional[Dict[str, TaskStatus]] = None) -> List[Task]:
        """First sub-batch of currently ready tasks (empty when nothing can start)."""
        ready = self.ready_tasks(statuses)
        if not ready:
            return []
        return self._split_ready(ready)

    def next_task(self, statuses: Optional[Dict[str, TaskStatus]] = None) -> Optional[Task]:
        """Single highest-priority ready task for serial execution."""
        ready = self.ready_tasks(statuses)
        return ready[0] if ready else None

    def is_complete(self, statuses: Optional[Dict[str, TaskStatus]] = None) -> bool:
        return all(self.status_of(tid, statuses) == TaskStatus.COMPLETED for tid in self.tasks)

    def get_batches(self, statuses: Optional[Dict[str, TaskStatus]] = None) -> List[List[Task]]:
        """
        Plan every non-completed task into ordered batches.

        A task appears only after every batch containing one of its
        dependencies. Layers larger than the worker cap are split, deferring
        lower-priority overflow to the following sub-batch.

        Raises:
            GraphError: If some tasks can never be scheduled
        """
        done = self.completed_ids(statuses)
        pending = {tid for tid in self.tasks if tid not in done}
        batches: List[List[Task]] = []

        while pending:
            layer = sorted(
                (self.tasks[tid] for tid in pending
                 if all(dep in done for dep in self.tasks[tid].dependencies)),
                key=_sort_key,
            )
            if not layer:
                raise GraphError(
                    f"Cyclic dependency: {len(pending)} tasks cannot be scheduled",
                    stuck=sorted(pending),
                )

            while layer:
                batch = self._split_ready(layer)
                batches.append(batch)
                selected = {t.id for t in batch}
                layer = [t for t in layer if t.id not in selected]

            for task_id in [tid for tid in pending if all(dep in done for dep in self.tasks[tid].dependencies)]:
                done.add(task_id)
                pending.discard(task_id)

        logger.debug(f"Planned {sum(len(b) for b in batches)} tasks into {len(batches)} batches")
        return batches

    def resolve(self, statuses: Optional[Dict[str, TaskStatus]] = None) -> DependencyGraph:
        """
        Resolve the graph without raising.

        Tasks caught in cycles or depending on unknown tasks are reported and
        left out of the batches.
        """
        missing = self._find_missing()
        cycles = self._detect_cycles()

        done = self.completed_ids(statuses)
        known = set(self.tasks)
        pending = {tid for tid in self.tasks if tid not in done}
        pending -= {tid for tid, _ in missing}
        batches: List[List[str]] = []

        while pending:
            layer = sorted(
                (self.tasks[tid] for tid in pending
                 if all(dep in done for dep in self.tasks[tid].dependencies if dep in known)),
                key=_sort_key,
            )
            if not layer:
                break
            while layer:
                batch = self._split_ready(layer)
                batches.append([t.id for t in batch])
                selected = {t.id for t in batch}
                layer = [t for t in layer if t.id not in selected]
                for task_id in selected:
                    done.add(task_id)
                    pending.discard(task_id)

        if cycles:
            logger.warning(f"Circular dependencies detected: {cycles}")
        if missing:
            logger.warning(f"Missing dependencies detected: {missing}")

        return DependencyGraph(
            batches=batches,
            task_order=[tid for batch in batches for tid in batch],
            circular_deps=cycles,
            missing_deps=missing,
        )

    def detect_file_conflicts(self, tasks: Optional[List[Task]] = None) -> Dict[str, List[str]]:
        """
        Predict file overlaps between tasks from their declared files.

        Args:
            tasks: Tasks to compare (defaults to all non-completed tasks)

        Returns:
            Mapping of file path to the IDs of every task that touches it,
            for files touched by at least two tasks
        """
        if tasks is None:
            tasks = [t for t in self.tasks.values() if t.status != TaskStatus.COMPLETED]
        touched: Dict[str, List[str]] = {}
        for task in sorted(tasks, key=_sort_key):
            for path in sorted(task.touched_files()):
                touched.setdefault(path, []).append(task.id)
        return {path: ids for path, ids in sorted(touched.items()) if len(ids) > 1}

    def to_mermaid(self) -> str:
        """Generate a Mermaid flowchart of dependencies."""
        if not self.tasks:
            return "graph TD\n  Empty[No tasks]"

        graph = self.resolve()
        batch_of = {tid: i for i, batch in enumerate(graph.batches) for tid in batch}
        lines = ["graph TD"]

        for task_id in sorted(self.tasks):
            task = self.tasks[task_id]
            name = task.name.replace('"', "'").replace('[', '(').replace(']', ')')
            if len(name) > 40:
                name = name[:37] + "..."
            if task_id in batch_of:
                lines.append(f'  {task_id}["{task_id}: {name}<br/>Batch {batch_of[task_id] + 1}"]')
            else:
                lines.append(f'  {task_id}["{task_id}: {name}"]')

        for task_id in sorted(self._dependents):
            for dependent_id in self._dependents[task_id]:
                lines.append(f'  {task_id} --> {dependent_id}')

        if graph.circular_deps:
            lines.append('')
            lines.append('  %% Circular dependencies detected')
            for cycle in graph.circular_deps:
                lines.append(f'  %% Cycle: {" -> ".join(cycle)}')

        return '\n'.join(lines)

    def to_ascii(self) -> str:
        """Generate an ASCII listing of the batch plan."""
        graph = self.resolve()
        lines = ["=" * 70, "DEPENDENCY GRAPH", "=" * 70]

        for batch_num, batch in enumerate(graph.batches, start=1):
            lines.append(f"\nBATCH {batch_num} (can run in parallel):")
            lines.append("-" * 70)
            for task_id in batch:
                task = self.tasks[task_id]
                lines.append(f"  [{task_id}] {task.name}")
                lines.append(f"      Priority: {task.priority.value}")
                if task.dependencies:
                    lines.append(f"      Depends on: {', '.join(task.dependencies)}")
                else:
                    lines.append("      Depends on: None")
                if not task.parallelizable:
                    lines.append("      Runs alone (not parallelizable)")

        if graph.circular_deps:
            lines.append("\n" + "!" * 70)
            lines.append("CIRCULAR DEPENDENCIES DETECTED:")
            lines.append("!" * 70)
            for cycle in graph.circular_deps:
                lines.append(f"  {' -> '.join(cycle)}")

        if graph.missing_deps:
            lines.append("\n" + "!" * 70)
            lines.append("MISSING/INVALID DEPENDENCIES:")
            lines.append("!" * 70)
            for task_id, dep in graph.missing_deps:
                lines.append(f"  [{task_id}] depends on unknown task {dep}")

        lines.append("\n" + "=" * 70)
        lines.append(f"Total: {len(graph.task_order)} tasks in {len(graph.batches)} batches")
        lines.append("=" * 70)
        return '\n'.join(lines)

    def _split_ready(self, ready: List[Task]) -> List[Task]:
        """
        Pick the next sub-batch from priority-ordered ready tasks.

        A non-parallelizable task only ever runs alone. Tasks sharing a file
        with an already selected task wait for a later sub-batch.
        """
        selected: List[Task] = []
        claimed: Set[str] = set()
        for task in ready:
            if len(selected) >= self.max_workers:
                break
            if not task.parallelizable:
                if not selected:
                    return [task]
                continue
            files = task.touched_files()
            if files & claimed:
                continue
            selected.append(task)
            claimed |= files
        return selected

    def _find_missing(self) -> List[Tuple[str, str]]:
        missing = []
        for task_id in sorted(self.tasks):
            for dep in self.tasks[task_id].dependencies:
                if dep not in self.tasks:
                    logger.warning(f"Task {task_id} has invalid dependency: {dep}")
                    missing.append((task_id, dep))
        return missing

    def _detect_cycles(self) -> List[Tuple[str, ...]]:
        """
        Detect circular dependency cycles using DFS.

        Returns:
            Cycles as tuples, closing on their first member (A, B, A)
        """
        cycles: List[Tuple[str, ...]] = []
        visited: Set[str] = set()
        rec_stack: Set[str] = set()
        path: List[str] = []

        def dfs(task_id: str) -> None:
            visited.add(task_id)
            rec_stack.add(task_id)
            path.append(task_id)

            for dep_id in self.tasks[task_id].dependencies:
                if dep_id not in self.tasks:
                    continue
                if dep_id not in visited:
                    dfs(dep_id)
                elif dep_id in rec_stack:
                    cycle = tuple(path[path.index(dep_id):] + [dep_id])
                    if cycle not in cycles:
                        cycles.append(cycle)

            path.pop()
            rec_stack.remove(task_id)

        for task_id in sorted(self.tasks):
            if task_id not in visited:
                dfs(task_id)

        return cycles
