"""
Execution Plan Builder
======================

Builds the plan shown by ``hermes plan`` and ``hermes run --dry-run``: the
parallel batches, predicted file conflicts and the worktree each task
would run in.
"""

from dataclasses import dataclass, field, asdict
from datetime import datetime
from typing import Any, Dict, List, Optional
import logging

from hermes.parallel.task_graph import TaskGraph
from hermes.parallel.workspace import BRANCH_PREFIX, WORKTREE_PREFIX, sanitize_task_id
from hermes.tasks.models import Task

logger = logging.getLogger(__name__)


@dataclass
class FileConflict:
    """
    A predicted file conflict between tasks.

    Attributes:
        task_ids: Tasks that declare the file
        predicted_files: Files that might be modified by multiple tasks
        conflict_type: "same_file" or "same_directory"
        same_batch: All involved tasks land in one batch
    """
    task_ids: List[str]
    predicted_files: List[str]
    conflict_type: str
    same_batch: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class ExecutionBatch:
    """
    Attributes:
        batch_id: 1-based position in the plan
        task_ids: Tasks in this batch
        can_parallel: More than one task runs at once
        depends_on: Earlier batches holding a dependency of this batch
    """
    batch_id: int
    task_ids: List[str]
    can_parallel: bool = True
    depends_on: List[int] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class ExecutionPlan:
    """
    Complete execution plan for a project.

    Attributes:
        created_at: When the plan was built
        batches: Execution batches in order
        worktree_assignments: Task ID to worktree directory name
        predicted_conflicts: File conflicts predicted from declared files
        metadata: Circular and missing dependencies, worker cap
    """
    created_at: datetime
    batches: List[ExecutionBatch]
    worktree_assignments: Dict[str, str]
    predicted_conflicts: List[FileConflict]
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to JSON-serializable dictionary."""
        return {
            "created_at": self.created_at.isoformat(),
            "batches": [b.to_dict() for b in self.batches],
            "worktree_assignments": dict(self.worktree_assignments),
            "predicted_conflicts": [c.to_dict() for c in self.predicted_conflicts],
            "metadata": self.metadata,
        }

    @property
    def total_tasks(self) -> int:
        return sum(len(b.task_ids) for b in self.batches)

    @property
    def parallel_batches(self) -> int:
        return sum(1 for b in self.batches if b.can_parallel)

    @property
    def is_valid(self) -> bool:
        return not self.metadata.get("circular_deps") and not self.metadata.get("missing_deps")

    def to_ascii(self) -> str:
        rule = "=" * 60
        lines = [
            rule,
            "EXECUTION PLAN",
            rule,
            f"Tasks: {self.total_tasks}  Batches: {len(self.batches)}  "
            f"Parallel batches: {self.parallel_batches}",
        ]
        for batch in self.batches:
            mode = "parallel" if batch.can_parallel else "sequential"
            header = f"\nBatch {batch.batch_id} ({mode})"
            if batch.depends_on:
                header += f" after batch {', '.join(str(b) for b in batch.depends_on)}"
            lines.append(header)
            for task_id in batch.task_ids:
                lines.append(f"  - {task_id} -> {self.worktree_assignments.get(task_id, '')}")

        if self.predicted_conflicts:
            lines.append("\nPredicted conflicts:")
            for conflict in self.predicted_conflicts:
                scope = "same batch" if conflict.same_batch else "different batches"
                lines.append(
                    f"  ! {', '.join(conflict.predicted_files)}: "
                    f"{', '.join(conflict.task_ids)} ({conflict.conflict_type}, {scope})"
                )

        for cycle in self.metadata.get("circular_deps", []):
            lines.append(f"\nCircular dependency: {' -> '.join(cycle)}")
        for task_id, dep in self.metadata.get("missing_deps", []):
            lines.append(f"\nTask {task_id} depends on unknown task {dep}")

        lines.append(rule)
        return "\n".join(lines)


class ExecutionPlanBuilder:
    """Builds execution plans from a task list using TaskGraph."""

    def __init__(self, max_workers: int = 3):
        self.max_workers = max_workers

    def build_plan(self, tasks: List[Task]) -> ExecutionPlan:
        graph = TaskGraph(tasks, max_workers=self.max_workers, validate=False)
        resolved = graph.resolve()

        batch_of: Dict[str, int] = {}
        batches: List[ExecutionBatch] = []
        for number, task_ids in enumerate(resolved.batches, start=1):
            depends_on = sorted({
                batch_of[dep]
                for task_id in task_ids
                for dep in graph.tasks[task_id].dependencies
                if dep in batch_of
            })
            batches.append(ExecutionBatch(
                batch_id=number,
                task_ids=list(task_ids),
                can_parallel=len(task_ids) > 1,
                depends_on=depends_on,
            ))
            for task_id in task_ids:
                batch_of[task_id] = number

        pending = [graph.tasks[tid] for tid in resolved.task_order]
        plan = ExecutionPlan(
            created_at=datetime.now(),
            batches=batches,
            worktree_assignments={
                tid: f"{WORKTREE_PREFIX}{sanitize_task_id(tid)} ({BRANCH_PREFIX}{tid})"
                for tid in resolved.task_order
            },
            predicted_conflicts=self.analyze_file_conflicts(pending, batch_of),
            metadata={
                "max_workers": self.max_workers,
                "circular_deps": [list(c) for c in resolved.circular_deps],
                "missing_deps": [list(m) for m in resolved.missing_deps],
            },
        )
        logger.info(f"Built execution plan: {plan.total_tasks} tasks in {len(batches)} batches")
        return plan

    def analyze_file_conflicts(
        self,
        tasks: List[Task],
        batch_of: Optional[Dict[str, int]] = None
    ) -> List[FileConflict]:
        """
        Predict which tasks might modify the same files or directories.

        Args:
            tasks: Tasks to compare, using their declared files
            batch_of: Task ID to batch number, to flag same-batch conflicts

        Returns:
            List of FileConflict objects
        """
        batch_of = batch_of or {}
        file_to_tasks: Dict[str, List[str]] = {}
        for task in tasks:
            for path in sorted(task.touched_files()):
                file_to_tasks.setdefault(path, []).append(task.id)

        conflicts: List[FileConflict] = []
        seen = set()
        for path, task_ids in sorted(file_to_tasks.items()):
            if len(task_ids) < 2:
                continue
            group = tuple(sorted(task_ids))
            if group in seen:
                continue
            seen.add(group)
            shared = sorted(f for f, tids in file_to_tasks.items() if tuple(sorted(tids)) == group)
            conflicts.append(FileConflict(
                task_ids=list(group),
                predicted_files=shared,
                conflict_type="same_file",
                same_batch=self._same_batch(group, batch_of),
            ))

        dir_to_tasks: Dict[str, List[str]] = {}
        for path, task_ids in file_to_tasks.items():
            if "/" not in path:
                continue
            dir_path = path.rsplit("/", 1)[0]
            for task_id in task_ids:
                members = dir_to_tasks.setdefault(dir_path, [])
                if task_id not in members:
                    members.append(task_id)

        for dir_path, task_ids in sorted(dir_to_tasks.items()):
            group = tuple(sorted(task_ids))
            if len(group) < 2 or group in seen:
                continue
            seen.add(group)
            conflicts.append(FileConflict(
                task_ids=list(group),
                predicted_files=[f"{dir_path}/*"],
                conflict_type="same_directory",
                same_batch=self._same_batch(group, batch_of),
            ))

        return conflicts

    @staticmethod
    def _same_batch(task_ids, batch_of: Dict[str, int]) -> bool:
        batches = {batch_of.get(tid) for tid in task_ids}
        return len(batches) == 1 and None not in batches
