"""
Task Model
==========

Feature, Task and Progress entities. Pure data with derived queries only;
status changes go through the TaskStore.
"""

from dataclasses import dataclass, field, asdict
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Set


class TaskStatus(Enum):
    """Lifecycle status of a task or feature."""
    NOT_STARTED = "NOT_STARTED"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    BLOCKED = "BLOCKED"
    AT_RISK = "AT_RISK"
    PAUSED = "PAUSED"

    @classmethod
    def parse(cls, value: str) -> "TaskStatus":
        normalized = value.strip().upper().replace(" ", "_").replace("-", "_")
        try:
            return cls(normalized)
        except ValueError:
            raise ValueError(f"Unknown task status: {value!r}")


class Priority(Enum):
    """Task priority, P1 is the most urgent."""
    P1 = "P1"
    P2 = "P2"
    P3 = "P3"
    P4 = "P4"

    @property
    def rank(self) -> int:
        return int(self.value[1])

    @classmethod
    def parse(cls, value: str) -> "Priority":
        normalized = value.strip().upper()
        try:
            return cls(normalized)
        except ValueError:
            raise ValueError(f"Unknown priority: {value!r}")


@dataclass
class Task:
    """
    A single unit of agent work.

    Attributes:
        id: Task ID (e.g. "T001")
        name: Short task name
        status: Current status
        priority: P1..P4
        dependencies: IDs of tasks that must be COMPLETED first
        exclusive_files: Files only this task should modify
        files_to_touch: Files the task is expected to change
        parallelizable: Whether the task may share a batch with others
        feature_id: Owning feature ID
        description: Free-form description
        success_criteria: Acceptance criteria
    """
    id: str
    name: str
    status: TaskStatus = TaskStatus.NOT_STARTED
    priority: Priority = Priority.P2
    dependencies: List[str] = field(default_factory=list)
    exclusive_files: List[str] = field(default_factory=list)
    files_to_touch: List[str] = field(default_factory=list)
    parallelizable: bool = True
    feature_id: str = ""
    description: str = ""
    success_criteria: List[str] = field(default_factory=list)

    @property
    def is_complete(self) -> bool:
        return self.status == TaskStatus.COMPLETED

    @property
    def is_blocked(self) -> bool:
        return self.status == TaskStatus.BLOCKED

    def can_start(self, completed: Set[str]) -> bool:
        """True if the task is NOT_STARTED and every dependency is in ``completed``."""
        if self.status != TaskStatus.NOT_STARTED:
            return False
        return all(dep in completed for dep in self.dependencies)

    def touched_files(self) -> Set[str]:
        return set(self.exclusive_files) | set(self.files_to_touch)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["status"] = self.status.value
        data["priority"] = self.priority.value
        return data


@dataclass
class Progress:
    """Aggregate progress over a set of tasks."""
    total: int = 0
    completed: int = 0
    in_progress: int = 0
    not_started: int = 0
    blocked: int = 0
    percentage: float = 0.0

    @classmethod
    def from_tasks(cls, tasks: Iterable[Task]) -> "Progress":
        progress = cls()
        for task in tasks:
            progress.total += 1
            if task.status == TaskStatus.COMPLETED:
                progress.completed += 1
            elif task.status == TaskStatus.IN_PROGRESS:
                progress.in_progress += 1
            elif task.status == TaskStatus.NOT_STARTED:
                progress.not_started += 1
            elif task.status == TaskStatus.BLOCKED:
                progress.blocked += 1
        if progress.total:
            progress.percentage = progress.completed / progress.total * 100
        return progress

    def format_bar(self, width: int = 30) -> str:
        filled = int(round(self.percentage / 100 * width))
        return f"[{'#' * filled}{'-' * (width - filled)}] {self.percentage:.1f}%"


@dataclass
class Feature:
    """A group of tasks, usually one task file."""
    id: str
    name: str
    priority: Optional[Priority] = None
    target_version: str = ""
    description: str = ""
    tasks: List[Task] = field(default_factory=list)
    file_path: str = ""

    @property
    def status(self) -> TaskStatus:
        """Derived from the aggregate status of the feature's tasks."""
        if not self.tasks:
            return TaskStatus.NOT_STARTED
        statuses = [t.status for t in self.tasks]
        if all(s == TaskStatus.COMPLETED for s in statuses):
            return TaskStatus.COMPLETED
        if TaskStatus.IN_PROGRESS in statuses or TaskStatus.COMPLETED in statuses:
            return TaskStatus.IN_PROGRESS
        if TaskStatus.BLOCKED in statuses:
            return TaskStatus.BLOCKED
        return TaskStatus.NOT_STARTED

    @property
    def progress(self) -> Progress:
        return Progress.from_tasks(self.tasks)

    @property
    def is_complete(self) -> bool:
        return self.status == TaskStatus.COMPLETED
