"""
Task Model and Store
====================

Usage:
    from hermes.tasks import TaskStore, TaskStatus

    store = TaskStore(".")
    task = store.get_next_task()
    store.update_task_status(task.id, TaskStatus.IN_PROGRESS)
"""

from hermes.tasks.models import Feature, Priority, Progress, Task, TaskStatus
from hermes.tasks.store import TaskStore

__all__ = [
    'Feature',
    'Priority',
    'Progress',
    'Task',
    'TaskStatus',
    'TaskStore',
]
