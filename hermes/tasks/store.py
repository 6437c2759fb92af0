"""
Task Store
==========

Reads feature/task markdown files from ``.hermes/tasks`` and persists task
status changes back into them.

Key Features:
- Parses ``NNN-*.md`` and ``FNNN-*.md`` feature files
- Extracts task fields (status, priority, files, dependencies, criteria)
- Rewrites a single task's ``**Status:**`` line atomically
- Derives progress and the next startable task
"""

from pathlib import Path
from typing import Dict, List, Optional, Tuple
import logging
import re

from hermes.state_io import write_text_atomic
from hermes.tasks.models import Feature, Priority, Progress, Task, TaskStatus

logger = logging.getLogger(__name__)

FEATURE_HEADER = re.compile(r'^#\s+(?:Feature\s+\d+:\s*)?(.+?)\s*$')
TASK_HEADER = re.compile(r'^###\s+([A-Za-z]*\d+[\w.-]*):\s*(.+?)\s*$')
FIELD_LINE = re.compile(r'^\*\*(.+?):\*\*\s*(.*)$')
LIST_ITEM = re.compile(r'^\s*[-*]\s+(.+)$')
STATUS_LINE = re.compile(r'^(\*\*Status:\*\*\s*)(\S+)(.*)$')

NONE_VALUES = {"", "none", "n/a", "-", "[]"}


def _split_list(value: str) -> List[str]:
    """Split a comma separated field, treating "None" as empty."""
    if value.strip().lower() in NONE_VALUES:
        return []
    items = []
    for part in value.split(","):
        item = part.strip().strip("`").strip()
        if item and item.lower() not in NONE_VALUES:
            items.append(item)
    return items


def _parse_bool(value: str, default: bool = True) -> bool:
    normalized = value.strip().lower()
    if normalized in ("true", "yes", "y", "1"):
        return True
    if normalized in ("false", "no", "n", "0"):
        return False
    return default


def parse_feature(content: str, file_path: str = "") -> Feature:
    """
    Parse a feature markdown document.

    Args:
        content: Markdown text
        file_path: Source path, recorded on the feature

    Returns:
        Feature with its tasks in file order
    """
    feature = Feature(id="", name="", file_path=file_path)
    current: Optional[Task] = None
    list_field: Optional[str] = None
    description: List[str] = []

    def finish_task() -> None:
        if current is not None:
            current.description = "\n".join(description).strip()
            feature.tasks.append(current)

    for raw_line in content.splitlines():
        line = raw_line.rstrip()

        task_match = TASK_HEADER.match(line)
        if task_match:
            finish_task()
            current = Task(id=task_match.group(1), name=task_match.group(2))
            description = []
            list_field = None
            continue

        if current is None:
            header = FEATURE_HEADER.match(line)
            if header and not feature.name and not line.startswith("##"):
                feature.name = header.group(1)
                continue
            field_match = FIELD_LINE.match(line.strip())
            if field_match:
                key = field_match.group(1).strip().lower()
                value = field_match.group(2).strip()
                if key == "feature id":
                    feature.id = value
                elif key == "priority" and value:
                    try:
                        feature.priority = Priority.parse(value)
                    except ValueError:
                        logger.warning(f"Feature {feature.id or file_path}: invalid priority {value!r}")
                elif key == "target version":
                    feature.target_version = value
            elif line.strip() and not line.startswith("#") and line.strip() != "---":
                feature.description = (feature.description + "\n" + line.strip()).strip()
            continue

        field_match = FIELD_LINE.match(line.strip())
        if field_match:
            key = field_match.group(1).strip().lower()
            value = field_match.group(2).strip()
            list_field = None
            if key == "status":
                try:
                    current.status = TaskStatus.parse(value)
                except ValueError:
                    logger.warning(f"Task {current.id}: invalid status {value!r}, using NOT_STARTED")
            elif key == "priority":
                try:
                    current.priority = Priority.parse(value)
                except ValueError:
                    logger.warning(f"Task {current.id}: invalid priority {value!r}, using P2")
            elif key in ("files to touch", "files"):
                current.files_to_touch = _split_list(value)
                list_field = "files_to_touch" if not value else None
            elif key == "exclusive files":
                current.exclusive_files = _split_list(value)
                list_field = "exclusive_files" if not value else None
            elif key in ("dependencies", "depends on"):
                for dep in _split_list(value):
                    if dep not in current.dependencies:
                        current.dependencies.append(dep)
            elif key == "parallelizable":
                current.parallelizable = _parse_bool(value)
            elif key == "success criteria":
                list_field = "success_criteria"
                if value:
                    current.success_criteria.append(value)
            elif key == "description":
                if value:
                    description.append(value)
            continue

        item = LIST_ITEM.match(line)
        if item and list_field:
            getattr(current, list_field).append(item.group(1).strip())
            continue

        if line.strip() == "---" or line.startswith("#"):
            list_field = None
            continue

        if line.strip():
            list_field = None
            description.append(line.strip())

    finish_task()

    if not feature.id:
        match = re.search(r'(F?\d{3})', Path(file_path).name)
        feature.id = match.group(1) if match else Path(file_path).stem
    for task in feature.tasks:
        task.feature_id = feature.id
    return feature


class TaskStore:
    """
    Markdown-backed store of features and tasks.

    Every query re-reads the files so callers always observe the persisted
    status; there is no in-memory cache to invalidate.
    """

    def __init__(self, project_path: str = ".", tasks_dir: str = ".hermes/tasks"):
        self.project_path = Path(project_path)
        self.tasks_dir = self.project_path / tasks_dir

    def has_tasks(self) -> bool:
        return bool(self.get_feature_files())

    def get_feature_files(self) -> List[Path]:
        """Return feature files sorted by name."""
        if not self.tasks_dir.is_dir():
            return []
        files = set(self.tasks_dir.glob("[0-9][0-9][0-9]-*.md"))
        files.update(self.tasks_dir.glob("F[0-9][0-9][0-9]-*.md"))
        return sorted(files)

    def read_feature(self, path: Path) -> Feature:
        return parse_feature(path.read_text(encoding="utf-8"), str(path))

    def get_all_features(self) -> List[Feature]:
        features = []
        for path in self.get_feature_files():
            try:
                features.append(self.read_feature(path))
            except OSError as e:
                logger.warning(f"Could not read feature file {path}: {e}")
        return features

    def get_all_tasks(self) -> List[Task]:
        tasks = []
        for feature in self.get_all_features():
            tasks.extend(feature.tasks)
        return tasks

    def get_task_by_id(self, task_id: str) -> Optional[Task]:
        return next((t for t in self.get_all_tasks() if t.id == task_id), None)

    def get_feature_by_id(self, feature_id: str) -> Optional[Feature]:
        return next((f for f in self.get_all_features() if f.id == feature_id), None)

    def get_tasks_by_status(self, status: TaskStatus) -> List[Task]:
        return [t for t in self.get_all_tasks() if t.status == status]

    def get_next_task(self) -> Optional[Task]:
        """Highest priority NOT_STARTED task whose dependencies are all COMPLETED."""
        tasks = self.get_all_tasks()
        completed = {t.id for t in tasks if t.status == TaskStatus.COMPLETED}
        candidates = [t for t in tasks if t.can_start(completed)]
        if not candidates:
            return None
        return sorted(candidates, key=lambda t: (t.priority.rank, t.id))[0]

    def get_progress(self) -> Progress:
        return Progress.from_tasks(self.get_all_tasks())

    def is_feature_complete(self, feature_id: str) -> bool:
        feature = self.get_feature_by_id(feature_id)
        return feature is not None and feature.is_complete

    def update_task_status(self, task_id: str, status: TaskStatus) -> None:
        """
        Persist a task status change.

        Args:
            task_id: Task to update
            status: New status

        Raises:
            KeyError: If no feature file contains the task
        """
        for path in self.get_feature_files():
            content = path.read_text(encoding="utf-8")
            updated, found = self._replace_status(content, task_id, status)
            if not found:
                continue
            if updated != content:
                write_text_atomic(path, updated)
            logger.info(f"Task {task_id} -> {status.value}")
            return
        raise KeyError(f"Task {task_id} not found in {self.tasks_dir}")

    def update_statuses(self, statuses: Dict[str, TaskStatus]) -> None:
        for task_id, status in statuses.items():
            self.update_task_status(task_id, status)

    @staticmethod
    def _replace_status(content: str, task_id: str, status: TaskStatus) -> Tuple[str, bool]:
        lines = content.splitlines(keepends=True)
        in_task = False
        for index, line in enumerate(lines):
            stripped = line.rstrip("\r\n")
            header = TASK_HEADER.match(stripped)
            if header:
                if in_task:
                    break
                in_task = header.group(1) == task_id
                continue
            if not in_task:
                continue
            if stripped.startswith("# ") or stripped.startswith("## "):
                break
            match = STATUS_LINE.match(stripped)
            if match:
                ending = line[len(stripped):]
                lines[index] = f"{match.group(1)}{status.value}{match.group(3)}{ending}"
                return "".join(lines), True
        if in_task:
            # Task exists but has no status line yet: insert one under the header.
            for index, line in enumerate(lines):
                header = TASK_HEADER.match(line.rstrip("\r\n"))
                if header and header.group(1) == task_id:
                    lines.insert(index + 1, f"**Status:** {status.value}\n")
                    return "".join(lines), True
        return content, False
