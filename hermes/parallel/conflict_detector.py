"""
Conflict Detector
=================

Classifies how risky it is to merge the changes a batch of tasks made to
shared files.

Key Features:
- Parses unified diffs into changed line ranges (base-file coordinates)
- Extracts modified function names (Python def/class, Go func, JS function,
  hunk header context)
- Same function in two tasks -> SAME_FUNCTION, severity 3
- Touching or overlapping ranges -> SAME_FILE, severity 2
- Disjoint ranges in a shared file -> SAME_FILE, severity 1, auto-resolvable

Classification is deliberately conservative: flagging a safe merge is
acceptable, missing a real conflict is not.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional, Set, Tuple
import logging
import os
import re

logger = logging.getLogger(__name__)

SEVERITY_LOW = 1
SEVERITY_MEDIUM = 2
SEVERITY_HIGH = 3

HUNK_HEADER = re.compile(r'^@@ -(\d+)(?:,(\d+))? \+(\d+)(?:,(\d+))? @@(.*)$')
DIFF_FILE_HEADER = re.compile(r'^diff --git a/(.+?) b/(.+)$')

FUNCTION_PATTERNS = [
    re.compile(r'^\s*(?:async\s+)?def\s+(\w+)'),
    re.compile(r'^\s*class\s+(\w+)'),
    re.compile(r'^\s*func\s+(?:\([^)]*\)\s*)?(\w+)'),
    re.compile(r'^\s*(?:export\s+)?(?:default\s+)?(?:async\s+)?function\s*\*?\s*(\w+)'),
]


class ConflictType(Enum):
    NONE = "NONE"
    SAME_FILE = "SAME_FILE"
    SAME_FUNCTION = "SAME_FUNCTION"
    IMPORT = "IMPORT"
    SEMANTIC = "SEMANTIC"


@dataclass
class TaskChange:
    """
    One task's change to one file.

    Attributes:
        task_id: Task that made the change
        file: File path
        added: Added line contents
        removed: Removed line contents
        functions: Function/class names touched by the change
        ranges: Changed line ranges in base-file coordinates
        diff: Raw diff for the file
        intent: What the task was trying to do
    """
    task_id: str
    file: str
    added: List[str] = field(default_factory=list)
    removed: List[str] = field(default_factory=list)
    functions: List[str] = field(default_factory=list)
    ranges: List[Tuple[int, int]] = field(default_factory=list)
    diff: str = ""
    intent: str = ""


@dataclass
class Conflict:
    """
    A file changed by two or more tasks.

    Attributes:
        file: File path
        tasks: Involved task IDs, in the order their changes were added
        type: Conflict classification
        severity: 1 (low) to 3 (high)
        description: Human-readable description
        line_start: First base line of the relevant region (0 if unknown)
        line_end: Last base line of the relevant region (0 if unknown)
        can_auto_resolve: Safe for a plain git merge
        functions: Function names modified by more than one task
    """
    file: str
    tasks: List[str]
    type: ConflictType = ConflictType.NONE
    severity: int = 0
    description: str = ""
    line_start: int = 0
    line_end: int = 0
    can_auto_resolve: bool = False
    functions: List[str] = field(default_factory=list)


def split_diff_by_file(diff: str) -> Dict[str, str]:
    """
    Split a multi-file ``git diff`` into per-file sections.

    Returns:
        Mapping of file path (post-image name) to its diff section
    """
    sections: Dict[str, List[str]] = {}
    current: Optional[str] = None
    for line in diff.splitlines():
        header = DIFF_FILE_HEADER.match(line)
        if header:
            current = header.group(2)
            sections[current] = [line]
        elif current is not None:
            sections[current].append(line)
    return {path: "\n".join(lines) + "\n" for path, lines in sections.items()}


def parse_diff(diff: str) -> Tuple[List[str], List[str], List[Tuple[int, int]], List[str]]:
    """
    Parse a single-file unified diff.

    Removed lines map to their own base line numbers. A pure insertion after
    base line k maps to the range (k, k + 1).

    Returns:
        (added lines, removed lines, merged changed ranges, function names)
    """
    added: List[str] = []
    removed: List[str] = []
    points: List[Tuple[int, int]] = []
    functions: List[str] = []
    old_line: Optional[int] = None

    for line in diff.splitlines():
        hunk = HUNK_HEADER.match(line)
        if hunk:
            old_line = int(hunk.group(1))
            if hunk.group(2) == "0":
                # Empty old side: the hunk inserts after line a, not at it.
                old_line += 1
            _add_function(functions, hunk.group(5).strip())
            continue
        if old_line is None or line.startswith("+++") or line.startswith("---"):
            continue
        if line.startswith("+"):
            added.append(line[1:])
            _add_function(functions, line[1:])
            after = max(old_line - 1, 0)
            points.append((after, after + 1))
        elif line.startswith("-"):
            removed.append(line[1:])
            _add_function(functions, line[1:])
            points.append((old_line, old_line))
            old_line += 1
        elif line.startswith(" "):
            old_line += 1

    return added, removed, _merge_ranges(points), functions


def ranges_overlap(a: Tuple[int, int], b: Tuple[int, int]) -> bool:
    """True when the ranges overlap or touch."""
    return a[0] <= b[1] + 1 and b[0] <= a[1] + 1


def _merge_ranges(points: List[Tuple[int, int]]) -> List[Tuple[int, int]]:
    merged: List[Tuple[int, int]] = []
    for start, end in sorted(points):
        if merged and start <= merged[-1][1] + 1:
            merged[-1] = (merged[-1][0], max(merged[-1][1], end))
        else:
            merged.append((start, end))
    return merged


def _add_function(functions: List[str], text: str) -> None:
    for pattern in FUNCTION_PATTERNS:
        match = pattern.match(text)
        if match:
            if match.group(1) not in functions:
                functions.append(match.group(1))
            return


class ConflictDetector:
    """
    Accumulates per-task changes for a batch and classifies shared files.
    """

    def __init__(self):
        self._file_changes: Dict[str, List[TaskChange]] = {}
        self._task_files: Dict[str, List[str]] = {}
        self.conflicts: List[Conflict] = []

    def add_task_changes(
        self,
        task_id: str,
        files: List[str],
        diffs: Dict[str, str],
        intent: str = ""
    ) -> None:
        """
        Register the files a task changed.

        Args:
            task_id: Task ID
            files: Changed file paths
            diffs: Per-file unified diffs (see split_diff_by_file)
            intent: Short description of what the task was doing
        """
        self._task_files[task_id] = list(files)
        for path in files:
            change = TaskChange(task_id=task_id, file=path, intent=intent)
            diff = diffs.get(path)
            if diff:
                change.diff = diff
                change.added, change.removed, change.ranges, change.functions = parse_diff(diff)
            self._file_changes.setdefault(path, []).append(change)
        logger.debug(f"Registered {len(files)} changed files for task {task_id}")

    def clear(self) -> None:
        self._file_changes.clear()
        self._task_files.clear()
        self.conflicts = []

    def analyze(self) -> List[Conflict]:
        """
        Classify every file changed by two or more tasks.

        Returns:
            Detected conflicts, in the order files were first registered
        """
        self.conflicts = []
        for path, changes in self._file_changes.items():
            if len({c.task_id for c in changes}) < 2:
                continue
            conflict = self._analyze_file(path, changes)
            if conflict.type != ConflictType.NONE:
                self.conflicts.append(conflict)

        if self.conflicts:
            logger.info(
                f"Detected {len(self.conflicts)} conflict(s), "
                f"{len(self.get_high_severity_conflicts())} high severity"
            )
        return self.conflicts

    def _analyze_file(self, path: str, changes: List[TaskChange]) -> Conflict:
        task_ids: List[str] = []
        for change in changes:
            if change.task_id not in task_ids:
                task_ids.append(change.task_id)
        conflict = Conflict(file=path, tasks=task_ids)

        shared_functions = self._shared_functions(changes)
        if shared_functions:
            conflict.type = ConflictType.SAME_FUNCTION
            conflict.severity = SEVERITY_HIGH
            conflict.functions = shared_functions
            conflict.description = f"Multiple tasks modified the same functions: {', '.join(shared_functions)}"
            conflict.can_auto_resolve = False
            self._set_span(conflict, [r for c in changes for r in c.ranges])
            return conflict

        overlap = self._overlapping_region(changes)
        if overlap is not None:
            conflict.type = ConflictType.SAME_FILE
            conflict.severity = SEVERITY_MEDIUM
            conflict.description = "Multiple tasks modified overlapping sections of the file"
            conflict.can_auto_resolve = False
            conflict.line_start, conflict.line_end = overlap
            return conflict

        conflict.type = ConflictType.SAME_FILE
        conflict.severity = SEVERITY_LOW
        conflict.description = "Multiple tasks modified different sections of the file"
        conflict.can_auto_resolve = True
        self._set_span(conflict, [r for c in changes for r in c.ranges])
        return conflict

    @staticmethod
    def _shared_functions(changes: List[TaskChange]) -> List[str]:
        owners: Dict[str, Set[str]] = {}
        order: List[str] = []
        for change in changes:
            for name in change.functions:
                if name not in owners:
                    owners[name] = set()
                    order.append(name)
                owners[name].add(change.task_id)
        return [name for name in order if len(owners[name]) > 1]

    @staticmethod
    def _overlapping_region(changes: List[TaskChange]) -> Optional[Tuple[int, int]]:
        """
        First overlapping pair of ranges between two different tasks.

        A change without parsable hunks (binary file, missing diff) is
        treated as touching the whole file.
        """
        for i, first in enumerate(changes):
            for second in changes[i + 1:]:
                if first.task_id == second.task_id:
                    continue
                if not first.ranges or not second.ranges:
                    return (0, 0)
                for a in first.ranges:
                    for b in second.ranges:
                        if ranges_overlap(a, b):
                            return (min(a[0], b[0]), max(a[1], b[1]))
        return None

    @staticmethod
    def _set_span(conflict: Conflict, ranges: List[Tuple[int, int]]) -> None:
        if ranges:
            conflict.line_start = min(r[0] for r in ranges)
            conflict.line_end = max(r[1] for r in ranges)

    def get_conflicts(self) -> List[Conflict]:
        return self.conflicts

    def has_conflicts(self) -> bool:
        return len(self.conflicts) > 0

    def get_high_severity_conflicts(self) -> List[Conflict]:
        return [c for c in self.conflicts if c.severity == SEVERITY_HIGH]

    def get_auto_resolvable_conflicts(self) -> List[Conflict]:
        return [c for c in self.conflicts if c.can_auto_resolve]

    def get_conflicts_by_file(self, path: str) -> List[Conflict]:
        return [c for c in self.conflicts if c.file == path]

    def get_conflicts_by_task(self, task_id: str) -> List[Conflict]:
        return [c for c in self.conflicts if task_id in c.tasks]

    def get_task_change(self, task_id: str, path: str) -> Optional[TaskChange]:
        for change in self._file_changes.get(path, []):
            if change.task_id == task_id:
                return change
        return None

    def get_task_files(self, task_id: str) -> List[str]:
        return list(self._task_files.get(task_id, []))

    def format_summary(self) -> str:
        if not self.conflicts:
            return "No conflicts detected"

        rule = "=" * 40
        lines = [f"{len(self.conflicts)} conflict(s) detected:", rule]
        for i, conflict in enumerate(self.conflicts, start=1):
            if conflict.can_auto_resolve:
                marker = "OK"
            elif conflict.severity == SEVERITY_HIGH:
                marker = "XX"
            else:
                marker = "!!"
            lines.append(f"{i}. [{marker}] {os.path.basename(conflict.file)}")
            lines.append(f"   Type: {conflict.type.value} | Severity: {conflict.severity}")
            lines.append(f"   Tasks: {', '.join(conflict.tasks)}")
            lines.append(f"   {conflict.description}")
            if conflict.can_auto_resolve:
                lines.append("   -> Can be auto-resolved")
        lines.append(rule)
        return "\n".join(lines)
