"""
Hermes Errors
=============

Exception taxonomy shared by the scheduler, workspace manager, merger and
agent invocation layers.

Key Features:
- GraphError is fatal to a run
- WorkspaceError and MergeConflictError are fatal only to the owning task/branch
- AnalysisError and SemanticConflictWarning never stop execution
"""

from typing import List, Optional


class HermesError(Exception):
    """Base class for all hermes errors."""
    pass


class ConfigError(HermesError):
    """Raised when configuration values are invalid."""
    pass


class GraphError(HermesError):
    """
    Raised for cyclic or unresolvable task dependencies.

    Attributes:
        stuck: Task IDs that could not be scheduled
    """

    def __init__(self, message: str, stuck: Optional[List[str]] = None):
        super().__init__(message)
        self.stuck = sorted(stuck or [])


class GitCommandError(HermesError):
    """Raised when a git command fails or times out."""

    def __init__(self, message: str, returncode: Optional[int] = None, stderr: str = ""):
        super().__init__(message)
        self.returncode = returncode
        self.stderr = stderr


class WorkspaceError(HermesError):
    """Raised when a worktree or branch operation fails for a task."""

    def __init__(self, message: str, task_id: Optional[str] = None):
        super().__init__(message)
        self.task_id = task_id


class MergeConflictError(HermesError):
    """Raised when git reports a real conflict while merging a branch."""

    def __init__(self, branch: str, files: Optional[List[str]] = None, message: str = ""):
        self.branch = branch
        self.files = list(files or [])
        if not message:
            message = f"Merge conflict while merging {branch}"
            if self.files:
                message += f": {', '.join(self.files)}"
        super().__init__(message)


class SemanticConflictWarning(HermesError):
    """
    Advisory finding that two changes are logically incompatible.

    Never raised out of the resolver; attached to resolution results instead.
    """

    def __init__(self, file: str, tasks: List[str], severity: int, description: str, suggestion: str = ""):
        super().__init__(f"Semantic conflict in {file} ({', '.join(tasks)}): {description}")
        self.file = file
        self.tasks = list(tasks)
        self.severity = severity
        self.description = description
        self.suggestion = suggestion


class AnalysisError(HermesError):
    """Raised when agent output carries a malformed status block."""
    pass


class InvocationError(HermesError):
    """Raised when an agent invocation fails or times out after all attempts."""

    def __init__(self, message: str, attempts: int = 0):
        super().__init__(message)
        self.attempts = attempts
