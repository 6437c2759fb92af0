"""
Workspace Manager
=================

Git worktree isolation for parallel task execution. Each task gets its own
branch (``hermes/<task-id>``) checked out in its own worktree directory.

Key Features:
- Deterministic worktree path per task ID
- Idempotent setup: an existing branch is reused, a stale directory is removed
- Change and diff queries feeding the conflict detector
- Commits only when something is staged
- Worktree removal falls back to deleting the directory
- Branch deletion is explicit so failed branches stay inspectable
"""

from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional
import asyncio
import hashlib
import logging
import re
import shutil
import tempfile

from hermes.errors import GitCommandError, WorkspaceError
from hermes.parallel.git_runner import GitRunner

logger = logging.getLogger(__name__)

BRANCH_PREFIX = "hermes/"
WORKTREE_PREFIX = "hermes-"


def sanitize_task_id(task_id: str) -> str:
    """Make a task ID safe for use in a directory name."""
    safe = re.sub(r'[^A-Za-z0-9._-]', '-', task_id).strip('-.')
    return safe or "task"


def default_worktree_dir(project_path: Path) -> Path:
    """
    Per-repository worktree root under the system temp directory.

    Kept outside the repository so ``git add -A`` in the main tree never
    picks up task checkouts.
    """
    digest = hashlib.sha1(str(project_path.resolve()).encode("utf-8")).hexdigest()[:8]
    return Path(tempfile.gettempdir()) / "hermes-worktrees" / digest


class Workspace:
    """
    An isolated checkout for one task.

    Attributes:
        task_id: Task the workspace belongs to
        base_path: Shared repository path
        work_path: Worktree directory (equals base_path when not isolated)
        branch: Task branch, ``hermes/<task-id>``
        base_branch: Branch the task branch is created from
        created_at: When setup completed
    """

    def __init__(
        self,
        task_id: str,
        base_path: Path,
        worktree_root: Path,
        base_branch: str,
        git: Optional[GitRunner] = None
    ):
        self.task_id = task_id
        self.base_path = Path(base_path)
        self.work_path = Path(worktree_root) / f"{WORKTREE_PREFIX}{sanitize_task_id(task_id)}"
        self.branch = f"{BRANCH_PREFIX}{task_id}"
        self.base_branch = base_branch
        self.created_at: Optional[datetime] = None
        self.git = git or GitRunner(self.base_path)
        self._isolated = True

    @property
    def is_isolated(self) -> bool:
        return self._isolated

    async def setup(self) -> None:
        """
        Create the task branch (if missing) and its worktree.

        Raises:
            WorkspaceError: If a git operation fails
        """
        if self.work_path.exists():
            logger.warning(f"Worktree directory already exists, removing: {self.work_path}")
            await self.cleanup()

        try:
            if await self.git.branch_exists(self.branch):
                logger.info(f"Reusing existing branch {self.branch}")
            else:
                await self.git.run(['branch', self.branch, self.base_branch], timeout=30)
                logger.info(f"Created branch {self.branch} from {self.base_branch}")

            await self.git.run(['worktree', 'prune'], timeout=30)
            self.work_path.parent.mkdir(parents=True, exist_ok=True)
            await self.git.run(['worktree', 'add', str(self.work_path), self.branch], timeout=60)
        except (GitCommandError, OSError) as e:
            if self.work_path.exists():
                shutil.rmtree(self.work_path, ignore_errors=True)
            raise WorkspaceError(f"Failed to set up workspace for {self.task_id}: {e}", task_id=self.task_id)

        self._isolated = True
        self.created_at = datetime.now()
        logger.info(f"Created worktree for {self.task_id} at {self.work_path}")

    def setup_shared(self) -> None:
        """Work directly in the shared repository (no isolation)."""
        self.work_path = self.base_path
        self._isolated = False
        self.created_at = datetime.now()
        logger.warning(f"Task {self.task_id} is using the shared repository without isolation")

    async def cleanup(self) -> None:
        """
        Remove the worktree and prune its metadata. The branch is kept.

        Raises:
            WorkspaceError: If neither git nor a forced delete removes the directory
        """
        if not self._isolated:
            return

        try:
            await self.git.run(['worktree', 'remove', '--force', str(self.work_path)], timeout=30)
            logger.info(f"Removed worktree {self.work_path}")
        except GitCommandError as e:
            logger.warning(f"Git worktree remove failed: {e}")
            if self.work_path.exists():
                try:
                    shutil.rmtree(self.work_path)
                    logger.info(f"Worktree directory removed manually: {self.work_path}")
                except OSError as rm_error:
                    raise WorkspaceError(
                        f"Failed to remove worktree {self.work_path}: {rm_error}",
                        task_id=self.task_id,
                    )

        try:
            await self.git.run(['worktree', 'prune'], timeout=30)
        except GitCommandError as e:
            logger.debug(f"Worktree prune failed: {e}")

    async def cleanup_branch(self) -> None:
        """
        Raises:
            WorkspaceError: If the branch cannot be deleted
        """
        try:
            await self.git.run(['branch', '-D', self.branch], timeout=30)
            logger.info(f"Deleted branch {self.branch}")
        except GitCommandError as e:
            raise WorkspaceError(f"Failed to delete branch {self.branch}: {e}", task_id=self.task_id)

    async def get_changes(self, ref: str = "HEAD") -> List[str]:
        """
        Files changed in the workspace.

        Args:
            ref: "HEAD" for uncommitted changes, or a branch/commit to list
                everything committed since the merge base with it

        Returns:
            Changed file paths
        """
        output = await self.git.run(['diff', '--name-only', self._diff_range(ref)], cwd=self.work_path)
        return [line for line in output.splitlines() if line.strip()]

    async def get_diff(self, ref: str = "HEAD") -> str:
        """Unified diff for the same range as ``get_changes``."""
        return await self.git.run(['diff', self._diff_range(ref)], cwd=self.work_path, strip=False)

    async def has_uncommitted_changes(self) -> bool:
        output = await self.git.run(['status', '--porcelain'], cwd=self.work_path)
        return len(output) > 0

    async def commit_changes(self, message: str) -> bool:
        """
        Stage everything and commit if the index is non-empty.

        Returns:
            True if a commit was created
        """
        await self.git.run(['add', '-A'], cwd=self.work_path, timeout=30)
        staged = await self.git.run(['diff', '--cached', '--name-only'], cwd=self.work_path)
        if not staged:
            logger.debug(f"Nothing to commit for {self.task_id}")
            return False
        await self.git.run(['commit', '-m', message], cwd=self.work_path, timeout=30)
        logger.info(f"Committed changes for {self.task_id}: {message}")
        return True

    def _diff_range(self, ref: str) -> str:
        if ref == "HEAD":
            return "HEAD"
        return f"{ref}...HEAD"

    def to_dict(self) -> Dict[str, Any]:
        return {
            'task_id': self.task_id,
            'path': str(self.work_path),
            'branch': self.branch,
            'base_branch': self.base_branch,
            'isolated': self._isolated,
            'created_at': self.created_at.isoformat() if self.created_at else None,
        }


class WorkspaceManager:
    """
    Creates and tears down task workspaces for one repository.

    Worktree add/remove on a shared repository is not safe to run
    concurrently, so both go through a single lock.
    """

    def __init__(
        self,
        project_path: str,
        base_branch: Optional[str] = None,
        worktree_dir: Optional[str] = None,
        isolated: bool = True,
        git: Optional[GitRunner] = None
    ):
        """
        Initialize workspace manager.

        Args:
            project_path: Path to the shared repository
            base_branch: Branch task branches start from (defaults to the
                current branch when initialize() runs)
            worktree_dir: Root for worktrees (defaults to a per-repo temp dir)
            isolated: Use git worktrees; False shares the repository
            git: Git runner (defaults to one rooted at project_path)
        """
        self.project_path = Path(project_path)
        self.base_branch = base_branch
        self.worktree_root = Path(worktree_dir) if worktree_dir else default_worktree_dir(self.project_path)
        self.isolated = isolated
        self.git = git or GitRunner(self.project_path)
        self._lock = asyncio.Lock()
        self._workspaces: Dict[str, Workspace] = {}

    async def initialize(self) -> str:
        """
        Capture the base branch.

        Returns:
            The base branch name

        Raises:
            WorkspaceError: If the repository is on a detached HEAD
        """
        if self.base_branch is None:
            try:
                branch = await self.git.current_branch()
            except GitCommandError as e:
                raise WorkspaceError(f"Could not determine current branch: {e}")
            if branch == "HEAD":
                raise WorkspaceError("Not currently on a branch (detached HEAD)")
            self.base_branch = branch
        logger.info(f"Workspace manager ready (base branch {self.base_branch}, root {self.worktree_root})")
        return self.base_branch

    async def create(self, task_id: str) -> Workspace:
        """
        Set up a workspace for a task.

        Raises:
            WorkspaceError: If setup fails
        """
        if self.base_branch is None:
            await self.initialize()
        async with self._lock:
            workspace = Workspace(
                task_id=task_id,
                base_path=self.project_path,
                worktree_root=self.worktree_root,
                base_branch=self.base_branch,
                git=self.git,
            )
            if self.isolated:
                await workspace.setup()
            else:
                workspace.setup_shared()
            self._workspaces[task_id] = workspace
            return workspace

    async def remove(self, task_id: str, delete_branch: bool = False) -> None:
        """
        Remove a task's worktree, optionally deleting its branch.

        Raises:
            WorkspaceError: If removal fails
        """
        workspace = self._workspaces.get(task_id)
        if workspace is None:
            logger.warning(f"No workspace found for task {task_id}, nothing to clean up")
            return
        async with self._lock:
            await workspace.cleanup()
            if delete_branch and workspace.is_isolated:
                await workspace.cleanup_branch()
            del self._workspaces[task_id]
        logger.info(f"Workspace cleanup complete for task {task_id}")

    def get(self, task_id: str) -> Optional[Workspace]:
        return self._workspaces.get(task_id)

    def list_workspaces(self) -> List[Workspace]:
        return list(self._workspaces.values())

    def get_status(self) -> Dict[str, Any]:
        return {
            'base_branch': self.base_branch,
            'worktree_root': str(self.worktree_root),
            'total_workspaces': len(self._workspaces),
            'workspaces': [ws.to_dict() for ws in self._workspaces.values()],
        }
