"""
Rollback Manager
================

Snapshots of the base branch HEAD and cleanup of leftover hermes worktrees
and branches.
"""

from typing import Dict, List, Optional
import logging

from hermes.errors import GitCommandError
from hermes.parallel.git_runner import GitRunner
from hermes.parallel.workspace import BRANCH_PREFIX, WORKTREE_PREFIX

logger = logging.getLogger(__name__)

RUN_SNAPSHOT = "__run__"


class RollbackManager:
    """Records HEAD snapshots and restores them with ``git reset --hard``."""

    def __init__(self, git: GitRunner):
        self.git = git
        self.snapshots: Dict[str, str] = {}

    async def save_snapshot(self, key: str = RUN_SNAPSHOT) -> str:
        """
        Record the current HEAD under ``key``.

        Returns:
            The commit SHA
        """
        sha = await self.git.head()
        self.snapshots[key] = sha
        logger.debug(f"Saved snapshot {key} at {sha[:8]}")
        return sha

    def get_snapshot(self, key: str) -> Optional[str]:
        return self.snapshots.get(key)

    async def rollback_to(self, sha: str) -> None:
        """
        Raises:
            GitCommandError: If the reset fails
        """
        await self.git.run(['reset', '--hard', sha], timeout=60)
        logger.warning(f"Rolled back to {sha[:8]}")

    async def rollback_task(self, key: str) -> bool:
        """
        Restore the snapshot saved under ``key``.

        Returns:
            False if no such snapshot exists
        """
        sha = self.snapshots.get(key)
        if sha is None:
            logger.warning(f"No snapshot recorded for {key}")
            return False
        await self.rollback_to(sha)
        return True

    async def rollback_all(self) -> bool:
        """Restore the run-start snapshot."""
        return await self.rollback_task(RUN_SNAPSHOT)

    async def cleanup_worktrees(self) -> List[str]:
        """
        Force-remove every registered ``hermes-*`` worktree, then prune.

        Returns:
            Removed worktree paths
        """
        output = await self.git.run(['worktree', 'list', '--porcelain'])
        removed = []
        for line in output.splitlines():
            if not line.startswith('worktree '):
                continue
            path = line[len('worktree '):]
            if WORKTREE_PREFIX not in path.rsplit('/', 1)[-1]:
                continue
            try:
                await self.git.run(['worktree', 'remove', '--force', path], timeout=30)
                removed.append(path)
                logger.info(f"Removed worktree: {path}")
            except GitCommandError as e:
                logger.warning(f"Failed to remove worktree {path}: {e}")
        await self.git.run(['worktree', 'prune'], timeout=30)
        return removed

    async def cleanup_task_branches(self) -> List[str]:
        """
        Delete every ``hermes/*`` branch.

        Returns:
            Deleted branch names
        """
        output = await self.git.run(['branch', '--list', f'{BRANCH_PREFIX}*', '--format=%(refname:short)'])
        deleted = []
        for branch in (line.strip() for line in output.splitlines()):
            if not branch:
                continue
            try:
                await self.git.run(['branch', '-D', branch], timeout=30)
                deleted.append(branch)
                logger.info(f"Deleted branch {branch}")
            except GitCommandError as e:
                logger.warning(f"Failed to delete branch {branch}: {e}")
        return deleted
