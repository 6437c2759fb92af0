"""
Git Runner
==========

Narrow async wrapper around the git CLI. Exit code and stderr are the whole
contract: any non-zero exit becomes a GitCommandError.
"""

from pathlib import Path
from typing import List, Optional, Union
import asyncio
import logging

from hermes.errors import GitCommandError

logger = logging.getLogger(__name__)


class GitRunner:
    """Runs git commands for one repository."""

    def __init__(self, repo_path: Union[str, Path], timeout: int = 60):
        """
        Args:
            repo_path: Default working directory for commands
            timeout: Per-command timeout in seconds
        """
        self.repo_path = Path(repo_path)
        self.timeout = timeout

    async def run(
        self,
        args: List[str],
        cwd: Optional[Union[str, Path]] = None,
        timeout: Optional[int] = None,
        strip: bool = True
    ) -> str:
        """
        Run a git command asynchronously.

        Args:
            args: Git command arguments (e.g., ['status', '--short'])
            cwd: Working directory for command (defaults to repo_path)
            timeout: Command timeout in seconds (defaults to self.timeout)
            strip: Strip surrounding whitespace from stdout

        Returns:
            Command stdout output

        Raises:
            GitCommandError: If command fails or times out
        """
        if cwd is None:
            cwd = self.repo_path
        if timeout is None:
            timeout = self.timeout

        cmd = ['git'] + args
        logger.debug(f"Running git command: {' '.join(cmd)} in {cwd}")

        try:
            process = await asyncio.create_subprocess_exec(
                *cmd,
                cwd=str(cwd),
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE
            )
        except FileNotFoundError:
            raise GitCommandError("Git command not found. Is git installed?")
        except OSError as e:
            raise GitCommandError(f"Failed to run git command: {e}")

        try:
            stdout, stderr = await asyncio.wait_for(
                process.communicate(),
                timeout=timeout
            )
        except asyncio.TimeoutError:
            process.kill()
            await process.wait()
            raise GitCommandError(
                f"Git command timed out after {timeout}s: {' '.join(cmd)}"
            )

        if process.returncode != 0:
            stderr_str = stderr.decode('utf-8', errors='replace').strip()
            raise GitCommandError(
                f"Git command failed (exit {process.returncode}): {' '.join(cmd)}\n{stderr_str}",
                returncode=process.returncode,
                stderr=stderr_str,
            )

        output = stdout.decode('utf-8', errors='replace')
        return output.strip() if strip else output

    async def current_branch(self, cwd: Optional[Union[str, Path]] = None) -> str:
        return await self.run(['rev-parse', '--abbrev-ref', 'HEAD'], cwd=cwd)

    async def head(self, cwd: Optional[Union[str, Path]] = None) -> str:
        return await self.run(['rev-parse', 'HEAD'], cwd=cwd)

    async def branch_exists(self, branch: str) -> bool:
        try:
            await self.run(['rev-parse', '--verify', '--quiet', f'refs/heads/{branch}'])
            return True
        except GitCommandError:
            return False

    async def show_file(self, ref: str, path: str) -> Optional[str]:
        """Contents of ``path`` at ``ref``, or None if it does not exist there."""
        try:
            return await self.run(['show', f'{ref}:{path}'], strip=False)
        except GitCommandError:
            return None
