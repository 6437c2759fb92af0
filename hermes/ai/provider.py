"""
AI Provider
===========

Capability interface for the external coding agent plus the subprocess
implementation used in production.

Key Features:
- execute(): run the agent once and capture its transcript
- execute_stream(): yield transcript chunks as they arrive
- CLIProvider runs a configured command with the prompt as the last argument
"""

from dataclasses import dataclass
from typing import AsyncIterator, List, Optional
import asyncio
import logging
import shutil
import time

logger = logging.getLogger(__name__)


@dataclass
class ExecuteResult:
    """
    Outcome of one agent invocation.

    Attributes:
        output: Full transcript
        success: Agent exited cleanly
        cost: Reported cost in USD
        tokens_in: Input tokens, if reported
        tokens_out: Output tokens, if reported
        duration: Wall time in seconds
        error: Error description when unsuccessful
    """
    output: str = ""
    success: bool = False
    cost: float = 0.0
    tokens_in: int = 0
    tokens_out: int = 0
    duration: float = 0.0
    error: Optional[str] = None


@dataclass
class StreamEvent:
    """A streamed transcript event: type is "text", "error" or "done"."""
    type: str
    text: str = ""


class AIProvider:
    """Base class for agent providers."""

    name = "base"

    def is_available(self) -> bool:
        return True

    async def execute(self, prompt: str, workdir: str, timeout: Optional[float] = None) -> ExecuteResult:
        raise NotImplementedError

    async def execute_stream(
        self,
        prompt: str,
        workdir: str,
        timeout: Optional[float] = None
    ) -> AsyncIterator[StreamEvent]:
        """
        Default streaming: run execute() and emit its transcript as one chunk.
        """
        result = await self.execute(prompt, workdir, timeout)
        if result.output:
            yield StreamEvent(type="text", text=result.output)
        if not result.success:
            yield StreamEvent(type="error", text=result.error or "agent invocation failed")
            return
        yield StreamEvent(type="done")


class CLIProvider(AIProvider):
    """
    Runs an agent CLI (``claude -p`` by default) as a subprocess.

    The prompt is appended as the final argument and the process runs with
    ``workdir`` as its current directory.
    """

    def __init__(self, command: Optional[List[str]] = None, name: str = "claude"):
        self.command = list(command or ["claude", "-p"])
        self.name = name

    def is_available(self) -> bool:
        return shutil.which(self.command[0]) is not None

    async def execute(self, prompt: str, workdir: str, timeout: Optional[float] = None) -> ExecuteResult:
        cmd = self.command + [prompt]
        start_time = time.time()
        logger.debug(f"Running agent command {self.command[0]} in {workdir}")

        try:
            process = await asyncio.create_subprocess_exec(
                *cmd,
                cwd=workdir,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE
            )
        except FileNotFoundError:
            return ExecuteResult(
                success=False,
                error=f"Agent command not found: {self.command[0]}"
            )

        try:
            stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=timeout)
        except asyncio.TimeoutError:
            process.kill()
            await process.wait()
            return ExecuteResult(
                success=False,
                duration=time.time() - start_time,
                error=f"Agent timed out after {timeout}s"
            )
        except asyncio.CancelledError:
            process.kill()
            await process.wait()
            raise

        output = stdout.decode('utf-8', errors='replace')
        duration = time.time() - start_time
        if process.returncode != 0:
            stderr_str = stderr.decode('utf-8', errors='replace').strip()
            return ExecuteResult(
                output=output,
                success=False,
                duration=duration,
                error=f"Agent exited with code {process.returncode}: {stderr_str}"
            )
        return ExecuteResult(output=output, success=True, duration=duration)

    async def execute_stream(
        self,
        prompt: str,
        workdir: str,
        timeout: Optional[float] = None
    ) -> AsyncIterator[StreamEvent]:
        cmd = self.command + [prompt]
        try:
            process = await asyncio.create_subprocess_exec(
                *cmd,
                cwd=workdir,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE
            )
        except FileNotFoundError:
            yield StreamEvent(type="error", text=f"Agent command not found: {self.command[0]}")
            return

        deadline = time.monotonic() + timeout if timeout else None
        # stderr must be drained while stdout is read
        stderr_reader = asyncio.ensure_future(process.stderr.read())
        try:
            while True:
                remaining = deadline - time.monotonic() if deadline else None
                if remaining is not None and remaining <= 0:
                    raise asyncio.TimeoutError
                line = await asyncio.wait_for(process.stdout.readline(), timeout=remaining)
                if not line:
                    break
                yield StreamEvent(type="text", text=line.decode('utf-8', errors='replace'))
            await process.wait()
            stderr_bytes = await stderr_reader
        except asyncio.TimeoutError:
            process.kill()
            await process.wait()
            yield StreamEvent(type="error", text=f"Agent timed out after {timeout}s")
            return
        except asyncio.CancelledError:
            process.kill()
            await process.wait()
            raise
        finally:
            if not stderr_reader.done():
                stderr_reader.cancel()

        if process.returncode != 0:
            stderr = stderr_bytes.decode('utf-8', errors='replace').strip()
            yield StreamEvent(type="error", text=f"Agent exited with code {process.returncode}: {stderr}")
            return
        yield StreamEvent(type="done")


def get_provider(name: str, command: Optional[List[str]] = None) -> AIProvider:
    """Build the provider configured under ``ai.provider``."""
    return CLIProvider(command=command, name=name)
