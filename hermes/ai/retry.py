"""
Agent invocation with retry and exponential backoff.
"""

from dataclasses import dataclass
from typing import Optional
import asyncio
import logging
import time

from hermes.ai.provider import AIProvider, ExecuteResult
from hermes.errors import InvocationError

logger = logging.getLogger(__name__)


@dataclass
class RetryConfig:
    """
    Retry policy.

    Attributes:
        max_retries: Total attempts before giving up
        delay: First backoff delay in seconds
        max_delay: Backoff ceiling in seconds
    """
    max_retries: int = 3
    delay: float = 5.0
    max_delay: float = 60.0

    @classmethod
    def from_ai_config(cls, ai_config) -> "RetryConfig":
        return cls(
            max_retries=ai_config.max_retries,
            delay=ai_config.retry_delay,
            max_delay=ai_config.max_retry_delay,
        )


async def collect_stream(
    provider: AIProvider,
    prompt: str,
    workdir: str,
    timeout: Optional[float] = None
) -> ExecuteResult:
    """Consume ``execute_stream`` into a single ExecuteResult."""
    start_time = time.time()
    chunks = []
    async for event in provider.execute_stream(prompt, workdir, timeout):
        if event.type == "text":
            chunks.append(event.text)
        elif event.type == "error":
            return ExecuteResult(
                output="".join(chunks),
                success=False,
                duration=time.time() - start_time,
                error=event.text,
            )
    return ExecuteResult(output="".join(chunks), success=True, duration=time.time() - start_time)


async def execute_with_retry(
    provider: AIProvider,
    prompt: str,
    workdir: str,
    retry: Optional[RetryConfig] = None,
    timeout: Optional[float] = None,
    stream_output: bool = False,
    cancel_event: Optional[asyncio.Event] = None
) -> ExecuteResult:
    """
    Invoke the agent, retrying failures with exponential backoff.

    Args:
        provider: Agent provider
        prompt: Prompt text
        workdir: Directory the agent works in
        retry: Retry policy (defaults to 3 attempts, 5s doubling to 60s)
        timeout: Per-attempt budget in seconds
        stream_output: Use the provider's streaming variant
        cancel_event: Set to abandon the backoff wait

    Returns:
        The first successful ExecuteResult

    Raises:
        InvocationError: If every attempt fails or times out
    """
    retry = retry or RetryConfig()
    delay = retry.delay
    last_error = "no attempts made"

    for attempt in range(1, retry.max_retries + 1):
        try:
            if stream_output:
                call = collect_stream(provider, prompt, workdir, timeout)
            else:
                call = provider.execute(prompt, workdir, timeout)
            result = await asyncio.wait_for(call, timeout=timeout)
            if result.success:
                if attempt > 1:
                    logger.info(f"Agent invocation succeeded on attempt {attempt}")
                return result
            last_error = result.error or "agent reported failure"
        except asyncio.TimeoutError:
            last_error = f"timed out after {timeout}s"

        logger.warning(f"Agent attempt {attempt}/{retry.max_retries} failed: {last_error}")

        if attempt < retry.max_retries:
            if cancel_event is not None:
                try:
                    await asyncio.wait_for(cancel_event.wait(), timeout=delay)
                    raise InvocationError(f"cancelled after {attempt} attempts: {last_error}", attempts=attempt)
                except asyncio.TimeoutError:
                    pass
            else:
                await asyncio.sleep(delay)
            delay = min(delay * 2, retry.max_delay)

    raise InvocationError(
        f"failed after {retry.max_retries} attempts: {last_error}",
        attempts=retry.max_retries,
    )
