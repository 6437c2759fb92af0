"""
Scripted Provider
=================

Deterministic in-process provider. Replies come from a queue of canned
responses or from a handler callable, which makes it suitable for tests and
dry runs.

Usage:
    provider = ScriptedProvider(["first reply", ExecuteResult(success=False, error="boom")])
    provider = ScriptedProvider(handler=lambda prompt, workdir: "done")
"""

from typing import Any, Callable, List, Optional, Tuple, Union
import asyncio
import inspect
import logging

from hermes.ai.provider import AIProvider, ExecuteResult

logger = logging.getLogger(__name__)

Response = Union[str, ExecuteResult]


class ScriptedProvider(AIProvider):
    """
    Provider returning scripted replies.

    Attributes:
        calls: (prompt, workdir) for every invocation, in order
    """

    name = "scripted"

    def __init__(
        self,
        responses: Optional[List[Response]] = None,
        handler: Optional[Callable[[str, str], Any]] = None,
        delay: float = 0.0,
        cost: float = 0.0
    ):
        """
        Args:
            responses: Replies consumed in order
            handler: Called as handler(prompt, workdir) once responses run out;
                may be sync or async and return a str or ExecuteResult
            delay: Seconds to sleep before replying
            cost: Cost reported on each successful string reply
        """
        self.responses = list(responses or [])
        self.handler = handler
        self.delay = delay
        self.cost = cost
        self.calls: List[Tuple[str, str]] = []

    async def execute(self, prompt: str, workdir: str, timeout: Optional[float] = None) -> ExecuteResult:
        self.calls.append((prompt, workdir))
        if self.delay:
            await asyncio.sleep(self.delay)

        if self.responses:
            reply = self.responses.pop(0)
        elif self.handler is not None:
            reply = self.handler(prompt, workdir)
            if inspect.isawaitable(reply):
                reply = await reply
        else:
            logger.warning("ScriptedProvider has no responses left")
            return ExecuteResult(success=False, error="no scripted response left")

        if isinstance(reply, ExecuteResult):
            return reply
        return ExecuteResult(output=str(reply), success=True, cost=self.cost)

    @property
    def call_count(self) -> int:
        return len(self.calls)
