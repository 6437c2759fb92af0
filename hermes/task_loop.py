"""
Task Loop
=========

Serial execution mode: one task at a time in the project directory.

Each iteration checks the circuit breaker, picks the next task, injects it
into PROMPT.md, runs the agent with retry, analyzes the transcript and
records the loop result. Completed tasks are committed when auto-commit
is enabled.
"""

from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, List, Optional
import asyncio
import logging

from hermes.ai.provider import AIProvider
from hermes.ai.retry import RetryConfig, execute_with_retry
from hermes.circuit_breaker import CircuitBreaker
from hermes.config import HermesConfig
from hermes.errors import GitCommandError, InvocationError
from hermes.parallel.git_runner import GitRunner
from hermes.parallel.resource_monitor import ResourceLimits, ResourceMonitor
from hermes.parallel.task_graph import TaskGraph
from hermes.prompt_injector import PromptInjector
from hermes.response_analyzer import ResponseAnalyzer
from hermes.tasks.models import Task, TaskStatus
from hermes.tasks.store import TaskStore

logger = logging.getLogger(__name__)


@dataclass
class LoopSummary:
    """
    Outcome of a serial run.

    Attributes:
        loops: Loop iterations executed
        completed: Task IDs completed during the run
        blocked: Task IDs blocked during the run
        stop_reason: Why the loop ended
    """
    loops: int = 0
    completed: List[str] = field(default_factory=list)
    blocked: List[str] = field(default_factory=list)
    stop_reason: str = ""


class TaskLoop:
    """Runs tasks one at a time until all are done or the breaker opens."""

    def __init__(
        self,
        project_path: str,
        provider: AIProvider,
        config: Optional[HermesConfig] = None,
        store: Optional[TaskStore] = None,
        breaker: Optional[CircuitBreaker] = None,
        git: Optional[GitRunner] = None,
        confirm: Optional[Callable[[Task], bool]] = None,
        max_loops: Optional[int] = None
    ):
        """
        Args:
            project_path: Project root (the agent works here)
            provider: Agent provider
            config: Hermes configuration
            store: Task store
            breaker: Circuit breaker
            git: Git runner for auto-commit
            confirm: Called after each completed task when not autonomous;
                returning False stops the loop
            max_loops: Optional cap on iterations
        """
        self.project_path = Path(project_path)
        self.provider = provider
        self.config = config or HermesConfig()
        self.store = store or TaskStore(project_path, self.config.paths.tasks_dir)
        self.breaker = breaker or CircuitBreaker(project_path, self.config.paths.hermes_dir)
        self.injector = PromptInjector(project_path, self.config.paths.hermes_dir)
        self.analyzer = ResponseAnalyzer()
        self.git = git or GitRunner(self.project_path)
        self.retry = RetryConfig.from_ai_config(self.config.ai)
        self.monitor = ResourceMonitor(ResourceLimits(max_calls_per_hour=self.config.loop.max_calls_per_hour))
        self.confirm = confirm
        self.max_loops = max_loops
        self.cancel_event = asyncio.Event()

    def stop(self) -> None:
        self.cancel_event.set()

    def next_task(self) -> Optional[Task]:
        """The task left IN_PROGRESS if any, else the next ready task."""
        tasks = self.store.get_all_tasks()
        in_progress = sorted(
            (t for t in tasks if t.status == TaskStatus.IN_PROGRESS),
            key=lambda t: (t.priority.rank, t.id),
        )
        if in_progress:
            return in_progress[0]
        return TaskGraph(tasks, validate=False).next_task()

    async def run(self) -> LoopSummary:
        """
        Execute tasks until none are left, the breaker opens or the loop is stopped.

        Returns:
            LoopSummary for the run
        """
        summary = LoopSummary()
        self.breaker.initialize()
        TaskGraph(self.store.get_all_tasks()).validate()
        loop_number = self.breaker.get_state().current_loop
        consecutive_errors = 0

        while not self.cancel_event.is_set():
            if self.max_loops is not None and summary.loops >= self.max_loops:
                summary.stop_reason = f"Reached loop limit ({self.max_loops})"
                break

            if not self.breaker.can_execute():
                logger.warning(self.breaker.format_halt_message())
                summary.stop_reason = self.breaker.get_state().reason
                break

            task = self.next_task()
            if task is None:
                progress = self.store.get_progress()
                if progress.completed == progress.total:
                    summary.stop_reason = "All tasks completed"
                    logger.info("All tasks completed!")
                else:
                    summary.stop_reason = "No runnable tasks left"
                    logger.warning(f"No runnable tasks left ({progress.completed}/{progress.total} completed)")
                break

            try:
                self.monitor.check()
            except InvocationError as e:
                summary.stop_reason = str(e)
                logger.warning(f"Stopping: {e}")
                break

            loop_number += 1
            summary.loops += 1
            logger.info(f"Loop #{loop_number}: working on task {task.id} - {task.name}")

            if task.status != TaskStatus.IN_PROGRESS:
                self.store.update_task_status(task.id, TaskStatus.IN_PROGRESS)
            self.injector.add_task(task)

            try:
                result = await execute_with_retry(
                    self.provider,
                    self.injector.read(),
                    str(self.project_path),
                    retry=self.retry,
                    timeout=self.config.ai.timeout,
                    stream_output=self.config.ai.stream_output,
                    cancel_event=self.cancel_event,
                )
            except InvocationError as e:
                self.monitor.record_call()
                if self.cancel_event.is_set():
                    summary.stop_reason = "Stopped"
                    break
                logger.error(f"AI execution failed for {task.id}: {e}")
                self.breaker.add_loop_result(False, True, loop_number)
                self.store.update_task_status(task.id, TaskStatus.BLOCKED)
                summary.blocked.append(task.id)
                consecutive_errors += 1
                if consecutive_errors >= self.config.task_mode.max_consecutive_errors:
                    summary.stop_reason = f"{consecutive_errors} consecutive agent failures"
                    logger.error(f"Stopping after {consecutive_errors} consecutive agent failures")
                    break
                await self._wait(self.config.loop.error_delay)
                continue

            consecutive_errors = 0
            self.monitor.record_call(result.cost)
            analysis = self.analyzer.analyze(result.output)
            logger.debug(
                f"Analysis: progress={analysis.has_progress} complete={analysis.is_complete} "
                f"confidence={analysis.confidence:.2f}"
            )
            self.breaker.add_loop_result(analysis.has_progress, False, loop_number)

            if analysis.is_complete:
                await self._complete(task)
                summary.completed.append(task.id)
                if not self.config.task_mode.autonomous and self.confirm is not None:
                    if not self.confirm(task):
                        summary.stop_reason = "Stopped by user"
                        break

        if self.cancel_event.is_set() and not summary.stop_reason:
            summary.stop_reason = "Stopped"
        return summary

    async def _complete(self, task: Task) -> None:
        self.injector.remove_task()
        self.store.update_task_status(task.id, TaskStatus.COMPLETED)
        logger.info(f"Task {task.id} completed")

        if self.config.task_mode.auto_commit:
            await self._commit(task)

        if task.feature_id and self.store.is_feature_complete(task.feature_id):
            feature = self.store.get_feature_by_id(task.feature_id)
            logger.info(f"Feature {feature.id} completed: {feature.name}")

        logger.info(f"Progress: {self.store.get_progress().format_bar()}")

    async def _commit(self, task: Task) -> None:
        try:
            status = await self.git.run(['status', '--porcelain'])
            if not status:
                return
            await self.git.run(['add', '-A'], timeout=30)
            await self.git.run(['commit', '-m', f"{task.id}: {task.name}"], timeout=30)
            logger.info(f"Committed task {task.id}")
        except GitCommandError as e:
            logger.warning(f"Failed to commit task {task.id}: {e}")

    async def _wait(self, seconds: float) -> None:
        try:
            await asyncio.wait_for(self.cancel_event.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            pass
