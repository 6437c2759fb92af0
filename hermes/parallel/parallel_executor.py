"""
Parallel Executor
=================

Orchestrates parallel task execution across multiple agents using worktrees.

Key Features:
- Batch-based execution driven by the task graph
- Bounded worker pool (max_workers concurrent agents)
- One isolated worktree and branch per task
- Batch barrier: conflicts are detected and resolved only after every
  worker in the batch has finished
- Sequential merges back to the base branch with rollback on failure
- Circuit breaker updates applied in completion order
- Retry with backoff, hourly resource limits and cancellation
"""

from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional
from datetime import datetime
import asyncio
import logging
import time

from hermes.ai.provider import AIProvider, ExecuteResult
from hermes.ai.retry import RetryConfig, execute_with_retry
from hermes.circuit_breaker import CircuitBreaker
from hermes.config import HermesConfig
from hermes.errors import GitCommandError, InvocationError, WorkspaceError
from hermes.parallel.ai_merger import AIMerger
from hermes.parallel.conflict_detector import ConflictDetector, split_diff_by_file
from hermes.parallel.conflict_resolver import BranchMergeResult, ConflictResolver, task_branch
from hermes.parallel.git_runner import GitRunner
from hermes.parallel.parallel_logger import ParallelLogger
from hermes.parallel.resource_monitor import ResourceLimits, ResourceMonitor
from hermes.parallel.rollback import RollbackManager
from hermes.parallel.task_graph import TaskGraph
from hermes.parallel.workspace import Workspace, WorkspaceManager
from hermes.prompt_injector import PromptInjector
from hermes.response_analyzer import AnalysisResult, ResponseAnalyzer
from hermes.tasks.models import Task, TaskStatus
from hermes.tasks.store import TaskStore

logger = logging.getLogger(__name__)


@dataclass
class TaskResult:
    """
    Result of one task execution.

    Attributes:
        task_id: Task that was executed
        status: Status the task was left in
        duration: Execution time in seconds
        error: Error message if the task did not complete
        cost: Agent cost in USD
        output: Agent transcript
        analysis: Transcript analysis (None if the agent never replied)
        worker_id: Worker slot that ran the task
        branch: Task branch
        merged: The branch was merged into the base branch
    """
    task_id: str
    status: TaskStatus
    duration: float = 0.0
    error: Optional[str] = None
    cost: float = 0.0
    output: str = ""
    analysis: Optional[AnalysisResult] = None
    worker_id: int = 0
    branch: str = ""
    merged: bool = False

    @property
    def success(self) -> bool:
        return self.status == TaskStatus.COMPLETED

    @property
    def has_progress(self) -> bool:
        return self.analysis is not None and self.analysis.has_progress


@dataclass
class RunningAgent:
    """
    Information about a running agent.

    Attributes:
        task_id: Task being executed
        worker_id: Worker slot
        invocation: asyncio.Task wrapping the agent call
        started_at: When execution started
    """
    task_id: str
    worker_id: int
    started_at: float
    invocation: Optional[asyncio.Task] = None


@dataclass
class _WorkerOutcome:
    task: Task
    result: TaskResult
    workspace: Optional[Workspace] = None
    changed_files: List[str] = field(default_factory=list)
    diff: str = ""


class ParallelExecutor:
    """
    Orchestrates parallel execution of tasks across multiple agents.

    Manages the complete parallel execution workflow:
    1. Compute the next ready batch from the task graph
    2. Create a worktree for each task
    3. Execute tasks in parallel (within the worker limit)
    4. Detect and resolve conflicts between the batch's changes
    5. Merge successful branches and tear workspaces down

    Each task gets one invocation per batch. A task whose transcript shows
    progress and whose branch merges is COMPLETED even without a completion
    signal; the merged branch is the unit of work. The serial TaskLoop
    instead keeps a task IN_PROGRESS until the analyzer reports it complete.
    """

    def __init__(
        self,
        project_path: str,
        provider: AIProvider,
        config: Optional[HermesConfig] = None,
        store: Optional[TaskStore] = None,
        breaker: Optional[CircuitBreaker] = None,
        progress_callback: Optional[Callable] = None,
        parallel_logger: Optional[ParallelLogger] = None,
        ai_merger: Optional[AIMerger] = None,
        git: Optional[GitRunner] = None
    ):
        """
        Initialize parallel executor.

        Args:
            project_path: Path to project repository
            provider: Agent provider used for tasks (and AI merges)
            config: Hermes configuration (defaults apply when omitted)
            store: Task store (defaults to the configured tasks directory)
            breaker: Circuit breaker (defaults to the project's state files)
            progress_callback: Optional async callback for progress events
            parallel_logger: Optional per-worker file logger
            ai_merger: AI merger (defaults to one built on ``provider``)
            git: Git runner for the shared repository
        """
        self.project_path = project_path
        self.provider = provider
        self.config = config or HermesConfig()
        self.store = store or TaskStore(project_path, self.config.paths.tasks_dir)
        self.breaker = breaker or CircuitBreaker(project_path, self.config.paths.hermes_dir)
        self.progress_callback = progress_callback
        self.parallel_logger = parallel_logger
        self.max_workers = self.config.parallel.max_workers

        self.git = git or GitRunner(project_path)
        self.workspaces = WorkspaceManager(
            project_path=project_path,
            worktree_dir=self.config.parallel.worktree_dir,
            isolated=self.config.parallel.isolated_workspaces,
            git=self.git,
        )
        self.rollback = RollbackManager(self.git)
        self.monitor = ResourceMonitor(ResourceLimits(
            max_calls_per_hour=self.config.loop.max_calls_per_hour,
            max_cost_per_hour=self.config.parallel.max_cost_per_hour,
        ))
        self.analyzer = ResponseAnalyzer()
        self.injector = PromptInjector(project_path, self.config.paths.hermes_dir)
        self.retry = RetryConfig.from_ai_config(self.config.ai)
        self.ai_merger = ai_merger or AIMerger(provider, workdir=project_path, timeout=self.config.ai.timeout)

        # Concurrency control
        self.semaphore = asyncio.Semaphore(self.max_workers)
        self.cancel_event = asyncio.Event()
        self._breaker_lock = asyncio.Lock()

        self.running_agents: Dict[str, RunningAgent] = {}
        self.statuses: Dict[str, TaskStatus] = {}
        self.execution_start_time: Optional[float] = None
        self.current_batch_number: int = 0
        self.loop_number: int = 0
        self.halt_reason: Optional[str] = None

        logger.info(f"ParallelExecutor initialized (max_workers={self.max_workers})")

    def plan(self):
        """Build the ExecutionPlan for the current task files without running anything."""
        from hermes.execution_plan import ExecutionPlanBuilder

        return ExecutionPlanBuilder(max_workers=self.max_workers).build_plan(self.store.get_all_tasks())

    async def execute(self) -> List[TaskResult]:
        """
        Execute all runnable tasks in parallel batches.

        Returns:
            TaskResult for every task attempt, in batch order

        Raises:
            GraphError: If the task dependencies are cyclic or unresolvable
            WorkspaceError: If the repository is not on a branch
        """
        self.execution_start_time = time.time()
        self.halt_reason = None
        all_results: List[TaskResult] = []

        tasks = self.store.get_all_tasks()
        if not tasks:
            logger.info("No tasks found")
            return all_results

        graph = TaskGraph(tasks, max_workers=self.max_workers)
        self.statuses = {t.id: t.status for t in tasks}
        for task_id, status in list(self.statuses.items()):
            if status == TaskStatus.IN_PROGRESS:
                logger.info(f"Task {task_id} was left IN_PROGRESS by an earlier run, rescheduling")
                self._set_status(task_id, TaskStatus.NOT_STARTED)

        self.breaker.initialize()
        if not self.breaker.can_execute():
            self.halt_reason = self.breaker.get_state().reason
            logger.warning(self.breaker.format_halt_message())
            return all_results
        self.loop_number = self.breaker.get_state().current_loop

        base_branch = await self.workspaces.initialize()
        await self.rollback.save_snapshot()
        logger.info(f"Starting parallel execution on {base_branch} ({len(tasks)} tasks)")

        try:
            while not self.cancel_event.is_set() and self.halt_reason is None:
                batch = graph.next_batch(self.statuses)
                if not batch:
                    break

                self.current_batch_number += 1
                batch_number = self.current_batch_number
                task_ids = [t.id for t in batch]
                remaining = len(graph.resolve(self.statuses).batches)
                logger.info(f"Processing batch {batch_number}: {', '.join(task_ids)}")

                await self._emit({
                    "type": "batch_start",
                    "batch_number": batch_number,
                    "total_batches": batch_number + remaining - 1,
                    "task_count": len(task_ids),
                    "task_ids": task_ids,
                })
                if self.parallel_logger:
                    self.parallel_logger.batch_start(batch_number, task_ids)

                batch_results = await self.execute_batch(batch_number, batch)
                all_results.extend(batch_results)

                successful = sum(1 for r in batch_results if r.success)
                failed = sum(1 for r in batch_results if r.status in (TaskStatus.BLOCKED, TaskStatus.AT_RISK))
                logger.info(f"Batch {batch_number} complete: {successful}/{len(batch_results)} tasks completed")

                await self._emit({
                    "type": "batch_complete",
                    "batch_number": batch_number,
                    "success_count": successful,
                    "fail_count": failed,
                    "total_cost": sum(r.cost for r in all_results),
                })
                if self.parallel_logger:
                    self.parallel_logger.batch_complete(batch_number, successful, failed)

                if failed and self.config.parallel.failure_strategy == "fail-fast":
                    logger.warning(f"Stopping after batch {batch_number}: {failed} task(s) failed (fail-fast)")
                    break

            if self.halt_reason:
                logger.warning(f"Execution halted: {self.halt_reason}")
            elif self.cancel_event.is_set():
                logger.info("Execution cancelled")
            elif not graph.is_complete(self.statuses):
                waiting = [tid for tid, s in self.statuses.items() if s != TaskStatus.COMPLETED]
                logger.warning(f"No runnable tasks left; not completed: {', '.join(sorted(waiting))}")

            return all_results

        finally:
            duration = time.time() - self.execution_start_time
            completed = sum(1 for r in all_results if r.success)
            logger.info(f"Parallel execution finished: {completed}/{len(all_results)} task runs completed")
            await self._emit({
                "type": "execution_complete",
                "completed": completed,
                "total": len(all_results),
                "duration": duration,
                "halted": self.halt_reason,
            })
            if self.parallel_logger:
                self.parallel_logger.execution_complete(completed, len(all_results) - completed, duration)

    async def execute_batch(self, batch_number: int, batch: List[Task]) -> List[TaskResult]:
        """
        Run one batch to completion, then merge its results.

        Args:
            batch_number: Batch number
            batch: Tasks in scheduler order

        Returns:
            One TaskResult per task
        """
        for task in batch:
            self._set_status(task.id, TaskStatus.IN_PROGRESS)

        workers = [
            asyncio.create_task(self._run_worker(task, worker_id))
            for worker_id, task in enumerate(batch, start=1)
        ]
        gathered = await asyncio.gather(*workers, return_exceptions=True)

        outcomes: List[_WorkerOutcome] = []
        for task, outcome in zip(batch, gathered):
            if isinstance(outcome, BaseException):
                logger.error(f"Worker for {task.id} failed unexpectedly: {outcome}", exc_info=outcome)
                outcomes.append(_WorkerOutcome(
                    task=task,
                    result=TaskResult(task_id=task.id, status=TaskStatus.BLOCKED, error=str(outcome)),
                    workspace=self.workspaces.get(task.id),
                ))
            else:
                outcomes.append(outcome)

        await self._merge_batch(batch_number, outcomes)

        for outcome in outcomes:
            self._set_status(outcome.task.id, outcome.result.status)
            await self._emit({
                "type": "task_complete",
                "task_id": outcome.task.id,
                "status": outcome.result.status.value,
                "success": outcome.result.success,
                "duration": outcome.result.duration,
                "cost": outcome.result.cost,
                "error": outcome.result.error,
            })
        return [o.result for o in outcomes]

    async def cancel(self) -> None:
        """
        Cancel all running agents.

        Outstanding invocations are cancelled; their workspaces are left in
        place and the tasks are marked PAUSED. No merge happens for them.
        """
        logger.info("Cancellation requested - setting cancel event")
        self.cancel_event.set()

        if self.running_agents:
            logger.info(f"Cancelling {len(self.running_agents)} running agents:")
            for agent in list(self.running_agents.values()):
                duration = time.time() - agent.started_at
                logger.info(f"  - Task {agent.task_id} (worker {agent.worker_id}) running for {duration:.1f}s")
                if agent.invocation is not None and not agent.invocation.done():
                    agent.invocation.cancel()
        else:
            logger.info("No running agents to cancel")

    def get_status(self) -> Dict[str, Any]:
        """
        Get current execution status.

        Returns:
            Dict with running agents, current batch, duration, halt reason
            and resource usage
        """
        total_duration = 0.0
        if self.execution_start_time is not None:
            total_duration = time.time() - self.execution_start_time

        running_agents_info = [
            {
                'task_id': agent.task_id,
                'worker_id': agent.worker_id,
                'duration': time.time() - agent.started_at,
                'started_at': agent.started_at,
            }
            for agent in self.running_agents.values()
        ]

        return {
            'running_agents': running_agents_info,
            'active_agent_count': len(self.running_agents),
            'current_batch': self.current_batch_number,
            'total_duration': total_duration,
            'halt_reason': self.halt_reason,
            'resources': self.monitor.get_stats(),
        }

    async def _run_worker(self, task: Task, worker_id: int) -> _WorkerOutcome:
        """Run one task's agent inside its workspace, bounded by the semaphore."""
        async with self.semaphore:
            start_time = time.time()

            if self.cancel_event.is_set() or self.halt_reason is not None:
                logger.info(f"Task {task.id} not started, execution is stopping")
                return _WorkerOutcome(task=task, result=TaskResult(task_id=task.id, status=TaskStatus.NOT_STARTED))

            logger.info(f"Worker {worker_id} starting task {task.id}: {task.name}")
            await self._emit({
                "type": "task_start",
                "task_id": task.id,
                "task_name": task.name,
                "worker_id": worker_id,
                "started_at": datetime.now().isoformat(),
            })
            if self.parallel_logger:
                self.parallel_logger.task_start(worker_id, task.id, task.name)

            result = TaskResult(task_id=task.id, status=TaskStatus.IN_PROGRESS, worker_id=worker_id)
            outcome = _WorkerOutcome(task=task, result=result)

            try:
                workspace = await self.workspaces.create(task.id)
            except WorkspaceError as e:
                logger.error(f"Task {task.id}: workspace setup failed: {e}")
                return self._fail(outcome, TaskStatus.BLOCKED, str(e), start_time)
            outcome.workspace = workspace
            result.branch = workspace.branch

            try:
                self.monitor.check()
            except InvocationError as e:
                self.halt_reason = str(e)
                return self._fail(outcome, TaskStatus.NOT_STARTED, str(e), start_time)

            agent = RunningAgent(task_id=task.id, worker_id=worker_id, started_at=start_time)
            agent.invocation = asyncio.create_task(execute_with_retry(
                self.provider,
                self._build_prompt(task),
                str(workspace.work_path),
                retry=self.retry,
                timeout=self.config.ai.timeout,
                stream_output=self.config.ai.stream_output,
                cancel_event=self.cancel_event,
            ))
            self.running_agents[task.id] = agent

            try:
                response: ExecuteResult = await agent.invocation
            except asyncio.CancelledError:
                if not self.cancel_event.is_set():
                    raise
                logger.info(f"Task {task.id} cancelled, workspace kept at {workspace.work_path}")
                return self._fail(outcome, TaskStatus.PAUSED, "cancelled", start_time)
            except InvocationError as e:
                self.monitor.record_call()
                if self.cancel_event.is_set():
                    return self._fail(outcome, TaskStatus.PAUSED, "cancelled", start_time)
                logger.error(f"Task {task.id}: agent invocation failed: {e}")
                await self._record_loop(False, True)
                return self._fail(outcome, TaskStatus.BLOCKED, str(e), start_time)
            finally:
                self.running_agents.pop(task.id, None)

            self.monitor.record_call(response.cost)
            result.output = response.output
            result.cost = response.cost
            result.analysis = self.analyzer.analyze(response.output)
            logger.debug(
                f"Task {task.id} analysis: progress={result.analysis.has_progress} "
                f"complete={result.analysis.is_complete} confidence={result.analysis.confidence:.2f}"
            )
            await self._record_loop(result.analysis.has_progress, False)

            if workspace.is_isolated:
                try:
                    await workspace.commit_changes(f"{task.id}: {task.name}")
                    outcome.changed_files = await workspace.get_changes(workspace.base_branch)
                    outcome.diff = await workspace.get_diff(workspace.base_branch)
                except GitCommandError as e:
                    logger.error(f"Task {task.id}: could not collect changes: {e}")
                    return self._fail(outcome, TaskStatus.AT_RISK, str(e), start_time)

            result.duration = time.time() - start_time
            if not result.analysis.has_progress:
                result.status = TaskStatus.NOT_STARTED
                result.error = "no progress detected"
                logger.warning(f"Task {task.id} made no progress, returning to NOT_STARTED")
            if self.parallel_logger:
                self.parallel_logger.task_complete(worker_id, task.id, result.duration)
            return outcome

    async def _merge_batch(self, batch_number: int, outcomes: List[_WorkerOutcome]) -> None:
        """
        Detect conflicts between the batch's changes, resolve them and merge.

        Only tasks that made progress take part. Statuses are decided here:
        merged tasks become COMPLETED, held or unmergeable ones AT_RISK.
        """
        candidates = [o for o in outcomes if o.result.status == TaskStatus.IN_PROGRESS]
        isolated = [o for o in candidates if o.workspace is not None and o.workspace.is_isolated]

        for outcome in candidates:
            if outcome not in isolated:
                outcome.result.status = TaskStatus.COMPLETED
        if len(isolated) < len(candidates) and self.config.task_mode.auto_commit:
            await self._commit_shared(batch_number, [o.task for o in candidates if o not in isolated])

        if isolated:
            key = f"batch-{batch_number}"
            await self.rollback.save_snapshot(key)
            try:
                await self._resolve_and_merge(batch_number, isolated)
            except GitCommandError as e:
                logger.error(f"Merge phase of batch {batch_number} failed, rolling back: {e}")
                if self.parallel_logger:
                    self.parallel_logger.merge(f"Batch {batch_number} merge failed: {e}", logging.ERROR)
                await self.rollback.rollback_task(key)
                self._restore_statuses()
                for outcome in isolated:
                    outcome.result.status = TaskStatus.AT_RISK
                    outcome.result.merged = False
                    outcome.result.error = f"merge phase rolled back: {e}"

        for outcome in outcomes:
            await self._cleanup_workspace(outcome)

    async def _resolve_and_merge(self, batch_number: int, outcomes: List[_WorkerOutcome]) -> None:
        detector = ConflictDetector()
        for outcome in outcomes:
            if outcome.changed_files:
                detector.add_task_changes(
                    outcome.task.id,
                    outcome.changed_files,
                    split_diff_by_file(outcome.diff),
                    intent=self._intent(outcome.task),
                )
        conflicts = detector.analyze()

        for conflict in conflicts:
            logger.warning(f"Conflict in {conflict.file}: {conflict.description}")
            if self.parallel_logger:
                self.parallel_logger.conflict_detected(conflict.file, conflict.tasks, conflict.severity)
            await self._emit({
                "type": "conflict_detected",
                "batch_number": batch_number,
                "file": conflict.file,
                "tasks": conflict.tasks,
                "severity": conflict.severity,
            })

        resolver = ConflictResolver(
            base_path=self.project_path,
            base_branch=self.workspaces.base_branch,
            git=self.git,
            ai_merger=self.ai_merger,
            detector=detector,
            strategy=self.config.parallel.conflict_resolution,
            semantic_check=self.config.parallel.semantic_check,
        )
        if conflicts:
            resolutions = await resolver.resolve_all(conflicts)
            for resolution in resolutions:
                if self.parallel_logger:
                    self.parallel_logger.conflict_resolved(
                        resolution.conflict.file, resolution.strategy.value, resolution.success
                    )
            logger.info(resolver.format_summary(resolutions))

        to_merge = []
        for outcome in outcomes:
            if outcome.task.id in resolver.held_tasks:
                outcome.result.status = TaskStatus.AT_RISK
                outcome.result.error = "held back by an unresolved conflict"
                logger.warning(f"Task {outcome.task.id} held back, branch {outcome.result.branch} kept")
            else:
                to_merge.append(outcome)

        merge_results: Dict[str, BranchMergeResult] = {}
        if to_merge:
            for merge in await resolver.merge_branches_sequentially([task_branch(o.task.id) for o in to_merge]):
                merge_results[merge.branch] = merge

        for outcome in to_merge:
            merge = merge_results.get(task_branch(outcome.task.id))
            if merge is not None and merge.success:
                outcome.result.status = TaskStatus.COMPLETED
                outcome.result.merged = True
                if self.parallel_logger:
                    self.parallel_logger.merge(f"Merged {merge.branch}")
            else:
                outcome.result.status = TaskStatus.AT_RISK
                outcome.result.error = str(merge.error) if merge is not None else "branch was not merged"
                if self.parallel_logger:
                    self.parallel_logger.merge(f"Failed to merge {task_branch(outcome.task.id)}: {outcome.result.error}",
                                               logging.ERROR)

    async def _cleanup_workspace(self, outcome: _WorkerOutcome) -> None:
        """Tear the worktree down; delete the branch only once it is merged."""
        if outcome.workspace is None or outcome.result.status == TaskStatus.PAUSED:
            return
        try:
            await self.workspaces.remove(outcome.task.id, delete_branch=outcome.result.merged)
        except WorkspaceError as e:
            logger.error(f"Cleanup for task {outcome.task.id} failed: {e}")

    async def _commit_shared(self, batch_number: int, tasks: List[Task]) -> None:
        workspace = Workspace(
            task_id=f"batch-{batch_number}",
            base_path=self.workspaces.project_path,
            worktree_root=self.workspaces.worktree_root,
            base_branch=self.workspaces.base_branch,
            git=self.git,
        )
        workspace.setup_shared()
        message = f"hermes: batch {batch_number} ({', '.join(t.id for t in tasks)})"
        try:
            await workspace.commit_changes(message)
        except GitCommandError as e:
            logger.warning(f"Failed to commit batch {batch_number}: {e}")

    async def _record_loop(self, has_progress: bool, has_error: bool) -> None:
        """Apply one loop result to the breaker, one completion at a time."""
        async with self._breaker_lock:
            self.loop_number += 1
            if not self.breaker.add_loop_result(has_progress, has_error, self.loop_number):
                self.halt_reason = self.breaker.get_state().reason
                logger.warning(self.breaker.format_halt_message())

    def _fail(self, outcome: _WorkerOutcome, status: TaskStatus, error: str, start_time: float) -> _WorkerOutcome:
        outcome.result.status = status
        outcome.result.error = error
        outcome.result.duration = time.time() - start_time
        if self.parallel_logger and status != TaskStatus.NOT_STARTED:
            self.parallel_logger.task_failed(outcome.result.worker_id, outcome.task.id, error)
        return outcome

    def _set_status(self, task_id: str, status: TaskStatus) -> None:
        self.statuses[task_id] = status
        try:
            self.store.update_task_status(task_id, status)
        except (KeyError, OSError) as e:
            logger.warning(f"Failed to persist status of {task_id}: {e}")

    def _restore_statuses(self) -> None:
        """Re-apply known statuses after a hard reset may have reverted task files."""
        for task_id, status in self.statuses.items():
            self._set_status(task_id, status)

    def _build_prompt(self, task: Task) -> str:
        base = self.injector.read_base_prompt().strip()
        section = self.injector.build_task_section(task)
        return f"{base}\n\n{section}" if base else section

    @staticmethod
    def _intent(task: Task) -> str:
        if task.description:
            return f"{task.name}: {task.description.splitlines()[0]}"
        return task.name

    async def _emit(self, event: Dict[str, Any]) -> None:
        if self.progress_callback:
            await self.progress_callback(event)
