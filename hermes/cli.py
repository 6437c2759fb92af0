"""
Hermes command line.

Usage:
    hermes run                          # Serial task loop
    hermes run --parallel --workers 5   # Parallel batches in worktrees
    hermes run --parallel --dry-run     # Show the plan only
    hermes plan                         # Same as run --dry-run
    hermes status                       # Task progress and circuit state
    hermes reset --reason "fixed PROMPT.md"
    hermes clean                        # Remove hermes worktrees and branches

Environment:
    HERMES_LOG_LEVEL sets the log level (default INFO); HERMES_* overrides
    from .env are applied on top of .hermes/config.yaml.
"""

from typing import List, Optional
import argparse
import asyncio
import logging
import os
import signal
import sys

from hermes.ai.provider import get_provider
from hermes.circuit_breaker import CircuitBreaker
from hermes.config import HermesConfig
from hermes.errors import ConfigError, GraphError, HermesError
from hermes.execution_plan import ExecutionPlanBuilder
from hermes.parallel.git_runner import GitRunner
from hermes.parallel.parallel_executor import ParallelExecutor
from hermes.parallel.parallel_logger import ParallelLogger
from hermes.parallel.rollback import RollbackManager
from hermes.task_loop import TaskLoop
from hermes.tasks.models import TaskStatus
from hermes.tasks.store import TaskStore

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_ERROR = 1
EXIT_HALTED = 2


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="hermes",
        description="Drive AI coding agents through dependency-ordered tasks",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Serial execution (default)
  hermes run

  # Parallel execution with 5 concurrent agents
  hermes run --parallel --workers 5

  # Show the parallel execution plan without running
  hermes run --parallel --dry-run
        """
    )
    parser.add_argument('--project', default='.', help='Project directory (default: current directory)')
    parser.add_argument('--debug', action='store_true', help='Enable debug logging')
    subparsers = parser.add_subparsers(dest='command', required=True)

    run = subparsers.add_parser('run', help='Run the task execution loop')
    run.add_argument('--parallel', action='store_true', default=None,
                     help='Enable parallel execution of tasks (default: from config)')
    run.add_argument('--workers', type=int, default=None,
                     help='Number of parallel workers (1-10, default: from config)')
    run.add_argument('--dry-run', action='store_true', help='Show the execution plan without running')

    subparsers.add_parser('plan', help='Show the parallel execution plan')
    subparsers.add_parser('status', help='Show task progress and circuit breaker state')

    reset = subparsers.add_parser('reset', help='Reset the circuit breaker')
    reset.add_argument('--reason', default='Manual reset', help='Reason recorded in the history')

    subparsers.add_parser('clean', help='Remove hermes worktrees and task branches')
    return parser


def configure_logging(debug: bool = False) -> None:
    level_name = "DEBUG" if debug else os.environ.get("HERMES_LOG_LEVEL", "INFO").upper()
    logging.basicConfig(
        level=getattr(logging, level_name, logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    configure_logging(args.debug)

    try:
        config = HermesConfig.load(args.project)
    except ConfigError as e:
        print(f"Error: {e}")
        return EXIT_ERROR

    if args.command == 'run':
        if args.workers is not None:
            if args.workers < 1 or args.workers > 10:
                print(f"Error: --workers must be between 1 and 10 (got {args.workers})")
                return EXIT_ERROR
            config.parallel.max_workers = args.workers
        if args.parallel is not None:
            config.parallel.enabled = args.parallel
        if args.dry_run:
            return cmd_plan(args.project, config)
        return asyncio.run(cmd_run(args.project, config))
    if args.command == 'plan':
        return cmd_plan(args.project, config)
    if args.command == 'status':
        return cmd_status(args.project, config)
    if args.command == 'reset':
        return cmd_reset(args.project, config, args.reason)
    return asyncio.run(cmd_clean(args.project))


def cmd_plan(project: str, config: HermesConfig) -> int:
    store = TaskStore(project, config.paths.tasks_dir)
    if not store.has_tasks():
        print(f"No tasks found in {store.tasks_dir}")
        return EXIT_ERROR
    plan = ExecutionPlanBuilder(max_workers=config.parallel.max_workers).build_plan(store.get_all_tasks())
    print(plan.to_ascii())
    return EXIT_OK if plan.is_valid else EXIT_ERROR


async def cmd_run(project: str, config: HermesConfig) -> int:
    store = TaskStore(project, config.paths.tasks_dir)
    if not store.has_tasks():
        print(f"No tasks found in {store.tasks_dir}")
        return EXIT_ERROR

    provider = get_provider(config.ai.provider, config.ai.command)
    if not provider.is_available():
        print(f"Error: AI provider '{config.ai.provider}' is not available ({' '.join(config.ai.command)})")
        return EXIT_ERROR
    logger.info(f"Using AI provider: {config.ai.provider}")

    if config.parallel.enabled:
        return await _run_parallel(project, config, provider, store)

    task_loop = TaskLoop(project, provider, config=config, store=store, confirm=_confirm)
    _install_signal_handler(task_loop.stop)
    try:
        summary = await task_loop.run()
    except GraphError as e:
        print(f"Error: {e}")
        return EXIT_ERROR
    print(f"\n{summary.stop_reason} ({summary.loops} loops, {len(summary.completed)} tasks completed)")
    if not task_loop.breaker.can_execute():
        return EXIT_HALTED
    return EXIT_OK


async def _run_parallel(project: str, config: HermesConfig, provider, store: TaskStore) -> int:
    parallel_logger = ParallelLogger(config.paths.logs_dir, project)
    executor = ParallelExecutor(
        project,
        provider,
        config=config,
        store=store,
        parallel_logger=parallel_logger,
    )
    print(executor.plan().to_ascii())
    _install_signal_handler(lambda: asyncio.ensure_future(executor.cancel()))
    logger.info(f"Logs will be written to: {parallel_logger.log_dir}")

    try:
        results = await executor.execute()
    except HermesError as e:
        print(f"Error: {e}")
        return EXIT_ERROR
    finally:
        parallel_logger.close()

    completed = sum(1 for r in results if r.success)
    print(f"\nParallel execution finished: {completed}/{len(results)} task runs completed")
    for result in results:
        if not result.success:
            print(f"  {result.task_id}: {result.status.value} ({result.error})")
    if executor.halt_reason:
        print(f"Halted: {executor.halt_reason}")
        return EXIT_HALTED
    return EXIT_OK


def cmd_status(project: str, config: HermesConfig) -> int:
    store = TaskStore(project, config.paths.tasks_dir)
    breaker = CircuitBreaker(project, config.paths.hermes_dir)

    features = store.get_all_features()
    if not features:
        print(f"No tasks found in {store.tasks_dir}")
    for feature in features:
        print(f"{feature.id}: {feature.name} [{feature.status.value}] {feature.progress.format_bar(20)}")
        for task in feature.tasks:
            marker = "x" if task.status == TaskStatus.COMPLETED else " "
            print(f"  [{marker}] {task.id}: {task.name} ({task.status.value}, {task.priority.value})")

    progress = store.get_progress()
    print(f"\nProgress: {progress.format_bar()} ({progress.completed}/{progress.total})")
    print(breaker.format_status())
    return EXIT_OK


def cmd_reset(project: str, config: HermesConfig, reason: str) -> int:
    breaker = CircuitBreaker(project, config.paths.hermes_dir)
    breaker.reset(reason)
    print(f"Circuit breaker reset: {reason}")
    return EXIT_OK


async def cmd_clean(project: str) -> int:
    rollback = RollbackManager(GitRunner(project))
    try:
        worktrees = await rollback.cleanup_worktrees()
        branches = await rollback.cleanup_task_branches()
    except HermesError as e:
        print(f"Error: {e}")
        return EXIT_ERROR
    print(f"Removed {len(worktrees)} worktrees and {len(branches)} branches")
    return EXIT_OK


def _confirm(task) -> bool:
    try:
        input(f"\nTask {task.id} completed. Press Enter to continue or Ctrl+C to stop...")
    except (EOFError, KeyboardInterrupt):
        return False
    return True


def _install_signal_handler(callback) -> None:
    loop = asyncio.get_running_loop()
    try:
        loop.add_signal_handler(signal.SIGINT, callback)
        loop.add_signal_handler(signal.SIGTERM, callback)
    except (NotImplementedError, RuntimeError):
        logger.debug("Signal handlers not supported on this platform")


if __name__ == "__main__":
    sys.exit(main())
