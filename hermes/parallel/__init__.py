"""
Parallel Execution Module
==========================

Infrastructure for parallel task execution using git worktrees and
dependency-based scheduling.

Main Components:
- TaskGraph: Computes parallel execution batches from task dependencies
- WorkspaceManager: Manages git worktrees for isolated parallel execution
- ConflictDetector / ConflictResolver: Reconcile a batch's changes
- ParallelExecutor: Orchestrates parallel agent execution across worktrees

Usage:
    from hermes.parallel import ParallelExecutor

    executor = ParallelExecutor(project_path, provider, config=config)
    results = await executor.execute()
"""

from hermes.parallel.ai_merger import AIMerger, MergeContext, MergeResult
from hermes.parallel.conflict_detector import Conflict, ConflictDetector, ConflictType
from hermes.parallel.conflict_resolver import ConflictResolver, ResolutionResult, ResolutionStrategy
from hermes.parallel.git_runner import GitRunner
from hermes.parallel.parallel_executor import ParallelExecutor, TaskResult
from hermes.parallel.parallel_logger import ParallelLogger
from hermes.parallel.resource_monitor import ResourceLimits, ResourceMonitor
from hermes.parallel.rollback import RollbackManager
from hermes.parallel.task_graph import DependencyGraph, TaskGraph
from hermes.parallel.workspace import Workspace, WorkspaceManager

__all__ = [
    'AIMerger',
    'Conflict',
    'ConflictDetector',
    'ConflictResolver',
    'ConflictType',
    'DependencyGraph',
    'GitRunner',
    'MergeContext',
    'MergeResult',
    'ParallelExecutor',
    'ParallelLogger',
    'ResolutionResult',
    'ResolutionStrategy',
    'ResourceLimits',
    'ResourceMonitor',
    'RollbackManager',
    'TaskGraph',
    'TaskResult',
    'Workspace',
    'WorkspaceManager',
]
