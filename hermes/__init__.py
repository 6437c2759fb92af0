"""
Hermes
======

Drives AI coding agents through dependency-ordered tasks, running
independent tasks concurrently in isolated git worktrees and merging their
changes back into the shared branch.

Usage:
    from hermes import HermesConfig, ParallelExecutor, TaskLoop
"""

from hermes.circuit_breaker import CircuitBreaker, CircuitState
from hermes.config import HermesConfig
from hermes.parallel.parallel_executor import ParallelExecutor, TaskResult
from hermes.response_analyzer import AnalysisResult, ResponseAnalyzer
from hermes.task_loop import TaskLoop

__version__ = "0.1.0"

__all__ = [
    'AnalysisResult',
    'CircuitBreaker',
    'CircuitState',
    'HermesConfig',
    'ParallelExecutor',
    'ResponseAnalyzer',
    'TaskLoop',
    'TaskResult',
]
