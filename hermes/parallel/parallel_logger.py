"""
Parallel Logger
===============

Per-run log files for parallel execution under ``.hermes/logs/parallel``:

- ``hermes-parallel.log``: batch and task lifecycle
- ``worker-N.log``: one file per worker slot
- ``merge.log``: conflict detection, resolution and merges
"""

from pathlib import Path
from typing import Dict, List
import logging

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(message)s"


class ParallelLogger:
    """Routes execution events to dedicated log files."""

    def __init__(self, logs_dir: str = ".hermes/logs", project_path: str = "."):
        self.log_dir = Path(project_path) / logs_dir / "parallel"
        self.log_dir.mkdir(parents=True, exist_ok=True)
        self._handlers: List[logging.Handler] = []
        self._workers: Dict[int, logging.Logger] = {}
        key = str(id(self))
        self._main = self._file_logger(f"hermes.parallel.run.{key}", "hermes-parallel.log")
        self._merge = self._file_logger(f"hermes.parallel.merge.{key}", "merge.log")
        self._key = key

    def _file_logger(self, name: str, filename: str) -> logging.Logger:
        file_logger = logging.getLogger(name)
        file_logger.setLevel(logging.DEBUG)
        handler = logging.FileHandler(self.log_dir / filename, encoding="utf-8")
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        file_logger.addHandler(handler)
        self._handlers.append(handler)
        return file_logger

    def main(self, message: str, level: int = logging.INFO) -> None:
        self._main.log(level, message)

    def worker(self, worker_id: int, message: str, level: int = logging.INFO) -> None:
        if worker_id not in self._workers:
            self._workers[worker_id] = self._file_logger(
                f"hermes.parallel.worker{worker_id}.{self._key}", f"worker-{worker_id}.log"
            )
        self._workers[worker_id].log(level, message)

    def merge(self, message: str, level: int = logging.INFO) -> None:
        self._merge.log(level, message)

    def batch_start(self, batch_number: int, task_ids: List[str]) -> None:
        self.main(f"Batch {batch_number} started: {', '.join(task_ids)}")

    def batch_complete(self, batch_number: int, success_count: int, fail_count: int) -> None:
        self.main(f"Batch {batch_number} complete: {success_count} succeeded, {fail_count} failed")

    def task_start(self, worker_id: int, task_id: str, task_name: str) -> None:
        self.main(f"Worker {worker_id} started {task_id}: {task_name}")
        self.worker(worker_id, f"Starting task {task_id}: {task_name}")

    def task_complete(self, worker_id: int, task_id: str, duration: float) -> None:
        self.main(f"Worker {worker_id} completed {task_id} in {duration:.1f}s")
        self.worker(worker_id, f"Completed task {task_id} in {duration:.1f}s")

    def task_failed(self, worker_id: int, task_id: str, error: str) -> None:
        self.main(f"Worker {worker_id} failed {task_id}: {error}", logging.ERROR)
        self.worker(worker_id, f"Task {task_id} failed: {error}", logging.ERROR)

    def conflict_detected(self, file: str, tasks: List[str], severity: int) -> None:
        self.merge(f"Conflict in {file} between {', '.join(tasks)} (severity {severity})", logging.WARNING)

    def conflict_resolved(self, file: str, strategy: str, success: bool) -> None:
        outcome = "resolved" if success else "unresolved"
        level = logging.INFO if success else logging.WARNING
        self.merge(f"Conflict in {file} {outcome} via {strategy}", level)

    def execution_complete(self, completed: int, failed: int, duration: float) -> None:
        self.main(f"Execution complete: {completed} completed, {failed} not completed in {duration:.1f}s")

    def close(self) -> None:
        loggers = [self._main, self._merge] + list(self._workers.values())
        for handler in self._handlers:
            handler.close()
            for file_logger in loggers:
                file_logger.removeHandler(handler)
        self._handlers = []
