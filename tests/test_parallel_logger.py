"""
Test ParallelLogger file routing
"""

import sys
sys.path.insert(0, '.')

from hermes.parallel.parallel_logger import ParallelLogger


def test_events_are_written_to_their_files(tmp_path):
    print("\n=== Test: Parallel Logger ===")
    plog = ParallelLogger(".hermes/logs", str(tmp_path))
    try:
        plog.batch_start(1, ["T001", "T002"])
        plog.task_start(1, "T001", "Build parser")
        plog.task_failed(2, "T002", "agent crashed")
        plog.conflict_detected("src/app.py", ["T001", "T002"], 3)
        plog.conflict_resolved("src/app.py", "AI_ASSISTED", True)
        plog.batch_complete(1, 1, 1)
        plog.execution_complete(1, 1, 2.5)
    finally:
        plog.close()

    log_dir = tmp_path / ".hermes" / "logs" / "parallel"
    main_log = (log_dir / "hermes-parallel.log").read_text()
    assert "Batch 1 started: T001, T002" in main_log
    assert "Worker 2 failed T002: agent crashed" in main_log
    assert "Execution complete: 1 completed, 1 not completed" in main_log

    assert "Starting task T001: Build parser" in (log_dir / "worker-1.log").read_text()
    assert "Task T002 failed: agent crashed" in (log_dir / "worker-2.log").read_text()

    merge_log = (log_dir / "merge.log").read_text()
    assert "Conflict in src/app.py between T001, T002 (severity 3)" in merge_log
    assert "resolved via AI_ASSISTED" in merge_log
    print("[PASS]")


def test_two_loggers_do_not_share_handlers(tmp_path):
    first = ParallelLogger(".hermes/logs", str(tmp_path / "a"))
    second = ParallelLogger(".hermes/logs", str(tmp_path / "b"))
    try:
        first.main("only in a")
    finally:
        first.close()
        second.close()

    assert "only in a" in (tmp_path / "a" / ".hermes/logs/parallel/hermes-parallel.log").read_text()
    assert "only in a" not in (tmp_path / "b" / ".hermes/logs/parallel/hermes-parallel.log").read_text()
