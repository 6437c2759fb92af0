"""
Test ParallelExecutor end to end with a scripted agent and real worktrees
"""

import asyncio
import re
import sys
from pathlib import Path
sys.path.insert(0, '.')

import pytest

from conftest import git, task_block, write_feature
from hermes.ai.provider import ExecuteResult
from hermes.ai.scripted import ScriptedProvider
from hermes.circuit_breaker import CircuitBreaker, CircuitState
from hermes.config import HermesConfig
from hermes.errors import GraphError
from hermes.parallel.parallel_executor import ParallelExecutor
from hermes.tasks.models import TaskStatus
from hermes.tasks.store import TaskStore

CURRENT_TASK = re.compile(r"## Current Task: (T\d+)")

CRASH = ExecuteResult(success=False, error="agent crashed")

DONE_OUTPUT = """Created {path} with the requested content and updated the module wiring.
All changes are in place and the implementation is finished.
---HERMES_STATUS---
STATUS: COMPLETE
EXIT_SIGNAL: true
---END_HERMES_STATUS---
"""


def make_config(tmp_path, **parallel):
    config = HermesConfig()
    config.parallel.enabled = True
    config.parallel.worktree_dir = str(tmp_path / "worktrees")
    config.ai.max_retries = 1
    config.ai.retry_delay = 0.01
    config.ai.timeout = 30
    for key, value in parallel.items():
        setattr(config.parallel, key, value)
    return config


def file_per_task(prompt, workdir):
    """Agent that writes <task>.txt in its workdir."""
    task_id = CURRENT_TASK.search(prompt).group(1)
    path = f"{task_id.lower()}.txt"
    Path(workdir, path).write_text(f"{task_id}\n")
    return DONE_OUTPUT.format(path=path)


def append_to_readme(prompt, workdir):
    task_id = CURRENT_TASK.search(prompt).group(1)
    readme = Path(workdir, "README.md")
    readme.write_text(readme.read_text() + f"Added by {task_id}\n")
    return DONE_OUTPUT.format(path="README.md")


def statuses(repo):
    return {t.id: t.status for t in TaskStore(str(repo)).get_all_tasks()}


class TestParallelRun:

    @pytest.mark.asyncio
    async def test_batches_run_and_merge(self, git_repo, tmp_path):
        print("\n=== Test: Parallel Run ===")
        write_feature(git_repo, [
            task_block("T001"),
            task_block("T002"),
            task_block("T003", deps=["T001"]),
        ])
        events = []

        async def on_event(event):
            events.append(event)

        provider = ScriptedProvider(handler=file_per_task)
        executor = ParallelExecutor(str(git_repo), provider, config=make_config(tmp_path),
                                    progress_callback=on_event)

        results = await executor.execute()

        assert [r.task_id for r in results] == ["T001", "T002", "T003"]
        assert all(r.success and r.merged for r in results)
        assert statuses(git_repo) == {tid: TaskStatus.COMPLETED for tid in ("T001", "T002", "T003")}
        for name in ("t001.txt", "t002.txt", "t003.txt"):
            assert (git_repo / name).exists(), f"{name} was not merged"

        # T003 ran on top of T001's merged work
        t003_workdir = [w for p, w in provider.calls if "## Current Task: T003" in p][0]
        assert Path(t003_workdir).name == "hermes-T003"

        assert git(git_repo, "branch", "--list", "hermes/*") == ""
        assert not any((tmp_path / "worktrees").glob("hermes-*"))
        assert git(git_repo, "rev-parse", "--abbrev-ref", "HEAD") == "main"

        types = [e["type"] for e in events]
        assert types[0] == "batch_start"
        assert types.count("batch_start") == 2
        assert types.count("task_complete") == 3
        assert types[-1] == "execution_complete"
        assert events[0]["task_ids"] == ["T001", "T002"]

        breaker = CircuitBreaker(str(git_repo)).get_state()
        assert breaker.state == CircuitState.CLOSED
        assert breaker.current_loop == 3
        print(f"[PASS] {len(results)} tasks merged")

    @pytest.mark.asyncio
    async def test_worker_limit_bounds_concurrency(self, git_repo, tmp_path):
        write_feature(git_repo, [task_block(f"T00{i}") for i in range(1, 5)])
        running = 0
        peak = 0

        async def agent(prompt, workdir):
            nonlocal running, peak
            running += 1
            peak = max(peak, running)
            await asyncio.sleep(0.05)
            running -= 1
            return file_per_task(prompt, workdir)

        config = make_config(tmp_path, max_workers=2)
        executor = ParallelExecutor(str(git_repo), ScriptedProvider(handler=agent), config=config)

        results = await executor.execute()

        assert len(results) == 4
        assert all(r.success for r in results)
        assert peak <= 2

    @pytest.mark.asyncio
    async def test_failed_agent_blocks_task_and_dependents(self, git_repo, tmp_path):
        print("\n=== Test: Agent Failure ===")
        write_feature(git_repo, [
            task_block("T001"),
            task_block("T002"),
            task_block("T003", deps=["T001"]),
        ])

        def agent(prompt, workdir):
            if "## Current Task: T001" in prompt:
                return CRASH
            return file_per_task(prompt, workdir)

        executor = ParallelExecutor(str(git_repo), ScriptedProvider(handler=agent), config=make_config(tmp_path))

        results = await executor.execute()

        by_id = {r.task_id: r for r in results}
        assert by_id["T001"].status == TaskStatus.BLOCKED
        assert "agent crashed" in by_id["T001"].error
        assert by_id["T002"].success
        assert "T003" not in by_id
        assert statuses(git_repo)["T003"] == TaskStatus.NOT_STARTED
        print("[PASS]")

    @pytest.mark.asyncio
    async def test_overlapping_changes_hold_later_task(self, git_repo, tmp_path):
        """Test an unresolved conflict merges the first task and holds the second"""
        print("\n=== Test: Conflict Hold ===")
        write_feature(git_repo, [task_block("T001"), task_block("T002")])
        executor = ParallelExecutor(
            str(git_repo),
            ScriptedProvider(handler=append_to_readme),
            config=make_config(tmp_path, conflict_resolution="manual"),
        )

        results = await executor.execute()

        by_id = {r.task_id: r for r in results}
        assert by_id["T001"].status == TaskStatus.COMPLETED
        assert by_id["T002"].status == TaskStatus.AT_RISK
        assert "held back" in by_id["T002"].error
        assert (git_repo / "README.md").read_text() == "# Test\nAdded by T001\n"
        assert git(git_repo, "branch", "--list", "hermes/T002").strip() == "hermes/T002"
        assert git(git_repo, "branch", "--list", "hermes/T001") == ""
        assert statuses(git_repo)["T002"] == TaskStatus.AT_RISK
        print("[PASS]")

    @pytest.mark.asyncio
    async def test_ai_assisted_conflict_is_merged(self, git_repo, tmp_path):
        """Test both tasks editing one function go through the AI merger"""
        write_feature(git_repo, [task_block("T001"), task_block("T002")])

        def agent(prompt, workdir):
            if prompt.startswith("You are merging code changes"):
                return ("MERGED_CODE_START\ndef run(a, b):\n    return a + b\nMERGED_CODE_END\n"
                        "EXPLANATION:\nKept both parameters.\nCONFIDENCE: 0.9\n")
            task_id = CURRENT_TASK.search(prompt).group(1)
            arg = "a" if task_id == "T001" else "b"
            Path(workdir, "run.py").write_text(f"def run({arg}):\n    return {arg}\n")
            return DONE_OUTPUT.format(path="run.py")

        (git_repo / "run.py").write_text("def run():\n    return 0\n")
        git(git_repo, "add", "run.py")
        git(git_repo, "commit", "-m", "add run")

        executor = ParallelExecutor(
            str(git_repo),
            ScriptedProvider(handler=agent),
            config=make_config(tmp_path, conflict_resolution="ai-assisted"),
        )

        results = await executor.execute()

        assert all(r.success for r in results), [(r.task_id, r.error) for r in results]
        assert (git_repo / "run.py").read_text() == "def run(a, b):\n    return a + b\n"
        assert not (git_repo / ".git" / "MERGE_HEAD").exists()

    @pytest.mark.asyncio
    async def test_no_progress_opens_breaker(self, git_repo, tmp_path):
        print("\n=== Test: No Progress Halts ===")
        write_feature(git_repo, [task_block("T001")])
        provider = ScriptedProvider(handler=lambda prompt, workdir: "Nothing to do, this is already implemented.")
        executor = ParallelExecutor(str(git_repo), provider, config=make_config(tmp_path))

        results = await executor.execute()

        assert len(results) == 3
        assert all(r.status == TaskStatus.NOT_STARTED for r in results)
        assert executor.halt_reason and "No progress" in executor.halt_reason
        assert CircuitBreaker(str(git_repo)).get_state().state == CircuitState.OPEN

        # An open circuit refuses to start another run
        again = ParallelExecutor(str(git_repo), provider, config=make_config(tmp_path))
        assert await again.execute() == []
        assert again.halt_reason
        print("[PASS]")

    @pytest.mark.asyncio
    async def test_resource_limit_halts_before_next_call(self, git_repo, tmp_path):
        write_feature(git_repo, [task_block("T001"), task_block("T002")])
        config = make_config(tmp_path, max_workers=1)
        config.loop.max_calls_per_hour = 1
        provider = ScriptedProvider(handler=file_per_task)
        executor = ParallelExecutor(str(git_repo), provider, config=config)

        results = await executor.execute()

        assert provider.call_count == 1
        assert results[0].success
        assert results[1].status == TaskStatus.NOT_STARTED
        assert "Hourly resource limit" in executor.halt_reason
        assert statuses(git_repo)["T002"] == TaskStatus.NOT_STARTED

    @pytest.mark.asyncio
    async def test_cancel_pauses_running_tasks(self, git_repo, tmp_path):
        print("\n=== Test: Cancel ===")
        write_feature(git_repo, [task_block("T001")])
        provider = ScriptedProvider(handler=file_per_task, delay=60)
        executor = ParallelExecutor(str(git_repo), provider, config=make_config(tmp_path))

        run = asyncio.create_task(executor.execute())
        for _ in range(200):
            if executor.running_agents:
                break
            await asyncio.sleep(0.05)
        assert executor.get_status()['active_agent_count'] == 1

        await executor.cancel()
        results = await asyncio.wait_for(run, timeout=10)

        assert results[0].status == TaskStatus.PAUSED
        assert (tmp_path / "worktrees" / "hermes-T001").is_dir()
        assert statuses(git_repo)["T001"] == TaskStatus.PAUSED
        print("[PASS] Task paused, worktree kept")

    @pytest.mark.asyncio
    async def test_fail_fast_stops_after_failed_batch(self, git_repo, tmp_path):
        write_feature(git_repo, [
            task_block("T001", priority="P1"),
            task_block("T002", priority="P2"),
        ])

        def agent(prompt, workdir):
            if "## Current Task: T001" in prompt:
                return CRASH
            return file_per_task(prompt, workdir)

        config = make_config(tmp_path, max_workers=1, failure_strategy="fail-fast")
        executor = ParallelExecutor(str(git_repo), ScriptedProvider(handler=agent), config=config)

        results = await executor.execute()

        assert [r.task_id for r in results] == ["T001"]
        assert statuses(git_repo)["T002"] == TaskStatus.NOT_STARTED


@pytest.mark.asyncio
async def test_interrupted_tasks_are_rescheduled(git_repo, tmp_path):
    write_feature(git_repo, [task_block("T001", status="IN_PROGRESS")])
    executor = ParallelExecutor(str(git_repo), ScriptedProvider(handler=file_per_task), config=make_config(tmp_path))

    results = await executor.execute()

    assert results[0].success
    assert statuses(git_repo)["T001"] == TaskStatus.COMPLETED


@pytest.mark.asyncio
async def test_merged_progress_completes_without_exit_signal(git_repo, tmp_path):
    write_feature(git_repo, [task_block("T001")])

    def partial(prompt, workdir):
        Path(workdir, "t001.txt").write_text("T001\n")
        return ("Created t001.txt with the first part of the parser and updated the module wiring. "
                "The remaining parts will follow in a later pass.")

    executor = ParallelExecutor(str(git_repo), ScriptedProvider(handler=partial), config=make_config(tmp_path))

    results = await executor.execute()

    assert results[0].analysis.has_progress
    assert not results[0].analysis.is_complete
    assert results[0].status == TaskStatus.COMPLETED
    assert (git_repo / "t001.txt").exists()


@pytest.mark.asyncio
async def test_cyclic_tasks_raise_graph_error(git_repo, tmp_path):
    write_feature(git_repo, [task_block("T001", deps=["T002"]), task_block("T002", deps=["T001"])])
    executor = ParallelExecutor(str(git_repo), ScriptedProvider(), config=make_config(tmp_path))

    with pytest.raises(GraphError):
        await executor.execute()


@pytest.mark.asyncio
async def test_shared_workspace_mode(git_repo, tmp_path):
    write_feature(git_repo, [task_block("T001")])
    config = make_config(tmp_path, isolated_workspaces=False)
    executor = ParallelExecutor(str(git_repo), ScriptedProvider(handler=file_per_task), config=config)

    results = await executor.execute()

    assert results[0].success
    assert not results[0].merged
    assert (git_repo / "t001.txt").exists()
    assert "batch 1" in git(git_repo, "log", "-1", "--format=%s")


def test_plan_uses_task_files(git_repo, tmp_path):
    write_feature(git_repo, [task_block("T001"), task_block("T002", deps=["T001"])])
    executor = ParallelExecutor(str(git_repo), ScriptedProvider(), config=make_config(tmp_path))

    plan = executor.plan()

    assert [b.task_ids for b in plan.batches] == [["T001"], ["T002"]]
