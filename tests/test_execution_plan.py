"""
Test ExecutionPlanBuilder
"""

import json
import sys
sys.path.insert(0, '.')

from hermes.execution_plan import ExecutionPlanBuilder
from hermes.tasks.models import Task, TaskStatus


def make_task(task_id, deps=None, files=None, status=TaskStatus.NOT_STARTED):
    return Task(id=task_id, name=f"Task {task_id}", dependencies=list(deps or []),
                files_to_touch=list(files or []), status=status)


def test_build_plan_batches():
    """Test batches, batch dependencies and worktree assignments"""
    print("\n=== Test: Build Plan ===")

    tasks = [
        make_task("T001"),
        make_task("T002"),
        make_task("T003", deps=["T001"]),
        make_task("T004", deps=["T003", "T002"]),
        make_task("T000", status=TaskStatus.COMPLETED),
    ]
    plan = ExecutionPlanBuilder(max_workers=3).build_plan(tasks)

    assert [b.task_ids for b in plan.batches] == [["T001", "T002"], ["T003"], ["T004"]]
    assert [b.can_parallel for b in plan.batches] == [True, False, False]
    assert plan.batches[1].depends_on == [1]
    assert plan.batches[2].depends_on == [1, 2]
    assert plan.total_tasks == 4
    assert plan.parallel_batches == 1
    assert plan.is_valid
    assert plan.worktree_assignments["T003"] == "hermes-T003 (hermes/T003)"
    assert "T000" not in plan.worktree_assignments

    print(plan.to_ascii())
    print("[PASS]")


def test_worker_cap_splits_batches():
    tasks = [make_task(f"T00{i}") for i in range(1, 6)]
    plan = ExecutionPlanBuilder(max_workers=2).build_plan(tasks)

    assert [len(b.task_ids) for b in plan.batches] == [2, 2, 1]
    assert plan.metadata["max_workers"] == 2


def test_same_file_conflicts_are_predicted():
    tasks = [
        make_task("T001", files=["src/app.py"]),
        make_task("T002", files=["src/app.py"]),
    ]
    plan = ExecutionPlanBuilder().build_plan(tasks)

    assert len(plan.predicted_conflicts) == 1
    conflict = plan.predicted_conflicts[0]
    assert conflict.conflict_type == "same_file"
    assert conflict.task_ids == ["T001", "T002"]
    assert conflict.predicted_files == ["src/app.py"]
    # The scheduler separates tasks that share a file
    assert not conflict.same_batch


def test_same_directory_conflicts_are_predicted():
    tasks = [
        make_task("T001", files=["src/a.py"]),
        make_task("T002", files=["src/b.py"]),
    ]
    plan = ExecutionPlanBuilder().build_plan(tasks)

    assert len(plan.predicted_conflicts) == 1
    conflict = plan.predicted_conflicts[0]
    assert conflict.conflict_type == "same_directory"
    assert conflict.predicted_files == ["src/*"]
    assert conflict.same_batch


def test_invalid_plan_reports_problems():
    tasks = [
        make_task("T001", deps=["T002"]),
        make_task("T002", deps=["T001"]),
        make_task("T003", deps=["T404"]),
        make_task("T004"),
    ]
    plan = ExecutionPlanBuilder().build_plan(tasks)

    assert not plan.is_valid
    assert [b.task_ids for b in plan.batches] == [["T004"]]
    assert plan.metadata["missing_deps"] == [["T003", "T404"]]
    text = plan.to_ascii()
    assert "Circular dependency" in text
    assert "depends on unknown task T404" in text


def test_to_dict_is_json_serializable():
    plan = ExecutionPlanBuilder().build_plan([make_task("T001"), make_task("T002", deps=["T001"])])

    data = json.loads(json.dumps(plan.to_dict()))
    assert data["batches"][1]["depends_on"] == [1]
    assert data["worktree_assignments"]["T001"] == "hermes-T001 (hermes/T001)"
