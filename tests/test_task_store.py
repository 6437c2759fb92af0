"""
Test TaskStore parsing and status persistence
"""

import sys
sys.path.insert(0, '.')

import pytest

from conftest import task_block, write_feature
from hermes.tasks.models import Priority, TaskStatus
from hermes.tasks.store import TaskStore, parse_feature


FEATURE_DOC = """# Feature 2: Authentication
**Feature ID:** F002
**Priority:** P1
**Target Version:** v0.2.0

Login and session handling.

### T010: Add login endpoint
**Status:** IN_PROGRESS
**Priority:** P1
**Files to Touch:** `src/auth.py`, src/routes.py
**Dependencies:** None
**Success Criteria:**
- POST /login returns a token
- Bad passwords are rejected

### T011: Add logout endpoint
**Status:** NOT_STARTED
**Priority:** P3
**Dependencies:** T010
**Parallelizable:** false
**Exclusive Files:**
- src/session.py
"""


def test_parse_feature_fields():
    """Test feature and task fields are parsed"""
    print("\n=== Test: Parse Feature ===")

    feature = parse_feature(FEATURE_DOC, ".hermes/tasks/F002-auth.md")

    assert feature.id == "F002"
    assert feature.name == "Authentication"
    assert feature.priority == Priority.P1
    assert feature.target_version == "v0.2.0"
    assert [t.id for t in feature.tasks] == ["T010", "T011"]

    login, logout = feature.tasks
    assert login.status == TaskStatus.IN_PROGRESS
    assert login.files_to_touch == ["src/auth.py", "src/routes.py"]
    assert login.dependencies == []
    assert login.success_criteria == ["POST /login returns a token", "Bad passwords are rejected"]
    assert login.feature_id == "F002"

    assert logout.priority == Priority.P3
    assert logout.dependencies == ["T010"]
    assert logout.parallelizable is False
    assert logout.exclusive_files == ["src/session.py"]

    print(f"[PASS] Parsed {len(feature.tasks)} tasks")


def test_parse_feature_id_from_filename():
    feature = parse_feature("# Feature 3: Billing\n\n### T020: Charge card\n**Status:** NOT_STARTED\n",
                            "/tmp/003-billing.md")

    assert feature.id == "003"
    assert feature.tasks[0].feature_id == "003"


def test_invalid_status_defaults_to_not_started():
    feature = parse_feature("# Feature\n\n### T001: Something\n**Status:** WHATEVER\n", "001-x.md")

    assert feature.tasks[0].status == TaskStatus.NOT_STARTED


def test_feature_status_is_derived():
    feature = parse_feature(FEATURE_DOC, "F002-auth.md")
    assert feature.status == TaskStatus.IN_PROGRESS

    for task in feature.tasks:
        task.status = TaskStatus.COMPLETED
    assert feature.status == TaskStatus.COMPLETED
    assert feature.is_complete


class TestTaskStore:
    """Tests against feature files on disk"""

    def test_reads_feature_files_in_order(self, tmp_path):
        write_feature(tmp_path, [task_block("T002")], filename="002-second.md")
        write_feature(tmp_path, [task_block("T001")], filename="001-first.md")
        (tmp_path / ".hermes" / "tasks" / "notes.md").write_text("### T999: Ignored\n")

        store = TaskStore(str(tmp_path))

        assert store.has_tasks()
        assert [t.id for t in store.get_all_tasks()] == ["T001", "T002"]
        assert store.get_task_by_id("T999") is None

    def test_no_tasks_directory(self, tmp_path):
        store = TaskStore(str(tmp_path))

        assert not store.has_tasks()
        assert store.get_all_tasks() == []
        assert store.get_next_task() is None

    def test_update_task_status_rewrites_only_that_task(self, tmp_path):
        """Test a status change is persisted to the owning task only"""
        print("\n=== Test: Update Task Status ===")

        path = write_feature(tmp_path, [task_block("T001"), task_block("T002")])
        store = TaskStore(str(tmp_path))

        store.update_task_status("T002", TaskStatus.COMPLETED)

        assert store.get_task_by_id("T002").status == TaskStatus.COMPLETED
        assert store.get_task_by_id("T001").status == TaskStatus.NOT_STARTED
        content = path.read_text()
        assert content.count("**Status:** COMPLETED") == 1
        assert content.count("**Status:** NOT_STARTED") == 2  # feature header + T001
        assert not path.with_suffix(".md.tmp").exists()

        print("[PASS] Status persisted")

    def test_update_unknown_task_raises(self, tmp_path):
        write_feature(tmp_path, [task_block("T001")])
        store = TaskStore(str(tmp_path))

        with pytest.raises(KeyError):
            store.update_task_status("T404", TaskStatus.COMPLETED)

    def test_update_inserts_missing_status_line(self, tmp_path):
        tasks_dir = tmp_path / ".hermes" / "tasks"
        tasks_dir.mkdir(parents=True)
        (tasks_dir / "001-core.md").write_text("# Feature 1: Core\n\n### T001: No status\n**Priority:** P1\n")
        store = TaskStore(str(tmp_path))

        store.update_task_status("T001", TaskStatus.BLOCKED)

        assert store.get_task_by_id("T001").status == TaskStatus.BLOCKED

    def test_next_task_respects_dependencies_and_priority(self, tmp_path):
        write_feature(tmp_path, [
            task_block("T001", priority="P2"),
            task_block("T002", priority="P1", deps=["T001"]),
            task_block("T003", priority="P3"),
        ])
        store = TaskStore(str(tmp_path))

        assert store.get_next_task().id == "T001"
        store.update_task_status("T001", TaskStatus.COMPLETED)
        assert store.get_next_task().id == "T002"

    def test_progress_and_feature_completion(self, tmp_path):
        write_feature(tmp_path, [
            task_block("T001", status="COMPLETED"),
            task_block("T002", status="BLOCKED"),
            task_block("T003"),
            task_block("T004", status="IN_PROGRESS"),
        ])
        store = TaskStore(str(tmp_path))

        progress = store.get_progress()
        assert (progress.total, progress.completed, progress.blocked) == (4, 1, 1)
        assert (progress.not_started, progress.in_progress) == (1, 1)
        assert progress.percentage == 25.0
        assert progress.format_bar(4) == "[#---] 25.0%"
        assert not store.is_feature_complete("F001")

        store.update_statuses({tid: TaskStatus.COMPLETED for tid in ("T002", "T003", "T004")})
        assert store.is_feature_complete("F001")
        assert [t.id for t in store.get_tasks_by_status(TaskStatus.COMPLETED)] == ["T001", "T002", "T003", "T004"]
