"""
Shared fixtures: a real temporary git repository and task file helpers.
"""

import subprocess
from pathlib import Path

import pytest


def git(repo: Path, *args: str) -> str:
    result = subprocess.run(
        ["git", *args], cwd=repo, capture_output=True, text=True, check=True
    )
    return result.stdout.strip()


def commit_file(repo: Path, path: str, content: str, message: str) -> None:
    target = repo / path
    target.parent.mkdir(parents=True, exist_ok=True)
    target.write_text(content)
    git(repo, "add", path)
    git(repo, "commit", "-m", message)


def make_branch(repo: Path, branch: str, path: str, content: str, base: str = "main") -> None:
    """Commit ``content`` to ``path`` on a new branch, then return to ``base``."""
    git(repo, "checkout", "-q", "-b", branch, base)
    commit_file(repo, path, content, f"{branch}: edit {path}")
    git(repo, "checkout", "-q", base)


@pytest.fixture
def git_repo(tmp_path):
    """Create a temporary git repo on ``main`` with an initial commit."""
    repo = tmp_path / "repo"
    repo.mkdir()
    git(repo, "init")
    git(repo, "checkout", "-b", "main")
    git(repo, "config", "user.name", "Test")
    git(repo, "config", "user.email", "test@example.com")
    git(repo, "config", "commit.gpgsign", "false")
    (repo / "README.md").write_text("# Test\n")
    (repo / ".gitignore").write_text(".hermes/\n")
    git(repo, "add", ".")
    git(repo, "commit", "-m", "init")
    return repo


FEATURE_TEMPLATE = """# Feature 1: Core
**Feature ID:** F001
**Status:** NOT_STARTED
**Priority:** P1
**Target Version:** v0.1.0

{tasks}
"""

TASK_TEMPLATE = """### {id}: {name}
**Status:** {status}
**Priority:** {priority}
**Files to Touch:** {files}
**Dependencies:** {deps}
**Parallelizable:** {parallel}
**Success Criteria:**
- {name} works
"""


def task_block(task_id, name=None, status="NOT_STARTED", priority="P2",
               files=None, deps=None, parallel=True):
    return TASK_TEMPLATE.format(
        id=task_id,
        name=name or f"Task {task_id}",
        status=status,
        priority=priority,
        files=", ".join(files) if files else "None",
        deps=", ".join(deps) if deps else "None",
        parallel="true" if parallel else "false",
    )


def write_feature(project: Path, blocks, filename="001-core.md") -> Path:
    tasks_dir = project / ".hermes" / "tasks"
    tasks_dir.mkdir(parents=True, exist_ok=True)
    path = tasks_dir / filename
    path.write_text(FEATURE_TEMPLATE.format(tasks="\n".join(blocks)))
    return path
