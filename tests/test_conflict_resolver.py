"""
Test ConflictResolver strategies and sequential merges against real branches
"""

import sys
sys.path.insert(0, '.')

import pytest

from conftest import commit_file, git, make_branch
from hermes.ai.scripted import ScriptedProvider
from hermes.errors import MergeConflictError
from hermes.parallel.ai_merger import AIMerger
from hermes.parallel.conflict_detector import Conflict, ConflictDetector, ConflictType, split_diff_by_file
from hermes.parallel.conflict_resolver import ConflictResolver, ResolutionStrategy, task_branch

GREET = "def greet(name):\n    return 'hi ' + name\n"
GREET_T001 = "def greet(name, greeting='hi'):\n    return greeting + ' ' + name\n"
GREET_T002 = "def greet(name, punct='!'):\n    return 'hi ' + name + punct\n"
MERGED = "def greet(name, greeting='hi', punct='!'):\n    return greeting + ' ' + name + punct"

NUMBERS = "".join(f"line {i}\n" for i in range(1, 11))


def detector_for(repo, task_ids, intents=None):
    """Build a detector from the real branch diffs against main."""
    detector = ConflictDetector()
    for task_id in task_ids:
        branch = task_branch(task_id)
        files = git(repo, "diff", "--name-only", f"main...{branch}").splitlines()
        diff = git(repo, "diff", f"main...{branch}") + "\n"
        detector.add_task_changes(task_id, files, split_diff_by_file(diff), intent=(intents or {}).get(task_id, ""))
    return detector


def is_merging(repo):
    return (repo / ".git" / "MERGE_HEAD").exists()


@pytest.fixture
def greet_repo(git_repo):
    commit_file(git_repo, "app.py", GREET, "add greet")
    make_branch(git_repo, "hermes/T001", "app.py", GREET_T001)
    make_branch(git_repo, "hermes/T002", "app.py", GREET_T002)
    return git_repo


class TestSequentialMerge:

    @pytest.mark.asyncio
    async def test_disjoint_branches_merge(self, git_repo):
        print("\n=== Test: Sequential Merge ===")
        make_branch(git_repo, "hermes/T001", "a.txt", "a\n")
        make_branch(git_repo, "hermes/T002", "b.txt", "b\n")
        resolver = ConflictResolver(str(git_repo), "main")

        results = await resolver.merge_branches_sequentially(["hermes/T001", "hermes/T002"])

        assert [r.success for r in results] == [True, True]
        assert (git_repo / "a.txt").exists() and (git_repo / "b.txt").exists()
        assert "Merge hermes/T002" in git(git_repo, "log", "-1", "--format=%s")

        again = await resolver.merge_branches_sequentially(["hermes/T001"])
        assert again[0].already_merged
        print("[PASS]")

    @pytest.mark.asyncio
    async def test_conflicting_branch_is_aborted(self, greet_repo):
        """Test a real conflict leaves the base branch clean"""
        print("\n=== Test: Merge Conflict ===")
        resolver = ConflictResolver(str(greet_repo), "main")

        results = await resolver.merge_branches_sequentially(["hermes/T001", "hermes/T002"])

        assert results[0].success
        assert not results[1].success
        assert isinstance(results[1].error, MergeConflictError)
        assert results[1].error.files == ["app.py"]
        assert not is_merging(greet_repo)
        assert (greet_repo / "app.py").read_text() == GREET_T001
        assert git(greet_repo, "status", "--porcelain") == ""
        print(f"[PASS] {results[1].error}")

    @pytest.mark.asyncio
    async def test_switches_back_to_base_branch(self, git_repo):
        make_branch(git_repo, "hermes/T001", "a.txt", "a\n")
        git(git_repo, "checkout", "-q", "-b", "scratch")
        resolver = ConflictResolver(str(git_repo), "main")

        await resolver.merge_branches_sequentially(["hermes/T001"])

        assert git(git_repo, "rev-parse", "--abbrev-ref", "HEAD") == "main"


class TestStrategies:

    @pytest.mark.asyncio
    async def test_ai_assisted_merge_completes_git_conflict(self, greet_repo):
        print("\n=== Test: AI-Assisted Merge ===")
        detector = detector_for(greet_repo, ["T001", "T002"], {"T001": "Add greeting", "T002": "Add punctuation"})
        conflicts = detector.analyze()
        assert conflicts[0].type == ConflictType.SAME_FUNCTION

        reply = f"MERGED_CODE_START\n{MERGED}\nMERGED_CODE_END\nEXPLANATION:\nBoth parameters kept.\nCONFIDENCE: 0.9\n"
        provider = ScriptedProvider([reply])
        resolver = ConflictResolver(
            str(greet_repo), "main",
            ai_merger=AIMerger(provider, workdir=str(greet_repo)),
            detector=detector,
        )

        resolutions = await resolver.resolve_all(conflicts)
        assert resolutions[0].success
        assert resolutions[0].strategy == ResolutionStrategy.AI_ASSISTED
        assert resolutions[0].confidence == 0.9
        assert resolver.held_tasks == set()
        assert "Intent: Add punctuation" in provider.calls[0][0]
        assert "## Original Code\n" + GREET in provider.calls[0][0]

        merges = await resolver.merge_branches_sequentially(["hermes/T001", "hermes/T002"])

        assert [m.success for m in merges] == [True, True]
        assert merges[1].resolved_files == ["app.py"]
        assert (greet_repo / "app.py").read_text() == MERGED + "\n"
        assert not is_merging(greet_repo)
        print("[PASS]")

    @pytest.mark.asyncio
    async def test_ai_merge_with_conflict_markers_is_rejected(self, greet_repo):
        detector = detector_for(greet_repo, ["T001", "T002"])
        conflicts = detector.analyze()
        bad = "MERGED_CODE_START\n<<<<<<< HEAD\nx\n=======\ny\n>>>>>>> other\nMERGED_CODE_END\n"
        resolver = ConflictResolver(
            str(greet_repo), "main",
            ai_merger=AIMerger(ScriptedProvider([bad])),
            detector=detector,
        )

        result = await resolver.resolve(conflicts[0])

        assert not result.success
        assert result.strategy == ResolutionStrategy.MANUAL
        assert "conflict markers" in result.error
        assert resolver.held_tasks == {"T002"}
        assert "app.py" not in resolver.merged_contents

    @pytest.mark.asyncio
    async def test_ai_assisted_without_merger_falls_back_to_manual(self, greet_repo):
        detector = detector_for(greet_repo, ["T001", "T002"])
        conflict = detector.analyze()[0]
        resolver = ConflictResolver(str(greet_repo), "main", detector=detector)

        assert resolver.choose_strategy(conflict) == ResolutionStrategy.MANUAL
        result = await resolver.resolve(conflict)

        assert not result.success
        assert resolver.held_tasks == {"T002"}

    @pytest.mark.asyncio
    async def test_take_first(self, greet_repo):
        detector = detector_for(greet_repo, ["T001", "T002"])
        conflict = detector.analyze()[0]
        resolver = ConflictResolver(str(greet_repo), "main", detector=detector, strategy="take-first")

        result = await resolver.resolve(conflict)

        assert result.success
        assert result.strategy == ResolutionStrategy.TAKE_FIRST
        assert result.merged_branches == ["hermes/T001", "hermes/T002"]
        assert (greet_repo / "app.py").read_text() == GREET_T001

    @pytest.mark.asyncio
    async def test_take_last(self, greet_repo):
        detector = detector_for(greet_repo, ["T001", "T002"])
        conflict = detector.analyze()[0]
        resolver = ConflictResolver(str(greet_repo), "main", detector=detector, strategy="take-last")

        result = await resolver.resolve(conflict)

        assert result.success
        assert (greet_repo / "app.py").read_text() == GREET_T002

    @pytest.mark.asyncio
    async def test_auto_merge_disjoint_edits(self, git_repo):
        """Test low severity conflicts are merged by git directly"""
        print("\n=== Test: Auto Merge ===")
        commit_file(git_repo, "numbers.txt", NUMBERS, "add numbers")
        make_branch(git_repo, "hermes/T001", "numbers.txt", NUMBERS.replace("line 1\n", "line one\n"))
        make_branch(git_repo, "hermes/T002", "numbers.txt", NUMBERS.replace("line 10\n", "line ten\n"))
        detector = detector_for(git_repo, ["T001", "T002"])
        conflict = detector.analyze()[0]
        assert conflict.can_auto_resolve

        resolver = ConflictResolver(str(git_repo), "main", detector=detector)
        result = await resolver.resolve(conflict)

        assert result.success
        assert result.strategy == ResolutionStrategy.AUTO_MERGE
        content = (git_repo / "numbers.txt").read_text()
        assert "line one\n" in content and "line ten\n" in content
        print("[PASS]")

    @pytest.mark.asyncio
    async def test_auto_merge_uses_ai_body_for_other_file(self, greet_repo):
        """Test an auto-merge completes a git conflict in a file the AI already merged"""
        print("\n=== Test: Auto Merge With AI Body ===")
        commit_file(greet_repo, "notes.txt", NUMBERS, "add notes")
        for task_id, old, new in (("T001", "line 1\n", "line one\n"), ("T002", "line 10\n", "line ten\n")):
            git(greet_repo, "checkout", "-q", f"hermes/{task_id}")
            git(greet_repo, "merge", "-q", "-m", "sync main", "main")
            commit_file(greet_repo, "notes.txt", NUMBERS.replace(old, new), f"{task_id}: edit notes")
            git(greet_repo, "checkout", "-q", "main")

        detector = detector_for(greet_repo, ["T001", "T002"])
        conflicts = detector.analyze()
        by_file = {c.file: c for c in conflicts}
        assert by_file["app.py"].type == ConflictType.SAME_FUNCTION
        assert by_file["notes.txt"].can_auto_resolve

        reply = f"MERGED_CODE_START\n{MERGED}\nMERGED_CODE_END\nEXPLANATION:\nBoth parameters kept.\nCONFIDENCE: 0.9\n"
        resolver = ConflictResolver(
            str(greet_repo), "main",
            ai_merger=AIMerger(ScriptedProvider([reply])),
            detector=detector,
        )

        results = await resolver.resolve_all(conflicts)

        assert all(r.success for r in results), [(r.conflict.file, r.error) for r in results]
        assert resolver.held_tasks == set()
        assert (greet_repo / "app.py").read_text() == MERGED + "\n"
        notes = (greet_repo / "notes.txt").read_text()
        assert "line one\n" in notes and "line ten\n" in notes
        assert not is_merging(greet_repo)

        merges = await resolver.merge_branches_sequentially(["hermes/T001", "hermes/T002"])
        assert all(m.already_merged for m in merges)
        print("[PASS]")

    @pytest.mark.asyncio
    async def test_auto_merge_skips_held_tasks(self, git_repo):
        make_branch(git_repo, "hermes/T001", "a.txt", "a\n")
        make_branch(git_repo, "hermes/T002", "b.txt", "b\n")
        resolver = ConflictResolver(str(git_repo), "main")
        resolver.held_tasks = {"T002"}

        conflict = Conflict(file="a.txt", tasks=["T001", "T002"], type=ConflictType.SAME_FILE,
                            severity=1, can_auto_resolve=True)
        result = await resolver.resolve(conflict)

        assert result.merged_branches == ["hermes/T001"]
        assert not (git_repo / "b.txt").exists()

    @pytest.mark.asyncio
    async def test_failed_auto_merge_restores_head(self, greet_repo):
        start = git(greet_repo, "rev-parse", "HEAD")
        resolver = ConflictResolver(str(greet_repo), "main")
        conflict = Conflict(file="app.py", tasks=["T001", "T002"], type=ConflictType.SAME_FILE,
                            severity=1, can_auto_resolve=True)

        result = await resolver.resolve(conflict)

        assert not result.success
        assert git(greet_repo, "rev-parse", "HEAD") == start
        assert not is_merging(greet_repo)
        assert resolver.held_tasks == {"T002"}

    @pytest.mark.asyncio
    async def test_semantic_check_attaches_warning(self, git_repo):
        commit_file(git_repo, "numbers.txt", NUMBERS, "add numbers")
        make_branch(git_repo, "hermes/T001", "numbers.txt", NUMBERS.replace("line 1\n", "line one\n"))
        make_branch(git_repo, "hermes/T002", "numbers.txt", NUMBERS.replace("line 10\n", "line ten\n"))
        detector = detector_for(git_repo, ["T001", "T002"])
        reply = "HAS_CONFLICT: true\nSEVERITY: 1\nDESCRIPTION: Inconsistent spelling\nSUGGESTION: Pick one style"
        resolver = ConflictResolver(
            str(git_repo), "main",
            ai_merger=AIMerger(ScriptedProvider([reply])),
            detector=detector,
            semantic_check=True,
        )

        results = await resolver.resolve_all(detector.analyze())

        assert results[0].success
        assert len(results[0].warnings) == 1
        assert results[0].warnings[0].description == "Inconsistent spelling"
        assert "Warning:" in resolver.format_summary(results)


def test_strategy_from_config():
    assert ResolutionStrategy.from_config("ai-assisted") == ResolutionStrategy.AI_ASSISTED
    assert ResolutionStrategy.from_config("take-last") == ResolutionStrategy.TAKE_LAST
    assert ResolutionStrategy.from_config("manual") == ResolutionStrategy.MANUAL
