"""
Conflict Resolver
=================

Resolves detected conflicts and merges a batch's task branches back into the
base branch.

Key Features:
- Strategy selection per conflict (auto-merge, AI-assisted, take-first,
  take-last, manual)
- Sequential --no-ff merges that restore the pre-merge HEAD on conflict
- AI-merged file bodies applied when git reports a conflict on those files
- Optional advisory semantic check after clean auto-merges
- A branch held back by an unresolved conflict is never merged by another
  conflict's auto-merge
"""

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Dict, List, Optional, Set, Tuple
import logging

from hermes.errors import GitCommandError, HermesError, MergeConflictError, SemanticConflictWarning
from hermes.parallel.ai_merger import AIMerger, MergeContext, TaskMergeInfo
from hermes.parallel.conflict_detector import Conflict, ConflictDetector, ConflictType, SEVERITY_HIGH
from hermes.parallel.git_runner import GitRunner
from hermes.parallel.workspace import BRANCH_PREFIX

logger = logging.getLogger(__name__)


class ResolutionStrategy(Enum):
    MANUAL = "MANUAL"
    AUTO_MERGE = "AUTO_MERGE"
    TAKE_FIRST = "TAKE_FIRST"
    TAKE_LAST = "TAKE_LAST"
    AI_ASSISTED = "AI_ASSISTED"

    @classmethod
    def from_config(cls, value: str) -> "ResolutionStrategy":
        """Map a ``parallel.conflict_resolution`` value ("take-first", ...)."""
        return cls(value.strip().upper().replace("-", "_"))


@dataclass
class ResolutionResult:
    """
    Outcome of resolving one conflict.

    Attributes:
        success: The conflict is resolved
        strategy: Strategy used
        conflict: The conflict being resolved
        description: Human-readable outcome
        error: Failure description
        merged_branches: Branches merged into base while resolving
        merged_code: AI-merged file body (AI_ASSISTED only)
        confidence: AI merge confidence (AI_ASSISTED only)
        warnings: Advisory semantic conflict findings
    """
    success: bool
    strategy: ResolutionStrategy
    conflict: Optional[Conflict] = None
    description: str = ""
    error: Optional[str] = None
    merged_branches: List[str] = field(default_factory=list)
    merged_code: str = ""
    confidence: float = 0.0
    warnings: List[SemanticConflictWarning] = field(default_factory=list)


@dataclass
class BranchMergeResult:
    """
    Outcome of merging one task branch.

    Attributes:
        branch: Branch name
        success: Branch is merged into base
        already_merged: Branch was already contained in base
        resolved_files: Files completed from AI-merged bodies
        error: MergeConflictError or GitCommandError on failure
    """
    branch: str
    success: bool
    already_merged: bool = False
    resolved_files: List[str] = field(default_factory=list)
    error: Optional[HermesError] = None


def task_branch(task_id: str) -> str:
    return f"{BRANCH_PREFIX}{task_id}"


class ConflictResolver:
    """
    Applies resolution strategies in the shared repository.

    All git operations run in ``base_path`` with ``base_branch`` checked out.
    """

    def __init__(
        self,
        base_path: str,
        base_branch: str,
        git: Optional[GitRunner] = None,
        ai_merger: Optional[AIMerger] = None,
        detector: Optional[ConflictDetector] = None,
        strategy: str = "ai-assisted",
        semantic_check: bool = False
    ):
        """
        Initialize conflict resolver.

        Args:
            base_path: Shared repository path
            base_branch: Branch task branches merge into
            git: Git runner (defaults to one rooted at base_path)
            ai_merger: AI merger for AI_ASSISTED resolution
            detector: Detector holding the per-task diffs and intents
            strategy: Preferred strategy for high severity conflicts
            semantic_check: Run semantic analysis after clean auto-merges
        """
        self.base_path = Path(base_path)
        self.base_branch = base_branch
        self.git = git or GitRunner(self.base_path)
        self.ai_merger = ai_merger
        self.detector = detector
        self.preferred = ResolutionStrategy.from_config(strategy)
        self.semantic_check = semantic_check
        self.merged_contents: Dict[str, str] = {}
        self.held_tasks: Set[str] = set()

    def choose_strategy(self, conflict: Conflict) -> ResolutionStrategy:
        if conflict.can_auto_resolve:
            return ResolutionStrategy.AUTO_MERGE
        if conflict.type == ConflictType.SAME_FUNCTION or conflict.severity >= SEVERITY_HIGH:
            if self.preferred == ResolutionStrategy.AI_ASSISTED and self.ai_merger is None:
                return ResolutionStrategy.MANUAL
            return self.preferred
        return ResolutionStrategy.MANUAL

    async def resolve(self, conflict: Conflict) -> ResolutionResult:
        """
        Resolve one conflict with the strategy chosen for it.

        Returns:
            ResolutionResult; failures never raise
        """
        strategy = self.choose_strategy(conflict)
        logger.info(f"Resolving conflict in {conflict.file} ({', '.join(conflict.tasks)}) with {strategy.value}")

        if strategy == ResolutionStrategy.AUTO_MERGE:
            result = await self._auto_merge(conflict)
        elif strategy in (ResolutionStrategy.TAKE_FIRST, ResolutionStrategy.TAKE_LAST):
            result = await self._take_side(conflict, strategy)
        elif strategy == ResolutionStrategy.AI_ASSISTED:
            result = await self._ai_assisted(conflict)
        else:
            result = ResolutionResult(
                success=False,
                strategy=ResolutionStrategy.MANUAL,
                conflict=conflict,
                description=f"Conflict in {conflict.file} requires manual resolution",
                error=conflict.description,
            )

        if not result.success:
            self.held_tasks.update(conflict.tasks[1:])
            logger.warning(f"Unresolved conflict in {conflict.file}: {result.error or result.description}")
        return result

    async def resolve_all(self, conflicts: List[Conflict]) -> List[ResolutionResult]:
        """
        Resolve every conflict.

        Conflicts without git side effects (manual, AI-assisted) are handled
        first so that held tasks are known before any branch is merged.

        Returns:
            Results in the same order as ``conflicts``
        """
        self.held_tasks = set()
        results: Dict[int, ResolutionResult] = {}
        merging = (ResolutionStrategy.AUTO_MERGE, ResolutionStrategy.TAKE_FIRST, ResolutionStrategy.TAKE_LAST)

        for index, conflict in enumerate(conflicts):
            if self.choose_strategy(conflict) not in merging:
                results[index] = await self.resolve(conflict)
        for index, conflict in enumerate(conflicts):
            if index not in results:
                results[index] = await self.resolve(conflict)

        return [results[i] for i in range(len(conflicts))]

    async def merge_branches_sequentially(self, branches: List[str]) -> List[BranchMergeResult]:
        """
        Merge branches into base one at a time, in the given order.

        A git conflict is completed from AI-merged bodies when every
        conflicting file has one; otherwise the merge is aborted and the
        branch is reported with a MergeConflictError.
        """
        results: List[BranchMergeResult] = []
        await self._checkout_base()

        for branch in branches:
            if await self._is_merged(branch):
                logger.info(f"Branch {branch} already merged into {self.base_branch}")
                results.append(BranchMergeResult(branch=branch, success=True, already_merged=True))
                continue

            try:
                await self.git.run(['merge', '--no-ff', '-m', f"Merge {branch}", branch], timeout=120)
                logger.info(f"Merged {branch} into {self.base_branch}")
                results.append(BranchMergeResult(branch=branch, success=True))
                continue
            except GitCommandError as e:
                merge_error = e

            files = await self.get_conflicting_files()
            if await self._complete_from_merged_contents(branch, files):
                results.append(BranchMergeResult(branch=branch, success=True, resolved_files=files))
                continue

            await self._abort_quietly()
            if files:
                error: HermesError = MergeConflictError(branch, files)
            else:
                error = merge_error
            logger.error(f"Merge of {branch} failed: {error}")
            results.append(BranchMergeResult(branch=branch, success=False, error=error))

        return results

    async def abort_merge(self) -> None:
        await self.git.run(['merge', '--abort'], timeout=30)

    async def get_conflicting_files(self) -> List[str]:
        output = await self.git.run(['diff', '--name-only', '--diff-filter=U'])
        return [line for line in output.splitlines() if line.strip()]

    async def mark_resolved(self, path: str) -> None:
        await self.git.run(['add', path], timeout=30)

    def format_summary(self, results: List[ResolutionResult]) -> str:
        successful = sum(1 for r in results if r.success)
        rule = "=" * 40
        lines = [
            "Resolution Summary",
            rule,
            f"Successful: {successful}",
            f"Failed: {len(results) - successful}",
        ]
        for i, result in enumerate(results, start=1):
            marker = "OK" if result.success else "FAILED"
            lines.append(f"{i}. [{marker}] {result.strategy.value}")
            lines.append(f"   {result.description}")
            if result.error:
                lines.append(f"   Error: {result.error}")
            for warning in result.warnings:
                lines.append(f"   Warning: {warning}")
        lines.append(rule)
        return "\n".join(lines)

    async def _auto_merge(self, conflict: Conflict) -> ResolutionResult:
        branches = [task_branch(t) for t in conflict.tasks if t not in self.held_tasks]
        merged, error = await self._merge_sequence(branches, ResolutionStrategy.AUTO_MERGE)
        if error is not None:
            return ResolutionResult(
                success=False,
                strategy=ResolutionStrategy.AUTO_MERGE,
                conflict=conflict,
                description=f"Auto-merge of {conflict.file} failed",
                error=str(error),
            )

        result = ResolutionResult(
            success=True,
            strategy=ResolutionStrategy.AUTO_MERGE,
            conflict=conflict,
            description=f"Auto-merged changes from tasks {', '.join(conflict.tasks)} to {conflict.file}",
            merged_branches=merged,
        )
        if self.semantic_check and self.ai_merger is not None:
            result.warnings = await self._semantic_warnings(conflict)
        return result

    async def _take_side(self, conflict: Conflict, strategy: ResolutionStrategy) -> ResolutionResult:
        tasks = [t for t in conflict.tasks if t not in self.held_tasks]
        if not tasks:
            return ResolutionResult(
                success=False,
                strategy=strategy,
                conflict=conflict,
                error="no tasks in conflict",
            )

        merged, error = await self._merge_sequence([task_branch(t) for t in tasks], strategy)
        if error is not None:
            return ResolutionResult(
                success=False,
                strategy=strategy,
                conflict=conflict,
                description=f"{strategy.value} merge of {conflict.file} failed",
                error=str(error),
            )

        kept = tasks[0] if strategy == ResolutionStrategy.TAKE_FIRST else tasks[-1]
        return ResolutionResult(
            success=True,
            strategy=strategy,
            conflict=conflict,
            description=f"Kept changes from task {kept} in {conflict.file}, discarded conflicting changes",
            merged_branches=merged,
        )

    async def _ai_assisted(self, conflict: Conflict) -> ResolutionResult:
        changes = self._merge_infos(conflict)
        if len(changes) < 2 or self.ai_merger is None:
            return ResolutionResult(
                success=False,
                strategy=ResolutionStrategy.MANUAL,
                conflict=conflict,
                description=f"Conflict in {conflict.file} requires manual resolution",
                error="AI merge unavailable for this conflict",
            )

        original = await self.git.show_file(self.base_branch, conflict.file) or ""
        if len(changes) == 2:
            first, second = changes
            merge = await self.ai_merger.resolve_conflict(MergeContext(
                file=conflict.file,
                original_code=original,
                task1_id=first.task_id,
                task1_changes=first.diff,
                task1_intent=first.intent,
                task2_id=second.task_id,
                task2_changes=second.diff,
                task2_intent=second.intent,
            ))
        else:
            merge = await self.ai_merger.merge_multiple_changes(conflict.file, original, changes)

        reason = merge.error or "AI merge failed"
        valid = False
        if merge.success:
            valid, reason = self.ai_merger.validate_merge(conflict.file, merge.merged_code)

        if not valid:
            return ResolutionResult(
                success=False,
                strategy=ResolutionStrategy.MANUAL,
                conflict=conflict,
                description=f"AI merge of {conflict.file} rejected, manual resolution required",
                error=reason,
                confidence=merge.confidence,
            )

        self.merged_contents[conflict.file] = merge.merged_code
        return ResolutionResult(
            success=True,
            strategy=ResolutionStrategy.AI_ASSISTED,
            conflict=conflict,
            description=f"AI merged {conflict.file}: {merge.explanation}",
            merged_code=merge.merged_code,
            confidence=merge.confidence,
        )

    async def _semantic_warnings(self, conflict: Conflict) -> List[SemanticConflictWarning]:
        changes = self._merge_infos(conflict)
        if len(changes) < 2:
            return []
        try:
            analysis = await self.ai_merger.analyze_semantic_conflict(conflict.file, changes)
        except (ValueError, RuntimeError) as e:
            logger.warning(f"Semantic check for {conflict.file} skipped: {e}")
            return []
        if not analysis.has_conflict:
            return []
        warning = SemanticConflictWarning(
            file=conflict.file,
            tasks=conflict.tasks,
            severity=analysis.severity,
            description=analysis.description,
            suggestion=analysis.suggestion,
        )
        logger.warning(str(warning))
        return [warning]

    def _merge_infos(self, conflict: Conflict) -> List[TaskMergeInfo]:
        infos = []
        if self.detector is None:
            return infos
        for task_id in conflict.tasks:
            change = self.detector.get_task_change(task_id, conflict.file)
            if change is not None:
                infos.append(TaskMergeInfo(task_id=task_id, diff=change.diff, intent=change.intent))
        return infos

    async def _merge_sequence(
        self,
        branches: List[str],
        strategy: ResolutionStrategy
    ) -> Tuple[List[str], Optional[HermesError]]:
        """
        Merge branches in order; on failure restore the starting HEAD.

        Returns:
            (merged branches, first error)
        """
        start = await self.git.head()
        await self._checkout_base()
        merged: List[str] = []

        for index, branch in enumerate(branches):
            if await self._is_merged(branch):
                merged.append(branch)
                continue
            args = ['merge', '--no-ff', '-m', f"Merge {branch}"]
            if index > 0 and strategy == ResolutionStrategy.TAKE_FIRST:
                args += ['-X', 'ours']
            elif index > 0 and strategy == ResolutionStrategy.TAKE_LAST:
                args += ['-X', 'theirs']
            args.append(branch)

            try:
                await self.git.run(args, timeout=120)
                merged.append(branch)
            except GitCommandError as e:
                files = await self.get_conflicting_files()
                if await self._complete_from_merged_contents(branch, files):
                    merged.append(branch)
                    continue
                await self._abort_quietly()
                await self.git.run(['reset', '--merge', start], timeout=60)
                logger.warning(f"Merge sequence aborted at {branch}, restored {start[:8]}")
                if files:
                    return [], MergeConflictError(branch, files)
                return [], e

        return merged, None

    async def _complete_from_merged_contents(self, branch: str, files: List[str]) -> bool:
        """
        Finish an in-progress conflicted merge from validated AI-merged bodies.

        Returns:
            True if every conflicting file had a body and the merge was committed
        """
        if not files or not all(f in self.merged_contents for f in files):
            return False
        try:
            for path in files:
                (self.base_path / path).write_text(self.merged_contents[path] + "\n", encoding="utf-8")
                await self.mark_resolved(path)
            await self.git.run(['commit', '--no-edit'], timeout=60)
        except (GitCommandError, OSError) as e:
            logger.error(f"Failed to apply AI-merged content for {branch}: {e}")
            return False
        logger.info(f"Merged {branch} using AI-merged content for {', '.join(files)}")
        return True

    async def _checkout_base(self) -> None:
        current = await self.git.current_branch()
        if current != self.base_branch:
            await self.git.run(['checkout', self.base_branch], timeout=30)

    async def _is_merged(self, branch: str) -> bool:
        try:
            await self.git.run(['merge-base', '--is-ancestor', branch, 'HEAD'])
            return True
        except GitCommandError:
            return False

    async def _abort_quietly(self) -> None:
        try:
            await self.abort_merge()
        except GitCommandError as e:
            logger.debug(f"No merge to abort: {e}")
