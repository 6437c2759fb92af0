"""
AI Merger
=========

Asks the coding agent to merge competing changes to one file and to flag
semantic conflicts between changes that merge cleanly.

Key Features:
- Pairwise merge prompt with the original file, both diffs and both intents
- Marker-based reply parsing (MERGED_CODE_START/END, EXPLANATION, CONFIDENCE)
- Left-to-right folding for three or more changes
- Validation rejecting conflict markers and empty output
- Advisory semantic conflict analysis
"""

from dataclasses import dataclass
from typing import List, Optional, Tuple
import logging
import re

from hermes.ai.provider import AIProvider

logger = logging.getLogger(__name__)

DEFAULT_CONFIDENCE = 0.7
MULTI_MERGE_CONFIDENCE = 0.8
CONFLICT_MARKERS = ("<<<<<<<", "=======", ">>>>>>>")

CONFIDENCE_REGEX = re.compile(r'CONFIDENCE:\s*([0-9]*\.?[0-9]+)')
SEVERITY_REGEX = re.compile(r'SEVERITY:\s*(\d+)')


@dataclass
class MergeContext:
    """Everything the agent needs to merge two changes to one file."""
    file: str
    original_code: str
    task1_id: str
    task1_changes: str
    task1_intent: str
    task2_id: str
    task2_changes: str
    task2_intent: str


@dataclass
class TaskMergeInfo:
    task_id: str
    diff: str
    intent: str = ""


@dataclass
class MergeResult:
    """
    Outcome of an AI merge.

    Attributes:
        success: Merged code was produced
        merged_code: Full merged file body
        explanation: Agent's explanation
        confidence: Reported confidence in [0, 1]
        error: Failure description
    """
    success: bool = False
    merged_code: str = ""
    explanation: str = ""
    confidence: float = 0.0
    error: Optional[str] = None


@dataclass
class SemanticConflictResult:
    has_conflict: bool = False
    severity: int = 0
    description: str = ""
    suggestion: str = ""


class AIMerger:
    """AI-assisted merging through an AIProvider."""

    def __init__(self, provider: Optional[AIProvider], workdir: str = ".", timeout: Optional[float] = 300):
        """
        Args:
            provider: Agent provider (None disables AI merging)
            workdir: Directory the agent runs in
            timeout: Per-request budget in seconds
        """
        self.provider = provider
        self.workdir = workdir
        self.timeout = timeout

    async def resolve_conflict(self, context: MergeContext) -> MergeResult:
        """Merge two changes to one file."""
        prompt = self.build_merge_prompt(context)
        output, error = await self._execute(prompt)
        if error:
            return MergeResult(error=f"AI merge failed: {error}")

        code, explanation, confidence = self.parse_response(output)
        if not code:
            return MergeResult(
                explanation=explanation,
                error="AI response did not contain merged code",
            )
        return MergeResult(
            success=True,
            merged_code=code,
            explanation=explanation,
            confidence=confidence,
        )

    async def merge_multiple_changes(
        self,
        file: str,
        original: str,
        changes: List[TaskMergeInfo]
    ) -> MergeResult:
        """
        Fold changes pairwise, left to right.

        Each merged result becomes the original for the next pairing.
        """
        if len(changes) < 2:
            return MergeResult(error="need at least 2 changes to merge")

        current = original
        explanation = ""
        for i in range(1, len(changes)):
            previous, change = changes[i - 1], changes[i]
            result = await self.resolve_conflict(MergeContext(
                file=file,
                original_code=current,
                task1_id=previous.task_id,
                task1_changes=previous.diff,
                task1_intent=previous.intent,
                task2_id=change.task_id,
                task2_changes=change.diff,
                task2_intent=change.intent,
            ))
            if not result.success:
                return result
            current = result.merged_code
            explanation += f"\nMerge {i}: {result.explanation}"

        return MergeResult(
            success=True,
            merged_code=current,
            explanation=explanation.strip(),
            confidence=MULTI_MERGE_CONFIDENCE,
        )

    def validate_merge(self, file: str, merged_code: str) -> Tuple[bool, str]:
        """
        Basic sanity check on merged output.

        Returns:
            (valid, reason)
        """
        for marker in CONFLICT_MARKERS:
            if marker in merged_code:
                logger.warning(f"AI merge of {file} rejected: contains conflict markers")
                return False, "Merged code contains conflict markers"
        if not merged_code.strip():
            return False, "Merged code is empty"
        return True, "Validation passed"

    async def analyze_semantic_conflict(
        self,
        file: str,
        changes: List[TaskMergeInfo]
    ) -> SemanticConflictResult:
        """
        Ask the agent whether clean-merging changes are logically incompatible.

        Raises:
            ValueError: With fewer than two changes
            RuntimeError: If the agent request fails
        """
        if len(changes) < 2:
            raise ValueError("need at least 2 changes to analyze")
        output, error = await self._execute(self.build_semantic_prompt(file, changes))
        if error:
            raise RuntimeError(f"semantic analysis failed: {error}")
        return self.parse_semantic_analysis(output)

    def build_merge_prompt(self, context: MergeContext) -> str:
        return f"""You are merging code changes from two parallel tasks that modified the same file.

File: {context.file}

## Original Code
{context.original_code}

## Task 1: {context.task1_id}
Intent: {context.task1_intent}
Changes:
{context.task1_changes}

## Task 2: {context.task2_id}
Intent: {context.task2_intent}
Changes:
{context.task2_changes}

## Instructions
1. Analyze both changes and understand their intent
2. Create a merged version that preserves BOTH intents
3. Resolve any conflicts intelligently
4. Maintain code correctness and consistency

## Output Format
Provide your response in the following format:

MERGED_CODE_START
[Your merged code here]
MERGED_CODE_END

EXPLANATION:
[Brief explanation of how you merged the changes]

CONFIDENCE: [0.0-1.0]
"""

    def build_semantic_prompt(self, file: str, changes: List[TaskMergeInfo]) -> str:
        described = ""
        for i, change in enumerate(changes, start=1):
            described += f"\n## Task {i}: {change.task_id}\nIntent: {change.intent}\nChanges:\n{change.diff}\n"

        return f"""Analyze these code changes for semantic conflicts:

File: {file}
{described}
A semantic conflict occurs when changes are syntactically compatible but logically incompatible.
Examples:
- One task adds logging, another removes it
- Different tasks modify the same business logic differently
- Contradicting configuration changes

Output format:
HAS_CONFLICT: [true/false]
SEVERITY: [1-3]
DESCRIPTION: [description of conflict if any]
SUGGESTION: [how to resolve]
"""

    @staticmethod
    def parse_response(output: str) -> Tuple[str, str, float]:
        """
        Extract (merged code, explanation, confidence) from an agent reply.

        Confidence defaults to 0.7 when code is present without one.
        """
        code = ""
        start = output.find("MERGED_CODE_START")
        if start != -1:
            end = output.find("MERGED_CODE_END", start)
            if end != -1:
                code = output[start + len("MERGED_CODE_START"):end].strip()

        explanation = ""
        exp_idx = output.find("EXPLANATION:")
        if exp_idx != -1:
            exp_end = output.find("CONFIDENCE:", exp_idx)
            if exp_end == -1:
                exp_end = len(output)
            explanation = output[exp_idx + len("EXPLANATION:"):exp_end].strip()

        confidence = 0.0
        match = CONFIDENCE_REGEX.search(output)
        if match:
            try:
                confidence = float(match.group(1))
            except ValueError:
                confidence = 0.0
        if confidence == 0.0 and code:
            confidence = DEFAULT_CONFIDENCE
        return code, explanation, min(1.0, max(0.0, confidence))

    @staticmethod
    def parse_semantic_analysis(output: str) -> SemanticConflictResult:
        result = SemanticConflictResult()
        result.has_conflict = "has_conflict: true" in output.lower()

        match = SEVERITY_REGEX.search(output)
        if match:
            result.severity = int(match.group(1))

        idx = output.find("DESCRIPTION:")
        if idx != -1:
            end = output.find("SUGGESTION:", idx)
            if end == -1:
                end = len(output)
            result.description = output[idx + len("DESCRIPTION:"):end].strip()

        idx = output.find("SUGGESTION:")
        if idx != -1:
            result.suggestion = output[idx + len("SUGGESTION:"):].strip()
        return result

    async def _execute(self, prompt: str) -> Tuple[str, Optional[str]]:
        if self.provider is None:
            return "", "no AI provider configured"
        result = await self.provider.execute(prompt, self.workdir, self.timeout)
        if not result.success:
            return result.output, result.error or "agent reported failure"
        return result.output, None
