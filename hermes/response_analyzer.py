"""
Response Analyzer
=================

Converts a raw agent transcript into a structured progress/completion signal
consumed by the circuit breaker and the scheduler.

Precedence (highest first):
1. Structured ``---HERMES_STATUS---`` block
2. Explicit no-work phrases
3. Implementation evidence
4. Output length / test-only heuristics
"""

from dataclasses import dataclass, asdict
from typing import Any, Dict, Optional
import logging
import re

from hermes.errors import AnalysisError

logger = logging.getLogger(__name__)

STATUS_BLOCK_REGEX = re.compile(r'---HERMES_STATUS---\s*([\s\S]*?)\s*---END_HERMES_STATUS---')
STATUS_REGEX = re.compile(r'STATUS:\s*(\w+)')
EXIT_SIGNAL_REGEX = re.compile(r'EXIT_SIGNAL:\s*(true|false)')
WORK_TYPE_REGEX = re.compile(r'WORK_TYPE:\s*(\w+)')
RECOMMENDATION_REGEX = re.compile(r'RECOMMENDATION:\s*(.+)')

COMPLETION_KEYWORDS = [
    "done", "complete", "finished", "implemented",
    "all tasks complete", "project complete",
]

TEST_ONLY_PATTERNS = [
    "npm test", "pytest", "go test", "jest",
    "running tests", "test passed", "tests passed",
]

NO_WORK_PATTERNS = [
    "nothing to do", "no changes needed",
    "already implemented", "already exists",
]

IMPLEMENTATION_PATTERNS = [
    "created", "modified", "updated", "added",
    "func ", "function ", "class ", "def ",
]

MIN_PROGRESS_LENGTH = 100
STUCK_ERROR_THRESHOLD = 5


@dataclass
class AnalysisResult:
    """
    Structured signal extracted from one agent invocation.

    Attributes:
        has_progress: The loop moved the work forward
        is_complete: The agent reports the task finished
        is_test_only: Only test commands ran, no implementation work
        is_stuck: Error mentions exceeded the stuck threshold
        exit_signal: ``EXIT_SIGNAL: true`` in the status block
        confidence: Completion confidence in [0, 1]
        error_count: Case-insensitive occurrences of "error"
        status: STATUS value from the status block
        work_type: WORK_TYPE value from the status block
        recommendation: RECOMMENDATION value from the status block
        output_length: Transcript length in characters
        completion_keyword: First completion keyword found
        parse_error: Reason the status block was ignored, if any
    """
    has_progress: bool = True
    is_complete: bool = False
    is_test_only: bool = False
    is_stuck: bool = False
    exit_signal: bool = False
    confidence: float = 0.0
    error_count: int = 0
    status: str = ""
    work_type: str = ""
    recommendation: str = ""
    output_length: int = 0
    completion_keyword: str = ""
    parse_error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class ResponseAnalyzer:
    """Stateless transcript analyzer."""

    def analyze(self, output: str) -> AnalysisResult:
        """
        Analyze an agent transcript.

        Args:
            output: Raw transcript text

        Returns:
            AnalysisResult for this invocation
        """
        result = AnalysisResult(output_length=len(output))
        output_lower = output.lower()

        try:
            self._parse_status_block(output, result)
        except AnalysisError as e:
            logger.warning(f"Ignoring status block: {e}")
            result.parse_error = str(e)

        for keyword in COMPLETION_KEYWORDS:
            if keyword in output_lower:
                result.completion_keyword = keyword
                result.confidence += 0.2
                break

        has_test_pattern = any(p in output_lower for p in TEST_ONLY_PATTERNS)
        has_implementation = any(p in output_lower for p in IMPLEMENTATION_PATTERNS)
        result.is_test_only = has_test_pattern and not has_implementation

        no_work = any(p in output_lower for p in NO_WORK_PATTERNS)
        if no_work:
            result.has_progress = False

        result.error_count = output_lower.count("error")
        result.is_stuck = result.error_count > STUCK_ERROR_THRESHOLD

        result.is_complete = (
            result.exit_signal
            or result.status == "COMPLETE"
            or bool(result.completion_keyword)
        )

        if no_work:
            pass
        elif result.is_complete or has_implementation:
            result.has_progress = True
        elif result.output_length < MIN_PROGRESS_LENGTH or result.is_test_only:
            result.has_progress = False

        if result.exit_signal:
            result.confidence = 1.0
        elif result.status == "COMPLETE":
            result.confidence = 0.9
        elif result.completion_keyword:
            result.confidence = 0.7
        result.confidence = min(1.0, max(0.0, result.confidence))

        logger.debug(
            f"Analysis: progress={result.has_progress} complete={result.is_complete} "
            f"confidence={result.confidence:.2f} errors={result.error_count}"
        )
        return result

    def has_status_block(self, output: str) -> bool:
        return STATUS_BLOCK_REGEX.search(output) is not None

    def extract_status_block(self, output: str) -> str:
        """Return the full delimited status block, or an empty string."""
        match = STATUS_BLOCK_REGEX.search(output)
        return match.group(0) if match else ""

    def _parse_status_block(self, output: str, result: AnalysisResult) -> None:
        match = STATUS_BLOCK_REGEX.search(output)
        if not match:
            return
        block = match.group(1)

        status = STATUS_REGEX.search(block)
        exit_signal = EXIT_SIGNAL_REGEX.search(block)
        if not status and not exit_signal:
            raise AnalysisError("status block has neither STATUS nor EXIT_SIGNAL")

        if status:
            result.status = status.group(1)
        if exit_signal:
            result.exit_signal = exit_signal.group(1) == "true"

        work_type = WORK_TYPE_REGEX.search(block)
        if work_type:
            result.work_type = work_type.group(1)

        recommendation = RECOMMENDATION_REGEX.search(block)
        if recommendation:
            result.recommendation = recommendation.group(1).strip()
