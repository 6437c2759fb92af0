"""
Prompt Injector
===============

Places the active task's description into ``.hermes/PROMPT.md`` between
marker comments and removes it once the task completes.
"""

from pathlib import Path
from typing import List, Optional
import logging
import re

from hermes.state_io import write_text_atomic
from hermes.tasks.models import Task

logger = logging.getLogger(__name__)

TASK_SECTION_START = "<!-- HERMES_TASK_START -->"
TASK_SECTION_END = "<!-- HERMES_TASK_END -->"

TASK_SECTION_REGEX = re.compile(
    re.escape(TASK_SECTION_START) + r'.*?' + re.escape(TASK_SECTION_END),
    re.DOTALL,
)
CURRENT_TASK_REGEX = re.compile(r'## Current Task: (T\d+)')


class PromptInjector:
    """Manages the task section of a project's PROMPT.md."""

    def __init__(self, project_path: str = ".", hermes_dir: str = ".hermes"):
        self.prompt_path = Path(project_path) / hermes_dir / "PROMPT.md"

    def exists(self) -> bool:
        return self.prompt_path.exists()

    def read(self) -> str:
        return self.prompt_path.read_text(encoding="utf-8")

    def read_base_prompt(self) -> str:
        """Prompt content with any task section removed ("" if no file)."""
        if not self.exists():
            return ""
        return self._remove_task_section(self.read())

    def write(self, content: str) -> None:
        write_text_atomic(self.prompt_path, content)

    def add_task(self, task: Task) -> None:
        """Replace any existing task section with one for ``task``."""
        content = self.read() if self.exists() else ""
        content = self._remove_task_section(content)
        section = self.build_task_section(task)
        content = f"{content}\n\n{section}" if content else section
        self.write(content)
        logger.debug(f"Injected task {task.id} into {self.prompt_path}")

    def remove_task(self) -> None:
        """
        Remove the task section.

        Raises:
            FileNotFoundError: If PROMPT.md does not exist
        """
        content = self.read()
        self.write(self._remove_task_section(content))

    def get_current_task_id(self) -> Optional[str]:
        if not self.exists():
            return None
        match = CURRENT_TASK_REGEX.search(self.read())
        return match.group(1) if match else None

    def has_task_section(self) -> bool:
        return self.exists() and TASK_SECTION_START in self.read()

    def build_task_section(self, task: Task) -> str:
        """Render the marker-delimited section describing ``task``."""
        lines: List[str] = [
            TASK_SECTION_START,
            f"## Current Task: {task.id}",
            "",
            f"**Task:** {task.id}: {task.name}",
            "",
            f"**Priority:** {task.priority.value}",
            "",
        ]

        if task.description:
            lines.extend([task.description, ""])

        for title, items in (
            ("Files to Touch", task.files_to_touch),
            ("Dependencies", task.dependencies),
            ("Success Criteria", task.success_criteria),
        ):
            if items:
                lines.append(f"**{title}:**")
                lines.extend(f"- {item}" for item in items)
                lines.append("")

        lines.extend([
            "**Instructions:**",
            "1. Implement the task requirements",
            "2. Run tests to verify",
            "3. Output status block when complete",
            "",
            "**Status Block (output at end):**",
            "```",
            "---HERMES_STATUS---",
            "STATUS: COMPLETE",
            "EXIT_SIGNAL: true",
            "RECOMMENDATION: Move to next task",
            "---END_HERMES_STATUS---",
            "```",
            TASK_SECTION_END,
        ])
        return "\n".join(lines)

    @staticmethod
    def _remove_task_section(content: str) -> str:
        return TASK_SECTION_REGEX.sub("", content).strip()
